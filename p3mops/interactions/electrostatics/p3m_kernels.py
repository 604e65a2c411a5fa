# SPDX-FileCopyrightText: Copyright (c) 2025 - 2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
# http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
P3M Influence Function Kernels
==============================

This module contains the Warp kernels that build the per-mode tables used by
the P3M reciprocal-space solver: the discrete (ik) differential operator and the
optimal influence functions for energies and forces.

MATHEMATICAL FORMULATION
========================

Wave numbers are written without the factor 2π, :math:`k = n / L`. For a mesh
mode :math:`n` along an axis with :math:`M` points, the signed mode is

.. math::

    s(n) = n \\text{ if } 2n < M \\text{ else } n - M

and the aliased images are :math:`n_m = s(n) + M m` for
:math:`m \\in [-m_{max}, m_{max}]`. With the assignment-function transform
:math:`U(n_m) = \\prod_d \\text{sinc}(n_{m,d}/M_d)^{p}` and the continuum Ewald
Green's function

.. math::

    G(k) = \\frac{\\exp(-\\pi^2 k^2 / \\alpha^2)}{k^2}

the energy influence function is

.. math::

    G_E(n) = \\frac{1}{\\pi} \\frac{\\sum_m U^2 G(k_m)}{\\left(\\sum_m U^2\\right)^2}

and the force influence function, using the discrete differential operator
:math:`D(n)`, is

.. math::

    G_F(n) = \\frac{1}{\\pi}
    \\frac{\\sum_d (D_d / L_d) \\sum_m U^2 G(k_m)\\, k_{m,d}}
    {\\left(\\sum_d (D_d / L_d)^2\\right) \\left(\\sum_m U^2\\right)^2}

Both reduce to :math:`4\\pi e^{-\\kappa^2/4\\alpha^2} / (\\kappa^2 U^2)` with
:math:`\\kappa = 2\\pi k` when no images are summed.

Modes whose index is a multiple of half the mesh size along every axis
are set to exactly zero.

REFERENCES
==========

- Hockney & Eastwood (1988). Computer Simulation Using Particles.
- Deserno & Holm (1998). J. Chem. Phys. 109, 7678, Eq. (31).
"""

from __future__ import annotations

import math
from typing import Any

import warp as wp

__all__ = [
    "EWALD_EXPONENT_LIMIT",
    "SINC_TAYLOR_THRESHOLD",
    "differential_operator",
    "bspline_transform",
    "influence_function_energy",
    "influence_function_force",
]

# exp(-x) is treated as zero beyond this exponent
EWALD_EXPONENT_LIMIT = wp.constant(30.0)
# |x| below which sinc(x) uses its Taylor series
SINC_TAYLOR_THRESHOLD = wp.constant(0.1)

_PI = wp.constant(math.pi)

###########################################################################################
########################### Warp Functions ################################################
###########################################################################################


@wp.func
def mode_shift(n: wp.int32, mesh: wp.int32) -> wp.int32:
    """Signed mode index: ``n`` below the Nyquist index, ``n - mesh`` from it on."""
    if 2 * n < mesh:
        return n
    return n - mesh


@wp.func
def is_zero_mode(n: wp.vec3i, mesh: wp.vec3i) -> bool:
    """True if every index is a multiple of half the mesh size on its axis."""
    for d in range(3):
        half = wp.max(mesh[d] // 2, 1)
        if n[d] % half != 0:
            return False
    return True


@wp.func
def sinc(x: Any) -> Any:
    """Normalised sinc, ``sin(pi x) / (pi x)``, with a Taylor branch near 0."""
    pi_x = type(x)(_PI) * x
    if wp.abs(x) <= type(x)(SINC_TAYLOR_THRESHOLD):
        u = pi_x * pi_x
        c2 = type(x)(-0.1666666666667e-0)
        c4 = type(x)(0.8333333333333e-2)
        c6 = type(x)(-0.1984126984127e-3)
        c8 = type(x)(0.2755731922399e-5)
        return type(x)(1.0) + u * (c2 + u * (c4 + u * (c6 + u * c8)))
    return wp.sin(pi_x) / pi_x


@wp.func
def bspline_hat(x: Any, order: wp.int32) -> Any:
    """Fourier transform of the order-p assignment function, ``sinc(x)**p``."""
    s = sinc(x)
    result = type(x)(1.0)
    for _ in range(order):
        result = result * s
    return result


@wp.func
def g_ewald(k2: Any, alpha: Any) -> Any:
    """Continuum Ewald Green's function ``exp(-(pi/alpha)^2 k^2) / k^2``."""
    ratio = type(alpha)(_PI) / alpha
    exponent = ratio * ratio * k2
    if exponent < type(alpha)(EWALD_EXPONENT_LIMIT):
        return wp.exp(-exponent) / k2
    return type(alpha)(0.0)


###########################################################################################
########################### Kernels #######################################################
###########################################################################################


@wp.kernel(enable_backward=False)
def _differential_operator_kernel(
    mesh_size: wp.int32,
    dop: wp.array(dtype=wp.int32),
):
    """Fill the ik differential operator for one axis.

    Index 0 and the Nyquist index map to 0, ``j`` to ``j`` and ``mesh - j``
    to ``-j``.

    Launch Grid
    -----------
    dim = [mesh_size]
    """
    j = wp.tid()
    if 2 * j == mesh_size:
        dop[j] = 0
    else:
        dop[j] = mode_shift(j, mesh_size)


@wp.kernel(enable_backward=False)
def _bspline_transform_kernel(
    x: wp.array(dtype=Any),
    order: wp.int32,
    output: wp.array(dtype=Any),
):
    """Evaluate ``sinc(x)**order`` (one thread per value)."""
    tid = wp.tid()
    output[tid] = bspline_hat(x[tid], order)


@wp.kernel(enable_backward=False)
def _influence_function_energy_kernel(
    box: Any,
    alpha: Any,
    order: wp.int32,
    alias_images: wp.int32,
    influence: wp.array3d(dtype=Any),
):
    """Compute the aliasing-corrected energy influence function.

    Launch Grid
    -----------
    dim = [nx, ny, nz]

    Parameters
    ----------
    box : wp.vec3f or wp.vec3d
        Orthorhombic box lengths.
    alpha : float
        Ewald splitting parameter.
    order : wp.int32
        Assignment order.
    alias_images : wp.int32
        Number of aliased images per direction (0 disables the correction).
    influence : wp.array3d, shape (nx, ny, nz)
        OUTPUT: ``G_E`` per mesh mode.
    """
    ix, iy, iz = wp.tid()
    mesh = wp.vec3i(influence.shape[0], influence.shape[1], influence.shape[2])
    n = wp.vec3i(ix, iy, iz)
    zero = type(alpha)(0.0)

    if is_zero_mode(n, mesh):
        influence[ix, iy, iz] = zero
        return

    sx = mode_shift(ix, mesh[0])
    sy = mode_shift(iy, mesh[1])
    sz = mode_shift(iz, mesh[2])

    numerator = zero
    denominator = zero
    for mx in range(-alias_images, alias_images + 1):
        nmx = type(alpha)(sx + mesh[0] * mx)
        ux = bspline_hat(nmx / type(alpha)(mesh[0]), order)
        kx = nmx / box[0]
        for my in range(-alias_images, alias_images + 1):
            nmy = type(alpha)(sy + mesh[1] * my)
            uy = bspline_hat(nmy / type(alpha)(mesh[1]), order)
            ky = nmy / box[1]
            for mz in range(-alias_images, alias_images + 1):
                nmz = type(alpha)(sz + mesh[2] * mz)
                uz = bspline_hat(nmz / type(alpha)(mesh[2]), order)
                kz = nmz / box[2]

                u = ux * uy * uz
                u2 = u * u
                numerator += u2 * g_ewald(kx * kx + ky * ky + kz * kz, alpha)
                denominator += u2

    influence[ix, iy, iz] = (
        numerator / (denominator * denominator) / type(alpha)(_PI)
    )


@wp.kernel(enable_backward=False)
def _influence_function_force_kernel(
    box: Any,
    alpha: Any,
    order: wp.int32,
    alias_images: wp.int32,
    operator_x: wp.array(dtype=wp.int32),
    operator_y: wp.array(dtype=wp.int32),
    operator_z: wp.array(dtype=wp.int32),
    influence: wp.array3d(dtype=Any),
):
    """Compute the aliasing-corrected force influence function for ik differentiation.

    Launch Grid
    -----------
    dim = [nx, ny, nz]

    Parameters
    ----------
    box : wp.vec3f or wp.vec3d
        Orthorhombic box lengths.
    alpha : float
        Ewald splitting parameter.
    order : wp.int32
        Assignment order.
    alias_images : wp.int32
        Number of aliased images per direction (0 disables the correction).
    operator_x, operator_y, operator_z : wp.array, dtype=wp.int32
        Discrete differential operator per axis.
    influence : wp.array3d, shape (nx, ny, nz)
        OUTPUT: ``G_F`` per mesh mode.
    """
    ix, iy, iz = wp.tid()
    mesh = wp.vec3i(influence.shape[0], influence.shape[1], influence.shape[2])
    n = wp.vec3i(ix, iy, iz)
    zero = type(alpha)(0.0)

    if is_zero_mode(n, mesh):
        influence[ix, iy, iz] = zero
        return

    sx = mode_shift(ix, mesh[0])
    sy = mode_shift(iy, mesh[1])
    sz = mode_shift(iz, mesh[2])

    numerator = type(box)(zero, zero, zero)
    denominator = zero
    for mx in range(-alias_images, alias_images + 1):
        nmx = type(alpha)(sx + mesh[0] * mx)
        ux = bspline_hat(nmx / type(alpha)(mesh[0]), order)
        kx = nmx / box[0]
        for my in range(-alias_images, alias_images + 1):
            nmy = type(alpha)(sy + mesh[1] * my)
            uy = bspline_hat(nmy / type(alpha)(mesh[1]), order)
            ky = nmy / box[1]
            for mz in range(-alias_images, alias_images + 1):
                nmz = type(alpha)(sz + mesh[2] * mz)
                uz = bspline_hat(nmz / type(alpha)(mesh[2]), order)
                kz = nmz / box[2]

                u = ux * uy * uz
                u2 = u * u
                weight = u2 * g_ewald(kx * kx + ky * ky + kz * kz, alpha)
                numerator += type(box)(weight * kx, weight * ky, weight * kz)
                denominator += u2

    dop = type(box)(
        type(alpha)(operator_x[ix]) / box[0],
        type(alpha)(operator_y[iy]) / box[1],
        type(alpha)(operator_z[iz]) / box[2],
    )
    dop2 = wp.dot(dop, dop)
    if dop2 == zero:
        influence[ix, iy, iz] = zero
        return

    influence[ix, iy, iz] = (
        wp.dot(dop, numerator)
        / (dop2 * denominator * denominator)
        / type(alpha)(_PI)
    )


###########################################################################################
########################### Kernel Overloads ##############################################
###########################################################################################

_T = [wp.float32, wp.float64]
_V = [wp.vec3f, wp.vec3d]

_bspline_transform_kernel_overload = {}
_influence_function_energy_kernel_overload = {}
_influence_function_force_kernel_overload = {}

for t, v in zip(_T, _V):
    _bspline_transform_kernel_overload[t] = wp.overload(
        _bspline_transform_kernel,
        [
            wp.array(dtype=t),  # x
            wp.int32,  # order
            wp.array(dtype=t),  # output
        ],
    )
    _influence_function_energy_kernel_overload[t] = wp.overload(
        _influence_function_energy_kernel,
        [
            v,  # box
            t,  # alpha
            wp.int32,  # order
            wp.int32,  # alias_images
            wp.array3d(dtype=t),  # influence
        ],
    )
    _influence_function_force_kernel_overload[t] = wp.overload(
        _influence_function_force_kernel,
        [
            v,  # box
            t,  # alpha
            wp.int32,  # order
            wp.int32,  # alias_images
            wp.array(dtype=wp.int32),  # operator_x
            wp.array(dtype=wp.int32),  # operator_y
            wp.array(dtype=wp.int32),  # operator_z
            wp.array3d(dtype=t),  # influence
        ],
    )


###########################################################################################
########################### Warp Launcher Functions #######################################
###########################################################################################


def differential_operator(
    mesh_size: int,
    operator: wp.array,
    device: str | None = None,
) -> None:
    """Fill the discrete differential operator of one mesh axis.

    Parameters
    ----------
    mesh_size : int
        Number of mesh points along the axis.
    operator : wp.array, shape (mesh_size,), dtype=wp.int32
        OUTPUT: signed integer wavenumber per mesh index.
    device : str | None
        Warp device string.
    """
    wp.launch(
        _differential_operator_kernel,
        dim=mesh_size,
        inputs=[wp.int32(mesh_size)],
        outputs=[operator],
        device=device,
    )


def bspline_transform(
    x: wp.array,
    order: int,
    output: wp.array,
    wp_dtype: type,
    device: str | None = None,
) -> None:
    """Evaluate the assignment-function transform ``sinc(x)**order``."""
    wp.launch(
        _bspline_transform_kernel_overload[wp_dtype],
        dim=x.shape[0],
        inputs=[x, wp.int32(order)],
        outputs=[output],
        device=device,
    )


def influence_function_energy(
    box: Any,
    alpha: float,
    order: int,
    alias_images: int,
    influence: wp.array,
    wp_dtype: type,
    device: str | None = None,
) -> None:
    """Compute the energy influence function on the whole mesh.

    Parameters
    ----------
    box : wp.vec3f or wp.vec3d
        Orthorhombic box lengths.
    alpha : float
        Ewald splitting parameter.
    order : int
        Assignment order.
    alias_images : int
        Aliased images summed per direction.
    influence : wp.array3d, shape (nx, ny, nz)
        OUTPUT: influence function.
    wp_dtype : type
        Warp scalar dtype.
    device : str | None
        Warp device string.
    """
    wp.launch(
        _influence_function_energy_kernel_overload[wp_dtype],
        dim=influence.shape,
        inputs=[box, wp_dtype(alpha), wp.int32(order), wp.int32(alias_images)],
        outputs=[influence],
        device=device,
    )


def influence_function_force(
    box: Any,
    alpha: float,
    order: int,
    alias_images: int,
    operator_x: wp.array,
    operator_y: wp.array,
    operator_z: wp.array,
    influence: wp.array,
    wp_dtype: type,
    device: str | None = None,
) -> None:
    """Compute the force influence function on the whole mesh.

    The differential operator arrays are inputs, so any operator with the
    same layout (for example one from ``differential_operator``) can be used.
    """
    wp.launch(
        _influence_function_force_kernel_overload[wp_dtype],
        dim=influence.shape,
        inputs=[
            box,
            wp_dtype(alpha),
            wp.int32(order),
            wp.int32(alias_images),
            operator_x,
            operator_y,
            operator_z,
        ],
        outputs=[influence],
        device=device,
    )
