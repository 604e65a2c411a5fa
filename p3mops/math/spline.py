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
Charge Assignment Kernels (Pure Warp)
=====================================

This module provides Warp kernels and launchers that map particle positions onto
a regular periodic mesh with centred B-spline weights of order 1 to 7, as used by
the P3M solver.

This module is framework-agnostic - it contains only Warp kernels and launchers.
For PyTorch bindings, use ``p3mops.torch.spline`` instead.

ASSIGNMENT GEOMETRY
===================

For a mesh with spacing ``h`` and offset ``o`` along one axis, mesh point ``p``
sits at ``o + p * h``. A particle at ``r`` is assigned to ``order`` consecutive
points starting at the lower-left index

    u          = (r - o) / h + shift         (shift = 0.5 for even order, else 0)
    nearest    = floor(u + 0.5)
    x          = u - nearest                 (x in [-0.5, 0.5))
    lower_left = nearest - order // 2

and the weight of the i-th point is ``W_i(x)``, the closed-form centred
B-spline polynomial. The 3D weight is the product of the three axis weights.
Indices produced here are not wrapped; spreading and gathering wrap them
periodically.

WEIGHT MODES
============

1. DIRECT: weights are evaluated inside every spread/gather kernel.
2. CACHED: ``compute_assignment_cache`` stores ``order x 3`` weights and the
   lower-left index per particle; ``*_cached`` kernels replay them.
3. TABULATED: weights are looked up from a table sampled at
   ``x_k = -0.5 + k / (2n)``, ``k = 0..2n`` (nearest bin). The lookup error
   is at most ``max|W_i'| / (4n) <= 1 / (4n)`` and exactly 0 for order 1.

REFERENCES
==========

- Hockney & Eastwood (1988). Computer Simulation Using Particles.
- Deserno & Holm (1998). J. Chem. Phys. 109, 7678 (P3M charge assignment)
"""

from __future__ import annotations

from typing import Any

import numpy as np
import warp as wp

__all__ = [
    "MAX_ORDER",
    "BSPLINE_COEFFICIENTS",
    "get_bspline_coefficients",
    "bspline_weight_launcher",
    "tabulate_bspline_weights",
    "compute_assignment_cache",
    "assignment_stencil",
    "cached_assignment_stencil",
    "spline_spread",
    "spline_spread_cached",
    "spline_gather_channels",
    "spline_gather_channels_cached",
]

MAX_ORDER = 7

###########################################################################################
########################### Closed-Form Weight Polynomials ################################
###########################################################################################

# BSPLINE_COEFFICIENTS[order - 1, i, k] is the coefficient of x**k in W_i(x).
_WEIGHT_POLYNOMIALS = {
    1: [([1.0], 1.0)],
    2: [
        ([0.5, -1.0], 1.0),
        ([0.5, 1.0], 1.0),
    ],
    3: [
        ([0.125, -0.5, 0.5], 1.0),
        ([0.75, 0.0, -1.0], 1.0),
        ([0.125, 0.5, 0.5], 1.0),
    ],
    4: [
        ([1.0, -6.0, 12.0, -8.0], 48.0),
        ([23.0, -30.0, -12.0, 24.0], 48.0),
        ([23.0, 30.0, -12.0, -24.0], 48.0),
        ([1.0, 6.0, 12.0, 8.0], 48.0),
    ],
    5: [
        ([1.0, -8.0, 24.0, -32.0, 16.0], 384.0),
        ([19.0, -44.0, 24.0, 16.0, -16.0], 96.0),
        ([115.0, 0.0, -120.0, 0.0, 48.0], 192.0),
        ([19.0, 44.0, 24.0, -16.0, -16.0], 96.0),
        ([1.0, 8.0, 24.0, 32.0, 16.0], 384.0),
    ],
    6: [
        ([1.0, -10.0, 40.0, -80.0, 80.0, -32.0], 3840.0),
        ([237.0, -750.0, 840.0, -240.0, -240.0, 160.0], 3840.0),
        ([841.0, -770.0, -440.0, 560.0, 80.0, -160.0], 1920.0),
        ([841.0, 770.0, -440.0, -560.0, 80.0, 160.0], 1920.0),
        ([237.0, 750.0, 840.0, 240.0, -240.0, -160.0], 3840.0),
        ([1.0, 10.0, 40.0, 80.0, 80.0, 32.0], 3840.0),
    ],
    7: [
        ([1.0, -12.0, 60.0, -160.0, 240.0, -192.0, 64.0], 46080.0),
        ([361.0, -1416.0, 2220.0, -1600.0, 240.0, 384.0, -192.0], 23040.0),
        ([10543.0, -17340.0, 4740.0, 6880.0, -4080.0, -960.0, 960.0], 46080.0),
        ([5887.0, 0.0, -4620.0, 0.0, 1680.0, 0.0, -320.0], 11520.0),
        ([10543.0, 17340.0, 4740.0, -6880.0, -4080.0, 960.0, 960.0], 46080.0),
        ([361.0, 1416.0, 2220.0, 1600.0, 240.0, -384.0, -192.0], 23040.0),
        ([1.0, 12.0, 60.0, 160.0, 240.0, 192.0, 64.0], 46080.0),
    ],
}


def _build_coefficient_table() -> np.ndarray:
    table = np.zeros((MAX_ORDER, MAX_ORDER, MAX_ORDER), dtype=np.float64)
    for order, polynomials in _WEIGHT_POLYNOMIALS.items():
        for i, (coefficients, denominator) in enumerate(polynomials):
            table[order - 1, i, : len(coefficients)] = (
                np.asarray(coefficients) / denominator
            )
    return table


BSPLINE_COEFFICIENTS = _build_coefficient_table()

_coefficient_arrays: dict[tuple[type, str], wp.array] = {}


def get_bspline_coefficients(wp_dtype: type, device: str | None = None) -> wp.array:
    """Return the coefficient table as a warp array, cached per dtype and device.

    Parameters
    ----------
    wp_dtype : type
        Warp scalar dtype (wp.float32 or wp.float64).
    device : str | None
        Warp device string.

    Returns
    -------
    wp.array3d, shape (7, 7, 7)
        ``coefficients[order - 1, i, k]`` multiplies ``x**k`` in ``W_i(x)``.
    """
    key = (wp_dtype, str(wp.get_device(device)))
    if key not in _coefficient_arrays:
        np_dtype = np.float32 if wp_dtype == wp.float32 else np.float64
        _coefficient_arrays[key] = wp.array(
            BSPLINE_COEFFICIENTS.astype(np_dtype), dtype=wp_dtype, device=device
        )
    return _coefficient_arrays[key]


###########################################################################################
########################### Warp Functions ################################################
###########################################################################################


@wp.func
def bspline_weight(
    i: wp.int32, x: Any, order: wp.int32, coefficients: wp.array3d(dtype=Any)
) -> Any:
    """Evaluate the i-th centred B-spline weight of the given order.

    Parameters
    ----------
    i : wp.int32
        Support point index in ``[0, order)``.
    x : float (Any)
        Normalised offset from the nearest mesh point, in ``[-0.5, 0.5)``.
    order : wp.int32
        Assignment order (1-7).
    coefficients : wp.array3d
        Polynomial coefficient table from ``get_bspline_coefficients``.

    Returns
    -------
    float (Any)
        ``W_i(x)``, evaluated with Horner's rule.
    """
    result = type(x)(0.0)
    for k in range(order):
        result = result * x + coefficients[order - 1, i, order - 1 - k]
    return result


@wp.func
def tabulated_weight(
    i: wp.int32, x: Any, resolution: wp.int32, table: wp.array2d(dtype=Any)
) -> Any:
    """Look up ``W_i(x)`` in a table sampled at ``x_k = -0.5 + k / (2n)``."""
    two_n = 2 * resolution
    k = wp.int32(wp.floor((x + type(x)(0.5)) * type(x)(two_n) + type(x)(0.5)))
    k = wp.clamp(k, 0, two_n)
    return table[k, i]


@wp.func
def assignment_origin(
    position: Any,
    mesh_offset: Any,
    inverse_spacing: Any,
    order: wp.int32,
):
    """Compute the lower-left support index and the normalised offset.

    Parameters
    ----------
    position : vec3 (Any)
        Particle position.
    mesh_offset : vec3 (Any)
        Position of mesh point (0, 0, 0).
    inverse_spacing : vec3 (Any)
        Reciprocal mesh spacing ``1 / h`` per axis.
    order : wp.int32
        Assignment order.

    Returns
    -------
    lower_left : wp.vec3i
        First mesh index of the support cube per axis (unwrapped).
    fraction : vec3 (Any)
        Offset of the particle from its nearest mesh point, in ``[-0.5, 0.5)``.
    """
    half = type(position[0])(0.5)
    shift = type(position[0])(0.0)
    if order % 2 == 0:
        shift = half

    lower_left = wp.vec3i(0, 0, 0)
    fraction = type(position)(shift, shift, shift)
    for d in range(3):
        u = (position[d] - mesh_offset[d]) * inverse_spacing[d] + shift
        nearest = wp.floor(u + half)
        fraction[d] = u - nearest
        lower_left[d] = wp.int32(nearest) - order // 2
    return lower_left, fraction


@wp.func
def stencil_point(point_idx: wp.int32, order: wp.int32) -> wp.vec3i:
    """Split a flat stencil index in ``[0, order**3)`` into (ix, iy, iz)."""
    return wp.vec3i(
        point_idx // (order * order),
        (point_idx // order) % order,
        point_idx % order,
    )


@wp.func
def wrap_grid_index(idx: wp.int32, dim: wp.int32) -> wp.int32:
    """Wrap grid index for periodic boundaries."""
    return ((idx % dim) + dim) % dim


###########################################################################################
########################### Weight Kernels ################################################
###########################################################################################


@wp.kernel(enable_backward=False)
def _bspline_weight_kernel(
    x: wp.array(dtype=Any),
    i: wp.int32,
    order: wp.int32,
    coefficients: wp.array3d(dtype=Any),
    weights: wp.array(dtype=Any),
):
    """Evaluate ``W_i(x)`` for an array of offsets (one thread per value)."""
    tid = wp.tid()
    weights[tid] = bspline_weight(i, x[tid], order, coefficients)


@wp.kernel(enable_backward=False)
def _tabulate_bspline_kernel(
    order: wp.int32,
    resolution: wp.int32,
    coefficients: wp.array3d(dtype=Any),
    table: wp.array2d(dtype=Any),
):
    """Sample every weight polynomial on the table grid.

    Launch Grid
    -----------
    dim = [2 * resolution + 1, order]
    """
    k, i = wp.tid()
    x0 = table[0, 0]
    x = type(x0)(k) / type(x0)(2 * resolution) - type(x0)(0.5)
    table[k, i] = bspline_weight(i, x, order, coefficients)


@wp.kernel(enable_backward=False)
def _assignment_cache_kernel(
    positions: wp.array(dtype=Any),
    mesh_offset: Any,
    inverse_spacing: Any,
    order: wp.int32,
    coefficients: wp.array3d(dtype=Any),
    weights: wp.array3d(dtype=Any),
    lower_left: wp.array(dtype=wp.vec3i),
):
    """Store per-particle axis weights and lower-left indices.

    Launch Grid
    -----------
    dim = [num_atoms]

    Parameters
    ----------
    weights : wp.array3d, shape (N, 3, order)
        OUTPUT: ``weights[atom, d, i] = W_i(x_d)``.
    lower_left : wp.array, shape (N,), dtype=wp.vec3i
        OUTPUT: lower-left support index per particle.
    """
    atom_idx = wp.tid()
    origin, fraction = assignment_origin(
        positions[atom_idx], mesh_offset, inverse_spacing, order
    )
    lower_left[atom_idx] = origin
    for d in range(3):
        for i in range(order):
            weights[atom_idx, d, i] = bspline_weight(i, fraction[d], order, coefficients)


@wp.kernel(enable_backward=False)
def _tabulated_assignment_cache_kernel(
    positions: wp.array(dtype=Any),
    mesh_offset: Any,
    inverse_spacing: Any,
    order: wp.int32,
    resolution: wp.int32,
    table: wp.array2d(dtype=Any),
    weights: wp.array3d(dtype=Any),
    lower_left: wp.array(dtype=wp.vec3i),
):
    """Same as ``_assignment_cache_kernel`` with weights read from a table."""
    atom_idx = wp.tid()
    origin, fraction = assignment_origin(
        positions[atom_idx], mesh_offset, inverse_spacing, order
    )
    lower_left[atom_idx] = origin
    for d in range(3):
        for i in range(order):
            weights[atom_idx, d, i] = tabulated_weight(i, fraction[d], resolution, table)


###########################################################################################
########################### Stencil Kernels ###############################################
###########################################################################################


@wp.kernel(enable_backward=False)
def _assignment_stencil_kernel(
    positions: wp.array(dtype=Any),
    mesh_offset: Any,
    inverse_spacing: Any,
    order: wp.int32,
    coefficients: wp.array3d(dtype=Any),
    indices: wp.array2d(dtype=wp.vec3i),
    stencil_weights: wp.array2d(dtype=Any),
):
    """Emit every (mesh index, weight) assignment event, computing weights directly.

    Launch Grid
    -----------
    dim = [num_atoms, order^3]
    """
    atom_idx, point_idx = wp.tid()
    origin, fraction = assignment_origin(
        positions[atom_idx], mesh_offset, inverse_spacing, order
    )
    local = stencil_point(point_idx, order)

    weight = type(fraction[0])(1.0)
    for d in range(3):
        weight = weight * bspline_weight(local[d], fraction[d], order, coefficients)

    indices[atom_idx, point_idx] = origin + local
    stencil_weights[atom_idx, point_idx] = weight


@wp.kernel(enable_backward=False)
def _cached_assignment_stencil_kernel(
    weights: wp.array3d(dtype=Any),
    lower_left: wp.array(dtype=wp.vec3i),
    order: wp.int32,
    indices: wp.array2d(dtype=wp.vec3i),
    stencil_weights: wp.array2d(dtype=Any),
):
    """Emit every assignment event from cached weights.

    Launch Grid
    -----------
    dim = [num_atoms, order^3]
    """
    atom_idx, point_idx = wp.tid()
    local = stencil_point(point_idx, order)

    indices[atom_idx, point_idx] = lower_left[atom_idx] + local
    stencil_weights[atom_idx, point_idx] = (
        weights[atom_idx, 0, local[0]]
        * weights[atom_idx, 1, local[1]]
        * weights[atom_idx, 2, local[2]]
    )


###########################################################################################
########################### Spread / Gather Kernels #######################################
###########################################################################################


@wp.kernel(enable_backward=False)
def _spline_spread_kernel(
    positions: wp.array(dtype=Any),
    values: wp.array(dtype=Any),
    mesh_offset: Any,
    inverse_spacing: Any,
    order: wp.int32,
    coefficients: wp.array3d(dtype=Any),
    mesh: wp.array3d(dtype=Any),
):
    """Spread particle values onto a periodic mesh.

    Formula: mesh[g] += value[atom] * w(atom, g)

    Launch Grid
    -----------
    dim = [num_atoms, order^3]

    Parameters
    ----------
    positions : wp.array, shape (N,), dtype=wp.vec3f or wp.vec3d
        Particle positions, not necessarily inside the primary box.
    values : wp.array, shape (N,), dtype=wp.float32 or wp.float64
        Values to spread (charges).
    mesh_offset : wp.vec3f or wp.vec3d
        Position of mesh point (0, 0, 0).
    inverse_spacing : wp.vec3f or wp.vec3d
        Reciprocal mesh spacing per axis.
    order : wp.int32
        Assignment order (1-7).
    coefficients : wp.array3d
        Weight polynomial table.
    mesh : wp.array3d, shape (nx, ny, nz)
        OUTPUT: Mesh to accumulate into. Must be zero-initialized.

    Notes
    -----
    - Uses atomic adds; several particles share mesh points.
    - Grid indices are wrapped periodically.
    """
    atom_idx, point_idx = wp.tid()
    value = values[atom_idx]
    origin, fraction = assignment_origin(
        positions[atom_idx], mesh_offset, inverse_spacing, order
    )
    local = stencil_point(point_idx, order)

    weight = value
    for d in range(3):
        weight = weight * bspline_weight(local[d], fraction[d], order, coefficients)

    gx = wrap_grid_index(origin[0] + local[0], mesh.shape[0])
    gy = wrap_grid_index(origin[1] + local[1], mesh.shape[1])
    gz = wrap_grid_index(origin[2] + local[2], mesh.shape[2])
    wp.atomic_add(mesh, gx, gy, gz, weight)


@wp.kernel(enable_backward=False)
def _spline_spread_cached_kernel(
    weights: wp.array3d(dtype=Any),
    lower_left: wp.array(dtype=wp.vec3i),
    values: wp.array(dtype=Any),
    order: wp.int32,
    mesh: wp.array3d(dtype=Any),
):
    """Spread particle values onto a periodic mesh using cached weights.

    Launch Grid
    -----------
    dim = [num_atoms, order^3]
    """
    atom_idx, point_idx = wp.tid()
    local = stencil_point(point_idx, order)
    origin = lower_left[atom_idx]

    contribution = (
        values[atom_idx]
        * weights[atom_idx, 0, local[0]]
        * weights[atom_idx, 1, local[1]]
        * weights[atom_idx, 2, local[2]]
    )

    gx = wrap_grid_index(origin[0] + local[0], mesh.shape[0])
    gy = wrap_grid_index(origin[1] + local[1], mesh.shape[1])
    gz = wrap_grid_index(origin[2] + local[2], mesh.shape[2])
    wp.atomic_add(mesh, gx, gy, gz, contribution)


@wp.kernel(enable_backward=False)
def _spline_gather_channels_kernel(
    positions: wp.array(dtype=Any),
    values: wp.array(dtype=Any),
    mesh_offset: Any,
    inverse_spacing: Any,
    order: wp.int32,
    coefficients: wp.array3d(dtype=Any),
    mesh: wp.array(dtype=Any, ndim=4),  # (C, nx, ny, nz)
    output: wp.array2d(dtype=Any),  # (N, C)
):
    """Gather value-weighted multi-channel mesh fields at particle positions.

    Formula: output[atom, c] += value[atom] * Σ_g mesh[c, g] * w(atom, g)

    Launch Grid
    -----------
    dim = [num_atoms, order^3]

    Notes
    -----
    - Uses atomic adds since order^3 threads contribute to each particle.
    - Grid indices are wrapped periodically.
    """
    atom_idx, point_idx = wp.tid()
    origin, fraction = assignment_origin(
        positions[atom_idx], mesh_offset, inverse_spacing, order
    )
    local = stencil_point(point_idx, order)

    weight = values[atom_idx]
    for d in range(3):
        weight = weight * bspline_weight(local[d], fraction[d], order, coefficients)

    gx = wrap_grid_index(origin[0] + local[0], mesh.shape[1])
    gy = wrap_grid_index(origin[1] + local[1], mesh.shape[2])
    gz = wrap_grid_index(origin[2] + local[2], mesh.shape[3])
    for c in range(mesh.shape[0]):
        wp.atomic_add(output, atom_idx, c, weight * mesh[c, gx, gy, gz])


@wp.kernel(enable_backward=False)
def _spline_gather_channels_cached_kernel(
    weights: wp.array3d(dtype=Any),
    lower_left: wp.array(dtype=wp.vec3i),
    values: wp.array(dtype=Any),
    order: wp.int32,
    mesh: wp.array(dtype=Any, ndim=4),  # (C, nx, ny, nz)
    output: wp.array2d(dtype=Any),  # (N, C)
):
    """Gather value-weighted multi-channel mesh fields using cached weights.

    Launch Grid
    -----------
    dim = [num_atoms, order^3]
    """
    atom_idx, point_idx = wp.tid()
    local = stencil_point(point_idx, order)
    origin = lower_left[atom_idx]

    weight = (
        values[atom_idx]
        * weights[atom_idx, 0, local[0]]
        * weights[atom_idx, 1, local[1]]
        * weights[atom_idx, 2, local[2]]
    )

    gx = wrap_grid_index(origin[0] + local[0], mesh.shape[1])
    gy = wrap_grid_index(origin[1] + local[1], mesh.shape[2])
    gz = wrap_grid_index(origin[2] + local[2], mesh.shape[3])
    for c in range(mesh.shape[0]):
        wp.atomic_add(output, atom_idx, c, weight * mesh[c, gx, gy, gz])


###########################################################################################
########################### Kernel Overloads ##############################################
###########################################################################################

_T = [wp.float32, wp.float64]
_V = [wp.vec3f, wp.vec3d]

_bspline_weight_kernel_overload = {}
_tabulate_bspline_kernel_overload = {}
_assignment_cache_kernel_overload = {}
_tabulated_assignment_cache_kernel_overload = {}
_assignment_stencil_kernel_overload = {}
_cached_assignment_stencil_kernel_overload = {}
_spline_spread_kernel_overload = {}
_spline_spread_cached_kernel_overload = {}
_spline_gather_channels_kernel_overload = {}
_spline_gather_channels_cached_kernel_overload = {}

for t, v in zip(_T, _V):
    _bspline_weight_kernel_overload[t] = wp.overload(
        _bspline_weight_kernel,
        [
            wp.array(dtype=t),  # x
            wp.int32,  # i
            wp.int32,  # order
            wp.array3d(dtype=t),  # coefficients
            wp.array(dtype=t),  # weights
        ],
    )
    _tabulate_bspline_kernel_overload[t] = wp.overload(
        _tabulate_bspline_kernel,
        [
            wp.int32,  # order
            wp.int32,  # resolution
            wp.array3d(dtype=t),  # coefficients
            wp.array2d(dtype=t),  # table
        ],
    )
    _assignment_cache_kernel_overload[t] = wp.overload(
        _assignment_cache_kernel,
        [
            wp.array(dtype=v),  # positions
            v,  # mesh_offset
            v,  # inverse_spacing
            wp.int32,  # order
            wp.array3d(dtype=t),  # coefficients
            wp.array3d(dtype=t),  # weights
            wp.array(dtype=wp.vec3i),  # lower_left
        ],
    )
    _tabulated_assignment_cache_kernel_overload[t] = wp.overload(
        _tabulated_assignment_cache_kernel,
        [
            wp.array(dtype=v),  # positions
            v,  # mesh_offset
            v,  # inverse_spacing
            wp.int32,  # order
            wp.int32,  # resolution
            wp.array2d(dtype=t),  # table
            wp.array3d(dtype=t),  # weights
            wp.array(dtype=wp.vec3i),  # lower_left
        ],
    )
    _assignment_stencil_kernel_overload[t] = wp.overload(
        _assignment_stencil_kernel,
        [
            wp.array(dtype=v),  # positions
            v,  # mesh_offset
            v,  # inverse_spacing
            wp.int32,  # order
            wp.array3d(dtype=t),  # coefficients
            wp.array2d(dtype=wp.vec3i),  # indices
            wp.array2d(dtype=t),  # stencil_weights
        ],
    )
    _cached_assignment_stencil_kernel_overload[t] = wp.overload(
        _cached_assignment_stencil_kernel,
        [
            wp.array3d(dtype=t),  # weights
            wp.array(dtype=wp.vec3i),  # lower_left
            wp.int32,  # order
            wp.array2d(dtype=wp.vec3i),  # indices
            wp.array2d(dtype=t),  # stencil_weights
        ],
    )
    _spline_spread_kernel_overload[t] = wp.overload(
        _spline_spread_kernel,
        [
            wp.array(dtype=v),  # positions
            wp.array(dtype=t),  # values
            v,  # mesh_offset
            v,  # inverse_spacing
            wp.int32,  # order
            wp.array3d(dtype=t),  # coefficients
            wp.array3d(dtype=t),  # mesh
        ],
    )
    _spline_spread_cached_kernel_overload[t] = wp.overload(
        _spline_spread_cached_kernel,
        [
            wp.array3d(dtype=t),  # weights
            wp.array(dtype=wp.vec3i),  # lower_left
            wp.array(dtype=t),  # values
            wp.int32,  # order
            wp.array3d(dtype=t),  # mesh
        ],
    )
    _spline_gather_channels_kernel_overload[t] = wp.overload(
        _spline_gather_channels_kernel,
        [
            wp.array(dtype=v),  # positions
            wp.array(dtype=t),  # values
            v,  # mesh_offset
            v,  # inverse_spacing
            wp.int32,  # order
            wp.array3d(dtype=t),  # coefficients
            wp.array(dtype=t, ndim=4),  # mesh
            wp.array2d(dtype=t),  # output
        ],
    )
    _spline_gather_channels_cached_kernel_overload[t] = wp.overload(
        _spline_gather_channels_cached_kernel,
        [
            wp.array3d(dtype=t),  # weights
            wp.array(dtype=wp.vec3i),  # lower_left
            wp.array(dtype=t),  # values
            wp.int32,  # order
            wp.array(dtype=t, ndim=4),  # mesh
            wp.array2d(dtype=t),  # output
        ],
    )


###########################################################################################
########################### Warp Launcher Functions #######################################
###########################################################################################


def _check_order(order: int) -> None:
    if not 1 <= order <= MAX_ORDER:
        raise ValueError(f"Assignment order must be in [1, {MAX_ORDER}], got {order}")


def bspline_weight_launcher(
    x: wp.array,
    i: int,
    order: int,
    weights: wp.array,
    wp_dtype: type,
    device: str | None = None,
) -> None:
    """Evaluate the i-th closed-form weight polynomial for an array of offsets.

    Parameters
    ----------
    x : wp.array, shape (N,)
        Normalised offsets in ``[-0.5, 0.5)``.
    i : int
        Support point index in ``[0, order)``.
    order : int
        Assignment order (1-7).
    weights : wp.array, shape (N,)
        OUTPUT: ``W_i(x)``.
    wp_dtype : type
        Warp scalar dtype.
    device : str | None
        Warp device string.
    """
    _check_order(order)
    if not 0 <= i < order:
        raise ValueError(f"Support index {i} outside [0, {order})")
    wp.launch(
        _bspline_weight_kernel_overload[wp_dtype],
        dim=x.shape[0],
        inputs=[
            x,
            wp.int32(i),
            wp.int32(order),
            get_bspline_coefficients(wp_dtype, device),
        ],
        outputs=[weights],
        device=device,
    )


def tabulate_bspline_weights(
    order: int,
    resolution: int,
    table: wp.array,
    wp_dtype: type,
    device: str | None = None,
) -> None:
    """Fill a weight table for nearest-bin lookup.

    Parameters
    ----------
    order : int
        Assignment order (1-7).
    resolution : int
        Half the number of intervals ``n``; the table has ``2n + 1`` rows.
    table : wp.array2d, shape (2 * resolution + 1, order)
        OUTPUT: ``table[k, i] = W_i(-0.5 + k / (2n))``.
    wp_dtype : type
        Warp scalar dtype.
    device : str | None
        Warp device string.
    """
    _check_order(order)
    if resolution < 1:
        raise ValueError(f"Table resolution must be positive, got {resolution}")
    wp.launch(
        _tabulate_bspline_kernel_overload[wp_dtype],
        dim=(2 * resolution + 1, order),
        inputs=[
            wp.int32(order),
            wp.int32(resolution),
            get_bspline_coefficients(wp_dtype, device),
        ],
        outputs=[table],
        device=device,
    )


def compute_assignment_cache(
    positions: wp.array,
    mesh_offset: Any,
    inverse_spacing: Any,
    order: int,
    weights: wp.array,
    lower_left: wp.array,
    wp_dtype: type,
    device: str | None = None,
    table: wp.array | None = None,
    resolution: int = 0,
) -> None:
    """Precompute per-particle axis weights and lower-left support indices.

    Parameters
    ----------
    positions : wp.array, shape (N,), dtype=wp.vec3f or wp.vec3d
        Particle positions.
    mesh_offset : wp.vec3f or wp.vec3d
        Position of mesh point (0, 0, 0).
    inverse_spacing : wp.vec3f or wp.vec3d
        Reciprocal mesh spacing per axis.
    order : int
        Assignment order (1-7).
    weights : wp.array3d, shape (N, 3, order)
        OUTPUT: axis weights.
    lower_left : wp.array, shape (N,), dtype=wp.vec3i
        OUTPUT: lower-left support indices.
    wp_dtype : type
        Warp scalar dtype.
    device : str | None
        Warp device string.
    table : wp.array2d | None
        If given, weights are read from this table (see
        ``tabulate_bspline_weights``) instead of evaluated.
    resolution : int
        Resolution the table was built with.
    """
    _check_order(order)
    num_atoms = positions.shape[0]
    if num_atoms == 0:
        return
    if table is None:
        wp.launch(
            _assignment_cache_kernel_overload[wp_dtype],
            dim=num_atoms,
            inputs=[
                positions,
                mesh_offset,
                inverse_spacing,
                wp.int32(order),
                get_bspline_coefficients(wp_dtype, device),
            ],
            outputs=[weights, lower_left],
            device=device,
        )
    else:
        wp.launch(
            _tabulated_assignment_cache_kernel_overload[wp_dtype],
            dim=num_atoms,
            inputs=[
                positions,
                mesh_offset,
                inverse_spacing,
                wp.int32(order),
                wp.int32(resolution),
                table,
            ],
            outputs=[weights, lower_left],
            device=device,
        )


def assignment_stencil(
    positions: wp.array,
    mesh_offset: Any,
    inverse_spacing: Any,
    order: int,
    indices: wp.array,
    stencil_weights: wp.array,
    wp_dtype: type,
    device: str | None = None,
) -> None:
    """Write all ``order**3`` (index, weight) events per particle, direct mode.

    Parameters
    ----------
    indices : wp.array2d, shape (N, order**3), dtype=wp.vec3i
        OUTPUT: unwrapped mesh index triples.
    stencil_weights : wp.array2d, shape (N, order**3)
        OUTPUT: products of the three axis weights.
    """
    _check_order(order)
    num_atoms = positions.shape[0]
    if num_atoms == 0:
        return
    wp.launch(
        _assignment_stencil_kernel_overload[wp_dtype],
        dim=(num_atoms, order**3),
        inputs=[
            positions,
            mesh_offset,
            inverse_spacing,
            wp.int32(order),
            get_bspline_coefficients(wp_dtype, device),
        ],
        outputs=[indices, stencil_weights],
        device=device,
    )


def cached_assignment_stencil(
    weights: wp.array,
    lower_left: wp.array,
    order: int,
    indices: wp.array,
    stencil_weights: wp.array,
    wp_dtype: type,
    device: str | None = None,
) -> None:
    """Write all ``order**3`` (index, weight) events per particle from a cache."""
    num_atoms = lower_left.shape[0]
    if num_atoms == 0:
        return
    wp.launch(
        _cached_assignment_stencil_kernel_overload[wp_dtype],
        dim=(num_atoms, order**3),
        inputs=[weights, lower_left, wp.int32(order)],
        outputs=[indices, stencil_weights],
        device=device,
    )


def spline_spread(
    positions: wp.array,
    values: wp.array,
    mesh_offset: Any,
    inverse_spacing: Any,
    order: int,
    mesh: wp.array,
    wp_dtype: type,
    device: str | None = None,
) -> None:
    """Spread values from particles to a periodic mesh, computing weights.

    Parameters
    ----------
    positions : wp.array, shape (N,), dtype=wp.vec3f or wp.vec3d
        Particle positions.
    values : wp.array, shape (N,), dtype=wp.float32 or wp.float64
        Values to spread (e.g., charges).
    mesh_offset : wp.vec3f or wp.vec3d
        Position of mesh point (0, 0, 0).
    inverse_spacing : wp.vec3f or wp.vec3d
        Reciprocal mesh spacing per axis.
    order : int
        Assignment order (1-7).
    mesh : wp.array3d, shape (nx, ny, nz)
        OUTPUT: Mesh to accumulate values. Must be zero-initialized.
    wp_dtype : type
        Warp scalar dtype (wp.float32 or wp.float64).
    device : str | None
        Warp device string. If None, inferred from arrays.
    """
    _check_order(order)
    num_atoms = positions.shape[0]
    if num_atoms == 0:
        return
    wp.launch(
        _spline_spread_kernel_overload[wp_dtype],
        dim=(num_atoms, order**3),
        inputs=[
            positions,
            values,
            mesh_offset,
            inverse_spacing,
            wp.int32(order),
            get_bspline_coefficients(wp_dtype, device),
        ],
        outputs=[mesh],
        device=device,
    )


def spline_spread_cached(
    weights: wp.array,
    lower_left: wp.array,
    values: wp.array,
    order: int,
    mesh: wp.array,
    wp_dtype: type,
    device: str | None = None,
) -> None:
    """Spread values from particles to a periodic mesh using cached weights."""
    num_atoms = lower_left.shape[0]
    if num_atoms == 0:
        return
    wp.launch(
        _spline_spread_cached_kernel_overload[wp_dtype],
        dim=(num_atoms, order**3),
        inputs=[weights, lower_left, values, wp.int32(order)],
        outputs=[mesh],
        device=device,
    )


def spline_gather_channels(
    positions: wp.array,
    values: wp.array,
    mesh_offset: Any,
    inverse_spacing: Any,
    order: int,
    mesh: wp.array,
    output: wp.array,
    wp_dtype: type,
    device: str | None = None,
) -> None:
    """Gather value-weighted multi-channel mesh fields, computing weights.

    Parameters
    ----------
    mesh : wp.array4d, shape (C, nx, ny, nz)
        Mesh fields to interpolate.
    output : wp.array2d, shape (N, C)
        OUTPUT: ``values[atom] * field_c(atom)``. Must be zero-initialized.
    """
    _check_order(order)
    num_atoms = positions.shape[0]
    if num_atoms == 0:
        return
    wp.launch(
        _spline_gather_channels_kernel_overload[wp_dtype],
        dim=(num_atoms, order**3),
        inputs=[
            positions,
            values,
            mesh_offset,
            inverse_spacing,
            wp.int32(order),
            get_bspline_coefficients(wp_dtype, device),
            mesh,
        ],
        outputs=[output],
        device=device,
    )


def spline_gather_channels_cached(
    weights: wp.array,
    lower_left: wp.array,
    values: wp.array,
    order: int,
    mesh: wp.array,
    output: wp.array,
    wp_dtype: type,
    device: str | None = None,
) -> None:
    """Gather value-weighted multi-channel mesh fields using cached weights."""
    num_atoms = lower_left.shape[0]
    if num_atoms == 0:
        return
    wp.launch(
        _spline_gather_channels_cached_kernel_overload[wp_dtype],
        dim=(num_atoms, order**3),
        inputs=[weights, lower_left, values, wp.int32(order), mesh],
        outputs=[output],
        device=device,
    )
