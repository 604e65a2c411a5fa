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
Short-Range Coulomb Pair Laws - Warp Kernel Implementation
==========================================================

This module evaluates pairwise electrostatic interactions over a half-filled
neighbor matrix in an orthorhombic periodic box. Each pair (i, j) appears once,
so the full pair energy is credited to atom ``i`` and Newton's third law is
applied to the forces.

Pair Laws
---------

With :math:`r_{ij} = r_i - r_j - S \\circ L` for the integer image shift
:math:`S` of the pair:

1. Damped Coulomb (Ewald/P3M real space), ``PAIR_LAW_DAMPED``:

   .. math::

       E_{ij} = q_i q_j \\frac{\\text{erfc}(\\alpha r)}{r}

   ``alpha = 0`` gives the bare Coulomb law.

2. Debye-Hueckel (screened Coulomb), ``PAIR_LAW_DEBYE_HUECKEL``:

   .. math::

       E_{ij} = q_i q_j \\frac{e^{-\\kappa r}}{r}, \\quad
       F_{ij} = q_i q_j \\frac{e^{-\\kappa r}(1 + \\kappa r)}{r^3} r_{ij}

3. Reaction field, ``PAIR_LAW_REACTION_FIELD``:

   .. math::

       E_{ij} = q_i q_j \\left(\\frac{1}{r} - \\frac{B r^2}{2 r_c^3}
       - \\frac{1 - B/2}{r_c}\\right), \\quad
       F_{ij} = q_i q_j \\left(\\frac{1}{r^3} + \\frac{B}{r_c^3}\\right) r_{ij}

Every kernel also accumulates the pair virial :math:`W = \\sum r_{ij} \\otimes F_{ij}`.

References
----------
- Allen & Tildesley, "Computer Simulation of Liquids" (1987)
- Tironi et al., J. Chem. Phys. 102, 5451 (1995) - reaction field
"""

from __future__ import annotations

import math
from typing import Any

import warp as wp

from p3mops.math import wp_erfc

__all__ = [
    "PAIR_LAW_DAMPED",
    "PAIR_LAW_DEBYE_HUECKEL",
    "PAIR_LAW_REACTION_FIELD",
    "pair_energy_forces_matrix",
]

PAIR_LAW_DAMPED = wp.constant(0)
PAIR_LAW_DEBYE_HUECKEL = wp.constant(1)
PAIR_LAW_REACTION_FIELD = wp.constant(2)

TWO_OVER_SQRT_PI = wp.constant(2.0 / math.sqrt(math.pi))

# ==============================================================================
# Warp Functions
# ==============================================================================


@wp.func
def pair_law(r: Any, law: wp.int32, parameter: Any, cutoff: Any):
    """Unit-charge pair energy and ``|F| / r`` for one separation.

    ``parameter`` is ``alpha`` for the damped law, ``kappa`` for Debye-Hueckel
    and the reaction-field constant ``B`` for the reaction field.
    """
    one = type(r)(1.0)
    inv_r = one / r
    inv_r3 = inv_r * inv_r * inv_r

    if law == PAIR_LAW_DEBYE_HUECKEL:
        screening = wp.exp(-parameter * r)
        return screening * inv_r, screening * (one + parameter * r) * inv_r3

    if law == PAIR_LAW_REACTION_FIELD:
        inv_rc3 = one / (cutoff * cutoff * cutoff)
        energy = (
            inv_r
            - parameter * r * r * type(r)(0.5) * inv_rc3
            - (one - type(r)(0.5) * parameter) / cutoff
        )
        return energy, inv_r3 + parameter * inv_rc3

    alpha_r = parameter * r
    erfc_term = wp_erfc(alpha_r)
    exp_term = wp.exp(-alpha_r * alpha_r)
    force_over_r = erfc_term * inv_r3 + type(r)(
        TWO_OVER_SQRT_PI
    ) * parameter * exp_term * inv_r * inv_r
    return erfc_term * inv_r, force_over_r


# ==============================================================================
# Warp Kernels - Neighbor Matrix Format
# ==============================================================================


@wp.kernel(enable_backward=False)
def _pair_energy_forces_matrix_kernel(
    positions: wp.array(dtype=Any),
    charges: wp.array(dtype=Any),
    box: Any,
    neighbor_matrix: wp.array2d(dtype=wp.int32),
    neighbor_matrix_shifts: wp.array2d(dtype=wp.vec3i),
    num_neighbors: wp.array(dtype=wp.int32),
    cutoff: Any,
    law: wp.int32,
    parameter: Any,
    atomic_energies: wp.array(dtype=Any),
    atomic_forces: wp.array(dtype=Any),
    virial: wp.array(dtype=Any),
):
    """Compute pair energies, forces and the virial over a half neighbor matrix.

    Launch Grid: dim = [num_atoms]
    Each thread processes one atom and loops over its stored neighbors.
    ``cutoff <= 0`` disables the distance check.
    """
    atom_idx = wp.tid()
    num_atoms = positions.shape[0]

    ri = positions[atom_idx]
    qi = charges[atom_idx]
    zero = qi - qi
    tiny = type(qi)(1e-10)

    energy_acc = zero
    force_acc = type(ri)(zero, zero, zero)
    virial_acc = wp.outer(force_acc, force_acc)

    for neighbor_slot in range(num_neighbors[atom_idx]):
        j = neighbor_matrix[atom_idx, neighbor_slot]
        if j >= num_atoms:
            continue

        shift = neighbor_matrix_shifts[atom_idx, neighbor_slot]
        shift_vec = wp.cw_mul(box, type(ri)(shift))
        r_ij = ri - positions[j] - shift_vec
        r = wp.length(r_ij)

        if r < tiny:
            continue
        if cutoff > zero and r >= cutoff:
            continue

        energy, force_over_r = pair_law(r, law, parameter, cutoff)
        qq = qi * charges[j]
        force_ij = (qq * force_over_r) * r_ij

        energy_acc += qq * energy
        force_acc += force_ij
        virial_acc += wp.outer(r_ij, force_ij)
        wp.atomic_add(atomic_forces, j, -force_ij)

    wp.atomic_add(atomic_energies, atom_idx, energy_acc)
    wp.atomic_add(atomic_forces, atom_idx, force_acc)
    wp.atomic_add(virial, 0, virial_acc)


# ==============================================================================
# Kernel Overloads
# ==============================================================================

_T = [wp.float32, wp.float64]
_V = [wp.vec3f, wp.vec3d]
_M = [wp.mat33f, wp.mat33d]

_pair_energy_forces_matrix_kernel_overload = {}

for t, v, m in zip(_T, _V, _M):
    _pair_energy_forces_matrix_kernel_overload[t] = wp.overload(
        _pair_energy_forces_matrix_kernel,
        [
            wp.array(dtype=v),  # positions
            wp.array(dtype=t),  # charges
            v,  # box
            wp.array2d(dtype=wp.int32),  # neighbor_matrix
            wp.array2d(dtype=wp.vec3i),  # neighbor_matrix_shifts
            wp.array(dtype=wp.int32),  # num_neighbors
            t,  # cutoff
            wp.int32,  # law
            t,  # parameter
            wp.array(dtype=t),  # atomic_energies
            wp.array(dtype=v),  # atomic_forces
            wp.array(dtype=m),  # virial
        ],
    )


# ==============================================================================
# Warp Launchers (Framework-Agnostic)
# ==============================================================================


def pair_energy_forces_matrix(
    positions: wp.array,
    charges: wp.array,
    box: Any,
    neighbor_matrix: wp.array,
    neighbor_matrix_shifts: wp.array,
    num_neighbors: wp.array,
    cutoff: float,
    law: int,
    parameter: float,
    energies: wp.array,
    forces: wp.array,
    virial: wp.array,
    wp_dtype: type,
    device: str | None = None,
) -> None:
    """Launch the short-range pair kernel over a half neighbor matrix.

    Parameters
    ----------
    positions : wp.array, shape (N,), dtype=wp.vec3f or wp.vec3d
        Atomic positions.
    charges : wp.array, shape (N,), dtype=wp.float32 or wp.float64
        Atomic charges.
    box : wp.vec3f or wp.vec3d
        Orthorhombic box lengths.
    neighbor_matrix : wp.array2d, shape (N, max_neighbors), dtype=wp.int32
        Neighbor indices, each pair stored once.
    neighbor_matrix_shifts : wp.array2d, shape (N, max_neighbors), dtype=wp.vec3i
        Integer image shifts of each pair.
    num_neighbors : wp.array, shape (N,), dtype=wp.int32
        Number of valid entries per row.
    cutoff : float
        Interaction cutoff. ``0`` disables the distance check.
    law : int
        One of ``PAIR_LAW_DAMPED``, ``PAIR_LAW_DEBYE_HUECKEL``,
        ``PAIR_LAW_REACTION_FIELD``.
    parameter : float
        ``alpha``, ``kappa`` or ``B`` depending on ``law``.
    energies : wp.array, shape (N,)
        OUTPUT: Per-atom energies. Must be pre-allocated and zeroed.
    forces : wp.array, shape (N,)
        OUTPUT: Per-atom forces. Must be pre-allocated and zeroed.
    virial : wp.array, shape (1,), dtype=wp.mat33f or wp.mat33d
        OUTPUT: Pair virial. Must be pre-allocated and zeroed.
    wp_dtype : type
        Warp scalar dtype.
    device : str, optional
        Warp device. If None, inferred from positions.
    """
    num_atoms = positions.shape[0]
    if num_atoms == 0:
        return
    if device is None:
        device = str(positions.device)

    wp.launch(
        _pair_energy_forces_matrix_kernel_overload[wp_dtype],
        dim=num_atoms,
        inputs=[
            positions,
            charges,
            box,
            neighbor_matrix,
            neighbor_matrix_shifts,
            num_neighbors,
            wp_dtype(cutoff),
            wp.int32(law),
            wp_dtype(parameter),
        ],
        outputs=[energies, forces, virial],
        device=device,
    )
