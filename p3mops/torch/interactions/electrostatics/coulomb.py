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

r"""
Short-Range Coulomb Pair Laws - PyTorch Bindings
================================================

This module provides PyTorch bindings for the short-range pair kernels in
``p3mops.interactions.electrostatics.coulomb``. All functions take a
half-filled neighbor matrix, as produced by
:func:`p3mops.torch.neighbors.cell_list`, and return per-atom energies,
forces and the pair virial :math:`W = \sum r_{ij} \otimes F_{ij}`.

Public API
----------
- ``pair_energy_forces()``: Any pair law selected by name
- ``damped_coulomb_energy_forces()``: Ewald/P3M real-space part
- ``debye_hueckel_energy_forces()``: Screened Coulomb
- ``reaction_field_energy_forces()``: Reaction field

Examples
--------
>>> neighbor_matrix, num_neighbors, shifts = cell_list(positions, 3.0, box)
>>> energies, forces, virial = damped_coulomb_energy_forces(
...     positions, charges, box, neighbor_matrix, num_neighbors, shifts,
...     alpha=0.8, cutoff=3.0,
... )
"""

from __future__ import annotations

from collections.abc import Sequence

import torch
import warp as wp

from p3mops.interactions.electrostatics.coulomb import (
    PAIR_LAW_DAMPED,
    PAIR_LAW_DEBYE_HUECKEL,
    PAIR_LAW_REACTION_FIELD,
)
from p3mops.interactions.electrostatics.coulomb import (
    pair_energy_forces_matrix as wp_pair_energy_forces_matrix,
)
from p3mops.torch.interactions.electrostatics.parameters import (
    reaction_field_constant,
)
from p3mops.types import get_wp_dtype, get_wp_mat_dtype, get_wp_vec_dtype

__all__ = [
    "PAIR_LAWS",
    "pair_energy_forces",
    "damped_coulomb_energy_forces",
    "debye_hueckel_energy_forces",
    "reaction_field_energy_forces",
]

PAIR_LAWS = {
    "damped": PAIR_LAW_DAMPED,
    "debye_hueckel": PAIR_LAW_DEBYE_HUECKEL,
    "reaction_field": PAIR_LAW_REACTION_FIELD,
}


def _box_list(box: torch.Tensor | Sequence[float]) -> list[float]:
    if isinstance(box, torch.Tensor):
        return [float(v) for v in box.detach().reshape(-1).cpu().tolist()]
    return [float(v) for v in box]


# ==============================================================================
# Internal Custom Op - Neighbor Matrix Format
# ==============================================================================


@torch.library.custom_op("p3mops::_pair_energy_forces_matrix", mutates_args=())
def _pair_energy_forces_matrix(
    positions: torch.Tensor,
    charges: torch.Tensor,
    box: list[float],
    neighbor_matrix: torch.Tensor,
    num_neighbors: torch.Tensor,
    neighbor_matrix_shifts: torch.Tensor,
    cutoff: float,
    law: int,
    parameter: float,
) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """Internal: pair energies, forces and virial over a half neighbor matrix."""
    num_atoms = positions.shape[0]
    dtype = positions.dtype
    device = positions.device

    energies = torch.zeros((num_atoms,), dtype=dtype, device=device)
    forces = torch.zeros((num_atoms, 3), dtype=dtype, device=device)
    virial = torch.zeros((1, 3, 3), dtype=dtype, device=device)
    if num_atoms == 0 or neighbor_matrix.shape[1] == 0:
        return energies, forces, torch.zeros((3, 3), dtype=dtype, device=device)

    wp_dtype = get_wp_dtype(dtype)
    wp_vec_dtype = get_wp_vec_dtype(dtype)
    wp_mat_dtype = get_wp_mat_dtype(dtype)

    wp_pair_energy_forces_matrix(
        positions=wp.from_torch(positions, dtype=wp_vec_dtype, return_ctype=True),
        charges=wp.from_torch(charges, dtype=wp_dtype, return_ctype=True),
        box=wp_vec_dtype(*box),
        neighbor_matrix=wp.from_torch(neighbor_matrix, dtype=wp.int32, return_ctype=True),
        neighbor_matrix_shifts=wp.from_torch(
            neighbor_matrix_shifts, dtype=wp.vec3i, return_ctype=True
        ),
        num_neighbors=wp.from_torch(num_neighbors, dtype=wp.int32, return_ctype=True),
        cutoff=cutoff,
        law=law,
        parameter=parameter,
        energies=wp.from_torch(energies, dtype=wp_dtype, return_ctype=True),
        forces=wp.from_torch(forces, dtype=wp_vec_dtype, return_ctype=True),
        virial=wp.from_torch(virial, dtype=wp_mat_dtype, return_ctype=True),
        wp_dtype=wp_dtype,
        device=str(device),
    )
    return energies, forces, virial[0].clone()


@_pair_energy_forces_matrix.register_fake
def _pair_energy_forces_matrix_fake(
    positions: torch.Tensor,
    charges: torch.Tensor,
    box: list[float],
    neighbor_matrix: torch.Tensor,
    num_neighbors: torch.Tensor,
    neighbor_matrix_shifts: torch.Tensor,
    cutoff: float,
    law: int,
    parameter: float,
) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """Fake implementation for torch.compile tracing."""
    num_atoms = positions.shape[0]
    return (
        positions.new_empty((num_atoms,)),
        positions.new_empty((num_atoms, 3)),
        positions.new_empty((3, 3)),
    )


# ==============================================================================
# Public API
# ==============================================================================


def pair_energy_forces(
    positions: torch.Tensor,
    charges: torch.Tensor,
    box: torch.Tensor | Sequence[float],
    neighbor_matrix: torch.Tensor,
    num_neighbors: torch.Tensor,
    neighbor_matrix_shifts: torch.Tensor,
    law: str,
    parameter: float,
    cutoff: float = 0.0,
    prefactor: float = 1.0,
) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    r"""Short-range pair energies, forces and virial.

    Parameters
    ----------
    positions : torch.Tensor, shape (N, 3)
        Atomic positions.
    charges : torch.Tensor, shape (N,)
        Atomic charges.
    box : torch.Tensor | Sequence[float], shape (3,)
        Orthorhombic box lengths.
    neighbor_matrix : torch.Tensor, shape (N, max_neighbors), dtype=int32
        Half-filled neighbor matrix. Entries ``>= N`` are padding.
    num_neighbors : torch.Tensor, shape (N,), dtype=int32
        Valid entries per row.
    neighbor_matrix_shifts : torch.Tensor, shape (N, max_neighbors, 3), dtype=int32
        Integer image shift of each pair.
    law : str
        One of ``"damped"``, ``"debye_hueckel"``, ``"reaction_field"``.
    parameter : float
        ``alpha``, ``kappa`` or the reaction-field constant ``B``.
    cutoff : float, default=0.0
        Interaction cutoff. 0 disables the distance check.
    prefactor : float, default=1.0
        Coulomb constant.

    Returns
    -------
    energies : torch.Tensor, shape (N,)
        Per-atom energies. Each pair energy is credited to its first atom.
    forces : torch.Tensor, shape (N, 3)
    virial : torch.Tensor, shape (3, 3)
        :math:`\sum_{ij} r_{ij} \otimes F_{ij}`.

    Raises
    ------
    ValueError
        If ``law`` is unknown.
    """
    if law not in PAIR_LAWS:
        raise ValueError(f"Unknown pair law {law!r}; expected one of {sorted(PAIR_LAWS)}")
    num_neighbors = num_neighbors.to(torch.int32)
    num_neighbors = num_neighbors.clamp(max=neighbor_matrix.shape[1])
    energies, forces, virial = _pair_energy_forces_matrix(
        positions.contiguous(),
        charges.to(positions.dtype).contiguous(),
        _box_list(box),
        neighbor_matrix.contiguous(),
        num_neighbors.contiguous(),
        neighbor_matrix_shifts.contiguous(),
        float(cutoff),
        int(PAIR_LAWS[law]),
        float(parameter),
    )
    if prefactor != 1.0:
        energies = energies * prefactor
        forces = forces * prefactor
        virial = virial * prefactor
    return energies, forces, virial


def damped_coulomb_energy_forces(
    positions: torch.Tensor,
    charges: torch.Tensor,
    box: torch.Tensor | Sequence[float],
    neighbor_matrix: torch.Tensor,
    num_neighbors: torch.Tensor,
    neighbor_matrix_shifts: torch.Tensor,
    alpha: float,
    cutoff: float = 0.0,
    prefactor: float = 1.0,
) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """Real-space Ewald pair law ``q_i q_j erfc(alpha r) / r``.

    ``alpha = 0`` gives the bare Coulomb law. See :func:`pair_energy_forces`.
    """
    return pair_energy_forces(
        positions,
        charges,
        box,
        neighbor_matrix,
        num_neighbors,
        neighbor_matrix_shifts,
        "damped",
        alpha,
        cutoff,
        prefactor,
    )


def debye_hueckel_energy_forces(
    positions: torch.Tensor,
    charges: torch.Tensor,
    box: torch.Tensor | Sequence[float],
    neighbor_matrix: torch.Tensor,
    num_neighbors: torch.Tensor,
    neighbor_matrix_shifts: torch.Tensor,
    kappa: float,
    cutoff: float = 0.0,
    prefactor: float = 1.0,
) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """Screened Coulomb pair law ``q_i q_j exp(-kappa r) / r``."""
    return pair_energy_forces(
        positions,
        charges,
        box,
        neighbor_matrix,
        num_neighbors,
        neighbor_matrix_shifts,
        "debye_hueckel",
        kappa,
        cutoff,
        prefactor,
    )


def reaction_field_energy_forces(
    positions: torch.Tensor,
    charges: torch.Tensor,
    box: torch.Tensor | Sequence[float],
    neighbor_matrix: torch.Tensor,
    num_neighbors: torch.Tensor,
    neighbor_matrix_shifts: torch.Tensor,
    kappa: float,
    epsilon1: float,
    epsilon2: float,
    cutoff: float,
    prefactor: float = 1.0,
) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """Reaction-field pair law for a dielectric continuum beyond ``cutoff``.

    The energy vanishes at the cutoff. See
    :func:`~p3mops.torch.interactions.electrostatics.parameters.reaction_field_constant`.
    """
    if cutoff <= 0.0:
        raise ValueError(f"The reaction field needs a positive cutoff, got {cutoff}")
    return pair_energy_forces(
        positions,
        charges,
        box,
        neighbor_matrix,
        num_neighbors,
        neighbor_matrix_shifts,
        "reaction_field",
        reaction_field_constant(kappa, epsilon1, epsilon2, cutoff),
        cutoff,
        prefactor,
    )
