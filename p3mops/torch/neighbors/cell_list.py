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

"""PyTorch bindings for the linked-cell Verlet pair list."""

from __future__ import annotations

from collections.abc import Sequence

import torch
import warp as wp

from p3mops.neighbors.cell_list import build_cell_list as wp_build_cell_list
from p3mops.neighbors.cell_list import (
    build_neighbor_cell_table as wp_build_neighbor_cell_table,
)
from p3mops.neighbors.cell_list import (
    compute_cells_per_dimension as wp_compute_cells_per_dimension,
)
from p3mops.neighbors.cell_list import query_cell_list as wp_query_cell_list
from p3mops.neighbors.neighbor_utils import estimate_max_neighbors
from p3mops.torch.neighbors.neighbor_utils import (
    allocate_cell_list,
    check_neighbor_overflow,
    get_neighbor_list_from_neighbor_matrix,
)
from p3mops.types import get_wp_dtype, get_wp_vec_dtype

__all__ = [
    "box_lengths",
    "default_pbc",
    "estimate_cell_list_sizes",
    "build_cell_list",
    "query_cell_list",
    "cell_list",
]

DEFAULT_MAX_NBINS = 32768


def box_lengths(box: torch.Tensor | Sequence[float]) -> list[float]:
    """Return the three orthorhombic box lengths as Python floats.

    Raises
    ------
    ValueError
        If the box does not have three strictly positive lengths.
    """
    if isinstance(box, torch.Tensor):
        lengths = [float(v) for v in box.detach().reshape(-1).cpu().tolist()]
    else:
        lengths = [float(v) for v in box]
    if len(lengths) != 3:
        raise ValueError(f"Box must have 3 lengths, got {len(lengths)}")
    if min(lengths) <= 0.0:
        raise ValueError(f"Box lengths must be positive, got {lengths}")
    return lengths


def default_pbc(device: torch.device | str) -> torch.Tensor:
    """Fully periodic boundary flags."""
    return torch.ones(3, dtype=torch.bool, device=device)


def _check_search_radius(
    lengths: list[float], pbc: torch.Tensor, search_radius: float
) -> None:
    for axis, (length, periodic) in enumerate(zip(lengths, pbc.reshape(-1).tolist())):
        if periodic and length < search_radius:
            raise ValueError(
                f"Box length {length} along axis {axis} is smaller than the pair "
                f"search radius {search_radius}"
            )


def estimate_cell_list_sizes(
    box: torch.Tensor | Sequence[float],
    cell_size: float,
    max_nbins: int = DEFAULT_MAX_NBINS,
    dtype: torch.dtype = torch.float64,
    device: torch.device | str = "cpu",
) -> tuple[int, torch.Tensor]:
    """Compute the cell grid used for a box and minimum cell edge.

    This function is not torch.compile compatible because it returns an integer
    received from using torch.Tensor.item().

    Parameters
    ----------
    box : torch.Tensor | Sequence[float], shape (3,)
        Orthorhombic box lengths.
    cell_size : float
        Minimum cell edge, normally ``cutoff + skin``.
    max_nbins : int
        Maximum total number of cells.
    dtype : torch.dtype
        Floating point precision of the computation.
    device : torch.device | str
        Device to run on.

    Returns
    -------
    total_cells : int
        Number of inner cells ``nx * ny * nz``.
    cells_per_dimension : torch.Tensor, shape (3,), dtype=int32
    """
    if cell_size <= 0:
        raise ValueError(f"Cell size must be positive, got {cell_size}")
    lengths = box_lengths(box)
    wp_dtype = get_wp_dtype(dtype)
    wp_vec_dtype = get_wp_vec_dtype(dtype)
    cells_per_dimension = torch.zeros((3,), dtype=torch.int32, device=device)

    wp_compute_cells_per_dimension(
        wp_vec_dtype(*lengths),
        cell_size,
        max_nbins,
        wp.from_torch(cells_per_dimension, dtype=wp.int32),
        wp_dtype,
        str(cells_per_dimension.device),
    )
    return int(torch.prod(cells_per_dimension).item()), cells_per_dimension


@torch.library.custom_op(
    "p3mops::build_cell_list",
    mutates_args=(
        "cells_per_dimension",
        "atom_periodic_shifts",
        "atom_cell_index",
        "atoms_per_cell_count",
        "cell_atom_start_indices",
        "cell_atom_list",
        "neighbor_cells",
        "neighbor_cell_shifts",
    ),
)
def _build_cell_list_op(
    positions: torch.Tensor,
    cell_size: float,
    box: list[float],
    pbc: torch.Tensor,
    cells_per_dimension: torch.Tensor,
    atom_periodic_shifts: torch.Tensor,
    atom_cell_index: torch.Tensor,
    atoms_per_cell_count: torch.Tensor,
    cell_atom_start_indices: torch.Tensor,
    cell_atom_list: torch.Tensor,
    neighbor_cells: torch.Tensor,
    neighbor_cell_shifts: torch.Tensor,
) -> None:
    """Internal custom op for binning atoms and filling the neighbor-cell table.

    See Also
    --------
    p3mops.neighbors.cell_list.build_cell_list : Core warp launcher
    build_cell_list : High-level wrapper function
    """
    device = positions.device
    wp_dtype = get_wp_dtype(positions.dtype)
    wp_vec_dtype = get_wp_vec_dtype(positions.dtype)
    wp_device = str(device)

    wp_pbc = wp.from_torch(pbc.reshape(-1), dtype=wp.bool)
    wp_cells_per_dimension = wp.from_torch(cells_per_dimension, dtype=wp.int32)

    # array_scan needs full warp arrays, so return_ctype is omitted throughout
    wp_build_cell_list(
        positions=wp.from_torch(positions, dtype=wp_vec_dtype),
        box=wp_vec_dtype(*box),
        pbc=wp_pbc,
        cell_size=cell_size,
        cells_per_dimension=wp_cells_per_dimension,
        atom_periodic_shifts=wp.from_torch(atom_periodic_shifts, dtype=wp.vec3i),
        atom_cell_index=wp.from_torch(atom_cell_index, dtype=wp.int32),
        atoms_per_cell_count=wp.from_torch(atoms_per_cell_count, dtype=wp.int32),
        cell_atom_start_indices=wp.from_torch(cell_atom_start_indices, dtype=wp.int32),
        cell_atom_list=wp.from_torch(cell_atom_list, dtype=wp.int32),
        wp_dtype=wp_dtype,
        device=wp_device,
    )
    wp_build_neighbor_cell_table(
        cells_per_dimension=wp_cells_per_dimension,
        pbc=wp_pbc,
        neighbor_cells=wp.from_torch(neighbor_cells, dtype=wp.int32),
        neighbor_cell_shifts=wp.from_torch(neighbor_cell_shifts, dtype=wp.vec3i),
        device=wp_device,
    )


def build_cell_list(
    positions: torch.Tensor,
    cell_size: float,
    box: torch.Tensor | Sequence[float],
    pbc: torch.Tensor,
    cells_per_dimension: torch.Tensor,
    atom_periodic_shifts: torch.Tensor,
    atom_cell_index: torch.Tensor,
    atoms_per_cell_count: torch.Tensor,
    cell_atom_start_indices: torch.Tensor,
    cell_atom_list: torch.Tensor,
    neighbor_cells: torch.Tensor,
    neighbor_cell_shifts: torch.Tensor,
) -> None:
    """Bin atoms into cells and build the explicit neighbor-cell table.

    Parameters
    ----------
    positions : torch.Tensor, shape (total_atoms, 3)
        Atomic coordinates. Positions outside the box are wrapped for binning.
    cell_size : float
        Minimum cell edge, normally ``cutoff + skin``.
    box : torch.Tensor | Sequence[float], shape (3,)
        Orthorhombic box lengths.
    pbc : torch.Tensor, shape (3,), dtype=bool
        Periodic boundary condition flags.
    cells_per_dimension, atom_periodic_shifts, atom_cell_index, atoms_per_cell_count, cell_atom_start_indices, cell_atom_list, neighbor_cells, neighbor_cell_shifts : torch.Tensor
        OUTPUT: Cell list tensors from ``allocate_cell_list``.

    See Also
    --------
    p3mops.neighbors.cell_list.build_cell_list : Core warp launcher
    query_cell_list : Query the built cell list for pairs
    """
    return _build_cell_list_op(
        positions.contiguous(),
        cell_size,
        box_lengths(box),
        pbc,
        cells_per_dimension,
        atom_periodic_shifts,
        atom_cell_index,
        atoms_per_cell_count,
        cell_atom_start_indices,
        cell_atom_list,
        neighbor_cells,
        neighbor_cell_shifts,
    )


@torch.library.custom_op(
    "p3mops::query_cell_list",
    mutates_args=("neighbor_matrix", "neighbor_matrix_shifts", "num_neighbors"),
)
def _query_cell_list_op(
    positions: torch.Tensor,
    cutoff: float,
    box: list[float],
    atom_periodic_shifts: torch.Tensor,
    atom_cell_index: torch.Tensor,
    neighbor_cells: torch.Tensor,
    neighbor_cell_shifts: torch.Tensor,
    atoms_per_cell_count: torch.Tensor,
    cell_atom_start_indices: torch.Tensor,
    cell_atom_list: torch.Tensor,
    neighbor_matrix: torch.Tensor,
    neighbor_matrix_shifts: torch.Tensor,
    num_neighbors: torch.Tensor,
) -> None:
    """Internal custom op for the half-shell pair search.

    See Also
    --------
    p3mops.neighbors.cell_list.query_cell_list : Core warp launcher
    query_cell_list : High-level wrapper function
    """
    if positions.shape[0] == 0:
        return

    wp_dtype = get_wp_dtype(positions.dtype)
    wp_vec_dtype = get_wp_vec_dtype(positions.dtype)

    wp_query_cell_list(
        positions=wp.from_torch(positions, dtype=wp_vec_dtype, return_ctype=True),
        box=wp_vec_dtype(*box),
        cutoff=cutoff,
        atom_periodic_shifts=wp.from_torch(
            atom_periodic_shifts, dtype=wp.vec3i, return_ctype=True
        ),
        atom_cell_index=wp.from_torch(atom_cell_index, dtype=wp.int32, return_ctype=True),
        neighbor_cells=wp.from_torch(neighbor_cells, dtype=wp.int32, return_ctype=True),
        neighbor_cell_shifts=wp.from_torch(
            neighbor_cell_shifts, dtype=wp.vec3i, return_ctype=True
        ),
        atoms_per_cell_count=wp.from_torch(
            atoms_per_cell_count, dtype=wp.int32, return_ctype=True
        ),
        cell_atom_start_indices=wp.from_torch(
            cell_atom_start_indices, dtype=wp.int32, return_ctype=True
        ),
        cell_atom_list=wp.from_torch(cell_atom_list, dtype=wp.int32, return_ctype=True),
        neighbor_matrix=wp.from_torch(neighbor_matrix, dtype=wp.int32, return_ctype=True),
        neighbor_matrix_shifts=wp.from_torch(
            neighbor_matrix_shifts, dtype=wp.vec3i, return_ctype=True
        ),
        num_neighbors=wp.from_torch(num_neighbors, dtype=wp.int32, return_ctype=True),
        wp_dtype=wp_dtype,
        device=str(positions.device),
    )


def query_cell_list(
    positions: torch.Tensor,
    cutoff: float,
    box: torch.Tensor | Sequence[float],
    atom_periodic_shifts: torch.Tensor,
    atom_cell_index: torch.Tensor,
    neighbor_cells: torch.Tensor,
    neighbor_cell_shifts: torch.Tensor,
    atoms_per_cell_count: torch.Tensor,
    cell_atom_start_indices: torch.Tensor,
    cell_atom_list: torch.Tensor,
    neighbor_matrix: torch.Tensor,
    neighbor_matrix_shifts: torch.Tensor,
    num_neighbors: torch.Tensor,
) -> None:
    """Fill a half neighbor matrix with every pair closer than ``cutoff``.

    Each atom scans its own cell (partners ``j > i`` only) and the 13
    half-shell neighbor cells, so every pair image is stored exactly once.

    Parameters
    ----------
    positions : torch.Tensor, shape (total_atoms, 3)
        Atomic coordinates, the same used to build the cell list.
    cutoff : float
        Pair search radius, normally ``cutoff + skin``.
    box : torch.Tensor | Sequence[float], shape (3,)
        Orthorhombic box lengths.
    atom_periodic_shifts, atom_cell_index, neighbor_cells, neighbor_cell_shifts, atoms_per_cell_count, cell_atom_start_indices, cell_atom_list : torch.Tensor
        Cell list tensors filled by ``build_cell_list``.
    neighbor_matrix : torch.Tensor, shape (total_atoms, max_neighbors), dtype=int32
        OUTPUT: Neighbor indices. Must be pre-filled with the fill value.
    neighbor_matrix_shifts : torch.Tensor, shape (total_atoms, max_neighbors, 3), dtype=int32
        OUTPUT: Integer box shift of each pair.
    num_neighbors : torch.Tensor, shape (total_atoms,), dtype=int32
        OUTPUT: Pairs found per row. Must be zeroed.
    """
    return _query_cell_list_op(
        positions.contiguous(),
        cutoff,
        box_lengths(box),
        atom_periodic_shifts,
        atom_cell_index,
        neighbor_cells,
        neighbor_cell_shifts,
        atoms_per_cell_count,
        cell_atom_start_indices,
        cell_atom_list,
        neighbor_matrix,
        neighbor_matrix_shifts,
        num_neighbors,
    )


def cell_list(
    positions: torch.Tensor,
    cutoff: float,
    box: torch.Tensor | Sequence[float],
    pbc: torch.Tensor | None = None,
    skin: float = 0.0,
    max_neighbors: int | None = None,
    fill_value: int | None = None,
    return_neighbor_list: bool = False,
    max_nbins: int = DEFAULT_MAX_NBINS,
) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """Build a half Verlet pair list with the linked-cell method.

    Parameters
    ----------
    positions : torch.Tensor, shape (total_atoms, 3)
        Atomic coordinates.
    cutoff : float
        Interaction cutoff.
    box : torch.Tensor | Sequence[float], shape (3,)
        Orthorhombic box lengths.
    pbc : torch.Tensor | None, shape (3,), dtype=bool
        Periodic boundary flags. Defaults to fully periodic.
    skin : float
        Verlet skin. Pairs are collected up to ``cutoff + skin``.
    max_neighbors : int | None
        Width of the neighbor matrix. Estimated from the density when None.
    fill_value : int | None
        Padding value of the neighbor matrix. Defaults to ``total_atoms``.
    return_neighbor_list : bool
        If True, return the COO pair list ``(neighbor_list, neighbor_ptr, shifts)``.
    max_nbins : int
        Maximum number of cells.

    Returns
    -------
    results : tuple of torch.Tensor
        - Matrix format (default): ``(neighbor_matrix, num_neighbors, neighbor_matrix_shifts)``
        - List format (return_neighbor_list=True): ``(neighbor_list, neighbor_ptr, neighbor_list_shifts)``

    Raises
    ------
    NeighborOverflowError
        If an atom has more than ``max_neighbors`` stored pairs.
    ValueError
        If the box is invalid or smaller than the search radius along a periodic axis.
    """
    total_atoms = positions.shape[0]
    device = positions.device
    if pbc is None:
        pbc = default_pbc(device)
    pbc = pbc.reshape(-1).to(device=device, dtype=torch.bool)
    if fill_value is None:
        fill_value = total_atoms

    search_radius = cutoff + skin
    lengths = box_lengths(box)

    if total_atoms <= 0 or search_radius <= 0:
        if return_neighbor_list:
            return (
                torch.zeros((2, 0), dtype=torch.int32, device=device),
                torch.zeros((total_atoms + 1,), dtype=torch.int32, device=device),
                torch.zeros((0, 3), dtype=torch.int32, device=device),
            )
        return (
            torch.full((total_atoms, 0), fill_value, dtype=torch.int32, device=device),
            torch.zeros((total_atoms,), dtype=torch.int32, device=device),
            torch.zeros((total_atoms, 0, 3), dtype=torch.int32, device=device),
        )

    _check_search_radius(lengths, pbc.cpu(), search_radius)

    if max_neighbors is None:
        volume = lengths[0] * lengths[1] * lengths[2]
        max_neighbors = estimate_max_neighbors(
            search_radius, atomic_density=total_atoms / volume
        )

    max_total_cells, _ = estimate_cell_list_sizes(
        lengths, search_radius, max_nbins, dtype=positions.dtype, device=device
    )
    cell_list_cache = allocate_cell_list(total_atoms, max_total_cells, device)

    neighbor_matrix = torch.full(
        (total_atoms, max_neighbors), fill_value, dtype=torch.int32, device=device
    )
    neighbor_matrix_shifts = torch.zeros(
        (total_atoms, max_neighbors, 3), dtype=torch.int32, device=device
    )
    num_neighbors = torch.zeros((total_atoms,), dtype=torch.int32, device=device)

    (
        cells_per_dimension,
        atom_periodic_shifts,
        atom_cell_index,
        atoms_per_cell_count,
        cell_atom_start_indices,
        cell_atom_list,
        neighbor_cells,
        neighbor_cell_shifts,
    ) = cell_list_cache

    build_cell_list(positions, search_radius, lengths, pbc, *cell_list_cache)
    query_cell_list(
        positions,
        search_radius,
        lengths,
        atom_periodic_shifts,
        atom_cell_index,
        neighbor_cells,
        neighbor_cell_shifts,
        atoms_per_cell_count,
        cell_atom_start_indices,
        cell_atom_list,
        neighbor_matrix,
        neighbor_matrix_shifts,
        num_neighbors,
    )
    check_neighbor_overflow(neighbor_matrix, num_neighbors)

    if return_neighbor_list:
        return get_neighbor_list_from_neighbor_matrix(
            neighbor_matrix,
            num_neighbors=num_neighbors,
            neighbor_shift_matrix=neighbor_matrix_shifts,
        )
    return neighbor_matrix, num_neighbors, neighbor_matrix_shifts
