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

"""Core warp kernels and launchers for the linked-cell spatial decomposition.

The orthorhombic box is divided into cells whose edge is at least the pair
search radius (``cutoff + skin``), so every pair within the radius lies in the
same or an adjacent cell. Each cell carries an explicit table of its 26
neighbors, each given as the index of an inner cell plus the integer box shift
of the periodic image it stands for.

See `p3mops.torch.neighbors` for PyTorch bindings.
"""

import itertools
from typing import Any

import numpy as np
import warp as wp

from p3mops.math import wpdivmod
from p3mops.neighbors.neighbor_utils import _record_pair

__all__ = [
    "NEIGHBOR_CELL_OFFSETS",
    "HALF_SHELL_SIZE",
    "compute_cells_per_dimension",
    "build_cell_list",
    "build_neighbor_cell_table",
    "query_cell_list",
]


def _neighbor_cell_offsets() -> np.ndarray:
    """Cell offsets: home cell, then the 13 half-shell cells, then the other 13."""
    offsets = list(itertools.product((-1, 0, 1), repeat=3))
    half_shell = [
        o
        for o in offsets
        if o[0] > 0 or (o[0] == 0 and o[1] > 0) or (o[0] == 0 and o[1] == 0 and o[2] > 0)
    ]
    other = [o for o in offsets if o != (0, 0, 0) and o not in half_shell]
    return np.array([(0, 0, 0)] + half_shell + other, dtype=np.int32)


NEIGHBOR_CELL_OFFSETS = _neighbor_cell_offsets()
# home cell plus the half shell
HALF_SHELL_SIZE = wp.constant(14)

###########################################################################################
########################### Cell List Construction ########################################
###########################################################################################


@wp.func
def _linear_cell_index(coords: wp.vec3i, cells_per_dimension: wp.vec3i) -> wp.int32:
    return coords[0] + cells_per_dimension[0] * (
        coords[1] + cells_per_dimension[1] * coords[2]
    )


@wp.kernel(enable_backward=False)
def _cell_list_construct_bin_size(
    box: Any,
    cells_per_dimension: wp.array(dtype=wp.int32),
    target_cell_size: Any,
    max_cells_allowed: wp.int32,
) -> None:
    """Determine the number of cells per axis.

    Parameters
    ----------
    box : wp.vec3*
        Orthorhombic box lengths.
    cells_per_dimension : wp.array, shape (3,), dtype=wp.int32
        OUTPUT: Number of cells along x, y, z.
    target_cell_size : float
        Minimum cell edge, the pair search radius.
    max_cells_allowed : int
        Maximum total number of cells. Per-axis counts are halved until
        ``nx * ny * nz <= max_cells_allowed``.

    Notes
    -----
    - Thread launch: Single thread (dim=1)
    """
    counts = wp.vec3i(0, 0, 0)
    for i in range(3):
        counts[i] = wp.max(wp.int32(box[i] / target_cell_size), 1)

    total_cells = counts[0] * counts[1] * counts[2]
    while total_cells > max_cells_allowed:
        for i in range(3):
            counts[i] = wp.max(counts[i] // 2, 1)
        total_cells = counts[0] * counts[1] * counts[2]

    for i in range(3):
        cells_per_dimension[i] = counts[i]


@wp.func
def _cell_coordinates(
    position: Any,
    box: Any,
    pbc: wp.array(dtype=wp.bool),
    cells_per_dimension: wp.vec3i,
):
    """Wrapped cell coordinates of a position and the box images it crossed."""
    fractional_position = wp.cw_div(position, box)
    cell_coords = wp.vec3i(0, 0, 0)
    shifts = wp.vec3i(0, 0, 0)
    for dim in range(3):
        raw = wp.int32(
            wp.floor(
                fractional_position[dim]
                * type(fractional_position[dim])(cells_per_dimension[dim])
            )
        )
        if pbc[dim]:
            quotient, remainder = wpdivmod(raw, cells_per_dimension[dim])
            shifts[dim] = quotient
            cell_coords[dim] = remainder
        else:
            cell_coords[dim] = wp.clamp(raw, 0, cells_per_dimension[dim] - 1)
    return cell_coords, shifts


@wp.kernel(enable_backward=False)
def _cell_list_count_atoms_per_bin(
    positions: wp.array(dtype=Any),
    box: Any,
    pbc: wp.array(dtype=wp.bool),
    cells_per_dimension: wp.array(dtype=wp.int32),
    atoms_per_cell_count: wp.array(dtype=wp.int32),
    atom_periodic_shifts: wp.array(dtype=wp.vec3i),
) -> None:
    """Count atoms in each cell and record the periodic image of each atom.

    First pass of the two-pass binning.

    Notes
    -----
    - Thread launch: One thread per atom (dim=total_atoms)
    - Modifies: atoms_per_cell_count (atomically), atom_periodic_shifts
    """
    atom_idx = wp.tid()
    cpd = wp.vec3i(cells_per_dimension[0], cells_per_dimension[1], cells_per_dimension[2])

    cell_coords, shifts = _cell_coordinates(positions[atom_idx], box, pbc, cpd)
    atom_periodic_shifts[atom_idx] = shifts

    wp.atomic_add(atoms_per_cell_count, _linear_cell_index(cell_coords, cpd), 1)


@wp.kernel(enable_backward=False)
def _cell_list_bin_atoms(
    positions: wp.array(dtype=Any),
    box: Any,
    pbc: wp.array(dtype=wp.bool),
    cells_per_dimension: wp.array(dtype=wp.int32),
    atom_cell_index: wp.array(dtype=wp.int32),
    atoms_per_cell_count: wp.array(dtype=wp.int32),
    cell_atom_start_indices: wp.array(dtype=wp.int32),
    cell_atom_list: wp.array(dtype=wp.int32),
) -> None:
    """Scatter atom indices into the flat per-cell atom list.

    Second pass of the two-pass binning. ``atoms_per_cell_count`` must be
    zeroed before the launch and holds the final counts afterwards.

    Notes
    -----
    - Thread launch: One thread per atom (dim=total_atoms)
    - Modifies: atom_cell_index, atoms_per_cell_count, cell_atom_list
    """
    atom_idx = wp.tid()
    cpd = wp.vec3i(cells_per_dimension[0], cells_per_dimension[1], cells_per_dimension[2])

    cell_coords, _ = _cell_coordinates(positions[atom_idx], box, pbc, cpd)
    linear_cell_index = _linear_cell_index(cell_coords, cpd)
    atom_cell_index[atom_idx] = linear_cell_index

    position_in_cell = wp.atomic_add(atoms_per_cell_count, linear_cell_index, 1)
    cell_atom_list[cell_atom_start_indices[linear_cell_index] + position_in_cell] = (
        atom_idx
    )


@wp.kernel(enable_backward=False)
def _cell_list_neighbor_table(
    cells_per_dimension: wp.array(dtype=wp.int32),
    pbc: wp.array(dtype=wp.bool),
    offsets: wp.array(dtype=wp.vec3i),
    neighbor_cells: wp.array2d(dtype=wp.int32),
    neighbor_cell_shifts: wp.array2d(dtype=wp.vec3i),
) -> None:
    """Fill the neighbor-cell table of every inner cell.

    Entry ``k`` of a cell refers to the cell at ``offsets[k]``. It stores the
    index of the inner cell it is an image of and the box shift of that image.
    Missing neighbors across non-periodic faces, and rows past the actual cell
    count, are stored as -1.

    Notes
    -----
    - Thread launch: One thread per allocated cell (dim=max_total_cells)
    """
    cell_idx = wp.tid()
    cpd = wp.vec3i(cells_per_dimension[0], cells_per_dimension[1], cells_per_dimension[2])
    num_offsets = offsets.shape[0]

    if cell_idx >= cpd[0] * cpd[1] * cpd[2]:
        for k in range(num_offsets):
            neighbor_cells[cell_idx, k] = -1
            neighbor_cell_shifts[cell_idx, k] = wp.vec3i(0, 0, 0)
        return

    rest, cx = wpdivmod(cell_idx, cpd[0])
    cz, cy = wpdivmod(rest, cpd[1])
    home = wp.vec3i(cx, cy, cz)

    for k in range(num_offsets):
        target = home + offsets[k]
        wrapped = wp.vec3i(0, 0, 0)
        shift = wp.vec3i(0, 0, 0)
        valid = True
        for dim in range(3):
            if pbc[dim]:
                quotient, remainder = wpdivmod(target[dim], cpd[dim])
                wrapped[dim] = remainder
                shift[dim] = quotient
            else:
                if target[dim] < 0 or target[dim] >= cpd[dim]:
                    valid = False
                wrapped[dim] = target[dim]
        if valid:
            neighbor_cells[cell_idx, k] = _linear_cell_index(wrapped, cpd)
            neighbor_cell_shifts[cell_idx, k] = shift
        else:
            neighbor_cells[cell_idx, k] = -1
            neighbor_cell_shifts[cell_idx, k] = wp.vec3i(0, 0, 0)


@wp.kernel(enable_backward=False)
def _cell_list_build_neighbor_matrix(
    positions: wp.array(dtype=Any),
    box: Any,
    cutoff: Any,
    atom_periodic_shifts: wp.array(dtype=wp.vec3i),
    atom_cell_index: wp.array(dtype=wp.int32),
    neighbor_cells: wp.array2d(dtype=wp.int32),
    neighbor_cell_shifts: wp.array2d(dtype=wp.vec3i),
    atoms_per_cell_count: wp.array(dtype=wp.int32),
    cell_atom_start_indices: wp.array(dtype=wp.int32),
    cell_atom_list: wp.array(dtype=wp.int32),
    neighbor_matrix: wp.array2d(dtype=wp.int32),
    neighbor_matrix_shifts: wp.array2d(dtype=wp.vec3i),
    num_neighbors: wp.array(dtype=wp.int32),
) -> None:
    """Build the half-filled neighbor matrix from the half shell of each atom's cell.

    Every pair with separation below ``cutoff`` is stored once, in the row of
    the atom whose cell scans the other. Within the home cell only ``j > i``
    is emitted. The stored shift ``S`` places the partner at
    ``positions[j] + S * box``.

    Notes
    -----
    - Thread launch: One thread per atom (dim=total_atoms)
    - Modifies: neighbor_matrix, neighbor_matrix_shifts, num_neighbors
    - Rows are counted past ``max_neighbors`` so that overflow can be detected
    """
    atom_idx = wp.tid()

    cutoff_distance_sq = cutoff * cutoff
    central_atom_position = positions[atom_idx]
    central_atom_shift = atom_periodic_shifts[atom_idx]
    home_cell = atom_cell_index[atom_idx]

    for k in range(HALF_SHELL_SIZE):
        target_cell = neighbor_cells[home_cell, k]
        if target_cell < 0:
            continue
        cell_shift = neighbor_cell_shifts[home_cell, k]

        cell_start_index = cell_atom_start_indices[target_cell]
        num_atoms_in_cell = atoms_per_cell_count[target_cell]

        for cell_atom_idx in range(num_atoms_in_cell):
            neighbor_atom_idx = cell_atom_list[cell_start_index + cell_atom_idx]

            if k == 0 and neighbor_atom_idx <= atom_idx:
                continue

            unit_shift = (
                cell_shift
                + central_atom_shift
                - atom_periodic_shifts[neighbor_atom_idx]
            )
            cartesian_shift = wp.cw_mul(box, type(central_atom_position)(unit_shift))
            dr = positions[neighbor_atom_idx] - central_atom_position + cartesian_shift

            if wp.dot(dr, dr) < cutoff_distance_sq:
                _record_pair(
                    atom_idx,
                    neighbor_atom_idx,
                    unit_shift,
                    neighbor_matrix,
                    neighbor_matrix_shifts,
                    num_neighbors,
                )


T = [wp.float32, wp.float64]
V = [wp.vec3f, wp.vec3d]
_cell_list_construct_bin_size_overload = {}
_cell_list_count_atoms_per_bin_overload = {}
_cell_list_bin_atoms_overload = {}
_cell_list_build_neighbor_matrix_overload = {}
for t, v in zip(T, V):
    _cell_list_construct_bin_size_overload[t] = wp.overload(
        _cell_list_construct_bin_size,
        [
            v,
            wp.array(dtype=wp.int32),
            t,
            wp.int32,
        ],
    )
    _cell_list_count_atoms_per_bin_overload[t] = wp.overload(
        _cell_list_count_atoms_per_bin,
        [
            wp.array(dtype=v),
            v,
            wp.array(dtype=wp.bool),
            wp.array(dtype=wp.int32),
            wp.array(dtype=wp.int32),
            wp.array(dtype=wp.vec3i),
        ],
    )
    _cell_list_bin_atoms_overload[t] = wp.overload(
        _cell_list_bin_atoms,
        [
            wp.array(dtype=v),
            v,
            wp.array(dtype=wp.bool),
            wp.array(dtype=wp.int32),
            wp.array(dtype=wp.int32),
            wp.array(dtype=wp.int32),
            wp.array(dtype=wp.int32),
            wp.array(dtype=wp.int32),
        ],
    )
    _cell_list_build_neighbor_matrix_overload[t] = wp.overload(
        _cell_list_build_neighbor_matrix,
        [
            wp.array(dtype=v),
            v,
            t,
            wp.array(dtype=wp.vec3i),
            wp.array(dtype=wp.int32),
            wp.array2d(dtype=wp.int32),
            wp.array2d(dtype=wp.vec3i),
            wp.array(dtype=wp.int32),
            wp.array(dtype=wp.int32),
            wp.array(dtype=wp.int32),
            wp.array2d(dtype=wp.int32),
            wp.array2d(dtype=wp.vec3i),
            wp.array(dtype=wp.int32),
        ],
    )


###########################################################################################
################################ Core Warp Launchers #######################################
###########################################################################################


def compute_cells_per_dimension(
    box: Any,
    cell_size: float,
    max_nbins: int,
    cells_per_dimension: wp.array,
    wp_dtype: type,
    device: str,
) -> None:
    """Core warp launcher for the per-axis cell counts.

    Parameters
    ----------
    box : wp.vec3*
        Orthorhombic box lengths.
    cell_size : float
        Minimum cell edge.
    max_nbins : int
        Maximum total number of cells.
    cells_per_dimension : wp.array, shape (3,), dtype=wp.int32
        OUTPUT: Number of cells along x, y, z.
    wp_dtype : type
        Warp dtype (wp.float32 or wp.float64).
    device : str
        Warp device string (e.g., 'cuda:0', 'cpu').
    """
    wp.launch(
        _cell_list_construct_bin_size_overload[wp_dtype],
        dim=1,
        device=device,
        inputs=(
            box,
            cells_per_dimension,
            wp_dtype(cell_size),
            wp.int32(max_nbins),
        ),
    )


def build_cell_list(
    positions: wp.array,
    box: Any,
    pbc: wp.array,
    cell_size: float,
    cells_per_dimension: wp.array,
    atom_periodic_shifts: wp.array,
    atom_cell_index: wp.array,
    atoms_per_cell_count: wp.array,
    cell_atom_start_indices: wp.array,
    cell_atom_list: wp.array,
    wp_dtype: type,
    device: str,
) -> None:
    """Core warp launcher for binning atoms into cells.

    Parameters
    ----------
    positions : wp.array, shape (total_atoms,), dtype=wp.vec3*
        Atomic coordinates. Positions outside the box are wrapped.
    box : wp.vec3*
        Orthorhombic box lengths.
    pbc : wp.array, shape (3,), dtype=wp.bool
        Periodic boundary condition flags for x, y, z directions.
    cell_size : float
        Minimum cell edge, the pair search radius.
    cells_per_dimension : wp.array, shape (3,), dtype=wp.int32
        OUTPUT: Number of cells created in x, y, z directions.
    atom_periodic_shifts : wp.array, shape (total_atoms,), dtype=wp.vec3i
        OUTPUT: Number of box lengths each atom lies outside the primary box.
    atom_cell_index : wp.array, shape (total_atoms,), dtype=wp.int32
        OUTPUT: Linear index of the cell owning each atom.
    atoms_per_cell_count : wp.array, shape (max_total_cells,), dtype=wp.int32
        OUTPUT: Number of atoms in each cell.
    cell_atom_start_indices : wp.array, shape (max_total_cells,), dtype=wp.int32
        OUTPUT: Exclusive prefix sum of ``atoms_per_cell_count``.
    cell_atom_list : wp.array, shape (total_atoms,), dtype=wp.int32
        OUTPUT: Atom indices grouped by cell.
    wp_dtype : type
        Warp dtype (wp.float32 or wp.float64).
    device : str
        Warp device string (e.g., 'cuda:0', 'cpu').

    Notes
    -----
    - ``atoms_per_cell_count`` and ``cell_atom_start_indices`` must be full
      ``wp.array`` objects because the prefix sum uses ``wp.utils.array_scan``.
    """
    total_atoms = positions.shape[0]
    max_total_cells = atoms_per_cell_count.shape[0]

    compute_cells_per_dimension(
        box, cell_size, max_total_cells, cells_per_dimension, wp_dtype, device
    )

    atoms_per_cell_count.zero_()
    if total_atoms == 0:
        cell_atom_start_indices.zero_()
        return

    wp.launch(
        _cell_list_count_atoms_per_bin_overload[wp_dtype],
        dim=total_atoms,
        inputs=[
            positions,
            box,
            pbc,
            cells_per_dimension,
            atoms_per_cell_count,
            atom_periodic_shifts,
        ],
        device=device,
    )

    # Exclusive scan: [3, 5, 2, 0, 4, ...] -> [0, 3, 8, 10, 10, ...]
    wp.utils.array_scan(atoms_per_cell_count, cell_atom_start_indices, inclusive=False)

    atoms_per_cell_count.zero_()

    wp.launch(
        _cell_list_bin_atoms_overload[wp_dtype],
        dim=total_atoms,
        inputs=[
            positions,
            box,
            pbc,
            cells_per_dimension,
            atom_cell_index,
            atoms_per_cell_count,
            cell_atom_start_indices,
            cell_atom_list,
        ],
        device=device,
    )


def build_neighbor_cell_table(
    cells_per_dimension: wp.array,
    pbc: wp.array,
    neighbor_cells: wp.array,
    neighbor_cell_shifts: wp.array,
    device: str,
) -> None:
    """Core warp launcher for the explicit neighbor-cell table.

    Parameters
    ----------
    cells_per_dimension : wp.array, shape (3,), dtype=wp.int32
        Number of cells in x, y, z directions from ``build_cell_list``.
    pbc : wp.array, shape (3,), dtype=wp.bool
        Periodic boundary condition flags.
    neighbor_cells : wp.array2d, shape (max_total_cells, 27), dtype=wp.int32
        OUTPUT: Inner cell index of each neighbor, ordered as
        ``NEIGHBOR_CELL_OFFSETS``, or -1.
    neighbor_cell_shifts : wp.array2d, shape (max_total_cells, 27), dtype=wp.vec3i
        OUTPUT: Box shift of each neighbor image.
    device : str
        Warp device string (e.g., 'cuda:0', 'cpu').
    """
    offsets = wp.array(NEIGHBOR_CELL_OFFSETS, dtype=wp.vec3i, device=device)
    wp.launch(
        _cell_list_neighbor_table,
        dim=neighbor_cells.shape[0],
        inputs=[cells_per_dimension, pbc, offsets],
        outputs=[neighbor_cells, neighbor_cell_shifts],
        device=device,
    )


def query_cell_list(
    positions: wp.array,
    box: Any,
    cutoff: float,
    atom_periodic_shifts: wp.array,
    atom_cell_index: wp.array,
    neighbor_cells: wp.array,
    neighbor_cell_shifts: wp.array,
    atoms_per_cell_count: wp.array,
    cell_atom_start_indices: wp.array,
    cell_atom_list: wp.array,
    neighbor_matrix: wp.array,
    neighbor_matrix_shifts: wp.array,
    num_neighbors: wp.array,
    wp_dtype: type,
    device: str,
) -> None:
    """Core warp launcher for building the half-filled neighbor matrix.

    Parameters
    ----------
    positions : wp.array, shape (total_atoms,), dtype=wp.vec3*
        Atomic coordinates, the same used to build the cell list.
    box : wp.vec3*
        Orthorhombic box lengths.
    cutoff : float
        Pair search radius.
    atom_periodic_shifts, atom_cell_index, atoms_per_cell_count, cell_atom_start_indices, cell_atom_list
        Outputs of ``build_cell_list``.
    neighbor_cells, neighbor_cell_shifts
        Outputs of ``build_neighbor_cell_table``.
    neighbor_matrix : wp.array2d, shape (total_atoms, max_neighbors), dtype=wp.int32
        OUTPUT: Neighbor indices.
    neighbor_matrix_shifts : wp.array2d, shape (total_atoms, max_neighbors), dtype=wp.vec3i
        OUTPUT: Integer box shift of each stored pair.
    num_neighbors : wp.array, shape (total_atoms,), dtype=wp.int32
        OUTPUT: Pairs found per row. Must be zeroed by the caller.
    wp_dtype : type
        Warp dtype (wp.float32 or wp.float64).
    device : str
        Warp device string (e.g., 'cuda:0', 'cpu').
    """
    total_atoms = positions.shape[0]
    if total_atoms == 0:
        return

    wp.launch(
        _cell_list_build_neighbor_matrix_overload[wp_dtype],
        dim=total_atoms,
        inputs=[
            positions,
            box,
            wp_dtype(cutoff),
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
        ],
        device=device,
    )
