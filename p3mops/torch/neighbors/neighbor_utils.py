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

"""PyTorch helpers shared by the cell list and the cell structure: buffer
allocation, overflow checks and the matrix to COO conversion."""

from __future__ import annotations

import torch

from p3mops.neighbors.cell_list import NEIGHBOR_CELL_OFFSETS
from p3mops.neighbors.neighbor_utils import (
    NeighborOverflowError,
    estimate_max_neighbors,
)

__all__ = [
    "check_neighbor_overflow",
    "get_neighbor_list_from_neighbor_matrix",
    "allocate_cell_list",
    "estimate_max_neighbors",
    "NeighborOverflowError",
]


def check_neighbor_overflow(
    neighbor_matrix: torch.Tensor, num_neighbors: torch.Tensor
) -> None:
    """Raise if any row found more pairs than the neighbor matrix can hold.

    Raises
    ------
    NeighborOverflowError
        If ``num_neighbors.max() > neighbor_matrix.shape[1]``.
    """
    if num_neighbors.numel() == 0:
        return
    max_found = int(num_neighbors.max().item())
    if max_found > neighbor_matrix.shape[1]:
        raise NeighborOverflowError(neighbor_matrix.shape[1], max_found)


def get_neighbor_list_from_neighbor_matrix(
    neighbor_matrix: torch.Tensor,
    num_neighbors: torch.Tensor,
    neighbor_shift_matrix: torch.Tensor | None = None,
) -> (
    tuple[torch.Tensor, torch.Tensor] | tuple[torch.Tensor, torch.Tensor, torch.Tensor]
):
    """Flatten a neighbor matrix into a COO pair list.

    Only the first ``num_neighbors[i]`` entries of row ``i`` are read, so the
    padding value of the matrix does not matter.

    Parameters
    ----------
    neighbor_matrix : torch.Tensor, shape (total_atoms, max_neighbors), dtype=int32
        Neighbor indices.
    num_neighbors : torch.Tensor, shape (total_atoms,), dtype=int32
        Valid entries per row.
    neighbor_shift_matrix : torch.Tensor | None, shape (total_atoms, max_neighbors, 3)
        Integer image shifts. Flattened alongside the indices when given.

    Returns
    -------
    neighbor_list : torch.Tensor, shape (2, num_pairs), dtype=int32
        Rows ``[i, j]``, grouped by ``i``.
    neighbor_ptr : torch.Tensor, shape (total_atoms + 1,), dtype=int32
        Pairs of particle ``i`` are ``neighbor_ptr[i]:neighbor_ptr[i + 1]``.
    neighbor_list_shifts : torch.Tensor, shape (num_pairs, 3), dtype=int32
        Only returned when ``neighbor_shift_matrix`` is given.

    Raises
    ------
    NeighborOverflowError
        If a row counts more pairs than the matrix width.
    """
    check_neighbor_overflow(neighbor_matrix, num_neighbors)
    device = neighbor_matrix.device
    total_atoms, width = neighbor_matrix.shape

    counts = num_neighbors.to(torch.int32)
    neighbor_ptr = torch.zeros((total_atoms + 1,), dtype=torch.int32, device=device)
    if total_atoms > 0:
        neighbor_ptr[1:] = torch.cumsum(counts, dim=0).to(torch.int32)

    valid = torch.arange(width, device=device)[None, :] < counts[:, None]
    rows, slots = torch.nonzero(valid, as_tuple=True)
    neighbor_list = torch.stack(
        [rows.to(neighbor_matrix.dtype), neighbor_matrix[rows, slots]], dim=0
    )
    if neighbor_shift_matrix is None:
        return neighbor_list, neighbor_ptr
    return neighbor_list, neighbor_ptr, neighbor_shift_matrix[rows, slots]


def allocate_cell_list(
    total_atoms: int,
    max_total_cells: int,
    device: torch.device,
) -> tuple[torch.Tensor, ...]:
    """Allocate the buffers of :func:`~p3mops.torch.neighbors.build_cell_list`.

    Returns
    -------
    tuple of torch.Tensor, all int32
        In order:

        - ``cells_per_dimension``, shape (3,);
        - ``atom_periodic_shifts``, shape (total_atoms, 3), images crossed
          when a particle is wrapped into the box;
        - ``atom_cell_index``, shape (total_atoms,), owning cell;
        - ``atoms_per_cell_count``, shape (max_total_cells,);
        - ``cell_atom_start_indices``, shape (max_total_cells,), offsets into
          ``cell_atom_list``;
        - ``cell_atom_list``, shape (total_atoms,), particles grouped by cell;
        - ``neighbor_cells``, shape (max_total_cells, 27), neighbor cell
          indices, -1 where a neighbor does not exist;
        - ``neighbor_cell_shifts``, shape (max_total_cells, 27, 3), box shift
          of each neighbor image.
    """
    num_offsets = NEIGHBOR_CELL_OFFSETS.shape[0]

    def zeros(*shape):
        return torch.zeros(shape, dtype=torch.int32, device=device)

    return (
        zeros(3),
        zeros(total_atoms, 3),
        zeros(total_atoms),
        zeros(max_total_cells),
        zeros(max_total_cells),
        zeros(total_atoms),
        torch.full(
            (max_total_cells, num_offsets), -1, dtype=torch.int32, device=device
        ),
        zeros(max_total_cells, num_offsets, 3),
    )
