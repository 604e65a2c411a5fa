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

"""Cell arena with periodic ghost cells and per-cell Verlet lists.

:class:`CellStructure` owns one flat list of :class:`Cell` objects. The inner
cells of the decomposition come first, indexed ``x + nx * (y + ny * z)``,
followed by the ghost cells of the periodic halo. A ghost cell is the image of
an inner cell under an integer box shift and holds a copy of its particles.

Neighbor relations are stored as indices into the arena, never as references,
so the arena can be rebuilt without dangling links.
"""

from __future__ import annotations

from collections.abc import Iterator, Sequence

import torch

from p3mops.neighbors.cell_list import HALF_SHELL_SIZE
from p3mops.neighbors.neighbor_utils import DecompositionIntegrityError
from p3mops.torch.neighbors.cell_list import (
    DEFAULT_MAX_NBINS,
    _check_search_radius,
    box_lengths,
    build_cell_list,
    default_pbc,
    estimate_cell_list_sizes,
    query_cell_list,
)
from p3mops.torch.neighbors.neighbor_utils import (
    allocate_cell_list,
    check_neighbor_overflow,
    estimate_max_neighbors,
    get_neighbor_list_from_neighbor_matrix,
)
from p3mops.torch.neighbors.rebuild_detection import (
    check_neighbor_list_rebuild_needed,
)

__all__ = ["Cell", "CellNeighbors", "CellStructure"]

# relative slack on cell bounds for positions binned in single precision
_BOUNDS_TOLERANCE = 1e-5


class CellNeighbors:
    """Lazy view over the neighbor cells of one cell.

    Iterating resolves the stored arena indices on demand. The view can be
    iterated any number of times.
    """

    def __init__(self, arena: list[Cell], indices: Sequence[int]):
        self._arena = arena
        self._indices = tuple(indices)

    def __iter__(self) -> Iterator[Cell]:
        for index in self._indices:
            yield self._arena[index]

    def __len__(self) -> int:
        return len(self._indices)

    @property
    def indices(self) -> tuple[int, ...]:
        return self._indices


class Cell:
    """One cell of the decomposition.

    Attributes
    ----------
    index : int
        Position of the cell in the arena.
    particles : torch.Tensor, shape (n,), dtype=int32
        Indices of the particles in the cell.
    is_ghost : bool
        True for periodic images in the halo layer.
    source : int
        Arena index of the inner cell this cell is an image of. Equal to
        ``index`` for inner cells.
    shift : tuple[int, int, int]
        Integer box shift of the image. Zero for inner cells.
    verlet_list : torch.Tensor, shape (2, num_pairs), dtype=int32
        View of the global pair list holding the pairs whose first particle
        lives in this cell. Empty for ghost cells.
    verlet_list_shifts : torch.Tensor, shape (num_pairs, 3), dtype=int32
        Integer image shifts of ``verlet_list``.
    """

    def __init__(
        self,
        index: int,
        arena: list[Cell],
        device: torch.device | str,
        source: int | None = None,
        shift: tuple[int, int, int] = (0, 0, 0),
    ):
        self.index = index
        self.source = index if source is None else source
        self.shift = tuple(int(s) for s in shift)
        self.is_ghost = source is not None
        self._arena = arena
        self._device = device
        self._neighbor_indices: list[int] = []
        self._half_shell_end = 0
        self.particles = torch.empty((0,), dtype=torch.int32, device=device)
        self.verlet_list = torch.empty((2, 0), dtype=torch.int32, device=device)
        self.verlet_list_shifts = torch.empty((0, 3), dtype=torch.int32, device=device)

    @property
    def is_inner(self) -> bool:
        return not self.is_ghost

    def __len__(self) -> int:
        return self.particles.shape[0]

    def __repr__(self) -> str:
        kind = "ghost" if self.is_ghost else "inner"
        return f"Cell(index={self.index}, {kind}, num_particles={len(self)})"

    def resize(self, n: int) -> None:
        """Reallocate particle storage to exactly ``n`` slots.

        Earlier references to ``particles`` no longer alias the cell.
        """
        if n < 0:
            raise ValueError(f"Cell size must be non-negative, got {n}")
        self.particles = torch.empty((n,), dtype=torch.int32, device=self._device)

    def neighbors(self) -> CellNeighbors:
        """Neighbor cells in table order: the cell itself, the half shell, the rest."""
        return CellNeighbors(self._arena, self._neighbor_indices)

    def half_shell(self) -> CellNeighbors:
        """The cell itself followed by its 13 half-shell neighbors."""
        return CellNeighbors(self._arena, self._neighbor_indices[: self._half_shell_end])


class CellStructure:
    """Linked-cell decomposition of an orthorhombic box with a Verlet pair list.

    Parameters
    ----------
    cutoff : float
        Interaction cutoff.
    skin : float
        Verlet skin. Pairs are stored up to ``cutoff + skin`` and the list is
        rebuilt once any particle moved more than ``skin / 2``.
    pbc : torch.Tensor | Sequence[bool] | None
        Periodic flags per axis. Defaults to fully periodic.
    max_neighbors : int | None
        Width of the neighbor matrix. Estimated from the density when None.
    max_nbins : int
        Maximum number of inner cells.

    Examples
    --------
    >>> structure = CellStructure(cutoff=2.5, skin=0.3)
    >>> structure.build(positions, box)
    >>> structure.update(new_positions, box)  # rebuilds only when needed
    >>> neighbor_list, shifts = structure.pairs()
    """

    def __init__(
        self,
        cutoff: float,
        skin: float = 0.0,
        pbc: torch.Tensor | Sequence[bool] | None = None,
        max_neighbors: int | None = None,
        max_nbins: int = DEFAULT_MAX_NBINS,
    ):
        if cutoff <= 0:
            raise ValueError(f"Cutoff must be positive, got {cutoff}")
        if skin < 0:
            raise ValueError(f"Skin must be non-negative, got {skin}")
        self.cutoff = float(cutoff)
        self.skin = float(skin)
        self._pbc = pbc
        self.max_neighbors = max_neighbors
        self.max_nbins = max_nbins

        self.cells: list[Cell] = []
        self.num_inner_cells = 0
        self.cells_per_dimension: tuple[int, int, int] = (0, 0, 0)
        self.num_builds = 0

        self.box: list[float] | None = None
        self.pbc: torch.Tensor | None = None
        self.reference_positions: torch.Tensor | None = None
        self.atom_cell_index: torch.Tensor | None = None
        self.neighbor_matrix: torch.Tensor | None = None
        self.neighbor_matrix_shifts: torch.Tensor | None = None
        self.num_neighbors: torch.Tensor | None = None
        self.neighbor_list: torch.Tensor | None = None
        self.neighbor_list_shifts: torch.Tensor | None = None

    @property
    def search_radius(self) -> float:
        return self.cutoff + self.skin

    @property
    def is_built(self) -> bool:
        return self.reference_positions is not None

    @property
    def inner_cells(self) -> list[Cell]:
        return self.cells[: self.num_inner_cells]

    @property
    def ghost_cells(self) -> list[Cell]:
        return self.cells[self.num_inner_cells :]

    def build(self, positions: torch.Tensor, box: torch.Tensor | Sequence[float]) -> None:
        """Bin the particles, rebuild the arena and the pair list.

        Raises
        ------
        ValueError
            If the box is invalid or smaller than the search radius along a
            periodic axis.
        NeighborOverflowError
            If the neighbor matrix is too narrow.
        """
        device = positions.device
        total_atoms = positions.shape[0]
        lengths = box_lengths(box)
        if self._pbc is None:
            pbc = default_pbc(device)
        else:
            pbc = torch.as_tensor(self._pbc, dtype=torch.bool, device=device).reshape(-1)
        _check_search_radius(lengths, pbc.cpu(), self.search_radius)

        max_total_cells, _ = estimate_cell_list_sizes(
            lengths, self.search_radius, self.max_nbins, dtype=positions.dtype, device=device
        )
        (
            cells_per_dimension,
            atom_periodic_shifts,
            atom_cell_index,
            atoms_per_cell_count,
            cell_atom_start_indices,
            cell_atom_list,
            neighbor_cells,
            neighbor_cell_shifts,
        ) = allocate_cell_list(total_atoms, max_total_cells, device)

        build_cell_list(
            positions,
            self.search_radius,
            lengths,
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

        max_neighbors = self.max_neighbors
        if max_neighbors is None:
            volume = lengths[0] * lengths[1] * lengths[2]
            max_neighbors = estimate_max_neighbors(
                self.search_radius, atomic_density=max(total_atoms, 1) / volume
            )
        neighbor_matrix = torch.full(
            (total_atoms, max_neighbors), total_atoms, dtype=torch.int32, device=device
        )
        neighbor_matrix_shifts = torch.zeros(
            (total_atoms, max_neighbors, 3), dtype=torch.int32, device=device
        )
        num_neighbors = torch.zeros((total_atoms,), dtype=torch.int32, device=device)
        query_cell_list(
            positions,
            self.search_radius,
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
        neighbor_list, _, neighbor_list_shifts = get_neighbor_list_from_neighbor_matrix(
            neighbor_matrix,
            num_neighbors=num_neighbors,
            neighbor_shift_matrix=neighbor_matrix_shifts,
        )

        self.box = lengths
        self.pbc = pbc
        self.cells_per_dimension = tuple(int(c) for c in cells_per_dimension.cpu().tolist())
        self.atom_cell_index = atom_cell_index
        self.neighbor_matrix = neighbor_matrix
        self.neighbor_matrix_shifts = neighbor_matrix_shifts
        self.num_neighbors = num_neighbors

        self._build_arena(
            device,
            atoms_per_cell_count,
            cell_atom_start_indices,
            cell_atom_list,
            neighbor_cells,
            neighbor_cell_shifts,
        )
        self._assign_verlet_lists(neighbor_list, neighbor_list_shifts)

        self.reference_positions = positions.detach().clone()
        self.num_builds += 1

    def _build_arena(
        self,
        device: torch.device,
        atoms_per_cell_count: torch.Tensor,
        cell_atom_start_indices: torch.Tensor,
        cell_atom_list: torch.Tensor,
        neighbor_cells: torch.Tensor,
        neighbor_cell_shifts: torch.Tensor,
    ) -> None:
        num_inner = (
            self.cells_per_dimension[0]
            * self.cells_per_dimension[1]
            * self.cells_per_dimension[2]
        )
        counts = atoms_per_cell_count[:num_inner].cpu().tolist()
        starts = cell_atom_start_indices[:num_inner].cpu().tolist()
        table = neighbor_cells[:num_inner].cpu().tolist()
        table_shifts = neighbor_cell_shifts[:num_inner].cpu().tolist()

        arena: list[Cell] = []
        for index in range(num_inner):
            cell = Cell(index, arena, device)
            cell.resize(counts[index])
            cell.particles.copy_(
                cell_atom_list[starts[index] : starts[index] + counts[index]]
            )
            arena.append(cell)

        ghosts: dict[tuple[int, tuple[int, int, int]], int] = {}
        for index in range(num_inner):
            neighbor_indices = []
            half_shell_end = 0
            for slot, (source, shift) in enumerate(zip(table[index], table_shifts[index])):
                if source < 0:
                    continue
                shift = tuple(shift)
                if shift == (0, 0, 0):
                    target = source
                else:
                    key = (source, shift)
                    if key not in ghosts:
                        ghost = Cell(len(arena), arena, device, source=source, shift=shift)
                        ghost.resize(counts[source])
                        ghost.particles.copy_(arena[source].particles)
                        ghosts[key] = ghost.index
                        arena.append(ghost)
                    target = ghosts[key]
                neighbor_indices.append(target)
                if slot < HALF_SHELL_SIZE:
                    half_shell_end = len(neighbor_indices)
            arena[index]._neighbor_indices = neighbor_indices
            arena[index]._half_shell_end = half_shell_end

        self.cells = arena
        self.num_inner_cells = num_inner

    def _assign_verlet_lists(
        self, neighbor_list: torch.Tensor, neighbor_list_shifts: torch.Tensor
    ) -> None:
        """Sort pairs by the cell of their first particle and slice per cell."""
        owners = self.atom_cell_index[neighbor_list[0].long()].long()
        order = torch.sort(owners, stable=True).indices
        self.neighbor_list = neighbor_list[:, order]
        self.neighbor_list_shifts = neighbor_list_shifts[order]

        pair_counts = torch.bincount(owners, minlength=self.num_inner_cells).cpu().tolist()
        offset = 0
        for cell, count in zip(self.inner_cells, pair_counts):
            cell.verlet_list = self.neighbor_list[:, offset : offset + count]
            cell.verlet_list_shifts = self.neighbor_list_shifts[offset : offset + count]
            offset += count

    def pairs(self) -> tuple[torch.Tensor, torch.Tensor]:
        """Global half pair list ``(neighbor_list, neighbor_list_shifts)``."""
        if not self.is_built:
            raise RuntimeError("CellStructure.build must be called before querying pairs")
        return self.neighbor_list, self.neighbor_list_shifts

    def needs_rebuild(
        self, positions: torch.Tensor, box: torch.Tensor | Sequence[float]
    ) -> bool:
        """Return True if the box changed or a particle moved more than ``skin / 2``."""
        if not self.is_built:
            return True
        if box_lengths(box) != self.box:
            return True
        return check_neighbor_list_rebuild_needed(
            self.reference_positions, positions, self.skin
        )

    def update(self, positions: torch.Tensor, box: torch.Tensor | Sequence[float]) -> bool:
        """Rebuild if needed. Returns True when a rebuild happened."""
        if self.needs_rebuild(positions, box):
            self.build(positions, box)
            return True
        return False

    def cell_of(self, particle: int) -> Cell:
        """Inner cell owning a particle."""
        return self.cells[int(self.atom_cell_index[particle].item())]

    def check_consistency(self) -> None:
        """Audit the decomposition against the positions it was built from.

        Raises
        ------
        DecompositionIntegrityError
            If a particle lies outside the bounds of its cell, is owned by zero or
            several inner cells, if the binned particle count does not match the
            system size, if a ghost cell differs from its source, or if the pair
            list references an invalid particle.
        """
        if not self.is_built:
            raise DecompositionIntegrityError("Cell structure has not been built")

        positions = self.reference_positions.detach().cpu().to(torch.float64)
        total_atoms = positions.shape[0]

        inner = self.inner_cells
        binned = sum(len(cell) for cell in inner)
        if binned != total_atoms:
            raise DecompositionIntegrityError(
                f"Cells hold {binned} particles but the system has {total_atoms}"
            )
        if total_atoms == 0:
            return

        owned = torch.cat([cell.particles.cpu().long() for cell in inner])
        owner_cells = torch.cat(
            [torch.full((len(cell),), cell.index, dtype=torch.long) for cell in inner]
        )
        if owned.min() < 0 or owned.max() >= total_atoms:
            raise DecompositionIntegrityError("A cell references an invalid particle index")
        ownership = torch.bincount(owned, minlength=total_atoms)
        bad = torch.nonzero(ownership != 1).flatten()
        if bad.numel() > 0:
            particle = int(bad[0])
            raise DecompositionIntegrityError(
                f"Particle {particle} is owned by {int(ownership[particle])} cells"
            )

        lengths = torch.tensor(self.box, dtype=torch.float64)
        cpd = torch.tensor(self.cells_per_dimension, dtype=torch.long)
        periodic = self.pbc.cpu()
        edge = lengths / cpd.to(torch.float64)

        cell_positions = positions[owned]
        wrapped = torch.where(
            periodic,
            cell_positions - torch.floor(cell_positions / lengths) * lengths,
            cell_positions,
        )
        coords = torch.stack(
            [
                owner_cells % cpd[0],
                (owner_cells // cpd[0]) % cpd[1],
                owner_cells // (cpd[0] * cpd[1]),
            ],
            dim=1,
        )
        lower = coords.to(torch.float64) * edge
        upper = lower + edge
        tolerance = _BOUNDS_TOLERANCE * edge
        # open faces of non-periodic boxes collect every particle beyond them
        below = (wrapped < lower - tolerance) & (periodic | (coords > 0))
        above = (wrapped >= upper + tolerance) & (periodic | (coords < cpd - 1))
        outside = torch.nonzero((below | above).any(dim=1)).flatten()
        if outside.numel() > 0:
            slot = int(outside[0])
            raise DecompositionIntegrityError(
                f"Particle {int(owned[slot])} is binned into cell {int(owner_cells[slot])} "
                f"which does not contain its position"
            )

        for ghost in self.ghost_cells:
            if not torch.equal(ghost.particles, self.cells[ghost.source].particles):
                raise DecompositionIntegrityError(
                    f"Ghost cell {ghost.index} differs from its source cell {ghost.source}"
                )

        if self.neighbor_list.numel() > 0:
            if self.neighbor_list.min() < 0 or self.neighbor_list.max() >= total_atoms:
                raise DecompositionIntegrityError(
                    "The pair list references an invalid particle index"
                )

