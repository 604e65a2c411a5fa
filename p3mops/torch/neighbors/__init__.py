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

"""PyTorch bindings for the cell decomposition and the Verlet pair list."""

from p3mops.neighbors.neighbor_utils import DecompositionIntegrityError
from p3mops.torch.neighbors.cell_list import (
    build_cell_list,
    cell_list,
    estimate_cell_list_sizes,
    query_cell_list,
)
from p3mops.torch.neighbors.cell_structure import Cell, CellNeighbors, CellStructure
from p3mops.torch.neighbors.neighbor_utils import (
    NeighborOverflowError,
    allocate_cell_list,
    check_neighbor_overflow,
    get_neighbor_list_from_neighbor_matrix,
)
from p3mops.torch.neighbors.rebuild_detection import (
    check_neighbor_list_rebuild_needed,
    count_particles_beyond_skin,
    neighbor_list_needs_rebuild,
)

__all__ = [
    # Cell list
    "cell_list",
    "build_cell_list",
    "query_cell_list",
    "estimate_cell_list_sizes",
    "allocate_cell_list",
    # Cell arena
    "Cell",
    "CellNeighbors",
    "CellStructure",
    # Utilities
    "get_neighbor_list_from_neighbor_matrix",
    "check_neighbor_overflow",
    "neighbor_list_needs_rebuild",
    "count_particles_beyond_skin",
    "check_neighbor_list_rebuild_needed",
    # Errors
    "NeighborOverflowError",
    "DecompositionIntegrityError",
]
