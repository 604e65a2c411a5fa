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

"""Core warp interface for the cell decomposition and Verlet pair list.

This module exports warp launchers that accept warp arrays directly.
For PyTorch users, use `p3mops.torch.neighbors` instead.
"""

from __future__ import annotations

from p3mops.neighbors.cell_list import (
    HALF_SHELL_SIZE,
    NEIGHBOR_CELL_OFFSETS,
)
from p3mops.neighbors.cell_list import build_cell_list as wp_build_cell_list
from p3mops.neighbors.cell_list import (
    build_neighbor_cell_table as wp_build_neighbor_cell_table,
)
from p3mops.neighbors.cell_list import (
    compute_cells_per_dimension as wp_compute_cells_per_dimension,
)
from p3mops.neighbors.cell_list import query_cell_list as wp_query_cell_list
from p3mops.neighbors.neighbor_utils import (
    DecompositionIntegrityError,
    NeighborOverflowError,
    estimate_max_neighbors,
)
from p3mops.neighbors.rebuild_detection import (
    count_particles_beyond_skin as wp_count_particles_beyond_skin,
)

__all__ = [
    "NeighborOverflowError",
    "DecompositionIntegrityError",
    "NEIGHBOR_CELL_OFFSETS",
    "HALF_SHELL_SIZE",
    "wp_compute_cells_per_dimension",
    "wp_build_cell_list",
    "wp_build_neighbor_cell_table",
    "wp_query_cell_list",
    "wp_count_particles_beyond_skin",
    "estimate_max_neighbors",
]
