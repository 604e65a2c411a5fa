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

"""PyTorch bindings for Verlet pair list rebuild detection."""

from __future__ import annotations

import torch
import warp as wp

from p3mops.neighbors.rebuild_detection import (
    count_particles_beyond_skin as wp_count_particles_beyond_skin,
)
from p3mops.types import get_wp_dtype, get_wp_vec_dtype

__all__ = [
    "count_particles_beyond_skin",
    "neighbor_list_needs_rebuild",
    "check_neighbor_list_rebuild_needed",
]


@torch.library.custom_op("p3mops::_count_particles_beyond_skin", mutates_args=())
def _count_particles_beyond_skin(
    reference_positions: torch.Tensor,
    current_positions: torch.Tensor,
    skin: float,
) -> torch.Tensor:
    """Internal: number of particles displaced by more than skin / 2."""
    device = current_positions.device
    if reference_positions.shape != current_positions.shape:
        # a different particle set invalidates every stored pair
        return torch.tensor(
            [current_positions.shape[0]], dtype=torch.int32, device=device
        )

    num_escaped = torch.zeros((1,), dtype=torch.int32, device=device)
    if current_positions.shape[0] == 0:
        return num_escaped

    dtype = reference_positions.dtype
    wp_vec_dtype = get_wp_vec_dtype(dtype)
    wp_count_particles_beyond_skin(
        wp.from_torch(reference_positions.contiguous(), dtype=wp_vec_dtype, return_ctype=True),
        wp.from_torch(
            current_positions.to(dtype).contiguous(), dtype=wp_vec_dtype, return_ctype=True
        ),
        skin,
        wp.from_torch(num_escaped, dtype=wp.int32, return_ctype=True),
        get_wp_dtype(dtype),
        str(device),
    )
    return num_escaped


@_count_particles_beyond_skin.register_fake
def _count_particles_beyond_skin_fake(
    reference_positions: torch.Tensor,
    current_positions: torch.Tensor,
    skin: float,
) -> torch.Tensor:
    """Fake implementation for torch.compile tracing."""
    return torch.zeros((1,), dtype=torch.int32, device=current_positions.device)


def count_particles_beyond_skin(
    reference_positions: torch.Tensor,
    current_positions: torch.Tensor,
    skin: float,
) -> torch.Tensor:
    """Count the particles that moved more than skin / 2 since the build.

    Parameters
    ----------
    reference_positions : torch.Tensor, shape (total_atoms, 3)
        Positions when the pair list was last built.
    current_positions : torch.Tensor, shape (total_atoms, 3)
        Current positions. A different particle count marks every particle
        as escaped.
    skin : float
        Verlet skin of the pair list.

    Returns
    -------
    torch.Tensor, shape (1,), dtype=int32
    """
    return _count_particles_beyond_skin(reference_positions, current_positions, skin)


def neighbor_list_needs_rebuild(
    reference_positions: torch.Tensor,
    current_positions: torch.Tensor,
    skin: float,
) -> torch.Tensor:
    """Tensor-valued rebuild check, shape (1,), dtype=bool.

    A pair list built with search radius cutoff + skin is complete for
    cutoff as long as no particle moved more than skin / 2.
    """
    return count_particles_beyond_skin(reference_positions, current_positions, skin) > 0


def check_neighbor_list_rebuild_needed(
    reference_positions: torch.Tensor,
    current_positions: torch.Tensor,
    skin: float,
) -> bool:
    """Return True if any particle moved more than skin / 2 since the build."""
    return bool(
        neighbor_list_needs_rebuild(reference_positions, current_positions, skin).item()
    )
