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

"""Shared pieces of the pair list kernels: error types, the row writer of the
half-filled neighbor matrix and the matrix width estimate."""

import math

import warp as wp

__all__ = [
    "NeighborOverflowError",
    "DecompositionIntegrityError",
    "estimate_max_neighbors",
]


class NeighborOverflowError(Exception):
    """Raised when a row of the neighbor matrix needs more slots than it has.

    Parameters
    ----------
    max_neighbors : int
        Width of the neighbor matrix.
    num_neighbors : int
        Largest number of pairs found for one particle.
    """

    def __init__(self, max_neighbors: int, num_neighbors: int):
        super().__init__(
            f"A particle has {num_neighbors} stored pairs but the neighbor matrix "
            f"holds {max_neighbors} per row; pass a larger max_neighbors"
        )
        self.max_neighbors = max_neighbors
        self.num_neighbors = num_neighbors


class DecompositionIntegrityError(RuntimeError):
    """Raised when the cell decomposition is internally inconsistent.

    The audit reports particles binned into a cell that does not contain them,
    particles owned by zero or several cells, a binned count that differs from
    the system size, and pairs that reference an invalid particle.
    """


@wp.func
def _record_pair(
    i: int,
    j: int,
    unit_shift: wp.vec3i,
    neighbor_matrix: wp.array(dtype=wp.int32, ndim=2),
    neighbor_matrix_shifts: wp.array(dtype=wp.vec3i, ndim=2),
    num_neighbors: wp.array(dtype=wp.int32),
):
    """Append j and its image shift to row i.

    The row counter grows past the matrix width so that the caller can detect
    overflow after the launch. Entries that do not fit are dropped.
    """
    slot = wp.atomic_add(num_neighbors, i, 1)
    if slot < neighbor_matrix.shape[1]:
        neighbor_matrix[i, slot] = j
        neighbor_matrix_shifts[i, slot] = unit_shift


def estimate_max_neighbors(
    search_radius: float,
    atomic_density: float = 0.35,
    safety_factor: float = 5.0,
) -> int:
    r"""Width of a neighbor matrix that holds the pairs of a uniform system.

    .. math::

        n = \text{safety\_factor} \cdot \rho \cdot \tfrac{4}{3}\pi r^3

    rounded up to a multiple of 16. A half list needs about half of this, so
    the default safety factor leaves room for strong density fluctuations.

    Returns
    -------
    int
        0 for a non-positive search radius.
    """
    if search_radius <= 0:
        return 0
    sphere_count = atomic_density * 4.0 / 3.0 * math.pi * search_radius**3
    return 16 * math.ceil(max(1.0, safety_factor * sphere_count) / 16)
