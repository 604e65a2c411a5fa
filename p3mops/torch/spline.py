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
PyTorch Bindings for Charge Assignment
======================================

Thin PyTorch wrappers around the warp launchers in ``p3mops.math.spline``.

The mesh geometry is described by orthorhombic box lengths, the number of mesh
points per axis and an optional mesh offset (position of mesh point 0). Three
ways of obtaining the per-particle weights are supported:

- direct: weights are evaluated inside each spread/gather launch;
- cached: ``compute_assignment_cache`` evaluates them once, and the result is
  passed as ``cache=`` to spread, gather and stencil calls;
- tabulated: ``compute_assignment_cache(..., table=...)`` reads them from a table
  built by ``tabulate_bspline_weights``.

Examples
--------
>>> cache = compute_assignment_cache(positions, box, (32, 32, 32), order=5)
>>> mesh = spline_spread(positions, charges, box, (32, 32, 32), 5, cache=cache)
>>> field = torch.randn(3, 32, 32, 32, dtype=mesh.dtype)
>>> forces = spline_gather_channels(positions, charges, field, box, 5, cache=cache)
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass

import torch
import warp as wp

from p3mops.math.spline import (
    MAX_ORDER,
)
from p3mops.math.spline import (
    assignment_stencil as wp_assignment_stencil,
)
from p3mops.math.spline import (
    bspline_weight_launcher as wp_bspline_weight,
)
from p3mops.math.spline import (
    cached_assignment_stencil as wp_cached_assignment_stencil,
)
from p3mops.math.spline import (
    compute_assignment_cache as wp_compute_assignment_cache,
)
from p3mops.math.spline import (
    spline_gather_channels as wp_spline_gather_channels,
)
from p3mops.math.spline import (
    spline_gather_channels_cached as wp_spline_gather_channels_cached,
)
from p3mops.math.spline import (
    spline_spread as wp_spline_spread,
)
from p3mops.math.spline import (
    spline_spread_cached as wp_spline_spread_cached,
)
from p3mops.math.spline import (
    tabulate_bspline_weights as wp_tabulate_bspline_weights,
)
from p3mops.types import get_wp_dtype, get_wp_vec_dtype

__all__ = [
    "AssignmentCache",
    "bspline_weight",
    "tabulate_bspline_weights",
    "compute_assignment_cache",
    "assignment_stencil",
    "for_each_assignment",
    "spline_spread",
    "spline_gather_channels",
]


@dataclass
class AssignmentCache:
    """Per-particle charge assignment weights for one mesh geometry.

    Attributes
    ----------
    weights : torch.Tensor, shape (N, 3, order)
        ``weights[atom, d, i]`` is the weight of support point ``i`` along axis ``d``.
    lower_left : torch.Tensor, shape (N, 3), dtype=int32
        Unwrapped lower-left mesh index of each particle's support cube.
    order : int
        Assignment order.
    mesh_dimensions : tuple[int, int, int]
        Mesh the cache was computed for.
    """

    weights: torch.Tensor
    lower_left: torch.Tensor
    order: int
    mesh_dimensions: tuple[int, int, int]

    @property
    def num_atoms(self) -> int:
        return self.lower_left.shape[0]


def _box_lengths(box: torch.Tensor | Sequence[float]) -> list[float]:
    if isinstance(box, torch.Tensor):
        lengths = [float(v) for v in box.detach().reshape(-1).cpu().tolist()]
    else:
        lengths = [float(v) for v in box]
    if len(lengths) != 3:
        raise ValueError(f"Box must have 3 lengths, got {len(lengths)}")
    return lengths


def _mesh_geometry(
    box: torch.Tensor | Sequence[float],
    mesh_dimensions: Sequence[int],
    mesh_offset: Sequence[float] | None,
    dtype: torch.dtype,
):
    """Return the warp (offset, inverse spacing) vectors for a mesh."""
    lengths = _box_lengths(box)
    for length, points in zip(lengths, mesh_dimensions):
        if points <= 0:
            raise ValueError(f"Mesh dimensions must be positive, got {mesh_dimensions}")
        if length <= 0.0:
            raise ValueError(f"Box lengths must be positive, got {lengths}")
    wp_vec = get_wp_vec_dtype(dtype)
    offset = (0.0, 0.0, 0.0) if mesh_offset is None else tuple(mesh_offset)
    inverse_spacing = tuple(
        float(points) / length for points, length in zip(mesh_dimensions, lengths)
    )
    return wp_vec(*offset), wp_vec(*inverse_spacing)


def _check_cache(
    cache: AssignmentCache, num_atoms: int, mesh_dimensions, order: int
) -> None:
    if cache.order != order:
        raise ValueError(
            f"Assignment cache was built for order {cache.order}, not {order}"
        )
    if cache.num_atoms != num_atoms:
        raise ValueError(
            f"Assignment cache holds {cache.num_atoms} particles, expected {num_atoms}"
        )
    if tuple(cache.mesh_dimensions) != tuple(mesh_dimensions):
        raise ValueError(
            f"Assignment cache was built for mesh {cache.mesh_dimensions}, "
            f"not {tuple(mesh_dimensions)}"
        )


def bspline_weight(x: torch.Tensor, i: int, order: int) -> torch.Tensor:
    """Evaluate the i-th closed-form centred B-spline weight of ``order``.

    Parameters
    ----------
    x : torch.Tensor, shape (N,)
        Normalised offsets in ``[-0.5, 0.5)``.
    i : int
        Support point index in ``[0, order)``.
    order : int
        Assignment order (1-7).

    Returns
    -------
    torch.Tensor, shape (N,)
        ``W_i(x)``.
    """
    x = x.contiguous()
    weights = torch.zeros_like(x)
    if x.numel() == 0:
        return weights
    wp_dtype = get_wp_dtype(x.dtype)
    wp_bspline_weight(
        wp.from_torch(x, dtype=wp_dtype),
        i,
        order,
        wp.from_torch(weights, dtype=wp_dtype),
        wp_dtype,
        device=str(x.device),
    )
    return weights


def tabulate_bspline_weights(
    order: int,
    resolution: int = 1024,
    dtype: torch.dtype = torch.float64,
    device: torch.device | str = "cpu",
) -> torch.Tensor:
    """Tabulate all weight polynomials of one order for nearest-bin lookup.

    Parameters
    ----------
    order : int
        Assignment order (1-7).
    resolution : int, default=1024
        Half the number of sampling intervals ``n``.
    dtype : torch.dtype
        Table dtype.
    device : torch.device | str
        Table device.

    Returns
    -------
    torch.Tensor, shape (2 * resolution + 1, order)
        ``table[k, i] = W_i(-0.5 + k / (2n))``.

    Notes
    -----
    A lookup snaps ``x`` to the nearest sample, at most ``1 / (4n)`` away.
    Every weight polynomial has slope magnitude at most 1 on ``[-0.5, 0.5]``,
    so the tabulated weight differs from the exact one by at most ``1 / (4n)``
    (and is exact for order 1).
    """
    table = torch.zeros((2 * resolution + 1, order), dtype=dtype, device=device)
    wp_dtype = get_wp_dtype(dtype)
    wp_tabulate_bspline_weights(
        order,
        resolution,
        wp.from_torch(table, dtype=wp_dtype),
        wp_dtype,
        device=str(table.device),
    )
    return table


def compute_assignment_cache(
    positions: torch.Tensor,
    box: torch.Tensor | Sequence[float],
    mesh_dimensions: Sequence[int],
    order: int,
    mesh_offset: Sequence[float] | None = None,
    table: torch.Tensor | None = None,
) -> AssignmentCache:
    """Precompute assignment weights for every particle.

    Parameters
    ----------
    positions : torch.Tensor, shape (N, 3)
        Particle positions.
    box : torch.Tensor | Sequence[float], shape (3,)
        Orthorhombic box lengths.
    mesh_dimensions : Sequence[int]
        Mesh points per axis.
    order : int
        Assignment order (1-7).
    mesh_offset : Sequence[float] | None
        Position of mesh point (0, 0, 0). Defaults to the origin.
    table : torch.Tensor | None, shape (2n + 1, order)
        Optional weight table from ``tabulate_bspline_weights``.

    Returns
    -------
    AssignmentCache
    """
    if not 1 <= order <= MAX_ORDER:
        raise ValueError(f"Assignment order must be in [1, {MAX_ORDER}], got {order}")
    positions = positions.contiguous()
    num_atoms = positions.shape[0]
    device = positions.device
    dtype = positions.dtype
    wp_dtype = get_wp_dtype(dtype)
    wp_vec = get_wp_vec_dtype(dtype)
    offset, inverse_spacing = _mesh_geometry(box, mesh_dimensions, mesh_offset, dtype)

    weights = torch.zeros((num_atoms, 3, order), dtype=dtype, device=device)
    lower_left = torch.zeros((num_atoms, 3), dtype=torch.int32, device=device)

    resolution = 0
    wp_table = None
    if table is not None:
        if table.shape[1] != order or table.shape[0] % 2 != 1:
            raise ValueError(
                f"Weight table of shape {tuple(table.shape)} does not match order {order}"
            )
        resolution = (table.shape[0] - 1) // 2
        wp_table = wp.from_torch(table.to(dtype=dtype).contiguous(), dtype=wp_dtype)

    wp_compute_assignment_cache(
        wp.from_torch(positions, dtype=wp_vec),
        offset,
        inverse_spacing,
        order,
        wp.from_torch(weights, dtype=wp_dtype),
        wp.from_torch(lower_left, dtype=wp.vec3i),
        wp_dtype,
        device=str(device),
        table=wp_table,
        resolution=resolution,
    )
    return AssignmentCache(
        weights=weights,
        lower_left=lower_left,
        order=order,
        mesh_dimensions=tuple(int(n) for n in mesh_dimensions),
    )


def assignment_stencil(
    positions: torch.Tensor | None,
    box: torch.Tensor | Sequence[float] | None,
    mesh_dimensions: Sequence[int],
    order: int,
    mesh_offset: Sequence[float] | None = None,
    cache: AssignmentCache | None = None,
) -> tuple[torch.Tensor, torch.Tensor]:
    """Return every (mesh index, weight) assignment event.

    With ``cache`` the events are replayed from the cached weights; otherwise
    they are computed from ``positions`` and ``box``. Both paths produce the
    same events for the same inputs.

    Returns
    -------
    indices : torch.Tensor, shape (N, order**3, 3), dtype=int32
        Unwrapped mesh index triples, x slowest.
    weights : torch.Tensor, shape (N, order**3)
        Products of the three axis weights; each row sums to 1.
    """
    if cache is not None:
        num_atoms = cache.num_atoms
        dtype = cache.weights.dtype
        device = cache.weights.device
    else:
        if positions is None or box is None:
            raise ValueError("positions and box are required without a cache")
        positions = positions.contiguous()
        num_atoms = positions.shape[0]
        dtype = positions.dtype
        device = positions.device

    wp_dtype = get_wp_dtype(dtype)
    num_points = order**3
    indices = torch.zeros((num_atoms, num_points, 3), dtype=torch.int32, device=device)
    weights = torch.zeros((num_atoms, num_points), dtype=dtype, device=device)
    wp_indices = wp.from_torch(indices, dtype=wp.vec3i)
    wp_weights = wp.from_torch(weights, dtype=wp_dtype)

    if cache is not None:
        _check_cache(cache, num_atoms, mesh_dimensions, order)
        wp_cached_assignment_stencil(
            wp.from_torch(cache.weights.contiguous(), dtype=wp_dtype),
            wp.from_torch(cache.lower_left.contiguous(), dtype=wp.vec3i),
            order,
            wp_indices,
            wp_weights,
            wp_dtype,
            device=str(device),
        )
    else:
        offset, inverse_spacing = _mesh_geometry(
            box, mesh_dimensions, mesh_offset, dtype
        )
        wp_assignment_stencil(
            wp.from_torch(positions, dtype=get_wp_vec_dtype(dtype)),
            offset,
            inverse_spacing,
            order,
            wp_indices,
            wp_weights,
            wp_dtype,
            device=str(device),
        )
    return indices, weights


def for_each_assignment(
    kernel: Callable[[int, tuple[int, int, int], float], None],
    positions: torch.Tensor | None,
    box: torch.Tensor | Sequence[float] | None,
    mesh_dimensions: Sequence[int],
    order: int,
    mesh_offset: Sequence[float] | None = None,
    cache: AssignmentCache | None = None,
    wrap: bool = True,
) -> None:
    """Invoke ``kernel(particle, (ix, iy, iz), weight)`` for every assignment event.

    Events are visited particle by particle, each particle's ``order**3``
    support points with x slowest. With ``wrap=True`` indices are mapped into
    the mesh periodically.

    This is a host-side loop intended for custom accumulations and checks;
    the spread and gather functions run the same events on device.
    """
    indices, weights = assignment_stencil(
        positions, box, mesh_dimensions, order, mesh_offset=mesh_offset, cache=cache
    )
    if wrap:
        dims = torch.tensor(mesh_dimensions, dtype=torch.int32, device=indices.device)
        indices = torch.remainder(indices, dims)
    indices = indices.cpu().tolist()
    weights = weights.cpu().tolist()
    for particle, (particle_indices, particle_weights) in enumerate(
        zip(indices, weights)
    ):
        for index, weight in zip(particle_indices, particle_weights):
            kernel(particle, tuple(index), weight)


def spline_spread(
    positions: torch.Tensor | None,
    values: torch.Tensor,
    box: torch.Tensor | Sequence[float] | None,
    mesh_dimensions: Sequence[int],
    order: int,
    mesh_offset: Sequence[float] | None = None,
    cache: AssignmentCache | None = None,
) -> torch.Tensor:
    """Spread particle values onto a zeroed periodic mesh.

    Parameters
    ----------
    positions : torch.Tensor | None, shape (N, 3)
        Particle positions; may be None when ``cache`` is given.
    values : torch.Tensor, shape (N,)
        Values to spread (charges).
    box : torch.Tensor | Sequence[float] | None
        Orthorhombic box lengths; may be None when ``cache`` is given.
    mesh_dimensions : Sequence[int]
        Mesh points per axis.
    order : int
        Assignment order (1-7).
    mesh_offset : Sequence[float] | None
        Position of mesh point (0, 0, 0).
    cache : AssignmentCache | None
        Precomputed weights for the same particles, mesh and order.

    Returns
    -------
    torch.Tensor, shape mesh_dimensions
        Assigned values. ``mesh.sum() == values.sum()`` up to rounding.
    """
    values = values.contiguous()
    dtype = values.dtype
    device = values.device
    wp_dtype = get_wp_dtype(dtype)
    mesh = torch.zeros(tuple(mesh_dimensions), dtype=dtype, device=device)
    wp_mesh = wp.from_torch(mesh, dtype=wp_dtype)
    wp_values = wp.from_torch(values, dtype=wp_dtype)

    if cache is not None:
        _check_cache(cache, values.shape[0], mesh_dimensions, order)
        wp_spline_spread_cached(
            wp.from_torch(cache.weights.contiguous(), dtype=wp_dtype),
            wp.from_torch(cache.lower_left.contiguous(), dtype=wp.vec3i),
            wp_values,
            cache.order,
            wp_mesh,
            wp_dtype,
            device=str(device),
        )
    else:
        if positions is None or box is None:
            raise ValueError("positions and box are required without a cache")
        offset, inverse_spacing = _mesh_geometry(
            box, mesh_dimensions, mesh_offset, dtype
        )
        wp_spline_spread(
            wp.from_torch(positions.contiguous(), dtype=get_wp_vec_dtype(dtype)),
            wp_values,
            offset,
            inverse_spacing,
            order,
            wp_mesh,
            wp_dtype,
            device=str(device),
        )
    return mesh


def spline_gather_channels(
    positions: torch.Tensor | None,
    values: torch.Tensor,
    mesh: torch.Tensor,
    box: torch.Tensor | Sequence[float] | None,
    order: int,
    mesh_offset: Sequence[float] | None = None,
    cache: AssignmentCache | None = None,
) -> torch.Tensor:
    """Interpolate multi-channel mesh fields at the particles, scaled by ``values``.

    Parameters
    ----------
    positions : torch.Tensor | None, shape (N, 3)
        Particle positions; may be None when ``cache`` is given.
    values : torch.Tensor, shape (N,)
        Per-particle scale factors (charges).
    mesh : torch.Tensor, shape (C, nx, ny, nz)
        Mesh fields.
    box : torch.Tensor | Sequence[float] | None
        Orthorhombic box lengths; may be None when ``cache`` is given.
    order : int
        Assignment order (1-7).
    mesh_offset : Sequence[float] | None
        Position of mesh point (0, 0, 0).
    cache : AssignmentCache | None
        Precomputed weights for the same particles, mesh and order.

    Returns
    -------
    torch.Tensor, shape (N, C)
        ``values[i] * sum_g w(i, g) * mesh[c, g]``.
    """
    if mesh.ndim != 4:
        raise ValueError(f"Expected a (C, nx, ny, nz) mesh, got shape {tuple(mesh.shape)}")
    values = values.contiguous()
    mesh = mesh.contiguous()
    dtype = values.dtype
    device = values.device
    wp_dtype = get_wp_dtype(dtype)
    mesh_dimensions = tuple(mesh.shape[1:])
    output = torch.zeros((values.shape[0], mesh.shape[0]), dtype=dtype, device=device)
    wp_output = wp.from_torch(output, dtype=wp_dtype)
    wp_mesh = wp.from_torch(mesh, dtype=wp_dtype)
    wp_values = wp.from_torch(values, dtype=wp_dtype)

    if cache is not None:
        _check_cache(cache, values.shape[0], mesh_dimensions, order)
        wp_spline_gather_channels_cached(
            wp.from_torch(cache.weights.contiguous(), dtype=wp_dtype),
            wp.from_torch(cache.lower_left.contiguous(), dtype=wp.vec3i),
            wp_values,
            cache.order,
            wp_mesh,
            wp_output,
            wp_dtype,
            device=str(device),
        )
    else:
        if positions is None or box is None:
            raise ValueError("positions and box are required without a cache")
        offset, inverse_spacing = _mesh_geometry(
            box, mesh_dimensions, mesh_offset, dtype
        )
        wp_spline_gather_channels(
            wp.from_torch(positions.contiguous(), dtype=get_wp_vec_dtype(dtype)),
            wp_values,
            offset,
            inverse_spacing,
            order,
            wp_mesh,
            wp_output,
            wp_dtype,
            device=str(device),
        )
    return output
