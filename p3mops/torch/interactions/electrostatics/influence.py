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
P3M Influence Function Tables (PyTorch)
=======================================

PyTorch bindings for the influence function kernels and a cache that
recomputes the tables only when a parameter they depend on changes.
"""

from __future__ import annotations

from dataclasses import dataclass

import torch
import warp as wp

from p3mops.interactions.electrostatics.p3m_kernels import (
    bspline_transform as wp_bspline_transform,
)
from p3mops.interactions.electrostatics.p3m_kernels import (
    differential_operator as wp_differential_operator,
)
from p3mops.interactions.electrostatics.p3m_kernels import (
    influence_function_energy as wp_influence_function_energy,
)
from p3mops.interactions.electrostatics.p3m_kernels import (
    influence_function_force as wp_influence_function_force,
)
from p3mops.torch.interactions.electrostatics.parameters import P3MParameters
from p3mops.types import get_wp_dtype, get_wp_vec_dtype

__all__ = [
    "differential_operator",
    "bspline_transform",
    "influence_function_energy",
    "influence_function_force",
    "InfluenceFunction",
    "InfluenceFunctionCache",
]


def differential_operator(
    mesh_size: int, device: torch.device | str = "cpu"
) -> torch.Tensor:
    """Discrete ik differential operator of one mesh axis.

    Returns
    -------
    torch.Tensor, shape (mesh_size,), dtype=int32
        ``d[j] = j`` and ``d[mesh_size - j] = -j`` below the Nyquist index,
        0 at index 0 and at the Nyquist index.
    """
    operator = torch.zeros((mesh_size,), dtype=torch.int32, device=device)
    if mesh_size == 0:
        return operator
    wp_differential_operator(
        mesh_size,
        wp.from_torch(operator, dtype=wp.int32),
        device=str(operator.device),
    )
    return operator


def bspline_transform(x: torch.Tensor, order: int) -> torch.Tensor:
    """Fourier transform of the order-``order`` assignment function, ``sinc(x)**order``."""
    x = x.contiguous()
    output = torch.empty_like(x)
    if x.numel() == 0:
        return output
    wp_dtype = get_wp_dtype(x.dtype)
    wp_bspline_transform(
        wp.from_torch(x.reshape(-1), dtype=wp_dtype),
        order,
        wp.from_torch(output.reshape(-1), dtype=wp_dtype),
        wp_dtype,
        device=str(x.device),
    )
    return output


def influence_function_energy(
    params: P3MParameters,
    dtype: torch.dtype = torch.float64,
    device: torch.device | str = "cpu",
) -> torch.Tensor:
    """Optimal influence function for energies on the full mesh.

    Returns
    -------
    torch.Tensor, shape (nx, ny, nz)
    """
    wp_dtype = get_wp_dtype(dtype)
    wp_vec_dtype = get_wp_vec_dtype(dtype)
    influence = torch.zeros(params.mesh_dimensions, dtype=dtype, device=device)
    wp_influence_function_energy(
        wp_vec_dtype(*params.box),
        params.alpha,
        params.order,
        params.alias_images,
        wp.from_torch(influence, dtype=wp_dtype),
        wp_dtype,
        device=str(influence.device),
    )
    return influence


def influence_function_force(
    params: P3MParameters,
    operators: tuple[torch.Tensor, torch.Tensor, torch.Tensor] | None = None,
    dtype: torch.dtype = torch.float64,
    device: torch.device | str = "cpu",
) -> torch.Tensor:
    """Optimal influence function for ik-differentiated forces on the full mesh.

    Parameters
    ----------
    params : P3MParameters
        Mesh, order, alpha, box and alias images.
    operators : tuple of torch.Tensor, optional
        Per-axis differential operators. Computed with
        :func:`differential_operator` when None.
    dtype : torch.dtype
        Floating point precision.
    device : torch.device | str
        Device of the table.

    Returns
    -------
    torch.Tensor, shape (nx, ny, nz)
    """
    wp_dtype = get_wp_dtype(dtype)
    wp_vec_dtype = get_wp_vec_dtype(dtype)
    if operators is None:
        operators = tuple(differential_operator(m, device) for m in params.mesh_dimensions)
    influence = torch.zeros(params.mesh_dimensions, dtype=dtype, device=device)
    wp_influence_function_force(
        wp_vec_dtype(*params.box),
        params.alpha,
        params.order,
        params.alias_images,
        *(wp.from_torch(op.to(device), dtype=wp.int32) for op in operators),
        wp.from_torch(influence, dtype=wp_dtype),
        wp_dtype,
        device=str(influence.device),
    )
    return influence


@dataclass
class InfluenceFunction:
    """Influence function tables of one parameter set.

    Attributes
    ----------
    energy : torch.Tensor, shape (nx, ny, nz)
        Energy influence function.
    force : torch.Tensor, shape (nx, ny, nz)
        Force influence function.
    operators : tuple of torch.Tensor
        Differential operator of each axis, dtype int32.
    """

    energy: torch.Tensor
    force: torch.Tensor
    operators: tuple[torch.Tensor, torch.Tensor, torch.Tensor]


class InfluenceFunctionCache:
    """Cache of the influence function tables.

    The tables are keyed by mesh, order, alpha, box, alias images, dtype and
    device. :meth:`get` recomputes them only when the key changes.

    Examples
    --------
    >>> cache = InfluenceFunctionCache()
    >>> tables = cache.get(params)
    >>> cache.get(params) is tables
    True
    """

    def __init__(self):
        self._key = None
        self._tables: InfluenceFunction | None = None
        self.num_builds = 0

    @staticmethod
    def _make_key(params: P3MParameters, dtype: torch.dtype, device: torch.device):
        return (
            tuple(params.mesh_dimensions),
            int(params.order),
            float(params.alpha),
            tuple(params.box),
            int(params.alias_images),
            dtype,
            device,
        )

    def is_valid(
        self,
        params: P3MParameters,
        dtype: torch.dtype = torch.float64,
        device: torch.device | str = "cpu",
    ) -> bool:
        """True if the cached tables match the parameters."""
        return self._tables is not None and self._key == self._make_key(
            params, dtype, torch.device(device)
        )

    def invalidate(self) -> None:
        """Drop the cached tables."""
        self._key = None
        self._tables = None

    def get(
        self,
        params: P3MParameters,
        dtype: torch.dtype = torch.float64,
        device: torch.device | str = "cpu",
    ) -> InfluenceFunction:
        """Return the tables for ``params``, rebuilding them when stale."""
        device = torch.device(device)
        key = self._make_key(params, dtype, device)
        if self._tables is not None and key == self._key:
            return self._tables

        operators = tuple(differential_operator(m, device) for m in params.mesh_dimensions)
        self._tables = InfluenceFunction(
            energy=influence_function_energy(params, dtype, device),
            force=influence_function_force(params, operators, dtype, device),
            operators=operators,
        )
        self._key = key
        self.num_builds += 1
        return self._tables
