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

"""Mapping between PyTorch dtypes and Warp scalar, vector and matrix types."""

from __future__ import annotations

import torch
import warp as wp

__all__ = [
    "get_wp_dtype",
    "get_wp_vec_dtype",
    "get_wp_mat_dtype",
]

_SCALAR_TYPES = {
    torch.float16: wp.float16,
    torch.float32: wp.float32,
    torch.float64: wp.float64,
}

_VEC_TYPES = {
    torch.float16: wp.vec3h,
    torch.float32: wp.vec3f,
    torch.float64: wp.vec3d,
}

_MAT_TYPES = {
    torch.float16: wp.mat33h,
    torch.float32: wp.mat33f,
    torch.float64: wp.mat33d,
}


def get_wp_dtype(dtype: torch.dtype):
    """Return the warp scalar type matching a torch floating point dtype.

    Raises
    ------
    ValueError
        If ``dtype`` is not float16, float32 or float64.
    """
    if dtype not in _SCALAR_TYPES:
        raise ValueError(f"Unsupported dtype: {dtype}")
    return _SCALAR_TYPES[dtype]


def get_wp_vec_dtype(dtype: torch.dtype):
    """Return the warp 3-vector type matching a torch floating point dtype."""
    if dtype not in _VEC_TYPES:
        raise ValueError(f"Unsupported dtype: {dtype}")
    return _VEC_TYPES[dtype]


def get_wp_mat_dtype(dtype: torch.dtype):
    """Return the warp 3x3 matrix type matching a torch floating point dtype."""
    if dtype not in _MAT_TYPES:
        raise ValueError(f"Unsupported dtype: {dtype}")
    return _MAT_TYPES[dtype]
