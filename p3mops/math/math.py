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

"""Scalar helper functions shared by the warp kernels."""

from __future__ import annotations

from typing import Any

import warp as wp

__all__ = [
    "wpdivmod",
    "wp_erfc",
]


@wp.func
def wpdivmod(a: wp.int32, b: wp.int32):
    """Floor division and non-negative remainder of two integers.

    Returns ``(q, r)`` with ``a == q * b + r`` and ``0 <= r < b`` for ``b > 0``.
    """
    r = ((a % b) + b) % b
    q = (a - r) // b
    return q, r


@wp.func
def wp_erfc(x: Any) -> Any:
    """Complementary error function.

    Chebyshev-fitted rational approximation (Numerical Recipes ``erfcc``)
    with fractional error below 1.2e-7 over the whole real line.
    """
    one = type(x)(1.0)
    z = wp.abs(x)
    t = one / (one + type(x)(0.5) * z)
    poly = type(x)(-0.82215223) + t * type(x)(0.17087277)
    poly = type(x)(1.48851587) + t * poly
    poly = type(x)(-1.13520398) + t * poly
    poly = type(x)(0.27886807) + t * poly
    poly = type(x)(-0.18628806) + t * poly
    poly = type(x)(0.09678418) + t * poly
    poly = type(x)(0.37409196) + t * poly
    poly = type(x)(1.00002368) + t * poly
    poly = type(x)(-1.26551223) + t * poly
    result = t * wp.exp(-z * z + poly)
    if x < type(x)(0.0):
        result = type(x)(2.0) - result
    return result

