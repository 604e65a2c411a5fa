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

r"""
Mathematical Utilities
======================

This module provides low-level mathematical functions implemented in Warp.

Available Submodules
--------------------

math
    Integer floor division and the complementary error function.

spline
    Centred B-spline charge assignment of order 1 to 7: closed-form and
    tabulated weights, per-particle weight caches, spread and gather kernels.
"""

from .math import (
    wp_erfc,
    wpdivmod,
)
from .spline import (
    BSPLINE_COEFFICIENTS,
    MAX_ORDER,
    assignment_stencil,
    bspline_weight_launcher,
    cached_assignment_stencil,
    compute_assignment_cache,
    get_bspline_coefficients,
    spline_gather_channels,
    spline_gather_channels_cached,
    spline_spread,
    spline_spread_cached,
    tabulate_bspline_weights,
)

__all__ = [
    # Math functions
    "wpdivmod",
    "wp_erfc",
    # Charge assignment
    "MAX_ORDER",
    "BSPLINE_COEFFICIENTS",
    "get_bspline_coefficients",
    "bspline_weight_launcher",
    "tabulate_bspline_weights",
    "compute_assignment_cache",
    "assignment_stencil",
    "cached_assignment_stencil",
    "spline_spread",
    "spline_spread_cached",
    "spline_gather_channels",
    "spline_gather_channels_cached",
]
