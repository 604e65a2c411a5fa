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
Electrostatics Interactions Module
==================================

This module provides Warp implementations of the building blocks of a P3M
electrostatics solver in an orthorhombic periodic box.

Architecture
------------
This module provides framework-agnostic Warp kernel launchers.
For PyTorch bindings, see ``p3mops.torch.interactions.electrostatics``.

Available Methods
-----------------

1. **Short-range pair laws** (`coulomb`)
   - Damped (erfc) Coulomb for the P3M real-space contribution
   - Debye-Hueckel screened Coulomb
   - Reaction field
   - Warp launcher: ``pair_energy_forces_matrix()``

2. **P3M influence functions** (`p3m_kernels`)
   - ik differential operator per mesh axis
   - Aliasing-corrected optimal influence functions for energies and forces
"""

from .coulomb import (
    PAIR_LAW_DAMPED,
    PAIR_LAW_DEBYE_HUECKEL,
    PAIR_LAW_REACTION_FIELD,
    pair_energy_forces_matrix,
)
from .p3m_kernels import (
    bspline_transform,
    differential_operator,
    influence_function_energy,
    influence_function_force,
)

__all__ = [
    # Pair laws
    "PAIR_LAW_DAMPED",
    "PAIR_LAW_DEBYE_HUECKEL",
    "PAIR_LAW_REACTION_FIELD",
    "pair_energy_forces_matrix",
    # P3M
    "differential_operator",
    "bspline_transform",
    "influence_function_energy",
    "influence_function_force",
]
