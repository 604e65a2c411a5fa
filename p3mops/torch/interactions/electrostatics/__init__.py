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

"""PyTorch bindings for electrostatics interactions."""

from p3mops.torch.interactions.electrostatics.coulomb import (
    PAIR_LAWS,
    damped_coulomb_energy_forces,
    debye_hueckel_energy_forces,
    pair_energy_forces,
    reaction_field_energy_forces,
)
from p3mops.torch.interactions.electrostatics.influence import (
    InfluenceFunction,
    InfluenceFunctionCache,
    bspline_transform,
    differential_operator,
    influence_function_energy,
    influence_function_force,
)
from p3mops.torch.interactions.electrostatics.p3m import (
    P3MResult,
    p3m_background_energy,
    p3m_reciprocal_space,
    p3m_self_energy,
    reciprocal_wavevectors,
)
from p3mops.torch.interactions.electrostatics.parameters import (
    DebyeHueckelParameters,
    P3MConfigurationError,
    P3MParameters,
    ReactionFieldParameters,
    estimate_p3m_force_error,
    estimate_p3m_kspace_error,
    estimate_p3m_parameters,
    estimate_real_space_error,
    reaction_field_constant,
)
from p3mops.torch.interactions.electrostatics.solvers import (
    CoulombMethod,
    CoulombSolver,
    DebyeHueckelCoulomb,
    P3MCoulomb,
    ReactionFieldCoulomb,
    SimulationContext,
    create_coulomb_solver,
)

__all__ = [
    # Pair laws
    "PAIR_LAWS",
    "pair_energy_forces",
    "damped_coulomb_energy_forces",
    "debye_hueckel_energy_forces",
    "reaction_field_energy_forces",
    # Influence function
    "differential_operator",
    "bspline_transform",
    "influence_function_energy",
    "influence_function_force",
    "InfluenceFunction",
    "InfluenceFunctionCache",
    # P3M
    "P3MResult",
    "p3m_reciprocal_space",
    "p3m_self_energy",
    "p3m_background_energy",
    "reciprocal_wavevectors",
    # Parameters
    "P3MConfigurationError",
    "P3MParameters",
    "DebyeHueckelParameters",
    "ReactionFieldParameters",
    "reaction_field_constant",
    "estimate_p3m_kspace_error",
    "estimate_real_space_error",
    "estimate_p3m_force_error",
    "estimate_p3m_parameters",
    # Solvers
    "SimulationContext",
    "CoulombSolver",
    "P3MCoulomb",
    "DebyeHueckelCoulomb",
    "ReactionFieldCoulomb",
    "CoulombMethod",
    "create_coulomb_solver",
]
