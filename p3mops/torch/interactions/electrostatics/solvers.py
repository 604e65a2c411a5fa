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
Coulomb Solvers
===============

A Coulomb solver adds the electrostatic energy, forces and virial of a
periodic system to a :class:`SimulationContext`. The solver variant is picked
once at configuration time with :func:`create_coulomb_solver`:

- ``CoulombMethod.P3M``: damped real-space pairs plus P3M reciprocal space
- ``CoulombMethod.DH``: screened Coulomb, short range only
- ``CoulombMethod.RF``: reaction field, short range only

Examples
--------
>>> solver = create_coulomb_solver("p3m", alpha=0.8, mesh_dimensions=(32, 32, 32),
...                                order=5, r_cut=3.0, box=(10.0, 10.0, 10.0))
>>> ctx = SimulationContext(positions, charges, box=(10.0, 10.0, 10.0))
>>> solver.add_forces(ctx)
>>> energy = solver.energy(ctx)
"""

from __future__ import annotations

import dataclasses
import enum
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field

import torch

from p3mops.torch.interactions.electrostatics.coulomb import (
    damped_coulomb_energy_forces,
    pair_energy_forces,
)
from p3mops.torch.interactions.electrostatics.influence import InfluenceFunctionCache
from p3mops.torch.interactions.electrostatics.p3m import p3m_reciprocal_space
from p3mops.torch.interactions.electrostatics.parameters import (
    DebyeHueckelParameters,
    P3MParameters,
    ReactionFieldParameters,
)
from p3mops.torch.neighbors.cell_structure import CellStructure

__all__ = [
    "SimulationContext",
    "CoulombSolver",
    "P3MCoulomb",
    "DebyeHueckelCoulomb",
    "ReactionFieldCoulomb",
    "CoulombMethod",
    "create_coulomb_solver",
]


def _box_tuple(box: torch.Tensor | Sequence[float]) -> tuple[float, ...]:
    if isinstance(box, torch.Tensor):
        return tuple(float(v) for v in box.detach().reshape(-1).cpu().tolist())
    return tuple(float(v) for v in box)


@dataclass
class SimulationContext:
    r"""State shared between a Coulomb solver and its caller for one evaluation.

    Attributes
    ----------
    positions : torch.Tensor, shape (N, 3)
        Particle positions.
    charges : torch.Tensor, shape (N,)
        Particle charges.
    box : tuple[float, float, float]
        Orthorhombic box lengths.
    forces : torch.Tensor, shape (N, 3)
        Force accumulator. Zeroed when not given.
    energy : torch.Tensor, shape ()
        Energy accumulator.
    virial : torch.Tensor, shape (3, 3)
        Virial accumulator, :math:`\sum r_{ij} \otimes F_{ij}` plus
        :math:`V \sigma` of the reciprocal space.
    cell_structure : CellStructure | None
        Pair list provider. Solvers create their own when None.
    """

    positions: torch.Tensor
    charges: torch.Tensor
    box: tuple[float, float, float]
    forces: torch.Tensor | None = None
    energy: torch.Tensor | None = None
    virial: torch.Tensor | None = None
    cell_structure: CellStructure | None = field(default=None, repr=False)

    def __post_init__(self):
        self.box = _box_tuple(self.box)
        dtype = self.positions.dtype
        device = self.positions.device
        if self.forces is None:
            self.forces = torch.zeros_like(self.positions)
        if self.energy is None:
            self.energy = torch.zeros((), dtype=dtype, device=device)
        if self.virial is None:
            self.virial = torch.zeros((3, 3), dtype=dtype, device=device)

    @property
    def volume(self) -> float:
        return self.box[0] * self.box[1] * self.box[2]

    def reset_accumulators(self) -> None:
        self.forces.zero_()
        self.energy = torch.zeros_like(self.energy)
        self.virial.zero_()


class CoulombSolver(ABC):
    """Base class of the Coulomb solvers.

    Subclasses implement the capabilities they support; the others raise
    ``NotImplementedError``.

    Parameters
    ----------
    r_cut : float
        Short-range cutoff.
    skin : float
        Verlet skin of the pair list the solver builds when the context has
        no cell structure.
    """

    def __init__(self, r_cut: float, skin: float = 0.0):
        self.r_cut = float(r_cut)
        self.skin = float(skin)
        self._cell_structure: CellStructure | None = None

    @property
    @abstractmethod
    def prefactor(self) -> float:
        """Coulomb constant of the solver."""

    @abstractmethod
    def sanity_checks(self) -> None:
        """Validate the configuration, raising on invalid settings."""

    def energy(self, ctx: SimulationContext) -> torch.Tensor:
        """Add the energy to ``ctx.energy`` and return it."""
        raise NotImplementedError(f"{type(self).__name__} does not support energies")

    def add_forces(self, ctx: SimulationContext) -> None:
        """Add forces to ``ctx.forces`` and the virial to ``ctx.virial``."""
        raise NotImplementedError(f"{type(self).__name__} does not support forces")

    def stress(self, ctx: SimulationContext) -> torch.Tensor:
        """Return the stress tensor, shape (3, 3)."""
        raise NotImplementedError(f"{type(self).__name__} does not support stress")

    def pair_list(
        self, ctx: SimulationContext
    ) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        """Up-to-date half neighbor matrix ``(matrix, num_neighbors, shifts)``.

        Raises
        ------
        ValueError
            If the context's cell structure is shorter ranged than ``r_cut``.
        """
        structure = ctx.cell_structure
        if structure is None:
            if self._cell_structure is None:
                self._cell_structure = CellStructure(cutoff=self.r_cut, skin=self.skin)
            structure = self._cell_structure
        elif structure.search_radius < self.r_cut:
            raise ValueError(
                f"Cell structure search radius {structure.search_radius} is smaller "
                f"than the solver cutoff {self.r_cut}"
            )
        structure.update(ctx.positions, ctx.box)
        return (
            structure.neighbor_matrix,
            structure.num_neighbors,
            structure.neighbor_matrix_shifts,
        )


class _ShortRangeCoulomb(CoulombSolver):
    """Solver made of one short-range pair law."""

    law: str

    @abstractmethod
    def _pair_parameter(self) -> float:
        """Parameter of the pair law: kappa or the reaction-field constant."""

    def _short_range(self, ctx: SimulationContext):
        self.sanity_checks()
        neighbor_matrix, num_neighbors, shifts = self.pair_list(ctx)
        return pair_energy_forces(
            ctx.positions,
            ctx.charges,
            ctx.box,
            neighbor_matrix,
            num_neighbors,
            shifts,
            self.law,
            self._pair_parameter(),
            self.r_cut,
            self.prefactor,
        )

    def energy(self, ctx: SimulationContext) -> torch.Tensor:
        energies, _, _ = self._short_range(ctx)
        energy = energies.sum()
        ctx.energy = ctx.energy + energy
        return energy

    def add_forces(self, ctx: SimulationContext) -> None:
        _, forces, virial = self._short_range(ctx)
        ctx.forces += forces
        ctx.virial += virial

    def stress(self, ctx: SimulationContext) -> torch.Tensor:
        _, _, virial = self._short_range(ctx)
        return virial / ctx.volume


class DebyeHueckelCoulomb(_ShortRangeCoulomb):
    """Screened Coulomb interaction ``C q_i q_j exp(-kappa r) / r`` within ``r_cut``."""

    law = "debye_hueckel"

    def __init__(self, params: DebyeHueckelParameters, skin: float = 0.0):
        super().__init__(params.r_cut, skin)
        self.params = params

    @property
    def prefactor(self) -> float:
        return self.params.prefactor

    def sanity_checks(self) -> None:
        self.params.validate()
        if self.params.r_cut <= 0.0:
            raise ValueError("DebyeHueckelCoulomb needs a positive r_cut to build its pair list")

    def _pair_parameter(self) -> float:
        return self.params.kappa


class ReactionFieldCoulomb(_ShortRangeCoulomb):
    """Reaction-field interaction truncated at ``r_cut``."""

    law = "reaction_field"

    def __init__(self, params: ReactionFieldParameters, skin: float = 0.0):
        super().__init__(params.r_cut, skin)
        self.params = params

    @property
    def prefactor(self) -> float:
        return self.params.prefactor

    def sanity_checks(self) -> None:
        self.params.validate()

    def _pair_parameter(self) -> float:
        return self.params.B


class P3MCoulomb(CoulombSolver):
    """Ewald-split Coulomb interaction with P3M reciprocal space.

    The real-space part uses the damped pair law within ``r_cut``. The
    influence function tables are cached and rebuilt when the box or any
    parameter they depend on changes.

    Parameters
    ----------
    params : P3MParameters
        Solver parameters. The box of the context takes precedence over
        ``params.box`` at evaluation time.
    skin : float
        Verlet skin of the solver's own pair list.
    """

    def __init__(self, params: P3MParameters, skin: float = 0.0):
        super().__init__(params.r_cut, skin)
        self.params = params
        self.influence_cache = InfluenceFunctionCache()

    @property
    def prefactor(self) -> float:
        return self.params.prefactor

    def sanity_checks(self) -> None:
        self.params.validate()

    def _context_params(self, ctx: SimulationContext) -> P3MParameters:
        if tuple(ctx.box) != tuple(self.params.box):
            self.params = dataclasses.replace(self.params, box=tuple(ctx.box))
        self.sanity_checks()
        return self.params

    def _real_space(self, ctx: SimulationContext):
        if self.r_cut <= 0.0:
            return None
        neighbor_matrix, num_neighbors, shifts = self.pair_list(ctx)
        return damped_coulomb_energy_forces(
            ctx.positions,
            ctx.charges,
            ctx.box,
            neighbor_matrix,
            num_neighbors,
            shifts,
            alpha=self.params.alpha,
            cutoff=self.r_cut,
            prefactor=self.prefactor,
        )

    def energy(self, ctx: SimulationContext) -> torch.Tensor:
        params = self._context_params(ctx)
        result = p3m_reciprocal_space(
            ctx.positions,
            ctx.charges,
            params,
            cache=self.influence_cache,
            compute_forces=False,
        )
        energy = result.energy
        real_space = self._real_space(ctx)
        if real_space is not None:
            energy = energy + real_space[0].sum()
        ctx.energy = ctx.energy + energy
        return energy

    def add_forces(self, ctx: SimulationContext) -> None:
        params = self._context_params(ctx)
        result = p3m_reciprocal_space(
            ctx.positions,
            ctx.charges,
            params,
            cache=self.influence_cache,
            compute_forces=True,
            compute_stress=True,
        )
        ctx.forces += result.forces
        ctx.virial += result.stress * params.volume
        real_space = self._real_space(ctx)
        if real_space is not None:
            ctx.forces += real_space[1]
            ctx.virial += real_space[2]

    def stress(self, ctx: SimulationContext) -> torch.Tensor:
        params = self._context_params(ctx)
        result = p3m_reciprocal_space(
            ctx.positions,
            ctx.charges,
            params,
            cache=self.influence_cache,
            compute_forces=False,
            compute_stress=True,
        )
        stress = result.stress
        real_space = self._real_space(ctx)
        if real_space is not None:
            stress = stress + real_space[2] / params.volume
        return stress


class CoulombMethod(enum.Enum):
    """Available Coulomb solvers."""

    P3M = "p3m"
    DH = "dh"
    RF = "rf"


def create_coulomb_solver(
    method: CoulombMethod | str,
    skin: float = 0.0,
    params: P3MParameters | DebyeHueckelParameters | ReactionFieldParameters | None = None,
    **kwargs,
) -> CoulombSolver:
    """Create and check a Coulomb solver.

    Parameters
    ----------
    method : CoulombMethod | str
        Solver variant, ``"p3m"``, ``"dh"`` or ``"rf"``.
    skin : float
        Verlet skin of the solver's own pair list.
    params : dataclass, optional
        Ready-made parameters matching the method.
    **kwargs
        Fields of the matching parameter dataclass when ``params`` is None.

    Returns
    -------
    CoulombSolver

    Raises
    ------
    ValueError
        If the method is unknown or the parameters do not match it.
    """
    method = CoulombMethod(method.lower() if isinstance(method, str) else method)
    solver_types = {
        CoulombMethod.P3M: (P3MCoulomb, P3MParameters),
        CoulombMethod.DH: (DebyeHueckelCoulomb, DebyeHueckelParameters),
        CoulombMethod.RF: (ReactionFieldCoulomb, ReactionFieldParameters),
    }
    solver_type, params_type = solver_types[method]
    if params is None:
        params = params_type(**kwargs)
    elif kwargs:
        raise ValueError("Pass either params or keyword parameters, not both")
    if not isinstance(params, params_type):
        raise ValueError(
            f"{method.name} expects {params_type.__name__}, got {type(params).__name__}"
        )
    solver = solver_type(params, skin=skin)
    solver.sanity_checks()
    return solver

