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
P3M Reciprocal-Space Electrostatics (PyTorch)
=============================================

Particle-particle particle-mesh (P3M) evaluation of the long-range part of the
Ewald-split Coulomb interaction in an orthorhombic periodic box.

Pipeline
--------

1. Spread the charges onto the mesh with B-splines of the configured order.
2. Transform: :math:`Q = \mathrm{FFT}(\rho)`.
3. Energy:

   .. math::

       E = \frac{C}{2V} \sum_n G_E(n) |Q(n)|^2
           - C \frac{\alpha}{\sqrt{\pi}} \sum_i q_i^2
           - C \frac{\pi (\sum_i q_i)^2}{2 V \alpha^2}

   with the Coulomb prefactor :math:`C`. The last two terms are the self
   energy and the neutralising background of a charged system.

4. Electric field per axis, by ik differentiation:

   .. math::

       E_d = \frac{M}{V} \mathrm{IFFT}\left(-i \frac{2\pi D_d}{L_d} G_F Q\right)

   with the total number of mesh points :math:`M`.

5. Gather :math:`F_i = C q_i \sum_p w_{ip} E(p)` with the same weights as step 1.

6. Stress, with :math:`k = 2\pi s(n)/L` and
   :math:`e_n = \frac{C}{2V} G_E |Q|^2`:

   .. math::

       \sigma_{ab} = \frac{1}{V} \sum_{k \neq 0} e_n
       \left(\delta_{ab} - 2 k_a k_b \left(\frac{1}{k^2} + \frac{1}{4\alpha^2}\right)\right)

References
----------
- Hockney & Eastwood (1988). Computer Simulation Using Particles.
- Deserno & Holm (1998). J. Chem. Phys. 109, 7678.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

import torch

from p3mops.torch.interactions.electrostatics.influence import InfluenceFunctionCache
from p3mops.torch.interactions.electrostatics.parameters import (
    P3MConfigurationError,
    P3MParameters,
)
from p3mops.torch.spline import (
    compute_assignment_cache,
    spline_gather_channels,
    spline_spread,
)

__all__ = [
    "P3MResult",
    "p3m_reciprocal_space",
    "p3m_self_energy",
    "p3m_background_energy",
    "reciprocal_wavevectors",
]


@dataclass
class P3MResult:
    """Output of :func:`p3m_reciprocal_space`.

    Attributes
    ----------
    energy : torch.Tensor, shape ()
        Reciprocal-space energy including the self and background corrections.
    forces : torch.Tensor | None, shape (N, 3)
        Reciprocal-space forces.
    stress : torch.Tensor | None, shape (3, 3)
        Reciprocal-space stress tensor.
    """

    energy: torch.Tensor
    forces: torch.Tensor | None = None
    stress: torch.Tensor | None = None


def p3m_self_energy(charges: torch.Tensor, alpha: float, prefactor: float = 1.0) -> torch.Tensor:
    """Self energy of the Gaussian screening charges, ``C alpha / sqrt(pi) sum q^2``."""
    return prefactor * alpha / math.sqrt(math.pi) * (charges * charges).sum()


def p3m_background_energy(
    charges: torch.Tensor, alpha: float, volume: float, prefactor: float = 1.0
) -> torch.Tensor:
    """Energy of the uniform neutralising background of a net charge."""
    total_charge = charges.sum()
    return prefactor * math.pi * total_charge * total_charge / (2.0 * volume * alpha * alpha)


def reciprocal_wavevectors(
    params: P3MParameters,
    dtype: torch.dtype = torch.float64,
    device: torch.device | str = "cpu",
) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """Wave vector components ``2 pi s(n) / L`` broadcastable over the mesh.

    Returns
    -------
    tuple of torch.Tensor
        Shapes (nx, 1, 1), (1, ny, 1) and (1, 1, nz).
    """
    components = []
    for axis, (points, length) in enumerate(zip(params.mesh_dimensions, params.box)):
        n = torch.arange(points, dtype=torch.int64, device=device)
        shifted = torch.where(2 * n < points, n, n - points)
        k = (2.0 * math.pi / length) * shifted.to(dtype)
        shape = [1, 1, 1]
        shape[axis] = points
        components.append(k.reshape(shape))
    return tuple(components)


def _reciprocal_stress(
    mode_energy: torch.Tensor,
    params: P3MParameters,
) -> torch.Tensor:
    kx, ky, kz = reciprocal_wavevectors(params, mode_energy.dtype, mode_energy.device)
    k = (
        kx.expand(params.mesh_dimensions),
        ky.expand(params.mesh_dimensions),
        kz.expand(params.mesh_dimensions),
    )
    k2 = k[0] * k[0] + k[1] * k[1] + k[2] * k[2]
    nonzero = k2 > 0
    energy = torch.where(nonzero, mode_energy, torch.zeros_like(mode_energy))
    factor = torch.where(
        nonzero,
        2.0 * (1.0 / torch.where(nonzero, k2, torch.ones_like(k2)) + 0.25 / params.alpha**2),
        torch.zeros_like(k2),
    )

    stress = torch.zeros((3, 3), dtype=mode_energy.dtype, device=mode_energy.device)
    total = energy.sum()
    for a in range(3):
        for b in range(a, 3):
            value = -(energy * factor * k[a] * k[b]).sum()
            if a == b:
                value = value + total
            stress[a, b] = value
            stress[b, a] = value
    return stress / params.volume


def p3m_reciprocal_space(
    positions: torch.Tensor,
    charges: torch.Tensor,
    params: P3MParameters,
    cache: InfluenceFunctionCache | None = None,
    compute_forces: bool = True,
    compute_stress: bool = False,
    cache_weights: bool = True,
) -> P3MResult:
    """Reciprocal-space P3M energy, forces and stress.

    Parameters
    ----------
    positions : torch.Tensor, shape (N, 3)
        Particle positions. Positions outside the box are folded onto the mesh.
    charges : torch.Tensor, shape (N,)
        Particle charges.
    params : P3MParameters
        Solver parameters, validated before any mesh is allocated.
    cache : InfluenceFunctionCache | None
        Influence function cache reused across calls. A private cache is used
        when None.
    compute_forces : bool, default=True
        Interpolate the forces back to the particles.
    compute_stress : bool, default=False
        Compute the reciprocal-space stress tensor.
    cache_weights : bool, default=True
        Compute the assignment weights once and reuse them for the gather.

    Returns
    -------
    P3MResult

    Raises
    ------
    P3MConfigurationError
        If the parameters are invalid or the inputs have the wrong shape.
    """
    params.validate()
    if positions.ndim != 2 or positions.shape[1] != 3:
        raise P3MConfigurationError(
            f"positions must have shape (N, 3), got {tuple(positions.shape)}"
        )
    if charges.shape != (positions.shape[0],):
        raise P3MConfigurationError(
            f"charges must have shape ({positions.shape[0]},), got {tuple(charges.shape)}"
        )

    dtype = positions.dtype
    device = positions.device
    charges = charges.to(dtype)
    prefactor = params.prefactor
    volume = params.volume
    mesh_dimensions = params.mesh_dimensions
    total_points = mesh_dimensions[0] * mesh_dimensions[1] * mesh_dimensions[2]

    if cache is None:
        cache = InfluenceFunctionCache()
    tables = cache.get(params, dtype, device)

    assignment = None
    if cache_weights:
        assignment = compute_assignment_cache(
            positions, params.box, mesh_dimensions, params.order
        )

    mesh = spline_spread(
        positions, charges, params.box, mesh_dimensions, params.order, cache=assignment
    )
    mesh_fft = torch.fft.fftn(mesh)
    structure_factor = mesh_fft.real**2 + mesh_fft.imag**2

    mode_energy = prefactor / (2.0 * volume) * tables.energy * structure_factor
    energy = (
        mode_energy.sum()
        - p3m_self_energy(charges, params.alpha, prefactor)
        - p3m_background_energy(charges, params.alpha, volume, prefactor)
    )

    forces = None
    if compute_forces:
        field = []
        for axis in range(3):
            shape = [1, 1, 1]
            shape[axis] = mesh_dimensions[axis]
            wavenumber = (2.0 * math.pi / params.box[axis]) * tables.operators[axis].to(
                dtype
            ).reshape(shape)
            scaled = (-1j * wavenumber) * tables.force * mesh_fft
            field.append(torch.fft.ifftn(scaled).real * (total_points / volume))
        field = torch.stack(field, dim=0).contiguous()
        forces = prefactor * spline_gather_channels(
            positions, charges, field, params.box, params.order, cache=assignment
        )

    stress = None
    if compute_stress:
        stress = _reciprocal_stress(mode_energy, params)

    return P3MResult(energy=energy, forces=forces, stress=stress)
