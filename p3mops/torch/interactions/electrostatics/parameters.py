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
Parameters and Accuracy Estimates for P3M Electrostatics (PyTorch)
==================================================================

This module holds the configuration dataclasses of the Coulomb solvers and the
analytic error estimates used to pick P3M parameters for a target accuracy.

Error Estimates
---------------

The reciprocal-space RMS force error follows Deserno & Holm for ik
differentiation, evaluated per axis with mesh spacing :math:`h = L/M`:

.. math::

    \Delta F_d = \frac{Q^2 (h\alpha)^p}{L^2}
    \sqrt{\frac{\alpha L \sqrt{2\pi}}{N} \sum_{m=0}^{p-1} a^{(p)}_m (h\alpha)^{2m}}

and the three axes are summed in quadrature. The real-space error uses
Kolafa & Perram:

.. math::

    \Delta F_r = \frac{2 Q^2 e^{-\alpha^2 r_c^2}}{\sqrt{N r_c V}}

with :math:`Q^2 = \sum_i q_i^2`.

References
----------
- Deserno & Holm, J. Chem. Phys. 109, 7694 (1998)
- Kolafa & Perram, Mol. Simul. 9, 351 (1992)
"""

from __future__ import annotations

import math
import warnings
from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np
import torch

from p3mops.math import MAX_ORDER

__all__ = [
    "P3MConfigurationError",
    "P3MParameters",
    "DebyeHueckelParameters",
    "ReactionFieldParameters",
    "reaction_field_constant",
    "estimate_p3m_kspace_error",
    "estimate_real_space_error",
    "estimate_p3m_force_error",
    "estimate_p3m_parameters",
]


class P3MConfigurationError(ValueError):
    """Exception raised for invalid P3M settings.

    Raised before any mesh is allocated when the mesh, assignment order,
    splitting parameter, cutoff, box or number of alias images is invalid.
    """


def _as_float_triple(values: torch.Tensor | Sequence[float]) -> tuple[float, ...]:
    if isinstance(values, torch.Tensor):
        return tuple(float(v) for v in values.detach().reshape(-1).cpu().tolist())
    return tuple(float(v) for v in values)


@dataclass
class P3MParameters:
    """Container for P3M parameters.

    Attributes
    ----------
    alpha : float
        Ewald splitting parameter (inverse length units).
    mesh_dimensions : tuple[int, int, int]
        Mesh dimensions (nx, ny, nz).
    order : int
        Charge assignment order, 1 to 7.
    r_cut : float
        Real-space cutoff. 0 disables the real-space distance check.
    box : tuple[float, float, float]
        Orthorhombic box lengths.
    alias_images : int
        Number of alias images per direction in the influence function sums.
    prefactor : float
        Coulomb constant multiplying every energy, force and stress.
    """

    alpha: float
    mesh_dimensions: tuple[int, int, int]
    order: int
    r_cut: float
    box: tuple[float, float, float]
    alias_images: int = 1
    prefactor: float = 1.0

    def __post_init__(self):
        self.mesh_dimensions = tuple(int(m) for m in self.mesh_dimensions)
        self.box = _as_float_triple(self.box)
        self.alpha = float(self.alpha)
        self.r_cut = float(self.r_cut)
        self.prefactor = float(self.prefactor)

    @property
    def volume(self) -> float:
        return self.box[0] * self.box[1] * self.box[2]

    @property
    def mesh_spacing(self) -> tuple[float, float, float]:
        return tuple(length / mesh for length, mesh in zip(self.box, self.mesh_dimensions))

    def validate(self) -> P3MParameters:
        """Check every field.

        Returns
        -------
        P3MParameters
            self, so construction and validation can be chained.

        Raises
        ------
        P3MConfigurationError
            If any field is out of range.
        """
        if len(self.mesh_dimensions) != 3:
            raise P3MConfigurationError(
                f"mesh_dimensions must have 3 entries, got {self.mesh_dimensions}"
            )
        if min(self.mesh_dimensions) < 1:
            raise P3MConfigurationError(
                f"mesh_dimensions must be positive, got {self.mesh_dimensions}"
            )
        if isinstance(self.order, bool) or int(self.order) != self.order:
            raise P3MConfigurationError(f"order must be an integer, got {self.order}")
        if not 1 <= self.order <= MAX_ORDER:
            raise P3MConfigurationError(
                f"order must be between 1 and {MAX_ORDER}, got {self.order}"
            )
        if not math.isfinite(self.alpha) or self.alpha <= 0.0:
            raise P3MConfigurationError(f"alpha must be positive, got {self.alpha}")
        if not math.isfinite(self.r_cut) or self.r_cut < 0.0:
            raise P3MConfigurationError(f"r_cut must be non-negative, got {self.r_cut}")
        if len(self.box) != 3:
            raise P3MConfigurationError(f"box must have 3 lengths, got {self.box}")
        if not all(math.isfinite(b) and b > 0.0 for b in self.box):
            raise P3MConfigurationError(f"box lengths must be positive, got {self.box}")
        if min(self.mesh_spacing) <= 0.0 or self.volume <= 0.0:
            raise P3MConfigurationError(
                f"Degenerate mesh spacing {self.mesh_spacing} or volume {self.volume}"
            )
        if int(self.alias_images) != self.alias_images or self.alias_images < 0:
            raise P3MConfigurationError(
                f"alias_images must be a non-negative integer, got {self.alias_images}"
            )
        if not math.isfinite(self.prefactor):
            raise P3MConfigurationError(f"prefactor must be finite, got {self.prefactor}")

        if self.r_cut > 0.5 * min(self.box):
            warnings.warn(
                f"r_cut={self.r_cut} exceeds half the smallest box length "
                f"{min(self.box)}; the real-space sum sees several images of a particle",
                stacklevel=2,
            )
        if any(m % 2 for m in self.mesh_dimensions):
            warnings.warn(
                f"Odd mesh dimension in {self.mesh_dimensions}; even meshes are "
                f"recommended for the ik differential operator",
                stacklevel=2,
            )
        return self


@dataclass
class DebyeHueckelParameters:
    """Container for the screened Coulomb (Debye-Hueckel) solver.

    Attributes
    ----------
    kappa : float
        Inverse Debye screening length.
    r_cut : float
        Interaction cutoff. 0 disables the cutoff.
    prefactor : float
        Coulomb constant.
    """

    kappa: float
    r_cut: float
    prefactor: float = 1.0

    def validate(self) -> DebyeHueckelParameters:
        if not math.isfinite(self.kappa) or self.kappa < 0.0:
            raise ValueError(f"kappa must be non-negative, got {self.kappa}")
        if not math.isfinite(self.r_cut) or self.r_cut < 0.0:
            raise ValueError(f"r_cut must be non-negative, got {self.r_cut}")
        return self


def reaction_field_constant(
    kappa: float, epsilon1: float, epsilon2: float, r_cut: float
) -> float:
    r"""Reaction-field constant :math:`B` of a dielectric continuum beyond ``r_cut``.

    .. math::

        B = \frac{2(\epsilon_1 - \epsilon_2)(1 + \kappa r_c) - \epsilon_2 (\kappa r_c)^2}
        {(\epsilon_1 + 2\epsilon_2)(1 + \kappa r_c) + \epsilon_2 (\kappa r_c)^2}
    """
    kr = kappa * r_cut
    numerator = 2.0 * (epsilon1 - epsilon2) * (1.0 + kr) - epsilon2 * kr * kr
    denominator = (epsilon1 + 2.0 * epsilon2) * (1.0 + kr) + epsilon2 * kr * kr
    return numerator / denominator


@dataclass
class ReactionFieldParameters:
    """Container for the reaction-field solver.

    Attributes
    ----------
    kappa : float
        Inverse screening length of the continuum.
    epsilon1 : float
        Dielectric constant inside the cutoff sphere.
    epsilon2 : float
        Dielectric constant of the continuum.
    r_cut : float
        Cutoff radius. Must be positive.
    prefactor : float
        Coulomb constant.
    """

    kappa: float
    epsilon1: float
    epsilon2: float
    r_cut: float
    prefactor: float = 1.0

    @property
    def B(self) -> float:
        return reaction_field_constant(self.kappa, self.epsilon1, self.epsilon2, self.r_cut)

    def validate(self) -> ReactionFieldParameters:
        if not math.isfinite(self.kappa) or self.kappa < 0.0:
            raise ValueError(f"kappa must be non-negative, got {self.kappa}")
        if self.epsilon1 <= 0.0 or self.epsilon2 <= 0.0:
            raise ValueError(
                f"Dielectric constants must be positive, got "
                f"epsilon1={self.epsilon1}, epsilon2={self.epsilon2}"
            )
        if not math.isfinite(self.r_cut) or self.r_cut <= 0.0:
            raise ValueError(f"r_cut must be positive, got {self.r_cut}")
        return self


###########################################################################################
########################### Error Estimates ###############################################
###########################################################################################


def _kspace_coefficients() -> np.ndarray:
    """Deserno-Holm coefficients acons[order, m] for ik differentiation."""
    acons = np.zeros((MAX_ORDER + 1, MAX_ORDER))
    acons[1, 0] = 2.0 / 3.0
    acons[2, :2] = [1.0 / 50.0, 5.0 / 294.0]
    acons[3, :3] = [1.0 / 588.0, 7.0 / 1440.0, 21.0 / 3872.0]
    acons[4, :4] = [1.0 / 4320.0, 3.0 / 1936.0, 7601.0 / 2271360.0, 143.0 / 28800.0]
    acons[5, :5] = [
        1.0 / 23232.0,
        7601.0 / 13628160.0,
        143.0 / 69120.0,
        517231.0 / 106536960.0,
        106640677.0 / 11737571328.0,
    ]
    acons[6, :6] = [
        691.0 / 68140800.0,
        13.0 / 57600.0,
        47021.0 / 35512320.0,
        9694607.0 / 2095994880.0,
        733191589.0 / 59609088000.0,
        326190917.0 / 11700633600.0,
    ]
    acons[7, :7] = [
        1.0 / 345600.0,
        3617.0 / 35512320.0,
        745739.0 / 838397952.0,
        56399353.0 / 12773376000.0,
        25091609.0 / 1560084480.0,
        1755948832039.0 / 36229939200000.0,
        4887769399.0 / 37838389248.0,
    ]
    return acons


KSPACE_ERROR_COEFFICIENTS = _kspace_coefficients()


def _kspace_error_axis(
    spacing: float,
    length: float,
    num_particles: int,
    order: int,
    alpha: float,
    sum_q2: float,
) -> float:
    h_alpha = spacing * alpha
    series = sum(
        KSPACE_ERROR_COEFFICIENTS[order, m] * h_alpha ** (2 * m) for m in range(order)
    )
    return (
        sum_q2
        * h_alpha**order
        * math.sqrt(alpha * length * math.sqrt(2.0 * math.pi) * series / num_particles)
        / (length * length)
    )


def estimate_p3m_kspace_error(
    mesh_dimensions: Sequence[int],
    order: int,
    alpha: float,
    num_particles: int,
    sum_q2: float,
    box: torch.Tensor | Sequence[float],
) -> float:
    r"""Estimate the RMS reciprocal-space force error of P3M with ik differentiation.

    Parameters
    ----------
    mesh_dimensions : Sequence[int]
        Mesh dimensions (nx, ny, nz).
    order : int
        Charge assignment order, 1 to 7.
    alpha : float
        Ewald splitting parameter.
    num_particles : int
        Number of charged particles.
    sum_q2 : float
        Sum of squared charges.
    box : torch.Tensor | Sequence[float]
        Orthorhombic box lengths.

    Returns
    -------
    float
        Per-axis errors summed in quadrature, divided by :math:`\sqrt{3}`.
    """
    if num_particles <= 0:
        return 0.0
    lengths = _as_float_triple(box)
    axis_errors = [
        _kspace_error_axis(length / mesh, length, num_particles, order, alpha, sum_q2)
        for length, mesh in zip(lengths, mesh_dimensions)
    ]
    return math.sqrt(sum(e * e for e in axis_errors)) / math.sqrt(3.0)


def estimate_real_space_error(
    alpha: float,
    r_cut: float,
    num_particles: int,
    sum_q2: float,
    box: torch.Tensor | Sequence[float],
) -> float:
    """Kolafa-Perram estimate of the RMS real-space force error."""
    if num_particles <= 0:
        return 0.0
    lengths = _as_float_triple(box)
    volume = lengths[0] * lengths[1] * lengths[2]
    return (
        2.0
        * sum_q2
        * math.exp(-alpha * alpha * r_cut * r_cut)
        / math.sqrt(num_particles * r_cut * volume)
    )


def estimate_p3m_force_error(
    mesh_dimensions: Sequence[int],
    order: int,
    alpha: float,
    r_cut: float,
    num_particles: int,
    sum_q2: float,
    box: torch.Tensor | Sequence[float],
) -> float:
    """Total RMS force error, the quadrature sum of both estimates."""
    kspace = estimate_p3m_kspace_error(
        mesh_dimensions, order, alpha, num_particles, sum_q2, box
    )
    real = estimate_real_space_error(alpha, r_cut, num_particles, sum_q2, box)
    return math.sqrt(kspace * kspace + real * real)


def _bisect_alpha(
    target: float,
    r_cut: float,
    num_particles: int,
    sum_q2: float,
    box: Sequence[float],
    tolerance: float = 1e-8,
    max_iterations: int = 200,
) -> float:
    """Smallest alpha whose real-space error does not exceed target."""
    lower = 1e-3 / r_cut
    upper = 50.0 / r_cut
    if estimate_real_space_error(lower, r_cut, num_particles, sum_q2, box) <= target:
        return lower
    if estimate_real_space_error(upper, r_cut, num_particles, sum_q2, box) > target:
        return upper
    for _ in range(max_iterations):
        middle = 0.5 * (lower + upper)
        if estimate_real_space_error(middle, r_cut, num_particles, sum_q2, box) > target:
            lower = middle
        else:
            upper = middle
        if upper - lower < tolerance * upper:
            break
    return upper


def estimate_p3m_parameters(
    positions: torch.Tensor,
    charges: torch.Tensor,
    box: torch.Tensor | Sequence[float],
    r_cut: float,
    accuracy: float = 1e-4,
    order: int = 5,
    alias_images: int = 1,
    prefactor: float = 1.0,
    max_mesh: int = 512,
) -> P3MParameters:
    """Estimate P3M parameters for a target RMS force accuracy.

    The real-space and reciprocal-space errors are each budgeted
    accuracy / sqrt(2). Alpha is bisected so that the real-space error
    meets its budget at the given cutoff, then the smallest even mesh, starting
    at 16 along the longest axis, whose reciprocal-space error meets its budget
    is chosen. Shorter axes get proportionally fewer points, rounded up to an
    even number.

    Parameters
    ----------
    positions : torch.Tensor, shape (N, 3)
        Atomic coordinates.
    charges : torch.Tensor, shape (N,)
        Atomic charges.
    box : torch.Tensor | Sequence[float]
        Orthorhombic box lengths.
    r_cut : float
        Real-space cutoff. Must be positive.
    accuracy : float, default=1e-4
        Target RMS force error.
    order : int, default=5
        Charge assignment order.
    alias_images : int, default=1
        Alias images of the influence function.
    prefactor : float, default=1.0
        Coulomb constant.
    max_mesh : int, default=512
        Largest mesh edge tried.

    Returns
    -------
    P3MParameters
        Validated parameters.

    Raises
    ------
    P3MConfigurationError
        If r_cut or accuracy is not positive, or the order is invalid.
    """
    if r_cut <= 0.0:
        raise P3MConfigurationError(f"r_cut must be positive, got {r_cut}")
    if accuracy <= 0.0:
        raise P3MConfigurationError(f"accuracy must be positive, got {accuracy}")
    if not 1 <= order <= MAX_ORDER:
        raise P3MConfigurationError(f"order must be between 1 and {MAX_ORDER}, got {order}")

    lengths = _as_float_triple(box)
    num_particles = positions.shape[0]
    sum_q2 = float((charges.detach().to(torch.float64) ** 2).sum().item())
    budget = accuracy / math.sqrt(2.0)

    alpha = _bisect_alpha(budget, r_cut, num_particles, sum_q2, lengths)

    longest = max(lengths)
    mesh_edge = 16
    while True:
        mesh_dimensions = tuple(
            max(2, 2 * math.ceil(mesh_edge * length / longest / 2.0)) for length in lengths
        )
        kspace_error = estimate_p3m_kspace_error(
            mesh_dimensions, order, alpha, num_particles, sum_q2, lengths
        )
        if kspace_error <= budget or mesh_edge >= max_mesh:
            break
        mesh_edge += 2

    error = estimate_p3m_force_error(
        mesh_dimensions, order, alpha, r_cut, num_particles, sum_q2, lengths
    )
    if error > accuracy:
        warnings.warn(
            f"Estimated P3M force error {error:.3e} is worse than the requested "
            f"accuracy {accuracy:.3e}; increase r_cut or max_mesh",
            stacklevel=2,
        )

    return P3MParameters(
        alpha=alpha,
        mesh_dimensions=mesh_dimensions,
        order=order,
        r_cut=r_cut,
        box=lengths,
        alias_images=alias_images,
        prefactor=prefactor,
    ).validate()
