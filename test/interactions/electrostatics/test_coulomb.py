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

"""Tests for the short-range pair law warp kernel."""

import math

import numpy as np
import pytest
import warp as wp

from p3mops.interactions.electrostatics.coulomb import (
    PAIR_LAW_DAMPED,
    PAIR_LAW_DEBYE_HUECKEL,
    PAIR_LAW_REACTION_FIELD,
    pair_energy_forces_matrix,
)


def reference_pair(r, law, parameter, cutoff):
    """Unit-charge energy and |F| / r."""
    if law == PAIR_LAW_DEBYE_HUECKEL:
        screening = math.exp(-parameter * r)
        return screening / r, screening * (1.0 + parameter * r) / r**3
    if law == PAIR_LAW_REACTION_FIELD:
        energy = 1.0 / r - parameter * r * r / (2.0 * cutoff**3) - (1.0 - parameter / 2.0) / cutoff
        return energy, 1.0 / r**3 + parameter / cutoff**3
    erfc = math.erfc(parameter * r)
    return erfc / r, erfc / r**3 + 2.0 / math.sqrt(math.pi) * parameter * math.exp(
        -((parameter * r) ** 2)
    ) / r**2


def _launch(positions, charges, box, matrix, shifts, counts, cutoff, law, parameter, device):
    num_atoms = positions.shape[0]
    energies = wp.zeros(num_atoms, dtype=wp.float64, device=device)
    forces = wp.zeros(num_atoms, dtype=wp.vec3d, device=device)
    virial = wp.zeros(1, dtype=wp.mat33d, device=device)
    pair_energy_forces_matrix(
        wp.array(positions, dtype=wp.vec3d, device=device),
        wp.array(charges, dtype=wp.float64, device=device),
        wp.vec3d(*box),
        wp.array(matrix, dtype=wp.int32, device=device),
        wp.array(shifts, dtype=wp.vec3i, device=device),
        wp.array(counts, dtype=wp.int32, device=device),
        cutoff,
        law,
        parameter,
        energies,
        forces,
        virial,
        wp.float64,
        device,
    )
    return energies.numpy(), forces.numpy(), virial.numpy()[0]


@pytest.mark.parametrize(
    "law, parameter, cutoff",
    [
        (PAIR_LAW_DAMPED, 0.7, 0.0),
        (PAIR_LAW_DAMPED, 0.0, 0.0),
        (PAIR_LAW_DEBYE_HUECKEL, 0.5, 3.0),
        (PAIR_LAW_REACTION_FIELD, 0.8, 3.0),
    ],
)
class TestSinglePair:
    def test_energy_force_virial(self, device, law, parameter, cutoff):
        positions = np.array([[1.0, 1.0, 1.0], [2.2, 1.5, 0.4]])
        charges = np.array([1.5, -0.5])
        matrix = np.array([[1], [2]], dtype=np.int32)
        shifts = np.zeros((2, 1, 3), dtype=np.int32)
        counts = np.array([1, 0], dtype=np.int32)

        energies, forces, virial = _launch(
            positions, charges, (10.0, 10.0, 10.0), matrix, shifts, counts,
            cutoff, law, parameter, device,
        )

        r_ij = positions[0] - positions[1]
        r = np.linalg.norm(r_ij)
        energy, force_over_r = reference_pair(r, law, parameter, cutoff)
        qq = charges[0] * charges[1]
        force_ij = qq * force_over_r * r_ij

        np.testing.assert_allclose(energies, [qq * energy, 0.0], rtol=1e-6, atol=1e-12)
        np.testing.assert_allclose(forces[0], force_ij, rtol=1e-6)
        np.testing.assert_allclose(forces[1], -force_ij, rtol=1e-6)
        np.testing.assert_allclose(virial, np.outer(r_ij, force_ij), rtol=1e-6, atol=1e-12)

    def test_periodic_image(self, device, law, parameter, cutoff):
        box = (4.0, 4.0, 4.0)
        positions = np.array([[0.2, 2.0, 2.0], [3.6, 2.0, 2.0]])
        charges = np.array([1.0, 1.0])
        matrix = np.array([[1], [2]], dtype=np.int32)
        shifts = np.array([[[-1, 0, 0]], [[0, 0, 0]]], dtype=np.int32)
        counts = np.array([1, 0], dtype=np.int32)

        energies, forces, _ = _launch(
            positions, charges, box, matrix, shifts, counts, cutoff, law, parameter, device
        )
        energy, force_over_r = reference_pair(0.6, law, parameter, cutoff)
        assert energies[0] == pytest.approx(energy, rel=1e-6)
        # the image sits at x = -0.4, so particle 0 is pushed towards +x
        assert forces[0][0] == pytest.approx(force_over_r * 0.6, rel=1e-6)


class TestMatrixHandling:
    def test_padding_and_cutoff(self, device):
        positions = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 2.5, 0.0]])
        charges = np.array([1.0, 1.0, 1.0])
        # row 0 lists a padding entry (3) and a pair beyond the cutoff
        matrix = np.array([[1, 3, 2], [3, 3, 3], [3, 3, 3]], dtype=np.int32)
        shifts = np.zeros((3, 3, 3), dtype=np.int32)
        counts = np.array([3, 0, 0], dtype=np.int32)
        energies, forces, _ = _launch(
            positions, charges, (10.0, 10.0, 10.0), matrix, shifts, counts,
            2.0, PAIR_LAW_DAMPED, 0.0, device,
        )
        assert energies[0] == pytest.approx(1.0)
        assert np.all(forces[2] == 0.0)
