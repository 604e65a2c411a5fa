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

"""Tests for the P3M reciprocal-space solver against a direct Ewald sum."""

import itertools
import math

import numpy as np
import pytest
import torch

from p3mops.torch.interactions.electrostatics import (
    InfluenceFunctionCache,
    P3MConfigurationError,
    P3MParameters,
    p3m_background_energy,
    p3m_reciprocal_space,
    p3m_self_energy,
    reciprocal_wavevectors,
)

BOX = 10.0
ALPHA = 0.5


def ewald_reciprocal(positions, charges, box, alpha, nmax=10):
    """Reciprocal Ewald energy, forces and stress by direct summation.

    The energy includes the self term; the system is assumed neutral.
    """
    n = np.array(
        [v for v in itertools.product(range(-nmax, nmax + 1), repeat=3) if any(v)],
        dtype=np.float64,
    )
    k = 2.0 * np.pi * n / box
    k2 = (k * k).sum(axis=1)
    volume = box**3
    amplitude = 4.0 * np.pi / k2 * np.exp(-k2 / (4.0 * alpha**2))

    phase = np.exp(1j * positions @ k.T)  # (N, K)
    structure = (charges[:, None] * phase).sum(axis=0)  # (K,)
    mode_energy = amplitude * np.abs(structure) ** 2 / (2.0 * volume)

    energy = mode_energy.sum() - alpha / np.sqrt(np.pi) * (charges**2).sum()
    forces = (
        charges[:, None]
        / volume
        * (amplitude[None, :, None] * k[None, :, :] * np.imag(phase * np.conj(structure))[:, :, None]).sum(axis=1)
    )
    factor = 2.0 * (1.0 / k2 + 0.25 / alpha**2)
    stress = np.eye(3) * mode_energy.sum() - np.einsum("k,k,ka,kb->ab", mode_energy, factor, k, k)
    return energy, forces, stress / volume


def jittered_lattice(dtype=torch.float64, device="cpu"):
    """32 alternating unit charges on a 4 x 4 x 2 lattice with random displacements."""
    rng = np.random.default_rng(31515)
    sites = np.array(list(itertools.product(range(4), range(4), range(2))), dtype=np.float64)
    positions = sites * np.array([2.5, 2.5, 5.0]) + 1.0
    positions += rng.uniform(-0.3, 0.3, size=positions.shape)
    charges = np.where(sites.sum(axis=1) % 2 == 0, 1.0, -1.0)
    return (
        torch.tensor(positions, dtype=dtype, device=device),
        torch.tensor(charges, dtype=dtype, device=device),
    )


def lattice_params(**overrides):
    values = dict(
        alpha=ALPHA, mesh_dimensions=(32, 32, 32), order=5, r_cut=4.0, box=(BOX, BOX, BOX)
    )
    values.update(overrides)
    return P3MParameters(**values)


class TestAgainstEwald:
    def test_energy_forces_stress(self, device):
        positions, charges = jittered_lattice(device=device)
        assert charges.sum().item() == 0.0
        result = p3m_reciprocal_space(
            positions, charges, lattice_params(), compute_forces=True, compute_stress=True
        )
        energy, forces, stress = ewald_reciprocal(
            positions.cpu().numpy(), charges.cpu().numpy(), BOX, ALPHA
        )

        assert result.energy.item() == pytest.approx(energy, rel=1e-4, abs=1e-5)
        np.testing.assert_allclose(result.forces.cpu().numpy(), forces, atol=1e-5)
        np.testing.assert_allclose(result.stress.cpu().numpy(), stress, atol=1e-6)

    @pytest.mark.parametrize("order", [3, 4, 6, 7])
    def test_orders(self, device, order):
        positions, charges = jittered_lattice(device=device)
        result = p3m_reciprocal_space(positions, charges, lattice_params(order=order))
        energy, forces, _ = ewald_reciprocal(
            positions.cpu().numpy(), charges.cpu().numpy(), BOX, ALPHA
        )
        assert result.energy.item() == pytest.approx(energy, rel=1e-3)
        np.testing.assert_allclose(result.forces.cpu().numpy(), forces, atol=1e-3)

    def test_uncached_weights(self, device):
        positions, charges = jittered_lattice(device=device)
        cached = p3m_reciprocal_space(positions, charges, lattice_params())
        direct = p3m_reciprocal_space(positions, charges, lattice_params(), cache_weights=False)
        torch.testing.assert_close(cached.energy, direct.energy)
        torch.testing.assert_close(cached.forces, direct.forces)


class TestProperties:
    def test_net_force_small(self, device):
        positions, charges = jittered_lattice(device=device)
        result = p3m_reciprocal_space(positions, charges, lattice_params())
        assert torch.abs(result.forces.sum(dim=0)).max().item() < 1e-5

    def test_stress_symmetric(self, device):
        positions, charges = jittered_lattice(device=device)
        result = p3m_reciprocal_space(
            positions, charges, lattice_params(), compute_forces=False, compute_stress=True
        )
        assert result.forces is None
        torch.testing.assert_close(result.stress, result.stress.T)

    def test_periodic_images(self, device):
        positions, charges = jittered_lattice(device=device)
        shifts = torch.randint(-2, 3, positions.shape, device=device).to(positions.dtype)
        reference = p3m_reciprocal_space(positions, charges, lattice_params())
        shifted = p3m_reciprocal_space(positions + BOX * shifts, charges, lattice_params())
        assert shifted.energy.item() == pytest.approx(reference.energy.item(), abs=1e-9)
        torch.testing.assert_close(shifted.forces, reference.forces, atol=1e-9, rtol=0)

    def test_float32(self, device):
        positions, charges = jittered_lattice(device=device)
        reference = p3m_reciprocal_space(positions, charges, lattice_params())
        single = p3m_reciprocal_space(
            positions.float(), charges.float(), lattice_params()
        )
        assert single.energy.dtype == torch.float32
        assert single.energy.item() == pytest.approx(reference.energy.item(), rel=1e-3)
        np.testing.assert_allclose(
            single.forces.cpu().numpy(), reference.forces.cpu().numpy(), atol=1e-3
        )

    def test_prefactor_scaling(self, device):
        positions, charges = jittered_lattice(device=device)
        reference = p3m_reciprocal_space(positions, charges, lattice_params())
        scaled = p3m_reciprocal_space(positions, charges, lattice_params(prefactor=2.5))
        torch.testing.assert_close(scaled.energy, 2.5 * reference.energy)
        torch.testing.assert_close(scaled.forces, 2.5 * reference.forces)

    def test_cache_reused(self, device):
        positions, charges = jittered_lattice(device=device)
        cache = InfluenceFunctionCache()
        params = lattice_params()
        p3m_reciprocal_space(positions, charges, params, cache=cache)
        p3m_reciprocal_space(positions + 0.1, charges, params, cache=cache)
        assert cache.num_builds == 1


class TestEnergyDerivatives:
    """Forces and stress agree with numerical derivatives of the P3M energy."""

    def test_small_mesh_pair(self, device):
        positions = torch.tensor(
            [[2.1, 3.3, 4.0], [4.6, 5.2, 3.1]], dtype=torch.float64, device=device
        )
        charges = torch.tensor([1.0, -1.0], dtype=torch.float64, device=device)
        params = lattice_params(alpha=0.3, mesh_dimensions=(8, 8, 8), order=3)
        result = p3m_reciprocal_space(
            positions, charges, params, compute_forces=True, compute_stress=True
        )
        energy, forces, _ = ewald_reciprocal(
            positions.cpu().numpy(), charges.cpu().numpy(), BOX, 0.3
        )

        assert torch.isfinite(result.energy)
        assert result.energy.item() == pytest.approx(energy, rel=2e-2, abs=1e-4)
        np.testing.assert_allclose(result.forces.cpu().numpy(), forces, atol=5e-3)

    def test_forces_are_energy_gradient(self, device):
        positions, charges = jittered_lattice(device=device)
        params = lattice_params()
        forces = p3m_reciprocal_space(positions, charges, params).forces
        step = 1e-4
        for atom, axis in [(0, 0), (5, 1), (17, 2), (30, 0)]:
            plus = positions.clone()
            minus = positions.clone()
            plus[atom, axis] += step
            minus[atom, axis] -= step
            e_plus = p3m_reciprocal_space(plus, charges, params, compute_forces=False)
            e_minus = p3m_reciprocal_space(minus, charges, params, compute_forces=False)
            gradient = (e_plus.energy - e_minus.energy).item() / (2.0 * step)
            assert forces[atom, axis].item() == pytest.approx(-gradient, abs=1e-5)

    def test_stress_is_strain_derivative(self, device):
        positions, charges = jittered_lattice(device=device)
        stress = p3m_reciprocal_space(
            positions, charges, lattice_params(), compute_forces=False, compute_stress=True
        ).stress
        strain = 1e-5
        volume = BOX**3
        for axis in range(3):
            energies = []
            for sign in (1.0, -1.0):
                scale = torch.ones(3, dtype=positions.dtype, device=device)
                scale[axis] += sign * strain
                box = tuple(BOX * s for s in scale.tolist())
                result = p3m_reciprocal_space(
                    positions * scale, charges, lattice_params(box=box), compute_forces=False
                )
                energies.append(result.energy.item())
            derivative = (energies[0] - energies[1]) / (2.0 * strain)
            assert stress[axis, axis].item() == pytest.approx(
                -derivative / volume, abs=1e-6
            )


class TestCorrections:
    def test_self_energy(self):
        charges = torch.tensor([1.0, -2.0, 0.5], dtype=torch.float64)
        expected = 0.7 / math.sqrt(math.pi) * 5.25
        assert p3m_self_energy(charges, 0.7).item() == pytest.approx(expected)
        assert p3m_self_energy(charges, 0.7, prefactor=3.0).item() == pytest.approx(3 * expected)

    def test_background_energy(self):
        charges = torch.tensor([1.0, 1.0, -0.5], dtype=torch.float64)
        expected = math.pi * 1.5**2 / (2.0 * 1000.0 * 0.25)
        assert p3m_background_energy(charges, 0.5, 1000.0).item() == pytest.approx(expected)
        neutral = torch.tensor([1.0, -1.0], dtype=torch.float64)
        assert p3m_background_energy(neutral, 0.5, 1000.0).item() == 0.0

    def test_charged_system(self, device):
        """A net charge shifts the energy by the background term only."""
        positions, charges = jittered_lattice(device=device)
        charged = charges.clone()
        charged[0] = 2.0
        result = p3m_reciprocal_space(positions, charged, lattice_params())
        energy, _, _ = ewald_reciprocal(
            positions.cpu().numpy(), charged.cpu().numpy(), BOX, ALPHA
        )
        net_charge = charged.sum().item()
        assert net_charge == pytest.approx(1.0)
        background = math.pi * net_charge**2 / (2.0 * BOX**3 * ALPHA**2)
        assert result.energy.item() == pytest.approx(energy - background, rel=1e-4, abs=1e-5)

    def test_wavevectors(self):
        params = lattice_params(mesh_dimensions=(4, 6, 8))
        kx, ky, kz = reciprocal_wavevectors(params)
        assert kx.shape == (4, 1, 1)
        assert ky.shape == (1, 6, 1)
        assert kz.shape == (1, 1, 8)
        scale = 2.0 * math.pi / BOX
        np.testing.assert_allclose(kx.reshape(-1).numpy(), scale * np.array([0, 1, -2, -1]))
        np.testing.assert_allclose(ky.reshape(-1).numpy(), scale * np.array([0, 1, 2, -3, -2, -1]))


class TestConfiguration:
    def test_invalid_parameters(self, device):
        positions, charges = jittered_lattice(device=device)
        with pytest.raises(P3MConfigurationError, match="order must be between"):
            p3m_reciprocal_space(positions, charges, lattice_params(order=8))
        with pytest.raises(P3MConfigurationError, match="alpha must be positive"):
            p3m_reciprocal_space(positions, charges, lattice_params(alpha=0.0))

    def test_invalid_shapes(self, device):
        positions, charges = jittered_lattice(device=device)
        with pytest.raises(P3MConfigurationError, match="positions must have shape"):
            p3m_reciprocal_space(positions[:, :2], charges, lattice_params())
        with pytest.raises(P3MConfigurationError, match="charges must have shape"):
            p3m_reciprocal_space(positions, charges[:-1], lattice_params())
