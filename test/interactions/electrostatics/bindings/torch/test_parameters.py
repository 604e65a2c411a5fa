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

"""Tests for parameter validation and the P3M accuracy estimates."""

import math
import warnings

import pytest
import torch

from p3mops.torch.interactions.electrostatics import (
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

BOX = (10.0, 10.0, 10.0)


def make_params(**overrides):
    values = dict(alpha=0.8, mesh_dimensions=(16, 16, 16), order=5, r_cut=3.0, box=BOX)
    values.update(overrides)
    return P3MParameters(**values)


class TestP3MParameters:
    def test_valid(self):
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            params = make_params(box=torch.tensor([10.0, 12.0, 14.0])).validate()
        assert params.box == (10.0, 12.0, 14.0)
        assert params.volume == pytest.approx(1680.0)
        assert params.mesh_spacing == pytest.approx((0.625, 0.75, 0.875))
        assert params.alias_images == 1
        assert params.prefactor == 1.0

    @pytest.mark.parametrize(
        "overrides, match",
        [
            (dict(order=0), "order must be between"),
            (dict(order=8), "order must be between"),
            (dict(order=2.5), "order must be an integer"),
            (dict(alpha=0.0), "alpha must be positive"),
            (dict(alpha=float("nan")), "alpha must be positive"),
            (dict(mesh_dimensions=(0, 16, 16)), "mesh_dimensions must be positive"),
            (dict(mesh_dimensions=(16, 16)), "mesh_dimensions must have 3 entries"),
            (dict(alias_images=-1), "alias_images must be a non-negative integer"),
            (dict(box=(10.0, -1.0, 10.0)), "box lengths must be positive"),
            (dict(r_cut=-1.0), "r_cut must be non-negative"),
        ],
    )
    def test_invalid(self, overrides, match):
        with pytest.raises(P3MConfigurationError, match=match):
            make_params(**overrides).validate()

    def test_configuration_error_is_value_error(self):
        with pytest.raises(ValueError):
            make_params(order=9).validate()

    def test_large_cutoff_warns(self):
        with pytest.warns(UserWarning, match="exceeds half the smallest box length"):
            make_params(r_cut=6.0).validate()

    def test_odd_mesh_warns(self):
        with pytest.warns(UserWarning, match="Odd mesh dimension"):
            make_params(mesh_dimensions=(15, 16, 16)).validate()


class TestShortRangeParameters:
    def test_debye_hueckel(self):
        DebyeHueckelParameters(kappa=0.5, r_cut=3.0).validate()
        with pytest.raises(ValueError, match="kappa must be non-negative"):
            DebyeHueckelParameters(kappa=-0.5, r_cut=3.0).validate()
        with pytest.raises(ValueError, match="r_cut must be non-negative"):
            DebyeHueckelParameters(kappa=0.5, r_cut=-3.0).validate()

    def test_reaction_field(self):
        params = ReactionFieldParameters(kappa=0.0, epsilon1=1.0, epsilon2=78.0, r_cut=3.0)
        assert params.validate() is params
        assert params.B == pytest.approx(2.0 * (1.0 - 78.0) / (1.0 + 156.0))
        with pytest.raises(ValueError, match="Dielectric constants must be positive"):
            ReactionFieldParameters(kappa=0.0, epsilon1=0.0, epsilon2=78.0, r_cut=3.0).validate()
        with pytest.raises(ValueError, match="r_cut must be positive"):
            ReactionFieldParameters(kappa=0.0, epsilon1=1.0, epsilon2=78.0, r_cut=0.0).validate()

    def test_reaction_field_constant(self):
        # a conducting continuum gives B = -1
        assert reaction_field_constant(0.0, 1.0, 1e12, 2.0) == pytest.approx(-1.0)
        # matching dielectrics without screening give no reaction field
        assert reaction_field_constant(0.0, 5.0, 5.0, 2.0) == pytest.approx(0.0)
        kr = 0.5 * 2.0
        expected = (2.0 * (1.0 - 10.0) * (1.0 + kr) - 10.0 * kr**2) / (
            (1.0 + 20.0) * (1.0 + kr) + 10.0 * kr**2
        )
        assert reaction_field_constant(0.5, 1.0, 10.0, 2.0) == pytest.approx(expected)


class TestErrorEstimates:
    def test_kspace_error_decreases_with_mesh(self):
        coarse = estimate_p3m_kspace_error((16, 16, 16), 5, 0.8, 100, 100.0, BOX)
        fine = estimate_p3m_kspace_error((32, 32, 32), 5, 0.8, 100, 100.0, BOX)
        assert 0.0 < fine < coarse

    def test_kspace_error_decreases_with_order(self):
        errors = [
            estimate_p3m_kspace_error((32, 32, 32), order, 0.5, 100, 100.0, BOX)
            for order in range(1, 8)
        ]
        assert all(b < a for a, b in zip(errors, errors[1:]))

    def test_real_space_error_decreases_with_cutoff(self):
        short = estimate_real_space_error(0.8, 2.0, 100, 100.0, BOX)
        long = estimate_real_space_error(0.8, 4.0, 100, 100.0, BOX)
        assert 0.0 < long < short
        expected = 2.0 * 100.0 * math.exp(-0.64 * 4.0) / math.sqrt(100 * 2.0 * 1000.0)
        assert short == pytest.approx(expected)

    def test_total_error_is_quadrature_sum(self):
        kspace = estimate_p3m_kspace_error((16, 16, 16), 5, 0.8, 100, 100.0, BOX)
        real = estimate_real_space_error(0.8, 3.0, 100, 100.0, BOX)
        total = estimate_p3m_force_error((16, 16, 16), 5, 0.8, 3.0, 100, 100.0, BOX)
        assert total == pytest.approx(math.hypot(kspace, real))

    def test_no_particles(self):
        assert estimate_p3m_kspace_error((16, 16, 16), 5, 0.8, 0, 0.0, BOX) == 0.0
        assert estimate_real_space_error(0.8, 3.0, 0, 0.0, BOX) == 0.0


class TestParameterEstimation:
    @staticmethod
    def _system(num_atoms=100):
        positions = torch.rand((num_atoms, 3), dtype=torch.float64) * 10.0
        charges = torch.ones(num_atoms, dtype=torch.float64)
        charges[1::2] = -1.0
        return positions, charges

    def test_meets_accuracy(self):
        positions, charges = self._system()
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            params = estimate_p3m_parameters(positions, charges, BOX, r_cut=3.0, accuracy=1e-3)
        assert isinstance(params, P3MParameters)
        assert all(m % 2 == 0 for m in params.mesh_dimensions)
        assert params.r_cut == 3.0
        assert params.order == 5
        error = estimate_p3m_force_error(
            params.mesh_dimensions, params.order, params.alpha, params.r_cut, 100, 100.0, BOX
        )
        assert error <= 1e-3

    def test_tighter_accuracy_needs_finer_mesh(self):
        positions, charges = self._system()
        loose = estimate_p3m_parameters(positions, charges, BOX, r_cut=3.0, accuracy=1e-3)
        tight = estimate_p3m_parameters(positions, charges, BOX, r_cut=3.0, accuracy=1e-5)
        assert tight.alpha > loose.alpha
        assert tight.mesh_dimensions[0] >= loose.mesh_dimensions[0]

    def test_anisotropic_box(self):
        positions, charges = self._system()
        params = estimate_p3m_parameters(
            positions, charges, (20.0, 10.0, 10.0), r_cut=3.0, accuracy=1e-3
        )
        assert params.mesh_dimensions[0] >= params.mesh_dimensions[1]
        assert params.mesh_dimensions[1] == params.mesh_dimensions[2]

    def test_unreachable_accuracy_warns(self):
        positions, charges = self._system()
        with pytest.warns(UserWarning, match="worse than the requested accuracy"):
            params = estimate_p3m_parameters(
                positions, charges, BOX, r_cut=3.0, accuracy=1e-12, max_mesh=16
            )
        assert params.mesh_dimensions == (16, 16, 16)

    @pytest.mark.parametrize(
        "kwargs, match",
        [
            (dict(r_cut=0.0), "r_cut must be positive"),
            (dict(r_cut=3.0, accuracy=0.0), "accuracy must be positive"),
            (dict(r_cut=3.0, order=0), "order must be between"),
        ],
    )
    def test_invalid_arguments(self, kwargs, match):
        positions, charges = self._system()
        with pytest.raises(P3MConfigurationError, match=match):
            estimate_p3m_parameters(positions, charges, BOX, **kwargs)
