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

"""Tests for the B-spline charge assignment warp kernels."""

import numpy as np
import pytest
import warp as wp

from p3mops.math import (
    BSPLINE_COEFFICIENTS,
    MAX_ORDER,
    assignment_stencil,
    bspline_weight_launcher,
    cached_assignment_stencil,
    compute_assignment_cache,
    spline_gather_channels,
    spline_gather_channels_cached,
    spline_spread,
    spline_spread_cached,
    tabulate_bspline_weights,
)

orders = list(range(1, MAX_ORDER + 1))
dtype_pairs = [(wp.float32, wp.vec3f, np.float32), (wp.float64, wp.vec3d, np.float64)]


def centred_bspline(t: np.ndarray, order: int) -> np.ndarray:
    """Centred cardinal B-spline by the Cox-de Boor recursion."""
    t = np.asarray(t, dtype=np.float64)
    if order == 1:
        return np.where((t >= -0.5) & (t < 0.5), 1.0, 0.0)
    half = order / 2.0
    return (
        (t + half) * centred_bspline(t + 0.5, order - 1)
        + (half - t) * centred_bspline(t - 0.5, order - 1)
    ) / (order - 1)


def reference_weight(x: np.ndarray, i: int, order: int) -> np.ndarray:
    """Weight of support point i for a particle at offset x from its nearest point."""
    shift = 0.5 if order % 2 == 0 else 0.0
    return centred_bspline(x - shift + order // 2 - i, order)


def reference_assignment(positions, spacing, order):
    """Numpy lower-left indices and axis weights, shape (N, 3) and (N, 3, order)."""
    shift = 0.5 if order % 2 == 0 else 0.0
    u = positions / spacing + shift
    nearest = np.floor(u + 0.5)
    x = u - nearest
    lower_left = nearest.astype(np.int64) - order // 2
    weights = np.stack([reference_weight(x, i, order) for i in range(order)], axis=-1)
    return lower_left, weights


def _geometry(wp_vec, box, mesh):
    return wp_vec(0.0, 0.0, 0.0), wp_vec(*[m / b for m, b in zip(mesh, box)])


class TestWeightPolynomials:
    """Closed-form weight polynomials."""

    @pytest.mark.parametrize("order", orders)
    def test_coefficients_match_recursion(self, order):
        x = np.linspace(-0.5, 0.499, 57)
        for i in range(order):
            coefficients = BSPLINE_COEFFICIENTS[order - 1, i, :order]
            values = np.polynomial.polynomial.polyval(x, coefficients)
            np.testing.assert_allclose(values, reference_weight(x, i, order), atol=1e-12)

    @pytest.mark.parametrize("order", orders)
    def test_launcher_matches_reference(self, device, order):
        x_np = np.random.uniform(-0.5, 0.5, size=101)
        x = wp.array(x_np, dtype=wp.float64, device=device)
        for i in range(order):
            weights = wp.zeros(x_np.shape[0], dtype=wp.float64, device=device)
            bspline_weight_launcher(x, i, order, weights, wp.float64, device=device)
            np.testing.assert_allclose(
                weights.numpy(), reference_weight(x_np, i, order), atol=1e-12
            )

    @pytest.mark.parametrize("order", orders)
    def test_partition_of_unity(self, device, order):
        x_np = np.random.uniform(-0.5, 0.5, size=64)
        x = wp.array(x_np, dtype=wp.float64, device=device)
        total = np.zeros_like(x_np)
        for i in range(order):
            weights = wp.zeros(x_np.shape[0], dtype=wp.float64, device=device)
            bspline_weight_launcher(x, i, order, weights, wp.float64, device=device)
            total += weights.numpy()
        np.testing.assert_allclose(total, 1.0, atol=1e-12)

    def test_invalid_order(self, device):
        x = wp.zeros(4, dtype=wp.float64, device=device)
        out = wp.zeros(4, dtype=wp.float64, device=device)
        with pytest.raises(ValueError):
            bspline_weight_launcher(x, 0, MAX_ORDER + 1, out, wp.float64, device=device)
        with pytest.raises(ValueError):
            bspline_weight_launcher(x, 3, 3, out, wp.float64, device=device)


class TestTabulatedWeights:
    """Nearest-bin weight tables."""

    @pytest.mark.parametrize("order", [1, 2, 5, 7])
    def test_table_samples(self, device, order):
        resolution = 16
        table = wp.zeros((2 * resolution + 1, order), dtype=wp.float64, device=device)
        tabulate_bspline_weights(order, resolution, table, wp.float64, device=device)
        samples = -0.5 + np.arange(2 * resolution + 1) / (2 * resolution)
        expected = np.stack(
            [
                np.polynomial.polynomial.polyval(
                    samples, BSPLINE_COEFFICIENTS[order - 1, i, :order]
                )
                for i in range(order)
            ],
            axis=-1,
        )
        np.testing.assert_allclose(table.numpy(), expected, atol=1e-12)

    @pytest.mark.parametrize("order", orders)
    def test_error_bound(self, device, order):
        resolution = 64
        box = (1.0, 1.0, 1.0)
        mesh = (16, 16, 16)
        positions_np = np.random.uniform(0.0, 1.0, size=(200, 3))
        positions = wp.array(positions_np, dtype=wp.vec3d, device=device)
        offset, inverse_spacing = _geometry(wp.vec3d, box, mesh)

        table = wp.zeros((2 * resolution + 1, order), dtype=wp.float64, device=device)
        tabulate_bspline_weights(order, resolution, table, wp.float64, device=device)

        exact = wp.zeros((200, 3, order), dtype=wp.float64, device=device)
        exact_ll = wp.zeros(200, dtype=wp.vec3i, device=device)
        compute_assignment_cache(
            positions, offset, inverse_spacing, order, exact, exact_ll, wp.float64, device
        )
        tabulated = wp.zeros((200, 3, order), dtype=wp.float64, device=device)
        tabulated_ll = wp.zeros(200, dtype=wp.vec3i, device=device)
        compute_assignment_cache(
            positions,
            offset,
            inverse_spacing,
            order,
            tabulated,
            tabulated_ll,
            wp.float64,
            device,
            table=table,
            resolution=resolution,
        )

        np.testing.assert_array_equal(exact_ll.numpy(), tabulated_ll.numpy())
        error = np.abs(exact.numpy() - tabulated.numpy()).max()
        assert error <= 1.0 / (4 * resolution) + 1e-12
        if order == 1:
            assert error == 0.0


@pytest.mark.parametrize("wp_dtype, wp_vec, np_dtype", dtype_pairs)
class TestAssignmentKernels:
    """Spread, gather and stencil kernels."""

    @pytest.mark.parametrize("order", orders)
    def test_cache_matches_reference(self, device, wp_dtype, wp_vec, np_dtype, order):
        box = (2.0, 3.0, 4.0)
        mesh = (8, 12, 16)
        positions_np = np.random.uniform(0.0, 1.0, size=(50, 3)) * np.array(box)
        positions = wp.array(positions_np.astype(np_dtype), dtype=wp_vec, device=device)
        offset, inverse_spacing = _geometry(wp_vec, box, mesh)

        weights = wp.zeros((50, 3, order), dtype=wp_dtype, device=device)
        lower_left = wp.zeros(50, dtype=wp.vec3i, device=device)
        compute_assignment_cache(
            positions, offset, inverse_spacing, order, weights, lower_left, wp_dtype, device
        )

        spacing = np.array(box) / np.array(mesh)
        expected_ll, expected_w = reference_assignment(
            positions_np.astype(np_dtype).astype(np.float64), spacing, order
        )
        np.testing.assert_array_equal(lower_left.numpy(), expected_ll)
        atol = 1e-5 if np_dtype == np.float32 else 1e-12
        np.testing.assert_allclose(weights.numpy(), expected_w, atol=atol)

    @pytest.mark.parametrize("order", [1, 3, 4, 7])
    def test_charge_conservation(self, device, wp_dtype, wp_vec, np_dtype, order):
        box = (5.0, 5.0, 5.0)
        mesh = (10, 10, 10)
        positions_np = np.random.uniform(-2.0, 7.0, size=(100, 3)).astype(np_dtype)
        charges_np = np.random.uniform(-1.0, 1.0, size=100).astype(np_dtype)
        positions = wp.array(positions_np, dtype=wp_vec, device=device)
        charges = wp.array(charges_np, dtype=wp_dtype, device=device)
        offset, inverse_spacing = _geometry(wp_vec, box, mesh)

        grid = wp.zeros(mesh, dtype=wp_dtype, device=device)
        spline_spread(
            positions, charges, offset, inverse_spacing, order, grid, wp_dtype, device
        )
        rtol = 1e-4 if np_dtype == np.float32 else 1e-10
        assert grid.numpy().sum() == pytest.approx(
            float(charges_np.astype(np.float64).sum()), rel=rtol, abs=rtol
        )

    @pytest.mark.parametrize("order", [2, 5])
    def test_cached_spread_matches_direct(self, device, wp_dtype, wp_vec, np_dtype, order):
        box = (4.0, 4.0, 4.0)
        mesh = (8, 8, 8)
        positions = wp.array(
            np.random.uniform(0.0, 4.0, size=(64, 3)).astype(np_dtype),
            dtype=wp_vec,
            device=device,
        )
        charges = wp.array(
            np.random.uniform(-1.0, 1.0, size=64).astype(np_dtype),
            dtype=wp_dtype,
            device=device,
        )
        offset, inverse_spacing = _geometry(wp_vec, box, mesh)

        direct = wp.zeros(mesh, dtype=wp_dtype, device=device)
        spline_spread(
            positions, charges, offset, inverse_spacing, order, direct, wp_dtype, device
        )

        weights = wp.zeros((64, 3, order), dtype=wp_dtype, device=device)
        lower_left = wp.zeros(64, dtype=wp.vec3i, device=device)
        compute_assignment_cache(
            positions, offset, inverse_spacing, order, weights, lower_left, wp_dtype, device
        )
        cached = wp.zeros(mesh, dtype=wp_dtype, device=device)
        spline_spread_cached(weights, lower_left, charges, order, cached, wp_dtype, device)

        atol = 1e-5 if np_dtype == np.float32 else 1e-12
        np.testing.assert_allclose(cached.numpy(), direct.numpy(), atol=atol)

    @pytest.mark.parametrize("order", [1, 4, 6])
    def test_gather_constant_field(self, device, wp_dtype, wp_vec, np_dtype, order):
        box = (3.0, 3.0, 3.0)
        mesh = (6, 6, 6)
        num_atoms = 30
        positions = wp.array(
            np.random.uniform(0.0, 3.0, size=(num_atoms, 3)).astype(np_dtype),
            dtype=wp_vec,
            device=device,
        )
        values_np = np.random.uniform(0.5, 2.0, size=num_atoms).astype(np_dtype)
        values = wp.array(values_np, dtype=wp_dtype, device=device)
        offset, inverse_spacing = _geometry(wp_vec, box, mesh)

        channels = np.stack([np.full(mesh, 2.0), np.full(mesh, -3.0)]).astype(np_dtype)
        grid = wp.array(channels, dtype=wp_dtype, device=device)

        direct = wp.zeros((num_atoms, 2), dtype=wp_dtype, device=device)
        spline_gather_channels(
            positions, values, offset, inverse_spacing, order, grid, direct, wp_dtype, device
        )

        weights = wp.zeros((num_atoms, 3, order), dtype=wp_dtype, device=device)
        lower_left = wp.zeros(num_atoms, dtype=wp.vec3i, device=device)
        compute_assignment_cache(
            positions, offset, inverse_spacing, order, weights, lower_left, wp_dtype, device
        )
        cached = wp.zeros((num_atoms, 2), dtype=wp_dtype, device=device)
        spline_gather_channels_cached(
            weights, lower_left, values, order, grid, cached, wp_dtype, device
        )

        expected = np.stack([2.0 * values_np, -3.0 * values_np], axis=1)
        atol = 1e-4 if np_dtype == np.float32 else 1e-10
        np.testing.assert_allclose(direct.numpy(), expected, atol=atol)
        np.testing.assert_allclose(cached.numpy(), expected, atol=atol)

    @pytest.mark.parametrize("order", [3, 4])
    def test_stencil_direct_and_cached(self, device, wp_dtype, wp_vec, np_dtype, order):
        box = (1.0, 1.0, 1.0)
        mesh = (8, 8, 8)
        num_atoms = 10
        positions = wp.array(
            np.random.uniform(0.0, 1.0, size=(num_atoms, 3)).astype(np_dtype),
            dtype=wp_vec,
            device=device,
        )
        offset, inverse_spacing = _geometry(wp_vec, box, mesh)
        num_points = order**3

        indices = wp.zeros((num_atoms, num_points), dtype=wp.vec3i, device=device)
        stencil_weights = wp.zeros((num_atoms, num_points), dtype=wp_dtype, device=device)
        assignment_stencil(
            positions,
            offset,
            inverse_spacing,
            order,
            indices,
            stencil_weights,
            wp_dtype,
            device,
        )

        weights = wp.zeros((num_atoms, 3, order), dtype=wp_dtype, device=device)
        lower_left = wp.zeros(num_atoms, dtype=wp.vec3i, device=device)
        compute_assignment_cache(
            positions, offset, inverse_spacing, order, weights, lower_left, wp_dtype, device
        )
        cached_indices = wp.zeros((num_atoms, num_points), dtype=wp.vec3i, device=device)
        cached_weights = wp.zeros((num_atoms, num_points), dtype=wp_dtype, device=device)
        cached_assignment_stencil(
            weights, lower_left, order, cached_indices, cached_weights, wp_dtype, device
        )

        indices_np = indices.numpy()
        np.testing.assert_array_equal(indices_np, cached_indices.numpy())
        atol = 1e-5 if np_dtype == np.float32 else 1e-12
        np.testing.assert_allclose(stencil_weights.numpy(), cached_weights.numpy(), atol=atol)
        np.testing.assert_allclose(stencil_weights.numpy().sum(axis=1), 1.0, atol=atol)

        # each particle covers an order**3 cube starting at its lower-left index
        ll = lower_left.numpy()
        for atom in range(num_atoms):
            offsets = indices_np[atom] - ll[atom]
            assert offsets.min() == 0
            assert offsets.max() == order - 1
            assert len({tuple(o) for o in offsets}) == num_points
