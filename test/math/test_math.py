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

"""Tests for the scalar warp helpers."""

import math

import numpy as np
import pytest
import warp as wp

from p3mops.math import wp_erfc, wpdivmod


@wp.kernel
def _erfc_kernel_f64(x: wp.array(dtype=wp.float64), out: wp.array(dtype=wp.float64)):
    tid = wp.tid()
    out[tid] = wp_erfc(x[tid])


@wp.kernel
def _erfc_kernel_f32(x: wp.array(dtype=wp.float32), out: wp.array(dtype=wp.float32)):
    tid = wp.tid()
    out[tid] = wp_erfc(x[tid])


@wp.kernel
def _divmod_kernel(
    a: wp.array(dtype=wp.int32),
    b: wp.array(dtype=wp.int32),
    quotient: wp.array(dtype=wp.int32),
    remainder: wp.array(dtype=wp.int32),
):
    tid = wp.tid()
    q, r = wpdivmod(a[tid], b[tid])
    quotient[tid] = q
    remainder[tid] = r


class TestErfc:
    @pytest.mark.parametrize(
        "kernel, np_dtype, wp_dtype, rtol",
        [
            (_erfc_kernel_f64, np.float64, wp.float64, 2e-7),
            (_erfc_kernel_f32, np.float32, wp.float32, 1e-5),
        ],
    )
    def test_matches_math_erfc(self, device, kernel, np_dtype, wp_dtype, rtol):
        x_np = np.linspace(-3.0, 5.0, 161).astype(np_dtype)
        x = wp.array(x_np, dtype=wp_dtype, device=device)
        out = wp.zeros_like(x)
        wp.launch(kernel, dim=x.shape[0], inputs=[x], outputs=[out], device=device)

        expected = np.array([math.erfc(float(v)) for v in x_np])
        np.testing.assert_allclose(out.numpy(), expected, rtol=rtol, atol=0.0)

    def test_reflection(self, device):
        x_np = np.array([0.3, 1.1, 2.7])
        x = wp.array(np.concatenate([x_np, -x_np]), dtype=wp.float64, device=device)
        out = wp.zeros_like(x)
        wp.launch(_erfc_kernel_f64, dim=x.shape[0], inputs=[x], outputs=[out], device=device)

        values = out.numpy()
        np.testing.assert_allclose(values[:3] + values[3:], 2.0, rtol=1e-14)


class TestDivmod:
    def test_floor_semantics(self, device):
        a_np = np.array([7, -1, -7, 0, 12, -12, 5], dtype=np.int32)
        b_np = np.array([3, 4, 3, 5, 4, 4, 1], dtype=np.int32)
        a = wp.array(a_np, dtype=wp.int32, device=device)
        b = wp.array(b_np, dtype=wp.int32, device=device)
        quotient = wp.zeros(a_np.shape[0], dtype=wp.int32, device=device)
        remainder = wp.zeros(a_np.shape[0], dtype=wp.int32, device=device)
        wp.launch(
            _divmod_kernel,
            dim=a_np.shape[0],
            inputs=[a, b],
            outputs=[quotient, remainder],
            device=device,
        )

        expected_q, expected_r = np.divmod(a_np, b_np)
        np.testing.assert_array_equal(quotient.numpy(), expected_q)
        np.testing.assert_array_equal(remainder.numpy(), expected_r)
