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

"""P3M electrostatics, spatial decomposition and charge assignment kernels in Warp.

Framework-free Warp launchers live in :mod:`p3mops.math`,
:mod:`p3mops.neighbors` and :mod:`p3mops.interactions`. PyTorch bindings
and the high-level API live in :mod:`p3mops.torch`.
"""

__version__ = "0.1.0"
