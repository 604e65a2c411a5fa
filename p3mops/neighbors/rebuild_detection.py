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

"""Core warp kernels and launchers for pair list rebuild detection.

A Verlet pair list built with search radius cutoff + skin stays complete
until some particle has moved more than skin / 2 from its position at build
time. Positions are compared without minimum-image folding: a particle that
was wrapped back into the box has invalidated the stored image shifts and is
counted as escaped. See `p3mops.torch.neighbors` for PyTorch bindings.
"""

from typing import Any

import warp as wp

__all__ = [
    "count_particles_beyond_skin",
]


@wp.kernel(enable_backward=False)
def _count_particles_beyond_skin_kernel(
    reference_positions: wp.array(dtype=Any),
    current_positions: wp.array(dtype=Any),
    half_skin_sq: Any,
    num_escaped: wp.array(dtype=wp.int32),
) -> None:
    """Count the particles whose displacement exceeds half the skin.

    Launch Grid: dim = [total_atoms]
    """
    atom_idx = wp.tid()
    displacement = current_positions[atom_idx] - reference_positions[atom_idx]
    if wp.dot(displacement, displacement) > half_skin_sq:
        wp.atomic_add(num_escaped, 0, 1)


_count_particles_beyond_skin_overload = {}
for t, v in zip([wp.float32, wp.float64], [wp.vec3f, wp.vec3d]):
    _count_particles_beyond_skin_overload[t] = wp.overload(
        _count_particles_beyond_skin_kernel,
        [wp.array(dtype=v), wp.array(dtype=v), t, wp.array(dtype=wp.int32)],
    )


def count_particles_beyond_skin(
    reference_positions: wp.array,
    current_positions: wp.array,
    skin: float,
    num_escaped: wp.array,
    wp_dtype: type,
    device: str,
) -> None:
    """Launch the skin displacement check.

    Parameters
    ----------
    reference_positions : wp.array, shape (total_atoms,), dtype=wp.vec3*
        Positions when the pair list was last built.
    current_positions : wp.array, shape (total_atoms,), dtype=wp.vec3*
        Current positions.
    skin : float
        Verlet skin. A particle escapes once it moved more than skin / 2.
    num_escaped : wp.array, shape (1,), dtype=wp.int32
        OUTPUT: incremented once per escaped particle. Zeroed by the caller.
    wp_dtype : type
        Warp dtype (wp.float32 or wp.float64).
    device : str
        Warp device string (e.g., 'cuda:0', 'cpu').
    """
    total_atoms = reference_positions.shape[0]
    if total_atoms == 0:
        return
    half_skin = 0.5 * skin
    wp.launch(
        _count_particles_beyond_skin_overload[wp_dtype],
        dim=total_atoms,
        inputs=[reference_positions, current_positions, wp_dtype(half_skin * half_skin)],
        outputs=[num_escaped],
        device=device,
    )
