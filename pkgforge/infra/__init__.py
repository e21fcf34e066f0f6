# Copyright 2026 Pramod Kumar Voola
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

# -----------------------------------------------------------------------------
# INFRASTRUCTURE LAYER
# -----------------------------------------------------------------------------
# Contains low-level infrastructure wrappers:
# - ContainerDriver: Docker SDK wrapper speaking in container ids
# -----------------------------------------------------------------------------

from .docker_client import (
    ContainerDriver,
    ContainerNotFound,
    ContainerRuntimeError,
    ContainerDriverError,
    ExecResult,
    RuntimeUnreachable,
)

__all__ = [
    "ContainerDriver",
    "ContainerNotFound",
    "ContainerRuntimeError",
    "ContainerDriverError",
    "ExecResult",
    "RuntimeUnreachable",
]
