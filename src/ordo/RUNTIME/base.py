# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
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

"""
Container runtime primitives used by the orchestrator and the readiness prober.

A runtime is an external collaborator: it may be unreachable or refuse an
operation, which implementations report as ``RuntimeUnavailable``.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from ..MODELS.project_spec import NetworkSpec, ProjectSpec, VolumeSpec
from ..MODELS.service_spec import ServiceSpec


@dataclass
class ContainerInfo:
    """What the runtime reports about a service's container."""

    exists: bool = False
    running: bool = False
    exit_code: Optional[int] = None
    container_id: Optional[str] = None


@dataclass
class ExecResult:
    """Result of running a command inside a service's container."""

    exit_code: int
    output: str = ""


class ContainerRuntime(ABC):
    """
    Abstract container runtime bound to one project.

    Volume and network methods take runtime-level names, as returned by
    ``ProjectSpec.volume_name`` and ``ProjectSpec.network_name``.
    """

    def __init__(self, project_name: str):
        self.project_name = project_name

    def container_name(self, service: str) -> str:
        return f"{self.project_name}-{service}-1"

    @abstractmethod
    def network_exists(self, name: str) -> bool:
        """Inspect primitive for networks."""

    @abstractmethod
    def create_network(self, name: str, spec: NetworkSpec) -> None:
        """Create a network. Callers check existence first."""

    @abstractmethod
    def remove_network(self, name: str) -> None:
        """Remove a network if it exists."""

    @abstractmethod
    def volume_exists(self, name: str) -> bool:
        """Inspect primitive for volumes."""

    @abstractmethod
    def create_volume(self, name: str, spec: VolumeSpec) -> None:
        """Create a volume. Callers check existence first."""

    @abstractmethod
    def remove_volume(self, name: str) -> None:
        """Remove a volume if it exists."""

    @abstractmethod
    def start(self, service: ServiceSpec, project: ProjectSpec) -> str:
        """
        Create and start the container of a service.

        :return: The container id.
        """

    @abstractmethod
    def stop(self, service: str, grace_period: float) -> None:
        """Stop a service, forcing termination after ``grace_period`` seconds."""

    @abstractmethod
    def exec(self, service: str, command: Sequence[str], timeout: float) -> ExecResult:
        """Run a command in the context of a running service."""

    @abstractmethod
    def inspect(self, service: str) -> ContainerInfo:
        """Inspect primitive for containers."""

    @abstractmethod
    def endpoint(self, service: str, port: int) -> Tuple[str, int]:
        """Host and port at which the orchestrator can reach a service port."""

    def close(self) -> None:
        """Release client resources."""
