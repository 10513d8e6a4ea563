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
Idempotent provisioning of a project's networks and named volumes.
"""
import logging
import os
from dataclasses import dataclass, field
from typing import List

from ..errors import SpecError
from ..MODELS.project_spec import ProjectSpec
from ..RUNTIME.base import ContainerRuntime
from ..UTILS.locking import advisory_lock

logger = logging.getLogger(__name__)


@dataclass
class ProvisionResult:
    """Runtime names of the resources a provisioning pass created or removed."""

    networks: List[str] = field(default_factory=list)
    volumes: List[str] = field(default_factory=list)


class ResourceProvisioner:
    """
    Creates networks and volumes before any service starts.

    Each resource is checked and created under one advisory lock, so
    concurrent runs against the same names never create a resource twice.
    """

    def __init__(self, runtime: ContainerRuntime, state_dir: str):
        """
        :param runtime: Runtime providing the inspect and create primitives.
        :param state_dir: Directory holding the provisioning lock file.
        """
        self.runtime = runtime
        self.lock_path = os.path.join(state_dir, "provision.lock")

    def provision(self, project: ProjectSpec) -> ProvisionResult:
        """
        Ensures every declared network and volume exists.

        :return: The resources this call created.
        :raises SpecError: If an external resource does not exist.
        :raises RuntimeUnavailable: If the runtime fails.
        """
        result = ProvisionResult()
        with advisory_lock(self.lock_path):
            for name, network in project.networks.items():
                runtime_name = project.network_name(name)
                if self.runtime.network_exists(runtime_name):
                    continue
                if network.external:
                    raise SpecError(f"External network {runtime_name} not found",
                                    field=f"networks.{name}")
                logger.info("Creating network %s", runtime_name)
                self.runtime.create_network(runtime_name, network)
                result.networks.append(runtime_name)

            for name, volume in project.volumes.items():
                runtime_name = project.volume_name(name)
                if self.runtime.volume_exists(runtime_name):
                    continue
                if volume.external:
                    raise SpecError(f"External volume {runtime_name} not found",
                                    field=f"volumes.{name}")
                logger.info("Creating volume %s", runtime_name)
                self.runtime.create_volume(runtime_name, volume)
                result.volumes.append(runtime_name)
        return result

    def teardown(self, project: ProjectSpec, remove_volumes: bool = False) -> ProvisionResult:
        """
        Removes project networks and, if asked, named volumes. External resources are kept.

        :return: The resources this call removed.
        """
        result = ProvisionResult()
        with advisory_lock(self.lock_path):
            for name, network in project.networks.items():
                runtime_name = project.network_name(name)
                if network.external or not self.runtime.network_exists(runtime_name):
                    continue
                logger.info("Removing network %s", runtime_name)
                self.runtime.remove_network(runtime_name)
                result.networks.append(runtime_name)

            if remove_volumes:
                for name, volume in project.volumes.items():
                    runtime_name = project.volume_name(name)
                    if volume.external or not self.runtime.volume_exists(runtime_name):
                        continue
                    logger.info("Removing volume %s", runtime_name)
                    self.runtime.remove_volume(runtime_name)
                    result.volumes.append(runtime_name)
        return result
