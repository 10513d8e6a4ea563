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
Runtime backed by the Docker Engine, through the Docker SDK for Python.
"""
import logging
from contextlib import contextmanager
from typing import Dict, Optional, Sequence, Tuple

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from ..errors import RuntimeUnavailable
from ..MODELS.project_spec import NetworkSpec, ProjectSpec, VolumeSpec
from ..MODELS.service_spec import ServiceSpec
from .base import ContainerInfo, ContainerRuntime, ExecResult

logger = logging.getLogger(__name__)

PROJECT_LABEL = "ordo.project"
SERVICE_LABEL = "ordo.service"


class DockerRuntime(ContainerRuntime):
    """
    Container runtime primitives on a Docker daemon.

    Containers are named ``<project>-<service>-1``. Each container joins its
    networks with the service name as alias, which gives peers name-based
    discovery.
    """

    def __init__(self, project_name: str, client: Optional[docker.DockerClient] = None):
        """
        :param project_name: Project the runtime is bound to.
        :param client: Docker client; by default built from the environment on first use.
        """
        super().__init__(project_name)
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            try:
                client = docker.from_env()
                client.ping()
            except DockerException as e:
                raise RuntimeUnavailable(f"Docker daemon unreachable: {e}") from e
            self._client = client
        return self._client

    @contextmanager
    def _errors(self, service: Optional[str] = None):
        """
        Maps Docker SDK failures to ``RuntimeUnavailable``.
        """
        try:
            yield
        except ImageNotFound as e:
            raise RuntimeUnavailable(f"Image not found: {e.explanation or e}", service=service) from e
        except DockerException as e:
            raise RuntimeUnavailable(str(e), service=service) from e

    def _labels(self, service: Optional[str] = None) -> Dict[str, str]:
        labels = {PROJECT_LABEL: self.project_name}
        if service:
            labels[SERVICE_LABEL] = service
        return labels

    def network_exists(self, name: str) -> bool:
        with self._errors():
            try:
                self.client.networks.get(name)
            except NotFound:
                return False
        return True

    def create_network(self, name: str, spec: NetworkSpec) -> None:
        with self._errors():
            self.client.networks.create(
                name, driver=spec.driver, internal=spec.internal, labels=self._labels()
            )

    def remove_network(self, name: str) -> None:
        with self._errors():
            try:
                self.client.networks.get(name).remove()
            except NotFound:
                pass

    def volume_exists(self, name: str) -> bool:
        with self._errors():
            try:
                self.client.volumes.get(name)
            except NotFound:
                return False
        return True

    def create_volume(self, name: str, spec: VolumeSpec) -> None:
        with self._errors():
            self.client.volumes.create(name=name, driver=spec.driver, labels=self._labels())

    def remove_volume(self, name: str) -> None:
        with self._errors():
            try:
                self.client.volumes.get(name).remove()
            except NotFound:
                pass

    def start(self, service: ServiceSpec, project: ProjectSpec) -> str:
        name = self.container_name(service.name)
        networks = [project.network_name(network) for network in service.networks]
        volumes = {}
        for mount in service.volumes:
            source = project.volume_name(mount.source) if mount.is_named else mount.source
            volumes[source] = {'bind': mount.target, 'mode': 'ro' if mount.read_only else 'rw'}

        with self._errors(service.name):
            try:
                # Replace a stopped container left by an earlier run
                self.client.containers.get(name).remove(force=True)
            except NotFound:
                pass

            self._ensure_image(service.image)

            primary = networks[0] if networks else None
            container = self.client.containers.create(
                service.image,
                command=list(service.command) or None,
                name=name,
                hostname=service.name,
                environment=service.env_dict(),
                working_dir=service.working_dir,
                volumes=volumes,
                ports={f"{p.container}/tcp": p.host for p in service.ports},
                labels=self._labels(service.name),
                network=primary,
                networking_config=(
                    {primary: self.client.api.create_endpoint_config(aliases=[service.name])}
                    if primary else None
                ),
                detach=True,
            )
            for network in networks[1:]:
                self.client.networks.get(network).connect(container, aliases=[service.name])
            container.start()
            logger.info("Started container %s (%s)", name, container.short_id)
            return container.id

    def _ensure_image(self, image: str) -> None:
        try:
            self.client.images.get(image)
        except ImageNotFound:
            logger.info("Pulling image %s", image)
            self.client.images.pull(image)

    def stop(self, service: str, grace_period: float) -> None:
        with self._errors(service):
            try:
                container = self.client.containers.get(self.container_name(service))
            except NotFound:
                return
            # Docker sends SIGTERM, then SIGKILL once the timeout elapses
            container.stop(timeout=int(round(grace_period)))

    def exec(self, service: str, command: Sequence[str], timeout: float) -> ExecResult:
        """
        Runs a command in the service's container. The SDK offers no exec
        timeout; ``timeout`` is not enforced here.
        """
        with self._errors(service):
            try:
                container = self.client.containers.get(self.container_name(service))
                exit_code, output = container.exec_run(list(command))
            except NotFound:
                return ExecResult(exit_code=1, output="container not found")
            except APIError as e:
                if e.status_code == 409:
                    # Container is not running
                    return ExecResult(exit_code=1, output=e.explanation or str(e))
                raise
        text = output.decode('utf-8', errors='replace') if isinstance(output, bytes) else str(output or '')
        return ExecResult(exit_code=exit_code, output=text.strip())

    def inspect(self, service: str) -> ContainerInfo:
        with self._errors(service):
            try:
                container = self.client.containers.get(self.container_name(service))
            except NotFound:
                return ContainerInfo()
        state = container.attrs.get('State', {})
        running = bool(state.get('Running'))
        return ContainerInfo(
            exists=True,
            running=running,
            exit_code=None if running else state.get('ExitCode'),
            container_id=container.id,
        )

    def endpoint(self, service: str, port: int) -> Tuple[str, int]:
        """
        A published host port when there is one, otherwise the container's
        address on its first network.

        :raises ConnectionRefusedError: If the container does not exist.
        """
        with self._errors(service):
            try:
                container = self.client.containers.get(self.container_name(service))
            except NotFound:
                raise ConnectionRefusedError(f"container {self.container_name(service)} not found")
        settings = container.attrs.get('NetworkSettings', {})
        bindings = (settings.get('Ports') or {}).get(f"{port}/tcp")
        if bindings:
            return "127.0.0.1", int(bindings[0]['HostPort'])
        for network in (settings.get('Networks') or {}).values():
            if network.get('IPAddress'):
                return network['IPAddress'], port
        raise ConnectionRefusedError(f"no address for {service}:{port}")

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
