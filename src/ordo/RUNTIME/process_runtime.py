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
Runtime that runs each service's command as a host process.

There is no image to pull: the image name is informational and the service
must declare a command. Named volumes are directories under the state
directory, networks are registry files, and peers are discovered through
<SERVICE>_HOST / <SERVICE>_PORT environment variables.
"""
import logging
import os
import subprocess
from typing import Dict, Sequence, Tuple

from ..errors import RuntimeUnavailable
from ..MANAGERS.network_manager import NetworkManager
from ..MANAGERS.volume_manager import VolumeManager
from ..MODELS.project_spec import NetworkSpec, ProjectSpec, VolumeSpec
from ..MODELS.service_spec import ServiceSpec
from ..RUNNERS.process_runner import ProcessRunner
from .base import ContainerInfo, ContainerRuntime, ExecResult

logger = logging.getLogger(__name__)


class ProcessRuntime(ContainerRuntime):
    """
    Container runtime primitives backed by local processes.
    """

    def __init__(self, project_name: str, state_dir: str = ".ordo", base_dir: str = "."):
        """
        :param project_name: Project the runtime is bound to.
        :param state_dir: Directory for volumes, network records, logs and pid files.
        :param base_dir: Directory relative host paths and working directories resolve against.
        """
        super().__init__(project_name)
        self.base_dir = os.path.abspath(base_dir)
        self.state_dir = os.path.abspath(os.path.join(self.base_dir, state_dir))
        self.volume_manager = VolumeManager(self.base_dir, os.path.join(self.state_dir, "volumes"))
        self.network_manager = NetworkManager(os.path.join(self.state_dir, "networks"))
        self._runners: Dict[str, ProcessRunner] = {}
        self._environments: Dict[str, Dict[str, str]] = {}
        self._workdirs: Dict[str, str] = {}

    def network_exists(self, name: str) -> bool:
        return self.network_manager.exists(name)

    def create_network(self, name: str, spec: NetworkSpec) -> None:
        self.network_manager.create(name, spec)

    def remove_network(self, name: str) -> None:
        self.network_manager.remove(name)

    def volume_exists(self, name: str) -> bool:
        return self.volume_manager.exists(name)

    def create_volume(self, name: str, spec: VolumeSpec) -> None:
        self.volume_manager.create(name)

    def remove_volume(self, name: str) -> None:
        self.volume_manager.remove(name)

    def start(self, service: ServiceSpec, project: ProjectSpec) -> str:
        if not service.command:
            raise RuntimeUnavailable(
                f"No command to run for image {service.image}; the process runtime cannot pull images",
                service=service.name,
            )

        root_dir = os.path.join(self.state_dir, "rootfs", service.name)
        working_dir = self._working_dir(service, root_dir)
        self.volume_manager.prepare_mounts(list(service.volumes), project, root_dir, working_dir)

        peers = []
        for network in service.networks:
            runtime_name = project.network_name(network)
            try:
                self.network_manager.connect(runtime_name, service.name)
            except KeyError as e:
                raise RuntimeUnavailable(str(e), service=service.name) from e
            peers.extend(
                other for other in project.services.values()
                if network in other.networks and other not in peers
            )

        env = dict(os.environ)
        env.update(self.network_manager.get_service_discovery_env(peers))
        env["ORDO_ROOT"] = root_dir
        env.update(service.env_dict())
        self._environments[service.name] = env
        self._workdirs[service.name] = working_dir

        runner = self._runner(service.name)
        try:
            pid = runner.start(list(service.command), env=env, working_dir=working_dir)
        except OSError as e:
            raise RuntimeUnavailable(f"Failed to start {service.command[0]}: {e}", service=service.name) from e
        return str(pid)

    def stop(self, service: str, grace_period: float) -> None:
        self._runner(service).stop(timeout=grace_period)

    def exec(self, service: str, command: Sequence[str], timeout: float) -> ExecResult:
        env = self._environments.get(service, dict(os.environ))
        cwd = self._workdirs.get(service, self.base_dir)
        try:
            result = subprocess.run(
                list(command),
                env=env,
                cwd=cwd,
                capture_output=True,
                timeout=timeout,
                text=True,
            )
        except subprocess.TimeoutExpired:
            return ExecResult(exit_code=-1, output="Health check timed out")
        except OSError as e:
            return ExecResult(exit_code=127, output=str(e))
        return ExecResult(exit_code=result.returncode, output=(result.stdout or result.stderr or "").strip())

    def inspect(self, service: str) -> ContainerInfo:
        runner = self._runner(service)
        if runner.pid is None:
            return ContainerInfo()
        return ContainerInfo(
            exists=True,
            running=runner.is_running(),
            exit_code=runner.get_exit_code(),
            container_id=str(runner.pid),
        )

    def endpoint(self, service: str, port: int) -> Tuple[str, int]:
        # Processes share the host network; a published port is where the service listens
        return "127.0.0.1", port

    def _runner(self, service: str) -> ProcessRunner:
        if service not in self._runners:
            self._runners[service] = ProcessRunner(
                service,
                log_file=os.path.join(self.state_dir, "logs", f"{service}.log"),
                pid_file=os.path.join(self.state_dir, "pids", f"{self.container_name(service)}.pid"),
            )
        return self._runners[service]

    def _working_dir(self, service: ServiceSpec, root_dir: str) -> str:
        if not service.working_dir:
            return self.base_dir
        if service.working_dir.startswith('/'):
            return os.path.join(root_dir, service.working_dir.lstrip('/'))
        return os.path.join(self.base_dir, service.working_dir)
