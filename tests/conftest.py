"""
Shared fixtures: an in-memory container runtime and small project builders.
"""
import threading
import time
from collections import Counter
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import pytest

from ordo.errors import RuntimeUnavailable
from ordo.MODELS.project_spec import NetworkSpec, ProjectSpec, VolumeSpec
from ordo.MODELS.service_spec import ProbePolicy, RestartPolicy, ServiceSpec
from ordo.RUNTIME.base import ContainerInfo, ContainerRuntime, ExecResult

FAST_PROBE = ProbePolicy(interval=0.01, max_attempts=3, deadline=None)


class FakeRuntime(ContainerRuntime):
    """
    Records every primitive call. Containers run as soon as they start unless
    listed in ``crash_on_start``.
    """

    def __init__(self, project_name: str = "test"):
        super().__init__(project_name)
        self._lock = threading.Lock()
        self.networks: Dict[str, NetworkSpec] = {}
        self.volumes: Dict[str, VolumeSpec] = {}
        self.containers: Dict[str, ContainerInfo] = {}
        self.calls: List[Tuple[str, str]] = []
        self.start_times: Dict[str, List[float]] = {}
        self.start_counts: Counter = Counter()
        self.crash_on_start = set()
        self.fail_start = set()
        self.unavailable = False
        self.exec_results: Dict[str, Union[int, Callable[[], int]]] = {}
        self.endpoints: Dict[Tuple[str, int], Tuple[str, int]] = {}

    def _record(self, op: str, target: str):
        with self._lock:
            self.calls.append((op, target))
        if self.unavailable:
            raise RuntimeUnavailable("daemon unreachable", service=target)

    def ops(self, op: str) -> List[str]:
        with self._lock:
            return [target for name, target in self.calls if name == op]

    def network_exists(self, name):
        self._record("network_exists", name)
        return name in self.networks

    def create_network(self, name, spec):
        self._record("create_network", name)
        # Widen the check-then-create window for concurrency tests
        time.sleep(0.01)
        self.networks[name] = spec

    def remove_network(self, name):
        self._record("remove_network", name)
        self.networks.pop(name, None)

    def volume_exists(self, name):
        self._record("volume_exists", name)
        return name in self.volumes

    def create_volume(self, name, spec):
        self._record("create_volume", name)
        time.sleep(0.01)
        self.volumes[name] = spec

    def remove_volume(self, name):
        self._record("remove_volume", name)
        self.volumes.pop(name, None)

    def start(self, service, project):
        self._record("start", service.name)
        if service.name in self.fail_start:
            raise RuntimeUnavailable("image pull failed", service=service.name)
        with self._lock:
            self.start_counts[service.name] += 1
            self.start_times.setdefault(service.name, []).append(time.monotonic())
            crashed = service.name in self.crash_on_start
            self.containers[service.name] = ContainerInfo(
                exists=True,
                running=not crashed,
                exit_code=1 if crashed else None,
                container_id=f"{service.name}-{self.start_counts[service.name]}",
            )
        return self.containers[service.name].container_id

    def stop(self, service, grace_period):
        self._record("stop", service)
        with self._lock:
            info = self.containers.get(service)
            if info is not None and info.running:
                self.containers[service] = ContainerInfo(
                    exists=True, running=False, exit_code=0, container_id=info.container_id
                )

    def exec(self, service, command: Sequence[str], timeout):
        self._record("exec", service)
        result = self.exec_results.get(service, 0)
        exit_code = result() if callable(result) else result
        return ExecResult(exit_code=exit_code, output="" if exit_code == 0 else f"check failed ({exit_code})")

    def inspect(self, service):
        self._record("inspect", service)
        with self._lock:
            return self.containers.get(service, ContainerInfo())

    def endpoint(self, service, port):
        self._record("endpoint", service)
        return self.endpoints.get((service, port), ("127.0.0.1", port))

    def kill(self, service: str, exit_code: int = 1):
        """Simulates a container exiting on its own."""
        with self._lock:
            info = self.containers[service]
            self.containers[service] = ContainerInfo(
                exists=True, running=False, exit_code=exit_code, container_id=info.container_id
            )


def make_service(name: str,
                 depends_on: Sequence[str] = (),
                 readiness: Optional[ProbePolicy] = None,
                 restart: Optional[RestartPolicy] = None,
                 **fields) -> ServiceSpec:
    return ServiceSpec(
        name=name,
        image=fields.pop("image", f"{name}:latest"),
        depends_on=tuple(depends_on),
        networks=fields.pop("networks", ("default",)),
        readiness=readiness or FAST_PROBE,
        restart=restart or RestartPolicy(),
        stop_grace_period=fields.pop("stop_grace_period", 0.1),
        **fields,
    )


def make_project(*services: ServiceSpec, name: str = "test", volumes: Sequence[str] = ()) -> ProjectSpec:
    return ProjectSpec(
        name=name,
        services={svc.name: svc for svc in services},
        volumes={vol: VolumeSpec(name=vol) for vol in volumes},
        networks={"default": NetworkSpec(name="default")},
    )


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def state_dir(tmp_path):
    return str(tmp_path / "state")
