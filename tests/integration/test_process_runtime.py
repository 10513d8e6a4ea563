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
Integration tests for the process runtime: real processes, volumes on disk
and discovery through environment variables.
"""
import json
import os
import socket
import sys
import time

import pytest

from conftest import make_project, make_service
from ordo.errors import RuntimeUnavailable
from ordo.MANAGERS.service_orchestrator import ServiceOrchestrator
from ordo.MODELS.orchestrator_options import OrchestratorOptions
from ordo.MODELS.project_spec import VolumeSpec
from ordo.MODELS.runtime_state import ServiceStatus
from ordo.MODELS.service_spec import EnvVar, PortMapping, ProbeKind, ProbePolicy, VolumeMount
from ordo.RUNTIME.process_runtime import ProcessRuntime

DUMMY_SERVICE = os.path.join(os.path.dirname(os.path.abspath(__file__)), "dummy_service.py")


def free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def tcp_service(name, port, depends_on=(), **fields):
    return make_service(
        name,
        depends_on,
        readiness=ProbePolicy(kind=ProbeKind.TCP, port=port, interval=0.1, deadline=10.0),
        command=(sys.executable, DUMMY_SERVICE),
        environment=(EnvVar(name="PORT", value=str(port)),) + fields.pop("environment", ()),
        ports=(PortMapping(container=port),),
        stop_grace_period=5,
        **fields,
    )


@pytest.fixture
def process_runtime(tmp_path):
    runtime = ProcessRuntime("test", state_dir=".ordo", base_dir=str(tmp_path))
    yield runtime
    for name in list(runtime._runners):
        runtime.stop(name, 1)


def wait_for_port(port, timeout=5.0):
    deadline = time.monotonic() + timeout
    while True:
        try:
            with socket.create_connection(("127.0.0.1", port), timeout=0.5):
                return
        except OSError:
            if time.monotonic() > deadline:
                raise
            time.sleep(0.05)


def read_env(runtime, service):
    path = os.path.join(runtime.state_dir, "rootfs", service, "env.json")
    deadline = time.monotonic() + 5
    while not os.path.exists(path) and time.monotonic() < deadline:
        time.sleep(0.05)
    with open(path) as f:
        return json.load(f)


class TestProcessRuntime:
    """Tests for ProcessRuntime primitives."""

    def test_start_inspect_stop(self, process_runtime):
        service = tcp_service("db", free_port())
        project = make_project(service)
        process_runtime.create_network("test_default", project.networks["default"])

        pid = process_runtime.start(service, project)
        wait_for_port(service.ports[0].container)
        info = process_runtime.inspect("db")
        assert info.exists and info.running
        assert info.container_id == pid

        process_runtime.stop("db", 5)
        info = process_runtime.inspect("db")
        assert not info.running
        assert info.exit_code == 0

    def test_inspect_unknown_service(self, process_runtime):
        assert process_runtime.inspect("ghost").exists is False

    def test_start_requires_command(self, process_runtime):
        service = make_service("db")
        with pytest.raises(RuntimeUnavailable, match="No command"):
            process_runtime.start(service, make_project(service))

    def test_start_requires_network(self, process_runtime):
        service = tcp_service("db", free_port())
        with pytest.raises(RuntimeUnavailable, match="No such network"):
            process_runtime.start(service, make_project(service))

    def test_exec(self, process_runtime):
        ok = process_runtime.exec("db", [sys.executable, "-c", "print('up')"], 5)
        assert ok.exit_code == 0
        assert ok.output == "up"
        failed = process_runtime.exec("db", [sys.executable, "-c", "import sys; sys.exit(3)"], 5)
        assert failed.exit_code == 3
        missing = process_runtime.exec("db", ["/nonexistent/check"], 5)
        assert missing.exit_code == 127
        slow = process_runtime.exec("db", [sys.executable, "-c", "import time; time.sleep(5)"], 0.2)
        assert slow.exit_code == -1

    def test_volumes(self, process_runtime):
        process_runtime.create_volume("test_data", VolumeSpec(name="data"))
        assert process_runtime.volume_exists("test_data")
        process_runtime.remove_volume("test_data")
        assert not process_runtime.volume_exists("test_data")

    def test_later_invocation_attaches(self, process_runtime, tmp_path):
        service = tcp_service("db", free_port())
        project = make_project(service)
        process_runtime.create_network("test_default", project.networks["default"])
        pid = process_runtime.start(service, project)
        wait_for_port(service.ports[0].container)

        other = ProcessRuntime("test", state_dir=".ordo", base_dir=str(tmp_path))
        info = other.inspect("db")
        assert info.running
        assert info.container_id == pid

        other.stop("db", 5)
        deadline = time.monotonic() + 5
        while process_runtime.inspect("db").running and time.monotonic() < deadline:
            time.sleep(0.05)
        assert not process_runtime.inspect("db").running


class TestProcessOrchestration:
    """End to end runs of the orchestrator on real processes."""

    def test_up_and_down(self, process_runtime, tmp_path):
        db_port, web_port = free_port(), free_port()
        db = tcp_service("db", db_port, volumes=(VolumeMount(source="data", target="/var/lib/db"),))
        web = tcp_service("web", web_port, depends_on=["db"])
        project = make_project(web, db, volumes=["data"])

        orchestrator = ServiceOrchestrator(
            project, process_runtime, OrchestratorOptions(state_dir=str(tmp_path / ".ordo"))
        )
        report = orchestrator.up()
        assert report.ok, report.errors
        assert [t.service for t in orchestrator.store.history() if t.status == ServiceStatus.READY] == ["db", "web"]

        env = read_env(process_runtime, "web")
        assert env["DB_HOST"] == "127.0.0.1"
        assert env["DB_PORT"] == str(db_port)
        assert env["ORDO_ROOT"].endswith(os.path.join("rootfs", "web"))
        assert os.path.islink(os.path.join(process_runtime.state_dir, "rootfs", "db", "var", "lib", "db"))

        with socket.create_connection(("127.0.0.1", web_port), timeout=2):
            pass

        report = orchestrator.down()
        assert report.ok
        assert not process_runtime.inspect("web").running
        assert not process_runtime.inspect("db").running
        assert process_runtime.volume_exists("test_data")
        assert not process_runtime.network_exists("test_default")

    def test_observe_reports_crashed_process(self, process_runtime, tmp_path):
        service = tcp_service("db", free_port())
        options = OrchestratorOptions(state_dir=str(tmp_path / ".ordo"))
        orchestrator = ServiceOrchestrator(make_project(service), process_runtime, options)
        assert orchestrator.up().ok

        process = process_runtime._runner("db").process
        process.kill()
        process.wait(timeout=5)

        states = dict(orchestrator.observe())
        assert states["db"].status == ServiceStatus.FAILED
        assert states["db"].error == "exited with code -9"
