import time
from conftest import FakeRuntime, make_project, make_service
from ordo.MANAGERS.service_orchestrator import ServiceOrchestrator
from ordo.MODELS.orchestrator_options import OrchestratorOptions
from ordo.MODELS.runtime_state import ServiceStatus
from ordo.PARSERS.spec_loader import SpecLoader


def test_stress_orchestration(tmp_path):
    """
    Orchestrates 200 services: 50 independent roots, each with a chain of 3 dependents.
    """
    services = []
    for i in range(50):
        services.append(make_service(f"root_{i}"))
        for depth in range(1, 4):
            parent = f"root_{i}" if depth == 1 else f"svc_{i}_{depth - 1}"
            services.append(make_service(f"svc_{i}_{depth}", [parent]))

    runtime = FakeRuntime()
    options = OrchestratorOptions(state_dir=str(tmp_path / "state"), max_workers=16)
    orchestrator = ServiceOrchestrator(make_project(*services), runtime, options)

    start_time = time.time()
    report = orchestrator.up()
    end_time = time.time()

    print(f"Started 200 services in {end_time - start_time:.2f}s")
    assert report.ok
    assert len(report.states) == 200
    assert all(state.status == ServiceStatus.READY for _, state in report.states)

    started = runtime.ops("start")
    for spec in services:
        for dep in spec.depends_on:
            assert started.index(dep) < started.index(spec.name)

    report = orchestrator.down()
    assert report.ok
    assert len(runtime.ops("stop")) == 200


def test_wide_dependency_fan_in(tmp_path):
    """One service depending on 100 others starts only after all of them."""
    leaves = [make_service(f"leaf_{i}") for i in range(100)]
    hub = make_service("hub", [leaf.name for leaf in leaves])
    runtime = FakeRuntime()
    orchestrator = ServiceOrchestrator(
        make_project(hub, *leaves), runtime, OrchestratorOptions(state_dir=str(tmp_path / "state"))
    )
    assert orchestrator.up().ok
    assert runtime.ops("start")[-1] == "hub"


def test_large_config_parsing():
    content = "services:\n"
    for i in range(1000):
        content += f"  service_{i}:\n"
        content += f"    image: image_{i}\n"
        content += f"    environment:\n"
        content += f"      - VAR_{i}=VALUE_{i}\n"

    start_time = time.time()
    SpecLoader(context={}).load_from_string(content)
    end_time = time.time()

    assert end_time - start_time < 5.0
