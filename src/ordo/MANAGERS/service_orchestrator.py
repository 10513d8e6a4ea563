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
Orchestration for multiple services, managing dependencies, readiness and restarts.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from ..errors import Cancelled, OrchestratorError, ReadinessTimeout, RuntimeUnavailable
from ..MODELS.orchestrator_options import OrchestratorOptions, StartPolicy
from ..MODELS.project_spec import ProjectSpec
from ..MODELS.runtime_state import RuntimeState, ServiceStatus
from ..MODELS.service_spec import ServiceSpec
from ..RUNNERS.cancellation import CancellationToken
from ..RUNNERS.dependency_resolver import DependencyResolver
from ..RUNNERS.readiness_prober import ProbeOutcome, ReadinessProber
from ..RUNTIME.base import ContainerRuntime
from .health_monitor import HealthMonitor
from .resource_provisioner import ResourceProvisioner
from .state_store import StateStore

logger = logging.getLogger(__name__)

# Most severe first; decides the exit code when several services failed
_SEVERITY = (Cancelled, RuntimeUnavailable, ReadinessTimeout)


@dataclass
class RunReport:
    """
    Final outcome of ``up`` or ``down``: every service's state plus what went wrong.
    """
    states: Tuple[Tuple[str, RuntimeState], ...]
    errors: Dict[str, OrchestratorError] = field(default_factory=dict)
    not_started: Dict[str, str] = field(default_factory=dict)
    fatal: Optional[OrchestratorError] = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def exit_code(self) -> int:
        if self.fatal is not None:
            return self.fatal.exit_code
        for kind in _SEVERITY:
            if any(isinstance(error, kind) for error in self.errors.values()):
                return kind.exit_code
        if self.errors or self.not_started:
            return OrchestratorError.exit_code
        return 0


class ServiceOrchestrator:
    """
    Orchestrates multiple services based on their dependencies.

    Services are started level by level; a level only begins once every
    service of the previous one is Ready. The orchestrator is the only writer
    of its state store.
    """
    def __init__(self,
                 project: ProjectSpec,
                 runtime: ContainerRuntime,
                 options: Optional[OrchestratorOptions] = None):
        """
        Initializes the orchestrator.

        :param project: Validated stack.
        :param runtime: Container runtime primitives.
        :param options: Run options; defaults to strict start policy.
        """
        self.project = project
        self.runtime = runtime
        self.options = options or OrchestratorOptions()
        self.resolver = DependencyResolver()
        self.token = CancellationToken()
        self.store = StateStore(project.services)
        self.prober = ReadinessProber(runtime, self.token)
        self.provisioner = ResourceProvisioner(runtime, self.options.state_dir)
        self.errors: Dict[str, OrchestratorError] = {}
        self._monitor: Optional[HealthMonitor] = None

    def cancel(self, reason: str = "cancelled by user"):
        """
        Cancels the run: outstanding probes return Cancelled and no further level starts.
        """
        logger.warning("Cancelling: %s", reason)
        self.token.cancel(reason)

    def up(self, services: Optional[Iterable[str]] = None) -> RunReport:
        """
        Starts services in dependency order.

        :param services: Only start these services and their dependencies.
        :return: Report with every service's state.
        :raises SpecError: If a requested service is unknown or an external resource is missing.
        :raises CycleError: If the dependencies contain a cycle. Nothing is started.
        """
        names = list(services or [])
        targets = self.resolver.subset(self.project.services, names) if names else dict(self.project.services)
        levels = self.resolver.resolve_levels(targets)
        logger.info("Start levels: %s", " | ".join(", ".join(level) for level in levels))

        not_started: Dict[str, str] = {}
        fatal: Optional[OrchestratorError] = None
        failed: List[str] = []

        if self.options.deadline:
            self.token.cancel_after(self.options.deadline)
        try:
            try:
                self.provisioner.provision(self.project)
            except RuntimeUnavailable as e:
                fatal = e
                levels_left = levels
            else:
                levels_left = []
                for index, level in enumerate(levels):
                    if self.token.is_cancelled:
                        fatal = Cancelled(self.token.reason)
                        levels_left = levels[index:]
                        break

                    if failed and self.options.start_policy == StartPolicy.STRICT:
                        levels_left = levels[index:]
                        break

                    outcomes = self._run_level(level, targets)
                    for name, error in outcomes.items():
                        if error is not None:
                            self.errors[name] = error
                            failed.append(name)
                            blocked = self.resolver.dependents(targets, name)
                            if blocked:
                                logger.warning("Failure of %s blocks %s", name, ", ".join(blocked))
                            if isinstance(error, RuntimeUnavailable) and fatal is None:
                                fatal = error

                    if fatal is not None or self.token.is_cancelled:
                        if fatal is None:
                            fatal = Cancelled(self.token.reason)
                        levels_left = levels[index + 1:]
                        break

            for level in levels_left:
                for name in level:
                    not_started[name] = self._not_started_reason(name, targets, failed, fatal)
                    logger.warning("Service %s not started: %s", name, not_started[name])

            if isinstance(fatal, Cancelled):
                self._stop_started(targets)
        finally:
            self.token.disarm()

        return self.report(not_started=not_started, fatal=fatal)

    def down(self, remove_volumes: bool = False) -> RunReport:
        """
        Stops all services in reverse dependency order, then removes project networks.

        :param remove_volumes: Also remove the project's named volumes.
        """
        if self._monitor is not None:
            self._monitor.stop()
            self._monitor = None

        errors: Dict[str, OrchestratorError] = {}
        fatal: Optional[OrchestratorError] = None
        for level in self.resolver.stop_levels(self.project.services):
            with ThreadPoolExecutor(max_workers=self._workers(level)) as pool:
                futures = {name: pool.submit(self._bring_down, name) for name in level}
            for name, future in futures.items():
                error = future.result()
                if error is not None:
                    errors[name] = error

        try:
            self.provisioner.teardown(self.project, remove_volumes=remove_volumes)
        except RuntimeUnavailable as e:
            fatal = e
        return RunReport(states=self.store.snapshot(), errors=errors, fatal=fatal)

    def ps(self) -> Tuple[Tuple[str, RuntimeState], ...]:
        """
        Returns the status of all services.
        """
        return self.store.snapshot()

    def observe(self) -> Tuple[Tuple[str, RuntimeState], ...]:
        """
        Refreshes the store from the runtime, for containers started by an earlier run.

        A running container counts as Ready when one readiness check passes.
        """
        for name, spec in self.project.services.items():
            info = self.runtime.inspect(name)
            state = self.store.get(name)
            if info.running:
                check = self.prober.check(name, spec.readiness)
                status = ServiceStatus.READY if check.ok else ServiceStatus.STARTING
                state = state.evolve(status=status, last_check=check.detail,
                                     container_id=info.container_id)
            elif info.exists and info.exit_code not in (None, 0):
                state = state.evolve(status=ServiceStatus.FAILED,
                                     error=f"exited with code {info.exit_code}",
                                     container_id=info.container_id)
            elif info.exists:
                state = state.evolve(status=ServiceStatus.STOPPED, container_id=info.container_id)
            else:
                state = state.evolve(status=ServiceStatus.PENDING)
            self.store.adopt(name, state)
        return self.store.snapshot()

    def watch(self):
        """
        Monitors Ready services until the run is cancelled, restarting exited
        containers according to their restart policy.
        """
        self._monitor = HealthMonitor(
            self.runtime, self.store, self._handle_exit, interval=self.options.monitor_interval
        )
        self._monitor.start()
        try:
            while not self.token.wait(1.0):
                pass
        finally:
            if self._monitor is not None:
                self._monitor.stop()
                self._monitor = None

    def close(self):
        """
        Ends the run: the state store becomes read-only and the runtime
        connection is released. Snapshots stay readable.
        """
        self.token.disarm()
        if self._monitor is not None:
            self._monitor.stop()
            self._monitor = None
        self.store.close()
        self.runtime.close()

    def report(self,
               not_started: Optional[Mapping[str, str]] = None,
               fatal: Optional[OrchestratorError] = None) -> RunReport:
        return RunReport(
            states=self.store.snapshot(),
            errors=dict(self.errors),
            not_started=dict(not_started or {}),
            fatal=fatal,
        )

    def _run_level(self, level: List[str], targets: Mapping[str, ServiceSpec]) -> Dict[str, Optional[OrchestratorError]]:
        """
        Starts and probes all services of one level concurrently.

        :return: Error per service, None for services that became Ready.
        """
        outcomes: Dict[str, Optional[OrchestratorError]] = {}
        to_start = []
        for name in level:
            state = self.store.get(name)
            if state.status == ServiceStatus.READY and self.runtime.inspect(name).running:
                logger.info("Service %s already ready", name)
                outcomes[name] = None
                continue
            blocking = [dep for dep in targets[name].depends_on
                        if self.store.get(dep).status != ServiceStatus.READY]
            if blocking:
                logger.warning("Starting %s in degraded mode, not ready: %s", name, ", ".join(blocking))
            to_start.append((name, bool(blocking)))

        if not to_start:
            return outcomes

        with ThreadPoolExecutor(max_workers=self._workers(to_start)) as pool:
            futures = {
                name: pool.submit(self._bring_up, name, degraded, self.store.get(name).restart_count)
                for name, degraded in to_start
            }
        for name, future in futures.items():
            outcomes[name] = future.result()
        return outcomes

    def _bring_up(self, name: str, degraded: bool, restarts: int) -> Optional[OrchestratorError]:
        """
        Starting -> start primitive -> probe -> Ready, restarting on failure while
        the restart policy allows it.

        :return: The error that left the service Failed, or None once Ready.
        """
        spec = self.project.services[name]
        while True:
            self.store.transition(name, ServiceStatus.STARTING,
                                  restart_count=restarts, degraded=degraded, error=None)
            try:
                container_id = self._start_container(spec)
                self.store.set(name, self.store.get(name).evolve(container_id=container_id))
                result = self.prober.probe(name, spec.readiness)
            except RuntimeUnavailable as e:
                self.store.transition(name, ServiceStatus.FAILED, error=str(e))
                return e

            if result.ready:
                self.store.transition(name, ServiceStatus.READY, last_check=result.detail)
                return None

            self.store.transition(name, ServiceStatus.FAILED,
                                  last_check=result.detail, error=str(result.error))
            if result.outcome == ProbeOutcome.CANCELLED:
                return result.error
            if not spec.restart.allows_restart(restarts):
                logger.error("Service %s failed permanently: %s", name, result.error)
                return result.error

            error = self._wait_and_reset(name, spec, restarts)
            if error is not None:
                return error
            restarts += 1

    def _wait_and_reset(self, name: str, spec: ServiceSpec, restarts: int) -> Optional[OrchestratorError]:
        """
        Backs off before a restart and stops the old container.
        """
        delay = spec.restart.delay_for(restarts)
        logger.warning("Restarting %s in %.1fs (restart %d of %d)",
                       name, delay, restarts + 1, spec.restart.max_restarts)
        if self.token.wait(delay):
            return Cancelled(self.token.reason)
        try:
            self.runtime.stop(name, spec.stop_grace_period)
        except RuntimeUnavailable as e:
            self.store.set(name, self.store.get(name).evolve(error=str(e)))
            return e
        return None

    def _start_container(self, spec: ServiceSpec) -> Optional[str]:
        """
        Starts a container, adopting one that is already running from an earlier run.
        """
        info = self.runtime.inspect(spec.name)
        if info.running:
            logger.info("Adopting running container for %s", spec.name)
            return info.container_id
        logger.info("Starting service %s (%s)", spec.name, spec.image)
        return self.runtime.start(spec, self.project)

    def _bring_down(self, name: str) -> Optional[OrchestratorError]:
        spec = self.project.services[name]
        logger.info("Stopping service %s", name)
        try:
            self.runtime.stop(name, spec.stop_grace_period)
        except RuntimeUnavailable as e:
            logger.error("Could not stop %s: %s", name, e)
            return e
        if self.store.get(name).status != ServiceStatus.STOPPED:
            self.store.transition(name, ServiceStatus.STOPPED)
        return None

    def _stop_started(self, targets: Mapping[str, ServiceSpec]):
        """
        Best-effort stop of every started service after a cancellation.
        """
        for level in self.resolver.stop_levels(targets):
            for name in level:
                state = self.store.get(name)
                if state.started_at is None or state.status == ServiceStatus.STOPPED:
                    continue
                error = self._bring_down(name)
                if error is not None:
                    self.errors.setdefault(name, error)

    def _handle_exit(self, name: str, exit_code: Optional[int]):
        """
        Callback from the health monitor for a Ready service whose container exited.
        """
        spec = self.project.services[name]
        state = self.store.get(name)
        if not spec.restart.allows_restart(state.restart_count, exit_code):
            if exit_code == 0:
                logger.info("Service %s completed", name)
                self.store.transition(name, ServiceStatus.STOPPED)
                return
            logger.error("Service %s exited (code %s) and will not be restarted", name, exit_code)
            self.store.transition(name, ServiceStatus.FAILED, error=f"exited with code {exit_code}")
            self.errors[name] = OrchestratorError(f"Service {name} exited with code {exit_code}")
            return
        state = self.store.transition(name, ServiceStatus.FAILED, error=f"exited with code {exit_code}")
        blocking = [dep for dep in spec.depends_on
                    if self.store.get(dep).status != ServiceStatus.READY]
        degraded = state.degraded
        if blocking:
            if self.options.start_policy == StartPolicy.STRICT:
                reason = f"not restarted, dependency not ready: {', '.join(blocking)}"
                logger.error("Service %s %s", name, reason)
                self.store.set(name, self.store.get(name).evolve(error=reason))
                self.errors[name] = OrchestratorError(f"Service {name} {reason}")
                return
            logger.warning("Restarting %s in degraded mode, not ready: %s", name, ", ".join(blocking))
            degraded = True
        error = self._wait_and_reset(name, spec, state.restart_count)
        if error is None:
            error = self._bring_up(name, degraded, state.restart_count + 1)
        if error is not None:
            self.errors[name] = error
        else:
            self.errors.pop(name, None)

    def _not_started_reason(self,
                            name: str,
                            targets: Mapping[str, ServiceSpec],
                            failed: List[str],
                            fatal: Optional[OrchestratorError]) -> str:
        if isinstance(fatal, Cancelled):
            return f"run cancelled ({fatal.reason})"
        if fatal is not None:
            return f"runtime unavailable: {fatal}"
        upstream = [dep for dep in self.resolver.subset(targets, [name]) if dep in failed]
        if upstream:
            return f"blocked by failed dependency: {', '.join(upstream)}"
        return f"start halted after failure of {', '.join(failed)}"

    def _workers(self, items) -> int:
        count = max(len(items), 1)
        if self.options.max_workers:
            return min(self.options.max_workers, count)
        return count
