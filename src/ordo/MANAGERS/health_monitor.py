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
Health monitoring for services that already reached Ready: notices containers
that exit and hands them back to the orchestrator's restart policy handling.
"""
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, List, Optional

from ..errors import OrchestratorError
from ..MODELS.runtime_state import ServiceStatus
from ..RUNTIME.base import ContainerRuntime
from .state_store import StateStore

logger = logging.getLogger(__name__)


class HealthMonitor:
    """
    Polls the runtime for Ready services and reports the ones that stopped running.

    The monitor never writes state itself; ``on_exit`` is expected to be the
    orchestrator, which stays the store's only writer. Each ``on_exit`` call
    runs on a worker thread, so a slow restart does not hide exits of other
    services. A service is never handed over twice at the same time.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        store: StateStore,
        on_exit: Callable[[str, Optional[int]], None],
        interval: float = 5.0,
    ):
        """
        Initializes the health monitor.

        :param runtime: Runtime to inspect.
        :param store: State store to read Ready services from.
        :param on_exit: Called with the service name and exit code of a stopped container.
        :param interval: Seconds between polls.
        """
        self.runtime = runtime
        self.store = store
        self.on_exit = on_exit
        self.interval = interval
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._handling: Dict[str, Future] = {}
        self._pool = ThreadPoolExecutor(thread_name_prefix="ordo-exit")
        self.thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self.thread is not None and self.thread.is_alive()

    @property
    def handling(self) -> List[str]:
        """Services whose exit is still being handled."""
        with self._lock:
            return [name for name, future in self._handling.items() if not future.done()]

    def start(self):
        """
        Starts the health monitoring thread.
        """
        self._stop.clear()
        self.thread = threading.Thread(target=self._monitor_loop, name="ordo-health", daemon=True)
        self.thread.start()

    def stop(self):
        """
        Stops the health monitoring thread and waits for exit handlers still running.
        """
        self._stop.set()
        if self.thread:
            self.thread.join(timeout=self.interval + 1)
            self.thread = None
        pool, self._pool = self._pool, ThreadPoolExecutor(thread_name_prefix="ordo-exit")
        pool.shutdown(wait=True)

    def check_once(self, wait_handlers: bool = True) -> List[str]:
        """
        Inspects every Ready service once.

        :param wait_handlers: Block until the ``on_exit`` calls of this pass return.
        :return: Names of services reported to ``on_exit``.
        """
        busy = set(self.handling)
        exited = []
        dispatched = []
        for name in self.store.with_status(ServiceStatus.READY):
            if name in busy:
                continue
            info = self.runtime.inspect(name)
            if info.running:
                continue
            logger.warning("Service %s is no longer running (exit code %s)", name, info.exit_code)
            exited.append(name)
            future = self._pool.submit(self.on_exit, name, info.exit_code)
            future.add_done_callback(lambda done, service=name: self._handled(service, done))
            with self._lock:
                self._handling[name] = future
            dispatched.append(future)
        if wait_handlers and dispatched:
            wait(dispatched)
        return exited

    def _handled(self, name: str, future: Future):
        with self._lock:
            if self._handling.get(name) is future:
                del self._handling[name]
        error = future.exception()
        if error is not None:
            logger.error("Handling exit of %s failed: %s", name, error)

    def _monitor_loop(self):
        """
        Internal monitoring loop that periodically checks all Ready services.
        """
        while not self._stop.is_set():
            if self.store.closed:
                logger.info("State store closed, health monitor exiting")
                break
            try:
                self.check_once(wait_handlers=False)
            except OrchestratorError as e:
                logger.error("Health check pass failed: %s", e)
            except RuntimeError as e:
                logger.error("Health monitor stopped: %s", e)
                break
            self._stop.wait(self.interval)
