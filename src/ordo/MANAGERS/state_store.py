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
In-memory store of each service's observed state during a run.
"""
import threading
import time
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from ..errors import InvalidTransition
from ..MODELS.runtime_state import RuntimeState, ServiceStatus, can_transition


@dataclass(frozen=True)
class Transition:
    """One recorded status change."""

    service: str
    status: ServiceStatus
    at: float


class StateStore:
    """
    Map from service name to ``RuntimeState``.

    The orchestrator is the only writer. Readers (status queries, the CLI)
    may call ``get`` and ``snapshot`` from any thread; states are immutable,
    so a snapshot never shows a half-written record.
    """

    def __init__(self, services: Iterable[str]):
        """
        Creates the store with every service Pending, in the given order.

        :param services: Service names in declaration order.
        """
        self._lock = threading.Lock()
        self._states: Dict[str, RuntimeState] = {name: RuntimeState() for name in services}
        self._history: List[Transition] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """
        Ends the run. Reads keep working, writes raise.
        """
        with self._lock:
            self._closed = True

    def get(self, name: str) -> RuntimeState:
        """
        :raises KeyError: If the service is unknown.
        """
        with self._lock:
            return self._states[name]

    def set(self, name: str, state: RuntimeState) -> None:
        """
        Replaces a service's state, validating the status change.

        :raises InvalidTransition: If the lifecycle does not allow the change.
        :raises RuntimeError: If the store is closed.
        """
        with self._lock:
            if self._closed:
                raise RuntimeError("State store is closed")
            current = self._states[name]
            if current.status != state.status:
                if not can_transition(current.status, state.status):
                    raise InvalidTransition(name, current.status.value, state.status.value)
                self._history.append(Transition(name, state.status, time.monotonic()))
            self._states[name] = state

    def adopt(self, name: str, state: RuntimeState) -> None:
        """
        Records an observed state without lifecycle validation.

        Used when attaching to containers started by an earlier run, whose
        history this store never saw.
        """
        with self._lock:
            if self._closed:
                raise RuntimeError("State store is closed")
            self._states[name] = state

    def transition(self, name: str, status: ServiceStatus, **changes) -> RuntimeState:
        """
        Moves a service to ``status``, updating other fields at the same time.

        Entering Starting stamps ``started_at``; entering Ready stamps ``ready_at``.

        :return: The new state.
        """
        now = time.monotonic()
        if status == ServiceStatus.STARTING:
            changes.setdefault('started_at', now)
        elif status == ServiceStatus.READY:
            changes.setdefault('ready_at', now)
        state = self.get(name).evolve(status=status, **changes)
        self.set(name, state)
        return state

    def snapshot(self) -> Tuple[Tuple[str, RuntimeState], ...]:
        """
        Ordered, immutable copy of every service's state.
        """
        with self._lock:
            return tuple(self._states.items())

    def history(self, service: Optional[str] = None) -> Tuple[Transition, ...]:
        """
        Recorded status changes, oldest first.

        :param service: Only return changes of this service.
        """
        with self._lock:
            return tuple(t for t in self._history if service is None or t.service == service)

    def with_status(self, status: ServiceStatus) -> List[str]:
        with self._lock:
            return [name for name, state in self._states.items() if state.status == status]
