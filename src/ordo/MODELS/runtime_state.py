"""
Observed state of a service during a run.
"""
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, FrozenSet, Optional


class ServiceStatus(str, Enum):
    """Lifecycle status of a service."""

    PENDING = "pending"
    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"
    STOPPED = "stopped"


TRANSITIONS: Dict[ServiceStatus, FrozenSet[ServiceStatus]] = {
    ServiceStatus.PENDING: frozenset({ServiceStatus.STARTING, ServiceStatus.STOPPED}),
    ServiceStatus.STARTING: frozenset(
        {ServiceStatus.READY, ServiceStatus.FAILED, ServiceStatus.STOPPED}
    ),
    ServiceStatus.READY: frozenset({ServiceStatus.FAILED, ServiceStatus.STOPPED}),
    ServiceStatus.FAILED: frozenset({ServiceStatus.STARTING, ServiceStatus.STOPPED}),
    ServiceStatus.STOPPED: frozenset({ServiceStatus.STARTING}),
}


def can_transition(current: ServiceStatus, target: ServiceStatus) -> bool:
    return target in TRANSITIONS[current]


@dataclass(frozen=True)
class RuntimeState:
    """Per-service record. Immutable: updates produce a new object."""

    status: ServiceStatus = ServiceStatus.PENDING
    started_at: Optional[float] = None
    ready_at: Optional[float] = None
    last_check: str = ""
    restart_count: int = 0
    container_id: Optional[str] = None
    error: Optional[str] = None
    degraded: bool = False

    def evolve(self, **changes) -> "RuntimeState":
        return replace(self, **changes)

