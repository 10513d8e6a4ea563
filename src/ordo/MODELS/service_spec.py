"""
Models for defining services, including restart policies, readiness probes, and mounts.
"""
from typing import Optional, Tuple
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

SERVICE_NAME_PATTERN = r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$"


class RestartCondition(str, Enum):
    """
    Conditions under which a failed service is started again.
    """
    NEVER = "never"
    ON_FAILURE = "on-failure"
    ALWAYS = "always"


class RestartPolicy(BaseModel):
    """
    Defines how often and how fast a failed service is restarted.
    """
    model_config = ConfigDict(frozen=True)

    condition: RestartCondition = RestartCondition.NEVER
    max_restarts: int = Field(default=3, ge=0)
    backoff: float = Field(default=1.0, ge=0)
    backoff_ceiling: float = Field(default=30.0, ge=0)

    def allows_restart(self, restart_count: int, exit_code: Optional[int] = None) -> bool:
        """
        Whether another restart is permitted.

        :param restart_count: Restarts already performed.
        :param exit_code: Exit code of the container, when it exited on its own.
        """
        if self.condition == RestartCondition.NEVER:
            return False
        if self.condition == RestartCondition.ON_FAILURE and exit_code == 0:
            return False
        return restart_count < self.max_restarts

    def delay_for(self, restart_count: int) -> float:
        """Backoff before restart number ``restart_count + 1``."""
        return min(self.backoff * (2 ** restart_count), self.backoff_ceiling)


class ProbeKind(str, Enum):
    """
    Kinds of readiness check.
    """
    RUNNING = "running"
    TCP = "tcp"
    EXEC = "exec"
    HTTP = "http"


class ProbePolicy(BaseModel):
    """
    Readiness check configuration for a service.
    """
    model_config = ConfigDict(frozen=True)

    kind: ProbeKind = ProbeKind.RUNNING
    host: Optional[str] = None
    port: Optional[int] = Field(default=None, gt=0, lt=65536)
    path: str = "/"
    command: Tuple[str, ...] = ()
    interval: float = Field(default=1.0, gt=0)
    timeout: Optional[float] = Field(default=None, gt=0)
    start_period: float = Field(default=0.0, ge=0)
    max_attempts: Optional[int] = Field(default=None, gt=0)
    deadline: Optional[float] = Field(default=60.0, gt=0)

    @model_validator(mode="after")
    def _check_kind_arguments(self) -> "ProbePolicy":
        if self.kind in (ProbeKind.TCP, ProbeKind.HTTP) and self.port is None:
            raise ValueError(f"{self.kind.value} probe requires a port")
        if self.kind == ProbeKind.EXEC and not self.command:
            raise ValueError("exec probe requires a command")
        if self.max_attempts is None and self.deadline is None:
            raise ValueError("probe needs max_attempts or deadline")
        return self

    @property
    def attempt_timeout(self) -> float:
        """Timeout of a single attempt; never longer than one interval unless set."""
        return self.timeout if self.timeout is not None else self.interval


class EnvVar(BaseModel):
    """
    A single environment variable binding.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    value: str


class VolumeMount(BaseModel):
    """
    Maps a named volume or host path to a path inside the container.
    """
    model_config = ConfigDict(frozen=True)

    source: str
    target: str
    read_only: bool = False

    @property
    def is_named(self) -> bool:
        """Named volumes are bare names, host paths are absolute or start with '.' or '~'."""
        return not (self.source.startswith(("/", ".", "~")) or "/" in self.source)


class PortMapping(BaseModel):
    """
    A container port, optionally published on a host port.
    """
    model_config = ConfigDict(frozen=True)

    container: int = Field(gt=0, lt=65536)
    host: Optional[int] = Field(default=None, gt=0, lt=65536)


class ServiceSpec(BaseModel):
    """
    The full, resolved definition of a single service. Immutable once loaded.
    """
    model_config = ConfigDict(frozen=True)

    name: str = Field(pattern=SERVICE_NAME_PATTERN)
    image: str = Field(min_length=1)

    # Execution
    command: Tuple[str, ...] = ()
    working_dir: Optional[str] = None

    # Environment, in declaration order
    environment: Tuple[EnvVar, ...] = ()

    # Storage and networking
    volumes: Tuple[VolumeMount, ...] = ()
    networks: Tuple[str, ...] = ()
    ports: Tuple[PortMapping, ...] = ()

    # Lifecycle
    restart: RestartPolicy = Field(default_factory=RestartPolicy)
    depends_on: Tuple[str, ...] = ()
    readiness: ProbePolicy = Field(default_factory=ProbePolicy)
    stop_grace_period: float = Field(default=10.0, ge=0)

    @field_validator("depends_on")
    @classmethod
    def _unique_dependencies(cls, value: Tuple[str, ...]) -> Tuple[str, ...]:
        seen = []
        for dep in value:
            if dep not in seen:
                seen.append(dep)
        return tuple(seen)

    def env_dict(self):
        """Environment as a plain mapping; later bindings win."""
        return {var.name: var.value for var in self.environment}
