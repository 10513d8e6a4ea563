"""
Run-time options for the orchestrator, separate from the stack document.
"""
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field


class StartPolicy(str, Enum):
    """
    What happens to dependents of a service that never became ready.
    """
    STRICT = "strict"
    DEGRADED_START = "degraded-start"


class OrchestratorOptions(BaseModel):
    """
    Options for one orchestrator run. Usually built from CLI flags and ORDO_* variables.
    """
    start_policy: StartPolicy = StartPolicy.STRICT
    deadline: Optional[float] = Field(default=None, gt=0)
    max_workers: Optional[int] = Field(default=None, gt=0)
    state_dir: str = ".ordo"
    monitor_interval: float = Field(default=5.0, gt=0)
