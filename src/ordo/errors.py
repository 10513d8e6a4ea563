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
Error taxonomy for the orchestrator.

Loader and resolver errors are raised before anything is started. Per-service
errors are recorded in the state store and only escalate when they block the
whole graph. Every error carries the exit code the CLI reports for it.
"""
from typing import List, Optional, Sequence


class OrchestratorError(Exception):
    """Base class for all orchestrator exceptions."""

    exit_code = 1


class SpecError(OrchestratorError):
    """
    The declarative document is malformed or incomplete.

    :param message: Human readable description.
    :param field: Dotted path of the offending field, if known.
    """

    exit_code = 2

    def __init__(self, message: str, field: Optional[str] = None):
        self.message = message
        self.field = field
        super().__init__(f"{field}: {message}" if field else message)


class CycleError(OrchestratorError):
    """The dependency graph contains a cycle."""

    exit_code = 3

    def __init__(self, cycle: Sequence[str]):
        self.cycle: List[str] = list(cycle)
        super().__init__(
            "Circular dependency detected: " + " -> ".join(self.cycle)
        )


class ReadinessTimeout(OrchestratorError):
    """A service did not pass its readiness check before the deadline."""

    exit_code = 4

    def __init__(self, service: str, attempts: int, detail: str = ""):
        self.service = service
        self.attempts = attempts
        self.detail = detail
        message = f"Service {service} not ready after {attempts} attempt(s)"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class RuntimeUnavailable(OrchestratorError):
    """The container runtime could not be reached or refused an operation."""

    exit_code = 5

    def __init__(self, message: str, service: Optional[str] = None):
        self.service = service
        super().__init__(f"[{service}] {message}" if service else message)


class Cancelled(OrchestratorError):
    """The run was cancelled by the user or by the global deadline."""

    exit_code = 130

    def __init__(self, reason: str = "cancelled"):
        self.reason = reason
        super().__init__(reason)


class InvalidTransition(OrchestratorError):
    """A service state change that the lifecycle state machine does not allow."""

    def __init__(self, service: str, current: str, target: str):
        self.service = service
        self.current = current
        self.target = target
        super().__init__(
            f"Service {service} cannot move from {current} to {target}"
        )
