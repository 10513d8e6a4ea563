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
Readiness probing: polls a service's check until it passes, the attempts or
deadline run out, or the run is cancelled.
"""
import logging
import socket
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple
from urllib.error import HTTPError, URLError
from urllib.request import urlopen

from tenacity import RetryError, Retrying, retry_if_result, stop_after_attempt, stop_after_delay, stop_any, wait_fixed

from ..errors import Cancelled, OrchestratorError, ReadinessTimeout
from ..MODELS.service_spec import ProbeKind, ProbePolicy
from ..RUNTIME.base import ContainerRuntime
from .cancellation import CancellationToken

logger = logging.getLogger(__name__)


class ProbeOutcome(str, Enum):
    """Final result of probing one service."""

    READY = "ready"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass
class CheckResult:
    """Result of a single readiness attempt."""

    ok: bool
    detail: str = ""


@dataclass
class ProbeResult:
    """Result of a whole probe, with the error to report when not ready."""

    outcome: ProbeOutcome
    attempts: int
    detail: str = ""
    elapsed: float = 0.0
    error: Optional[OrchestratorError] = None

    @property
    def ready(self) -> bool:
        return self.outcome == ProbeOutcome.READY


class _ProbeCancelled(Exception):
    """Raised out of the retry loop's sleep when the token is cancelled."""


class ReadinessProber:
    """
    Runs readiness checks against a container runtime.

    Failed attempts are retried at the policy interval and are only logged;
    the last failure is what a timeout reports.
    """

    def __init__(self, runtime: ContainerRuntime, token: Optional[CancellationToken] = None):
        """
        Initializes the prober.

        :param runtime: Runtime used for inspect, exec and endpoint lookups.
        :param token: Cancellation shared with the rest of the run.
        """
        self.runtime = runtime
        self.token = token or CancellationToken()

    def probe(self, service: str, policy: ProbePolicy) -> ProbeResult:
        """
        Waits until ``service`` passes its readiness check.

        :param service: Service name.
        :param policy: Check kind, interval and limits.
        :return: READY, TIMEOUT (with a ``ReadinessTimeout``) or CANCELLED (with ``Cancelled``).
        :raises RuntimeUnavailable: If the runtime cannot be reached.
        """
        started = time.monotonic()
        attempts = 0

        def attempt() -> CheckResult:
            nonlocal attempts
            attempts += 1
            return self.check(service, policy)

        def elapsed() -> float:
            return time.monotonic() - started

        if self.token.is_cancelled or (policy.start_period and self.token.wait(policy.start_period)):
            return self._cancelled(service, attempts, "", elapsed())

        stops = [self._stop_on_cancel]
        if policy.max_attempts is not None:
            stops.append(stop_after_attempt(policy.max_attempts))
        if policy.deadline is not None:
            stops.append(stop_after_delay(policy.deadline))

        retrying = Retrying(
            stop=stop_any(*stops),
            wait=wait_fixed(policy.interval),
            retry=retry_if_result(lambda result: not result.ok),
            sleep=self._sleep,
            before_sleep=lambda state: logger.debug(
                "[%s] not ready (attempt %d): %s",
                service, state.attempt_number, state.outcome.result().detail,
            ),
        )

        try:
            result = retrying(attempt)
        except _ProbeCancelled:
            return self._cancelled(service, attempts, "", elapsed())
        except RetryError as e:
            last = e.last_attempt.result()
            if self.token.is_cancelled:
                return self._cancelled(service, attempts, last.detail, elapsed())
            logger.warning("[%s] readiness timed out after %d attempt(s): %s",
                           service, attempts, last.detail)
            return ProbeResult(
                outcome=ProbeOutcome.TIMEOUT,
                attempts=attempts,
                detail=last.detail,
                elapsed=elapsed(),
                error=ReadinessTimeout(service, attempts, last.detail),
            )

        logger.info("[%s] ready after %d attempt(s)", service, attempts)
        return ProbeResult(
            outcome=ProbeOutcome.READY,
            attempts=attempts,
            detail=result.detail,
            elapsed=elapsed(),
        )

    def check(self, service: str, policy: ProbePolicy) -> CheckResult:
        """
        Runs one readiness attempt. Check failures are returned, not raised.
        """
        timeout = policy.attempt_timeout
        try:
            if policy.kind == ProbeKind.RUNNING:
                info = self.runtime.inspect(service)
                if info.running:
                    return CheckResult(True, "running")
                if info.exit_code is not None:
                    return CheckResult(False, f"exited with code {info.exit_code}")
                return CheckResult(False, "not running")

            if policy.kind == ProbeKind.TCP:
                host, port = self._address(service, policy)
                with socket.create_connection((host, port), timeout=timeout):
                    return CheckResult(True, f"connected to {host}:{port}")

            if policy.kind == ProbeKind.HTTP:
                host, port = self._address(service, policy)
                url = f"http://{host}:{port}{policy.path}"
                with urlopen(url, timeout=timeout) as response:
                    if 200 <= response.status < 400:
                        return CheckResult(True, f"GET {url} -> {response.status}")
                    return CheckResult(False, f"GET {url} -> {response.status}")

            if policy.kind == ProbeKind.EXEC:
                result = self.runtime.exec(service, policy.command, timeout)
                if result.exit_code == 0:
                    return CheckResult(True, result.output[:500])
                return CheckResult(
                    False, result.output[:500] or f"Exit code: {result.exit_code}"
                )
        except HTTPError as e:
            return CheckResult(False, f"HTTP {e.code}")
        except (URLError, OSError) as e:
            return CheckResult(False, str(getattr(e, 'reason', e)) or type(e).__name__)

        return CheckResult(False, f"Unsupported probe kind: {policy.kind}")

    def _address(self, service: str, policy: ProbePolicy) -> Tuple[str, int]:
        if policy.host:
            return policy.host, policy.port
        return self.runtime.endpoint(service, policy.port)

    def _stop_on_cancel(self, retry_state) -> bool:
        return self.token.is_cancelled

    def _sleep(self, seconds: float) -> None:
        if self.token.wait(seconds):
            raise _ProbeCancelled()

    def _cancelled(self, service: str, attempts: int, detail: str, elapsed: float) -> ProbeResult:
        logger.info("[%s] readiness probe cancelled", service)
        return ProbeResult(
            outcome=ProbeOutcome.CANCELLED,
            attempts=attempts,
            detail=detail,
            elapsed=elapsed,
            error=Cancelled(self.token.reason or "cancelled"),
        )
