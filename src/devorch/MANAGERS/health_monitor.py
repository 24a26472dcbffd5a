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
Health gating for started services: polls each service's health check until
it passes, the timeout elapses or the operation is cancelled.
"""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from tenacity import Retrying, retry_if_exception_type, retry_if_result, stop_before_delay, wait_fixed

from ..MODELS.service_definition import ServiceDefinition
from .container_runtime import Runtime

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    """Health status of a service."""

    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    NONE = "none"  # No health check configured


@dataclass
class ServiceHealth:
    """Health information for a service."""

    status: HealthStatus = HealthStatus.NONE
    attempts: int = 0
    last_check: Optional[str] = None
    waited: float = 0.0


@dataclass(frozen=True)
class HealthOutcome:
    """Result of waiting for one service to become healthy."""

    name: str
    healthy: bool
    attempts: int = 0
    duration: float = 0.0
    cancelled: bool = False


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class HealthMonitor:
    """
    Waits for services to report healthy and remembers the last known
    health of every service it has seen.
    """

    def __init__(self, runtime: Runtime):
        """
        :param runtime: Runs the actual probes.
        """
        self.runtime = runtime
        self._health: Dict[str, ServiceHealth] = {}
        self._lock = threading.Lock()

    def get_health(self, service_name: str) -> ServiceHealth:
        """
        Returns the last recorded health of a service.

        :param service_name: Name of the service.
        :return: A blank ServiceHealth if the service was never checked.
        """
        with self._lock:
            return self._health.get(service_name, ServiceHealth())

    def get_all_health(self) -> Dict[str, ServiceHealth]:
        """Returns a snapshot of every recorded health."""
        with self._lock:
            return dict(self._health)

    def set_status(self, name: str, status: HealthStatus, attempts: int = 0, waited: float = 0.0) -> None:
        with self._lock:
            self._health[name] = ServiceHealth(
                status=status, attempts=attempts, last_check=_utc_now(), waited=waited,
            )

    def reset_health(self, name: str) -> None:
        """Forgets the recorded health of a service."""
        with self._lock:
            self._health.pop(name, None)

    def probe(self, definition: ServiceDefinition) -> HealthStatus:
        """
        Runs a single probe and records the result.
        """
        if definition.health_check is None:
            self.set_status(definition.name, HealthStatus.NONE)
            return HealthStatus.NONE
        try:
            healthy = self.runtime.run_health_check(definition)
        except Exception as e:
            logger.debug("Probe for %s raised: %s", definition.name, e)
            healthy = False
        status = HealthStatus.HEALTHY if healthy else HealthStatus.UNHEALTHY
        self.set_status(definition.name, status, attempts=1)
        return status

    def wait_until_healthy(
        self,
        definition: ServiceDefinition,
        cancel: Optional[threading.Event] = None,
        max_wait: Optional[float] = None,
    ) -> HealthOutcome:
        """
        Polls a service's health check every ``poll_interval_ms`` until it
        passes or ``timeout_ms`` elapses. At least one probe always runs, and
        no probe is scheduled past the timeout.

        :param definition: The started service.
        :param cancel: Stops polling early when set.
        :param max_wait: Further caps the wait, e.g. by the operation deadline.
        :return: The outcome; services without a health check are healthy at once.
        """
        name = definition.name
        hc = definition.health_check
        if hc is None:
            self.set_status(name, HealthStatus.NONE)
            return HealthOutcome(name=name, healthy=True)

        timeout = hc.timeout if max_wait is None else max(0.0, min(hc.timeout, max_wait))
        cancel = cancel or threading.Event()
        attempts = 0

        def check() -> bool:
            nonlocal attempts
            attempts += 1
            healthy = bool(self.runtime.run_health_check(definition))
            logger.debug("Health probe %d for %s: %s", attempts, name, "ok" if healthy else "failing")
            return healthy

        def cancelled(retry_state) -> bool:
            return cancel.is_set()

        self.set_status(name, HealthStatus.STARTING)
        started = time.monotonic()
        retrying = Retrying(
            stop=stop_before_delay(timeout) | cancelled,
            wait=wait_fixed(hc.poll_interval),
            retry=retry_if_result(lambda healthy: not healthy) | retry_if_exception_type(Exception),
            sleep=cancel.wait,
            retry_error_callback=lambda retry_state: False,
        )
        healthy = retrying(check)
        waited = time.monotonic() - started

        if healthy:
            logger.info("%s is healthy after %d probe(s)", name, attempts)
            self.set_status(name, HealthStatus.HEALTHY, attempts, waited)
        elif cancel.is_set():
            logger.warning("Stopped waiting for %s: operation cancelled", name)
            self.set_status(name, HealthStatus.STARTING, attempts, waited)
        else:
            logger.error("%s did not become healthy within %.1fs", name, timeout)
            self.set_status(name, HealthStatus.UNHEALTHY, attempts, waited)

        return HealthOutcome(
            name=name, healthy=healthy, attempts=attempts, duration=waited,
            cancelled=not healthy and cancel.is_set(),
        )

    def wait_for_batch(
        self,
        definitions: List[ServiceDefinition],
        cancel: Optional[threading.Event] = None,
        max_wait: Optional[float] = None,
    ) -> Dict[str, HealthOutcome]:
        """
        Waits for several services at once; the batch takes as long as its
        slowest member.
        """
        if len(definitions) <= 1:
            return {d.name: self.wait_until_healthy(d, cancel, max_wait) for d in definitions}

        with ThreadPoolExecutor(max_workers=len(definitions), thread_name_prefix="devorch-health") as pool:
            futures = {
                d.name: pool.submit(self.wait_until_healthy, d, cancel, max_wait)
                for d in definitions
            }
            return {name: future.result() for name, future in futures.items()}
