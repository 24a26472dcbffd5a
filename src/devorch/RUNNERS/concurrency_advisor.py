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
Host resource inspection to size how many units may run at once.
"""
import logging
import math
from dataclasses import dataclass
from typing import Callable, Optional

import psutil

from ..MODELS.execution import WorkloadClass
from ..MODELS.orchestrator_config import OrchestratorConfig
from ..errors import ResourceAdviceUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceSnapshot:
    """Host metrics read once per operation."""

    cpu_count: int
    memory_percent: float


@dataclass(frozen=True)
class ConcurrencyAdvice:
    """Advised parallelism for one workload class."""

    max_concurrency: int
    memory_pressure_factor: float = 1.0
    cpu_count: Optional[int] = None
    memory_percent: Optional[float] = None
    fallback: bool = False
    reason: str = ""


class ConcurrencyAdvisor:
    """
    Derives a safe parallelism limit from CPU count and memory pressure.

    Builds get a conservative fraction of the cores, cleanup may use all of
    them. Above the memory threshold the advice is scaled down by the
    configured factor. The advice is never below 1.
    """

    def __init__(
        self,
        config: Optional[OrchestratorConfig] = None,
        cpu_count: Optional[Callable[[], Optional[int]]] = None,
        memory_percent: Optional[Callable[[], float]] = None,
    ):
        """
        :param config: Orchestrator configuration with throttle settings.
        :param cpu_count: Probe for logical cores, defaults to psutil.
        :param memory_percent: Probe for memory utilization, defaults to psutil.
        """
        self.config = config or OrchestratorConfig()
        self._cpu_count = cpu_count or (lambda: psutil.cpu_count(logical=True))
        self._memory_percent = memory_percent or (lambda: psutil.virtual_memory().percent)

    def snapshot(self) -> ResourceSnapshot:
        """
        Reads host metrics.

        :raises ResourceAdviceUnavailable: If metrics cannot be read.
        """
        try:
            cores = self._cpu_count()
            memory = self._memory_percent()
        except (OSError, RuntimeError, AttributeError, psutil.Error) as e:
            raise ResourceAdviceUnavailable(f"Cannot read host metrics: {e}") from e

        if not cores or cores < 1:
            raise ResourceAdviceUnavailable("CPU count is unavailable")
        if memory is None or not 0 <= memory <= 100:
            raise ResourceAdviceUnavailable(f"Invalid memory utilization: {memory}")
        return ResourceSnapshot(cpu_count=int(cores), memory_percent=float(memory))

    def _core_fraction(self, workload: WorkloadClass) -> float:
        if workload == WorkloadClass.BUILD:
            return self.config.build_core_fraction
        if workload == WorkloadClass.START:
            return self.config.start_core_fraction
        return self.config.cleanup_core_fraction

    def advise(self, workload: WorkloadClass) -> ConcurrencyAdvice:
        """
        Returns the advised concurrency for a workload class.

        Falls back to the configured static default when metrics are
        unavailable; this never raises.
        """
        try:
            snap = self.snapshot()
        except ResourceAdviceUnavailable as e:
            logger.warning("%s; using fallback concurrency %d", e, self.config.fallback_concurrency)
            return ConcurrencyAdvice(
                max_concurrency=self.config.fallback_concurrency,
                fallback=True,
                reason=str(e),
            )

        base = max(1, math.floor(snap.cpu_count * self._core_fraction(workload)))
        factor = 1.0
        reason = f"{snap.cpu_count} cores, {snap.memory_percent:.0f}% memory used"

        if snap.memory_percent > self.config.memory_threshold_percent:
            factor = self.config.memory_pressure_factor
            base = max(1, math.floor(base * factor))
            reason += f" (above {self.config.memory_threshold_percent:.0f}% threshold, scaled by {factor})"
            logger.warning("Memory pressure detected: %s", reason)

        if self.config.max_concurrency_cap is not None:
            base = min(base, self.config.max_concurrency_cap)

        logger.debug("Advised concurrency for %s: %d (%s)", workload.value, base, reason)
        return ConcurrencyAdvice(
            max_concurrency=base,
            memory_pressure_factor=factor,
            cpu_count=snap.cpu_count,
            memory_percent=snap.memory_percent,
            reason=reason,
        )
