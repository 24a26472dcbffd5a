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
Orchestration of multi-phase operations over a service catalog: build, start
with health gating, stop in reverse order, restart, clean and status.
"""
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set, Union

from ..BUILDERS.image_builder import Builder
from ..MODELS.execution import (
    Batch,
    ErrorKind,
    ExecutionUnit,
    OperationKind,
    RunReport,
    RunState,
    UnitResult,
    WorkloadClass,
)
from ..MODELS.orchestrator_config import OrchestratorConfig, Strategy
from ..MODELS.service_catalog import ServiceCatalog
from ..RUNNERS.batch_scheduler import BatchScheduler
from ..RUNNERS.concurrency_advisor import ConcurrencyAdvisor
from ..RUNNERS.dependency_resolver import GraphResolver
from ..RUNNERS.execution_engine import ExecutionEngine, ExecutionOptions
from ..UTILS.timer import UnitTimer
from ..errors import CycleError
from .container_runtime import Runtime
from .health_monitor import HealthMonitor, HealthStatus

logger = logging.getLogger(__name__)


class ServiceState(str, Enum):
    """Last known lifecycle state of a service."""

    UNKNOWN = "unknown"
    BUILT = "built"
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"
    REMOVED = "removed"


@dataclass(frozen=True)
class ServiceStatus:
    """State and health of a service as last observed."""

    state: ServiceState
    health: HealthStatus


# Operations that tolerate failures unless told otherwise
_BEST_EFFORT = {OperationKind.STOP, OperationKind.CLEANUP}


class LifecycleManager:
    """
    Drives build, start, stop, restart and clean operations over a catalog.

    Each operation resolves the dependency order, sizes concurrency once,
    partitions the order into batches and runs the batches one after another.
    The manager alone decides whether a failure aborts the run; results are
    written into the RunReport only after a batch has been joined.
    """

    def __init__(
        self,
        catalog: ServiceCatalog,
        builder: Builder,
        runtime: Runtime,
        config: Optional[OrchestratorConfig] = None,
        advisor: Optional[ConcurrencyAdvisor] = None,
        resolver: Optional[GraphResolver] = None,
        scheduler: Optional[BatchScheduler] = None,
        engine: Optional[ExecutionEngine] = None,
        health_monitor: Optional[HealthMonitor] = None,
    ):
        """
        Initializes the manager.

        :param catalog: Definitions of all services.
        :param builder: Builds images.
        :param runtime: Runs containers and health probes.
        :param config: Timeouts, throttling and strategy defaults.
        """
        self.catalog = catalog
        self.config = config or OrchestratorConfig()
        self.advisor = advisor or ConcurrencyAdvisor(self.config)
        self.resolver = resolver or GraphResolver()
        self.scheduler = scheduler or BatchScheduler()
        self.engine = engine or ExecutionEngine(builder, runtime, self.config)
        self.health = health_monitor or HealthMonitor(runtime)
        self._states: Dict[str, ServiceState] = {}

    # Public operations

    def build(self,
              names: Optional[Iterable[str]] = None,
              strategy: Union[Strategy, str, None] = None,
              max_concurrency: Optional[int] = None,
              continue_on_error: Optional[bool] = None,
              no_cache: bool = False,
              pull: bool = False,
              cancel: Optional[threading.Event] = None) -> RunReport:
        """
        Builds the selected services and their dependencies.
        """
        return self._run(OperationKind.BUILD, "build", names, strategy, max_concurrency,
                         continue_on_error, cancel, no_cache=no_cache, pull=pull)

    def start(self,
              names: Optional[Iterable[str]] = None,
              strategy: Union[Strategy, str, None] = None,
              max_concurrency: Optional[int] = None,
              continue_on_error: Optional[bool] = None,
              cancel: Optional[threading.Event] = None) -> RunReport:
        """
        Starts the selected services and their dependencies. A batch closes
        only once every started member is healthy.
        """
        return self._run(OperationKind.START, "start", names, strategy, max_concurrency,
                         continue_on_error, cancel)

    def stop(self,
             names: Optional[Iterable[str]] = None,
             force: bool = False,
             strategy: Union[Strategy, str, None] = None,
             max_concurrency: Optional[int] = None,
             continue_on_error: Optional[bool] = None,
             cancel: Optional[threading.Event] = None) -> RunReport:
        """
        Stops the selected services, dependents before dependencies.
        """
        return self._run(OperationKind.STOP, "stop", names, strategy, max_concurrency,
                         continue_on_error, cancel, force=force)

    def clean(self,
              names: Optional[Iterable[str]] = None,
              strategy: Union[Strategy, str, None] = None,
              max_concurrency: Optional[int] = None,
              continue_on_error: Optional[bool] = None,
              cancel: Optional[threading.Event] = None) -> RunReport:
        """
        Removes containers and built images, dependents first.
        """
        return self._run(OperationKind.CLEANUP, "clean", names, strategy, max_concurrency,
                         continue_on_error, cancel)

    def restart(self,
                names: Optional[Iterable[str]] = None,
                strategy: Union[Strategy, str, None] = None,
                max_concurrency: Optional[int] = None,
                continue_on_error: Optional[bool] = None,
                cancel: Optional[threading.Event] = None) -> RunReport:
        """
        Stops then starts the selected services, pausing between the phases.

        The returned report carries the start results; the stop phase is in
        ``phases``.
        """
        names = list(names) if names is not None else None
        cancel = cancel or threading.Event()
        timer = UnitTimer().start()

        stop_report = self.stop(names, strategy=strategy, max_concurrency=max_concurrency, cancel=cancel)
        if stop_report.aborted:
            report = RunReport(operation="restart", strategy=stop_report.strategy, phases=[stop_report])
            report.state = RunState.ABORTED
            report.abort_reason = f"stop phase aborted: {stop_report.abort_reason}"
            report.duration = timer.stop()
            return report

        if self.config.restart_settle_seconds:
            logger.info("Waiting %.1fs before starting again", self.config.restart_settle_seconds)
            cancel.wait(self.config.restart_settle_seconds)

        start_report = self.start(names, strategy=strategy, max_concurrency=max_concurrency,
                                  continue_on_error=continue_on_error, cancel=cancel)
        return start_report.model_copy(update={
            "operation": "restart",
            "phases": [stop_report],
            "duration": timer.stop(),
        })

    def status(self, probe: bool = False) -> Dict[str, ServiceStatus]:
        """
        Returns the last known state and health of every service.

        :param probe: Re-run the health check of services that are running or
                      whose state is unknown, e.g. started by another process.
        """
        statuses = {}
        for name in self.catalog.names():
            state = self._states.get(name, ServiceState.UNKNOWN)
            if probe and state in (ServiceState.RUNNING, ServiceState.UNKNOWN):
                self.health.probe(self.catalog.get(name))
            statuses[name] = ServiceStatus(state=state, health=self.health.get_health(name).status)
        return statuses

    def plan(self,
             operation: Union[OperationKind, str],
             names: Optional[Iterable[str]] = None,
             strategy: Union[Strategy, str, None] = None,
             max_concurrency: Optional[int] = None) -> List[List[str]]:
        """
        Computes the batches an operation would run, without running them.

        :raises CycleError: If the selection contains a dependency cycle.
        """
        operation = OperationKind(operation)
        strategy = Strategy(strategy or self.config.default_strategy)
        order = self.resolver.resolve_order(self.catalog, self._select(operation, names))
        order, prerequisites = self._orient(operation, order)
        limit = max_concurrency or self.advisor.advise(WorkloadClass.for_operation(operation)).max_concurrency
        return self.scheduler.schedule(order, prerequisites, strategy, limit)

    # Internals

    def _select(self, operation: OperationKind, names: Optional[Iterable[str]]) -> List[str]:
        if names is None:
            return self.catalog.names()
        names = list(names)
        if operation in (OperationKind.BUILD, OperationKind.START):
            return sorted(self.catalog.with_dependencies(names))
        return self.catalog.validate_names(names)

    def _orient(self, operation: OperationKind, order: List[str]):
        """Returns the order and prerequisite map for the operation's direction."""
        if operation in (OperationKind.STOP, OperationKind.CLEANUP):
            return list(reversed(order)), self.catalog.dependents_map(order)
        return order, self.catalog.dependency_map(order)

    def _run(self,
             operation: OperationKind,
             label: str,
             names: Optional[Iterable[str]],
             strategy: Union[Strategy, str, None],
             max_concurrency: Optional[int],
             continue_on_error: Optional[bool],
             cancel: Optional[threading.Event],
             no_cache: bool = False,
             pull: bool = False,
             force: bool = False) -> RunReport:
        strategy = Strategy(strategy or self.config.default_strategy)
        if continue_on_error is None:
            continue_on_error = operation in _BEST_EFFORT
        options = ExecutionOptions(continue_on_error=continue_on_error, no_cache=no_cache,
                                   pull=pull, force=force)
        cancel = cancel or threading.Event()
        timer = UnitTimer().start()
        deadline = None
        if self.config.operation_timeout is not None:
            deadline = time.monotonic() + self.config.operation_timeout

        report = RunReport(operation=label, strategy=strategy)
        selected = self._select(operation, names)
        report.essential_services = [n for n in selected if self.catalog.get(n).essential]

        # Resolving
        report.state = RunState.RESOLVING
        try:
            order = self.resolver.resolve_order(self.catalog, selected)
        except CycleError as e:
            logger.error("Cannot %s: %s", label, e)
            for name in selected:
                report.record(UnitResult.skip(name, operation, str(e)))
            return self._abort(report, str(e), timer)

        # Scheduling
        report.state = RunState.SCHEDULING
        order, prerequisites = self._orient(operation, order)
        if max_concurrency:
            limit = max(1, int(max_concurrency))
        else:
            advice = self.advisor.advise(WorkloadClass.for_operation(operation))
            limit = advice.max_concurrency
            report.memory_pressure_factor = advice.memory_pressure_factor
            report.advice_fallback = advice.fallback
        report.max_concurrency = 1 if strategy == Strategy.SEQUENTIAL else limit

        waves = self.scheduler.schedule(order, prerequisites, strategy, limit)
        batches = [
            Batch(index=i, units=[ExecutionUnit(definition=self.catalog.get(n), operation=operation) for n in wave])
            for i, wave in enumerate(waves)
        ]
        report.batches = waves
        logger.info("%s: %d service(s) in %d batch(es), strategy %s, concurrency %d",
                    label.capitalize(), len(order), len(batches), strategy.value, report.max_concurrency)

        # Executing
        report.state = RunState.EXECUTING
        unavailable: Set[str] = set()
        gate_dependents = operation in (OperationKind.BUILD, OperationKind.START)

        for batch in batches:
            reason = self._interruption(cancel, deadline)
            if reason:
                logger.warning("Not scheduling batch %d: %s", batch.index + 1, reason)
                return self._abort(report, reason, timer, batches[batch.index:])

            runnable: List[ExecutionUnit] = []
            for unit in batch.units:
                blocked_by = sorted(prerequisites.get(unit.name, set()) & unavailable) if gate_dependents else []
                if blocked_by:
                    report.record(UnitResult.skip(unit.name, operation, f"dependency {blocked_by[0]} unavailable"))
                    # A skipped unit blocks its dependents even when non-essential
                    unavailable.add(unit.name)
                else:
                    runnable.append(unit)

            logger.info("Batch %d/%d: %s", batch.index + 1, len(batches), ", ".join(batch.names))
            results = self.engine.run_batch(runnable, options)
            if operation == OperationKind.START:
                results = self._gate_health(results, cancel, deadline)

            # Join point: the whole batch has finished
            essential_failures = []
            for result in results:
                report.record(result)
                self._update_state(result)
                if result.failed and self.catalog.get(result.name).essential:
                    essential_failures.append(result.name)
                    unavailable.add(result.name)

            if essential_failures and not options.continue_on_error:
                reason = f"essential service(s) failed: {', '.join(essential_failures)}"
                logger.error("Aborting %s after batch %d: %s", label, batch.index + 1, reason)
                return self._abort(report, reason, timer, batches[batch.index + 1:])

        report.state = RunState.COMPLETED
        report.duration = timer.stop()
        logger.info("%s completed: %d succeeded, %d failed, %d skipped in %.1fs",
                    label.capitalize(), report.succeeded, report.failed, report.skipped, report.duration)
        return report

    def _interruption(self, cancel: threading.Event, deadline: Optional[float]) -> Optional[str]:
        if cancel.is_set():
            return "cancelled"
        if deadline is not None and time.monotonic() >= deadline:
            return f"operation timed out after {self.config.operation_timeout}s"
        return None

    def _abort(self, report: RunReport, reason: str, timer: UnitTimer,
               pending: Optional[List[Batch]] = None) -> RunReport:
        for batch in pending or []:
            for unit in batch.units:
                if unit.name not in report.results:
                    report.record(UnitResult.skip(unit.name, unit.operation, f"not run: {reason}"))
        report.state = RunState.ABORTED
        report.abort_reason = reason
        report.duration = timer.stop()
        return report

    def _gate_health(self, results: List[UnitResult], cancel: threading.Event,
                     deadline: Optional[float]) -> List[UnitResult]:
        started = [self.catalog.get(r.name) for r in results if r.success]
        max_wait = None if deadline is None else max(0.0, deadline - time.monotonic())
        outcomes = self.health.wait_for_batch(started, cancel, max_wait)

        gated = []
        for result in results:
            outcome = outcomes.get(result.name)
            if outcome is None or outcome.healthy or outcome.cancelled:
                gated.append(result)
                continue
            hc = self.catalog.get(result.name).health_check
            gated.append(UnitResult.failure(
                result.name, result.operation, ErrorKind.HEALTH_CHECK_TIMED_OUT,
                f"not healthy within {hc.timeout:.1f}s ({outcome.attempts} probe(s))",
                duration=result.duration + outcome.duration,
                output=result.output,
            ))
        return gated

    def _update_state(self, result: UnitResult) -> None:
        name = result.name
        current = self._states.get(name, ServiceState.UNKNOWN)
        if result.operation == OperationKind.BUILD:
            if current != ServiceState.RUNNING:
                self._states[name] = ServiceState.BUILT if result.success else ServiceState.FAILED
        elif result.operation == OperationKind.START:
            if result.success or result.error_kind == ErrorKind.HEALTH_CHECK_TIMED_OUT:
                self._states[name] = ServiceState.RUNNING
            else:
                self._states[name] = ServiceState.FAILED
                self.health.set_status(name, HealthStatus.UNHEALTHY)
        elif result.operation == OperationKind.STOP:
            if result.success:
                self._states[name] = ServiceState.STOPPED
                self.health.reset_health(name)
        elif result.operation == OperationKind.CLEANUP:
            if result.success:
                self._states[name] = ServiceState.REMOVED
                self.health.reset_health(name)
