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
Execution of single units and concurrent batches of units against the
builder and runtime collaborators.
"""
import logging
import subprocess
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from typing import List, Optional, Sequence, Union

from ..BUILDERS.image_builder import BuildOptions, Builder
from ..MANAGERS.container_runtime import Runtime
from ..MODELS.execution import Batch, ErrorKind, ExecutionUnit, OperationKind, UnitResult
from ..MODELS.orchestrator_config import OrchestratorConfig
from ..UTILS.timer import UnitTimer
from ..errors import UnitTimeoutError

logger = logging.getLogger(__name__)

TIMEOUT_ERRORS = (UnitTimeoutError, TimeoutError, FuturesTimeoutError, subprocess.TimeoutExpired)


@dataclass(frozen=True)
class ExecutionOptions:
    """
    Per-operation execution flags.

    ``no_cache`` and ``pull`` go to the builder untouched; ``force`` applies
    to stops; ``timeout`` overrides the configured per-unit timeout.
    """

    continue_on_error: bool = False
    no_cache: bool = False
    pull: bool = False
    force: bool = False
    timeout: Optional[float] = None


def _error_output(exc: BaseException) -> str:
    output = getattr(exc, "output", "")
    return output if isinstance(output, str) else ""


class ExecutionEngine:
    """
    Runs units and batches of units.

    A single-unit batch runs inline on the caller's thread. Larger batches
    run on a thread pool sized to the batch and are joined before returning.
    Collaborator errors never escape; they become failed UnitResults.
    """

    def __init__(self, builder: Builder, runtime: Runtime, config: Optional[OrchestratorConfig] = None):
        """
        :param builder: Performs image builds.
        :param runtime: Starts, stops and removes containers.
        :param config: Supplies the per-operation timeouts.
        """
        self.builder = builder
        self.runtime = runtime
        self.config = config or OrchestratorConfig()

    def timeout_for(self, operation: OperationKind, options: ExecutionOptions) -> float:
        if options.timeout is not None:
            return options.timeout
        return {
            OperationKind.BUILD: self.config.build_timeout,
            OperationKind.START: self.config.start_timeout,
            OperationKind.STOP: self.config.stop_timeout,
            OperationKind.CLEANUP: self.config.cleanup_timeout,
        }[operation]

    def _deadline_for(self, operation: OperationKind, options: ExecutionOptions) -> float:
        timeout = self.timeout_for(operation, options)
        if operation == OperationKind.STOP and not options.force:
            # Graceful attempt plus the forced escalation
            return timeout * 2
        return timeout

    def execute(self, unit: ExecutionUnit, options: ExecutionOptions) -> UnitResult:
        """
        Runs one unit and reports a typed result.
        """
        timeout = self.timeout_for(unit.operation, options)
        timer = UnitTimer().start()
        try:
            output = self._dispatch(unit, options, timeout)
        except TIMEOUT_ERRORS as e:
            duration = timer.stop()
            logger.error("%s %s timed out after %.1fs", unit.operation.value, unit.name, duration)
            return UnitResult.failure(
                unit.name, unit.operation, ErrorKind.TIMEOUT,
                str(e) or f"Exceeded {timeout}s", duration=duration, output=_error_output(e),
            )
        except Exception as e:
            duration = timer.stop()
            logger.error("%s %s failed: %s", unit.operation.value, unit.name, e)
            return UnitResult.failure(
                unit.name, unit.operation, ErrorKind.EXECUTION_FAILED,
                str(e) or type(e).__name__, duration=duration, output=_error_output(e),
            )

        duration = timer.stop()
        logger.info("%s %s succeeded in %.1fs", unit.operation.value, unit.name, duration)
        return UnitResult.succeeded(unit.name, unit.operation, duration=duration, output=output or "")

    def _dispatch(self, unit: ExecutionUnit, options: ExecutionOptions, timeout: float) -> str:
        definition = unit.definition
        if unit.operation == OperationKind.BUILD:
            return self.builder.build(
                definition.build_spec,
                BuildOptions(no_cache=options.no_cache, pull=options.pull, timeout=timeout),
            )
        if unit.operation == OperationKind.START:
            return self.runtime.start_service(definition, timeout=timeout)
        if unit.operation == OperationKind.STOP:
            return self._stop(unit, options, timeout)
        if unit.operation == OperationKind.CLEANUP:
            return self.runtime.cleanup_service(definition, timeout=timeout)
        raise ValueError(f"Unsupported operation: {unit.operation}")

    def _stop(self, unit: ExecutionUnit, options: ExecutionOptions, timeout: float) -> str:
        if options.force:
            self.runtime.stop_service(unit.definition, force=True, timeout=timeout)
            return "killed"
        try:
            self.runtime.stop_service(unit.definition, force=False, timeout=timeout)
            return "stopped"
        except TIMEOUT_ERRORS:
            logger.warning("Graceful stop of %s timed out, forcing", unit.name)
            self.runtime.stop_service(unit.definition, force=True, timeout=timeout)
            return "killed after graceful stop timed out"

    def run_batch(self,
                  batch: Union[Batch, Sequence[ExecutionUnit]],
                  options: ExecutionOptions) -> List[UnitResult]:
        """
        Runs every unit of a batch concurrently and waits for all of them.

        A unit still running past its deadline is reported as a timeout; its
        worker is abandoned rather than joined.

        :return: One result per unit, in batch order.
        """
        units = list(batch.units if isinstance(batch, Batch) else batch)
        if not units:
            return []
        if len(units) == 1:
            return [self.execute(units[0], options)]

        executor = ThreadPoolExecutor(max_workers=len(units), thread_name_prefix="devorch-unit")
        try:
            submitted = [
                (unit, time.monotonic(), executor.submit(self.execute, unit, options))
                for unit in units
            ]
            results: List[UnitResult] = []
            for unit, started, future in submitted:
                deadline = started + self._deadline_for(unit.operation, options)
                try:
                    results.append(future.result(timeout=max(0.0, deadline - time.monotonic())))
                except FuturesTimeoutError:
                    future.cancel()
                    elapsed = time.monotonic() - started
                    logger.error("%s %s did not finish within its deadline", unit.operation.value, unit.name)
                    results.append(UnitResult.failure(
                        unit.name, unit.operation, ErrorKind.TIMEOUT,
                        f"Exceeded {self.timeout_for(unit.operation, options)}s", duration=elapsed,
                    ))
            return results
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
