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
Unit tests for the execution engine.
"""
import time

from devorch.MODELS.execution import Batch, ErrorKind, ExecutionUnit, OperationKind, UnitStatus
from devorch.MODELS.orchestrator_config import OrchestratorConfig
from devorch.RUNNERS.execution_engine import ExecutionEngine, ExecutionOptions


def units(make_service, op, *names):
    return [ExecutionUnit(definition=make_service(n), operation=op) for n in names]


class TestExecute:
    """Single units."""

    def test_build_success(self, builder, runtime, make_service):
        engine = ExecutionEngine(builder, runtime)
        [unit] = units(make_service, OperationKind.BUILD, "api")
        result = engine.execute(unit, ExecutionOptions(no_cache=True, pull=True))

        assert result.success
        assert result.output == "built api"
        assert result.duration >= 0
        assert builder.options[0].no_cache and builder.options[0].pull
        assert builder.options[0].timeout == OrchestratorConfig().build_timeout

    def test_failure_is_execution_failed(self, builder, runtime, make_service):
        builder.failing.add("api")
        [unit] = units(make_service, OperationKind.BUILD, "api")
        result = ExecutionEngine(builder, runtime).execute(unit, ExecutionOptions())

        assert result.status == UnitStatus.FAILED
        assert result.error_kind == ErrorKind.EXECUTION_FAILED
        assert "build of api failed" in result.error
        assert result.output == "step 3/7: exit 1"

    def test_collaborator_timeout_is_distinct(self, builder, runtime, make_service):
        def hang(definition, timeout=None):
            raise TimeoutError("no answer")

        runtime.start_service = hang
        [unit] = units(make_service, OperationKind.START, "api")
        result = ExecutionEngine(builder, runtime).execute(unit, ExecutionOptions())
        assert result.error_kind == ErrorKind.TIMEOUT

    def test_stop_escalates_to_kill(self, builder, runtime, make_service):
        runtime.hanging_stop.add("db")
        [unit] = units(make_service, OperationKind.STOP, "db")
        result = ExecutionEngine(builder, runtime).execute(unit, ExecutionOptions())

        assert result.success
        assert runtime.calls == [("stop", "db"), ("kill", "db")]
        assert "killed" in result.output

    def test_forced_stop_kills_directly(self, builder, runtime, make_service):
        [unit] = units(make_service, OperationKind.STOP, "db")
        ExecutionEngine(builder, runtime).execute(unit, ExecutionOptions(force=True))
        assert runtime.calls == [("kill", "db")]

    def test_cleanup(self, builder, runtime, make_service):
        [unit] = units(make_service, OperationKind.CLEANUP, "db")
        result = ExecutionEngine(builder, runtime).execute(unit, ExecutionOptions())
        assert result.output == "removed db"


class TestRunBatch:
    """Concurrent batches."""

    def test_empty_batch(self, builder, runtime):
        assert ExecutionEngine(builder, runtime).run_batch([], ExecutionOptions()) == []

    def test_units_run_concurrently(self, builder, runtime, make_service):
        for name in ("a", "b", "c"):
            runtime.delays[name] = 0.2
        batch = Batch(index=0, units=units(make_service, OperationKind.START, "a", "b", "c"))

        started = time.monotonic()
        results = ExecutionEngine(builder, runtime).run_batch(batch, ExecutionOptions())
        elapsed = time.monotonic() - started

        assert [r.name for r in results] == ["a", "b", "c"]
        assert all(r.success for r in results)
        assert runtime.max_active == 3
        assert elapsed < 0.55

    def test_siblings_finish_after_failure(self, builder, runtime, make_service):
        builder.failing.add("a")
        builder.delays["b"] = 0.1
        results = ExecutionEngine(builder, runtime).run_batch(
            units(make_service, OperationKind.BUILD, "a", "b"), ExecutionOptions()
        )
        assert [r.status for r in results] == [UnitStatus.FAILED, UnitStatus.SUCCEEDED]

    def test_deadline_reports_timeout(self, builder, runtime, make_service):
        runtime.delays["slow"] = 1.0
        results = ExecutionEngine(builder, runtime).run_batch(
            units(make_service, OperationKind.START, "fast", "slow"),
            ExecutionOptions(timeout=0.2),
        )
        by_name = {r.name: r for r in results}
        assert by_name["fast"].success
        assert by_name["slow"].error_kind == ErrorKind.TIMEOUT
