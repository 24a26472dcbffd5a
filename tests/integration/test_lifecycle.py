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
End-to-end tests of LifecycleManager operations against in-memory collaborators.
"""
import threading

import pytest

from devorch.MANAGERS.health_monitor import HealthStatus
from devorch.MANAGERS.lifecycle_manager import ServiceState, ServiceStatus
from devorch.MODELS.execution import ErrorKind, RunState, UnitStatus
from devorch.errors import CatalogError

STACK = {
    "db": [],
    "cache": [],
    "api": ["db", "cache"],
    "worker": ["db"],
    "web": ["api"],
}


class TestBuild:
    """Build operation."""

    def test_builds_every_service_in_dependency_order(self, make_catalog, make_manager, builder):
        report = make_manager(make_catalog(STACK)).build()

        assert report.state == RunState.COMPLETED
        assert report.succeeded == 5
        assert report.exit_code == 0
        built = builder.names("build")
        for name, deps in STACK.items():
            for dep in deps:
                assert built.index(dep) < built.index(name)
        assert report.batches[0] == ["cache", "db"]

    def test_selection_includes_dependencies(self, make_catalog, make_manager, builder):
        report = make_manager(make_catalog(STACK)).build(["web"])
        assert set(report.results) == {"web", "api", "db", "cache"}
        assert "worker" not in builder.names("build")

    def test_flags_reach_builder(self, make_catalog, make_manager, builder):
        make_manager(make_catalog({"db": []})).build(no_cache=True, pull=True)
        assert builder.options[0].no_cache and builder.options[0].pull

    def test_essential_failure_aborts_after_batch(self, make_catalog, make_manager, builder):
        builder.failing.add("db")
        report = make_manager(make_catalog(STACK)).build()

        assert report.state == RunState.ABORTED
        assert "db" in report.abort_reason
        assert report.results["db"].error_kind == ErrorKind.EXECUTION_FAILED
        # The sibling in the same batch still ran to completion
        assert report.results["cache"].success
        for name in ("api", "worker", "web"):
            assert report.results[name].status == UnitStatus.SKIPPED
        assert set(builder.names("build")) == {"db", "cache"}
        assert report.exit_code == 1

    def test_non_essential_failure_does_not_abort(self, make_catalog, make_manager, make_service, builder):
        catalog = make_catalog(STACK, make_service("cache", essential=False))
        builder.failing.add("cache")
        report = make_manager(catalog).build()

        assert report.state == RunState.COMPLETED
        assert report.failed == 1
        assert report.results["web"].success
        assert report.exit_code == 0

    def test_continue_on_error_skips_only_dependents(self, make_catalog, make_manager, builder):
        builder.failing.add("cache")
        report = make_manager(make_catalog(STACK)).build(continue_on_error=True)

        assert report.state == RunState.COMPLETED
        assert report.results["worker"].success
        assert report.results["api"].skipped
        assert report.results["web"].skipped
        assert "cache" in report.results["api"].error
        assert report.exit_code == 1

    def test_cycle_aborts_without_running(self, make_catalog, make_manager, builder):
        report = make_manager(make_catalog({"a": ["b"], "b": ["c"], "c": ["a"]})).build()

        assert report.state == RunState.ABORTED
        assert "a -> b -> c -> a" in report.abort_reason
        assert report.batches == []
        assert report.skipped == 3
        assert builder.calls == []
        assert report.exit_code == 1

    def test_unknown_service(self, make_catalog, make_manager):
        with pytest.raises(CatalogError):
            make_manager(make_catalog(STACK)).build(["nope"])

    def test_concurrency_bounded_by_advice(self, make_catalog, make_manager, builder):
        catalog = make_catalog({f"svc{i}": [] for i in range(8)})
        for i in range(8):
            builder.delays[f"svc{i}"] = 0.05
        # 4 cores, builds get half of them
        report = make_manager(catalog, cpu_count=4).build()

        assert report.max_concurrency == 2
        assert builder.max_active <= 2
        assert all(len(b) <= 2 for b in report.batches)

    def test_memory_pressure_recorded(self, make_catalog, make_manager):
        report = make_manager(make_catalog({"db": []}), cpu_count=8, memory_percent=95.0).build()
        assert report.memory_pressure_factor == 0.7
        assert report.max_concurrency == 2  # floor(floor(8 * 0.5) * 0.7)

    def test_sequential_strategy(self, make_catalog, make_manager, builder):
        report = make_manager(make_catalog(STACK)).build(strategy="sequential")
        assert report.max_concurrency == 1
        assert all(len(b) == 1 for b in report.batches)
        assert builder.max_active == 1


class TestStart:
    """Start operation with health gating."""

    def test_waits_for_health_before_next_batch(self, make_catalog, make_manager, make_service, runtime):
        catalog = make_catalog({"api": ["db"]}, make_service("db", health=True))
        runtime.healthy_after["db"] = 3
        report = make_manager(catalog).start()

        assert report.state == RunState.COMPLETED
        assert runtime.probes["db"] == 3
        assert runtime.names("start") == ["db", "api"]

    def test_unhealthy_essential_blocks_next_batch(self, make_catalog, make_manager, make_service, runtime):
        catalog = make_catalog({"api": ["db"]}, make_service("db", health=True, timeout_ms=100))
        runtime.unhealthy.add("db")
        manager = make_manager(catalog)
        report = manager.start()

        assert report.state == RunState.ABORTED
        assert report.results["db"].error_kind == ErrorKind.HEALTH_CHECK_TIMED_OUT
        assert report.results["api"].skipped
        assert runtime.names("start") == ["db"]
        assert manager.status()["db"].health == HealthStatus.UNHEALTHY

    def test_unhealthy_non_essential_does_not_block(self, make_catalog, make_manager, make_service, runtime):
        catalog = make_catalog(
            {"api": ["metrics"]},
            make_service("metrics", health=True, timeout_ms=100, essential=False),
        )
        runtime.unhealthy.add("metrics")
        report = make_manager(catalog).start()

        assert report.state == RunState.COMPLETED
        assert report.results["metrics"].error_kind == ErrorKind.HEALTH_CHECK_TIMED_OUT
        assert report.results["api"].success
        assert report.exit_code == 0

    def test_skipped_non_essential_blocks_its_dependents(self, make_catalog, make_manager, make_service, runtime):
        catalog = make_catalog(
            {"db": [], "app": ["proxy"]},
            make_service("proxy", deps=["db"], essential=False),
        )
        runtime.failing_start.add("db")
        report = make_manager(catalog).start(continue_on_error=True, strategy="sequential")

        assert report.results["proxy"].skipped
        assert report.results["app"].skipped
        assert "proxy" in report.results["app"].error
        assert runtime.names("start") == ["db"]

    def test_start_failure_marks_failed(self, make_catalog, make_manager, runtime):
        runtime.failing_start.add("db")
        manager = make_manager(make_catalog({"db": []}))
        manager.start()
        assert manager.status()["db"].state == ServiceState.FAILED

    def test_cancel_skips_remaining_batches(self, make_catalog, make_manager, runtime):
        cancel = threading.Event()
        runtime.delays["db"] = 0.2
        threading.Timer(0.05, cancel.set).start()
        report = make_manager(make_catalog({"db": [], "api": ["db"], "web": ["api"]})).start(cancel=cancel)

        assert report.state == RunState.ABORTED
        assert report.abort_reason == "cancelled"
        # The in-flight unit finished; nothing after it ran
        assert report.results["db"].success
        assert report.results["api"].skipped
        assert report.results["web"].skipped

    def test_operation_timeout(self, make_catalog, make_manager, runtime):
        runtime.delays["db"] = 0.2
        report = make_manager(make_catalog({"db": [], "api": ["db"]}), operation_timeout=0.1).start()
        assert report.state == RunState.ABORTED
        assert "timed out" in report.abort_reason
        assert report.results["api"].skipped


class TestStopAndClean:
    """Stop and clean run dependents first."""

    def test_stop_reverses_order(self, make_catalog, make_manager, runtime):
        report = make_manager(make_catalog(STACK)).stop()
        stopped = runtime.names("stop")
        for name, deps in STACK.items():
            for dep in deps:
                assert stopped.index(name) < stopped.index(dep)
        assert report.exit_code == 0

    def test_stop_selection_is_exact(self, make_catalog, make_manager, runtime):
        make_manager(make_catalog(STACK)).stop(["web"])
        assert runtime.names("stop") == ["web"]

    def test_stop_escalates_and_continues(self, make_catalog, make_manager, runtime):
        runtime.hanging_stop.add("api")
        report = make_manager(make_catalog(STACK)).stop()
        assert report.succeeded == 5
        assert ("kill", "api") in runtime.calls

    def test_force_stop(self, make_catalog, make_manager, runtime):
        make_manager(make_catalog({"db": []})).stop(force=True)
        assert runtime.calls == [("kill", "db")]

    def test_clean(self, make_catalog, make_manager, runtime):
        manager = make_manager(make_catalog(STACK))
        report = manager.clean()
        cleaned = runtime.names("cleanup")
        assert cleaned.index("web") < cleaned.index("api") < cleaned.index("db")
        assert report.operation == "clean"
        assert all(s.state == ServiceState.REMOVED for s in manager.status().values())


class TestRestartAndStatus:
    """Restart combines both phases; status reflects the last results."""

    def test_restart(self, make_catalog, make_manager, runtime):
        report = make_manager(make_catalog({"db": [], "api": ["db"]})).restart()

        assert report.operation == "restart"
        assert len(report.phases) == 1
        assert report.phases[0].operation == "stop"
        assert runtime.calls == [("stop", "api"), ("stop", "db"), ("start", "db"), ("start", "api")]
        assert report.exit_code == 0

    def test_restart_reports_start_failure(self, make_catalog, make_manager, runtime):
        runtime.failing_start.add("db")
        report = make_manager(make_catalog({"db": []})).restart()
        assert report.exit_code == 1
        assert report.essential_failures == ["db"]

    def test_status_tracks_lifecycle(self, make_catalog, make_manager, make_service):
        catalog = make_catalog({"api": ["db"]}, make_service("db", health=True))
        manager = make_manager(catalog)
        assert manager.status()["db"].state == ServiceState.UNKNOWN

        manager.build()
        assert manager.status()["api"].state == ServiceState.BUILT

        manager.start()
        status = manager.status()
        assert status["db"] == ServiceStatus(ServiceState.RUNNING, HealthStatus.HEALTHY)
        assert status["api"].health == HealthStatus.NONE

        manager.stop(["api"])
        assert manager.status()["api"].state == ServiceState.STOPPED
        assert manager.status()["db"].state == ServiceState.RUNNING

    def test_status_probe(self, make_catalog, make_manager, make_service, runtime):
        manager = make_manager(make_catalog({}, make_service("db", health=True)))
        assert manager.status(probe=True)["db"].health == HealthStatus.HEALTHY
        assert runtime.probes["db"] == 1


def test_plan_matches_run(make_catalog, make_manager):
    manager = make_manager(make_catalog(STACK))
    planned = manager.plan("start", max_concurrency=2)
    report = manager.start(max_concurrency=2)
    assert planned == report.batches
    assert manager.plan("stop")[0] == ["worker", "web"]


def test_report_serializes(make_catalog, make_manager, builder):
    builder.failing.add("db")
    data = make_manager(make_catalog({"db": []})).build().model_dump(mode="json")
    assert data["results"]["db"]["status"] == "failed"
    assert data["results"]["db"]["error_kind"] == "execution_failed"
    assert data["exit_code"] == 1
    assert data["strategy"] == "optimized"
