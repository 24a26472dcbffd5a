"""
Shared fixtures: in-memory builder and runtime collaborators and helpers to
assemble catalogs and managers without Docker.
"""
import threading
import time

import pytest

from devorch.MANAGERS.lifecycle_manager import LifecycleManager
from devorch.MODELS.orchestrator_config import OrchestratorConfig
from devorch.MODELS.service_catalog import ServiceCatalog
from devorch.MODELS.service_definition import BuildSpec, HealthCheckSpec, ServiceDefinition
from devorch.RUNNERS.concurrency_advisor import ConcurrencyAdvisor
from devorch.errors import CollaboratorError, UnitTimeoutError


class _Recorder:
    """Records calls and tracks how many ran at the same time."""

    def __init__(self):
        self.calls = []
        self.active = 0
        self.max_active = 0
        self.delays = {}
        self._lock = threading.Lock()

    def _enter(self, op, name):
        with self._lock:
            self.calls.append((op, name))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        delay = self.delays.get(name)
        if delay:
            time.sleep(delay)

    def _leave(self):
        with self._lock:
            self.active -= 1

    def names(self, op):
        return [name for kind, name in self.calls if kind == op]


class FakeBuilder(_Recorder):
    """Builds by name: the image of every test service equals its name."""

    def __init__(self):
        super().__init__()
        self.failing = set()
        self.options = []

    def build(self, build_spec, options):
        self._enter("build", build_spec.image)
        try:
            self.options.append(options)
            if build_spec.image in self.failing:
                raise CollaboratorError(f"build of {build_spec.image} failed", "step 3/7: exit 1")
            return f"built {build_spec.image}"
        finally:
            self._leave()


class FakeRuntime(_Recorder):
    def __init__(self):
        super().__init__()
        self.failing_start = set()
        self.hanging_stop = set()
        self.unhealthy = set()
        self.healthy_after = {}
        self.probes = {}

    def start_service(self, definition, timeout=None):
        self._enter("start", definition.name)
        try:
            if definition.name in self.failing_start:
                raise CollaboratorError(f"container {definition.name} exited with code 1")
            return f"started {definition.name}"
        finally:
            self._leave()

    def stop_service(self, definition, force=False, timeout=None):
        self._enter("kill" if force else "stop", definition.name)
        try:
            if definition.name in self.hanging_stop and not force:
                raise UnitTimeoutError(f"stop of {definition.name} timed out")
        finally:
            self._leave()

    def cleanup_service(self, definition, timeout=None):
        self._enter("cleanup", definition.name)
        self._leave()
        return f"removed {definition.name}"

    def run_health_check(self, definition):
        with self._lock:
            count = self.probes.get(definition.name, 0) + 1
            self.probes[definition.name] = count
        if definition.name in self.unhealthy:
            return False
        return count >= self.healthy_after.get(definition.name, 1)


def service(name, deps=(), priority=0, essential=True, health=None, poll_ms=10, timeout_ms=200):
    """A test service whose image is its own name."""
    health_check = None
    if health:
        health_check = HealthCheckSpec(command=["CMD", "true"], poll_interval_ms=poll_ms, timeout_ms=timeout_ms)
    return ServiceDefinition(
        name=name,
        dependencies=list(deps),
        priority=priority,
        essential=essential,
        build_spec=BuildSpec(image=name, context="."),
        health_check=health_check,
    )


@pytest.fixture
def make_service():
    return service


@pytest.fixture
def make_catalog():
    """
    Builds a catalog from ``{name: [dependencies]}`` plus optional fully
    specified definitions that replace entries of the same name.
    """
    def factory(graph=None, *definitions):
        defs = {name: service(name, deps) for name, deps in (graph or {}).items()}
        for definition in definitions:
            defs[definition.name] = definition
        return ServiceCatalog.from_definitions(defs.values())
    return factory


@pytest.fixture
def builder():
    return FakeBuilder()


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def make_manager(builder, runtime):
    """Creates a manager on an 8-core host with low memory use."""
    def factory(catalog, cpu_count=8, memory_percent=10.0, **config):
        config.setdefault("restart_settle_seconds", 0)
        cfg = OrchestratorConfig(**config)
        advisor = ConcurrencyAdvisor(cfg, cpu_count=lambda: cpu_count, memory_percent=lambda: memory_percent)
        return LifecycleManager(catalog, builder, runtime, cfg, advisor=advisor)
    return factory
