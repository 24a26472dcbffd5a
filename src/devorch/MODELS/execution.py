"""
Models describing units of work, their results and the aggregate report of
one orchestrator operation.
"""
from enum import Enum
from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, computed_field
from .service_definition import ServiceDefinition
from .orchestrator_config import Strategy


class OperationKind(str, Enum):
    """Kinds of work the execution engine can perform for a service."""
    BUILD = "build"
    START = "start"
    STOP = "stop"
    CLEANUP = "cleanup"


class WorkloadClass(str, Enum):
    """Resource profile used to size concurrency."""
    BUILD = "build"
    START = "start"
    CLEANUP = "cleanup"

    @classmethod
    def for_operation(cls, operation: OperationKind) -> "WorkloadClass":
        if operation == OperationKind.BUILD:
            return cls.BUILD
        if operation == OperationKind.START:
            return cls.START
        # Stopping and removing are IO-light
        return cls.CLEANUP


class UnitStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class ErrorKind(str, Enum):
    """Distinguishes why a unit failed."""
    EXECUTION_FAILED = "execution_failed"
    TIMEOUT = "timeout"
    HEALTH_CHECK_TIMED_OUT = "health_check_timed_out"


class RunState(str, Enum):
    PENDING = "pending"
    RESOLVING = "resolving"
    SCHEDULING = "scheduling"
    EXECUTING = "executing"
    COMPLETED = "completed"
    ABORTED = "aborted"


class ExecutionUnit(BaseModel):
    """A service paired with the operation to perform on it."""
    model_config = ConfigDict(frozen=True)

    definition: ServiceDefinition
    operation: OperationKind

    @property
    def name(self) -> str:
        return self.definition.name


class UnitResult(BaseModel):
    """
    Outcome of one unit. Immutable once produced.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    operation: OperationKind
    status: UnitStatus
    duration: float = 0.0
    output: str = ""
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None

    @computed_field
    @property
    def success(self) -> bool:
        return self.status == UnitStatus.SUCCEEDED

    @property
    def failed(self) -> bool:
        return self.status == UnitStatus.FAILED

    @property
    def skipped(self) -> bool:
        return self.status == UnitStatus.SKIPPED

    @classmethod
    def succeeded(cls, name: str, operation: OperationKind,
                  duration: float = 0.0, output: str = "") -> "UnitResult":
        return cls(name=name, operation=operation, status=UnitStatus.SUCCEEDED,
                   duration=duration, output=output)

    @classmethod
    def failure(cls, name: str, operation: OperationKind, error_kind: ErrorKind,
                error: str, duration: float = 0.0, output: str = "") -> "UnitResult":
        return cls(name=name, operation=operation, status=UnitStatus.FAILED,
                   duration=duration, output=output, error_kind=error_kind, error=error)

    @classmethod
    def skip(cls, name: str, operation: OperationKind, reason: str) -> "UnitResult":
        return cls(name=name, operation=operation, status=UnitStatus.SKIPPED, error=reason)


class Batch(BaseModel):
    """
    Units that may run concurrently: none depends on another member.
    """
    model_config = ConfigDict(frozen=True)

    index: int
    units: List[ExecutionUnit]

    @property
    def names(self) -> List[str]:
        return [unit.name for unit in self.units]

    def __len__(self) -> int:
        return len(self.units)


class RunReport(BaseModel):
    """
    Aggregate of all unit results for one LifecycleManager invocation.

    Created when the operation starts and finalized when it returns. Results
    are keyed by service name and overwritten when a service is retried.
    """
    operation: str
    strategy: Strategy
    max_concurrency: int = 1
    memory_pressure_factor: float = 1.0
    advice_fallback: bool = False
    state: RunState = RunState.PENDING
    abort_reason: Optional[str] = None
    results: Dict[str, UnitResult] = {}
    batches: List[List[str]] = []
    essential_services: List[str] = []
    duration: float = 0.0
    phases: List["RunReport"] = Field(default_factory=list)

    def record(self, result: UnitResult) -> None:
        self.results[result.name] = result

    def _count(self, status: UnitStatus) -> int:
        return sum(1 for r in self.results.values() if r.status == status)

    @computed_field
    @property
    def succeeded(self) -> int:
        return self._count(UnitStatus.SUCCEEDED)

    @computed_field
    @property
    def failed(self) -> int:
        return self._count(UnitStatus.FAILED)

    @computed_field
    @property
    def skipped(self) -> int:
        return self._count(UnitStatus.SKIPPED)

    @computed_field
    @property
    def essential_failures(self) -> List[str]:
        essential = set(self.essential_services)
        failures = [name for name, r in self.results.items() if r.failed and name in essential]
        for phase in self.phases:
            failures.extend(n for n in phase.essential_failures if n not in failures)
        return failures

    @property
    def aborted(self) -> bool:
        return self.state == RunState.ABORTED or any(p.aborted for p in self.phases)

    @computed_field
    @property
    def exit_code(self) -> int:
        """0 when no essential service failed and the run was not aborted."""
        return 1 if self.essential_failures or self.aborted else 0


RunReport.model_rebuild()
