"""
Models for defining services, their build metadata and health checks.
"""
from typing import Dict, FrozenSet, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class BuildSpec(BaseModel):
    """
    Payload handed to the builder collaborator. The orchestrator never
    interprets it.
    """
    model_config = ConfigDict(frozen=True)

    image: str = ""
    context: Optional[str] = None
    dockerfile: Optional[str] = None
    args: Dict[str, str] = {}
    target: Optional[str] = None

    @property
    def has_build_context(self) -> bool:
        return self.context is not None


class HealthCheckSpec(BaseModel):
    """
    A command polled after a service starts until it succeeds or the timeout
    elapses.

    The command follows Docker's healthcheck ``test`` forms: ``["CMD", ...]``,
    ``["CMD-SHELL", "..."]``, ``["NONE"]`` or a bare argument list.
    """
    model_config = ConfigDict(frozen=True)

    command: List[str]
    poll_interval_ms: int = Field(default=2000, gt=0)
    timeout_ms: int = Field(default=60000, ge=0)
    in_container: bool = False

    @property
    def poll_interval(self) -> float:
        return self.poll_interval_ms / 1000.0

    @property
    def timeout(self) -> float:
        return self.timeout_ms / 1000.0


class ServiceDefinition(BaseModel):
    """
    The full definition of a single service in the development stack.

    Definitions are immutable and loaded once per run. A service without a
    health check is considered healthy as soon as it starts successfully; a
    non-essential service never aborts an operation when it fails.
    """
    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    dependencies: FrozenSet[str] = frozenset()
    priority: int = 0
    build_spec: BuildSpec = Field(default_factory=BuildSpec)
    health_check: Optional[HealthCheckSpec] = None
    essential: bool = True
    container_name: Optional[str] = None

    @field_validator("dependencies", mode="before")
    @classmethod
    def _coerce_dependencies(cls, value):
        if value is None:
            return frozenset()
        if isinstance(value, str):
            return frozenset([value])
        return frozenset(value)

    @model_validator(mode="after")
    def _reject_self_dependency(self) -> "ServiceDefinition":
        if self.name in self.dependencies:
            raise ValueError(f"Service {self.name} cannot depend on itself")
        return self

    @property
    def container(self) -> str:
        """Name of the container backing this service."""
        return self.container_name or self.name

    def sort_key(self):
        """Tie-break key: higher priority first, then name."""
        return (-self.priority, self.name)
