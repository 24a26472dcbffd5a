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
Models for orchestrator-wide configuration: timeouts, throttling and the
default scheduling strategy.
"""
import os
from enum import Enum
from typing import Any, Dict, Mapping, Optional
from dotenv import dotenv_values
from pydantic import BaseModel, Field

ENV_PREFIX = "DEVORCH_"


class Strategy(str, Enum):
    """
    Policies for partitioning the resolved order into batches.
    """
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    OPTIMIZED = "optimized"
    AGGRESSIVE = "aggressive"


class OrchestratorConfig(BaseModel):
    """
    Settings passed to the LifecycleManager. All durations are seconds.
    """
    # Per-unit timeouts
    build_timeout: float = Field(default=1800.0, gt=0)
    start_timeout: float = Field(default=120.0, gt=0)
    stop_timeout: float = Field(default=30.0, gt=0)
    cleanup_timeout: float = Field(default=120.0, gt=0)
    operation_timeout: Optional[float] = Field(default=None, gt=0)

    # Scheduling
    default_strategy: Strategy = Strategy.OPTIMIZED

    # Throttling
    memory_threshold_percent: float = Field(default=80.0, gt=0, le=100)
    memory_pressure_factor: float = Field(default=0.7, gt=0, le=1)
    fallback_concurrency: int = Field(default=2, ge=1)
    build_core_fraction: float = Field(default=0.5, gt=0, le=1)
    start_core_fraction: float = Field(default=0.75, gt=0, le=1)
    cleanup_core_fraction: float = Field(default=1.0, gt=0, le=1)
    max_concurrency_cap: Optional[int] = Field(default=None, ge=1)

    # Lifecycle
    restart_settle_seconds: float = Field(default=5.0, ge=0)
    default_health_poll_ms: int = Field(default=2000, gt=0)
    default_health_timeout_ms: int = Field(default=60000, ge=0)

    @classmethod
    def from_env(cls,
                 environ: Optional[Mapping[str, str]] = None,
                 env_file: Optional[str] = None,
                 base: Optional["OrchestratorConfig"] = None,
                 **overrides: Any) -> "OrchestratorConfig":
        """
        Builds a configuration from ``DEVORCH_*`` variables.

        Starts from ``base`` (defaults when omitted). Values from ``env_file``
        are applied over it, the process environment (or ``environ``)
        overrides them, and keyword overrides win over all.

        :param environ: Environment to read instead of ``os.environ``.
        :param env_file: Optional path to a .env file.
        :param base: Configuration to start from, e.g. compose file settings.
        :return: The validated configuration.
        """
        values: Dict[str, Any] = base.model_dump(exclude_unset=True) if base else {}
        sources = []
        if env_file and os.path.exists(env_file):
            sources.append(dotenv_values(env_file))
        sources.append(os.environ if environ is None else environ)

        for source in sources:
            for key, value in source.items():
                if not key.startswith(ENV_PREFIX) or value is None or value == "":
                    continue
                field = key[len(ENV_PREFIX):].lower()
                if field in cls.model_fields:
                    values[field] = value

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def merged(self, **overrides: Any) -> "OrchestratorConfig":
        """Returns a copy with the non-None overrides applied and re-validated."""
        data = self.model_dump()
        data.update({k: v for k, v in overrides.items() if v is not None})
        return type(self)(**data)
