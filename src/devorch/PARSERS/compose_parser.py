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
Parsers turning Docker Compose YAML files into a service catalog.
"""
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import yaml
from dotenv import dotenv_values

from ..MODELS.orchestrator_config import OrchestratorConfig
from ..MODELS.service_catalog import ServiceCatalog
from ..MODELS.service_definition import BuildSpec, HealthCheckSpec, ServiceDefinition
from ..UTILS.durations import parse_duration
from ..UTILS.string_interpolation import EnvironmentInterpolator
from ..errors import CatalogError

logger = logging.getLogger(__name__)

EXTENSION_KEY = "x-devorch"

# Docker's defaults for an unspecified healthcheck field
DOCKER_HEALTH_INTERVAL = 30.0
DOCKER_HEALTH_RETRIES = 3


@dataclass
class ComposeProject:
    """A parsed set of compose files."""

    catalog: ServiceCatalog
    settings: Dict[str, Any] = field(default_factory=dict)
    files: List[str] = field(default_factory=list)

    def config(self, base: Optional[OrchestratorConfig] = None) -> OrchestratorConfig:
        """Applies the project's top-level ``x-devorch`` settings to a configuration."""
        base = base or OrchestratorConfig()
        return base.merged(**self.settings)


class ComposeParser:
    """
    Parser for docker-compose.yml files.
    """
    def __init__(self,
                 context: Optional[Dict[str, str]] = None,
                 env_file: Optional[str] = None,
                 health_defaults: Optional[OrchestratorConfig] = None):
        """
        Initializes the parser with an optional environment context for interpolation.

        :param context: Variables for interpolation, defaults to the process environment.
        :param env_file: A .env file whose values are used where the context has none.
        :param health_defaults: Supplies poll interval and timeout for x-devorch
                                health commands that omit them.
        """
        merged: Dict[str, str] = {}
        if env_file and os.path.exists(env_file):
            merged.update({k: v for k, v in dotenv_values(env_file).items() if v is not None})
        merged.update(dict(os.environ) if context is None else context)
        self.context = merged
        self.defaults = health_defaults or OrchestratorConfig()

    def parse(self, compose_path: str) -> ComposeProject:
        """
        Parses a compose file from a path.

        :param compose_path: Path to the compose file.
        :return: Parsed project.
        """
        return self.parse_files([compose_path])

    def parse_files(self, compose_paths: Sequence[str]) -> ComposeProject:
        """
        Parses several compose files; later files override earlier ones per
        service key, like ``docker compose -f a.yml -f b.yml``.
        """
        documents = []
        for path in compose_paths:
            with open(path, 'r') as f:
                documents.append(self._load(f.read()))
        project = self._build(self._merge(documents))
        project.files = list(compose_paths)
        return project

    def parse_from_string(self, content: str) -> ComposeProject:
        """
        Parses a compose file from a string.

        :param content: YAML content of the compose file.
        :return: Parsed project.
        """
        return self._build(self._load(content))

    def _load(self, content: str) -> Dict[str, Any]:
        interpolator = EnvironmentInterpolator(self.context)
        content = interpolator.interpolate(content)
        for name in interpolator.missing:
            logger.warning("Variable %s is not set, defaulting to an empty string", name)

        data = yaml.safe_load(content)
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise CatalogError("Compose file must contain a mapping at the top level")
        return data

    @staticmethod
    def _merge(documents: List[Dict[str, Any]]) -> Dict[str, Any]:
        merged: Dict[str, Any] = {"services": {}}
        for doc in documents:
            for key, value in doc.items():
                if key == "services":
                    for name, spec in (value or {}).items():
                        current = dict(merged["services"].get(name) or {})
                        current.update(spec or {})
                        merged["services"][name] = current
                elif isinstance(value, dict) and isinstance(merged.get(key), dict):
                    merged[key] = {**merged[key], **value}
                else:
                    merged[key] = value
        return merged

    def _build(self, data: Dict[str, Any]) -> ComposeProject:
        services = data.get('services') or {}
        if not isinstance(services, dict):
            raise CatalogError("'services' must be a mapping")

        definitions = [self._parse_service(name, spec or {}) for name, spec in services.items()]
        settings = data.get(EXTENSION_KEY) or {}
        if not isinstance(settings, dict):
            raise CatalogError(f"'{EXTENSION_KEY}' must be a mapping")
        return ComposeProject(catalog=ServiceCatalog.from_definitions(definitions), settings=dict(settings))

    def _parse_service(self, name: str, spec: Dict[str, Any]) -> ServiceDefinition:
        """
        Parses a single service definition from a compose file.

        :param name: The name of the service.
        :param spec: The service specification dictionary.
        :return: A ServiceDefinition instance.
        """
        if not isinstance(spec, dict):
            raise CatalogError(f"Service {name} must be a mapping")
        ext = spec.get(EXTENSION_KEY) or {}

        try:
            return ServiceDefinition(
                name=name,
                dependencies=self._parse_depends_on(spec.get('depends_on')),
                priority=int(ext.get('priority', 0)),
                essential=bool(ext.get('essential', True)),
                build_spec=self._parse_build(spec),
                health_check=self._parse_health(ext.get('health'), spec.get('healthcheck')),
                container_name=spec.get('container_name'),
            )
        except ValueError as e:
            raise CatalogError(f"Invalid service {name}: {e}") from e

    @staticmethod
    def _parse_depends_on(value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, dict):
            return list(value.keys())
        if isinstance(value, str):
            return [value]
        return list(value)

    @staticmethod
    def _parse_build(spec: Dict[str, Any]) -> BuildSpec:
        build = spec.get('build')
        image = spec.get('image', '')
        if build is None:
            return BuildSpec(image=image)
        if isinstance(build, str):
            return BuildSpec(image=image, context=build)

        args = build.get('args') or {}
        if isinstance(args, list):
            args = dict(a.split('=', 1) if '=' in a else (a, '') for a in args)
        return BuildSpec(
            image=image,
            context=build.get('context', '.'),
            dockerfile=build.get('dockerfile'),
            args={str(k): str(v) for k, v in args.items()},
            target=build.get('target'),
        )

    def _parse_health(self, override: Any, healthcheck: Any) -> Optional[HealthCheckSpec]:
        if override:
            command = override.get('command')
            command = ["CMD-SHELL", command] if isinstance(command, str) else self._to_list(command)
            if not command:
                raise ValueError("x-devorch health requires a command")
            return HealthCheckSpec(
                command=command,
                poll_interval_ms=self._to_ms(override.get('poll_interval'), self.defaults.default_health_poll_ms),
                timeout_ms=self._to_ms(override.get('timeout'), self.defaults.default_health_timeout_ms),
                in_container=bool(override.get('in_container', False)),
            )

        if not healthcheck or healthcheck.get('disable'):
            return None
        test = self._to_list(healthcheck.get('test'))
        if not test or test[0] == "NONE":
            return None
        if len(test) == 1 and test[0] not in ("CMD", "CMD-SHELL"):
            # A plain string is shorthand for CMD-SHELL
            test = ["CMD-SHELL", test[0]]

        interval = parse_duration(healthcheck.get('interval'), DOCKER_HEALTH_INTERVAL)
        retries = int(healthcheck.get('retries', DOCKER_HEALTH_RETRIES))
        start_period = parse_duration(healthcheck.get('start_period'), 0.0)
        return HealthCheckSpec(
            command=test,
            poll_interval_ms=max(1, int(interval * 1000)),
            timeout_ms=int((start_period + interval * retries) * 1000),
            in_container=True,
        )

    @staticmethod
    def _to_ms(value: Any, default_ms: int) -> int:
        if value is None:
            return default_ms
        return int(parse_duration(value) * 1000)

    def _to_list(self, val: Any) -> List[str]:
        """
        Helper to ensure a value is a list of strings.

        :param val: The value to convert.
        :return: A list of strings.
        """
        if val is None:
            return []
        if isinstance(val, str):
            return [val]
        return [str(v) for v in val]
