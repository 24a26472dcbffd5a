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
Container runtimes: starting, stopping, probing and removing service containers.
"""
import logging
from typing import List, Optional, Protocol, Sequence, Tuple, Union

from ..MODELS.service_definition import ServiceDefinition
from ..RUNNERS.process_runner import CommandRunner
from ..errors import CollaboratorError

logger = logging.getLogger(__name__)

# Upper bound for a single probe so a hung check cannot stall the poll loop
DEFAULT_PROBE_TIMEOUT = 10.0


class Runtime(Protocol):
    """
    Runs service containers. Methods raise on failure.
    """

    def start_service(self, definition: ServiceDefinition, timeout: Optional[float] = None) -> str:
        ...

    def stop_service(self, definition: ServiceDefinition, force: bool = False,
                     timeout: Optional[float] = None) -> None:
        ...

    def run_health_check(self, definition: ServiceDefinition) -> bool:
        ...

    def cleanup_service(self, definition: ServiceDefinition, timeout: Optional[float] = None) -> str:
        ...


def parse_health_command(test: Sequence[str]) -> Tuple[Optional[Union[List[str], str]], bool]:
    """
    Interprets a Docker healthcheck ``test`` value.

    :param test: ``["CMD", ...]``, ``["CMD-SHELL", "..."]``, ``["NONE"]`` or a bare list.
    :return: ``(command, use_shell)``; command is None when checks are disabled.
    """
    if not test:
        return None, False
    kind = test[0]
    if kind == "NONE":
        return None, False
    if kind == "CMD":
        return list(test[1:]), False
    if kind == "CMD-SHELL":
        return " ".join(test[1:]), True
    return list(test), False


class DockerRuntime:
    """
    Drives containers with the docker CLI.

    With compose files configured, services are addressed through
    ``docker compose``; otherwise the service's container is addressed
    directly and must already exist.
    """

    def __init__(
        self,
        compose_files: Optional[List[str]] = None,
        project_name: Optional[str] = None,
        runner: Optional[CommandRunner] = None,
        docker: str = "docker",
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
    ):
        """
        :param compose_files: Compose files passed as ``-f`` in order.
        :param project_name: Compose project name.
        :param runner: Command runner, replaced in tests.
        :param docker: The docker executable.
        :param probe_timeout: Time limit for a single health probe.
        """
        self.compose_files = list(compose_files or [])
        self.project_name = project_name
        self.runner = runner or CommandRunner()
        self.docker = docker
        self.probe_timeout = probe_timeout

    @property
    def uses_compose(self) -> bool:
        return bool(self.compose_files)

    def _compose(self, *args: str) -> List[str]:
        cmd = [self.docker, "compose"]
        for path in self.compose_files:
            cmd += ["-f", path]
        if self.project_name:
            cmd += ["-p", self.project_name]
        return cmd + list(args)

    def start_service(self, definition: ServiceDefinition, timeout: Optional[float] = None) -> str:
        """
        Starts a service without touching its dependencies; ordering is the
        orchestrator's job.
        """
        if self.uses_compose:
            cmd = self._compose("up", "-d", "--no-deps", definition.name)
        else:
            cmd = [self.docker, "start", definition.container]
        return self.runner.check(cmd, timeout=timeout).output

    def stop_service(self, definition: ServiceDefinition, force: bool = False,
                     timeout: Optional[float] = None) -> None:
        """
        Stops a service gracefully, or kills it when ``force`` is set.
        """
        grace = str(int(timeout)) if timeout else "10"
        if self.uses_compose:
            cmd = self._compose("kill", definition.name) if force \
                else self._compose("stop", "-t", grace, definition.name)
        else:
            cmd = [self.docker, "kill", definition.container] if force \
                else [self.docker, "stop", "-t", grace, definition.container]
        # docker stop itself waits up to the grace period before killing
        limit = timeout + 5 if timeout else None
        self.runner.check(cmd, timeout=limit)

    def cleanup_service(self, definition: ServiceDefinition, timeout: Optional[float] = None) -> str:
        """
        Removes the service's container and, when it has a build context, its image.
        """
        if self.uses_compose:
            cmd = self._compose("rm", "-f", "-s", definition.name)
        else:
            cmd = [self.docker, "rm", "-f", definition.container]
        outputs = [self.runner.check(cmd, timeout=timeout).output]

        image = definition.build_spec.image
        if image and definition.build_spec.has_build_context:
            result = self.runner.run([self.docker, "rmi", image], timeout=timeout)
            if not result.ok:
                logger.warning("Could not remove image %s: %s", image, result.output)
            outputs.append(result.output)
        return "\n".join(o for o in outputs if o)

    def health_command(self, definition: ServiceDefinition) -> Tuple[Optional[Union[List[str], str]], bool]:
        """
        Builds the probe command for a service, wrapping it in ``docker exec``
        for in-container checks.
        """
        hc = definition.health_check
        if hc is None:
            return None, False
        command, use_shell = parse_health_command(hc.command)
        if command is None or not hc.in_container:
            return command, use_shell

        if self.uses_compose:
            prefix = self._compose("exec", "-T", definition.name)
        else:
            prefix = [self.docker, "exec", definition.container]
        if use_shell:
            return prefix + ["sh", "-c", command], False
        return prefix + command, False

    def run_health_check(self, definition: ServiceDefinition) -> bool:
        """
        Runs one probe.

        :return: True if the probe exited 0 or no probe is configured.
        """
        command, use_shell = self.health_command(definition)
        if command is None:
            return True
        try:
            result = self.runner.run(command, timeout=self.probe_timeout, shell=use_shell)
        except CollaboratorError as e:
            logger.debug("Health probe for %s errored: %s", definition.name, e)
            return False
        if not result.ok:
            logger.debug("Health probe for %s failed: %s", definition.name, result.output)
        return result.ok
