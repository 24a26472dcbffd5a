"""
Builders turning a service's build spec into a container image.
"""
import logging
import os
from dataclasses import dataclass
from typing import List, Optional, Protocol

from ..MODELS.service_definition import BuildSpec
from ..RUNNERS.process_runner import CommandRunner

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BuildOptions:
    """Flags passed through to the builder untouched by the orchestrator."""

    no_cache: bool = False
    pull: bool = False
    timeout: Optional[float] = None


class Builder(Protocol):
    """
    Performs an actual image build. Returns the build output and raises on
    failure.
    """

    def build(self, build_spec: BuildSpec, options: BuildOptions) -> str:
        ...


class DockerImageBuilder:
    """
    Builds images with the docker CLI.
    """
    def __init__(self, base_dir: str = ".", runner: Optional[CommandRunner] = None, docker: str = "docker"):
        """
        Initializes the builder.

        :param base_dir: The base directory for resolving relative build contexts.
        :param runner: Command runner, replaced in tests.
        :param docker: The docker executable.
        """
        self.base_dir = base_dir
        self.runner = runner or CommandRunner()
        self.docker = docker

    def build_command(self, spec: BuildSpec, options: BuildOptions) -> List[str]:
        """
        Assembles the ``docker build`` argument list for a build spec.
        """
        context = os.path.join(self.base_dir, spec.context or ".")
        args = [self.docker, "build"]
        if spec.dockerfile:
            args += ["-f", os.path.join(self.base_dir, spec.dockerfile)]
        if spec.image:
            args += ["-t", spec.image]
        if options.no_cache:
            args.append("--no-cache")
        if options.pull:
            args.append("--pull")
        for key, value in sorted(spec.args.items()):
            args += ["--build-arg", f"{key}={value}"]
        if spec.target:
            args += ["--target", spec.target]
        args.append(context)
        return args

    def build(self, build_spec: BuildSpec, options: BuildOptions) -> str:
        """
        Builds the image, or pulls it when the service has no build context.

        :return: Build output.
        :raises CollaboratorError: If docker reports failure.
        :raises UnitTimeoutError: If the build exceeds ``options.timeout``.
        """
        if not build_spec.has_build_context:
            if options.pull and build_spec.image:
                result = self.runner.check([self.docker, "pull", build_spec.image], timeout=options.timeout)
                return result.output
            return f"No build context; using image {build_spec.image or '<none>'}"

        command = self.build_command(build_spec, options)
        logger.info("Building %s", build_spec.image or build_spec.context)
        return self.runner.check(command, timeout=options.timeout).output
