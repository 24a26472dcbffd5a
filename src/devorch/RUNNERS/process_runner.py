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
Execution of external commands with captured output and time limits.
"""
import logging
import os
import subprocess
from dataclasses import dataclass
from typing import Dict, List, Optional, Union

from ..errors import CollaboratorError, UnitTimeoutError

logger = logging.getLogger(__name__)

# Keep reports readable when a build prints thousands of lines
MAX_OUTPUT_CHARS = 4000


@dataclass
class CommandResult:
    """Outcome of a finished command."""

    command: Union[List[str], str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Combined output, truncated from the front."""
        text = "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)
        if len(text) > MAX_OUTPUT_CHARS:
            return "..." + text[-MAX_OUTPUT_CHARS:]
        return text


class CommandRunner:
    """
    Runs commands to completion for the builder and runtime adapters.
    """
    def __init__(self, env: Optional[Dict[str, str]] = None, working_dir: Optional[str] = None):
        """
        :param env: Extra environment variables merged over the process environment.
        :param working_dir: Directory to run commands in.
        """
        self.env = env or {}
        self.working_dir = working_dir

    def run(self,
            command: Union[List[str], str],
            timeout: Optional[float] = None,
            shell: bool = False) -> CommandResult:
        """
        Runs a command and waits for it.

        Args:
            command: Argument list, or a string when ``shell`` is set.
            timeout: Seconds before the command is killed.
            shell: Run through the shell; only for health checks in CMD-SHELL form.

        Returns:
            CommandResult with the exit code and captured output.

        Raises:
            UnitTimeoutError: If the command exceeded ``timeout``.
            CollaboratorError: If the executable cannot be started.
        """
        display = command if isinstance(command, str) else " ".join(command)
        logger.debug("Running: %s", display)

        env = os.environ.copy()
        env.update(self.env)
        try:
            completed = subprocess.run(
                command,
                shell=shell,
                env=env,
                cwd=self.working_dir,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            output = e.output if isinstance(e.output, str) else ""
            raise UnitTimeoutError(f"Command timed out after {timeout}s: {display}", output) from e
        except OSError as e:
            raise CollaboratorError(f"Failed to run {display}: {e}") from e

        return CommandResult(
            command=command,
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )

    def check(self,
              command: Union[List[str], str],
              timeout: Optional[float] = None,
              shell: bool = False) -> CommandResult:
        """
        Runs a command and raises CollaboratorError on a non-zero exit code.
        """
        result = self.run(command, timeout=timeout, shell=shell)
        if not result.ok:
            display = command if isinstance(command, str) else " ".join(command)
            raise CollaboratorError(
                f"Command failed with exit code {result.returncode}: {display}", result.output
            )
        return result
