"""
External command execution for docker / compose CLI calls.

Update execution and the self-upgrade supervisor never talk to the container
runtime directly. Every operation is expressed as a CommandSpec (program,
arguments, extra environment) and handed to a CommandRunner, which has exactly
one method. Tests substitute a recording fake.
"""

import asyncio
import logging
import os
import subprocess
from dataclasses import dataclass, field
from typing import Dict, List, Protocol

logger = logging.getLogger(__name__)

__all__ = [
    'CommandSpec',
    'CommandOutput',
    'CommandRunner',
    'SubprocessCommandRunner',
    'CommandError',
    'CommandTimeoutError',
    'run_checked',
]


@dataclass(frozen=True)
class CommandSpec:
    """A single external program invocation"""
    program: str
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)

    def describe(self) -> str:
        return " ".join([self.program] + list(self.args))


@dataclass(frozen=True)
class CommandOutput:
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class CommandError(RuntimeError):
    """Command exited with a non-zero status"""

    def __init__(self, spec: CommandSpec, exit_code: int, stderr: str):
        self.program = spec.program
        self.args_list = list(spec.args)
        self.exit_code = exit_code
        self.stderr = stderr.strip()
        detail = self.stderr or "no stderr output"
        super().__init__(f"{spec.describe()} exited with {exit_code}: {detail}")


class CommandTimeoutError(RuntimeError):
    """Command did not finish within its timeout"""

    def __init__(self, spec: CommandSpec, timeout: float):
        self.program = spec.program
        self.args_list = list(spec.args)
        self.timeout = timeout
        super().__init__(f"{spec.describe()} timed out after {timeout}s")


class CommandRunner(Protocol):
    async def run(self, spec: CommandSpec, timeout: float) -> CommandOutput:
        ...


class SubprocessCommandRunner:
    """
    Runs commands with subprocess in a worker thread.

    The extra environment of the spec is layered on top of the process
    environment, so DOCKER_HOST and friends can be set per invocation.
    """

    async def run(self, spec: CommandSpec, timeout: float) -> CommandOutput:
        full_env = {**os.environ, **spec.env}
        logger.debug(f"Running command: {spec.describe()} (timeout {timeout}s)")

        try:
            result = await asyncio.to_thread(
                subprocess.run,
                [spec.program] + list(spec.args),
                env=full_env,
                capture_output=True,
                text=True,
                timeout=timeout
            )
        except subprocess.TimeoutExpired:
            raise CommandTimeoutError(spec, timeout)
        except FileNotFoundError as e:
            # Missing binary behaves like any other failed command
            return CommandOutput(exit_code=127, stdout="", stderr=str(e))

        return CommandOutput(
            exit_code=result.returncode,
            stdout=result.stdout or "",
            stderr=result.stderr or "",
        )


async def run_checked(runner: CommandRunner, spec: CommandSpec, timeout: float) -> CommandOutput:
    """
    Run a command and raise CommandError on a non-zero exit code.

    Raises:
        CommandError: exit code != 0 (stderr attached)
        CommandTimeoutError: timeout exceeded
    """
    output = await runner.run(spec, timeout)
    if output.exit_code != 0:
        raise CommandError(spec, output.exit_code, output.stderr)
    return output
