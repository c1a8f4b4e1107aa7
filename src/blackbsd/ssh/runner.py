"""The narrow capability all remote automation is built on."""

from collections.abc import Iterable
from typing import BinaryIO, Protocol

from ..errors import RemoteCommandError
from .result import CommandResult


class Runner(Protocol):
    """Runs a shell command on a remote host.

    A non-zero exit is a result, not an error; only transport failures raise.
    Command strings must be assembled with ``blackbsd.shell``.
    """

    async def exec(self, command: str) -> CommandResult:
        """Run ``command`` to completion."""
        ...


class InteractiveRunner(Runner, Protocol):
    """Runner that can also drive terminal programs over a PTY."""

    async def exec_interactive(
        self, command: str, input_stream: bytes | BinaryIO
    ) -> CommandResult:
        """Run ``command`` under a PTY with ``input_stream`` fed to stdin."""
        ...


async def run_checked(
    runner: Runner,
    command: str,
    operation: str,
    allowed_exit_codes: Iterable[int] = (),
) -> CommandResult:
    """Run ``command`` and raise ``RemoteCommandError`` on a disallowed exit code."""
    result = await runner.exec(command)
    if not result.success and result.exit_code not in set(allowed_exit_codes):
        raise RemoteCommandError(operation, command, result.exit_code, result.stderr)
    return result
