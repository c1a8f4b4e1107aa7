from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Output of one remote command."""

    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0

    @property
    def success(self) -> bool:
        return self.exit_code == 0
