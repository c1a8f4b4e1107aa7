"""Error taxonomy shared by every layer.

Lower layers wrap third-party failures in one of these and re-raise with the
operation name and target attached. Only the CLI turns them into exit codes.
"""


class BlackBSDError(Exception):
    """Base class for all blackbsd errors."""


class ConfigurationError(BlackBSDError):
    """Bad configuration, key material or path input. Never retried."""

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"config error [{field}]: {message}")


class InvalidPathError(ConfigurationError):
    """Path contains traversal segments or shell metacharacters."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(
            "path", "invalid path: contains path traversal or shell metacharacters"
        )


class ProviderError(BlackBSDError):
    """Cloud API call failed."""

    def __init__(
        self,
        operation: str,
        message: str,
        *,
        status_code: int | None = None,
        code: str | None = None,
        transient: bool = False,
    ):
        self.operation = operation
        self.message = message
        self.status_code = status_code
        self.code = code
        self.transient = transient
        super().__init__(f"{operation}: {message}")

    @property
    def is_not_found(self) -> bool:
        return self.code == "not_found" or self.status_code == 404  # noqa: PLR2004


class ConnectivityError(BlackBSDError):
    """Transport, handshake or protocol failure reaching a remote host."""

    def __init__(self, host: str, message: str):
        self.host = host
        self.message = message
        super().__init__(f"ssh {host}: {message}")


class RemoteCommandError(BlackBSDError):
    """A remote command exited with a non-zero status that was not allowed."""

    def __init__(self, operation: str, command: str, exit_code: int, stderr: str):
        self.operation = operation
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(f"{operation}: exited {exit_code}: {stderr.strip()}")


class DeadlineExceeded(BlackBSDError):
    """A bounded wait elapsed without success."""

    def __init__(self, operation: str, resource: str, last_state: str, timeout: float):
        self.operation = operation
        self.resource = resource
        self.last_state = last_state
        self.timeout = timeout
        super().__init__(
            f"{operation}: {resource} did not succeed within {timeout:g}s "
            f"(last observed: {last_state})"
        )


class BuildError(BlackBSDError):
    """A pipeline stage failed. The server (if any) is left for inspection."""

    def __init__(self, stage: str, server_id: int | None, cause: BaseException):
        self.stage = stage
        self.server_id = server_id
        self.cause = cause
        where = f" (server {server_id})" if server_id is not None else ""
        super().__init__(f"stage {stage} failed{where}: {cause}")
