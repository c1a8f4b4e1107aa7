import logging

import pytest
import structlog

from blackbsd.config import Settings
from blackbsd.retry import BackoffPolicy
from blackbsd.ssh.result import CommandResult


class FakeRunner:
    """Records every command and answers from a table of canned results.

    ``respond(fragment, result)`` makes any command containing ``fragment``
    return ``result``; everything else succeeds with empty output.
    """

    def __init__(self):
        self.commands: list[str] = []
        self.interactive: list[tuple[str, bytes]] = []
        self._results: list[tuple[str, CommandResult]] = []

    def respond(self, fragment: str, result: CommandResult) -> None:
        self._results.append((fragment, result))

    def _result_for(self, command: str) -> CommandResult:
        for fragment, result in self._results:
            if fragment in command:
                return result
        return CommandResult()

    async def exec(self, command: str) -> CommandResult:
        self.commands.append(command)
        return self._result_for(command)

    async def exec_interactive(self, command, input_stream) -> CommandResult:
        data = input_stream if isinstance(input_stream, bytes) else input_stream.read()
        self.commands.append(command)
        self.interactive.append((command, data))
        return self._result_for(command)


class FakeSSH(FakeRunner):
    """FakeRunner plus the readiness and transfer calls the pipeline makes."""

    def __init__(self, host: str = "", key=None):
        super().__init__()
        self.host = host
        self.key = key
        self.ready_checks = 0
        self.downloads: list[tuple[str, str]] = []

    async def wait_for_ready(self) -> None:
        self.ready_checks += 1

    async def download_file(self, remote_path: str, local_path: str) -> None:
        self.downloads.append((remote_path, local_path))
        with open(local_path, "wb") as fh:
            fh.write(b"artifact")


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def fake_ssh():
    return FakeSSH("203.0.113.10")


@pytest.fixture
def fast_policy():
    """Backoff policy that never waits, bounded by attempts."""
    return BackoffPolicy(initial_interval=0, max_interval=0, jitter=0, max_attempts=5)


@pytest.fixture
def no_sleep():
    calls: list[float] = []

    async def sleep(seconds: float) -> None:
        calls.append(seconds)

    sleep.calls = calls
    return sleep


@pytest.fixture
def ssh_key_file(tmp_path):
    path = tmp_path / "id_ed25519"
    path.write_text("not parsed by settings validation\n")
    return path


@pytest.fixture
def settings(ssh_key_file, monkeypatch):
    monkeypatch.delenv("HCLOUD_TOKEN", raising=False)
    return Settings(hcloud_token="test-token", ssh_key_path=str(ssh_key_file))  # noqa: S106


@pytest.fixture(autouse=True)
def reset_logging():
    """Reset logging configuration before each test."""
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()
