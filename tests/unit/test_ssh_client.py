import base64
import hashlib
import os
import socket
import stat
import threading
from unittest.mock import MagicMock, patch

import paramiko
import pytest

from blackbsd.errors import (
    ConfigurationError,
    ConnectivityError,
    DeadlineExceeded,
    RemoteCommandError,
)
from blackbsd.retry import BackoffPolicy
from blackbsd.ssh import (
    CommandResult,
    KeyMaterial,
    SSHClient,
    load_key,
    public_key_fingerprint,
    run_checked,
)
from blackbsd.ssh.client import _Probe


class FakeChannel:
    """Scripted paramiko channel: exits once stdin is closed."""

    def __init__(self, stdout=b"", stderr=b"", exit_code=0):
        self._stdout = [stdout] if stdout else []
        self._stderr = [stderr] if stderr else []
        self.exit_code = exit_code
        self.sent = bytearray()
        self.pty = None
        self.command = None
        self.write_closed = False
        self.eof_received = True
        self.closed = False

    def get_pty(self, term, width, height):
        self.pty = (term, width, height)

    def exec_command(self, command):
        self.command = command

    def exit_status_ready(self):
        return self.write_closed

    def send_ready(self):
        return True

    def send(self, data):
        self.sent += data
        return len(data)

    def shutdown_write(self):
        self.write_closed = True

    def recv_ready(self):
        return bool(self._stdout)

    def recv(self, size):
        return self._stdout.pop(0)

    def recv_stderr_ready(self):
        return bool(self._stderr)

    def recv_stderr(self, size):
        return self._stderr.pop(0)

    def recv_exit_status(self):
        return self.exit_code


@pytest.fixture
def key():
    return KeyMaterial(path="/keys/id", pkey=MagicMock())


@pytest.fixture
def paramiko_client():
    with patch("blackbsd.ssh.client.paramiko.SSHClient") as cls:
        yield cls.return_value


def attach_channel(paramiko_client, channel):
    paramiko_client.get_transport.return_value.open_session.return_value = channel


@pytest.fixture
def hangup_server():
    """Local sshd stand-in that sends its banner and closes mid-handshake."""
    listener = socket.create_server(("127.0.0.1", 0))
    listener.settimeout(0.2)
    stopped = threading.Event()

    def serve():
        while not stopped.is_set():
            try:
                conn, _ = listener.accept()
            except OSError:
                continue
            with conn:
                conn.sendall(b"SSH-2.0-OpenSSH_9.6\r\n")

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    yield listener.getsockname()[1]
    stopped.set()
    thread.join(timeout=2)
    listener.close()


class TestCommandResult:
    def test_zero_exit_is_success(self):
        assert CommandResult(exit_code=0).success

    def test_nonzero_exit_is_failure(self):
        assert not CommandResult(exit_code=127).success


class TestRunChecked:
    @pytest.mark.asyncio
    async def test_raises_on_failure(self, fake_runner):
        fake_runner.respond("false", CommandResult(stderr="nope\n", exit_code=1))

        with pytest.raises(RemoteCommandError) as exc_info:
            await run_checked(fake_runner, "false", "run false")

        assert exc_info.value.exit_code == 1
        assert str(exc_info.value) == "run false: exited 1: nope"

    @pytest.mark.asyncio
    async def test_allowed_exit_code_passes(self, fake_runner):
        fake_runner.respond("useradd", CommandResult(exit_code=9))

        result = await run_checked(fake_runner, "useradd x", "create user", allowed_exit_codes=(9,))

        assert result.exit_code == 9  # noqa: PLR2004


class TestFingerprint:
    def test_md5_colon_hex(self):
        blob = b"\x00\x00\x00\x0bssh-ed25519\x00\x00\x00\x20" + bytes(range(32))
        public_key = f"ssh-ed25519 {base64.b64encode(blob).decode()} user@host"

        digest = hashlib.md5(blob, usedforsecurity=False).hexdigest()
        expected = ":".join(digest[i : i + 2] for i in range(0, 32, 2))

        assert public_key_fingerprint(public_key) == expected

    @pytest.mark.parametrize("public_key", ["", "ssh-ed25519", "ssh-ed25519 !!!notbase64"])
    def test_malformed(self, public_key):
        with pytest.raises(ConfigurationError):
            public_key_fingerprint(public_key)


class TestLoadKey:
    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError) as exc_info:
            load_key(str(tmp_path / "absent"))
        assert "read private key" in str(exc_info.value)

    def test_garbage_file(self, tmp_path):
        path = tmp_path / "id_bad"
        path.write_text("this is not a key\n")

        with pytest.raises(ConfigurationError) as exc_info:
            load_key(str(path))
        assert "parse private key" in str(exc_info.value)

    def test_rsa_key_fingerprint_matches_paramiko(self, tmp_path):
        path = tmp_path / "id_rsa"
        paramiko.RSAKey.generate(2048).write_private_key_file(str(path))

        material = load_key(str(path))

        assert material.public_key.startswith("ssh-rsa ")
        assert material.fingerprint.replace(":", "") == material.pkey.get_fingerprint().hex()

    def test_connect_loads_key_without_connecting(self, tmp_path):
        path = tmp_path / "id_rsa"
        paramiko.RSAKey.generate(2048).write_private_key_file(str(path))

        with patch("blackbsd.ssh.client.paramiko.SSHClient") as factory:
            client = SSHClient.connect("203.0.113.10", str(path), port=2222)

        assert client.address == "203.0.113.10:2222"
        factory.assert_not_called()


class TestExec:
    @pytest.mark.asyncio
    async def test_collects_output_and_closes(self, key, paramiko_client):
        channel = FakeChannel(stdout=b"hello\n", stderr=b"warn\n", exit_code=3)
        attach_channel(paramiko_client, channel)

        result = await SSHClient("203.0.113.10", key).exec("echo hello")

        assert result == CommandResult(stdout="hello\n", stderr="warn\n", exit_code=3)
        assert channel.command == "echo hello"
        assert channel.pty is None
        kwargs = paramiko_client.connect.call_args.kwargs
        assert kwargs["username"] == "root"
        assert kwargs["pkey"] is key.pkey
        assert kwargs["look_for_keys"] is False
        paramiko_client.close.assert_called_once()
        paramiko_client.load_system_host_keys.assert_not_called()

    @pytest.mark.asyncio
    async def test_interactive_streams_input_under_pty(self, key, paramiko_client):
        channel = FakeChannel(stdout=b"installed\n")
        attach_channel(paramiko_client, channel)

        result = await SSHClient("203.0.113.10", key).exec_interactive("sysinst", b"a\nb\n")

        assert result.stdout == "installed\n"
        assert bytes(channel.sent) == b"a\nb\n"
        assert channel.pty == ("xterm", 80, 40)
        assert channel.write_closed

    @pytest.mark.asyncio
    async def test_auth_failure_is_connectivity_error(self, key, paramiko_client):
        paramiko_client.connect.side_effect = paramiko.AuthenticationException("denied")

        with pytest.raises(ConnectivityError) as exc_info:
            await SSHClient("203.0.113.10", key).exec("true")

        assert "authenticate as root" in str(exc_info.value)
        paramiko_client.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_connection_refused(self, key, paramiko_client):
        paramiko_client.connect.side_effect = ConnectionRefusedError("refused")

        with pytest.raises(ConnectivityError) as exc_info:
            await SSHClient("203.0.113.10", key, port=2222).exec("true")

        assert "203.0.113.10:2222" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_handshake_eof_is_connectivity_error(self, key, paramiko_client):
        paramiko_client.connect.side_effect = EOFError()

        with pytest.raises(ConnectivityError):
            await SSHClient("203.0.113.10", key).exec("true")
        paramiko_client.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_peer_closing_after_banner(self, key, hangup_server):
        client = SSHClient("127.0.0.1", key, port=hangup_server, timeout=5)

        with pytest.raises(ConnectivityError) as exc_info:
            await client.exec("true")

        assert exc_info.value.host == "127.0.0.1"


class TestFileTransfer:
    @pytest.mark.asyncio
    async def test_upload_missing_local_file(self, key, tmp_path, paramiko_client):
        with pytest.raises(ConfigurationError):
            await SSHClient("203.0.113.10", key).upload_file(str(tmp_path / "nope"), "/tmp/x")
        paramiko_client.connect.assert_not_called()

    @pytest.mark.asyncio
    async def test_upload(self, key, tmp_path, paramiko_client):
        local = tmp_path / "payload"
        local.write_bytes(b"data")
        sftp = paramiko_client.open_sftp.return_value.__enter__.return_value

        await SSHClient("203.0.113.10", key).upload_file(str(local), "/tmp/payload")

        sftp.put.assert_called_once_with(str(local), "/tmp/payload")

    @pytest.mark.asyncio
    async def test_download_writes_owner_only_file(self, key, tmp_path, paramiko_client):
        sftp = paramiko_client.open_sftp.return_value.__enter__.return_value
        sftp.getfo.side_effect = lambda remote, fh: fh.write(b"image bytes")
        local = tmp_path / "blackbsd.iso"

        await SSHClient("203.0.113.10", key).download_file("/tmp/blackbsd.iso", str(local))

        assert local.read_bytes() == b"image bytes"
        assert stat.S_IMODE(os.stat(local).st_mode) == 0o600  # noqa: PLR2004


class TestWaitForReady:
    @pytest.mark.asyncio
    async def test_retries_until_port_answers(self, key, fast_policy, no_sleep):
        client = SSHClient("203.0.113.10", key, ready_policy=fast_policy)

        failures = [OSError("refused"), OSError("refused"), None]
        with patch.object(_Probe, "run", side_effect=failures) as run:
            await client.wait_for_ready(sleep=no_sleep)

        assert run.call_count == 3  # noqa: PLR2004

    @pytest.mark.asyncio
    async def test_deadline_names_host_and_last_error(self, key, fast_policy, no_sleep):
        client = SSHClient("203.0.113.10", key, ready_policy=fast_policy)

        with patch.object(_Probe, "run", side_effect=OSError("no route to host")):
            with pytest.raises(DeadlineExceeded) as exc_info:
                await client.wait_for_ready(sleep=no_sleep)

        assert exc_info.value.resource == "203.0.113.10:22"
        assert exc_info.value.last_state == "no route to host"

    @pytest.mark.asyncio
    async def test_handshake_eof_until_deadline(self, key, fast_policy, no_sleep):
        client = SSHClient("203.0.113.10", key, ready_policy=fast_policy)

        with patch.object(_Probe, "run", side_effect=EOFError()) as run:
            with pytest.raises(DeadlineExceeded) as exc_info:
                await client.wait_for_ready(sleep=no_sleep)

        assert run.call_count == fast_policy.max_attempts
        assert exc_info.value.resource == "203.0.113.10:22"
        assert exc_info.value.last_state == "EOFError"

    @pytest.mark.asyncio
    async def test_peer_closing_after_banner_is_never_ready(
        self, key, hangup_server, no_sleep
    ):
        policy = BackoffPolicy(initial_interval=0, max_interval=0, jitter=0, max_attempts=2)
        client = SSHClient("127.0.0.1", key, port=hangup_server, timeout=5, ready_policy=policy)

        with pytest.raises(DeadlineExceeded) as exc_info:
            await client.wait_for_ready(sleep=no_sleep)

        assert exc_info.value.resource == f"127.0.0.1:{hangup_server}"
