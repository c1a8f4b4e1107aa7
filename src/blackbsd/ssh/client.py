"""SSH access to build hosts.

Every call opens and closes its own connection. paramiko is blocking, so each
call runs in the default thread executor; the connection object is closed when
the awaiting task finishes or is cancelled, which also unblocks the thread.

TRUST BOUNDARY: host keys are NOT verified. Rescue systems generate fresh host
keys on every boot, so there is nothing stable to pin. This is acceptable only
because build hosts are ephemeral, single-tenant and created by this tool a few
minutes earlier. Do not reuse this client for any other kind of host.
"""

import asyncio
import base64
import functools
import hashlib
import io
import os
import socket
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, TypeVar

import paramiko

from ..errors import ConfigurationError, ConnectivityError, DeadlineExceeded
from ..logging_config import get_logger
from ..retry import READY_POLICY, BackoffPolicy, retry_async
from .result import CommandResult

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_PORT = 22
DEFAULT_TIMEOUT = 30.0
PROBE_TIMEOUT = 10.0
REMOTE_USER = "root"
PTY_TERM = "xterm"
PTY_COLS = 80
PTY_ROWS = 40
CHUNK_SIZE = 32768
POLL_INTERVAL = 0.05
DOWNLOAD_MODE = 0o600

# Transport.start_client re-raises the reader thread's EOFError as-is when the
# peer hangs up mid-handshake.
TRANSPORT_ERRORS = (paramiko.SSHException, EOFError, OSError)


def public_key_fingerprint(public_key: str) -> str:
    """MD5 colon-hex fingerprint of an OpenSSH public key line.

    This is the format the cloud provider indexes SSH keys by.
    """
    parts = public_key.split()
    if len(parts) < 2:  # noqa: PLR2004
        raise ConfigurationError("ssh_key_path", "malformed public key")
    try:
        blob = base64.b64decode(parts[1], validate=True)
    except ValueError as e:
        raise ConfigurationError("ssh_key_path", f"malformed public key: {e}") from e
    digest = hashlib.md5(blob, usedforsecurity=False).hexdigest()
    return ":".join(digest[i : i + 2] for i in range(0, len(digest), 2))


@dataclass(frozen=True)
class KeyMaterial:
    """A parsed private key and the public half derived from it."""

    path: str
    pkey: paramiko.PKey

    @property
    def public_key(self) -> str:
        return f"{self.pkey.get_name()} {self.pkey.get_base64()}"

    @property
    def fingerprint(self) -> str:
        return public_key_fingerprint(self.public_key)


def load_key(key_path: str) -> KeyMaterial:
    """Read and parse a private key (any type paramiko supports)."""
    expanded = os.path.expanduser(key_path)
    try:
        pkey = paramiko.PKey.from_path(expanded)
    except OSError as e:
        raise ConfigurationError("ssh_key_path", f"read private key: {e}") from e
    except (paramiko.SSHException, paramiko.UnknownKeyType, ValueError) as e:
        raise ConfigurationError("ssh_key_path", f"parse private key: {e}") from e
    return KeyMaterial(path=expanded, pkey=pkey)


class _AcceptEphemeralHostKey(paramiko.MissingHostKeyPolicy):
    """Accept any host key. See the module docstring for why."""

    def missing_host_key(self, client, hostname, key) -> None:
        logger.debug(
            "ssh_host_key_unverified",
            host=hostname,
            key_type=key.get_name(),
            fingerprint=key.get_fingerprint().hex(),
        )


class _Probe:
    """Bare TCP connection plus SSH banner/kex exchange, no authentication."""

    def __init__(self, host: str, port: int, timeout: float):
        self.host = host
        self.port = port
        self.timeout = timeout
        self._sock: socket.socket | None = None
        self._transport: paramiko.Transport | None = None

    def run(self) -> None:
        self._sock = socket.create_connection((self.host, self.port), timeout=self.timeout)
        self._transport = paramiko.Transport(self._sock)
        self._transport.start_client(timeout=self.timeout)

    def close(self) -> None:
        if self._transport is not None:
            self._transport.close()
        if self._sock is not None:
            self._sock.close()


def _pump(channel: paramiko.Channel, source: BinaryIO | None) -> tuple[bytes, bytes]:
    """Feed ``source`` to the channel while collecting stdout/stderr.

    Sends and reads are interleaved so that neither side can stall on a full
    window. Returns once the remote side has exited and sent EOF.
    """
    stdout = bytearray()
    stderr = bytearray()
    pending = b""

    if source is None:
        channel.shutdown_write()

    while True:
        progressed = False

        if source is not None:
            if channel.exit_status_ready():
                source = None
            elif channel.send_ready():
                if not pending:
                    pending = source.read(CHUNK_SIZE)
                if pending:
                    sent = channel.send(pending)
                    pending = pending[sent:]
                    progressed = True
                else:
                    channel.shutdown_write()
                    source = None

        while channel.recv_ready():
            stdout += channel.recv(CHUNK_SIZE)
            progressed = True
        while channel.recv_stderr_ready():
            stderr += channel.recv_stderr(CHUNK_SIZE)
            progressed = True

        finished = channel.exit_status_ready() and (channel.eof_received or channel.closed)
        if finished and not channel.recv_ready() and not channel.recv_stderr_ready():
            return bytes(stdout), bytes(stderr)

        if not progressed:
            time.sleep(POLL_INTERVAL)


class SSHClient:
    """Runs commands and transfers files on one build host as root."""

    def __init__(
        self,
        host: str,
        key: KeyMaterial,
        port: int = DEFAULT_PORT,
        timeout: float = DEFAULT_TIMEOUT,
        ready_policy: BackoffPolicy = READY_POLICY,
    ):
        self.host = host
        self.port = port
        self.timeout = timeout
        self._key = key
        self._ready_policy = ready_policy

    @classmethod
    def connect(
        cls, host: str, key_path: str, port: int = DEFAULT_PORT, **kwargs
    ) -> "SSHClient":
        """Build a client for ``host``. Loads the key; opens no connection."""
        return cls(host, load_key(key_path), port=port, **kwargs)

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    # ── connection plumbing ───────────────────────────────────────────

    def _new_client(self) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        # No load_system_host_keys(): stale entries from an earlier build of
        # the same address would otherwise fail the handshake.
        client.set_missing_host_key_policy(_AcceptEphemeralHostKey())
        return client

    def _open(self, client: paramiko.SSHClient) -> None:
        try:
            client.connect(
                hostname=self.host,
                port=self.port,
                username=REMOTE_USER,
                pkey=self._key.pkey,
                timeout=self.timeout,
                banner_timeout=self.timeout,
                auth_timeout=self.timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except paramiko.AuthenticationException as e:
            raise ConnectivityError(self.host, f"authenticate as {REMOTE_USER}: {e}") from e
        except TRANSPORT_ERRORS as e:
            raise ConnectivityError(self.host, f"connect to {self.address}: {e}") from e

    async def _in_thread(self, resource, fn: Callable[..., T], *args) -> T:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, functools.partial(fn, resource, *args))
        finally:
            resource.close()

    # ── commands ──────────────────────────────────────────────────────

    def _run_sync(
        self,
        client: paramiko.SSHClient,
        command: str,
        source: BinaryIO | None,
        pty: bool,
    ) -> CommandResult:
        self._open(client)
        try:
            channel = client.get_transport().open_session(timeout=self.timeout)
            if pty:
                channel.get_pty(term=PTY_TERM, width=PTY_COLS, height=PTY_ROWS)
            channel.exec_command(command)
            stdout, stderr = _pump(channel, source)
            exit_code = channel.recv_exit_status()
        except TRANSPORT_ERRORS as e:
            raise ConnectivityError(self.host, f"run command: {e}") from e

        return CommandResult(
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            exit_code=exit_code,
        )

    async def exec(self, command: str) -> CommandResult:
        """Run ``command``; a non-zero exit is returned in the result."""
        logger.debug("ssh_exec", host=self.host, command=command)
        result = await self._in_thread(
            self._new_client(), self._run_sync, command, None, False
        )
        logger.debug("ssh_exec_finished", host=self.host, exit_code=result.exit_code)
        return result

    async def exec_interactive(
        self, command: str, input_stream: bytes | BinaryIO
    ) -> CommandResult:
        """Run ``command`` under a PTY, streaming ``input_stream`` to its stdin.

        With a PTY the remote side merges stderr into stdout.
        """
        source = io.BytesIO(input_stream) if isinstance(input_stream, bytes) else input_stream
        logger.debug("ssh_exec_interactive", host=self.host, command=command)
        return await self._in_thread(
            self._new_client(), self._run_sync, command, source, True
        )

    # ── file transfer ─────────────────────────────────────────────────

    def _upload_sync(self, client: paramiko.SSHClient, local: str, remote: str) -> None:
        self._open(client)
        try:
            with client.open_sftp() as sftp:
                sftp.put(local, remote)
        except TRANSPORT_ERRORS as e:
            raise ConnectivityError(self.host, f"upload {local} -> {remote}: {e}") from e

    def _download_sync(self, client: paramiko.SSHClient, remote: str, local: str) -> None:
        self._open(client)
        try:
            fd = os.open(local, os.O_CREAT | os.O_WRONLY | os.O_TRUNC, DOWNLOAD_MODE)
            with os.fdopen(fd, "wb") as fh, client.open_sftp() as sftp:
                sftp.getfo(remote, fh)
        except TRANSPORT_ERRORS as e:
            raise ConnectivityError(self.host, f"download {remote} -> {local}: {e}") from e

    async def upload_file(self, local_path: str, remote_path: str) -> None:
        """Copy a local file to the host, overwriting ``remote_path``."""
        local = str(Path(local_path).expanduser())
        if not os.path.isfile(local):
            raise ConfigurationError("local_path", f"no such file: {local}")
        await self._in_thread(self._new_client(), self._upload_sync, local, remote_path)
        logger.info("file_uploaded", host=self.host, local=local, remote=remote_path)

    async def download_file(self, remote_path: str, local_path: str) -> None:
        """Copy a remote file to ``local_path`` (mode 0600), overwriting it."""
        local = str(Path(local_path).expanduser())
        await self._in_thread(self._new_client(), self._download_sync, remote_path, local)
        logger.info("file_downloaded", host=self.host, remote=remote_path, local=local)

    # ── readiness ─────────────────────────────────────────────────────

    async def _probe(self) -> None:
        probe = _Probe(self.host, self.port, min(self.timeout, PROBE_TIMEOUT))
        try:
            await self._in_thread(probe, _Probe.run)
        except TRANSPORT_ERRORS as e:
            logger.debug("ssh_not_ready", host=self.host, error=str(e))
            raise ConnectivityError(self.host, str(e) or type(e).__name__) from e

    async def wait_for_ready(self, sleep=asyncio.sleep) -> None:
        """Retry a bare connection until the host's SSH service answers."""
        try:
            await retry_async(self._probe, self._ready_policy, sleep=sleep, name="wait_for_ssh")
        except ConnectivityError as e:
            raise DeadlineExceeded(
                "wait for ssh",
                self.address,
                e.message,
                self._ready_policy.max_elapsed or 0,
            ) from e
        logger.info("ssh_ready", host=self.host, port=self.port)
