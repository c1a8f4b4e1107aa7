"""Build pipeline: provision, rescue-boot, install, customize, extract, destroy.

Stages run strictly in order. Any failure aborts the build with a
``BuildError`` naming the stage; nothing is rolled back, so a failed server
stays up for inspection until ``blackbsd destroy`` removes it.
"""

import os
import posixpath
import time
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum

from .config import Settings
from .customize import Customizer
from .errors import BuildError, ProviderError
from .extract import BuildArtifact, Extractor
from .hcloud import CreateServerOpts, HetznerClient, Server, ServerStatus, SSHKey
from .logging_config import bind_build_context, clear_build_context, get_logger
from .netbsd import Installer
from .ssh import KeyMaterial, SSHClient

logger = get_logger(__name__)

SSH_KEY_NAME = "blackbsd-builder"
SERVER_NAME_PREFIX = "blackbsd-build"


class Stage(str, Enum):
    PROVISION = "provision"
    AWAIT_RUNNING = "await_running"
    ENABLE_RESCUE = "enable_rescue"
    INSTALL = "install"
    CUSTOMIZE = "customize"
    EXTRACT = "extract"
    DESTROY = "destroy"


@dataclass
class BuildReport:
    server: Server
    artifacts: list[BuildArtifact] = field(default_factory=list)
    downloads: list[str] = field(default_factory=list)
    stages_completed: list[Stage] = field(default_factory=list)


SSHFactory = Callable[[str, KeyMaterial], SSHClient]


def default_server_name() -> str:
    return f"{SERVER_NAME_PREFIX}-{int(time.time())}"


class BuildPipeline:
    """Drives one build from an empty account to a verified artifact.

    Args:
        settings: Validated build configuration.
        hcloud: Provider client; the caller owns its lifetime.
        key: Key registered with the provider and used for root login.
        ssh_factory: Builds the SSH client for the rescue host.
        server_name: Name for the build server.
        console_input: Bytes streamed to the installer's serial console.
    """

    def __init__(
        self,
        settings: Settings,
        hcloud: HetznerClient,
        key: KeyMaterial,
        ssh_factory: SSHFactory = SSHClient,
        server_name: str | None = None,
        console_input: bytes = b"",
    ):
        self.settings = settings
        self.hcloud = hcloud
        self.key = key
        self.ssh_factory = ssh_factory
        self.server_name = server_name or default_server_name()
        self.console_input = console_input

        self._server: Server | None = None
        self._completed: list[Stage] = []

    @asynccontextmanager
    async def _stage(self, stage: Stage) -> AsyncIterator[None]:
        bind_build_context(stage=stage.value)
        logger.info("stage_started")
        started = time.monotonic()
        try:
            yield
        except BuildError:
            raise
        except Exception as e:
            server_id = self._server.id if self._server else None
            logger.error("stage_failed", error=str(e), error_type=type(e).__name__)
            raise BuildError(stage.value, server_id, e) from e
        self._completed.append(stage)
        logger.info("stage_completed", duration_s=round(time.monotonic() - started, 1))

    async def run(self) -> BuildReport:
        """Run every stage. Raises ``BuildError`` on the first failure."""
        bind_build_context(build=self.server_name)
        try:
            return await self._run()
        finally:
            clear_build_context()

    async def _run(self) -> BuildReport:
        async with self._stage(Stage.PROVISION):
            ssh_key = await self._register_key()
            self._server = await self.hcloud.create_server(
                CreateServerOpts(
                    name=self.server_name,
                    server_type=self.settings.server_type,
                    image=self.settings.image,
                    location=self.settings.location,
                    ssh_key_ids=[ssh_key.id],
                )
            )
            bind_build_context(server_id=self._server.id)

        async with self._stage(Stage.AWAIT_RUNNING):
            self._server = await self.hcloud.wait_for_server_status(
                self._server.id, ServerStatus.RUNNING
            )

        async with self._stage(Stage.ENABLE_RESCUE):
            ssh = await self._boot_rescue(ssh_key)

        async with self._stage(Stage.INSTALL):
            installer = Installer(
                ssh, version=self.settings.netbsd_version, arch=self.settings.netbsd_arch
            )
            iso_path = await installer.download_iso(self.settings.work_dir)
            await installer.install_via_qemu(
                iso_path, self.settings.target_device, self.console_input
            )

        async with self._stage(Stage.CUSTOMIZE):
            customizer = Customizer(ssh)
            await customizer.apply_branding(self.settings.branding)
            await customizer.configure_networking()
            await customizer.install_packages(self.settings.packages)

        report = BuildReport(server=self._server, stages_completed=self._completed)

        async with self._stage(Stage.EXTRACT):
            report.artifacts = await self._extract(ssh)
            if self.settings.download_dir:
                report.downloads = await self._download(ssh, report.artifacts)

        async with self._stage(Stage.DESTROY):
            await self.hcloud.delete_server(self._server)

        logger.info(
            "build_completed",
            artifacts=[a.remote_path for a in report.artifacts],
            downloads=report.downloads,
        )
        return report

    async def _register_key(self) -> SSHKey:
        existing = await self.hcloud.find_ssh_key_by_fingerprint(self.key.fingerprint)
        if existing is not None:
            logger.info("ssh_key_reused", key_id=existing.id, name=existing.name)
            return existing
        return await self.hcloud.ensure_ssh_key(SSH_KEY_NAME, self.key.public_key)

    async def _boot_rescue(self, ssh_key: SSHKey) -> SSHClient:
        server = self._server
        result = await self.hcloud.enable_rescue(server, [ssh_key.id])
        if not result.ok:
            raise result.error

        await self.hcloud.wait_for_action(result.value.action)
        reset = await self.hcloud.reset(server)
        await self.hcloud.wait_for_action(reset)

        self._server = await self.hcloud.wait_for_server_status(server.id, ServerStatus.RUNNING)
        if not self._server.public_ipv4:
            raise ProviderError(
                f"boot rescue for server {server.id}", "server has no public IPv4 address"
            )

        ssh = self.ssh_factory(self._server.public_ipv4, self.key)
        await ssh.wait_for_ready()
        return ssh

    def _artifact_path(self, suffix: str) -> str:
        name = f"blackbsd-{self.settings.netbsd_version}-{self.settings.netbsd_arch}{suffix}"
        return posixpath.join(self.settings.work_dir, name)

    async def _extract(self, ssh: SSHClient) -> list[BuildArtifact]:
        extractor = Extractor(ssh, self.settings.target_device)
        outputs = []
        # Raw copy first: it reads the whole device and must not race the ISO mount.
        if self.settings.output_raw:
            outputs.append(await extractor.extract_raw_image(self._artifact_path(".img.xz")))
        if self.settings.output_iso:
            outputs.append(
                await extractor.extract_iso(self.settings.mount_point, self._artifact_path(".iso"))
            )
        return [await extractor.verify(path) for path in outputs]

    async def _download(self, ssh: SSHClient, artifacts: Sequence[BuildArtifact]) -> list[str]:
        local_dir = os.path.expanduser(self.settings.download_dir)
        os.makedirs(local_dir, exist_ok=True)
        downloads = []
        for artifact in artifacts:
            local = os.path.join(local_dir, posixpath.basename(artifact.remote_path))
            await ssh.download_file(artifact.remote_path, local)
            downloads.append(local)
        return downloads


@dataclass(frozen=True)
class DestroyOutcome:
    server: Server
    deleted: bool = False
    error: Exception | None = None

    def describe(self) -> str:
        if self.error is not None:
            return f"error: {self.error}"
        return "destroyed" if self.deleted else "not found (skipped)"


async def destroy_servers(
    hcloud: HetznerClient, servers: Sequence[Server]
) -> AsyncIterator[DestroyOutcome]:
    """Delete ``servers`` one at a time in the given order.

    Each outcome is yielded before the next delete starts; a failed delete is
    reported and does not stop the others.
    """
    for server in servers:
        try:
            deleted = await hcloud.delete_server(server)
        except ProviderError as e:
            logger.warning("server_destroy_failed", server_id=server.id, error=str(e))
            yield DestroyOutcome(server=server, error=e)
            continue
        yield DestroyOutcome(server=server, deleted=deleted)
