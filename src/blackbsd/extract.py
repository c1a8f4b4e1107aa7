"""Turn the installed disk into a downloadable artifact."""

from dataclasses import dataclass

from .errors import RemoteCommandError
from .logging_config import get_logger
from .shell import escape_shell_arg, partition_path, validate_path
from .ssh.runner import Runner, run_checked

logger = get_logger(__name__)


@dataclass(frozen=True)
class BuildArtifact:
    """A finished image on the build host."""

    remote_path: str
    size: int
    checksum: str


class Extractor:
    def __init__(self, runner: Runner, device: str):
        validate_path(device)
        self.runner = runner
        self.device = device

    async def extract_raw_image(self, output: str) -> str:
        """Block-copy the whole device into an xz-compressed image at ``output``."""
        validate_path(output)
        command = (
            f"dd if={escape_shell_arg(self.device)} bs=4M status=progress"
            f" | xz -T0 -9 > {escape_shell_arg(output)}"
        )
        await run_checked(self.runner, command, "extract raw image")
        logger.info("raw_image_extracted", device=self.device, output=output)
        return output

    async def extract_iso(self, mount_point: str, output: str) -> str:
        """Build a bootable ISO from the first partition of the device.

        The partition is mounted read-only at ``mount_point`` and unmounted
        again whether or not xorriso succeeds.
        """
        validate_path(mount_point)
        validate_path(output)
        partition = partition_path(self.device)
        mnt = escape_shell_arg(mount_point)

        await run_checked(
            self.runner,
            f"mount -r {escape_shell_arg(partition)} {mnt}",
            "mount installed partition",
        )
        try:
            await run_checked(
                self.runner,
                f"xorriso -as mkisofs -o {escape_shell_arg(output)}"
                f" -b boot/cdboot -no-emul-boot {mnt}",
                "create iso",
            )
        finally:
            umount = await self.runner.exec(f"umount {mnt}")
            if not umount.success:
                logger.warning("umount_failed", mount_point=mount_point, stderr=umount.stderr)

        logger.info("iso_extracted", partition=partition, output=output)
        return output

    async def image_size(self, path: str) -> int:
        validate_path(path)
        command = f"stat -c %s {escape_shell_arg(path)}"
        result = await run_checked(self.runner, command, f"stat {path}")
        try:
            return int(result.stdout.strip())
        except ValueError as e:
            raise RemoteCommandError(
                f"stat {path}", command, result.exit_code, f"unexpected output: {result.stdout!r}"
            ) from e

    async def checksum(self, path: str) -> str:
        """SHA-256 of a remote file, as lowercase hex."""
        validate_path(path)
        command = f"sha256sum {escape_shell_arg(path)}"
        result = await run_checked(self.runner, command, f"checksum {path}")
        fields = result.stdout.split()
        if not fields:
            raise RemoteCommandError(
                f"checksum {path}", command, result.exit_code, "empty output"
            )
        return fields[0]

    async def verify(self, path: str) -> BuildArtifact:
        """Measure an artifact. An empty file means the extraction failed."""
        size = await self.image_size(path)
        if size == 0:
            raise RemoteCommandError(f"verify {path}", f"stat -c %s {path}", 0, "artifact is empty")
        digest = await self.checksum(path)
        logger.info("artifact_verified", path=path, size=size, sha256=digest)
        return BuildArtifact(remote_path=path, size=size, checksum=digest)
