"""NetBSD installation via QEMU inside the rescue system."""

import asyncio
import posixpath

from .errors import DeadlineExceeded, RemoteCommandError
from .logging_config import get_logger
from .shell import escape_shell_arg, validate_path
from .ssh.runner import InteractiveRunner, run_checked

logger = get_logger(__name__)

QEMU_TIMEOUT = 15 * 60
ISO_URL_TEMPLATE = (
    "https://cdn.netbsd.org/pub/NetBSD/NetBSD-{version}/{arch}/installation/cdrom/boot-com.iso"
)


class Installer:
    """Downloads the serial-console boot ISO and installs NetBSD onto a disk.

    The install runs QEMU with KVM against the raw target device; the
    installer is driven over QEMU's serial console through a PTY.
    """

    def __init__(
        self,
        runner: InteractiveRunner,
        version: str = "10.1",
        arch: str = "amd64",
        timeout: float = QEMU_TIMEOUT,
    ):
        self.runner = runner
        self.version = version
        self.arch = arch
        self.timeout = timeout

    def iso_download_url(self) -> str:
        return ISO_URL_TEMPLATE.format(version=self.version, arch=self.arch)

    async def download_iso(self, dest_dir: str) -> str:
        """Fetch the boot ISO into ``dest_dir`` on the remote host, returning its path."""
        iso_path = posixpath.join(dest_dir, f"netbsd-{self.version}-{self.arch}.iso")
        validate_path(iso_path)

        command = (
            f"wget -O {escape_shell_arg(iso_path)} {escape_shell_arg(self.iso_download_url())}"
        )
        await run_checked(self.runner, command, "download iso")
        logger.info("iso_downloaded", path=iso_path, url=self.iso_download_url())
        return iso_path

    def qemu_command(self, iso_path: str, device: str) -> str:
        return (
            "qemu-system-x86_64 -enable-kvm -m 4G -smp 4 "
            f"-cdrom {escape_shell_arg(iso_path)} -boot d "
            f"-drive file={escape_shell_arg(device)},format=raw "
            "-nographic -serial mon:stdio"
        )

    async def install_via_qemu(
        self, iso_path: str, device: str, console_input: bytes = b""
    ) -> None:
        """Boot the ISO in QEMU and install onto ``device``.

        ``console_input`` is streamed to the serial console. Exceeding the
        install timeout aborts QEMU and raises ``DeadlineExceeded``.
        """
        validate_path(iso_path)
        validate_path(device)
        command = self.qemu_command(iso_path, device)

        logger.info("qemu_install_started", device=device, timeout=self.timeout)
        try:
            result = await asyncio.wait_for(
                self.runner.exec_interactive(command, console_input), timeout=self.timeout
            )
        except TimeoutError as e:
            raise DeadlineExceeded("run qemu install", device, "installer running", self.timeout) from e

        if not result.success:
            # PTY sessions merge stderr into stdout
            detail = result.stderr or result.stdout[-2000:]
            raise RemoteCommandError("run qemu install", command, result.exit_code, detail)
        logger.info("qemu_install_finished", device=device)
