"""Post-install customization of a NetBSD host: branding, networking, packages."""

from collections.abc import Iterable
from typing import TYPE_CHECKING

from .logging_config import get_logger
from .shell import escape_shell_arg
from .ssh.runner import Runner, run_checked

if TYPE_CHECKING:
    from .config import Branding

logger = get_logger(__name__)

DEFAULT_SECURITY_TOOLS = (
    "nmap",
    "wireshark",
    "metasploit",
    "aircrack-ng",
    "snort",
    "hydra",
    "john",
    "tcpdump",
    "netcat",
    "socat",
)

# useradd(8) exit status for "username already in use".
# NOTE: tool- and OS-specific; NetBSD's useradd does not document it.
USER_EXISTS_EXIT_CODE = 9

NAMESERVERS = ("1.1.1.1", "8.8.8.8")


class Customizer:
    """Applies branding, packages and networking to a remote NetBSD host."""

    def __init__(self, runner: Runner):
        self.runner = runner

    async def apply_branding(self, branding: "Branding") -> None:
        """Set hostname and MOTD, then create the default user."""
        await self.set_hostname(branding.hostname)
        await self.write_motd(branding.motd)
        await self.create_user(branding.default_user)

    async def set_hostname(self, hostname: str) -> None:
        command = f"echo hostname={escape_shell_arg(hostname)} >> /etc/rc.conf"
        await run_checked(self.runner, command, "set hostname")
        logger.info("hostname_set", hostname=hostname)

    async def write_motd(self, motd: str) -> None:
        # %s prints the argument verbatim; only the format string is interpreted.
        command = f"printf %s {escape_shell_arg(motd)} > /etc/motd"
        await run_checked(self.runner, command, "write motd")

    async def create_user(self, username: str) -> bool:
        """Create ``username`` in group wheel. Returns False if it already existed."""
        command = f"useradd -m -G wheel {escape_shell_arg(username)}"
        result = await run_checked(
            self.runner,
            command,
            f"create user {username}",
            allowed_exit_codes=(USER_EXISTS_EXIT_CODE,),
        )
        if result.exit_code == USER_EXISTS_EXIT_CODE:
            logger.info("user_already_exists", username=username)
            return False
        logger.info("user_created", username=username)
        return True

    async def configure_networking(self) -> None:
        """Enable DHCP on boot and write a static resolv.conf."""
        await run_checked(self.runner, 'echo "dhcpcd=YES" >> /etc/rc.conf', "enable dhcp")

        lines = "\n".join(f"nameserver {ns}" for ns in NAMESERVERS)
        command = f"cat > /etc/resolv.conf << 'RESOLVEOF'\n{lines}\nRESOLVEOF"
        await run_checked(self.runner, command, "write resolv.conf")
        logger.info("networking_configured", nameservers=list(NAMESERVERS))

    async def install_packages(self, packages: Iterable[str]) -> None:
        """Install packages one at a time, stopping at the first failure."""
        for package in packages:
            await run_checked(
                self.runner,
                f"pkg_add -v {escape_shell_arg(package)}",
                f"install package {package}",
            )
            logger.info("package_installed", package=package)
