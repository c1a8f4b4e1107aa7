import pytest

from blackbsd.config import Branding
from blackbsd.customize import DEFAULT_SECURITY_TOOLS, Customizer
from blackbsd.errors import RemoteCommandError
from blackbsd.ssh import CommandResult


@pytest.fixture
def customizer(fake_runner):
    return Customizer(fake_runner)


class TestBranding:
    @pytest.mark.asyncio
    async def test_apply_branding_commands(self, customizer, fake_runner):
        await customizer.apply_branding(
            Branding(hostname="blackbsd", motd="Welcome", default_user="security")
        )

        assert fake_runner.commands == [
            "echo hostname='blackbsd' >> /etc/rc.conf",
            "printf %s 'Welcome' > /etc/motd",
            "useradd -m -G wheel 'security'",
        ]

    @pytest.mark.asyncio
    async def test_hostile_values_are_quoted(self, customizer, fake_runner):
        await customizer.set_hostname("x; rm -rf /")
        await customizer.create_user("$(id)")

        assert fake_runner.commands == [
            "echo hostname='x; rm -rf /' >> /etc/rc.conf",
            "useradd -m -G wheel '$(id)'",
        ]

    @pytest.mark.asyncio
    async def test_motd_is_passed_verbatim(self, customizer, fake_runner):
        await customizer.write_motd("100% it's \\n done")

        assert fake_runner.commands == ["printf %s '100% it'\\''s \\n done' > /etc/motd"]

    @pytest.mark.asyncio
    async def test_existing_user_is_tolerated(self, customizer, fake_runner):
        fake_runner.respond("useradd", CommandResult(stderr="user exists", exit_code=9))

        assert await customizer.create_user("security") is False

    @pytest.mark.asyncio
    async def test_other_useradd_failure_is_fatal(self, customizer, fake_runner):
        fake_runner.respond("useradd", CommandResult(stderr="no such group", exit_code=6))

        with pytest.raises(RemoteCommandError) as exc_info:
            await customizer.create_user("security")
        assert exc_info.value.exit_code == 6  # noqa: PLR2004

    @pytest.mark.asyncio
    async def test_hostname_failure_stops_branding(self, customizer, fake_runner):
        fake_runner.respond("hostname=", CommandResult(stderr="read-only", exit_code=1))

        with pytest.raises(RemoteCommandError):
            await customizer.apply_branding(Branding())
        assert len(fake_runner.commands) == 1


class TestNetworking:
    @pytest.mark.asyncio
    async def test_enables_dhcp_and_writes_resolvers(self, customizer, fake_runner):
        await customizer.configure_networking()

        dhcp, resolv = fake_runner.commands
        assert dhcp == 'echo "dhcpcd=YES" >> /etc/rc.conf'
        assert resolv.startswith("cat > /etc/resolv.conf")
        assert "nameserver 1.1.1.1\nnameserver 8.8.8.8" in resolv


class TestPackages:
    @pytest.mark.asyncio
    async def test_installs_each_package(self, customizer, fake_runner):
        await customizer.install_packages(["nmap", "tcpdump"])

        assert fake_runner.commands == ["pkg_add -v 'nmap'", "pkg_add -v 'tcpdump'"]

    @pytest.mark.asyncio
    async def test_stops_at_first_failure(self, customizer, fake_runner):
        fake_runner.respond("'wireshark'", CommandResult(stderr="not found", exit_code=1))

        with pytest.raises(RemoteCommandError) as exc_info:
            await customizer.install_packages(["nmap", "wireshark", "hydra"])

        assert len(fake_runner.commands) == 2  # noqa: PLR2004
        assert "wireshark" in str(exc_info.value)

    def test_default_tools(self):
        assert DEFAULT_SECURITY_TOOLS[0] == "nmap"
        assert len(DEFAULT_SECURITY_TOOLS) == 10  # noqa: PLR2004
