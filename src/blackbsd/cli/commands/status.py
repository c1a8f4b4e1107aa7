import asyncio

from rich.console import Console
from rich.table import Table
import typer

from blackbsd.cli.common import (
    fail,
    get_console,
    get_hcloud_client,
    get_settings,
    interrupted,
    run_async,
)
from blackbsd.config import Settings
from blackbsd.errors import BlackBSDError
from blackbsd.hcloud import Server


async def list_servers_command(settings: Settings) -> list[Server]:
    async with get_hcloud_client(settings) as client:
        return await client.list_servers()


def print_servers(console: Console, servers: list[Server]) -> None:
    if not servers:
        console.print("No BlackBSD servers found.")
        return

    table = Table(box=None, pad_edge=False, padding=(0, 3, 0, 0))
    for column in ("ID", "NAME", "STATUS", "IPv4", "RESCUE"):
        table.add_column(column, no_wrap=True)
    for server in servers:
        table.add_row(
            str(server.id),
            server.name,
            server.status.value,
            server.public_ipv4 or "",
            "yes" if server.rescue_enabled else "no",
        )
    console.print(table)
    console.print(f"\nFound {len(servers)} BlackBSD server(s).")


def status(ctx: typer.Context):
    """Show BlackBSD build servers"""
    console = get_console()
    try:
        settings = get_settings(ctx)
        servers = run_async(list_servers_command(settings))
    except (KeyboardInterrupt, asyncio.CancelledError):
        interrupted(console)
    except BlackBSDError as e:
        fail(console, e)

    print_servers(console, servers)
