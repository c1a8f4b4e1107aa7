import asyncio

from rich.console import Console
from rich.markup import escape
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
from blackbsd.pipeline import destroy_servers


async def destroy_command(settings: Settings, console: Console) -> int:
    """Delete every labelled server, printing one line per server.

    Returns the number of servers found.
    """
    async with get_hcloud_client(settings) as client:
        servers = await client.list_servers()
        if not servers:
            console.print("No BlackBSD servers to destroy.")
            return 0

        console.print(f"Destroying {len(servers)} BlackBSD server(s)...")
        async for outcome in destroy_servers(client, servers):
            server = outcome.server
            console.print(f"  {server.name} ({server.id})... {escape(outcome.describe())}")

    console.print("\nDone.")
    return len(servers)


def destroy(ctx: typer.Context):
    """Destroy BlackBSD build servers"""
    console = get_console()
    try:
        settings = get_settings(ctx)
        run_async(destroy_command(settings, console))
    except (KeyboardInterrupt, asyncio.CancelledError):
        interrupted(console)
    except BlackBSDError as e:
        fail(console, e)
