import asyncio

from rich.console import Console
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
from blackbsd.errors import BlackBSDError, BuildError
from blackbsd.pipeline import BuildPipeline, BuildReport
from blackbsd.ssh import load_key


async def build_command(settings: Settings) -> BuildReport:
    key = load_key(settings.ssh_key_path)
    async with get_hcloud_client(settings) as client:
        return await BuildPipeline(settings, client, key).run()


def print_report(console: Console, report: BuildReport) -> None:
    console.print("[bold green]✓ Build complete[/bold green]")
    for artifact in report.artifacts:
        console.print(f"  [cyan]{artifact.remote_path}[/cyan]  {artifact.size} bytes")
        console.print(f"    sha256 {artifact.checksum}")
    for path in report.downloads:
        console.print(f"  downloaded to [magenta]{path}[/magenta]")


def build(
    ctx: typer.Context,
    download_to: str | None = typer.Option(
        None, "--download-to", help="Download artifacts to this local directory"
    ),
):
    """Build a BlackBSD image on a fresh Hetzner server"""
    console = get_console()
    try:
        settings = get_settings(ctx)
        if download_to:
            settings = settings.model_copy(update={"download_dir": download_to})
        report = run_async(build_command(settings))
    except (KeyboardInterrupt, asyncio.CancelledError):
        interrupted(console)
    except BuildError as e:
        if e.server_id is not None:
            console.print(
                f"[yellow]Server {e.server_id} was left running for inspection; "
                "remove it with 'blackbsd destroy'.[/yellow]"
            )
        fail(console, e)
    except BlackBSDError as e:
        fail(console, e)

    print_report(console, report)
