import asyncio
import signal
import threading
from collections.abc import Coroutine
from dataclasses import dataclass
from typing import Any, NoReturn, TypeVar

from rich.console import Console
from rich.markup import escape
import typer

from blackbsd.config import DEFAULT_CONFIG_FILE, Settings, load_settings
from blackbsd.hcloud import HetznerClient
from blackbsd.logging_config import setup_logging

T = TypeVar("T")

EXIT_INTERRUPTED = 130


@dataclass
class CLIState:
    config_path: str = DEFAULT_CONFIG_FILE


def get_console() -> Console:
    return Console(highlight=False)


def get_settings(ctx: typer.Context) -> Settings:
    """Load the config named by ``--config`` and configure logging from it."""
    state = ctx.find_object(CLIState) or CLIState()
    settings = load_settings(state.config_path)
    setup_logging(log_format=settings.log_format, log_level=settings.log_level)
    return settings


def get_hcloud_client(settings: Settings) -> HetznerClient:
    return HetznerClient(settings.hcloud_token)


def run_async(coro: Coroutine[Any, Any, T]) -> T:
    """``asyncio.run`` that also turns SIGTERM into task cancellation.

    SIGINT is already handled by ``asyncio.run``; it cancels the main task and
    surfaces as ``KeyboardInterrupt``.
    """

    async def main() -> T:
        if threading.current_thread() is not threading.main_thread():
            return await coro
        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGTERM, asyncio.current_task().cancel)
        try:
            return await coro
        finally:
            loop.remove_signal_handler(signal.SIGTERM)

    return asyncio.run(main())


def fail(console: Console, error: BaseException) -> NoReturn:
    console.print(f"[bold red]Error:[/bold red] {escape(str(error))}")
    raise typer.Exit(code=1) from None


def interrupted(console: Console) -> NoReturn:
    console.print("[yellow]Interrupted.[/yellow]")
    raise typer.Exit(code=EXIT_INTERRUPTED) from None
