import typer

from blackbsd.cli.commands import build, destroy, status, version
from blackbsd.cli.common import CLIState
from blackbsd.config import DEFAULT_CONFIG_FILE

app = typer.Typer(no_args_is_help=True)


@app.callback()
def callback(
    ctx: typer.Context,
    config: str = typer.Option(DEFAULT_CONFIG_FILE, "--config", "-c", help="config file path"),
):
    """
    BlackBSD builds NetBSD-based security images on Hetzner Cloud ephemeral servers.
    """
    ctx.obj = CLIState(config_path=config)


app.command("status")(status.status)
app.command("destroy")(destroy.destroy)
app.command("build")(build.build)
app.command("version")(version.version)
