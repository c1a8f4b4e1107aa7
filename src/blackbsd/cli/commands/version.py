import typer

from blackbsd.version import VersionInfo


def version(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Include commit and build date"),
):
    """Show version information"""
    info = VersionInfo.detect()
    typer.echo(info.display)
    if verbose:
        typer.echo(f"commit: {info.commit}")
        typer.echo(f"built:  {info.build_date}")
