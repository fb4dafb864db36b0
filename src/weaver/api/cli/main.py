"""Weaver CLI entry point."""

import logging

import structlog
import typer
from rich.console import Console

from weaver.api.cli.commands import providers, run, scan

app = typer.Typer(
    name="weaver",
    help="Weaver - integrate discovered repositories, packages and APIs into a project",
    add_completion=True,
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()

# Register commands
app.command("run", help="Analyze resources and apply accepted plans")(run.run_integration)
app.command("scan", help="Find resources in a text file")(scan.scan_file)
app.add_typer(providers.app, name="providers", help="Tool provider management")


def configure_logging(debug: bool) -> None:
    """Route structlog through a level filter (DEBUG with --debug, WARNING otherwise)."""
    level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(level=level, format="%(message)s")
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(level),
    )


@app.callback()
def main(
    ctx: typer.Context,
    profile: str = typer.Option("dev", "--profile", "-p", help="Configuration profile"),
    config_dir: str = typer.Option("configs", "--config-dir", help="Directory with profile YAML files"),
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging"),
):
    """Weaver orchestration CLI."""
    configure_logging(debug)
    # Store global options in context for subcommands
    ctx.obj = {"profile": profile, "config_dir": config_dir, "debug": debug}


@app.command()
def version():
    """Show Weaver version."""
    from weaver import __version__

    console.print(f"[bold blue]Weaver[/bold blue] version [cyan]{__version__}[/cyan]")


if __name__ == "__main__":
    app()
