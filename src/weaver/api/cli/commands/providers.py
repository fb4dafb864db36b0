"""Providers command - List and probe tool providers."""

import asyncio

import typer
from rich.console import Console
from rich.table import Table

from weaver.application.factory import OrchestratorFactory
from weaver.core.domain.models import ProviderHealth

app = typer.Typer(help="Tool provider management")
console = Console()

HEALTH_STYLES = {
    ProviderHealth.HEALTHY: "green",
    ProviderHealth.DEGRADED: "yellow",
    ProviderHealth.UNREACHABLE: "red",
}


@app.command("list")
def list_providers(
    ctx: typer.Context,
    probe: bool = typer.Option(False, "--probe", help="Probe each provider before listing"),
):
    """List configured tool providers."""
    global_opts = ctx.obj or {}
    factory = OrchestratorFactory(config_dir=global_opts.get("config_dir", "configs"))
    try:
        session = factory.create_session(profile=global_opts.get("profile", "dev"))
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    client = session.client

    async def _collect():
        try:
            if probe:
                for provider in client.providers():
                    await client.probe(provider.name)
            return client.providers()
        finally:
            await client.close()

    providers = asyncio.run(_collect())

    table = Table(title="Tool Providers")
    table.add_column("Name", style="cyan")
    table.add_column("Operations", style="white")
    table.add_column("Endpoint", style="white")
    table.add_column("Health", style="white")

    for provider in providers:
        style = HEALTH_STYLES[provider.health]
        table.add_row(
            provider.name,
            ", ".join(sorted(provider.supported_operations)),
            provider.endpoint,
            f"[{style}]{provider.health.value}[/{style}]",
        )

    console.print(table)
