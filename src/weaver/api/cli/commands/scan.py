"""Scan command - Find resources in text."""

from pathlib import Path
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from weaver.infrastructure.discovery.pattern_scanner import scan_text

console = Console()


def scan_file(
    source: Path = typer.Argument(..., exists=True, dir_okay=False, help="Text file to scan"),
    output: Optional[Path] = typer.Option(
        None, "--output", "-o", help="Write resources as YAML (input for `weaver run`)"
    ),
):
    """List repositories, packages and APIs mentioned in a file."""
    resources = scan_text(source.read_text(encoding="utf-8"))

    if not resources:
        console.print("[yellow]No resources found[/yellow]")
        raise typer.Exit(0)

    table = Table(title=f"Resources in {source.name}")
    table.add_column("Id", style="cyan")
    table.add_column("Kind", style="white")
    table.add_column("Locator", style="white")

    for resource in resources:
        table.add_row(resource.id, resource.kind.value, resource.locator)

    console.print(table)

    if output:
        with open(output, "w", encoding="utf-8") as f:
            yaml.safe_dump(
                {"resources": [resource.to_dict() for resource in resources]},
                f,
                default_flow_style=False,
                sort_keys=False,
            )
        console.print(f"Wrote {len(resources)} resource(s) to [cyan]{output}[/cyan]")
