"""Run command - Analyze resources and apply accepted plans."""

import asyncio
from pathlib import Path
from typing import Any, Optional

import typer
import yaml
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from weaver.application.factory import OrchestratorFactory
from weaver.application.runner import IntegrationRunner, ProgressUpdate, RunSummary
from weaver.core.domain.lifecycle import ResourceState
from weaver.core.domain.models import AnalysisRecord, Decision, Resource

console = Console()

STATE_STYLES = {
    ResourceState.COMPLETED: "green",
    ResourceState.ROLLED_BACK: "yellow",
    ResourceState.FAILED: "red",
    ResourceState.ANALYZED: "cyan",
}


def load_resources(path: Path) -> list[Resource]:
    """
    Load resources from a YAML or JSON file.

    Accepts either a list of resources or a mapping with a `resources` list.

    Raises:
        ValueError: If the file does not contain a resource list
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if isinstance(data, dict):
        data = data.get("resources")
    if not isinstance(data, list):
        raise ValueError(f"{path} does not contain a list of resources")
    return [Resource.from_dict(item) for item in data]


def _load_context(path: Optional[Path]) -> dict[str, Any]:
    if path is None:
        return {}
    with open(path, encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _print_plan(record: AnalysisRecord) -> None:
    table = Table(title=f"Plan for {record.resource.locator}")
    table.add_column("#", style="dim")
    table.add_column("Step", style="cyan")
    table.add_column("Kind", style="white")
    table.add_column("Reversible", style="white")

    for index, step in enumerate(record.plan.steps, start=1):
        table.add_row(str(index), step.id, step.kind.value, "yes" if step.reversible else "[red]no[/red]")

    console.print(table)
    console.print(f"Estimated risk: [bold]{record.plan.estimated_risk:.2f}[/bold]")


def _print_summary(summary: RunSummary) -> None:
    table = Table(title=f"Session {summary.session_id}")
    table.add_column("Resource", style="cyan")
    table.add_column("State", style="white")
    table.add_column("Verdict", style="white")
    table.add_column("Details", style="dim")

    for snapshot in summary.resources:
        style = STATE_STYLES.get(snapshot.state, "white")
        verdict = ""
        if snapshot.analysis and snapshot.analysis.security_verdict:
            verdict = snapshot.analysis.security_verdict.decision.value
        details = ""
        if snapshot.execution and snapshot.execution.error:
            details = snapshot.execution.error
        elif snapshot.transitions:
            details = snapshot.transitions[-1].reason
        table.add_row(
            snapshot.resource.locator,
            f"[{style}]{snapshot.state.value}[/{style}]",
            verdict,
            details[:80],
        )

    console.print(table)


def run_integration(
    ctx: typer.Context,
    resources_file: Path = typer.Argument(
        ..., exists=True, dir_okay=False, help="YAML/JSON file listing resources"
    ),
    intent: str = typer.Option("", "--intent", "-i", help="What the integration should achieve"),
    project_id: str = typer.Option("default", "--project-id", help="Target project identifier"),
    context_file: Optional[Path] = typer.Option(
        None, "--context", exists=True, dir_okay=False, help="YAML file with project context"
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Accept every approved plan without asking"),
):
    """Analyze resources, confirm approved plans and execute them.

    Examples:
        # Review each approved plan interactively
        weaver run resources.yaml --intent "Add HTTP retries" --project-id my-service

        # Accept every approved plan
        weaver --profile prod run resources.yaml -i "Add HTTP retries" --yes
    """
    global_opts = ctx.obj or {}
    factory = OrchestratorFactory(config_dir=global_opts.get("config_dir", "configs"))

    try:
        resources = load_resources(resources_file)
        session = factory.create_session(
            profile=global_opts.get("profile", "dev"),
            project_id=project_id,
            user_intent=intent,
            project_context=_load_context(context_file),
        )
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    console.print(f"[bold blue]Weaver[/bold blue] session [cyan]{session.session_id}[/cyan]")
    console.print(f"Resources: {len(resources)}  Project: {project_id}")

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
    ) as progress:
        task = progress.add_task("[>] Analyzing...", total=None)

        def progress_callback(update: ProgressUpdate) -> None:
            progress.update(task, description=f"[>] {update.message}")

        def confirm(record: AnalysisRecord) -> Decision:
            if yes:
                return Decision.ACCEPT
            progress.stop()
            _print_plan(record)
            accepted = typer.confirm("Apply this plan?", default=False)
            progress.start()
            return Decision.ACCEPT if accepted else Decision.REJECT

        async def _run() -> RunSummary:
            async with session:
                runner = IntegrationRunner(session)
                return await runner.run(
                    resources,
                    confirm_callback=confirm,
                    progress_callback=progress_callback,
                )

        summary = asyncio.run(_run())

    _print_summary(summary)

    if summary.count(ResourceState.FAILED) or summary.count(ResourceState.ROLLED_BACK):
        raise typer.Exit(1)
