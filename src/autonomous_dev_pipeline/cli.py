"""CLI interface for the Autonomous Dev Pipeline."""

import asyncio
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import load_config
from .errors import EXIT_CONFIGURATION, EXIT_FAILURE, EXIT_SUCCESS, ConfigurationError, PipelineError
from .models import PipelineConfig, StageStatus, TaskStatus, Tier, WorkflowState
from .orchestration.resume import ResumeManager
from .pipeline import WorkflowDriver
from .status_store import load_state
from .tier_resolver import TierResolver
from .tracker import GitHubTracker

console = Console()

TIER_CHOICES = [t.value for t in Tier]


class PipelineGroup(click.Group):
    """Click group that reports usage errors with the configuration exit code."""

    def invoke(self, ctx: click.Context):
        try:
            return super().invoke(ctx)
        except click.UsageError as e:
            e.exit_code = EXIT_CONFIGURATION
            raise


@click.group(cls=PipelineGroup)
@click.version_option(package_name="autonomous-dev-pipeline")
def main():
    """Autonomous Dev Pipeline - resumable issue-to-pull-request workflow."""
    pass


def _status_path(project: Path, config: PipelineConfig, status_file: Optional[str]) -> Path:
    return Path(status_file) if status_file else config.default_status_path(project)


@main.command()
@click.argument('issue_ref', required=False)
@click.option('--base-branch', default='main', help='Branch the pull request targets')
@click.option('--tier', type=click.Choice(TIER_CHOICES), help='Force every stage onto one tier')
@click.option('--status-file', type=click.Path(dir_okay=False), help='Status document path')
@click.option('--resume', is_flag=True, help='Resume the run recorded in the status file')
@click.option('--resume-from', 'resume_from', type=click.Path(file_okay=False),
              help="Resume from a run's log directory")
@click.option('--project', 'project', type=click.Path(exists=True, file_okay=False), default='.',
              help='Repository the issue belongs to')
@click.option('--auto-merge/--no-auto-merge', default=None, help='Merge the PR once review converges')
def run(
    issue_ref: Optional[str],
    base_branch: str,
    tier: Optional[str],
    status_file: Optional[str],
    resume: bool,
    resume_from: Optional[str],
    project: str,
    auto_merge: Optional[bool],
):
    """Run the workflow for ISSUE_REF.

    ISSUE_REF may be omitted when resuming.

    \b
    Exit codes:
      0  completed
      1  stage failure or blocked
      2  a refinement loop hit its iteration cap
      3  argument, configuration, lock or resume error
    """
    project_path = Path(project).resolve()
    try:
        if resume and resume_from:
            raise ConfigurationError("--resume and --resume-from are mutually exclusive")
        if not (resume or resume_from) and not issue_ref:
            raise ConfigurationError("ISSUE_REF is required unless resuming")

        config = load_config(project_path, {"tier_override": tier, "auto_merge": auto_merge})
        status_path = _status_path(project_path, config, status_file)
        driver = WorkflowDriver(project_path, config, GitHubTracker(project_path))

        if resume or resume_from:
            manager = ResumeManager()
            if resume_from:
                context = manager.prepare_resume_from_log_dir(Path(resume_from), status_path)
            else:
                context = manager.prepare_resume(status_path)
            final = asyncio.run(driver.resume(context))
        else:
            console.print(f"[bold]Issue:[/bold] {issue_ref}  [bold]Base:[/bold] {base_branch}")
            if config.tier_override:
                console.print(f"[bold]Tier override:[/bold] {config.tier_override.value}")
            final = asyncio.run(driver.start(issue_ref, base_branch, status_path))
    except PipelineError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(e.exit_code)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user - resume with --resume[/yellow]")
        sys.exit(EXIT_FAILURE)

    console.print(f"[green]Workflow finished:[/green] {final.state.value}")
    sys.exit(EXIT_SUCCESS)


def _render_state(state: WorkflowState) -> None:
    console.print(Panel(
        f"Issue: {state.issue_ref}\n"
        f"State: [bold]{state.state.value}[/bold]\n"
        f"Branch: {state.branch or '-'}\n"
        f"Working tree: {state.working_tree_path or '-'}\n"
        f"Current stage: {state.current_stage or '-'}\n"
        f"Tasks: {state.task_progress()}\n"
        f"Iterations (quality/test/review): "
        f"{state.quality_iterations}/{state.test_iterations}/{state.pr_review_iterations}\n"
        f"Logs: {state.log_dir}"
        + (f"\n[red]Error: {state.error_message}[/red]" if state.error_message else ""),
        title="Workflow"
    ))

    stage_colors = {
        StageStatus.PENDING: "white",
        StageStatus.IN_PROGRESS: "yellow",
        StageStatus.COMPLETED: "green",
    }
    stages = Table(title="Stages")
    stages.add_column("Stage", style="cyan")
    stages.add_column("Status")
    stages.add_column("Details")
    for name, record in state.stages.items():
        color = stage_colors.get(record.status, "white")
        details = ", ".join(f"{k}={v}" for k, v in record.extra_fields().items()
                            if not isinstance(v, (list, dict)))
        stages.add_row(name, f"[{color}]{record.status.value}[/{color}]", details)
    console.print(stages)

    if not state.tasks:
        return

    task_colors = {
        TaskStatus.PENDING: "white",
        TaskStatus.IN_PROGRESS: "yellow",
        TaskStatus.COMPLETED: "green",
        TaskStatus.FAILED: "red",
    }
    tasks = Table(title="Tasks")
    tasks.add_column("ID", justify="right", style="cyan")
    tasks.add_column("Description")
    tasks.add_column("Tier")
    tasks.add_column("Status")
    tasks.add_column("Attempts", justify="right")
    for task in state.tasks:
        color = task_colors.get(task.status, "white")
        tasks.add_row(
            str(task.id),
            task.description,
            task.executor_tier.value,
            f"[{color}]{task.status.value}[/{color}]",
            str(task.review_attempts),
        )
    console.print(tasks)


@main.command()
@click.option('--status-file', type=click.Path(dir_okay=False), help='Status document path')
@click.option('--project', 'project', type=click.Path(exists=True, file_okay=False), default='.')
def status(status_file: Optional[str], project: str):
    """Show the status of the current or last run."""
    project_path = Path(project).resolve()
    try:
        config = load_config(project_path)
        path = _status_path(project_path, config, status_file)
        state = load_state(path)
    except ConfigurationError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(e.exit_code)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(EXIT_CONFIGURATION)

    if state is None:
        console.print(f"[yellow]No status file found at {path}[/yellow]")
        return

    _render_state(state)


@main.command()
@click.argument('stage')
@click.option('--hint', help='Complexity hint (S, M or L)')
@click.option('--override', type=click.Choice(TIER_CHOICES), help='Global tier override')
def tier(stage: str, hint: Optional[str], override: Optional[str]):
    """Show which tier STAGE resolves to, and why."""
    resolver = TierResolver(override=Tier(override) if override else None)
    result = resolver.explain(stage, hint)

    console.print(f"[bold]{stage}[/bold] -> [cyan]{result['tier'].value}[/cyan]")
    for reason in result["reasons"]:
        console.print(f"  - {reason}")


@main.command()
@click.option('--status-file', type=click.Path(dir_okay=False), help='Status document path')
@click.option('--project', 'project', type=click.Path(exists=True, file_okay=False), default='.')
@click.option('--host', default='127.0.0.1', help='Host to bind to')
@click.option('--port', default=8000, help='Port to listen on')
def serve(status_file: Optional[str], project: str, host: str, port: int):
    """Serve a read-only status API for the run.

    \b
    Endpoints:
      /api/status   run summary
      /api/tasks    planned tasks
      /api/events   recent orchestrator events
      /health       liveness check
    """
    from .api import run_server

    project_path = Path(project).resolve()
    try:
        config = load_config(project_path)
    except ConfigurationError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(e.exit_code)
    path = _status_path(project_path, config, status_file)

    console.print(f"[bold]Serving status for[/bold] {path}")
    console.print(f"API: http://{host}:{port}/api/")
    console.print(f"\nPress Ctrl+C to stop\n")

    try:
        run_server(path, host=host, port=port)
    except KeyboardInterrupt:
        console.print("\n[yellow]Server stopped[/yellow]")


if __name__ == "__main__":
    main()
