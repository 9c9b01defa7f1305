"""Resume management for interrupted workflow runs.

Handles:
- Locating the status document (default path or a run's log directory)
- Validating it is resumable (fields present, not completed, working tree intact)
- Refusing to replace a status file that belongs to another run
"""

from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.panel import Panel

from ..errors import ResumeValidationError
from ..git_manager import GitManager
from ..models import ResumeContext, StageStatus, WorkflowState, WorkflowStatus
from ..run_logs import RunLogs
from ..status_store import load_state


console = Console()

REQUIRED_FIELDS = ("issue_ref", "branch", "working_tree_path", "current_stage", "log_dir")


class ResumeManager:
    """Validates a prior status document and builds a ResumeContext.

    Single Responsibility: decide whether a run can be resumed and hand the
    driver everything it needs to skip completed work.
    """

    def prepare_resume(self, status_path: Path) -> ResumeContext:
        """Validate a status document for resuming.

        Args:
            status_path: Path to the status document

        Returns:
            ResumeContext for the driver

        Raises:
            ResumeValidationError: If the run cannot be resumed
        """
        status_path = Path(status_path)
        try:
            state = load_state(status_path)
        except ValueError as e:
            raise ResumeValidationError(str(e)) from e
        if state is None:
            raise ResumeValidationError(f"No status file found at {status_path}")

        missing = [name for name in REQUIRED_FIELDS if not getattr(state, name)]
        if missing:
            raise ResumeValidationError(
                f"Status file {status_path} is missing required fields: {', '.join(missing)}"
            )

        if state.state == WorkflowStatus.COMPLETED:
            raise ResumeValidationError(
                f"Workflow for issue {state.issue_ref} already completed; nothing to resume"
            )

        working_tree = Path(state.working_tree_path)
        if not working_tree.is_dir():
            raise ResumeValidationError(f"Working tree {working_tree} no longer exists")
        if not GitManager(working_tree).is_git_repo():
            raise ResumeValidationError(f"Working tree {working_tree} is not a git checkout")

        context = ResumeContext(
            state=state,
            status_path=status_path,
            log_dir=Path(state.log_dir),
        )
        self._show_summary(context)
        return context

    def prepare_resume_from_log_dir(
        self,
        log_dir: Path,
        status_path: Optional[Path] = None,
    ) -> ResumeContext:
        """Resume from a run's log directory.

        The mirrored status.json is validated in place. When ``status_path``
        is given the returned context points there so later saves go to the
        primary location again; a missing primary is rewritten by the driver
        once it holds the lock. An existing primary that records a different
        run is never replaced.
        """
        mirror = RunLogs(Path(log_dir)).status_mirror
        if not mirror.exists():
            raise ResumeValidationError(f"No mirrored status file in {log_dir}")

        context = self.prepare_resume(mirror)
        if status_path is None:
            return context

        status_path = Path(status_path)
        if status_path.resolve() == mirror.resolve():
            return context
        check_same_run(status_path, context.state)
        return ResumeContext(state=context.state, status_path=status_path, log_dir=context.log_dir)

    def _show_summary(self, context: ResumeContext) -> None:
        state = context.state
        completed = [
            name for name, record in state.stages.items()
            if record.status == StageStatus.COMPLETED
        ]
        console.print(Panel(
            f"[yellow]Resuming interrupted workflow[/yellow]\n"
            f"Issue: {state.issue_ref}\n"
            f"Branch: {state.branch}\n"
            f"Previous state: {state.state.value} at stage {state.current_stage}\n"
            f"Completed stages: {', '.join(completed) or 'none'}\n"
            f"Tasks done: {state.task_progress()}\n"
            f"Iterations (quality/test/review): "
            f"{state.quality_iterations}/{state.test_iterations}/{state.pr_review_iterations}",
            title="Resume"
        ))


def check_same_run(status_path: Path, state: WorkflowState) -> None:
    """Refuse to replace a status file that records a different run.

    A missing file passes; the caller may write ``state`` there.

    Raises:
        ResumeValidationError: If ``status_path`` holds another run or cannot be read
    """
    try:
        current = load_state(status_path)
    except ValueError as e:
        raise ResumeValidationError(f"Refusing to replace unreadable status file {status_path}: {e}") from e
    if current is not None and current.log_dir != state.log_dir:
        raise ResumeValidationError(
            f"{status_path} records another run (issue {current.issue_ref}, logs {current.log_dir}); "
            f"continue it with --resume or move it aside first"
        )
