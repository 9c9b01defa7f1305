"""Per-task implement -> review cycle followed by quality refinement.

A task that exhausts its attempt cap is marked failed and the caller moves
on to the next task; only a quality-loop iteration cap is fatal.
"""

from typing import Callable, Optional

from rich.console import Console
from rich.panel import Panel

from ..errors import StageError
from ..git_manager import GitError
from ..models import LoopKind, PipelineConfig, TaskRecord, TaskStatus
from ..protocols import GitOperations
from ..run_logs import RunLogs
from ..schemas import ImplementResult, ReviewVerdict
from ..status_store import StatusStore
from .convergence import CheckResult, ConvergenceLoop
from .invoker import StageInvoker
from .refinement import QualityLoopSteps


console = Console()

Announce = Callable[[str], None]


class TaskImplementer:
    """Implements planned tasks one at a time.

    Single Responsibility: drive one task from pending to completed or
    failed, persisting every step so a resumed run picks up mid-task.
    """

    def __init__(
        self,
        store: StatusStore,
        invoker: StageInvoker,
        git: GitOperations,
        config: PipelineConfig,
        logs: RunLogs,
        announce: Announce,
    ):
        self.store = store
        self.invoker = invoker
        self.git = git
        self.config = config
        self.logs = logs
        self.announce = announce

    async def run_task(self, task: TaskRecord, issue_title: str) -> TaskStatus:
        """Run a task to completion or failure.

        Returns:
            Final task status (COMPLETED or FAILED)

        Raises:
            IterationCapExceeded: If the quality loop for this task deadlocks
            StageError: If the approved changes cannot be committed
        """
        if task.status in (TaskStatus.COMPLETED, TaskStatus.FAILED):
            return task.status

        total = len(self.store.state.tasks)
        console.print(Panel(
            f"[bold green]Task {task.id}/{total}:[/bold green] {task.description}\n"
            f"[bold blue]Tier:[/bold blue] {task.executor_tier.value}",
            title="Implement"
        ))
        self.store.set_task_status(task.id, TaskStatus.IN_PROGRESS)

        if not task.review_approved and not await self._implement_until_approved(task, issue_title):
            self.store.set_task_status(task.id, TaskStatus.FAILED)
            self.logs.log_event(
                "task_failed", task_id=task.id, attempts=task.review_attempts,
                feedback=task.last_feedback,
            )
            console.print(
                f"[red]Task {task.id} failed after {task.review_attempts} attempt(s) - continuing[/red]"
            )
            self.announce(
                f"Task {task.id} could not be completed after {task.review_attempts} "
                f"attempt(s) and was skipped: {task.description}"
            )
            return TaskStatus.FAILED

        await self._refine_quality(task)

        try:
            commit_hash = self.git.commit_all(
                f"feat: task {task.id} - {task.description[:60]}\n\n"
                f"Issue {self.store.state.issue_ref}"
            )
        except GitError as e:
            raise StageError(f"commit-task-{task.id}", str(e)) from e
        self.store.set_task_status(task.id, TaskStatus.COMPLETED)
        self.logs.log_event("task_complete", task_id=task.id, commit=commit_hash)
        console.print(f"[green]OK[/green] Task {task.id} completed")
        self.announce(f"Task {task.id} completed: {task.description}")
        return TaskStatus.COMPLETED

    async def _implement_until_approved(self, task: TaskRecord, issue_title: str) -> bool:
        max_attempts = self.config.limits.task_attempts

        while task.review_attempts < max_attempts:
            attempt = task.review_attempts + 1
            feedback = task.last_feedback
            feedback_text = (
                f"A previous attempt was rejected. Reviewer feedback:\n{feedback}"
                if feedback else ""
            )

            try:
                await self.invoker.call(
                    f"implement-task-{task.id}-attempt-{attempt}",
                    "implement",
                    ImplementResult,
                    tier=task.executor_tier,
                    issue_title=issue_title,
                    task_id=task.id,
                    task_description=task.description,
                    feedback=feedback_text,
                )
                verdict = await self.invoker.call(
                    f"task-review-task-{task.id}-attempt-{attempt}",
                    "task_review",
                    ReviewVerdict,
                    issue_title=issue_title,
                    task_id=task.id,
                    task_description=task.description,
                )
            except StageError as e:
                console.print(f"[yellow]Task {task.id} attempt {attempt} failed: {e}[/yellow]")
                self.store.update_task(
                    task.id, review_attempts=attempt, last_feedback=f"Attempt failed: {e.message}"
                )
                continue

            if verdict.approved:
                self.store.update_task(
                    task.id, review_attempts=attempt, review_approved=True, last_feedback=None
                )
                return True

            self.store.update_task(
                task.id,
                review_attempts=attempt,
                last_feedback="\n".join(filter(None, [verdict.feedback, *verdict.issues])),
            )

        return False

    async def _refine_quality(self, task: TaskRecord) -> None:
        async def on_iteration(iteration: int, result: CheckResult) -> None:
            self.store.update_task(task.id, quality_iterations=iteration)
            self.logs.log_event(
                "loop_iteration", loop=LoopKind.QUALITY.value, task_id=task.id,
                iteration=iteration, verdict=result.verdict,
            )
            self.announce(
                f"Quality review of task {task.id}, iteration {iteration}: {result.verdict}"
            )

        loop = ConvergenceLoop(
            store=self.store,
            kind=LoopKind.QUALITY,
            max_iterations=self.config.limits.quality,
            steps=QualityLoopSteps(self.invoker, task),
            on_iteration=on_iteration,
            start_iteration=task.quality_iterations,
        )
        await loop.run()


def describe_failed_tasks(tasks: list[TaskRecord]) -> Optional[str]:
    """Markdown list of failed tasks, or None if there are none."""
    failed = [t for t in tasks if t.status == TaskStatus.FAILED]
    if not failed:
        return None
    return "\n".join(f"- Task {t.id}: {t.description}" for t in failed)
