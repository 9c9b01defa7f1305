"""Workflow driver - runs one issue through every stage to a pull request.

Stages run strictly in STAGE_ORDER. A stage already marked completed in the
status document is never re-run, so resuming an interrupted run only repeats
the stage that was in progress when it stopped.
"""

import asyncio
import re
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from rich.console import Console
from rich.panel import Panel

from .errors import IterationCapExceeded, PipelineError, StageError, TrackerError, WorkflowBlocked
from .executor import ClaudeCLIBackend, ExecutorBackend, TaskRunner
from .git_manager import GitError, GitManager
from .lock import LockManager, lock_path_for
from .models import (
    LoopKind, PipelineConfig, ResumeContext, StageName, STAGE_ORDER,
    TaskRecord, TaskStatus, WorkflowState, WorkflowStatus,
)
from .orchestration.convergence import CheckResult, ConvergenceLoop
from .orchestration.invoker import StageInvoker
from .orchestration.refinement import PRReviewLoopSteps, TestLoopSteps
from .orchestration.resume import check_same_run
from .orchestration.task_cycle import TaskImplementer, describe_failed_tasks
from .prompts import PromptLibrary
from .protocols import GitOperations, IssueTracker
from .run_logs import RunLogs
from .schemas import DocsResult, EvaluationResult, PlanResult, ResearchResult
from .status_store import StatusStore, load_state
from .tier_resolver import TierResolver


console = Console()

# Stages bypassed when evaluation classifies the change as non-functional
FAST_PATH_SKIPPED = (StageName.PLAN, StageName.IMPLEMENT, StageName.TEST_LOOP)

GitFactory = Callable[[Path], GitOperations]


def _ref_slug(issue_ref: str) -> str:
    return re.sub(r"[^A-Za-z0-9]+", "-", issue_ref).strip("-") or "issue"


class WorkflowDriver:
    """Sequences the stages of one workflow run.

    Single Responsibility: decide which stage runs next, hand it to the right
    collaborator and translate failures into the run's terminal state. The
    status store, runner and convergence loops do the actual work.
    """

    def __init__(
        self,
        project_path: Path,
        config: PipelineConfig,
        tracker: IssueTracker,
        backend: Optional[ExecutorBackend] = None,
        git_factory: GitFactory = GitManager,
        prompts: Optional[PromptLibrary] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Initialize the driver.

        Args:
            project_path: Root of the repository the issue belongs to
            config: Pipeline configuration
            tracker: Issue/PR tracker used for announcements and the PR
            backend: Executor backend (defaults to the CLI backend)
            git_factory: Builds git operations for a path
            prompts: Prompt library (defaults to the packaged prompts,
                with overrides from <state_dir>/prompts)
            sleep: Awaitable sleep used for rate-limit backoff
        """
        self.project_path = Path(project_path).resolve()
        self.config = config
        self.tracker = tracker
        self.backend = backend or ClaudeCLIBackend(
            command=config.executor_command,
            permission_mode=config.permission_mode,
        )
        self.git_factory = git_factory
        self.prompts = prompts or PromptLibrary(self.state_dir / "prompts")
        self.sleep = sleep
        self.resolver = TierResolver(override=config.tier_override)

        # Bound per run by _execute
        self.store: Optional[StatusStore] = None
        self.logs: Optional[RunLogs] = None
        self.invoker: Optional[StageInvoker] = None

        self._handlers: dict[StageName, Callable[[], Awaitable[dict[str, Any]]]] = {
            StageName.SETUP: self._setup,
            StageName.RESEARCH: self._research,
            StageName.EVALUATE: self._evaluate,
            StageName.PLAN: self._plan,
            StageName.IMPLEMENT: self._implement,
            StageName.TEST_LOOP: self._test_loop,
            StageName.DOCS: self._docs,
            StageName.PUBLISH: self._publish,
            StageName.PR_REVIEW: self._pr_review,
            StageName.COMPLETE: self._complete,
        }

    @property
    def state_dir(self) -> Path:
        return self.project_path / self.config.state_dir

    # =========================================================================
    # Entry Points
    # =========================================================================

    async def start(
        self,
        issue_ref: str,
        base_branch: str,
        status_path: Optional[Path] = None,
    ) -> WorkflowState:
        """Start a fresh run for an issue.

        Raises:
            LockConflict: If another run holds the status file
            PipelineError: Any failure that ended the run
        """
        status_path = Path(status_path or self.config.default_status_path(self.project_path))
        with LockManager(lock_path_for(status_path)):
            try:
                previous = load_state(status_path)
            except ValueError:
                previous = None
            if previous is not None and not previous.state.is_terminal:
                console.print(
                    f"[yellow]Discarding interrupted run for issue {previous.issue_ref} "
                    f"(stage {previous.current_stage}); use --resume to continue it instead[/yellow]"
                )

            logs = RunLogs.create_for_run(self.state_dir, issue_ref)
            store = StatusStore.create(status_path, issue_ref, base_branch, logs.log_dir)
            console.print(Panel(
                f"[bold]Autonomous Dev Pipeline[/bold]\n"
                f"Issue: {issue_ref}\n"
                f"Base branch: {base_branch}\n"
                f"Logs: {logs.log_dir}",
                title="ADP"
            ))
            return await self._execute(store, logs)

    async def resume(self, context: ResumeContext) -> WorkflowState:
        """Continue a validated prior run.

        A missing status file is rewritten from ``context.state`` once the
        lock is held.

        Raises:
            LockConflict: If another run holds the status file
            ResumeValidationError: If the status file now records a different run
            PipelineError: Any failure that ended the run
        """
        with LockManager(lock_path_for(context.status_path)):
            check_same_run(context.status_path, context.state)
            logs = RunLogs(context.log_dir)
            logs.ensure_structure()
            store = StatusStore(context.status_path, context.state)
            if not context.status_path.exists():
                store.save()
                console.print(f"[green]OK[/green] Restored {context.status_path} from {context.log_dir}")
            logs.log_event(
                "resume",
                previous_state=context.state.state.value,
                current_stage=context.state.current_stage,
                completed_stages=sorted(context.completed_stages),
            )
            return await self._execute(store, logs)

    # =========================================================================
    # Stage Sequencing
    # =========================================================================

    async def _execute(self, store: StatusStore, logs: RunLogs) -> WorkflowState:
        self.store = store
        self.logs = logs
        runner = TaskRunner(self.config, self.backend, logs, sleep=self.sleep)
        self.invoker = StageInvoker(runner, self.resolver, self.prompts, cwd=self._cwd)

        try:
            self._set_state(WorkflowStatus.RUNNING)

            for stage in STAGE_ORDER:
                if store.state.is_stage_completed(stage):
                    console.print(f"[dim]Skipping completed stage: {stage.value}[/dim]")
                    continue

                if stage in FAST_PATH_SKIPPED and self._is_non_functional():
                    store.start_stage(stage)
                    store.complete_stage(stage, skipped=True)
                    logs.log_event("stage_complete", stage=stage.value, skipped=True)
                    console.print(f"[dim]Skipping {stage.value}: non-functional change[/dim]")
                    continue

                console.print(f"\n[bold blue]Stage:[/bold blue] {stage.value}")
                store.start_stage(stage)
                logs.log_event("stage_start", stage=stage.value)

                fields = await self._handlers[stage]()

                store.complete_stage(stage, **fields)
                logs.log_event("stage_complete", stage=stage.value, **fields)

            self._set_state(WorkflowStatus.COMPLETED)
            console.print(f"[green]OK[/green] Workflow for issue {store.state.issue_ref} completed")
            return store.state

        except IterationCapExceeded as e:
            # The loop already recorded its own terminal state
            logs.log_event("error", kind="iteration_cap", loop=e.kind.value, message=str(e))
            self._announce(
                f"Stopped: the {e.kind.value} loop did not converge within "
                f"{e.max_iterations} iterations. A human needs to take a look."
            )
            raise
        except WorkflowBlocked as e:
            self._set_state(WorkflowStatus.BLOCKED, str(e))
            logs.log_event("error", kind="blocked", concerns=e.concerns)
            raise
        except PipelineError as e:
            self._set_state(WorkflowStatus.ERROR, str(e))
            logs.log_event("error", kind=type(e).__name__, message=str(e))
            console.print(f"[red]Workflow failed:[/red] {e}")
            raise
        except Exception as e:
            self._set_state(WorkflowStatus.ERROR, f"Unexpected error: {e}")
            logs.log_event("error", kind="unexpected", message=str(e))
            raise

    def _set_state(self, status: WorkflowStatus, error_message: Optional[str] = None) -> None:
        previous = self.store.state.state
        self.store.set_state(status, error_message)
        self.logs.log_event("state_change", previous=previous.value, state=status.value)

    def _is_non_functional(self) -> bool:
        return self.store.state.stage(StageName.EVALUATE).extra_fields().get("change_kind") == "non_functional"

    # =========================================================================
    # Helpers
    # =========================================================================

    def _cwd(self) -> Path:
        working_tree = self.store.state.working_tree_path if self.store else None
        return Path(working_tree) if working_tree else self.project_path

    def _worktree_git(self) -> GitOperations:
        return self.git_factory(self._cwd())

    def _issue(self) -> dict:
        """Issue title/body, from the context artifact or refetched."""
        issue = self.logs.read_context("issue")
        if issue is None:
            issue = self.tracker.fetch_issue(self.store.state.issue_ref)
            self.logs.write_context("issue", issue)
        return issue

    def _research_summary(self) -> str:
        research = self.logs.read_context("research") or {}
        return research.get("summary", "")

    def _pr_number(self) -> int:
        pr_number = self.store.state.stage(StageName.PUBLISH).extra_fields().get("pr_number")
        if pr_number is None:
            raise StageError(StageName.PR_REVIEW.value, "no pull request recorded by publish")
        return int(pr_number)

    def _announce(self, body: str) -> None:
        """Comment on the issue; tracker failures only warn."""
        try:
            self.tracker.comment_issue(self.store.state.issue_ref, body)
        except TrackerError as e:
            console.print(f"[yellow]Warning: could not comment on issue: {e.message}[/yellow]")

    def _announce_pr(self, pr_number: int, body: str) -> None:
        try:
            self.tracker.comment_pr(pr_number, body)
        except TrackerError as e:
            console.print(f"[yellow]Warning: could not comment on PR #{pr_number}: {e.message}[/yellow]")

    def _loop_hook(
        self,
        stage: StageName,
        kind: LoopKind,
        announce: Callable[[str], None],
        extra: Optional[Callable[[], dict[str, Any]]] = None,
    ):
        async def on_iteration(iteration: int, result: CheckResult) -> None:
            fields = {"iteration": iteration, "last_verdict": result.verdict}
            if extra is not None:
                fields.update(extra())
            self.store.update_stage(stage, **fields)
            self.logs.log_event(
                "loop_iteration", loop=kind.value, iteration=iteration, verdict=result.verdict
            )
            announce(f"{kind.value} iteration {iteration}: {result.verdict}")

        return on_iteration

    # =========================================================================
    # Stages
    # =========================================================================

    async def _setup(self) -> dict[str, Any]:
        state = self.store.state
        issue = self.tracker.fetch_issue(state.issue_ref)
        self.logs.write_context("issue", issue)

        slug = _ref_slug(state.issue_ref)
        branch = f"{self.config.branch_prefix}{slug}"
        worktree = self.state_dir / "worktrees" / f"issue-{slug}"
        try:
            path = self.git_factory(self.project_path).create_worktree(
                worktree, branch, state.base_branch
            )
        except GitError as e:
            raise StageError(StageName.SETUP.value, str(e)) from e

        try:
            self.store.set_setup(branch, path)
        except ValueError as e:
            raise StageError(StageName.SETUP.value, str(e)) from e
        console.print(f"[green]OK[/green] Working tree ready: {path} ({branch})")
        self._announce(f"Started automated work on this issue on branch `{branch}`.")
        return {"issue_title": issue.get("title", "")}

    async def _research(self) -> dict[str, Any]:
        issue = self._issue()
        result = await self.invoker.call(
            "research", "research", ResearchResult,
            issue_ref=self.store.state.issue_ref,
            issue_title=issue.get("title", ""),
            issue_body=issue.get("body", ""),
        )
        self.logs.write_context("research", result.model_dump(mode="json"))
        return {"relevant_files": len(result.relevant_files)}

    async def _evaluate(self) -> dict[str, Any]:
        issue = self._issue()
        result = await self.invoker.call(
            "evaluate", "evaluate", EvaluationResult,
            issue_title=issue.get("title", ""),
            issue_body=issue.get("body", ""),
            research_summary=self._research_summary(),
        )
        self.logs.write_context("evaluation", result.model_dump(mode="json"))

        if not result.proceed:
            concerns = result.blocking_concerns or [result.rationale or "unspecified concern"]
            self._announce(
                "Automated work is blocked and needs a decision:\n"
                + "\n".join(f"- {c}" for c in concerns)
            )
            raise WorkflowBlocked(concerns)

        if result.change_kind == "non_functional":
            console.print("[cyan]Non-functional change: skipping plan, implement and test stages[/cyan]")
        return {"proceed": True, "change_kind": result.change_kind}

    async def _plan(self) -> dict[str, Any]:
        if not self.store.state.tasks:
            issue = self._issue()
            result = await self.invoker.call(
                "plan", "plan", PlanResult,
                issue_title=issue.get("title", ""),
                issue_body=issue.get("body", ""),
                research_summary=self._research_summary(),
            )
            if not result.tasks:
                raise StageError("plan", "plan produced no tasks")

            try:
                self.store.set_tasks([
                    TaskRecord(
                        id=index,
                        description=planned.description,
                        executor_tier=self.resolver.resolve("implement", planned.complexity),
                    )
                    for index, planned in enumerate(result.tasks, start=1)
                ])
            except ValueError as e:
                raise StageError(StageName.PLAN.value, str(e)) from e

        tasks = self.store.state.tasks
        self.logs.write_context("tasks", [t.model_dump(mode="json") for t in tasks])
        console.print(f"Planned {len(tasks)} task(s)")
        return {"task_count": len(tasks)}

    async def _implement(self) -> dict[str, Any]:
        state = self.store.state
        issue_title = self._issue().get("title", "")
        git = self._worktree_git()
        implementer = TaskImplementer(
            store=self.store,
            invoker=self.invoker,
            git=git,
            config=self.config,
            logs=self.logs,
            announce=self._announce,
        )

        for task in state.tasks:
            await implementer.run_task(task, issue_title)
            self.store.update_stage(StageName.IMPLEMENT, task_progress=state.task_progress())

        failed = [t.id for t in state.failed_tasks()]
        if failed:
            console.print(f"[yellow]{len(failed)} task(s) failed: {failed}[/yellow]")
        return {"task_progress": state.task_progress(), "failed_tasks": failed}

    async def _test_loop(self) -> dict[str, Any]:
        state = self.store.state
        record = state.stage(StageName.TEST_LOOP)
        git = self._worktree_git()
        steps = TestLoopSteps(
            self.invoker,
            base_branch=state.base_branch,
            issue_title=self._issue().get("title", ""),
            commit=git.commit_all,
        )
        loop = ConvergenceLoop(
            store=self.store,
            kind=LoopKind.TEST,
            max_iterations=self.config.limits.test,
            steps=steps,
            on_iteration=self._loop_hook(StageName.TEST_LOOP, LoopKind.TEST, self._announce),
            start_iteration=record.extra_fields().get("iteration", 0),
        )
        outcome = await loop.run()
        self._announce(f"Tests converged after {outcome.iterations} iteration(s): {outcome.result.verdict}")
        return {"iteration": outcome.iterations, "last_verdict": outcome.result.verdict}

    async def _docs(self) -> dict[str, Any]:
        """Update documentation, or make the whole change on the fast path.

        Documentation failures are recorded and skipped, except on the fast
        path where this stage is the only one that edits the branch.
        """
        if self._is_non_functional():
            return await self._non_functional_change()

        issue = self._issue()
        try:
            result = await self.invoker.call(
                "docs", "docs", DocsResult,
                issue_title=issue.get("title", ""),
                issue_body=issue.get("body", ""),
                base_branch=self.store.state.base_branch,
            )
        except StageError as e:
            console.print(f"[yellow]Documentation stage failed, continuing: {e.message}[/yellow]")
            self.logs.log_event("error", kind="docs", message=e.message)
            return {"error": e.message}

        try:
            self._worktree_git().commit_all(f"docs: update documentation for issue {self.store.state.issue_ref}")
        except GitError as e:
            return {"error": str(e)}
        return {"updated_files": result.updated_files}

    async def _non_functional_change(self) -> dict[str, Any]:
        state = self.store.state
        issue = self._issue()
        result = await self.invoker.call(
            "docs-change", "non_functional_change", DocsResult,
            issue_title=issue.get("title", ""),
            issue_body=issue.get("body", ""),
            research_summary=self._research_summary(),
            base_branch=state.base_branch,
        )
        try:
            commit_hash = self._worktree_git().commit_all(
                f"chore: {issue.get('title') or 'non-functional change'}\n\nIssue {state.issue_ref}"
            )
        except GitError as e:
            raise StageError(StageName.DOCS.value, str(e)) from e
        return {"updated_files": result.updated_files, "non_functional": True, "commit": commit_hash}

    async def _publish(self) -> dict[str, Any]:
        state = self.store.state
        record = state.stage(StageName.PUBLISH).extra_fields()
        if record.get("pr_number") is not None:
            return {"pr_number": record["pr_number"], "pr_url": record.get("pr_url")}

        git = self._worktree_git()
        try:
            git.commit_all(f"chore: remaining changes for issue {state.issue_ref}")
            if git.commits_ahead_of(state.base_branch) == 0 or not git.has_diff_against(state.base_branch):
                raise StageError(
                    StageName.PUBLISH.value,
                    f"nothing to publish: branch {state.branch} has no changes against {state.base_branch}",
                )
            changed_files = git.get_changed_files(state.base_branch)
            git.push(self.config.remote, state.branch)
        except GitError as e:
            raise StageError(StageName.PUBLISH.value, str(e)) from e

        issue = self._issue()
        pr = self.tracker.create_pr(
            title=f"{issue.get('title') or 'Changes'} (issue {state.issue_ref})",
            body=self._pr_body(changed_files),
            head=state.branch,
            base=state.base_branch,
            cwd=self._cwd(),
        )
        self.store.update_stage(StageName.PUBLISH, pr_number=pr["number"], pr_url=pr.get("url"))
        console.print(f"[green]OK[/green] Opened pull request #{pr['number']}: {pr.get('url')}")
        self._announce(f"Opened pull request {pr.get('url') or '#' + str(pr['number'])}")
        return {"pr_number": pr["number"], "pr_url": pr.get("url"), "changed_files": len(changed_files)}

    def _pr_body(self, changed_files: list[str]) -> str:
        state = self.store.state
        lines = [f"Resolves {state.issue_ref}", ""]
        summary = self._research_summary()
        if summary:
            lines += ["## Summary", summary, ""]
        if state.tasks:
            lines.append("## Tasks")
            for task in state.tasks:
                mark = "x" if task.status == TaskStatus.COMPLETED else " "
                lines.append(f"- [{mark}] {task.description}")
            lines.append("")
        lines.append(f"{len(changed_files)} file(s) changed.")
        return "\n".join(lines)

    async def _pr_review(self) -> dict[str, Any]:
        state = self.store.state
        pr_number = self._pr_number()
        record = state.stage(StageName.PR_REVIEW).extra_fields()
        issue = self._issue()
        git = self._worktree_git()

        def publish_fix(iteration: int) -> None:
            try:
                git.commit_all(f"fix: address review feedback (iteration {iteration})")
                git.push(self.config.remote, state.branch)
            except GitError as e:
                raise StageError(f"review-fix-iter-{iteration}", str(e)) from e

        steps = PRReviewLoopSteps(
            self.invoker,
            pr_number=pr_number,
            issue_title=issue.get("title", ""),
            issue_body=issue.get("body", ""),
            base_branch=state.base_branch,
            publish_fix=publish_fix,
        )
        steps.follow_ups = list(record.get("follow_ups", []))

        loop = ConvergenceLoop(
            store=self.store,
            kind=LoopKind.PR_REVIEW,
            max_iterations=self.config.limits.pr_review,
            steps=steps,
            on_iteration=self._loop_hook(
                StageName.PR_REVIEW,
                LoopKind.PR_REVIEW,
                lambda body: self._announce_pr(pr_number, body),
                extra=lambda: {"follow_ups": list(steps.follow_ups)},
            ),
            start_iteration=record.get("iteration", 0),
        )
        outcome = await loop.run()
        self._announce_pr(pr_number, f"Review converged after {outcome.iterations} iteration(s).")
        return {
            "iteration": outcome.iterations,
            "last_verdict": outcome.result.verdict,
            "follow_ups": list(steps.follow_ups),
        }

    async def _complete(self) -> dict[str, Any]:
        state = self.store.state
        publish = state.stage(StageName.PUBLISH).extra_fields()
        follow_ups = state.stage(StageName.PR_REVIEW).extra_fields().get("follow_ups", [])
        failed = state.failed_tasks()

        created = list(state.stage(StageName.COMPLETE).extra_fields().get("follow_up_issues", []))
        created_titles = {entry["title"] for entry in created}
        requests = [
            (f"Follow-up for {state.issue_ref}: unfinished task {t.id}",
             f"Task {t.id} failed after {t.review_attempts} attempt(s).\n\n"
             f"{t.description}\n\nLast feedback:\n{t.last_feedback or 'none'}")
            for t in failed
        ] + [
            (f"Follow-up for {state.issue_ref}: {item[:80]}", item)
            for item in follow_ups
        ]
        for title, body in requests:
            if title in created_titles:
                continue
            try:
                issue = self.tracker.create_issue(title, body)
            except TrackerError as e:
                console.print(f"[yellow]Warning: could not create follow-up issue: {e.message}[/yellow]")
                continue
            created.append({"title": title, "url": issue.get("url")})
            self.store.update_stage(StageName.COMPLETE, follow_up_issues=created)

        merged = False
        pr_number = publish.get("pr_number")
        if self.config.auto_merge and pr_number is not None:
            self.tracker.merge_pr(int(pr_number))
            merged = True

        self._announce(self._summary(publish.get("pr_url"), merged, created))
        return {
            "failed_tasks": [t.id for t in failed],
            "follow_up_issues": created,
            "merged": merged,
        }

    def _summary(self, pr_url: Optional[str], merged: bool, follow_ups: list[dict]) -> str:
        state = self.store.state
        lines = ["Automated work on this issue is complete."]
        if pr_url:
            lines.append(f"Pull request: {pr_url}{' (merged)' if merged else ''}")
        if state.tasks:
            lines.append(f"Tasks finished: {state.task_progress()}")
        failed = describe_failed_tasks(state.tasks)
        if failed:
            lines += ["", "These tasks could not be completed:", failed]
        if follow_ups:
            lines += ["", "Follow-up issues:"]
            lines += [f"- {entry.get('url') or entry['title']}" for entry in follow_ups]
        lines.append(
            f"\nIterations (quality/test/review): {state.quality_iterations}/"
            f"{state.test_iterations}/{state.pr_review_iterations}"
        )
        return "\n".join(lines)
