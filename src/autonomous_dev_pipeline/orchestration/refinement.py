"""Check/fix strategies for the three convergence loops.

- QualityLoopSteps: single code-quality verdict for one task
- TestLoopSteps: run tests, then validate their comprehensiveness
- PRReviewLoopSteps: goal/scope verdict and code verdict must both approve
"""

from typing import Callable, Optional

from ..errors import StageError
from ..git_manager import GitError
from ..models import TaskRecord
from ..schemas import (
    ImplementResult, ReviewVerdict, TestRunResult, TestValidationResult,
)
from .convergence import CheckResult
from .invoker import StageInvoker


def _bullets(items: list[str]) -> str:
    return "\n".join(f"- {item}" for item in items)


def _verdict_feedback(label: str, verdict: ReviewVerdict) -> str:
    parts = [f"{label}: {'approved' if verdict.approved else 'changes requested'}"]
    if verdict.feedback:
        parts.append(verdict.feedback)
    if verdict.issues:
        parts.append(_bullets(verdict.issues))
    return "\n".join(parts)


class QualityLoopSteps:
    """Code-quality refinement for a single implemented task."""

    def __init__(self, invoker: StageInvoker, task: TaskRecord):
        self.invoker = invoker
        self.task = task

    async def check(self, iteration: int) -> CheckResult:
        verdict = await self.invoker.call(
            f"quality-review-task-{self.task.id}-iter-{iteration}",
            "quality_review",
            ReviewVerdict,
            task_description=self.task.description,
        )
        return CheckResult(
            terminal=verdict.approved,
            feedback=_verdict_feedback("Code quality", verdict),
            verdict="approved" if verdict.approved else "changes_requested",
            details={"issues": verdict.issues},
        )

    async def fix(self, iteration: int, feedback: str) -> None:
        await self.invoker.call(
            f"quality-fix-task-{self.task.id}-iter-{iteration}",
            "quality_fix",
            ImplementResult,
            task_description=self.task.description,
            feedback=feedback,
        )


class TestLoopSteps:
    """Run tests; once green, check they actually cover the change."""
    __test__ = False  # not a pytest test class

    def __init__(
        self,
        invoker: StageInvoker,
        base_branch: str,
        issue_title: str,
        commit: Callable[[str], Optional[str]],
    ):
        self.invoker = invoker
        self.base_branch = base_branch
        self.issue_title = issue_title
        self.commit = commit

    async def check(self, iteration: int) -> CheckResult:
        run = await self.invoker.call(
            f"test-run-iter-{iteration}",
            "test_run",
            TestRunResult,
            base_branch=self.base_branch,
        )
        if not run.passed:
            feedback = "Failing tests:\n" + (_bullets(run.failures) or run.summary)
            return CheckResult(
                terminal=False,
                feedback=feedback,
                verdict="tests_failed",
                details={"failures": run.failures},
            )

        validation = await self.invoker.call(
            f"test-validate-iter-{iteration}",
            "test_validate",
            TestValidationResult,
            base_branch=self.base_branch,
            issue_title=self.issue_title,
        )
        if validation.no_testable_changes:
            return CheckResult(terminal=True, verdict="no_testable_changes")
        if validation.comprehensive:
            return CheckResult(terminal=True, verdict="tests_pass_validated")

        feedback = "Tests pass but coverage is incomplete:\n" + (
            _bullets(validation.missing_coverage) or validation.summary
        )
        return CheckResult(
            terminal=False,
            feedback=feedback,
            verdict="coverage_gaps",
            details={"missing_coverage": validation.missing_coverage},
        )

    async def fix(self, iteration: int, feedback: str) -> None:
        await self.invoker.call(
            f"test-fix-iter-{iteration}",
            "test_fix",
            ImplementResult,
            feedback=feedback,
        )
        try:
            self.commit(f"test: fix iteration {iteration}")
        except GitError as e:
            raise StageError(f"test-fix-iter-{iteration}", str(e)) from e


class PRReviewLoopSteps:
    """Goal/scope review and code review of the open pull request."""

    def __init__(
        self,
        invoker: StageInvoker,
        pr_number: int,
        issue_title: str,
        issue_body: str,
        base_branch: str,
        publish_fix: Callable[[int], None],
    ):
        self.invoker = invoker
        self.pr_number = pr_number
        self.issue_title = issue_title
        self.issue_body = issue_body
        self.base_branch = base_branch
        self.publish_fix = publish_fix
        self.follow_ups: list[str] = []

    async def check(self, iteration: int) -> CheckResult:
        variables = dict(
            pr_number=self.pr_number,
            issue_title=self.issue_title,
            issue_body=self.issue_body,
            base_branch=self.base_branch,
        )
        spec = await self.invoker.call(
            f"spec-review-iter-{iteration}", "spec_review", ReviewVerdict, **variables
        )
        code = await self.invoker.call(
            f"code-review-iter-{iteration}", "code_review", ReviewVerdict, **variables
        )

        for item in spec.follow_ups + code.follow_ups:
            if item not in self.follow_ups:
                self.follow_ups.append(item)

        approved = spec.approved and code.approved
        if approved:
            verdict = "approved"
        elif spec.approved:
            verdict = "code_changes_requested"
        elif code.approved:
            verdict = "scope_changes_requested"
        else:
            verdict = "changes_requested"

        return CheckResult(
            terminal=approved,
            feedback="\n\n".join([
                _verdict_feedback("Goal and scope", spec),
                _verdict_feedback("Code", code),
            ]),
            verdict=verdict,
            details={"spec_approved": spec.approved, "code_approved": code.approved},
        )

    async def fix(self, iteration: int, feedback: str) -> None:
        await self.invoker.call(
            f"review-fix-iter-{iteration}",
            "review_fix",
            ImplementResult,
            pr_number=self.pr_number,
            feedback=feedback,
        )
        self.publish_fix(iteration)
