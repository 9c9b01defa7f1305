"""Bounded check-then-fix convergence loop.

One controller drives quality refinement, test fixing and PR-review fixing.
The only per-use variation is the ConvergenceSteps strategy: what ``check``
does and what counts as terminal. Exceeding the cap is fatal for the whole
workflow and sets the loop-specific terminal state.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Protocol, runtime_checkable

from rich.console import Console

from ..errors import IterationCapExceeded, StageError
from ..models import LoopKind, LOOP_TERMINAL_STATES
from ..status_store import StatusStore


console = Console()


@dataclass
class CheckResult:
    """Outcome of one ``check`` step."""
    terminal: bool
    feedback: str = ""
    verdict: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    def is_terminal(self) -> bool:
        return self.terminal


@runtime_checkable
class ConvergenceSteps(Protocol):
    """Strategy for one loop type."""

    async def check(self, iteration: int) -> CheckResult:
        """Run the review-style check for this iteration."""
        ...

    async def fix(self, iteration: int, feedback: str) -> None:
        """Run the improve-this step with the check's feedback."""
        ...


IterationHook = Callable[[int, CheckResult], Awaitable[None]]


@dataclass
class LoopOutcome:
    """Successful termination of a loop."""
    iterations: int
    result: CheckResult


class ConvergenceLoop:
    """Runs a ConvergenceSteps strategy until terminal or the cap trips.

    ``start_iteration`` lets a resumed run continue counting from the last
    fully completed iteration instead of from zero.
    """

    def __init__(
        self,
        store: StatusStore,
        kind: LoopKind,
        max_iterations: int,
        steps: ConvergenceSteps,
        on_iteration: Optional[IterationHook] = None,
        start_iteration: int = 0,
    ):
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        self.store = store
        self.kind = kind
        self.max_iterations = max_iterations
        self.steps = steps
        self.on_iteration = on_iteration
        self.start_iteration = max(0, start_iteration)

    async def run(self) -> LoopOutcome:
        """Run the loop.

        Returns:
            LoopOutcome for the terminal check

        Raises:
            IterationCapExceeded: After max_iterations non-terminal checks
        """
        iteration = self.start_iteration
        last_feedback: Optional[str] = None

        while True:
            iteration += 1
            self.store.increment_iterations(self.kind)

            if iteration > self.max_iterations:
                self.store.set_state(
                    LOOP_TERMINAL_STATES[self.kind],
                    error_message=f"{self.kind.value} loop did not converge "
                                  f"within {self.max_iterations} iterations",
                )
                console.print(
                    f"[red]{self.kind.value} loop exceeded {self.max_iterations} iterations[/red]"
                )
                raise IterationCapExceeded(self.kind, self.max_iterations, last_feedback)

            console.print(
                f"[cyan]{self.kind.value} loop[/cyan] iteration {iteration}/{self.max_iterations}"
            )
            try:
                result = await self.steps.check(iteration)
            except StageError as e:
                # A failed check costs an iteration; retry the check next time
                console.print(f"[yellow]{self.kind.value} check failed: {e}[/yellow]")
                result = CheckResult(terminal=False, feedback=str(e), verdict="check_error")
                if self.on_iteration is not None:
                    await self.on_iteration(iteration, result)
                continue

            if result.is_terminal():
                console.print(f"[green]{self.kind.value} loop converged: {result.verdict}[/green]")
                return LoopOutcome(iterations=iteration, result=result)

            last_feedback = result.feedback
            try:
                await self.steps.fix(iteration, result.feedback)
            except StageError as e:
                console.print(f"[yellow]{self.kind.value} fix failed: {e}[/yellow]")
                result.details["fix_error"] = str(e)

            if self.on_iteration is not None:
                await self.on_iteration(iteration, result)
