"""Error taxonomy for the pipeline.

Each error carries the process exit code the CLI reports for it, so an
external scheduler can tell "needs a human" from "configuration problem".
Rate limiting is absorbed inside the task runner and has no error class here.
"""

from typing import Optional

from .models import LoopKind

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_ITERATION_CAP = 2
EXIT_CONFIGURATION = 3


class PipelineError(Exception):
    """Base class for all pipeline failures."""

    exit_code = EXIT_FAILURE


class StageError(PipelineError):
    """An external task failed or produced no usable structured result."""

    def __init__(self, stage_id: str, message: str):
        super().__init__(f"Stage '{stage_id}' failed: {message}")
        self.stage_id = stage_id
        self.message = message


class StageTimeout(StageError):
    """An external call exceeded its wall-clock budget."""

    def __init__(self, stage_id: str, timeout_seconds: float):
        super().__init__(stage_id, f"timeout after {timeout_seconds:.0f}s")
        self.timeout_seconds = timeout_seconds


class TrackerError(StageError):
    """The issue/PR tracker rejected or failed a request."""

    def __init__(self, operation: str, message: str):
        super().__init__(f"tracker:{operation}", message)
        self.operation = operation


class WorkflowBlocked(PipelineError):
    """Evaluation found a blocking concern; a human has to decide."""

    def __init__(self, concerns: list[str]):
        summary = "; ".join(concerns) if concerns else "no details given"
        super().__init__(f"Workflow blocked: {summary}")
        self.concerns = concerns


class IterationCapExceeded(PipelineError):
    """A convergence loop did not converge within its cap."""

    exit_code = EXIT_ITERATION_CAP

    def __init__(self, kind: LoopKind, max_iterations: int, last_feedback: Optional[str] = None):
        super().__init__(
            f"{kind.value} loop exceeded its cap of {max_iterations} iterations"
        )
        self.kind = kind
        self.max_iterations = max_iterations
        self.last_feedback = last_feedback


class LockConflict(PipelineError):
    """Another workflow instance holds the lock."""

    exit_code = EXIT_CONFIGURATION

    def __init__(self, lock_path: str, owner_pid: int):
        super().__init__(
            f"Another workflow (pid {owner_pid}) is running against this status file "
            f"(lock: {lock_path})"
        )
        self.lock_path = lock_path
        self.owner_pid = owner_pid


class ResumeValidationError(PipelineError):
    """A prior status document cannot be resumed."""

    exit_code = EXIT_CONFIGURATION


class ConfigurationError(PipelineError):
    """Invalid arguments or configuration."""

    exit_code = EXIT_CONFIGURATION
