"""Durable status document for a workflow run.

The StatusStore is the single in-memory owner of the WorkflowState for a
process. Every mutator saves before returning; saves write a temp file in
the same directory and rename it over the target, so a crash mid-write
leaves the previous document intact. After every save the document is
mirrored into the run's log directory.
"""

import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from rich.console import Console

from .models import (
    LoopKind, LOOP_COUNTER_FIELDS, StageName, StageStatus,
    TaskRecord, TaskStatus, WorkflowState, WorkflowStatus,
)


console = Console()

_STAGE_ORDER = {
    StageStatus.PENDING: 0,
    StageStatus.IN_PROGRESS: 1,
    StageStatus.COMPLETED: 2,
}


def write_atomic(path: Path, content: str) -> None:
    """Write text to a path atomically (temp file + fsync + rename)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


def load_state(path: Path) -> Optional[WorkflowState]:
    """Load a status document.

    Returns:
        The WorkflowState, or None if the file does not exist

    Raises:
        ValueError: If the file exists but is not a valid status document
    """
    path = Path(path)
    if not path.exists():
        return None
    try:
        return WorkflowState.model_validate_json(path.read_text(encoding="utf-8"))
    except Exception as e:
        raise ValueError(f"Invalid status document {path}: {e}") from e


class StatusStore:
    """Owns the WorkflowState and its backing file."""

    def __init__(self, path: Path, state: WorkflowState):
        self.path = Path(path)
        self.state = state

    @classmethod
    def create(
        cls,
        path: Path,
        issue_ref: str,
        base_branch: str,
        log_dir: Path,
    ) -> "StatusStore":
        """Start a fresh status document and save it."""
        store = cls(path, WorkflowState(
            issue_ref=issue_ref,
            base_branch=base_branch,
            log_dir=str(log_dir),
        ))
        store.save()
        return store

    @classmethod
    def load(cls, path: Path) -> Optional["StatusStore"]:
        """Load an existing status document, or None if missing."""
        state = load_state(path)
        if state is None:
            return None
        return cls(path, state)

    # =========================================================================
    # Persistence
    # =========================================================================

    def save(self) -> None:
        """Persist the current state and mirror it into the log directory."""
        self.state.last_update = datetime.now()
        write_atomic(self.path, self.state.model_dump_json(indent=2))
        self.mirror_to(Path(self.state.log_dir))

    def mirror_to(self, log_dir: Path) -> Optional[Path]:
        """Copy the current document into a log directory.

        Returns:
            Path to the mirror, or None when the mirror is the primary file
        """
        mirror = Path(log_dir) / "status.json"
        if mirror.resolve() == self.path.resolve():
            return None
        try:
            write_atomic(mirror, self.path.read_text(encoding="utf-8"))
        except OSError as e:
            console.print(f"[yellow]Warning: could not mirror status to {mirror}: {e}[/yellow]")
            return None
        return mirror

    # =========================================================================
    # Workflow State
    # =========================================================================

    def set_state(self, status: WorkflowStatus, error_message: Optional[str] = None) -> None:
        self.state.state = status
        if error_message is not None:
            self.state.error_message = error_message
        self.save()

    def set_setup(self, branch: str, working_tree_path: Path) -> None:
        """Record the identifiers fixed at setup time.

        Raises:
            ValueError: If setup values were already recorded with different values
        """
        if self.state.branch and self.state.branch != branch:
            raise ValueError(f"Branch already set to {self.state.branch}")
        if self.state.working_tree_path and self.state.working_tree_path != str(working_tree_path):
            raise ValueError(f"Working tree already set to {self.state.working_tree_path}")
        self.state.branch = branch
        self.state.working_tree_path = str(working_tree_path)
        self.save()

    # =========================================================================
    # Stages
    # =========================================================================

    def _advance_stage(self, name: str, status: StageStatus) -> None:
        record = self.state.stage(name)
        if _STAGE_ORDER[status] < _STAGE_ORDER[record.status]:
            raise ValueError(
                f"Stage '{name}' cannot move from {record.status.value} to {status.value}"
            )
        record.status = status

    def start_stage(self, name: str | StageName) -> None:
        key = name.value if isinstance(name, StageName) else name
        record = self.state.stage(key)
        self._advance_stage(key, StageStatus.IN_PROGRESS)
        if record.started_at is None:
            record.started_at = datetime.now()
        self.state.current_stage = key
        self.save()

    def complete_stage(self, name: str | StageName, **fields: Any) -> None:
        key = name.value if isinstance(name, StageName) else name
        record = self.state.stage(key)
        self._advance_stage(key, StageStatus.COMPLETED)
        record.completed_at = datetime.now()
        for field_name, value in fields.items():
            setattr(record, field_name, value)
        self.save()

    def update_stage(self, name: str | StageName, **fields: Any) -> None:
        """Set stage-specific fields without changing the stage status."""
        key = name.value if isinstance(name, StageName) else name
        record = self.state.stage(key)
        for field_name, value in fields.items():
            setattr(record, field_name, value)
        self.save()

    # =========================================================================
    # Tasks
    # =========================================================================

    def set_tasks(self, tasks: list[TaskRecord]) -> None:
        """Populate the task list. Allowed once per run."""
        if self.state.tasks:
            raise ValueError("Tasks have already been planned for this run")
        ids = [t.id for t in tasks]
        if len(set(ids)) != len(ids):
            raise ValueError("Task ids must be unique")
        self.state.tasks = list(tasks)
        self.save()

    def update_task(self, task_id: int, **fields: Any) -> TaskRecord:
        task = self.state.get_task(task_id)
        for field_name, value in fields.items():
            setattr(task, field_name, value)
        self.save()
        return task

    def set_task_status(self, task_id: int, status: TaskStatus) -> TaskRecord:
        self.state.current_task_id = task_id
        return self.update_task(task_id, status=status)

    # =========================================================================
    # Loop Counters
    # =========================================================================

    def increment_iterations(self, kind: LoopKind) -> int:
        """Bump the run-wide counter for a loop kind and return the new value."""
        field_name = LOOP_COUNTER_FIELDS[kind]
        value = getattr(self.state, field_name) + 1
        setattr(self.state, field_name, value)
        self.save()
        return value

    def iterations(self, kind: LoopKind) -> int:
        return getattr(self.state, LOOP_COUNTER_FIELDS[kind])
