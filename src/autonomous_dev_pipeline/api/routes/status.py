"""Status, task and event endpoints."""

from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel

from ...lock import is_process_alive, lock_path_for, read_lock_owner
from ...models import TaskRecord, WorkflowState
from ...run_logs import RunLogs
from ...status_store import load_state

router = APIRouter()


class RunStatus(BaseModel):
    """Summary of the current run."""
    issue_ref: str
    state: str
    is_running: bool = False
    current_stage: Optional[str] = None
    current_task_id: Optional[int] = None
    branch: Optional[str] = None
    task_progress: str = "0/0"
    stages: dict[str, str] = {}
    quality_iterations: int = 0
    test_iterations: int = 0
    pr_review_iterations: int = 0
    pr_url: Optional[str] = None
    error_message: Optional[str] = None
    last_update: Optional[datetime] = None


def get_status_path(request: Request) -> Optional[Path]:
    """Get the status document path from app state."""
    return getattr(request.app.state, "status_path", None)


def _load(request: Request) -> WorkflowState:
    path = get_status_path(request)
    if path is None:
        raise HTTPException(status_code=404, detail="No status file configured")
    try:
        state = load_state(path)
    except ValueError as e:
        raise HTTPException(status_code=500, detail=str(e))
    if state is None:
        raise HTTPException(status_code=404, detail=f"No status file at {path}")
    return state


def _lock_held(status_path: Path) -> bool:
    owner = read_lock_owner(lock_path_for(status_path))
    return owner is not None and is_process_alive(owner)


@router.get("/status", response_model=RunStatus)
async def get_status(request: Request) -> RunStatus:
    """Get the current run status."""
    state = _load(request)
    return RunStatus(
        issue_ref=state.issue_ref,
        state=state.state.value,
        is_running=_lock_held(get_status_path(request)),
        current_stage=state.current_stage,
        current_task_id=state.current_task_id,
        branch=state.branch,
        task_progress=state.task_progress(),
        stages={name: record.status.value for name, record in state.stages.items()},
        quality_iterations=state.quality_iterations,
        test_iterations=state.test_iterations,
        pr_review_iterations=state.pr_review_iterations,
        pr_url=state.stage("publish").extra_fields().get("pr_url"),
        error_message=state.error_message,
        last_update=state.last_update,
    )


@router.get("/tasks", response_model=list[TaskRecord])
async def get_tasks(request: Request) -> list[TaskRecord]:
    """Get the planned tasks with their status."""
    return _load(request).tasks


@router.get("/events")
async def get_events(
    request: Request,
    limit: int = Query(default=50, ge=1, le=1000),
) -> list[dict[str, Any]]:
    """Get the most recent orchestrator events."""
    state = _load(request)
    return RunLogs(Path(state.log_dir)).events()[-limit:]
