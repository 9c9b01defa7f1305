"""Data models for the autonomous dev pipeline.

Uses Pydantic for validation. The workflow status document is JSON so a
crashed or interrupted run can be inspected by hand and resumed.
"""

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class WorkflowStatus(str, Enum):
    """Overall state of a workflow run."""
    INITIALIZING = "initializing"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    BLOCKED = "blocked"
    MAX_ITERATIONS_QUALITY = "max_iterations_quality"
    MAX_ITERATIONS_TEST = "max_iterations_test"
    MAX_ITERATIONS_PR_REVIEW = "max_iterations_pr_review"
    CIRCUIT_BREAKER = "circuit_breaker"

    @property
    def is_terminal(self) -> bool:
        return self not in (WorkflowStatus.INITIALIZING, WorkflowStatus.RUNNING)


class StageStatus(str, Enum):
    """Status of a single top-level stage."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class TaskStatus(str, Enum):
    """Status of a planned implementation task."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class Tier(str, Enum):
    """Execution-cost tier, ordered from cheapest to most capable."""
    LIGHT = "light"
    STANDARD = "standard"
    ADVANCED = "advanced"


class LoopKind(str, Enum):
    """The three bounded convergence loops."""
    QUALITY = "quality"
    TEST = "test"
    PR_REVIEW = "pr_review"


class StageName(str, Enum):
    """Top-level stages, in execution order."""
    SETUP = "setup"
    RESEARCH = "research"
    EVALUATE = "evaluate"
    PLAN = "plan"
    IMPLEMENT = "implement"
    TEST_LOOP = "test_loop"
    DOCS = "docs"
    PUBLISH = "publish"
    PR_REVIEW = "pr_review"
    COMPLETE = "complete"


STAGE_ORDER: list[StageName] = list(StageName)

# Counter field and terminal state for each loop kind
LOOP_COUNTER_FIELDS = {
    LoopKind.QUALITY: "quality_iterations",
    LoopKind.TEST: "test_iterations",
    LoopKind.PR_REVIEW: "pr_review_iterations",
}

LOOP_TERMINAL_STATES = {
    LoopKind.QUALITY: WorkflowStatus.MAX_ITERATIONS_QUALITY,
    LoopKind.TEST: WorkflowStatus.MAX_ITERATIONS_TEST,
    LoopKind.PR_REVIEW: WorkflowStatus.MAX_ITERATIONS_PR_REVIEW,
}


class StageRecord(BaseModel):
    """Progress of one stage.

    Stage-specific fields (task_progress, pr_number, iteration, skipped, ...)
    are stored as extra attributes.
    """
    model_config = ConfigDict(extra="allow")

    status: StageStatus = StageStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def extra_fields(self) -> dict[str, Any]:
        return dict(self.model_extra or {})


class TaskRecord(BaseModel):
    """A single planned implementation task."""
    id: int = Field(..., description="Stable 1-based id assigned at planning")
    description: str
    executor_tier: Tier = Tier.STANDARD
    status: TaskStatus = TaskStatus.PENDING
    review_attempts: int = 0
    review_approved: bool = Field(
        default=False,
        description="Passed its implement/review cycle; only quality refinement remains"
    )
    quality_iterations: int = Field(
        default=0,
        description="Completed quality-loop iterations for this task"
    )
    last_feedback: Optional[str] = None


class WorkflowState(BaseModel):
    """The persisted status document - one per workflow run."""
    state: WorkflowStatus = WorkflowStatus.INITIALIZING

    # Fixed at setup time
    issue_ref: str
    base_branch: str
    branch: Optional[str] = None
    working_tree_path: Optional[str] = None
    log_dir: str

    # Cursors
    current_stage: Optional[str] = None
    current_task_id: Optional[int] = None

    stages: dict[str, StageRecord] = Field(
        default_factory=lambda: {stage.value: StageRecord() for stage in STAGE_ORDER}
    )
    tasks: list[TaskRecord] = Field(default_factory=list)

    # Convergence loop counters, never reset within a run
    quality_iterations: int = 0
    test_iterations: int = 0
    pr_review_iterations: int = 0

    error_message: Optional[str] = None
    started_at: datetime = Field(default_factory=datetime.now)
    last_update: datetime = Field(default_factory=datetime.now)

    def stage(self, name: str | StageName) -> StageRecord:
        """Get a stage record, creating a pending one if missing."""
        key = name.value if isinstance(name, StageName) else name
        if key not in self.stages:
            self.stages[key] = StageRecord()
        return self.stages[key]

    def is_stage_completed(self, name: str | StageName) -> bool:
        return self.stage(name).status == StageStatus.COMPLETED

    def get_task(self, task_id: int) -> TaskRecord:
        for task in self.tasks:
            if task.id == task_id:
                return task
        raise ValueError(f"Task {task_id} not found")

    def failed_tasks(self) -> list[TaskRecord]:
        return [t for t in self.tasks if t.status == TaskStatus.FAILED]

    def task_progress(self) -> str:
        """Return "m/n" where m counts tasks that finished (completed or failed)."""
        done = sum(
            1 for t in self.tasks
            if t.status in (TaskStatus.COMPLETED, TaskStatus.FAILED)
        )
        return f"{done}/{len(self.tasks)}"


class StageResultStatus(str, Enum):
    """Outcome of a single external task invocation."""
    SUCCESS = "success"
    ERROR = "error"


class StageResult(BaseModel):
    """Result of one External Task Runner invocation. Never persisted."""
    status: StageResultStatus
    payload: dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    timed_out: bool = False
    raw_output: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == StageResultStatus.SUCCESS


class RateLimitConfig(BaseModel):
    """How long to back off when the executor reports rate limiting."""
    default_wait_seconds: float = Field(
        default=300.0,
        description="Wait used when the response names no duration"
    )
    buffer_seconds: float = Field(
        default=30.0,
        description="Safety margin added to every computed wait"
    )


class IterationLimits(BaseModel):
    """Caps for the convergence loops and per-task attempts."""
    quality: int = Field(default=3, ge=1)
    test: int = Field(default=5, ge=1)
    pr_review: int = Field(default=3, ge=1)
    task_attempts: int = Field(default=3, ge=1)


DEFAULT_TIER_MODELS = {
    Tier.LIGHT: "claude-haiku-4-5-20251001",
    Tier.STANDARD: "claude-sonnet-4-20250514",
    Tier.ADVANCED: "claude-opus-4-5-20251101",
}


class PipelineConfig(BaseModel):
    """Configuration for a pipeline run."""
    # Executor
    executor_command: str = Field(
        default="claude",
        description="External executor CLI to invoke once per stage"
    )
    stage_timeout_seconds: int = Field(
        default=1800,  # 30 minutes
        ge=1,
        description="Hard wall-clock limit per executor call"
    )
    permission_mode: str = Field(default="acceptEdits")
    tier_models: dict[Tier, str] = Field(default_factory=lambda: dict(DEFAULT_TIER_MODELS))
    tier_override: Optional[Tier] = Field(
        default=None,
        description="Force every stage onto this tier"
    )

    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    limits: IterationLimits = Field(default_factory=IterationLimits)

    # Paths
    state_dir: str = Field(default=".adp", description="Directory for status, logs and worktrees")
    status_file: str = Field(default="status.json")

    # Git / tracker
    remote: str = Field(default="origin")
    branch_prefix: str = Field(default="adp/issue-")
    auto_merge: bool = Field(default=False, description="Merge the PR once review converges")

    def model_for(self, tier: Tier) -> str:
        return self.tier_models.get(tier, DEFAULT_TIER_MODELS[tier])

    def default_status_path(self, project_path: Path) -> Path:
        return Path(project_path) / self.state_dir / self.status_file


class ResumeContext(BaseModel):
    """Everything the driver needs to continue a prior run."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    state: WorkflowState
    status_path: Path
    log_dir: Path

    @property
    def completed_stages(self) -> set[str]:
        return {
            name for name, record in self.state.stages.items()
            if record.status == StageStatus.COMPLETED
        }

    @property
    def completed_task_ids(self) -> set[int]:
        return {t.id for t in self.state.tasks if t.status == TaskStatus.COMPLETED}
