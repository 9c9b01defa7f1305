"""Orchestration components for the pipeline.

This package contains the pieces the workflow driver composes:
- ConvergenceLoop: bounded check/fix loop shared by all refinement stages
- QualityLoopSteps, TestLoopSteps, PRReviewLoopSteps: per-loop strategies
- StageInvoker: typed stage calls on top of the task runner
- TaskImplementer: per-task implement/review cycle
- ResumeManager: validation of interrupted runs
"""

from .convergence import CheckResult, ConvergenceLoop, ConvergenceSteps, LoopOutcome
from .invoker import StageInvoker
from .refinement import PRReviewLoopSteps, QualityLoopSteps, TestLoopSteps
from .resume import ResumeManager
from .task_cycle import TaskImplementer

__all__ = [
    "CheckResult",
    "ConvergenceLoop",
    "ConvergenceSteps",
    "LoopOutcome",
    "StageInvoker",
    "PRReviewLoopSteps",
    "QualityLoopSteps",
    "TestLoopSteps",
    "ResumeManager",
    "TaskImplementer",
]
