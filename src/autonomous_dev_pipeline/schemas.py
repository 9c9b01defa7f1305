"""Structured results expected from each external stage call.

Each model's JSON schema is handed to the executor, and the executor's
structured output is validated against the same model.
"""

from typing import Literal, Optional

from pydantic import BaseModel, Field


class ResearchResult(BaseModel):
    """Findings about the issue and the code it touches."""
    summary: str
    relevant_files: list[str] = Field(default_factory=list)
    open_questions: list[str] = Field(default_factory=list)


class EvaluationResult(BaseModel):
    """Go/no-go decision before planning."""
    proceed: bool = Field(..., description="False when a blocking concern needs a human")
    blocking_concerns: list[str] = Field(default_factory=list)
    change_kind: Literal["functional", "non_functional"] = Field(
        default="functional",
        description="non_functional for documentation/config-only changes"
    )
    rationale: str = ""


class PlannedTask(BaseModel):
    description: str
    complexity: Optional[str] = Field(
        default=None,
        description="Optional size hint: S, M or L"
    )


class PlanResult(BaseModel):
    """Ordered implementation tasks."""
    tasks: list[PlannedTask]
    summary: str = ""


class ImplementResult(BaseModel):
    """Outcome of an implement or fix call."""
    summary: str
    files_changed: list[str] = Field(default_factory=list)


class ReviewVerdict(BaseModel):
    """A single reviewer verdict (task review, quality review, spec/code review)."""
    approved: bool
    feedback: str = ""
    issues: list[str] = Field(default_factory=list)
    follow_ups: list[str] = Field(
        default_factory=list,
        description="Out-of-scope improvements worth a separate issue"
    )


class TestRunResult(BaseModel):
    """Result of running the project's test suite."""
    __test__ = False  # not a pytest test class

    passed: bool
    summary: str = ""
    failures: list[str] = Field(default_factory=list)


class TestValidationResult(BaseModel):
    """Judgement of whether the tests cover the change."""
    __test__ = False

    comprehensive: bool
    no_testable_changes: bool = Field(
        default=False,
        description="True when the change has no testable code"
    )
    missing_coverage: list[str] = Field(default_factory=list)
    summary: str = ""


class DocsResult(BaseModel):
    """Documentation updates."""
    updated_files: list[str] = Field(default_factory=list)
    summary: str = ""

