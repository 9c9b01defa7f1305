"""Shared fakes for the pipeline tests.

The executor, tracker and git are replaced by in-memory implementations of
their interfaces so whole workflow runs can be exercised without a network,
a git repository or the executor CLI.
"""

import json
from pathlib import Path
from typing import Any, Callable, Optional, Union

import pytest

from autonomous_dev_pipeline.executor import ExecutorBackend, RawResponse, parse_envelope
from autonomous_dev_pipeline.git_manager import GitStatus
from autonomous_dev_pipeline.models import PipelineConfig
from autonomous_dev_pipeline.prompts import PromptLibrary


def envelope_response(structured: Optional[dict] = None, **fields: Any) -> RawResponse:
    """Build a successful-looking executor response."""
    envelope = {"type": "result", "is_error": False, "result": "", **fields}
    if structured is not None:
        envelope["structured_output"] = structured
    stdout = json.dumps(envelope)
    return RawResponse(stdout=stdout, returncode=0, envelope=parse_envelope(stdout))


def error_response(message: str, **fields: Any) -> RawResponse:
    """Build an executor error response."""
    envelope = {"type": "result", "is_error": True, "result": message, **fields}
    stdout = json.dumps(envelope)
    return RawResponse(stdout=stdout, returncode=1, envelope=parse_envelope(stdout))


class EchoPrompts(PromptLibrary):
    """Renders a prompt as JSON so the fake executor can route on it."""

    def render(self, name: str, **variables: Any) -> str:
        return json.dumps({"prompt": name, **variables}, default=str)


DEFAULT_ANSWERS: dict[str, dict] = {
    "research": {"summary": "The widget lives in widget.py", "relevant_files": ["widget.py"]},
    "evaluate": {"proceed": True, "change_kind": "functional", "rationale": "clear issue"},
    "plan": {"tasks": [
        {"description": "Add widget model", "complexity": "S"},
        {"description": "Expose widget endpoint", "complexity": "M"},
    ]},
    "implement": {"summary": "implemented"},
    "task_review": {"approved": True},
    "quality_review": {"approved": True},
    "quality_fix": {"summary": "cleaned up"},
    "test_run": {"passed": True, "summary": "all green"},
    "test_validate": {"comprehensive": True},
    "test_fix": {"summary": "fixed tests"},
    "docs": {"updated_files": ["README.md"]},
    "non_functional_change": {"updated_files": ["config/settings.toml"]},
    "spec_review": {"approved": True},
    "code_review": {"approved": True},
    "review_fix": {"summary": "addressed review"},
}

Answer = Union[dict, RawResponse, Callable[[dict], Union[dict, RawResponse]]]


class ScriptedBackend(ExecutorBackend):
    """Executor backend answering by prompt name.

    ``answers`` entries may be a structured payload, a RawResponse, or a
    callable receiving the rendered prompt variables.
    """

    def __init__(self, answers: Optional[dict[str, Answer]] = None):
        self.answers: dict[str, Answer] = {**DEFAULT_ANSWERS, **(answers or {})}
        self.calls: list[dict] = []

    def prompts_called(self) -> list[str]:
        return [call["prompt"] for call in self.calls]

    async def execute(self, prompt: str, schema: dict, model: str, cwd: Path) -> RawResponse:
        variables = json.loads(prompt)
        variables["model"] = model
        self.calls.append(variables)

        answer = self.answers[variables["prompt"]]
        if callable(answer):
            answer = answer(variables)
        if isinstance(answer, RawResponse):
            return answer
        return envelope_response(answer)


class FakeGit:
    """In-memory GitOperations.

    With ``track_changes`` set, ``commit_all`` only commits after something
    marked the working tree ``dirty``.
    """

    def __init__(self, ahead: Optional[int] = None, track_changes: bool = False):
        self.ahead = ahead
        self.track_changes = track_changes
        self.dirty = False
        self.commits: list[str] = []
        self.pushes: list[tuple[str, str]] = []
        self.worktrees: list[tuple[Path, str, str]] = []

    def is_git_repo(self) -> bool:
        return True

    def get_status(self) -> GitStatus:
        return GitStatus(
            branch="adp/issue-42",
            has_changes=False,
            staged_files=[],
            modified_files=[],
            untracked_files=[],
            last_commit_hash=f"c{len(self.commits)}" if self.commits else None,
        )

    def create_worktree(self, path: Path, branch: str, base_branch: str) -> Path:
        path = Path(path)
        path.mkdir(parents=True, exist_ok=True)
        self.worktrees.append((path, branch, base_branch))
        return path

    def commit_all(self, message: str) -> Optional[str]:
        if self.track_changes and not self.dirty:
            return None
        self.dirty = False
        self.commits.append(message)
        return f"c{len(self.commits)}"

    def commits_ahead_of(self, base_branch: str) -> int:
        return len(self.commits) if self.ahead is None else self.ahead

    def has_diff_against(self, base_branch: str) -> bool:
        return self.commits_ahead_of(base_branch) > 0

    def get_changed_files(self, base_branch: str) -> list[str]:
        return ["widget.py"] if self.has_diff_against(base_branch) else []

    def push(self, remote: str, branch: str) -> None:
        self.pushes.append((remote, branch))


class FakeTracker:
    """In-memory IssueTracker."""

    def __init__(self):
        self.issue_comments: list[str] = []
        self.pr_comments: list[tuple[int, str]] = []
        self.prs: list[dict] = []
        self.created_issues: list[dict] = []
        self.merged: list[int] = []

    def fetch_issue(self, issue_ref: str) -> dict:
        return {"number": 42, "title": "Add a widget", "body": "We need a widget.", "url": ""}

    def comment_issue(self, issue_ref: str, body: str) -> None:
        self.issue_comments.append(body)

    def create_pr(self, title: str, body: str, head: str, base: str, cwd: Optional[Path] = None) -> dict:
        pr = {"number": 7, "url": "https://github.com/acme/app/pull/7",
              "title": title, "body": body, "head": head, "base": base}
        self.prs.append(pr)
        return {"number": pr["number"], "url": pr["url"]}

    def comment_pr(self, pr_number: int, body: str) -> None:
        self.pr_comments.append((pr_number, body))

    def merge_pr(self, pr_number: int) -> None:
        self.merged.append(pr_number)

    def create_issue(self, title: str, body: str) -> dict:
        number = 100 + len(self.created_issues)
        issue = {"title": title, "body": body, "url": f"https://github.com/acme/app/issues/{number}"}
        self.created_issues.append(issue)
        return {"url": issue["url"], "number": number}


@pytest.fixture
def config() -> PipelineConfig:
    return PipelineConfig()


@pytest.fixture
def fake_git() -> FakeGit:
    return FakeGit()


@pytest.fixture
def fake_tracker() -> FakeTracker:
    return FakeTracker()
