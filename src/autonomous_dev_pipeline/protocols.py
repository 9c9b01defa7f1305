"""Protocol definitions for dependency injection.

These protocols define the interfaces the driver depends on, enabling:
- Loose coupling between the engine and its collaborators
- Easy testing via mock implementations
"""

from pathlib import Path
from typing import Optional, Protocol, runtime_checkable, TYPE_CHECKING

if TYPE_CHECKING:
    from .git_manager import GitStatus


@runtime_checkable
class GitOperations(Protocol):
    """Protocol for git operations on the working tree.

    Abstracts git interactions to allow mocking in tests.
    """

    def is_git_repo(self) -> bool:
        """Check if the path is a git checkout."""
        ...

    def get_status(self) -> "GitStatus":
        """Get current git status."""
        ...

    def create_worktree(self, path: Path, branch: str, base_branch: str) -> Path:
        """Create or reuse a worktree for a branch; return its path."""
        ...

    def commit_all(self, message: str) -> Optional[str]:
        """Stage and commit everything; return the hash or None if nothing changed."""
        ...

    def commits_ahead_of(self, base_branch: str) -> int:
        """Count commits not on the base branch."""
        ...

    def has_diff_against(self, base_branch: str) -> bool:
        """True if the branch's tree differs from the base."""
        ...

    def get_changed_files(self, base_branch: str) -> list[str]:
        """Files changed relative to the base branch."""
        ...

    def push(self, remote: str, branch: str) -> None:
        """Push a branch to a remote."""
        ...


@runtime_checkable
class IssueTracker(Protocol):
    """Protocol for the issue/PR tracking system.

    The engine interprets success or failure of these calls but does not
    care how they are implemented. Failures raise TrackerError.
    """

    def fetch_issue(self, issue_ref: str) -> dict:
        """Return at least ``title`` and ``body`` for an issue."""
        ...

    def comment_issue(self, issue_ref: str, body: str) -> None:
        """Post a comment on an issue."""
        ...

    def create_pr(self, title: str, body: str, head: str, base: str, cwd: Optional[Path] = None) -> dict:
        """Open a pull request; return at least ``number`` and ``url``."""
        ...

    def comment_pr(self, pr_number: int, body: str) -> None:
        """Post a comment on a pull request."""
        ...

    def merge_pr(self, pr_number: int) -> None:
        """Merge a pull request."""
        ...

    def create_issue(self, title: str, body: str) -> dict:
        """Open a follow-up issue; return at least ``url``."""
        ...
