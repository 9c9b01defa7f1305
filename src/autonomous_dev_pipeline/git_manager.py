"""Git operations for the pipeline.

Handles worktree setup, commits, pushes and the change inspection the
driver needs before publishing.
"""

import subprocess
from pathlib import Path
from typing import Optional
from dataclasses import dataclass


@dataclass
class GitStatus:
    """Current git status."""
    branch: str
    has_changes: bool
    staged_files: list[str]
    modified_files: list[str]
    untracked_files: list[str]
    last_commit_hash: Optional[str]


class GitError(RuntimeError):
    """A git command failed."""


class GitManager:
    """Manages git operations for one checkout (repository or worktree)."""

    def __init__(self, project_path: Path):
        self.project_path = Path(project_path)

    def _run(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        """Run a git command."""
        result = subprocess.run(
            ["git", *args],
            cwd=self.project_path,
            capture_output=True,
            text=True,
            check=False
        )
        if check and result.returncode != 0:
            raise GitError(
                f"git {' '.join(args)} failed ({result.returncode}): {result.stderr.strip()}"
            )
        return result

    def is_git_repo(self) -> bool:
        """Check if the path is inside a git checkout."""
        if not self.project_path.is_dir():
            return False
        result = self._run("rev-parse", "--is-inside-work-tree", check=False)
        return result.returncode == 0 and result.stdout.strip() == "true"

    def current_branch(self) -> str:
        result = self._run("branch", "--show-current", check=False)
        return result.stdout.strip()

    def get_status(self) -> GitStatus:
        """Get current git status."""
        status_result = self._run("status", "--porcelain", check=False)
        lines = status_result.stdout.split("\n") if status_result.stdout.strip() else []

        staged = []
        modified = []
        untracked = []

        for line in lines:
            if not line:
                continue
            status_code = line[:2]
            filename = line[3:]

            if status_code == "??":
                untracked.append(filename)
                continue
            if status_code[0] in "MADRC":
                staged.append(filename)
            if status_code[1] in "MD":
                modified.append(filename)

        log_result = self._run("rev-parse", "HEAD", check=False)
        last_hash = log_result.stdout.strip() if log_result.returncode == 0 else None

        return GitStatus(
            branch=self.current_branch() or "HEAD",
            has_changes=bool(staged or modified or untracked),
            staged_files=staged,
            modified_files=modified,
            untracked_files=untracked,
            last_commit_hash=last_hash,
        )

    # =========================================================================
    # Worktrees and branches
    # =========================================================================

    def branch_exists(self, branch: str) -> bool:
        result = self._run("rev-parse", "--verify", "--quiet", f"refs/heads/{branch}", check=False)
        return result.returncode == 0

    def create_worktree(self, path: Path, branch: str, base_branch: str) -> Path:
        """Create (or reuse) a worktree for a branch.

        Args:
            path: Where the worktree should live
            branch: Branch to create or check out
            base_branch: Starting point for a new branch

        Returns:
            Resolved worktree path
        """
        path = Path(path)
        if path.exists() and GitManager(path).is_git_repo():
            return path.resolve()

        path.parent.mkdir(parents=True, exist_ok=True)
        if self.branch_exists(branch):
            self._run("worktree", "add", str(path), branch)
        else:
            self._run("worktree", "add", "-b", branch, str(path), base_branch)
        return path.resolve()

    # =========================================================================
    # Commits and publishing
    # =========================================================================

    def stage_all(self) -> None:
        """Stage all changes."""
        self._run("add", "-A")

    def commit(self, message: str, allow_empty: bool = False) -> Optional[str]:
        """Create a commit and return the hash, or None if nothing was committed."""
        args = ["commit", "-m", message]
        if allow_empty:
            args.append("--allow-empty")

        result = self._run(*args, check=False)
        if result.returncode != 0:
            return None

        hash_result = self._run("rev-parse", "HEAD")
        return hash_result.stdout.strip()

    def commit_all(self, message: str) -> Optional[str]:
        """Stage everything and commit it if there is anything to commit."""
        if not self.get_status().has_changes:
            return None
        self.stage_all()
        return self.commit(message)

    def commits_ahead_of(self, base_branch: str) -> int:
        """Count commits on HEAD that are not on the base branch."""
        result = self._run("rev-list", "--count", f"{base_branch}..HEAD", check=False)
        if result.returncode != 0:
            return 0
        try:
            return int(result.stdout.strip() or 0)
        except ValueError:
            return 0

    def has_diff_against(self, base_branch: str) -> bool:
        """True if HEAD's tree differs from the base branch's tree."""
        result = self._run("diff", "--quiet", f"{base_branch}...HEAD", check=False)
        return result.returncode == 1

    def get_changed_files(self, base_branch: str) -> list[str]:
        """Files changed on this branch relative to the base branch."""
        result = self._run("diff", "--name-only", f"{base_branch}...HEAD", check=False)
        if result.returncode != 0 or not result.stdout.strip():
            return []
        return result.stdout.strip().split("\n")

    def push(self, remote: str, branch: str) -> None:
        """Push a branch and set its upstream."""
        self._run("push", "--set-upstream", remote, branch)
