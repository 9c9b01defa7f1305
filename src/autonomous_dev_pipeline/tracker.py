"""GitHub issue/PR tracker backed by the gh CLI."""

import json
import re
import subprocess
from pathlib import Path
from typing import Optional

from .errors import TrackerError


PR_URL_PATTERN = re.compile(r"/pull/(\d+)")
ISSUE_URL_PATTERN = re.compile(r"/issues/(\d+)")


class GitHubTracker:
    """Talks to GitHub through the ``gh`` command line tool.

    Issue references may be numbers, ``#123`` or full issue URLs; gh accepts
    all of them.
    """

    def __init__(self, repo_path: Path, command: str = "gh", timeout: int = 120):
        self.repo_path = Path(repo_path)
        self.command = command
        self.timeout = timeout

    def _run(self, operation: str, *args: str, cwd: Optional[Path] = None) -> str:
        try:
            result = subprocess.run(
                [self.command, *args],
                cwd=cwd or self.repo_path,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise TrackerError(operation, f"timed out after {self.timeout}s") from e
        except OSError as e:
            raise TrackerError(operation, str(e)) from e

        if result.returncode != 0:
            raise TrackerError(operation, result.stderr.strip() or f"exit code {result.returncode}")
        return result.stdout.strip()

    @staticmethod
    def _normalize_ref(issue_ref: str) -> str:
        return issue_ref.lstrip("#")

    def fetch_issue(self, issue_ref: str) -> dict:
        output = self._run(
            "fetch_issue", "issue", "view", self._normalize_ref(issue_ref),
            "--json", "number,title,body,url",
        )
        try:
            data = json.loads(output)
        except json.JSONDecodeError as e:
            raise TrackerError("fetch_issue", f"unexpected gh output: {e}") from e
        data.setdefault("body", "")
        return data

    def comment_issue(self, issue_ref: str, body: str) -> None:
        self._run("comment_issue", "issue", "comment", self._normalize_ref(issue_ref), "--body", body)

    def create_pr(self, title: str, body: str, head: str, base: str, cwd: Optional[Path] = None) -> dict:
        url = self._run(
            "create_pr", "pr", "create",
            "--title", title, "--body", body, "--head", head, "--base", base,
            cwd=cwd,
        ).splitlines()[-1].strip()
        match = PR_URL_PATTERN.search(url)
        if not match:
            raise TrackerError("create_pr", f"could not find PR number in '{url}'")
        return {"number": int(match.group(1)), "url": url}

    def comment_pr(self, pr_number: int, body: str) -> None:
        self._run("comment_pr", "pr", "comment", str(pr_number), "--body", body)

    def merge_pr(self, pr_number: int) -> None:
        self._run("merge_pr", "pr", "merge", str(pr_number), "--squash", "--delete-branch")

    def create_issue(self, title: str, body: str) -> dict:
        url = self._run("create_issue", "issue", "create", "--title", title, "--body", body)
        url = url.splitlines()[-1].strip() if url else ""
        match = ISSUE_URL_PATTERN.search(url)
        return {"url": url, "number": int(match.group(1)) if match else None}
