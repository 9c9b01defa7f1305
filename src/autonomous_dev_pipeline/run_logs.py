"""Per-run log directory layout and JSONL logging.

Directory structure:
    <log_dir>/
    ├── status.json             # Mirror of the status document
    ├── orchestrator.jsonl      # Driver-level events
    ├── stages/                 # One append-only log per stage invocation
    │   └── {stage_id}.jsonl
    └── context/                # Extracted artifacts read back by later stages
        ├── issue.json
        ├── research.json
        └── tasks.json

Logs are written with immediate flush (os.fsync) so a crash never loses the
raw input/output of the call that caused it.
"""

import json
import os
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Optional


def _safe_name(name: str) -> str:
    """Sanitize a stage id or artifact name for use as a filename."""
    return re.sub(r"[^A-Za-z0-9._-]+", "-", name).strip("-")[:120] or "unnamed"


def append_jsonl(path: Path, entry: dict) -> None:
    """Append one JSON line and force it to disk.

    Args:
        path: Log file to append to
        entry: Dict to write; a timestamp is added if missing
    """
    if "timestamp" not in entry:
        entry["timestamp"] = datetime.now().isoformat()

    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a", encoding="utf-8") as f:
        f.write(json.dumps(entry, default=str) + "\n")
        f.flush()
        try:
            os.fsync(f.fileno())
        except OSError:
            pass  # Some filesystems don't support fsync


def read_jsonl(path: Path) -> list[dict]:
    """Read all entries from a JSONL file, skipping malformed lines."""
    if not path.exists():
        return []

    entries = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                continue
    return entries


class StageLog:
    """Append-only JSONL log for a single stage id.

    Example output:
        {"type": "request", "timestamp": "...", "stage_id": "plan", "model": "...", "prompt": "..."}
        {"type": "response", "timestamp": "...", "returncode": 0, "stdout": "...", "stderr": ""}
        {"type": "rate_limit", "timestamp": "...", "wait_seconds": 75.0}
        {"type": "result", "timestamp": "...", "status": "success"}
    """

    def __init__(self, path: Path, stage_id: str):
        self.path = path
        self.stage_id = stage_id

    def log_request(self, prompt: str, model: str, schema: Optional[dict] = None, attempt: int = 1) -> None:
        append_jsonl(self.path, {
            "type": "request",
            "stage_id": self.stage_id,
            "attempt": attempt,
            "model": model,
            "prompt": prompt,
            "schema": schema,
        })

    def log_response(self, stdout: str, stderr: str, returncode: Optional[int], attempt: int = 1) -> None:
        append_jsonl(self.path, {
            "type": "response",
            "stage_id": self.stage_id,
            "attempt": attempt,
            "returncode": returncode,
            "stdout": stdout,
            "stderr": stderr,
        })

    def log_event(self, event_type: str, **fields: Any) -> None:
        append_jsonl(self.path, {"type": event_type, "stage_id": self.stage_id, **fields})

    def entries(self) -> list[dict]:
        return read_jsonl(self.path)


class RunLogs:
    """Manages the log directory of one workflow run."""

    STATUS_MIRROR = "status.json"
    ORCHESTRATOR_LOG = "orchestrator.jsonl"

    def __init__(self, log_dir: Path):
        """Initialize run logs.

        Args:
            log_dir: The run's log directory
        """
        self.log_dir = Path(log_dir)
        self.stages_dir = self.log_dir / "stages"
        self.context_dir = self.log_dir / "context"
        self.status_mirror = self.log_dir / self.STATUS_MIRROR
        self.orchestrator_log = self.log_dir / self.ORCHESTRATOR_LOG

    @classmethod
    def create_for_run(cls, state_dir: Path, issue_ref: str) -> "RunLogs":
        """Create a fresh log directory for a new run.

        Format: <state_dir>/logs/{YYYYMMDD_HHMMSS}_issue-{ref}
        """
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_dir = Path(state_dir) / "logs" / f"{stamp}_issue-{_safe_name(issue_ref)}"
        logs = cls(log_dir)
        logs.ensure_structure()
        return logs

    def ensure_structure(self) -> None:
        """Create the log directory structure if it doesn't exist."""
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.stages_dir.mkdir(exist_ok=True)
        self.context_dir.mkdir(exist_ok=True)

    def stage_log(self, stage_id: str) -> StageLog:
        """Get the append-only log for a stage id."""
        return StageLog(self.stages_dir / f"{_safe_name(stage_id)}.jsonl", stage_id)

    def log_event(self, event: str, **fields: Any) -> None:
        """Record a driver-level event in orchestrator.jsonl."""
        append_jsonl(self.orchestrator_log, {"type": event, **fields})

    def events(self) -> list[dict]:
        return read_jsonl(self.orchestrator_log)

    # =========================================================================
    # Context Artifacts
    # =========================================================================

    def context_path(self, name: str) -> Path:
        return self.context_dir / f"{_safe_name(name)}.json"

    def write_context(self, name: str, data: Any) -> Path:
        """Persist an intermediate artifact for later stages.

        Args:
            name: Artifact name (e.g. "tasks")
            data: JSON-serializable data

        Returns:
            Path to the written artifact
        """
        self.context_dir.mkdir(parents=True, exist_ok=True)
        path = self.context_path(name)
        path.write_text(json.dumps(data, indent=2, default=str), encoding="utf-8")
        return path

    def read_context(self, name: str) -> Optional[Any]:
        """Read an artifact back, or None if it was never written."""
        path = self.context_path(name)
        if not path.exists():
            return None
        return json.loads(path.read_text(encoding="utf-8"))
