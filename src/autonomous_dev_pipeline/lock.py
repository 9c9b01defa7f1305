"""Single-instance locking for a status document.

The lock is a file holding the owner's pid, linked into place atomically so two
racing processes cannot both win. A lock whose owner is no longer alive is
stale and gets removed before retrying.
"""

import os
import tempfile
import uuid
from pathlib import Path
from typing import Optional

from rich.console import Console

from .errors import LockConflict


console = Console()


def lock_path_for(status_path: Path) -> Path:
    """The lock guarding a given status document."""
    status_path = Path(status_path)
    return status_path.with_name(status_path.name + ".lock")


def is_process_alive(pid: int) -> bool:
    """Check whether a process with this pid exists."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True  # Exists but owned by someone else
    return True


def read_lock_owner(lock_path: Path) -> Optional[int]:
    """Return the pid recorded in a lock file, or None if unreadable."""
    try:
        return int(Path(lock_path).read_text().strip())
    except (OSError, ValueError):
        return None


class LockManager:
    """Ensures at most one workflow instance per status document.

    The lock file never exists without an owner: the pid is written to a
    temporary file first and hard-linked into place. An empty or unreadable
    lock is treated as held.

    Usage:
        with LockManager(lock_path):
            ...  # run the workflow
    """

    def __init__(self, lock_path: Path, pid: Optional[int] = None):
        self.lock_path = Path(lock_path)
        self.pid = pid if pid is not None else os.getpid()
        self._held = False

    def _try_create(self) -> bool:
        fd, tmp_name = tempfile.mkstemp(
            dir=self.lock_path.parent, prefix=f".{self.lock_path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w") as f:
                f.write(str(self.pid))
                f.flush()
                os.fsync(f.fileno())
            try:
                os.link(tmp_name, self.lock_path)
            except FileExistsError:
                return False
            return True
        finally:
            os.unlink(tmp_name)

    def _remove_stale(self, stale_owner: int) -> bool:
        """Move a stale lock aside and delete it if it still names ``stale_owner``.

        Returns:
            True if the path is free to claim, False if another instance
            took the lock in the meantime
        """
        aside = self.lock_path.with_name(f"{self.lock_path.name}.stale-{uuid.uuid4().hex}")
        try:
            os.rename(self.lock_path, aside)
        except FileNotFoundError:
            return True  # Someone else already removed it

        if read_lock_owner(aside) == stale_owner:
            aside.unlink()
            return True

        # A fresh lock was moved aside; put it back
        try:
            os.link(aside, self.lock_path)
        except FileExistsError:
            pass
        aside.unlink()
        return False

    def acquire(self) -> None:
        """Acquire the lock.

        Raises:
            LockConflict: If another process holds the lock
        """
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)

        if self._try_create():
            self._held = True
            return

        owner = read_lock_owner(self.lock_path)
        if owner is None:
            raise LockConflict(str(self.lock_path), -1)
        if owner != self.pid and is_process_alive(owner):
            raise LockConflict(str(self.lock_path), owner)

        console.print(
            f"[yellow]Removing stale lock {self.lock_path} (owner pid {owner})[/yellow]"
        )
        if not self._remove_stale(owner) or not self._try_create():
            raise LockConflict(str(self.lock_path), read_lock_owner(self.lock_path) or -1)
        self._held = True

    def release(self) -> bool:
        """Remove the lock if it still names this process.

        Returns:
            True if the lock file was removed
        """
        if read_lock_owner(self.lock_path) != self.pid:
            self._held = False
            return False
        try:
            self.lock_path.unlink()
        except FileNotFoundError:
            return False
        finally:
            self._held = False
        return True

    @property
    def held(self) -> bool:
        return self._held

    def __enter__(self) -> "LockManager":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
