"""Project lock.

``specloop run`` holds this lock for the whole run: the loop rewrites the
active spec's status lines and the status history between iterations, and a
second loop on the same project would interleave those writes. Read-only
commands (status, next, history, costs) never take it.

The lock is a file in ``.specloop/state/`` holding the owner's PID. It is
created exclusively, so two runs starting together cannot both win.
"""

import logging
import os
from pathlib import Path
from types import TracebackType

from specloop.errors import LockHeldError

logger = logging.getLogger(__name__)

LOCK_FILENAME = "specloop.lock"


class SpecLoopLock:
    """Single-run lock for one project's state directory.

    A lock whose PID no longer runs (a crashed or killed run) is stale and
    is taken over. The owning process may re-enter its own lock.

    Usage:
        with SpecLoopLock(paths.state_dir):
            result = await run_loop(paths.root, agent)

    Attributes:
        lock_path: Path to the lock file
    """

    def __init__(self, state_dir: Path) -> None:
        self.lock_path = state_dir / LOCK_FILENAME

    def acquire(self) -> bool:
        """Try to take the lock.

        Returns:
            True if this process now owns the lock, False if another live
            run owns it
        """
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        if self._create():
            return True

        holder_pid = self.get_holder_pid()
        if holder_pid == os.getpid():
            return True
        if holder_pid is not None and self._is_process_running(holder_pid):
            return False

        logger.warning(f"Taking over stale lock {self.lock_path} (PID: {holder_pid})")
        self.lock_path.unlink(missing_ok=True)
        # Another run may have taken it between unlink and create
        return self._create()

    def release(self) -> None:
        """Remove the lock if this process owns it (or it is unreadable)."""
        if self.lock_path.exists() and self.get_holder_pid() in (None, os.getpid()):
            self.lock_path.unlink(missing_ok=True)

    def get_holder_pid(self) -> int | None:
        """PID of the lock holder, or None if there is no valid lock file."""
        try:
            return int(self.lock_path.read_text().strip())
        except (FileNotFoundError, ValueError):
            return None

    def _create(self) -> bool:
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w") as f:
            f.write(str(os.getpid()))
        return True

    def _is_process_running(self, pid: int) -> bool:
        try:
            os.kill(pid, 0)  # Signal 0 doesn't kill, just checks existence
            return True
        except ProcessLookupError:
            return False
        except PermissionError:
            # Process exists but we don't have permission to signal it
            return True

    def __enter__(self) -> "SpecLoopLock":
        """Take the lock for the duration of a run.

        Raises:
            LockHeldError: If another live run holds the lock
        """
        if not self.acquire():
            raise LockHeldError(self.get_holder_pid())
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.release()
