"""Cross-process lock files serializing metric extraction per session.

Lock files live at ``{sessions_dir}/{session_id}.lock`` and contain the PID
of the holder as plain text. Staleness is judged by file mtime, not by
checking whether the PID is alive: hook processes are short-lived and a
crashed holder must not block extraction for longer than the threshold.

Acquire and release run under a per-session flock on
``.{session_id}.lock.guard`` so the stale check, the unlink and the
re-create happen as one step. The kernel drops the flock when a process
dies, so the guard itself never goes stale.
"""

import logging
import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from agentmeter.lib.atomic import file_lock

logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER = 30.0  # seconds


class LockManager:
    """Non-blocking, mtime-expiring lock files."""

    def __init__(self, lock_dir: Path, stale_after: float = DEFAULT_STALE_AFTER):
        self.lock_dir = Path(lock_dir)
        self.stale_after = stale_after

    def lock_path(self, session_id: str) -> Path:
        return self.lock_dir / f"{session_id}.lock"

    def guard_path(self, session_id: str) -> Path:
        return self.lock_dir / f".{session_id}.lock.guard"

    def is_stale(self, session_id: str) -> bool:
        """A missing lock counts as stale."""
        try:
            age = time.time() - self.lock_path(session_id).stat().st_mtime
        except FileNotFoundError:
            return True
        return age > self.stale_after

    def _create(self, path: Path) -> bool:
        try:
            fd = os.open(str(path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        try:
            os.write(fd, str(os.getpid()).encode())
        finally:
            os.close(fd)
        return True

    def acquire(self, session_id: str) -> bool:
        """Try to take the lock. Never waits on the holder.

        Only the guard's short critical section may block.

        Returns:
            True if this process now holds the lock, False if a fresh lock
            is held by someone else.
        """
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        path = self.lock_path(session_id)

        with file_lock(self.guard_path(session_id)):
            if self._create(path):
                logger.debug(f"Acquired lock for {session_id[:8]}")
                return True

            if not self.is_stale(session_id):
                holder = self.holder(session_id)
                logger.debug(f"Lock for {session_id[:8]} held by pid {holder}, skipping")
                return False

            logger.info(f"Removing stale lock for {session_id[:8]} (pid {self.holder(session_id)})")
            path.unlink(missing_ok=True)
            acquired = self._create(path)
        if acquired:
            logger.debug(f"Acquired lock for {session_id[:8]} after stale cleanup")
        return acquired

    def release(self, session_id: str) -> None:
        """Remove the lock unless another process has taken it over."""
        path = self.lock_path(session_id)
        try:
            with file_lock(self.guard_path(session_id)):
                holder = self.holder(session_id)
                if holder is not None and holder != os.getpid():
                    logger.warning(
                        f"Lock for {session_id[:8]} was taken over by pid {holder}, leaving it"
                    )
                    return
                path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not release lock for {session_id[:8]}: {e}")

    def holder(self, session_id: str) -> int | None:
        """PID written into the lock file, if readable."""
        try:
            return int(self.lock_path(session_id).read_text().strip())
        except (ValueError, OSError):
            return None

    @contextmanager
    def hold(self, session_id: str) -> Iterator[bool]:
        """Context manager form of acquire/release.

        Yields whether the lock was acquired; releases only if it was, even
        when the body raises.

        Example:
            with locks.hold(session_id) as acquired:
                if not acquired:
                    return
                ...
        """
        acquired = self.acquire(session_id)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(session_id)
