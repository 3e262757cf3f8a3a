"""Per-session metadata persistence.

Stores one ``MetricsSession`` document per CLI session at
``{sessions_dir}/{session_id}.json``. This file is the single source of
truth recoverable after a crash; it embeds the correlation result,
monitoring state, watermark reference and SyncState.
"""

import logging
import time
from pathlib import Path
from typing import Callable

from agentmeter.lib.atomic import file_lock, read_json, write_json_atomic
from agentmeter.models import CorrelationResult, MetricsSession, SessionStatus

logger = logging.getLogger(__name__)


class SessionStore:
    """Load/save MetricsSession documents with atomic writes."""

    def __init__(self, sessions_dir: Path):
        self.sessions_dir = Path(sessions_dir)

    def path(self, session_id: str) -> Path:
        return self.sessions_dir / f"{session_id}.json"

    def exists(self, session_id: str) -> bool:
        return self.path(session_id).exists()

    def load(self, session_id: str) -> MetricsSession | None:
        """Load a session; corrupt or missing files read as None."""
        data = read_json(self.path(session_id))
        if not data:
            return None
        try:
            return MetricsSession.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Could not load session {session_id[:8]}: {e}")
            return None

    def save(self, session: MetricsSession) -> None:
        """Persist a session via temp file + rename."""
        write_json_atomic(self.path(session.session_id), session.to_dict())
        logger.debug(f"Saved session {session.session_id[:8]} ({session.status.value})")

    def lock_path(self, session_id: str) -> Path:
        """flock file serializing read-modify-writes of one session document."""
        return self.sessions_dir / f".{session_id}.json.lock"

    def update(
        self, session_id: str, mutate: Callable[[MetricsSession], None]
    ) -> MetricsSession | None:
        """Read-modify-write a session. Returns None if it does not exist.

        The whole cycle runs under the session's flock, so a concurrent
        claim from a hook process is never overwritten by a stale copy.
        """
        with file_lock(self.lock_path(session_id)):
            session = self.load(session_id)
            if session is None:
                logger.debug(f"Cannot update missing session {session_id[:8]}")
                return None
            mutate(session)
            self.save(session)
        return session

    def update_correlation(self, session_id: str, correlation: CorrelationResult) -> None:
        def _apply(session: MetricsSession) -> None:
            session.correlation = correlation

        self.update(session_id, _apply)

    def update_status(
        self, session_id: str, status: SessionStatus, end_time: float | None = None
    ) -> None:
        def _apply(session: MetricsSession) -> None:
            session.status = status
            if end_time is not None:
                session.end_time = end_time
            if session.sync is not None:
                session.sync.status = status
                if end_time is not None:
                    session.sync.session_end_time = end_time

        self.update(session_id, _apply)

    def list_sessions(self) -> list[MetricsSession]:
        """All readable sessions, most recently started first."""
        if not self.sessions_dir.exists():
            return []
        sessions = []
        for session_file in self.sessions_dir.glob("*.json"):
            session = self.load(session_file.stem)
            if session is not None:
                sessions.append(session)
        sessions.sort(key=lambda s: s.start_time, reverse=True)
        return sessions

    def cleanup_old(self, max_age_days: int = 7) -> int:
        """Remove session files not modified for max_age_days.

        Returns:
            Number of files cleaned up.
        """
        if not self.sessions_dir.exists():
            return 0

        cutoff = time.time() - (max_age_days * 86400)
        removed = 0

        for session_file in self.sessions_dir.glob("*.json"):
            try:
                if session_file.stat().st_mtime < cutoff:
                    session_file.unlink()
                    self.lock_path(session_file.stem).unlink(missing_ok=True)
                    removed += 1
            except OSError:
                continue

        if removed:
            logger.info(f"Cleaned up {removed} old session files")
        return removed
