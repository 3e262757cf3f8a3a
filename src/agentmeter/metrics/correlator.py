"""Match a CLI session to the session file its assistant writes.

The assistant picks its own session id and file name, so the file is found
by elimination: it matches the adapter's naming pattern, it is new (or
modified) since spawn, and it is the most recently written candidate.
The search is an explicit state machine driven over a backoff schedule:

    PENDING -> ATTEMPT -> MATCHED
                       -> RETRY -> (sleep) -> ATTEMPT ...
                       -> FAILED   (schedule exhausted)
"""

import asyncio
import logging
import time
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable

from agentmeter.metrics.adapters.base import MetricsAdapter
from agentmeter.models import CorrelationResult, CorrelationStatus, FileInfo, FileSnapshot

logger = logging.getLogger(__name__)

DEFAULT_DELAYS = (0.5, 1.0, 2.0, 4.0, 8.0)  # seconds between attempts
DEFAULT_CLOCK_SKEW = 2.0


class CorrelationState(str, Enum):
    PENDING = "pending"
    ATTEMPT = "attempt"
    MATCHED = "matched"
    RETRY = "retry"
    FAILED = "failed"


class SessionCorrelator:
    """Retry-with-backoff search for one session's assistant file."""

    def __init__(
        self,
        adapter: MetricsAdapter,
        working_directory: str,
        spawn_time: float,
        before_snapshot: FileSnapshot | None = None,
        delays: tuple[float, ...] | list[float] = DEFAULT_DELAYS,
        clock_skew: float = DEFAULT_CLOCK_SKEW,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        event_log=None,
    ):
        self.adapter = adapter
        self.working_directory = working_directory
        self.spawn_time = spawn_time
        self.before_snapshot = before_snapshot
        self.delays = list(delays)
        self.clock_skew = clock_skew
        self.sleep = sleep
        self.event_log = event_log
        self.state = CorrelationState.PENDING
        self.result = CorrelationResult()

    def _stat_candidates(self) -> list[FileInfo]:
        before = {f.path: f for f in self.before_snapshot.files} if self.before_snapshot else {}
        threshold = self.spawn_time - self.clock_skew
        candidates = []

        for path in self.adapter.list_session_files():
            try:
                stat = path.stat()
            except OSError:
                continue
            info = FileInfo(
                path=str(path),
                size=stat.st_size,
                created_at=getattr(stat, "st_birthtime", stat.st_ctime),
                modified_at=stat.st_mtime,
            )
            previous = before.get(info.path)
            if previous is not None and not (
                info.modified_at > previous.modified_at and info.modified_at >= self.spawn_time
            ):
                continue
            if info.modified_at < threshold:
                continue
            candidates.append(info)
        return candidates

    def find_candidates(self) -> list[FileInfo]:
        """Pattern-matching files written since spawn, best first.

        Files mentioning the working directory outrank those that do not.
        Within a group: newest mtime, then larger size, then path.
        """
        candidates = self._stat_candidates()
        if not candidates:
            return []

        in_cwd = [
            c for c in candidates
            if self.working_directory
            and self.adapter.session_file_mentions(Path(c.path), self.working_directory)
        ]
        pool = in_cwd or candidates
        if len(candidates) > 1:
            logger.debug(
                f"{len(candidates)} candidate files for {self.adapter.agent_name}, "
                f"{len(in_cwd)} mention {self.working_directory}"
            )
        return sorted(pool, key=lambda f: (f.modified_at, f.size, f.path), reverse=True)

    def step(self) -> CorrelationState:
        """Run one attempt and move to MATCHED, RETRY or FAILED."""
        if self.state in (CorrelationState.MATCHED, CorrelationState.FAILED):
            return self.state

        self.state = CorrelationState.ATTEMPT
        try:
            candidates = self.find_candidates()
        except OSError as e:
            logger.warning(f"Correlation scan failed: {e}")
            candidates = []

        if candidates:
            match = candidates[0]
            self.result.status = CorrelationStatus.MATCHED
            self.result.agent_session_file = match.path
            self.result.agent_session_id = self.adapter.extract_session_id(Path(match.path))
            self.result.detected_at = time.time()
            self.state = CorrelationState.MATCHED
            logger.info(
                f"Matched {self.adapter.agent_name} session {self.result.agent_session_id} "
                f"after {self.result.retry_count} retries: {match.path}"
            )
        elif self.result.retry_count < len(self.delays):
            self.state = CorrelationState.RETRY
            self._log_liveness()
        else:
            self.result.status = CorrelationStatus.FAILED
            self.state = CorrelationState.FAILED
            logger.warning(
                f"No {self.adapter.agent_name} session file found after "
                f"{self.result.retry_count} retries; continuing without metrics"
            )
        return self.state

    def _log_liveness(self) -> None:
        if self.event_log is None:
            return
        last = self.event_log.last_activity()
        if last is None:
            logger.debug("No proxied requests yet; assistant may still be starting")
        else:
            logger.debug(f"Last proxied request {time.time() - last:.1f}s ago, session file not found yet")

    async def run(self) -> CorrelationResult:
        """Drive attempts through the delay schedule until matched or failed."""
        while self.step() == CorrelationState.RETRY:
            delay = self.delays[self.result.retry_count]
            logger.debug(f"Correlation retry {self.result.retry_count + 1}/{len(self.delays)} in {delay}s")
            await self.sleep(delay)
            self.result.retry_count += 1
        return self.result
