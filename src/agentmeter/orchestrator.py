"""Session lifecycle for metrics collection around one assistant run.

    before_spawn  -> snapshot the assistant's session dir, persist the session
    after_spawn   -> correlate, initialize SyncState, start the change monitor
    (monitor)     -> extract_and_sync on every debounced change
    on_exit       -> stop monitoring, final extraction + sync, final status

Every step degrades to "session tracked without metrics" on failure; none of
them raises into the CLI that launched the assistant.
"""

import asyncio
import logging
import os
import time
import uuid
from copy import deepcopy
from pathlib import Path
from typing import Awaitable, Callable

from agentmeter.config import MetricsConfig
from agentmeter.lib.git import get_git_branch, get_project_id
from agentmeter.metrics.adapters import MetricsAdapter, get_adapter
from agentmeter.metrics.correlator import CorrelationState, SessionCorrelator
from agentmeter.metrics.delta_log import DeltaLog
from agentmeter.metrics.extractor import IncrementalExtractor
from agentmeter.metrics.lock import LockManager
from agentmeter.metrics.monitor import ChangeMonitor
from agentmeter.metrics.session_store import SessionStore
from agentmeter.metrics.snapshot import FileSnapshotter
from agentmeter.metrics.sync_state import SyncStateManager
from agentmeter.metrics.watermark import WatermarkStore
from agentmeter.models import (
    CorrelationResult,
    CorrelationStatus,
    FileSnapshot,
    MetricDelta,
    MetricsSession,
    SessionStatus,
    Watermark,
    WatermarkType,
)
from agentmeter.proxy.events import ProxyEventLog

logger = logging.getLogger(__name__)

AGENT_PROVIDERS = {
    "claude": "anthropic",
    "gemini": "google",
    "codex": "openai",
}


def pid_alive(pid: int) -> bool:
    """Check whether a process exists without signalling it."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


class MetricsOrchestrator:
    """Drives one CLI session's metrics from spawn to exit.

    Args:
        config: Storage, timing and sync settings.
        agent_name: Assistant being run ("claude", "gemini", "codex").
        session_id: CLI session id; a new UUID when omitted.
        working_directory: Directory the assistant runs in (default cwd).
        adapter: Override the registry adapter (tests point it at tmp dirs).
        sync_service: Optional SyncService; sync is skipped when None.
        sleep: Awaitable sleep used for init delay and correlation backoff.
        use_native_watch: Use watchdog notifications in addition to polling.
    """

    def __init__(
        self,
        config: MetricsConfig,
        agent_name: str,
        session_id: str | None = None,
        working_directory: str | None = None,
        adapter: MetricsAdapter | None = None,
        sync_service=None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        use_native_watch: bool = True,
    ):
        self.config = config
        self.agent_name = agent_name
        self.provider = AGENT_PROVIDERS.get(agent_name, agent_name)
        self.adapter = adapter if adapter is not None else get_adapter(agent_name)
        self.session_id = session_id or str(uuid.uuid4())
        self.working_directory = working_directory or os.getcwd()
        self.sync_service = sync_service
        self.sleep = sleep
        self.use_native_watch = use_native_watch

        self.store = SessionStore(config.sessions_dir)
        self.watermarks = WatermarkStore(config.watermarks_dir, config.watermark_ttl)
        self.locks = LockManager(config.sessions_dir, config.lock_stale_after)
        self.sync_state = SyncStateManager(self.session_id, self.store)
        self.delta_log = DeltaLog(config.metrics_dir, self.session_id)
        self.event_log = ProxyEventLog(config.events_dir, self.session_id)

        self.monitor: ChangeMonitor | None = None
        self.snapshot: FileSnapshot | None = None
        self.spawn_time: float | None = None

    @property
    def enabled(self) -> bool:
        if self.adapter is None:
            return False
        return self.config.is_enabled_for(self.provider) or self.config.is_enabled_for(self.agent_name)

    # =========================================================================
    # Session creation
    # =========================================================================

    def _new_session(self, owner_pid: int | None) -> MetricsSession:
        session = MetricsSession(
            session_id=self.session_id,
            agent_name=self.agent_name,
            provider=self.provider,
            working_directory=self.working_directory,
            start_time=self.spawn_time or time.time(),
            project=get_project_id(self.working_directory),
            git_branch=get_git_branch(self.working_directory),
            owner_pid=owner_pid,
        )
        self.store.save(session)
        logger.info(
            f"Started metrics session {self.session_id[:8]} for {self.agent_name} "
            f"in {self.working_directory} (branch {session.git_branch or 'unknown'})"
        )
        return session

    def before_spawn(self) -> MetricsSession | None:
        """Snapshot the assistant's session dir and persist a new session.

        Returns None when metrics are disabled for this assistant.
        """
        if self.adapter is None:
            logger.info(f"No metrics adapter for {self.agent_name}, running without metrics")
            return None
        if not self.enabled:
            logger.info(f"Metrics disabled for provider {self.provider}")
            return None

        self.config.ensure_dirs()
        self.snapshot = FileSnapshotter().snapshot(self.adapter.sessions_dir)
        self.spawn_time = time.time()
        return self._new_session(owner_pid=os.getpid())

    def ensure_session(self, owner_pid: int | None = None) -> MetricsSession | None:
        """Load the session, creating it if a hook sees it first."""
        if not self.enabled:
            return None
        session = self.store.load(self.session_id)
        if session is not None:
            return session
        self.config.ensure_dirs()
        return self._new_session(owner_pid)

    # =========================================================================
    # Correlation and monitoring
    # =========================================================================

    def _correlator(self, session: MetricsSession) -> SessionCorrelator:
        return SessionCorrelator(
            self.adapter,
            self.working_directory,
            self.spawn_time or session.start_time,
            before_snapshot=self.snapshot,
            delays=self.config.correlation_delays,
            clock_skew=self.config.clock_skew_tolerance,
            sleep=self.sleep,
            event_log=self.event_log,
        )

    def _on_matched(self, session: MetricsSession, result: CorrelationResult) -> None:
        self.store.update_correlation(self.session_id, result)
        self.sync_state.initialize(result.agent_session_id or "", session.start_time)

    async def after_spawn(self) -> CorrelationResult | None:
        """Correlate the session file and start monitoring it.

        A failed correlation is recorded on the session; the assistant keeps
        running without metrics.
        """
        session = self.store.load(self.session_id)
        if session is None or not self.enabled:
            return None

        await self.sleep(self.adapter.init_delay)
        result = await self._correlator(session).run()

        if result.status != CorrelationStatus.MATCHED:
            self.store.update_correlation(self.session_id, result)
            return result

        self._on_matched(session, result)
        await self.start_monitor(Path(result.agent_session_file))
        return result

    def correlate_once(self) -> CorrelationResult | None:
        """Single correlation attempt, used by hooks and at exit.

        Only a match is persisted; a miss leaves the session pending so the
        next trigger can try again.
        """
        session = self.store.load(self.session_id)
        if session is None or not self.enabled:
            return None
        if session.correlation.status == CorrelationStatus.MATCHED:
            return session.correlation

        correlator = self._correlator(session)
        if correlator.step() == CorrelationState.MATCHED:
            self._on_matched(session, correlator.result)
        return correlator.result

    async def start_monitor(self, path: Path) -> ChangeMonitor:
        session = self.store.load(self.session_id)
        self.monitor = ChangeMonitor(
            path,
            self._on_change,
            debounce=self.config.debounce_delay,
            poll_interval=self.config.poll_interval,
            state=session.monitoring if session else None,
            use_native=self.use_native_watch,
        )
        await self.monitor.start()
        self._save_monitoring()
        return self.monitor

    async def _on_change(self) -> None:
        await self.extract_and_sync()
        self._save_monitoring()

    def _save_monitoring(self) -> None:
        if self.monitor is None:
            return
        state = deepcopy(self.monitor.state)

        def _apply(session: MetricsSession) -> None:
            session.monitoring = state

        self.store.update(self.session_id, _apply)

    # =========================================================================
    # Extraction and sync
    # =========================================================================

    def run_extraction(self, final: bool = False) -> list[MetricDelta]:
        """One locked extraction pass over the correlated session file.

        Deltas are committed to the delta log and SyncState before the
        watermark moves, so a crash mid-pass re-reads the same content and
        the dedup set drops what was already claimed.

        Returns:
            Deltas newly recorded by this pass.
        """
        if self.adapter is None:
            return []
        session = self.store.load(self.session_id)
        if session is None:
            logger.debug(f"No session {self.session_id[:8]}, nothing to extract")
            return []
        correlation = session.correlation
        if correlation.status != CorrelationStatus.MATCHED or not correlation.agent_session_file:
            logger.debug(f"Session {self.session_id[:8]} not correlated, nothing to extract")
            return []

        with self.locks.hold(self.session_id) as acquired:
            if not acquired:
                logger.info(f"Extraction for {self.session_id[:8]} running elsewhere, skipping this pass")
                return []

            state = self.sync_state.load() or self.sync_state.initialize(
                correlation.agent_session_id or "", session.start_time
            )
            if state is None:
                return []

            path = Path(correlation.agent_session_file)
            watermark = self.watermarks.get(path)
            extractor = IncrementalExtractor(
                self.adapter, self.session_id, correlation.agent_session_id or "", session.git_branch
            )
            result = extractor.extract(
                path,
                watermark,
                set(state.processed_record_ids),
                set(state.attached_user_prompt_texts),
                final=final,
            )
            if result.skipped:
                return []

            last_line = result.last_line if result.watermark_type == WatermarkType.LINE else None
            fresh = self.sync_state.commit(
                result.deltas, self.delta_log, last_line=last_line, attached_prompts=result.prompts_attached
            )

            if result.new_watermark is not None:
                advanced = self.watermarks.advance(path, result.watermark_type, result.new_watermark)
                self._save_watermark(advanced)

        if fresh:
            logger.info(f"Recorded {len(fresh)} new deltas for {self.session_id[:8]}")
        return fresh

    def _save_watermark(self, watermark: Watermark) -> None:
        def _apply(session: MetricsSession) -> None:
            session.watermark = watermark

        self.store.update(self.session_id, _apply)

    async def sync(self):
        """Best-effort delivery of pending deltas."""
        if self.sync_service is None:
            return None
        try:
            return await self.sync_service.sync_pending(self.session_id)
        except Exception as e:
            logger.error(f"Metrics sync failed for {self.session_id[:8]}: {e}")
            return None

    async def extract_and_sync(self, final: bool = False) -> list[MetricDelta]:
        try:
            fresh = self.run_extraction(final=final)
        except Exception as e:
            logger.error(f"Extraction failed for {self.session_id[:8]}: {e}")
            return []
        await self.sync()
        return fresh

    # =========================================================================
    # Teardown
    # =========================================================================

    async def on_exit(self, exit_code: int) -> SessionStatus | None:
        """Finalize the session after the assistant exits. Never raises."""
        try:
            if self.monitor is not None:
                await self.monitor.stop()
                self._save_monitoring()

            session = self.store.load(self.session_id)
            if session is None:
                return None
            if session.correlation.status == CorrelationStatus.PENDING:
                self.correlate_once()

            await self.extract_and_sync(final=True)

            session = self.store.load(self.session_id)
            if session is None:
                return None
            if session.correlation.status == CorrelationStatus.MATCHED:
                status = SessionStatus.COMPLETED
            else:
                status = SessionStatus.FAILED
            self.store.update_status(self.session_id, status, end_time=time.time())
            logger.info(
                f"Session {self.session_id[:8]} {status.value} "
                f"(assistant exit code {exit_code})"
            )
            return status
        except Exception as e:
            logger.error(f"Finalizing metrics session {self.session_id[:8]} failed: {e}")
            return None

    @classmethod
    async def recover_sessions(
        cls,
        config: MetricsConfig,
        sync_service=None,
        is_alive: Callable[[int], bool] = pid_alive,
    ) -> list[str]:
        """Finalize sessions left active by a process that no longer exists.

        Returns:
            Session ids marked recovered.
        """
        store = SessionStore(config.sessions_dir)
        recovered = []
        for session in store.list_sessions():
            if session.status != SessionStatus.ACTIVE or session.owner_pid is None:
                continue
            if session.owner_pid == os.getpid() or is_alive(session.owner_pid):
                continue

            logger.info(f"Recovering session {session.session_id[:8]} (pid {session.owner_pid} is gone)")
            orchestrator = cls(
                config,
                session.agent_name,
                session_id=session.session_id,
                working_directory=session.working_directory,
                sync_service=sync_service,
            )
            await orchestrator.extract_and_sync(final=True)
            store.update_status(session.session_id, SessionStatus.RECOVERED, end_time=time.time())
            recovered.append(session.session_id)
        return recovered
