"""Tests for the metrics session lifecycle."""

import os
from unittest.mock import patch

import pytest

from agentmeter.metrics.adapters import ClaudeAdapter
from agentmeter.models import (
    CorrelationResult,
    CorrelationStatus,
    MetricsSession,
    SessionStatus,
)
from agentmeter.orchestrator import MetricsOrchestrator, pid_alive
from session_files import append_jsonl, claude_assistant, claude_user, write_jsonl

WORKDIR = "/work/app"


class FakeSleep:
    """Instant sleep that can run an action on its n-th call."""

    def __init__(self, on_call=None):
        self.delays = []
        self.on_call = on_call or {}

    async def __call__(self, delay):
        self.delays.append(delay)
        action = self.on_call.get(len(self.delays))
        if action:
            action()


class FakeSyncService:
    def __init__(self, error=None):
        self.calls = []
        self.error = error

    async def sync_pending(self, session_id):
        self.calls.append(session_id)
        if self.error is not None:
            raise self.error
        return None


@pytest.fixture
def adapter(tmp_path):
    (tmp_path / "projects" / "-work-app").mkdir(parents=True)
    return ClaudeAdapter(sessions_dir=tmp_path / "projects")


def _write_session_file(tmp_path, entries=None):
    path = tmp_path / "projects" / "-work-app" / "0b6f3c1e-aaaa.jsonl"
    write_jsonl(path, entries or [
        dict(claude_user("fix the bug"), cwd=WORKDIR),
        claude_assistant("a1", "msg-1"),
        claude_assistant("a2", "msg-2"),
        claude_assistant("a3", "msg-3"),
    ])
    return path


def _orchestrator(config, adapter, **kwargs):
    kwargs.setdefault("sleep", FakeSleep())
    return MetricsOrchestrator(
        config,
        "claude",
        session_id="sess-0001-aaaa",
        working_directory=WORKDIR,
        adapter=adapter,
        use_native_watch=False,
        **kwargs,
    )


def _matched(orchestrator, path):
    orchestrator.before_spawn()
    orchestrator.store.update_correlation(orchestrator.session_id, CorrelationResult(
        status=CorrelationStatus.MATCHED,
        agent_session_file=str(path),
        agent_session_id=path.stem,
    ))


class TestSessionCreation:
    """Tests for before_spawn and ensure_session."""

    def test_before_spawn_persists_session(self, config, adapter):
        orchestrator = _orchestrator(config, adapter)

        session = orchestrator.before_spawn()

        stored = orchestrator.store.load("sess-0001-aaaa")
        assert stored is not None
        assert stored.status == SessionStatus.ACTIVE
        assert stored.provider == "anthropic"
        assert stored.owner_pid == os.getpid()
        assert stored.project == "app"
        assert stored.correlation.status == CorrelationStatus.PENDING
        assert session.start_time == orchestrator.spawn_time
        assert orchestrator.snapshot is not None

    def test_disabled_provider(self, config, adapter):
        config = config.model_copy(update={"enabled_providers": ["google"]})
        orchestrator = _orchestrator(config, adapter)

        assert orchestrator.before_spawn() is None
        assert orchestrator.store.load("sess-0001-aaaa") is None

    def test_enabled_by_agent_name(self, config, adapter):
        config = config.model_copy(update={"enabled_providers": ["claude"]})
        assert _orchestrator(config, adapter).enabled is True

    def test_unsupported_agent(self, config):
        orchestrator = MetricsOrchestrator(config, "aider", session_id="sess-x")
        assert orchestrator.adapter is None
        assert orchestrator.before_spawn() is None

    def test_ensure_session_reuses_existing(self, config, adapter):
        orchestrator = _orchestrator(config, adapter)
        orchestrator.before_spawn()

        session = orchestrator.ensure_session(owner_pid=12345)

        assert session.owner_pid == os.getpid()

    def test_ensure_session_creates_missing(self, config, adapter):
        session = _orchestrator(config, adapter).ensure_session(owner_pid=12345)
        assert session.owner_pid == 12345


class TestAfterSpawn:
    """Tests for correlation and monitoring after spawn."""

    @pytest.mark.asyncio
    async def test_matched_session_is_monitored_and_finalized(self, config, adapter, tmp_path):
        sleep = FakeSleep(on_call={1: lambda: _write_session_file(tmp_path)})
        orchestrator = _orchestrator(config, adapter, sleep=sleep)
        orchestrator.before_spawn()

        result = await orchestrator.after_spawn()

        assert result.status == CorrelationStatus.MATCHED
        assert sleep.delays[0] == adapter.init_delay
        assert orchestrator.monitor is not None
        session = orchestrator.store.load("sess-0001-aaaa")
        assert session.correlation.agent_session_id == "0b6f3c1e-aaaa"
        assert session.sync.agent_session_id == "0b6f3c1e-aaaa"
        assert session.monitoring.is_active is True

        status = await orchestrator.on_exit(0)

        assert status == SessionStatus.COMPLETED
        session = orchestrator.store.load("sess-0001-aaaa")
        assert session.status == SessionStatus.COMPLETED
        assert session.end_time is not None
        assert session.monitoring.is_active is False
        assert [d.record_id for d in orchestrator.delta_log.read_all()] == ["a1", "a2", "a3"]
        assert session.sync.total_deltas == 3

    @pytest.mark.asyncio
    async def test_failed_correlation_degrades(self, config, adapter):
        orchestrator = _orchestrator(config, adapter)
        orchestrator.before_spawn()

        result = await orchestrator.after_spawn()

        assert result.status == CorrelationStatus.FAILED
        assert orchestrator.monitor is None
        assert orchestrator.store.load("sess-0001-aaaa").correlation.status == CorrelationStatus.FAILED

        assert await orchestrator.on_exit(1) == SessionStatus.FAILED
        assert orchestrator.delta_log.read_all() == []

    @pytest.mark.asyncio
    async def test_exit_retries_pending_correlation(self, config, adapter, tmp_path):
        """A session still pending at exit gets one more match attempt."""
        orchestrator = _orchestrator(config, adapter)
        orchestrator.before_spawn()
        _write_session_file(tmp_path)

        status = await orchestrator.on_exit(0)

        assert status == SessionStatus.COMPLETED
        assert len(orchestrator.delta_log.read_all()) == 3

    def test_correlate_once_keeps_miss_pending(self, config, adapter):
        orchestrator = _orchestrator(config, adapter)
        orchestrator.before_spawn()

        result = orchestrator.correlate_once()

        assert result.status != CorrelationStatus.MATCHED
        assert orchestrator.store.load("sess-0001-aaaa").correlation.status == CorrelationStatus.PENDING


class TestRunExtraction:
    """Tests for the locked extraction pass."""

    def test_uncorrelated_session_extracts_nothing(self, config, adapter):
        orchestrator = _orchestrator(config, adapter)
        orchestrator.before_spawn()
        assert orchestrator.run_extraction() == []

    def test_incremental_passes(self, config, adapter, tmp_path):
        path = _write_session_file(tmp_path)
        orchestrator = _orchestrator(config, adapter)
        _matched(orchestrator, path)

        first = orchestrator.run_extraction()
        second = orchestrator.run_extraction()
        append_jsonl(path, [claude_assistant("a4", "msg-4")])
        third = orchestrator.run_extraction()

        assert [d.record_id for d in first] == ["a1", "a2", "a3"]
        assert second == []
        assert [d.record_id for d in third] == ["a4"]
        assert orchestrator.watermarks.get(path).value == "5"
        session = orchestrator.store.load("sess-0001-aaaa")
        assert session.watermark.value == "5"
        assert session.sync.last_processed_line == 5
        assert session.sync.processed_record_ids == ["a1", "a2", "a3", "a4"]

    def test_skips_when_lock_is_held(self, config, adapter, tmp_path):
        path = _write_session_file(tmp_path)
        orchestrator = _orchestrator(config, adapter)
        _matched(orchestrator, path)

        with orchestrator.locks.hold("sess-0001-aaaa") as acquired:
            assert acquired
            assert orchestrator.run_extraction() == []

        assert len(orchestrator.run_extraction()) == 3

    def test_crash_before_watermark_advance_does_not_duplicate(self, config, adapter, tmp_path):
        path = _write_session_file(tmp_path)
        orchestrator = _orchestrator(config, adapter)
        _matched(orchestrator, path)

        with patch.object(orchestrator.watermarks, "advance", side_effect=RuntimeError("killed")):
            with pytest.raises(RuntimeError):
                orchestrator.run_extraction()

        assert orchestrator.watermarks.get(path) is None
        assert orchestrator.run_extraction() == []
        assert [d.record_id for d in orchestrator.delta_log.read_all()] == ["a1", "a2", "a3"]
        assert orchestrator.watermarks.get(path).value == "4"
        assert not orchestrator.locks.lock_path("sess-0001-aaaa").exists()

    @pytest.mark.asyncio
    async def test_extract_and_sync_calls_sync(self, config, adapter, tmp_path):
        path = _write_session_file(tmp_path)
        sync_service = FakeSyncService()
        orchestrator = _orchestrator(config, adapter, sync_service=sync_service)
        _matched(orchestrator, path)

        fresh = await orchestrator.extract_and_sync()

        assert len(fresh) == 3
        assert sync_service.calls == ["sess-0001-aaaa"]

    @pytest.mark.asyncio
    async def test_sync_errors_are_contained(self, config, adapter, tmp_path):
        path = _write_session_file(tmp_path)
        orchestrator = _orchestrator(config, adapter, sync_service=FakeSyncService(error=RuntimeError("down")))
        _matched(orchestrator, path)

        fresh = await orchestrator.extract_and_sync()

        assert len(fresh) == 3

    @pytest.mark.asyncio
    async def test_extraction_errors_are_contained(self, config, adapter, tmp_path):
        path = _write_session_file(tmp_path)
        orchestrator = _orchestrator(config, adapter)
        _matched(orchestrator, path)

        with patch.object(orchestrator, "run_extraction", side_effect=OSError("disk gone")):
            assert await orchestrator.extract_and_sync() == []


class TestRecovery:
    """Tests for finalizing abandoned sessions."""

    def _abandoned(self, config, tmp_path, session_id, owner_pid, status=SessionStatus.ACTIVE):
        path = _write_session_file(tmp_path)
        orchestrator = MetricsOrchestrator(config, "claude", session_id=session_id, working_directory=WORKDIR)
        orchestrator.store.save(MetricsSession(
            session_id=session_id,
            agent_name="claude",
            provider="anthropic",
            working_directory=WORKDIR,
            owner_pid=owner_pid,
            status=status,
            correlation=CorrelationResult(
                status=CorrelationStatus.MATCHED,
                agent_session_file=str(path),
                agent_session_id=path.stem,
            ),
        ))
        return orchestrator

    @pytest.mark.asyncio
    async def test_recovers_sessions_with_dead_owner(self, config, tmp_path):
        dead = self._abandoned(config, tmp_path, "sess-dead", owner_pid=3999001)
        self._abandoned(config, tmp_path, "sess-live", owner_pid=3999002)
        self._abandoned(config, tmp_path, "sess-done", owner_pid=3999003, status=SessionStatus.COMPLETED)

        recovered = await MetricsOrchestrator.recover_sessions(config, is_alive=lambda pid: pid == 3999002)

        assert recovered == ["sess-dead"]
        assert dead.store.load("sess-dead").status == SessionStatus.RECOVERED
        assert dead.store.load("sess-dead").end_time is not None
        assert len(dead.delta_log.read_all()) == 3
        assert dead.store.load("sess-live").status == SessionStatus.ACTIVE
        assert dead.store.load("sess-done").status == SessionStatus.COMPLETED

    def test_pid_alive(self):
        assert pid_alive(os.getpid()) is True
