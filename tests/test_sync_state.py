"""Tests for SyncState management and the dedup guard."""

import threading
import time

import pytest

from agentmeter.metrics.delta_log import DeltaLog
from agentmeter.metrics.session_store import SessionStore
from agentmeter.metrics.sync_state import SyncStateManager
from agentmeter.models import MetricDelta, MetricsSession, SessionStatus


@pytest.fixture
def store(tmp_path):
    store = SessionStore(tmp_path / "sessions")
    store.save(MetricsSession(
        session_id="sess-1",
        agent_name="claude",
        provider="anthropic",
        working_directory="/work",
        start_time=50.0,
    ))
    return store


def _delta(record_id):
    return MetricDelta(record_id=record_id, session_id="sess-1", agent_session_id="abc", timestamp=1.0)


class TestInitialize:
    """Tests for SyncState creation."""

    def test_initialize_creates_state(self, store):
        manager = SyncStateManager("sess-1", store)

        state = manager.initialize("abc", session_start_time=50.0)

        assert state.agent_session_id == "abc"
        assert state.session_start_time == 50.0
        assert store.load("sess-1").sync.agent_session_id == "abc"

    def test_initialize_keeps_existing_state(self, store):
        """Re-initializing must not wipe the dedup set."""
        manager = SyncStateManager("sess-1", store)
        manager.initialize("abc")
        manager.claim(["r1"])

        manager.initialize("other")

        state = manager.load()
        assert state.agent_session_id == "abc"
        assert state.processed_record_ids == ["r1"]

    def test_missing_session_is_a_no_op(self, tmp_path):
        manager = SyncStateManager("ghost", SessionStore(tmp_path))
        assert manager.initialize("abc") is None
        assert manager.claim(["r1"]) == []


class TestClaim:
    """Tests for check-then-add of record ids."""

    def test_claim_returns_only_new_ids(self, store):
        manager = SyncStateManager("sess-1", store)
        manager.initialize("abc")

        assert manager.claim(["r1", "r2"]) == ["r1", "r2"]
        assert manager.claim(["r2", "r3"]) == ["r3"]
        assert manager.load().total_deltas == 3

    def test_claim_collapses_duplicates_in_batch(self, store):
        manager = SyncStateManager("sess-1", store)
        assert manager.claim(["r1", "r1"]) == ["r1"]

    def test_processed_ids_persist_across_managers(self, store):
        """A new manager (new process) sees ids claimed by an old one."""
        SyncStateManager("sess-1", store).claim(["r1"])

        assert SyncStateManager("sess-1", store).processed_ids() == {"r1"}

    def test_claim_during_another_update_is_kept(self, store):
        """A hook claiming ids while the wrapper updates sync state loses nothing."""
        manager = SyncStateManager("sess-1", store)
        manager.initialize("abc")
        hook = SyncStateManager("sess-1", SessionStore(store.sessions_dir))
        worker = threading.Thread(target=lambda: hook.claim(["r2"]))

        def _slow_failure(state):
            worker.start()
            time.sleep(0.2)
            state.last_sync_error = "timeout"

        manager._mutate(_slow_failure)
        worker.join(timeout=5)

        state = manager.load()
        assert state.processed_record_ids == ["r2"]
        assert state.last_sync_error == "timeout"


class TestCommit:
    """Tests for committing an extraction pass."""

    def test_crash_between_extraction_and_sync(self, store, tmp_path):
        """A record claimed before a crash is never re-emitted as new."""
        log = DeltaLog(tmp_path / "metrics", "sess-1")
        manager = SyncStateManager("sess-1", store)
        manager.initialize("abc")

        first = manager.commit([_delta("R")], log, last_line=1)
        # Restart: fresh manager re-extracts the same record
        restarted = SyncStateManager("sess-1", store)
        second = restarted.commit([_delta("R")], log, last_line=1)

        assert [d.record_id for d in first] == ["R"]
        assert second == []
        assert [d.record_id for d in log.read_all()] == ["R"]

    def test_crash_after_log_append_before_claim(self, store, tmp_path):
        """Logged-but-unclaimed deltas are claimed without a second log entry."""
        log = DeltaLog(tmp_path / "metrics", "sess-1")
        log.append([_delta("R")])
        manager = SyncStateManager("sess-1", store)

        fresh = manager.commit([_delta("R")], log)

        assert [d.record_id for d in fresh] == ["R"]
        assert manager.processed_ids() == {"R"}
        assert len(log.read_all()) == 1

    def test_last_processed_line_never_moves_backwards(self, store, tmp_path):
        log = DeltaLog(tmp_path / "metrics", "sess-1")
        manager = SyncStateManager("sess-1", store)

        manager.commit([], log, last_line=10)
        manager.commit([], log, last_line=4)

        assert manager.load().last_processed_line == 10

    def test_attached_prompts_recorded_once(self, store, tmp_path):
        log = DeltaLog(tmp_path / "metrics", "sess-1")
        manager = SyncStateManager("sess-1", store)

        manager.commit([], log, attached_prompts=["fix the bug"])
        manager.commit([], log, attached_prompts=["fix the bug", "add tests"])

        assert manager.load().attached_user_prompt_texts == ["fix the bug", "add tests"]


class TestSyncCounters:
    """Tests for delivery bookkeeping."""

    def test_mark_synced(self, store):
        manager = SyncStateManager("sess-1", store)
        manager.mark_failed(["r0"], "boom")
        manager.mark_synced(["r1", "r2"])

        state = manager.load()
        assert state.total_synced == 2
        assert state.last_synced_record_id == "r2"
        assert state.last_sync_error is None
        assert state.last_sync_at is not None

    def test_mark_failed(self, store):
        manager = SyncStateManager("sess-1", store)
        manager.mark_failed(["r1"], "HTTP 400")

        state = manager.load()
        assert state.total_failed == 1
        assert state.last_sync_error == "HTTP 400"

    def test_update_status(self, store):
        manager = SyncStateManager("sess-1", store)
        manager.update_status(SessionStatus.COMPLETED, end_time=99.0)

        state = manager.load()
        assert state.status == SessionStatus.COMPLETED
        assert state.session_end_time == 99.0

    def test_progress_helpers(self, store):
        manager = SyncStateManager("sess-1", store)
        manager.add_attached_prompts(["fix it", "fix it", "ship it"])
        manager.update_last_processed(7, timestamp=123.0)

        state = manager.load()
        assert state.attached_user_prompt_texts == ["fix it", "ship it"]
        assert state.last_processed_line == 7
        assert state.last_processed_timestamp == 123.0
        assert manager.attached_prompts() == {"fix it", "ship it"}
