"""Tests for session metadata persistence."""

import os
import threading
import time
from unittest.mock import patch

import pytest

from agentmeter.metrics.session_store import SessionStore
from agentmeter.models import (
    CorrelationResult,
    CorrelationStatus,
    MetricsSession,
    SessionStatus,
    SyncState,
    Watermark,
    WatermarkType,
)


def _session(session_id="sess-1", **kwargs):
    return MetricsSession(
        session_id=session_id,
        agent_name="claude",
        provider="anthropic",
        working_directory="/work/app",
        **kwargs,
    )


class TestSessionStore:
    """Tests for SessionStore."""

    def test_save_and_load_round_trip(self, tmp_path):
        """Nested records survive persistence."""
        store = SessionStore(tmp_path)
        session = _session(
            git_branch="main",
            correlation=CorrelationResult(
                status=CorrelationStatus.MATCHED,
                agent_session_file="/x/abc.jsonl",
                agent_session_id="abc",
                retry_count=2,
            ),
            watermark=Watermark(WatermarkType.LINE, "12", 1.0, 2.0),
            sync=SyncState(session_id="sess-1", processed_record_ids=["r1"]),
        )
        store.save(session)

        loaded = store.load("sess-1")

        assert loaded.correlation.status == CorrelationStatus.MATCHED
        assert loaded.correlation.retry_count == 2
        assert loaded.watermark.type == WatermarkType.LINE
        assert loaded.sync.processed_record_ids == ["r1"]
        assert loaded.status == SessionStatus.ACTIVE
        assert loaded.git_branch == "main"

    def test_no_temp_files_left_behind(self, tmp_path):
        """Atomic writes clean up after the rename."""
        store = SessionStore(tmp_path)
        store.save(_session())
        store.save(_session())

        assert sorted(p.name for p in tmp_path.iterdir()) == ["sess-1.json"]

    def test_corrupt_file_loads_as_none(self, tmp_path):
        """Unparsable state is treated as absent."""
        store = SessionStore(tmp_path)
        store.path("sess-1").write_text("{truncated")

        assert store.load("sess-1") is None

    def test_unknown_keys_are_ignored(self, tmp_path):
        """Files written by other versions still load."""
        store = SessionStore(tmp_path)
        store.save(_session())
        data = store.path("sess-1").read_text().replace('"agent_name"', '"future_field": 1, "agent_name"')
        store.path("sess-1").write_text(data)

        assert store.load("sess-1").agent_name == "claude"

    def test_update_missing_session_returns_none(self, tmp_path):
        store = SessionStore(tmp_path)
        assert store.update("nope", lambda s: None) is None

    def test_update_status_sets_end_time_on_sync(self, tmp_path):
        """Status changes are mirrored into SyncState."""
        store = SessionStore(tmp_path)
        store.save(_session(sync=SyncState(session_id="sess-1")))

        store.update_status("sess-1", SessionStatus.COMPLETED, end_time=123.0)
        loaded = store.load("sess-1")

        assert loaded.status == SessionStatus.COMPLETED
        assert loaded.end_time == 123.0
        assert loaded.sync.status == SessionStatus.COMPLETED
        assert loaded.sync.session_end_time == 123.0

    def test_list_sessions_newest_first(self, tmp_path):
        store = SessionStore(tmp_path)
        store.save(_session("old", start_time=100.0))
        store.save(_session("new", start_time=200.0))

        assert [s.session_id for s in store.list_sessions()] == ["new", "old"]

    def test_cleanup_old(self, tmp_path):
        """Only files past the age limit are removed."""
        store = SessionStore(tmp_path)
        store.save(_session("old"))
        store.save(_session("new"))
        stale = time.time() - 10 * 86400
        os.utime(store.path("old"), (stale, stale))

        assert store.cleanup_old(max_age_days=7) == 1
        assert not store.exists("old")
        assert store.exists("new")


class TestSessionStoreDurability:
    """Tests for failed writes and concurrent read-modify-writes."""

    def test_failed_rename_keeps_previous_document(self, tmp_path):
        """A crash at the rename leaves the old file loadable and no temp file."""
        store = SessionStore(tmp_path)
        store.save(_session(git_branch="main"))

        with patch("agentmeter.lib.atomic.os.replace", side_effect=OSError("disk gone")):
            with pytest.raises(OSError):
                store.save(_session(git_branch="feature"))

        assert store.load("sess-1").git_branch == "main"
        assert sorted(p.name for p in tmp_path.iterdir()) == ["sess-1.json"]

    def test_failed_write_keeps_previous_document(self, tmp_path):
        store = SessionStore(tmp_path)
        store.save(_session(git_branch="main"))

        with patch("agentmeter.lib.atomic.os.fsync", side_effect=OSError("io error")):
            with pytest.raises(OSError):
                store.save(_session(git_branch="feature"))

        assert store.load("sess-1").git_branch == "main"
        assert not [p for p in tmp_path.iterdir() if p.name.endswith(".tmp")]

    def test_concurrent_updates_are_serialized(self, tmp_path):
        """An update that starts mid-way through another sees its result."""
        store = SessionStore(tmp_path)
        store.save(_session(sync=SyncState(session_id="sess-1", agent_session_id="abc")))
        other = SessionStore(tmp_path)

        def _add_remote(session):
            session.sync.processed_record_ids.append("r2")

        worker = threading.Thread(target=lambda: other.update("sess-1", _add_remote))

        def _slow_local(session):
            worker.start()
            time.sleep(0.2)
            session.sync.processed_record_ids.append("r1")

        store.update("sess-1", _slow_local)
        worker.join(timeout=5)

        assert store.load("sess-1").sync.processed_record_ids == ["r1", "r2"]
