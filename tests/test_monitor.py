"""Tests for the debounced change monitor."""

import asyncio

import pytest

from agentmeter.metrics.monitor import ChangeMonitor


@pytest.fixture
def session_file(tmp_path):
    path = tmp_path / "session.jsonl"
    path.write_text("{}\n")
    return path


class TestChangeMonitor:
    """Tests for ChangeMonitor triggering."""

    @pytest.mark.asyncio
    async def test_polling_detects_change(self, session_file):
        calls = []

        async def callback():
            calls.append(1)

        monitor = ChangeMonitor(session_file, callback, debounce=0.05, poll_interval=0.02, use_native=False)
        await monitor.start()
        assert monitor.state.is_active is True

        session_file.write_text("{}\n{}\n")
        await asyncio.sleep(0.3)
        await monitor.stop()

        assert len(calls) == 1
        assert monitor.state.change_count >= 1
        assert monitor.state.last_check_time is not None
        assert monitor.state.is_active is False

    @pytest.mark.asyncio
    async def test_burst_of_changes_runs_once(self, session_file):
        """Triggers inside the debounce window collapse into one pass."""
        calls = []

        async def callback():
            calls.append(1)

        monitor = ChangeMonitor(session_file, callback, debounce=0.1, poll_interval=10, use_native=False)
        await monitor.start()
        for _ in range(5):
            monitor.notify()
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.3)
        await monitor.stop()

        assert len(calls) == 1
        assert monitor.state.change_count == 5

    @pytest.mark.asyncio
    async def test_trigger_during_pass_queues_one_follow_up(self, session_file):
        release = asyncio.Event()
        calls = []

        async def callback():
            calls.append(1)
            if len(calls) == 1:
                await release.wait()

        monitor = ChangeMonitor(session_file, callback, debounce=0.02, poll_interval=10, use_native=False)
        await monitor.start()

        monitor.notify()
        await asyncio.sleep(0.1)
        assert monitor.in_flight is True

        monitor.notify()
        await asyncio.sleep(0.1)
        monitor.notify()
        await asyncio.sleep(0.1)

        release.set()
        await asyncio.sleep(0.1)
        await monitor.stop()

        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_callback_errors_do_not_stop_monitoring(self, session_file):
        calls = []

        async def callback():
            calls.append(1)
            raise RuntimeError("extraction blew up")

        monitor = ChangeMonitor(session_file, callback, debounce=0.02, poll_interval=10, use_native=False)
        await monitor.start()
        monitor.notify()
        await asyncio.sleep(0.1)
        monitor.notify()
        await asyncio.sleep(0.1)
        await monitor.stop()

        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_flush_runs_immediately(self, session_file):
        calls = []

        async def callback():
            calls.append(1)

        monitor = ChangeMonitor(session_file, callback, debounce=60, poll_interval=10, use_native=False)
        await monitor.start()
        monitor.notify()

        await monitor.flush()
        await monitor.stop()

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_stop_waits_for_in_flight_pass(self, session_file):
        finished = []

        async def callback():
            await asyncio.sleep(0.1)
            finished.append(1)

        monitor = ChangeMonitor(session_file, callback, debounce=0.01, poll_interval=10, use_native=False)
        await monitor.start()
        monitor.notify()
        await asyncio.sleep(0.05)

        await monitor.stop()

        assert finished == [1]

    @pytest.mark.asyncio
    async def test_native_events_trigger_pass(self, session_file):
        """With watchdog running, a write triggers a pass (polling backs it up)."""
        calls = []

        async def callback():
            calls.append(1)

        monitor = ChangeMonitor(session_file, callback, debounce=0.05, poll_interval=0.2)
        await monitor.start()
        with open(session_file, "a") as f:
            f.write("{}\n")
        for _ in range(40):
            if calls:
                break
            await asyncio.sleep(0.05)
        await monitor.stop()

        assert calls

    @pytest.mark.asyncio
    async def test_watch_switches_file(self, tmp_path, session_file):
        """Watching the directory first, then the matched file, triggers a pass."""
        calls = []

        async def callback():
            calls.append(1)

        monitor = ChangeMonitor(tmp_path, callback, debounce=0.02, poll_interval=10, use_native=False)
        assert monitor.watching_directory is True
        await monitor.start()

        await monitor.watch(session_file)
        await asyncio.sleep(0.1)
        await monitor.stop()

        assert monitor.path == session_file
        assert monitor.watching_directory is False
        assert len(calls) == 1
