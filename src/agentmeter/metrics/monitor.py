"""Debounced change monitor for an assistant session file.

Native notifications come from a watchdog Observer running in its own
thread; events are handed to the event loop with call_soon_threadsafe and
reset a debounce timer. A polling task compares (mtime, size) on a fixed
interval and feeds the same timer, covering filesystems where native events
are missing. When the timer fires the extraction callback runs; a trigger
arriving while a pass is in flight queues exactly one follow-up pass.
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import Awaitable, Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from agentmeter.models import MonitoringState

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE = 5.0
DEFAULT_POLL_INTERVAL = 5.0


class _SessionFileHandler(FileSystemEventHandler):
    """Forwards events for the watched path (or directory) to the loop."""

    def __init__(self, monitor: "ChangeMonitor"):
        super().__init__()
        self.monitor = monitor

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type in ("opened", "closed_no_write"):
            return
        paths = [str(event.src_path)]
        dest = getattr(event, "dest_path", "")
        if dest:
            paths.append(str(dest))
        if any(self.monitor.is_relevant(p) for p in paths):
            self.monitor.notify_threadsafe()


class ChangeMonitor:
    """Watches one session file and runs a callback once it is quiescent."""

    def __init__(
        self,
        path: Path,
        callback: Callable[[], Awaitable[None]],
        debounce: float = DEFAULT_DEBOUNCE,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        state: MonitoringState | None = None,
        use_native: bool = True,
    ):
        self.path = Path(path)
        self.callback = callback
        self.debounce = debounce
        self.poll_interval = poll_interval
        self.state = state or MonitoringState()
        self.use_native = use_native

        self._loop: asyncio.AbstractEventLoop | None = None
        self._observer = None
        self._poll_task: asyncio.Task | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._pass_task: asyncio.Task | None = None
        self._follow_up = False
        self._last_stat: tuple[float, int] | None = None

    @property
    def watching_directory(self) -> bool:
        return self.path.is_dir() or not self.path.suffix

    @property
    def native(self) -> bool:
        return self._observer is not None

    @property
    def in_flight(self) -> bool:
        return self._pass_task is not None and not self._pass_task.done()

    def is_relevant(self, event_path: str) -> bool:
        if self.watching_directory:
            return Path(event_path).parent == self.path or Path(event_path) == self.path
        return Path(event_path) == self.path

    async def start(self) -> None:
        """Begin watching. Safe to call once per monitor."""
        self._loop = asyncio.get_running_loop()
        self._last_stat = self._stat()
        if self.use_native:
            self._start_observer()
        self._poll_task = self._loop.create_task(self._poll())
        self.state.is_active = True
        mode = "native + polling" if self.native else "polling"
        logger.info(f"Monitoring {self.path.name} ({mode}, debounce {self.debounce}s)")

    def _start_observer(self) -> None:
        watch_dir = self.path if self.watching_directory else self.path.parent
        try:
            observer = Observer()
            observer.schedule(_SessionFileHandler(self), str(watch_dir), recursive=False)
            observer.start()
        except (OSError, RuntimeError) as e:
            logger.warning(f"Native file watching unavailable for {watch_dir}: {e}, using polling only")
            self._observer = None
            return
        self._observer = observer

    def _stop_observer(self) -> None:
        if self._observer is None:
            return
        observer, self._observer = self._observer, None
        observer.stop()
        observer.join(timeout=2)

    async def watch(self, path: Path) -> None:
        """Switch to a different file, e.g. once the session file is matched."""
        self.path = Path(path)
        self._last_stat = self._stat()
        if self._loop is None:
            return
        self._stop_observer()
        if self.use_native:
            self._start_observer()
        logger.debug(f"Now watching {self.path}")
        self.notify()

    def _stat(self) -> tuple[float, int] | None:
        try:
            if self.watching_directory:
                stats = [p.stat() for p in self.path.iterdir() if p.is_file()]
                if not stats:
                    return None
                return max(s.st_mtime for s in stats), sum(s.st_size for s in stats)
            stat = self.path.stat()
            return stat.st_mtime, stat.st_size
        except OSError:
            return None

    async def _poll(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            current = self._stat()
            self.state.last_check_time = time.time()
            if current is not None and current != self._last_stat:
                self._last_stat = current
                logger.debug(f"Poll detected change in {self.path.name}")
                self.notify()

    def notify_threadsafe(self) -> None:
        """Entry point for the watchdog thread."""
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self.notify)

    def notify(self) -> None:
        """Record a change and (re)start the debounce timer."""
        if self._loop is None:
            return
        self.state.change_count += 1
        if self._timer is not None:
            self._timer.cancel()
        self._timer = self._loop.call_later(self.debounce, self._fire)

    def _fire(self) -> None:
        self._timer = None
        if self.in_flight:
            self._follow_up = True
            logger.debug(f"Extraction in flight for {self.path.name}, queued follow-up")
            return
        self._pass_task = self._loop.create_task(self._run_passes())

    async def _run_passes(self) -> None:
        while True:
            self._follow_up = False
            self.state.last_check_time = time.time()
            try:
                await self.callback()
            except Exception as e:
                logger.error(f"Extraction callback failed for {self.path.name}: {e}")
            if not self._follow_up:
                break

    async def flush(self) -> None:
        """Cancel any pending timer and run a pass now, after any in flight."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self.in_flight:
            self._follow_up = True
            await self._pass_task
            return
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        self._pass_task = self._loop.create_task(self._run_passes())
        await self._pass_task

    async def stop(self) -> None:
        """Stop watching; lets an in-flight pass finish."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._stop_observer()
        if self._poll_task is not None:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None
        if self.in_flight:
            await self._pass_task
        self.state.is_active = False
        logger.debug(f"Stopped monitoring {self.path.name}")
