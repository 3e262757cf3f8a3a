"""Append-only log of proxied request/response boundaries.

One JSONL file per CLI session at ``{events_dir}/{session_id}.jsonl``. The
correlator reads it as a liveness signal for the assistant process.
"""

import logging
import time
from pathlib import Path

from agentmeter.lib.atomic import append_jsonl, read_jsonl

logger = logging.getLogger(__name__)


class ProxyEventLog:
    def __init__(self, events_dir: Path, session_id: str):
        self.session_id = session_id
        self.path = Path(events_dir) / f"{session_id}.jsonl"

    def record_request(self, request_id: str, method: str, path: str) -> None:
        append_jsonl(self.path, [{
            "type": "request",
            "request_id": request_id,
            "session_id": self.session_id,
            "method": method,
            "path": path,
            "ts": time.time(),
        }])

    def record_response(
        self, request_id: str, method: str, path: str, status: int, duration: float
    ) -> None:
        append_jsonl(self.path, [{
            "type": "response",
            "request_id": request_id,
            "session_id": self.session_id,
            "method": method,
            "path": path,
            "status": status,
            "ts": time.time(),
            "duration": round(duration, 4),
        }])

    def read_all(self) -> list[dict]:
        return read_jsonl(self.path)

    def last_activity(self) -> float | None:
        """Timestamp of the most recent event, or None before any traffic."""
        if not self.path.exists():
            return None
        events = self.read_all()
        timestamps = [e["ts"] for e in events if isinstance(e.get("ts"), (int, float))]
        return max(timestamps) if timestamps else None
