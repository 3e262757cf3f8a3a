"""Per-file progress markers with a time-to-live.

One JSON document per monitored file at ``{watermarks_dir}/{key}.json``
where key is derived from the file's absolute path. Expired or corrupt
watermarks read as absent, which forces a full re-extraction; the dedup
guard in SyncState keeps that re-extraction from re-emitting records.
"""

import hashlib
import json
import logging
import time
from pathlib import Path

from agentmeter.lib.atomic import read_json, write_json_atomic
from agentmeter.models import Watermark, WatermarkType

logger = logging.getLogger(__name__)

DEFAULT_TTL = 24 * 3600  # seconds


def file_key(path: str | Path) -> str:
    """Stable storage key for a monitored file path."""
    resolved = str(Path(path).expanduser().resolve())
    return hashlib.sha256(resolved.encode("utf-8")).hexdigest()[:16]


def file_hash(path: str | Path) -> str:
    """SHA-256 of a file's current contents."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def encode_object_ids(ids: set[str] | list[str]) -> str:
    return json.dumps(sorted(set(ids)))


def decode_object_ids(value: str) -> set[str]:
    try:
        ids = json.loads(value)
    except json.JSONDecodeError:
        return set()
    return set(ids) if isinstance(ids, list) else set()


class WatermarkStore:
    """Reads and advances watermarks for monitored session files."""

    def __init__(self, watermark_dir: Path, ttl: float = DEFAULT_TTL):
        self.watermark_dir = Path(watermark_dir)
        self.ttl = ttl

    def _path(self, path: str | Path) -> Path:
        return self.watermark_dir / f"{file_key(path)}.json"

    def is_expired(self, watermark: Watermark, now: float | None = None) -> bool:
        return watermark.is_expired(now)

    def get(self, path: str | Path) -> Watermark | None:
        """Current watermark for a file, or None if absent/expired/corrupt."""
        data = read_json(self._path(path))
        if not data:
            return None
        try:
            watermark = Watermark.from_dict(data)
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(f"Ignoring malformed watermark for {path}: {e}")
            return None
        if self.is_expired(watermark):
            logger.debug(f"Watermark for {path} expired, treating as absent")
            return None
        return watermark

    def advance(self, path: str | Path, wm_type: WatermarkType, value: str) -> Watermark:
        """Persist a new watermark value with a fresh TTL."""
        now = time.time()
        watermark = Watermark(type=wm_type, value=value, updated_at=now, expires_at=now + self.ttl)
        write_json_atomic(self._path(path), watermark.to_dict())
        logger.debug(f"Watermark for {Path(path).name} advanced ({wm_type.value}={value[:16]})")
        return watermark

    def clear(self, path: str | Path) -> None:
        self._path(path).unlink(missing_ok=True)

    def cleanup_expired(self) -> int:
        """Delete expired and unreadable watermark files. Returns count removed."""
        if not self.watermark_dir.exists():
            return 0

        now = time.time()
        removed = 0
        for wm_file in self.watermark_dir.glob("*.json"):
            data = read_json(wm_file)
            try:
                expired = data is None or Watermark.from_dict(data).is_expired(now)
            except (KeyError, ValueError, TypeError):
                expired = True
            if expired:
                try:
                    wm_file.unlink()
                    removed += 1
                except OSError:
                    continue

        if removed:
            logger.info(f"Cleaned up {removed} expired watermark files")
        return removed
