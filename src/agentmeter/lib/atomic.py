"""Crash-safe JSON and JSONL file helpers.

Every write goes to a uniquely named temp file in the target's directory and
is then renamed over the target, so readers see either the old document or
the new one, never a partial write. Concurrent writers are safe (last rename
wins) but not serialized; callers that need read-modify-write ordering across
processes wrap them in ``file_lock``.
"""

import fcntl
import json
import logging
import os
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator

logger = logging.getLogger(__name__)


def _write_atomic(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.parent / f".{path.name}.{uuid.uuid4().hex}.tmp"
    try:
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except OSError:
        tmp.unlink(missing_ok=True)
        raise


def write_json_atomic(path: Path, data: Any) -> None:
    """Serialize data as JSON and atomically replace path."""
    _write_atomic(path, json.dumps(data, indent=2, default=str))


def read_json(path: Path) -> Any | None:
    """Read a JSON document, returning None when missing or unparsable.

    Corrupt documents are treated as absent so callers fall back to fresh
    state instead of failing.
    """
    if not path.exists():
        return None
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning(f"Ignoring corrupt JSON file {path}: {e}")
        return None
    except OSError as e:
        logger.warning(f"Could not read {path}: {e}")
        return None


def append_jsonl(path: Path, records: Iterable[dict]) -> int:
    """Append records to a JSONL file. Returns the number written."""
    lines = [json.dumps(r, default=str) for r in records]
    if not lines:
        return 0
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a", encoding="utf-8") as f:
        f.write("\n".join(lines) + "\n")
    return len(lines)


def read_jsonl(path: Path) -> list[dict]:
    """Read every parsable line of a JSONL file, skipping malformed ones."""
    if not path.exists():
        return []
    records = []
    with open(path, encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError:
                logger.warning(f"Skipping malformed line {lineno} in {path}")
    return records


def write_jsonl_atomic(path: Path, records: Iterable[dict]) -> None:
    """Atomically replace a JSONL file with the given records."""
    body = "".join(json.dumps(r, default=str) + "\n" for r in records)
    _write_atomic(path, body)


@contextmanager
def file_lock(path: Path) -> Iterator[None]:
    """Blocking exclusive flock on ``path`` for a short critical section.

    Serializes read-modify-write cycles across processes (and threads, since
    every call opens its own descriptor). The lock file is created on demand
    and left in place.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(str(path), os.O_CREAT | os.O_RDWR, 0o644)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX)
        yield
    finally:
        os.close(fd)
