"""Data models for agentmeter.

All persisted records are dataclasses serialized with ``to_dict()`` and
rebuilt with ``from_dict()``. Unknown keys are ignored on load so state files
written by older or newer versions still read.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class CorrelationStatus(str, Enum):
    """Outcome of matching a CLI session to an assistant session file."""

    PENDING = "pending"
    MATCHED = "matched"
    FAILED = "failed"


class SessionStatus(str, Enum):
    """Lifecycle status of a metrics session."""

    ACTIVE = "active"
    COMPLETED = "completed"
    RECOVERED = "recovered"
    FAILED = "failed"


class WatermarkType(str, Enum):
    """Progress-marker strategy, chosen per assistant format."""

    HASH = "hash"  # whole-file rewrite formats
    LINE = "line"  # append-only JSONL
    OBJECT = "object"  # stable per-message ids


class SyncStatus(str, Enum):
    """Delivery status of a single delta record."""

    PENDING = "pending"
    SYNCING = "syncing"
    SYNCED = "synced"
    FAILED = "failed"


class FileOperationType(str, Enum):
    READ = "read"
    WRITE = "write"
    EDIT = "edit"
    DELETE = "delete"
    GLOB = "glob"
    GREP = "grep"


def _known(cls, data: dict) -> dict:
    """Filter a dict down to the dataclass fields of cls."""
    return {k: v for k, v in data.items() if k in cls.__dataclass_fields__}


# =============================================================================
# File snapshots
# =============================================================================


@dataclass
class FileInfo:
    """Stat information about one file in an assistant's session directory."""
    path: str
    size: int = 0
    created_at: float = 0.0
    modified_at: float = 0.0


@dataclass
class FileSnapshot:
    """Directory listing taken at a point in time."""
    timestamp: float
    files: list[FileInfo] = field(default_factory=list)

    @property
    def paths(self) -> set[str]:
        return {f.path for f in self.files}

    def get(self, path: str) -> FileInfo | None:
        for info in self.files:
            if info.path == path:
                return info
        return None


# =============================================================================
# Session aggregate root
# =============================================================================


@dataclass
class CorrelationResult:
    status: CorrelationStatus = CorrelationStatus.PENDING
    agent_session_file: str | None = None
    agent_session_id: str | None = None
    detected_at: float | None = None
    retry_count: int = 0

    @classmethod
    def from_dict(cls, data: dict) -> CorrelationResult:
        result = cls(**_known(cls, data))
        result.status = CorrelationStatus(result.status)
        return result


@dataclass
class MonitoringState:
    is_active: bool = False
    last_check_time: float | None = None
    change_count: int = 0

    @classmethod
    def from_dict(cls, data: dict) -> MonitoringState:
        return cls(**_known(cls, data))


@dataclass
class Watermark:
    """Durable marker of how much of a session file has been processed.

    ``value`` is a decimal line count (LINE), a SHA-256 hex digest (HASH) or
    a JSON array of record ids (OBJECT).
    """
    type: WatermarkType
    value: str
    updated_at: float
    expires_at: float

    def is_expired(self, now: float | None = None) -> bool:
        return (now if now is not None else time.time()) > self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "value": self.value,
            "updatedAt": self.updated_at,
            "expiresAt": self.expires_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Watermark:
        return cls(
            type=WatermarkType(data["type"]),
            value=str(data["value"]),
            updated_at=float(data.get("updatedAt", data.get("updated_at", 0.0))),
            expires_at=float(data.get("expiresAt", data.get("expires_at", 0.0))),
        )


@dataclass
class SyncState:
    """Durable per-session processing and delivery state.

    ``processed_record_ids`` only ever grows. A record id in it is never
    emitted again, across restarts and across processes.
    """
    session_id: str
    agent_session_id: str = ""
    status: SessionStatus = SessionStatus.ACTIVE
    session_start_time: float = 0.0
    session_end_time: float | None = None
    # Processing state
    last_processed_line: int = 0
    last_processed_timestamp: float = 0.0
    processed_record_ids: list[str] = field(default_factory=list)
    attached_user_prompt_texts: list[str] = field(default_factory=list)
    # Remote sync state
    last_synced_record_id: str | None = None
    last_sync_at: float | None = None
    last_sync_error: str | None = None
    # Statistics
    total_deltas: int = 0
    total_synced: int = 0
    total_failed: int = 0

    @classmethod
    def from_dict(cls, data: dict) -> SyncState:
        state = cls(**_known(cls, data))
        state.status = SessionStatus(state.status)
        return state


@dataclass
class MetricsSession:
    """Aggregate root persisted to ``sessions/{session_id}.json``."""
    session_id: str
    agent_name: str
    provider: str
    working_directory: str
    start_time: float = field(default_factory=time.time)
    end_time: float | None = None
    project: str | None = None
    git_branch: str | None = None
    owner_pid: int | None = None
    status: SessionStatus = SessionStatus.ACTIVE
    correlation: CorrelationResult = field(default_factory=CorrelationResult)
    monitoring: MonitoringState = field(default_factory=MonitoringState)
    watermark: Watermark | None = None
    sync: SyncState | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["watermark"] = self.watermark.to_dict() if self.watermark else None
        return data

    @classmethod
    def from_dict(cls, data: dict) -> MetricsSession:
        kwargs = _known(cls, data)
        kwargs["status"] = SessionStatus(kwargs.get("status", SessionStatus.ACTIVE))
        kwargs["correlation"] = CorrelationResult.from_dict(kwargs.get("correlation") or {})
        kwargs["monitoring"] = MonitoringState.from_dict(kwargs.get("monitoring") or {})
        watermark = kwargs.get("watermark")
        kwargs["watermark"] = Watermark.from_dict(watermark) if watermark else None
        sync = kwargs.get("sync")
        kwargs["sync"] = SyncState.from_dict(sync) if sync else None
        return cls(**kwargs)


# =============================================================================
# Delta records
# =============================================================================


@dataclass
class TokenUsage:
    input: int = 0
    output: int = 0
    cache_creation: int = 0
    cache_read: int = 0

    def add(self, other: TokenUsage) -> None:
        self.input += other.input
        self.output += other.output
        self.cache_creation += other.cache_creation
        self.cache_read += other.cache_read

    @property
    def total(self) -> int:
        return self.input + self.output + self.cache_creation + self.cache_read


@dataclass
class FileOperation:
    type: FileOperationType
    path: str | None = None
    pattern: str | None = None  # glob/grep
    language: str | None = None
    format: str | None = None  # file extension without dot
    lines_added: int = 0
    lines_removed: int = 0
    lines_modified: int = 0
    duration_ms: float | None = None

    @classmethod
    def from_dict(cls, data: dict) -> FileOperation:
        op = cls(**_known(cls, data))
        op.type = FileOperationType(op.type)
        return op


@dataclass
class MetricDelta:
    """Incremental metrics for one assistant turn.

    Immutable once created except for the ``sync_*`` fields.
    """
    record_id: str
    session_id: str
    agent_session_id: str
    timestamp: float
    git_branch: str | None = None
    tokens: TokenUsage = field(default_factory=TokenUsage)
    tools: dict[str, int] = field(default_factory=dict)
    tool_status: dict[str, dict[str, int]] = field(default_factory=dict)
    file_operations: list[FileOperation] = field(default_factory=list)
    models: list[str] = field(default_factory=list)
    api_error_message: str | None = None
    user_prompt: str | None = None
    # Sync tracking
    sync_status: SyncStatus = SyncStatus.PENDING
    synced_at: float | None = None
    sync_attempts: int = 0
    sync_error: str | None = None

    def record_tool(self, name: str, success: bool | None) -> None:
        """Count a tool invocation; success=None means no result seen yet."""
        self.tools[name] = self.tools.get(name, 0) + 1
        status = self.tool_status.setdefault(name, {"success": 0, "failure": 0})
        if success is True:
            status["success"] += 1
        elif success is False:
            status["failure"] += 1

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> MetricDelta:
        kwargs = _known(cls, data)
        kwargs["tokens"] = TokenUsage(**_known(TokenUsage, kwargs.get("tokens") or {}))
        kwargs["file_operations"] = [
            FileOperation.from_dict(op) for op in kwargs.get("file_operations") or []
        ]
        kwargs["sync_status"] = SyncStatus(kwargs.get("sync_status", SyncStatus.PENDING))
        return cls(**kwargs)


@dataclass
class UserPrompt:
    """A prompt the user typed, as recorded by the assistant."""
    display: str
    timestamp: float
    project: str = ""
    session_id: str = ""


@dataclass
class SessionAggregate:
    """Session-level totals sent to the collector, one per git branch."""
    session_id: str
    agent: str
    provider: str
    branch: str
    repository: str
    models: list[str] = field(default_factory=list)
    total_user_prompts: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cache_creation_tokens: int = 0
    total_cache_read_tokens: int = 0
    total_tool_calls: int = 0
    successful_tool_calls: int = 0
    failed_tool_calls: int = 0
    files_created: int = 0
    files_modified: int = 0
    files_deleted: int = 0
    total_lines_added: int = 0
    total_lines_removed: int = 0
    session_duration_ms: int = 0
    had_errors: bool = False
    errors: dict[str, list[str]] = field(default_factory=dict)
    record_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# =============================================================================
# Proxy
# =============================================================================


@dataclass
class ProxyContext:
    """Per-request state owned by a single proxy request handler."""
    request_id: str
    session_id: str
    agent_name: str
    method: str
    url: str
    headers: dict[str, str]
    body: bytes | None = None
    start_time: float = field(default_factory=time.time)
    target_url: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
