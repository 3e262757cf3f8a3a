"""Base adapter protocol for per-assistant session parsing.

Each assistant (Claude Code, Gemini CLI, Codex CLI) implements this protocol
so the correlator can find its session files and the extractor can turn new
content into MetricDelta records in a uniform way.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from agentmeter.errors import AdapterError
from agentmeter.models import FileOperation, FileOperationType, MetricDelta, UserPrompt, WatermarkType

logger = logging.getLogger(__name__)

EXTENSION_LANGUAGES = {
    "py": "python",
    "pyi": "python",
    "js": "javascript",
    "jsx": "javascript",
    "mjs": "javascript",
    "cjs": "javascript",
    "ts": "typescript",
    "tsx": "typescript",
    "go": "go",
    "rs": "rust",
    "java": "java",
    "kt": "kotlin",
    "rb": "ruby",
    "php": "php",
    "c": "c",
    "h": "c",
    "cpp": "cpp",
    "cc": "cpp",
    "hpp": "cpp",
    "cs": "csharp",
    "swift": "swift",
    "scala": "scala",
    "sh": "shell",
    "bash": "shell",
    "sql": "sql",
    "html": "html",
    "css": "css",
    "scss": "scss",
    "md": "markdown",
    "json": "json",
    "yaml": "yaml",
    "yml": "yaml",
    "toml": "toml",
    "xml": "xml",
}


def detect_language(path: str | None) -> tuple[str | None, str | None]:
    """Map a file path to (language, format) from its extension.

    Example:
        detect_language("src/app.tsx") -> ("typescript", "tsx")
    """
    if not path:
        return None, None
    suffix = Path(path).suffix.lower().lstrip(".")
    if not suffix:
        return None, None
    return EXTENSION_LANGUAGES.get(suffix), suffix


def parse_timestamp(value: Any) -> float | None:
    """Parse an ISO-8601 string or epoch number (seconds or ms) to epoch seconds."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        # Millisecond epochs are 13 digits
        return value / 1000.0 if value > 1e11 else float(value)
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).timestamp()
    except ValueError:
        return None


def file_operation(
    op_type: FileOperationType,
    path: str | None = None,
    pattern: str | None = None,
    lines_added: int = 0,
    lines_removed: int = 0,
) -> FileOperation:
    """Build a FileOperation with language/format detected from the path."""
    language, fmt = detect_language(path)
    return FileOperation(
        type=op_type,
        path=path,
        pattern=pattern,
        language=language,
        format=fmt,
        lines_added=lines_added,
        lines_removed=lines_removed,
        lines_modified=min(lines_added, lines_removed),
    )


@dataclass
class ParseResult:
    """Output of one adapter parse pass.

    Attributes:
        deltas: New deltas, already filtered against processed ids.
        last_line: Line count consumed (line-watermark formats only).
        seen_ids: Every complete record id observed, emitted or not.
        prompts: Prompt texts attached to a delta during this pass.
    """
    deltas: list[MetricDelta] = field(default_factory=list)
    last_line: int = 0
    seen_ids: set[str] = field(default_factory=set)
    prompts: list[str] = field(default_factory=list)


class MetricsAdapter(Protocol):
    """Interface each assistant adapter implements."""

    agent_name: str  # "claude" | "gemini" | "codex"
    watermark_strategy: WatermarkType
    init_delay: float  # seconds to wait after spawn before correlating

    @property
    def sessions_dir(self) -> Path:
        """Root directory the assistant writes its session files under."""
        ...

    def list_session_files(self) -> list[Path]:
        """Every file under sessions_dir matching the session pattern."""
        ...

    def matches_session_pattern(self, path: Path) -> bool:
        """Whether a path looks like one of this assistant's session files."""
        ...

    def session_file_mentions(self, path: Path, text: str) -> bool:
        ...

    def extract_session_id(self, path: Path) -> str:
        """Assistant-native session id from a session file path."""
        ...

    def parse_incremental_metrics(
        self,
        path: Path,
        processed_ids: set[str],
        attached_prompts: set[str],
        *,
        start_line: int = 0,
        final: bool = False,
    ) -> ParseResult:
        """Parse new content into deltas.

        Args:
            path: Session file.
            processed_ids: Record ids already emitted; never emitted again.
            attached_prompts: Prompt texts already attached to a delta.
            start_line: First line to read (line-watermark formats).
            final: Session is over; emit records still waiting on results.

        Raises:
            AdapterError: The file as a whole could not be read or parsed.
        """
        ...

    def get_user_prompts(
        self, agent_session_id: str, from_ts: float | None = None, to_ts: float | None = None
    ) -> list[UserPrompt]:
        """Prompts the user typed in a session, optionally within a time range."""
        ...


class BaseMetricsAdapter:
    """Shared helpers for adapters. Subclasses set the class attributes."""

    agent_name: str = ""
    watermark_strategy: WatermarkType = WatermarkType.HASH
    init_delay: float = 0.5

    def __init__(self, sessions_dir: Path | None = None):
        self._sessions_dir = Path(sessions_dir) if sessions_dir else None

    @property
    def sessions_dir(self) -> Path:
        if self._sessions_dir is not None:
            return self._sessions_dir
        return self.default_sessions_dir()

    def default_sessions_dir(self) -> Path:
        raise NotImplementedError

    def list_session_files(self) -> list[Path]:
        raise NotImplementedError

    def get_user_prompts(
        self, agent_session_id: str, from_ts: float | None = None, to_ts: float | None = None
    ) -> list[UserPrompt]:
        return []

    def session_file_mentions(self, path: Path, text: str) -> bool:
        """Whether the first few KB of a session file contain text."""
        try:
            with open(path, "r", encoding="utf-8", errors="replace") as f:
                head = f.read(16384)
        except OSError:
            return False
        # Paths appear JSON-escaped inside session files
        return text in head or json.dumps(text)[1:-1] in head

    def _read_lines(self, path: Path) -> list[str]:
        """Read complete lines; a trailing line without newline is excluded.

        An unterminated last line is usually a write in progress and is
        picked up on the next pass.
        """
        try:
            with open(path, "r", encoding="utf-8") as f:
                content = f.read()
        except (OSError, UnicodeDecodeError) as e:
            raise AdapterError(f"Cannot read session file: {e}", path=str(path)) from e

        lines = content.split("\n")
        # split() leaves "" after a trailing newline, or the partial last line
        if lines and lines[-1] != "":
            partial = lines[-1]
            try:
                json.loads(partial)
            except json.JSONDecodeError:
                logger.debug(f"Deferring partial last line of {path.name}")
                return lines[:-1]
        return lines[:-1] if lines and lines[-1] == "" else lines

    def _new_delta(self, record_id: str, agent_session_id: str, timestamp: float | None) -> MetricDelta:
        return MetricDelta(
            record_id=record_id,
            session_id="",
            agent_session_id=agent_session_id,
            timestamp=timestamp if timestamp is not None else 0.0,
        )
