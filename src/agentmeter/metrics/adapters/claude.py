"""Claude Code metrics adapter.

Parses Claude Code JSONL session files at:
    ~/.claude/projects/{project-dir}/{session-uuid}.jsonl

Each assistant API response becomes one MetricDelta keyed by the ``uuid``
of its first JSONL entry. Claude writes one entry per content block, all
sharing ``message.id``; those entries are merged into a single turn. Tool
results arrive in later ``user`` entries and are paired via ``tool_use_id``.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agentmeter.errors import AdapterError
from agentmeter.metrics.adapters.base import (
    BaseMetricsAdapter,
    ParseResult,
    file_operation,
    parse_timestamp,
)
from agentmeter.models import FileOperation, FileOperationType, TokenUsage, UserPrompt, WatermarkType

logger = logging.getLogger(__name__)

CLAUDE_PROJECTS_DIR = Path.home() / ".claude" / "projects"
CLAUDE_HISTORY_FILE = Path.home() / ".claude" / "history.jsonl"

_SESSION_FILE_RE = re.compile(r"^[a-z0-9-]+\.jsonl$")

# Entries with this model are locally generated notices, not API responses
_SYNTHETIC_MODEL = "<synthetic>"


@dataclass
class _Turn:
    record_id: str
    start_line: int
    timestamp: float | None
    git_branch: str | None = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    models: list[str] = field(default_factory=list)
    tool_uses: list[tuple[str, str, dict]] = field(default_factory=list)
    prompt: str | None = None
    api_error: str | None = None
    last_line: int = 0
    stopped: bool = False


def _count_lines(text: Any) -> int:
    if not isinstance(text, str) or not text:
        return 0
    return text.count("\n") + (0 if text.endswith("\n") else 1)


def _patch_line_counts(patch: Any) -> tuple[int, int]:
    """(added, removed) from a structuredPatch hunk list."""
    added = removed = 0
    if not isinstance(patch, list):
        return 0, 0
    for hunk in patch:
        for line in hunk.get("lines", []) if isinstance(hunk, dict) else []:
            if line.startswith("+"):
                added += 1
            elif line.startswith("-"):
                removed += 1
    return added, removed


def _prompt_text(entry: dict) -> str | None:
    """Text of a user-typed prompt; None for tool results and meta entries."""
    if entry.get("isMeta") or entry.get("isSidechain"):
        return None
    content = (entry.get("message") or {}).get("content")
    if isinstance(content, str):
        text = content.strip()
    elif isinstance(content, list):
        if any(isinstance(b, dict) and b.get("type") == "tool_result" for b in content):
            return None
        text = "\n".join(
            b.get("text", "") for b in content if isinstance(b, dict) and b.get("type") == "text"
        ).strip()
    else:
        return None
    # Slash-command wrappers and interrupt notices are not prompts
    if not text or text.startswith("<command-") or text.startswith("[Request interrupted"):
        return None
    return text


def _result_text(block: dict) -> str:
    content = block.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            c.get("text", "") for c in content if isinstance(c, dict) and c.get("type") == "text"
        )
    return ""


def _file_operations(name: str, tool_input: dict, result: Any) -> list[FileOperation]:
    """Infer file operations from a tool call and its toolUseResult."""
    result = result if isinstance(result, dict) else {}
    path = tool_input.get("file_path") or tool_input.get("notebook_path") or result.get("filePath")

    if name == "Read":
        return [file_operation(FileOperationType.READ, path)]
    if name == "Write":
        if result.get("structuredPatch"):
            added, removed = _patch_line_counts(result["structuredPatch"])
        else:
            added, removed = _count_lines(tool_input.get("content")), 0
        return [file_operation(FileOperationType.WRITE, path, lines_added=added, lines_removed=removed)]
    if name in ("Edit", "MultiEdit", "NotebookEdit"):
        if result.get("structuredPatch"):
            added, removed = _patch_line_counts(result["structuredPatch"])
        else:
            edits = tool_input.get("edits") or [tool_input]
            added = sum(_count_lines(e.get("new_string") or e.get("new_source")) for e in edits)
            removed = sum(_count_lines(e.get("old_string")) for e in edits)
        return [file_operation(FileOperationType.EDIT, path, lines_added=added, lines_removed=removed)]
    if name == "Glob":
        return [file_operation(FileOperationType.GLOB, tool_input.get("path"), pattern=tool_input.get("pattern"))]
    if name == "Grep":
        return [file_operation(FileOperationType.GREP, tool_input.get("path"), pattern=tool_input.get("pattern"))]

    # Unknown tools: fall back to the result type Claude records
    result_type = str(result.get("type", "")).lower()
    result_path = result.get("filePath") or (result.get("file") or {}).get("filePath")
    if result_path and result_type == "create":
        return [file_operation(FileOperationType.WRITE, result_path)]
    if result_path and result_type in ("update", "edit"):
        return [file_operation(FileOperationType.EDIT, result_path)]
    if result_path and result_type == "delete":
        return [file_operation(FileOperationType.DELETE, result_path)]
    return []


class ClaudeAdapter(BaseMetricsAdapter):
    """Adapter for Claude Code session transcripts."""

    agent_name = "claude"
    watermark_strategy = WatermarkType.LINE
    init_delay = 0.5

    def __init__(self, sessions_dir: Path | None = None, history_file: Path | None = None):
        super().__init__(sessions_dir)
        self._history_file = Path(history_file) if history_file else None

    def default_sessions_dir(self) -> Path:
        return CLAUDE_PROJECTS_DIR

    @property
    def history_file(self) -> Path:
        return self._history_file or CLAUDE_HISTORY_FILE

    def list_session_files(self) -> list[Path]:
        if not self.sessions_dir.exists():
            return []
        return [p for p in self.sessions_dir.glob("*/*.jsonl") if self.matches_session_pattern(p)]

    def matches_session_pattern(self, path: Path) -> bool:
        path = Path(path)
        # agent-*.jsonl files are sidechains of a parent session
        if path.name.startswith("agent-"):
            return False
        return bool(_SESSION_FILE_RE.match(path.name)) and path.parent.parent == self.sessions_dir

    def extract_session_id(self, path: Path) -> str:
        return Path(path).stem

    def parse_incremental_metrics(
        self,
        path: Path,
        processed_ids: set[str],
        attached_prompts: set[str],
        *,
        start_line: int = 0,
        final: bool = False,
    ) -> ParseResult:
        path = Path(path)
        lines = self._read_lines(path)
        agent_session_id = self.extract_session_id(path)

        entries: list[tuple[int, dict]] = []
        malformed = 0
        for idx in range(start_line, len(lines)):
            raw = lines[idx].strip()
            if not raw:
                continue
            try:
                entry = json.loads(raw)
            except json.JSONDecodeError:
                malformed += 1
                logger.warning(f"Skipping malformed line {idx + 1} in {path.name}")
                continue
            if isinstance(entry, dict):
                entries.append((idx, entry))

        if malformed and not entries:
            raise AdapterError(f"No parsable entries after line {start_line}", path=str(path))

        results: dict[str, tuple[bool, str, Any]] = {}
        for _, entry in entries:
            if entry.get("type") != "user":
                continue
            content = (entry.get("message") or {}).get("content")
            if not isinstance(content, list):
                continue
            for block in content:
                if isinstance(block, dict) and block.get("type") == "tool_result" and block.get("tool_use_id"):
                    is_error = block.get("is_error") is True
                    results[block["tool_use_id"]] = (is_error, _result_text(block), entry.get("toolUseResult"))

        turns: dict[str, _Turn] = {}
        pending_prompt: tuple[str, int] | None = None
        for idx, entry in entries:
            entry_type = entry.get("type")
            if entry_type == "user":
                text = _prompt_text(entry)
                if text:
                    pending_prompt = (text, idx)
                continue
            if entry_type != "assistant" or entry.get("isSidechain"):
                continue

            message = entry.get("message") or {}
            uuid = entry.get("uuid")
            if not uuid:
                logger.debug(f"Assistant entry without uuid at line {idx + 1} in {path.name}")
                continue
            turn_key = message.get("id") or uuid
            turn = turns.get(turn_key)
            if turn is None:
                turn = _Turn(
                    record_id=uuid,
                    start_line=pending_prompt[1] if pending_prompt else idx,
                    timestamp=parse_timestamp(entry.get("timestamp")),
                    git_branch=entry.get("gitBranch") or None,
                    prompt=pending_prompt[0] if pending_prompt else None,
                )
                turns[turn_key] = turn
                pending_prompt = None

            turn.last_line = idx
            turn.stopped = message.get("stop_reason") is not None

            usage = message.get("usage") or {}
            # Streamed entries of one message repeat the usage block
            turn.usage.input = max(turn.usage.input, usage.get("input_tokens") or 0)
            turn.usage.output = max(turn.usage.output, usage.get("output_tokens") or 0)
            turn.usage.cache_creation = max(turn.usage.cache_creation, usage.get("cache_creation_input_tokens") or 0)
            turn.usage.cache_read = max(turn.usage.cache_read, usage.get("cache_read_input_tokens") or 0)

            model = message.get("model")
            if model and model != _SYNTHETIC_MODEL and model not in turn.models:
                turn.models.append(model)

            content = message.get("content")
            if isinstance(content, list):
                for block in content:
                    if isinstance(block, dict) and block.get("type") == "tool_use" and block.get("id"):
                        turn.tool_uses.append((block["id"], block.get("name", "unknown"), block.get("input") or {}))
            if entry.get("isApiErrorMessage") and isinstance(content, list):
                turn.api_error = _result_text({"content": content}) or "API error"

        # Stop before the first unfinished turn or unanswered prompt; the next
        # pass re-reads from there. A trailing message without a stop_reason
        # may still be streaming more entries.
        hold_line: int | None = None
        if not final:
            last_entry = entries[-1][0] if entries else -1
            for turn in turns.values():
                if any(tool_id not in results for tool_id, _, _ in turn.tool_uses):
                    hold_line = turn.start_line
                    break
                if turn.last_line == last_entry and not turn.stopped:
                    hold_line = turn.start_line
                    break
            if pending_prompt and (hold_line is None or pending_prompt[1] < hold_line):
                hold_line = pending_prompt[1]

        parsed = ParseResult(last_line=hold_line if hold_line is not None else len(lines))
        attached_now: set[str] = set()
        for turn in turns.values():
            if hold_line is not None and turn.start_line >= hold_line:
                break
            parsed.seen_ids.add(turn.record_id)
            if turn.record_id in processed_ids:
                continue

            delta = self._new_delta(turn.record_id, agent_session_id, turn.timestamp)
            delta.git_branch = turn.git_branch
            delta.tokens = turn.usage
            delta.models = turn.models
            delta.api_error_message = turn.api_error

            for tool_id, name, tool_input in turn.tool_uses:
                result = results.get(tool_id)
                if result is None:
                    delta.record_tool(name, None)
                    continue
                is_error, text, tool_result = result
                delta.record_tool(name, not is_error)
                if is_error:
                    if delta.api_error_message is None:
                        delta.api_error_message = text or f"{name} failed"
                    continue
                delta.file_operations.extend(_file_operations(name, tool_input, tool_result))

            if turn.prompt and turn.prompt not in attached_prompts and turn.prompt not in attached_now:
                delta.user_prompt = turn.prompt
                attached_now.add(turn.prompt)
                parsed.prompts.append(turn.prompt)

            parsed.deltas.append(delta)

        logger.debug(
            f"Parsed {path.name} lines {start_line}-{parsed.last_line}: "
            f"{len(parsed.deltas)} new deltas, {len(turns)} turns"
        )
        return parsed

    def get_user_prompts(
        self, agent_session_id: str, from_ts: float | None = None, to_ts: float | None = None
    ) -> list[UserPrompt]:
        """Prompts recorded in ~/.claude/history.jsonl for one session."""
        if not self.history_file.exists():
            return []

        prompts = []
        with open(self.history_file, "r", encoding="utf-8", errors="replace") as f:
            for line in f:
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if not isinstance(entry, dict) or entry.get("sessionId") != agent_session_id:
                    continue
                ts = parse_timestamp(entry.get("timestamp")) or 0.0
                if from_ts is not None and ts < from_ts:
                    continue
                if to_ts is not None and ts > to_ts:
                    continue
                prompts.append(UserPrompt(
                    display=entry.get("display", ""),
                    timestamp=ts,
                    project=entry.get("project", ""),
                    session_id=agent_session_id,
                ))
        return prompts
