"""Codex CLI metrics adapter.

Parses Codex CLI rollout files at:
    ~/.codex/sessions/YYYY/MM/DD/rollout-{timestamp}-{uuid}.jsonl

A turn ends with a ``token_count`` event; its record id is
``turn:{timestamp}`` of that event, or ``turn:line{N}`` when it has no
timestamp or shares one with an earlier turn. Tool calls (``function_call``
and ``custom_tool_call`` response items) seen since the previous turn belong
to it, and their outputs are paired later by ``call_id``. The object-id-set
watermark stores every completed turn id.
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

CODEX_SESSIONS_DIR = Path.home() / ".codex" / "sessions"
CODEX_HISTORY_FILE = Path.home() / ".codex" / "history.jsonl"

# UUID pattern in Codex filenames: rollout-{timestamp}-{uuid}.jsonl
_UUID_RE = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}")

_PATCH_FILE_RE = re.compile(r"^\*\*\* (Add|Update|Delete) File: (.+)$")


@dataclass
class _Call:
    call_id: str
    name: str
    arguments: Any


@dataclass
class _Output:
    success: bool
    text: str


@dataclass
class _PendingTurn:
    calls: list[_Call] = field(default_factory=list)
    prompt: str | None = None


def _parse_arguments(raw: Any) -> Any:
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return raw
    return raw


def _parse_output(raw: Any) -> _Output:
    """Classify a tool output; shell outputs carry metadata.exit_code."""
    data = _parse_arguments(raw)
    if isinstance(data, dict):
        metadata = data.get("metadata") or {}
        exit_code = metadata.get("exit_code")
        text = str(data.get("output", ""))
        return _Output(success=exit_code in (None, 0), text=text)
    text = str(data or "")
    return _Output(success=not text.lower().startswith("error"), text=text)


def _patch_operations(patch: str) -> list[FileOperation]:
    """File operations from an apply_patch envelope."""
    ops: list[FileOperation] = []
    current: tuple[str, str] | None = None
    added = removed = 0

    def _flush() -> None:
        if current is None:
            return
        action, path = current
        op_type = {
            "Add": FileOperationType.WRITE,
            "Update": FileOperationType.EDIT,
            "Delete": FileOperationType.DELETE,
        }[action]
        ops.append(file_operation(op_type, path, lines_added=added, lines_removed=removed))

    for line in patch.splitlines():
        match = _PATCH_FILE_RE.match(line)
        if match:
            _flush()
            current = (match.group(1), match.group(2).strip())
            added = removed = 0
        elif line.startswith("***"):
            continue
        elif line.startswith("+"):
            added += 1
        elif line.startswith("-"):
            removed += 1
    _flush()
    return ops


def _file_operations(call: _Call) -> list[FileOperation]:
    args = call.arguments
    if call.name == "apply_patch":
        patch = args if isinstance(args, str) else (args or {}).get("input", "")
        return _patch_operations(patch or "")
    if call.name in ("shell", "local_shell") and isinstance(args, dict):
        command = args.get("command")
        if isinstance(command, list) and command and "apply_patch" in command[0]:
            return _patch_operations(command[-1])
    return []


def _extract_session_id(filename: str) -> str | None:
    """Extract UUID from Codex filename.

    Example: rollout-2026-02-05T10-36-02-019c2cf1-aed9-7560-933d-874296a5e2a7.jsonl
    """
    match = _UUID_RE.search(filename)
    return match.group(0) if match else None


class CodexAdapter(BaseMetricsAdapter):
    """Adapter for Codex CLI rollout files."""

    agent_name = "codex"
    watermark_strategy = WatermarkType.OBJECT
    init_delay = 1.0

    def __init__(self, sessions_dir: Path | None = None, history_file: Path | None = None):
        super().__init__(sessions_dir)
        self._history_file = Path(history_file) if history_file else None

    def default_sessions_dir(self) -> Path:
        return CODEX_SESSIONS_DIR

    @property
    def history_file(self) -> Path:
        return self._history_file or CODEX_HISTORY_FILE

    def list_session_files(self) -> list[Path]:
        if not self.sessions_dir.exists():
            return []
        return [p for p in self.sessions_dir.rglob("rollout-*.jsonl") if self.matches_session_pattern(p)]

    def matches_session_pattern(self, path: Path) -> bool:
        name = Path(path).name
        return name.startswith("rollout-") and name.endswith(".jsonl") and _extract_session_id(name) is not None

    def extract_session_id(self, path: Path) -> str:
        return _extract_session_id(Path(path).name) or Path(path).stem

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

        records: list[tuple[int, dict]] = []
        malformed = 0
        for idx, raw in enumerate(lines):
            raw = raw.strip()
            if not raw:
                continue
            try:
                record = json.loads(raw)
            except json.JSONDecodeError:
                malformed += 1
                logger.warning(f"Skipping malformed line {idx + 1} in {path.name}")
                continue
            if isinstance(record, dict):
                records.append((idx, record))
        if malformed and not records:
            raise AdapterError("No parsable records", path=str(path))

        outputs: dict[str, _Output] = {}
        for _, record in records:
            payload = record.get("payload") or {}
            if record.get("type") == "response_item" and payload.get("type") in (
                "function_call_output",
                "custom_tool_call_output",
            ):
                outputs[payload.get("call_id", "")] = _parse_output(payload.get("output"))

        parsed = ParseResult(last_line=len(lines))
        attached_now: set[str] = set()
        pending = _PendingTurn()
        model: str | None = None
        git_branch: str | None = None
        last_totals: Any = None

        for idx, record in records:
            record_type = record.get("type")
            payload = record.get("payload") or {}

            if record_type == "session_meta":
                git_branch = (payload.get("git") or {}).get("branch") or git_branch
                continue
            if record_type == "turn_context":
                model = payload.get("model") or model
                continue
            if record_type == "response_item" and payload.get("type") in ("function_call", "custom_tool_call"):
                pending.calls.append(_Call(
                    call_id=payload.get("call_id", ""),
                    name=payload.get("name", "unknown"),
                    arguments=_parse_arguments(payload.get("arguments", payload.get("input"))),
                ))
                continue
            if record_type != "event_msg":
                continue

            event_type = payload.get("type")
            if event_type == "user_message":
                text = str(payload.get("message", "")).strip()
                if text:
                    pending.prompt = text
                continue
            if event_type != "token_count":
                continue

            info = payload.get("info") or {}
            usage = info.get("last_token_usage")
            if not usage:
                continue
            totals = info.get("total_token_usage")
            # Codex repeats token_count with unchanged totals; only new usage counts
            if totals is not None:
                if totals == last_totals:
                    continue
                last_totals = totals

            if not final and any(c.call_id not in outputs for c in pending.calls):
                break

            timestamp = record.get("timestamp")
            # Rollouts are append-only, so the line number is stable
            record_id = f"turn:{timestamp}"
            if not timestamp or record_id in parsed.seen_ids:
                record_id = f"turn:line{idx + 1}"
            turn, pending = pending, _PendingTurn()
            parsed.seen_ids.add(record_id)
            if record_id in processed_ids:
                continue

            delta = self._new_delta(record_id, agent_session_id, parse_timestamp(timestamp))
            delta.git_branch = git_branch
            cached = usage.get("cached_input_tokens") or 0
            delta.tokens = TokenUsage(
                input=max((usage.get("input_tokens") or 0) - cached, 0),
                output=usage.get("output_tokens") or 0,
                cache_read=cached,
            )
            if model:
                delta.models = [model]

            for call in turn.calls:
                output = outputs.get(call.call_id)
                if output is None:
                    delta.record_tool(call.name, None)
                    continue
                delta.record_tool(call.name, output.success)
                if output.success:
                    delta.file_operations.extend(_file_operations(call))
                elif delta.api_error_message is None:
                    delta.api_error_message = output.text or f"{call.name} failed"

            if turn.prompt and turn.prompt not in attached_prompts and turn.prompt not in attached_now:
                delta.user_prompt = turn.prompt
                attached_now.add(turn.prompt)
                parsed.prompts.append(turn.prompt)

            parsed.deltas.append(delta)

        logger.debug(f"Parsed {path.name}: {len(parsed.deltas)} new deltas, {len(parsed.seen_ids)} turns")
        return parsed

    def get_user_prompts(
        self, agent_session_id: str, from_ts: float | None = None, to_ts: float | None = None
    ) -> list[UserPrompt]:
        """Prompts recorded in ~/.codex/history.jsonl for one session."""
        if not self.history_file.exists():
            return []

        prompts = []
        with open(self.history_file, "r", encoding="utf-8", errors="replace") as f:
            for line in f:
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if not isinstance(entry, dict) or entry.get("session_id") != agent_session_id:
                    continue
                ts = parse_timestamp(entry.get("ts")) or 0.0
                if from_ts is not None and ts < from_ts:
                    continue
                if to_ts is not None and ts > to_ts:
                    continue
                prompts.append(UserPrompt(display=entry.get("text", ""), timestamp=ts, session_id=agent_session_id))
        return prompts
