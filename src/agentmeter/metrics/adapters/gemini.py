"""Gemini CLI metrics adapter.

Parses Gemini CLI chat files at:
    ~/.gemini/tmp/{project-hash}/chats/session-{timestamp}-{short-id}.json

Each file is a single JSON document that Gemini rewrites in place, so the
hash watermark is used and the whole ``messages`` array is re-parsed on
every change; already-emitted message ids are filtered out.
"""

import json
import logging
import re
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

GEMINI_TMP_DIR = Path.home() / ".gemini" / "tmp"

_SESSION_FILE_RE = re.compile(r"^session-.+\.json$")
_FINISHED_STATUSES = {"success", "error", "cancelled"}


def _text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(p.get("text", "") for p in content if isinstance(p, dict))
    return ""


def _file_operations(name: str, args: dict) -> list[FileOperation]:
    path = args.get("absolute_path") or args.get("file_path") or args.get("path")
    if name == "read_file":
        return [file_operation(FileOperationType.READ, path)]
    if name == "read_many_files":
        return [file_operation(FileOperationType.READ, p) for p in args.get("paths") or []]
    if name == "write_file":
        content = args.get("content") or ""
        added = content.count("\n") + (1 if content and not content.endswith("\n") else 0)
        return [file_operation(FileOperationType.WRITE, path, lines_added=added)]
    if name == "replace":
        new, old = args.get("new_string") or "", args.get("old_string") or ""
        added = new.count("\n") + 1 if new else 0
        removed = old.count("\n") + 1 if old else 0
        return [file_operation(FileOperationType.EDIT, path, lines_added=added, lines_removed=removed)]
    if name == "glob":
        return [file_operation(FileOperationType.GLOB, args.get("path"), pattern=args.get("pattern"))]
    if name in ("search_file_content", "grep"):
        return [file_operation(FileOperationType.GREP, args.get("path"), pattern=args.get("pattern"))]
    return []


class GeminiAdapter(BaseMetricsAdapter):
    """Adapter for Gemini CLI chat files."""

    agent_name = "gemini"
    watermark_strategy = WatermarkType.HASH
    init_delay = 0.5

    def default_sessions_dir(self) -> Path:
        return GEMINI_TMP_DIR

    def list_session_files(self) -> list[Path]:
        if not self.sessions_dir.exists():
            return []
        return [p for p in self.sessions_dir.glob("*/chats/*.json") if self.matches_session_pattern(p)]

    def matches_session_pattern(self, path: Path) -> bool:
        path = Path(path)
        return bool(_SESSION_FILE_RE.match(path.name)) and path.parent.name == "chats"

    def extract_session_id(self, path: Path) -> str:
        """sessionId from the document, falling back to the file name."""
        path = Path(path)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            if isinstance(data, dict) and data.get("sessionId"):
                return str(data["sessionId"])
        except (OSError, json.JSONDecodeError, UnicodeDecodeError):
            pass
        return path.stem.removeprefix("session-")

    def _load(self, path: Path) -> dict:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, UnicodeDecodeError) as e:
            raise AdapterError(f"Cannot read chat file: {e}", path=str(path)) from e
        except json.JSONDecodeError as e:
            # Usually a rewrite in progress; the next change retries
            raise AdapterError(f"Invalid JSON: {e}", path=str(path)) from e
        if not isinstance(data, dict) or not isinstance(data.get("messages"), list):
            raise AdapterError("Chat file has no messages array", path=str(path))
        return data

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
        data = self._load(path)
        agent_session_id = str(data.get("sessionId") or path.stem.removeprefix("session-"))

        parsed = ParseResult()
        attached_now: set[str] = set()
        pending_prompt: str | None = None
        pending_error: str | None = None

        for position, message in enumerate(data["messages"]):
            if not isinstance(message, dict):
                logger.warning(f"Skipping malformed message {position} in {path.name}")
                continue
            msg_type = message.get("type")
            if msg_type == "user":
                text = _text(message.get("content")).strip()
                if text and not text.startswith("/"):
                    pending_prompt = text
                continue
            if msg_type == "error":
                pending_error = _text(message.get("content")) or "API error"
                continue
            if msg_type != "gemini":
                continue

            record_id = message.get("id")
            if not record_id:
                logger.debug(f"Gemini message {position} has no id in {path.name}")
                continue
            tool_calls = [c for c in message.get("toolCalls") or [] if isinstance(c, dict)]
            if not final and any(c.get("status") not in _FINISHED_STATUSES for c in tool_calls):
                # Still executing; the rewrite that finishes it changes the hash
                break

            parsed.seen_ids.add(record_id)
            prompt, pending_prompt = pending_prompt, None
            error, pending_error = pending_error, None
            if record_id in processed_ids:
                continue

            delta = self._new_delta(record_id, agent_session_id, parse_timestamp(message.get("timestamp")))
            tokens = message.get("tokens") or {}
            cached = tokens.get("cached") or 0
            delta.tokens = TokenUsage(
                input=max((tokens.get("input") or 0) - cached, 0),
                output=(tokens.get("output") or 0) + (tokens.get("thoughts") or 0),
                cache_read=cached,
            )
            if message.get("model"):
                delta.models = [message["model"]]
            delta.api_error_message = error

            for call in tool_calls:
                name = call.get("name", "unknown")
                status = call.get("status")
                success = True if status == "success" else False if status in ("error", "cancelled") else None
                delta.record_tool(name, success)
                if success:
                    delta.file_operations.extend(_file_operations(name, call.get("args") or {}))
                elif success is False and delta.api_error_message is None:
                    delta.api_error_message = _text(call.get("resultDisplay")) or f"{name} failed"

            if prompt and prompt not in attached_prompts and prompt not in attached_now:
                delta.user_prompt = prompt
                attached_now.add(prompt)
                parsed.prompts.append(prompt)

            parsed.deltas.append(delta)

        parsed.last_line = len(data["messages"])
        logger.debug(f"Parsed {path.name}: {len(parsed.deltas)} new deltas")
        return parsed

    def get_user_prompts(
        self, agent_session_id: str, from_ts: float | None = None, to_ts: float | None = None
    ) -> list[UserPrompt]:
        """User messages from the chat file carrying this sessionId."""
        prompts = []
        for path in self.list_session_files():
            try:
                data = self._load(path)
            except AdapterError:
                continue
            if str(data.get("sessionId")) != agent_session_id:
                continue
            for message in data["messages"]:
                if not isinstance(message, dict) or message.get("type") != "user":
                    continue
                ts = parse_timestamp(message.get("timestamp")) or 0.0
                if from_ts is not None and ts < from_ts:
                    continue
                if to_ts is not None and ts > to_ts:
                    continue
                prompts.append(UserPrompt(
                    display=_text(message.get("content")),
                    timestamp=ts,
                    project=str(path.parent.parent.name),
                    session_id=agent_session_id,
                ))
        return prompts
