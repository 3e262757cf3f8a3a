"""Sanitization applied to records before they leave the machine.

- Repository paths are cut to their last two segments.
- Error text loses ANSI escapes, gets LF newlines and is capped in length.
- Errors from tools configured as noisy are dropped entirely.
"""

import copy
import logging
import re

from agentmeter.models import MetricDelta, SessionAggregate

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 1000
TRUNCATION_MARKER = "...[truncated]"

# CSI sequences, OSC sequences (BEL or ST terminated) and two-byte escapes
_ANSI_RE = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"
    r"|\x1b[@-Z\\-_]"
)
_DRIVE_RE = re.compile(r"^[A-Za-z]:$")


def strip_ansi(text: str) -> str:
    return _ANSI_RE.sub("", text)


def truncate_project_path(full_path: str | None) -> str:
    """Reduce a path to ``parent/current``.

    Examples:
        '/Users/dev/repos/org/app' -> 'org/app'
        'C:\\Users\\Dev\\projects\\my-app' -> 'projects/my-app'
        '/' -> 'unknown'
    """
    if not full_path or not full_path.strip():
        return "unknown"
    segments = [s for s in re.split(r"[\\/]+", full_path.strip()) if s and s != "."]
    if not segments:
        return "unknown"
    if len(segments) == 1:
        return "unknown" if _DRIVE_RE.match(segments[0]) else segments[0]
    return "/".join(segments[-2:])


def sanitize_error(error: str) -> str:
    """Strip ANSI codes, normalize newlines and cap length.

    Text over MAX_ERROR_LENGTH is cut at the last newline when that keeps
    more than half of the allowed length, otherwise hard-truncated.
    """
    text = strip_ansi(error).replace("\r\n", "\n")
    if len(text) <= MAX_ERROR_LENGTH:
        return text
    head = text[:MAX_ERROR_LENGTH]
    last_newline = head.rfind("\n")
    if last_newline > MAX_ERROR_LENGTH * 0.5:
        return head[:last_newline] + "\n" + TRUNCATION_MARKER
    return head + TRUNCATION_MARKER


def filter_tool_errors(errors: dict[str, list[str]], excluded: list[str]) -> dict[str, list[str]]:
    """Drop errors from excluded tools and sanitize the rest."""
    filtered = {}
    for tool_name, messages in errors.items():
        if tool_name in excluded:
            logger.debug(f"Excluding errors from tool: {tool_name}")
            continue
        filtered[tool_name] = [sanitize_error(m) for m in messages]
    return filtered


def sanitize_delta(delta: MetricDelta, excluded_tools: list[str] | None = None) -> MetricDelta:
    """Copy of a delta safe to send.

    The error message is dropped when every tool that failed in the turn
    is excluded; otherwise it is sanitized.
    """
    clean = copy.deepcopy(delta)
    if clean.api_error_message is None:
        return clean
    excluded = excluded_tools or []
    failed = [name for name, status in clean.tool_status.items() if status.get("failure", 0) > 0]
    if failed and all(name in excluded for name in failed):
        clean.api_error_message = None
    else:
        clean.api_error_message = sanitize_error(clean.api_error_message)
    return clean


def sanitize_aggregate(aggregate: SessionAggregate, excluded_tools: list[str] | None = None) -> SessionAggregate:
    clean = copy.deepcopy(aggregate)
    clean.repository = truncate_project_path(clean.repository)
    if clean.had_errors and clean.errors:
        clean.errors = filter_tool_errors(clean.errors, excluded_tools or [])
        if not clean.errors:
            clean.had_errors = False
    return clean
