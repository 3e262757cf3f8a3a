"""Per-assistant metrics adapters.

Each adapter knows where an assistant writes its session files, how to
recognise them, and how to turn new content into MetricDelta records.
"""

from agentmeter.metrics.adapters.base import (
    BaseMetricsAdapter,
    MetricsAdapter,
    ParseResult,
    detect_language,
)
from agentmeter.metrics.adapters.claude import ClaudeAdapter
from agentmeter.metrics.adapters.codex import CodexAdapter
from agentmeter.metrics.adapters.gemini import GeminiAdapter

__all__ = [
    "MetricsAdapter",
    "BaseMetricsAdapter",
    "ParseResult",
    "detect_language",
    "ClaudeAdapter",
    "CodexAdapter",
    "GeminiAdapter",
    "get_adapter",
    "get_adapters",
]


def get_adapters() -> list[MetricsAdapter]:
    """Return all available adapters."""
    return [ClaudeAdapter(), GeminiAdapter(), CodexAdapter()]


def get_adapter(agent_name: str) -> MetricsAdapter | None:
    """Adapter for an assistant name, or None if unsupported."""
    for adapter in get_adapters():
        if adapter.agent_name == agent_name:
            return adapter
    return None
