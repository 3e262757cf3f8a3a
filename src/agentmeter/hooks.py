"""Hook entrypoint for assistant lifecycle events.

Assistants that support hooks invoke ``agentmeter hook EVENT`` at session
start, after each turn and at session end. The CLI session id and working
directory arrive through environment variables set by ``agentmeter run``:

    AGENTMETER_SESSION_ID   - CLI session id (required)
    AGENTMETER_WORKING_DIR  - assistant working directory (default: cwd)
    AGENTMETER_AGENT        - assistant name (default: claude)
    AGENTMETER_HOOK_EVENT   - start | turn | end (overridden by the argument)

Hook processes are short-lived: they do one locked extraction pass and exit.
Failures are logged and never reach the assistant.
"""

import asyncio
import logging
import os
from dataclasses import dataclass, field

from agentmeter.config import MetricsConfig
from agentmeter.orchestrator import MetricsOrchestrator
from agentmeter.sync.client import SyncService

logger = logging.getLogger(__name__)

HOOK_EVENTS = {
    "start": "start",
    "session-start": "start",
    "SessionStart": "start",
    "turn": "turn",
    "stop": "turn",
    "Stop": "turn",
    "end": "end",
    "session-end": "end",
    "SessionEnd": "end",
}


@dataclass
class HookContext:
    """Everything one hook invocation needs, passed explicitly."""
    session_id: str
    working_directory: str
    agent_name: str
    event: str
    config: MetricsConfig = field(default_factory=MetricsConfig)

    @classmethod
    def from_env(cls, event: str | None = None, config: MetricsConfig | None = None) -> "HookContext":
        return cls(
            session_id=os.environ.get("AGENTMETER_SESSION_ID", ""),
            working_directory=os.environ.get("AGENTMETER_WORKING_DIR") or os.getcwd(),
            agent_name=os.environ.get("AGENTMETER_AGENT", "claude"),
            event=event or os.environ.get("AGENTMETER_HOOK_EVENT", ""),
            config=config or MetricsConfig(),
        )


async def _dispatch(ctx: HookContext, event: str, sync_service: SyncService | None) -> None:
    orchestrator = MetricsOrchestrator(
        ctx.config,
        ctx.agent_name,
        session_id=ctx.session_id,
        working_directory=ctx.working_directory,
        sync_service=sync_service,
    )
    # The hook's parent is the assistant process
    session = orchestrator.ensure_session(owner_pid=os.getppid())
    if session is None:
        logger.debug(f"Metrics disabled for {ctx.agent_name}, ignoring {event} hook")
        return

    orchestrator.correlate_once()
    if event == "start":
        return
    if event == "turn":
        await orchestrator.extract_and_sync()
        return
    await orchestrator.on_exit(0)


def handle_hook(ctx: HookContext) -> int:
    """Run one hook event.

    Returns:
        0 when the event was handled (including degraded handling), 1 when
        the invocation itself is unusable (no session id, unknown event).
    """
    if not ctx.session_id:
        logger.warning("AGENTMETER_SESSION_ID is not set, hook ignored")
        return 1
    event = HOOK_EVENTS.get(ctx.event)
    if event is None:
        logger.warning(f"Unknown hook event {ctx.event!r}")
        return 1

    async def _run() -> None:
        sync_service = SyncService.from_config(ctx.config)
        try:
            await _dispatch(ctx, event, sync_service)
        finally:
            if sync_service is not None:
                await sync_service.aclose()

    try:
        asyncio.run(_run())
    except Exception as e:
        logger.error(f"Hook {event} failed for {ctx.session_id[:8]}: {e}")
    return 0
