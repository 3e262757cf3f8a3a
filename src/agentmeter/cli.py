"""CLI interface for agentmeter.

Runs an AI coding assistant behind a local proxy while collecting
per-turn metrics from its session files, and manages the collected data.
"""

import asyncio
import logging
import os
import sys
from datetime import datetime
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from agentmeter.config import MetricsConfig
from agentmeter.errors import AgentMeterError, ProxyError, SyncError
from agentmeter.hooks import HookContext, handle_hook
from agentmeter.metrics.delta_log import DeltaLog
from agentmeter.metrics.session_store import SessionStore
from agentmeter.metrics.watermark import WatermarkStore
from agentmeter.orchestrator import MetricsOrchestrator
from agentmeter.proxy import ProxyEventLog, ProxyServer, create_proxy_app, default_interceptors
from agentmeter.sync.client import SyncService

console = Console()
logger = logging.getLogger(__name__)

# Environment variable each assistant reads its API base URL from
BASE_URL_ENV = {
    "claude": "ANTHROPIC_BASE_URL",
    "gemini": "GOOGLE_GEMINI_BASE_URL",
    "codex": "OPENAI_BASE_URL",
}

# Credential variable that gets a placeholder; the proxy injects the real one
API_KEY_ENV = {
    "claude": "ANTHROPIC_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "codex": "OPENAI_API_KEY",
}

PROXY_PLACEHOLDER_KEY = "agentmeter-proxy"


def setup_logging(verbose: bool) -> None:
    """Set up logging configuration."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def handle_error(e: Exception) -> None:
    """Handle and display errors nicely."""
    if isinstance(e, SyncError):
        console.print(f"[red]Sync Error:[/red] {e}")
        console.print("[dim]Check AGENTMETER_API_URL and AGENTMETER_API_KEY.[/dim]")
    elif isinstance(e, ProxyError):
        console.print(f"[red]Proxy Error:[/red] {e}")
        console.print("[dim]Check AGENTMETER_UPSTREAM_URL.[/dim]")
    elif isinstance(e, AgentMeterError):
        console.print(f"[red]Error:[/red] {e}")
    else:
        console.print(f"[red]Unexpected Error:[/red] {e}")
    sys.exit(1)


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.option(
    "--storage-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Override AGENTMETER_STORAGE_DIR",
)
@click.pass_context
def main(ctx: click.Context, verbose: bool, storage_dir: Path | None) -> None:
    """agentmeter - usage metrics for AI coding assistants.

    Configuration:
      AGENTMETER_STORAGE_DIR   - Local state (default: ~/.agentmeter)
      AGENTMETER_API_URL       - Metrics collector (sync disabled when unset)
      AGENTMETER_API_KEY       - Collector API key
      AGENTMETER_UPSTREAM_URL  - Backend the local proxy forwards to
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["config"] = MetricsConfig(storage_dir=storage_dir) if storage_dir else MetricsConfig()
    setup_logging(verbose)


def get_config(ctx: click.Context) -> MetricsConfig:
    return ctx.obj["config"]


# =============================================================================
# Run Command
# =============================================================================


def build_child_env(
    agent: str,
    session_id: str,
    working_directory: str,
    proxy_url: str | None = None,
    inject_placeholder_key: bool = False,
    base_env: dict[str, str] | None = None,
) -> dict[str, str]:
    """Environment for the assistant process."""
    env = dict(os.environ if base_env is None else base_env)
    env["AGENTMETER_SESSION_ID"] = session_id
    env["AGENTMETER_WORKING_DIR"] = working_directory
    env["AGENTMETER_AGENT"] = agent
    if proxy_url:
        if agent in BASE_URL_ENV:
            env[BASE_URL_ENV[agent]] = proxy_url
        if inject_placeholder_key and agent in API_KEY_ENV:
            env[API_KEY_ENV[agent]] = PROXY_PLACEHOLDER_KEY
    return env


async def _finish_correlation(task: asyncio.Task) -> None:
    if not task.done():
        task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        logger.debug("Correlation still running at exit, finishing at teardown")
    except Exception as e:
        logger.error(f"Correlation failed: {e}")


async def run_agent(config: MetricsConfig, agent: str, args: list[str], spawn=None) -> int:
    """Run the assistant to completion with metrics collection around it.

    Returns:
        The assistant's exit code.
    """
    spawn = spawn or asyncio.create_subprocess_exec

    try:
        await MetricsOrchestrator.recover_sessions(config)
    except Exception as e:
        logger.error(f"Session recovery failed: {e}")

    sync_service = SyncService.from_config(config)
    orchestrator = MetricsOrchestrator(config, agent, sync_service=sync_service)
    try:
        orchestrator.before_spawn()
    except Exception as e:
        # No session document means the later stages are no-ops
        logger.error(f"Metrics setup failed, running {agent} without metrics: {e}")

    proxy = None
    exit_code = 1
    try:
        proxy_url = None
        if config.upstream_url:
            config.ensure_dirs()
            app = create_proxy_app(
                config, orchestrator.session_id, agent, default_interceptors(config, orchestrator.event_log)
            )
            proxy = ProxyServer(app, config.proxy_host, config.proxy_port)
            proxy_url = await proxy.start()

        env = build_child_env(
            agent,
            orchestrator.session_id,
            orchestrator.working_directory,
            proxy_url=proxy_url,
            inject_placeholder_key=bool(config.upstream_api_key),
        )
        try:
            process = await spawn(agent, *args, env=env, cwd=orchestrator.working_directory)
        except FileNotFoundError as e:
            raise AgentMeterError(f"Cannot start {agent}: {e}") from e

        correlation = asyncio.create_task(orchestrator.after_spawn())
        exit_code = await process.wait()
        await _finish_correlation(correlation)
    finally:
        await orchestrator.on_exit(exit_code)
        if proxy is not None:
            await proxy.stop()
        if sync_service is not None:
            await sync_service.aclose()
    return exit_code


@main.command(context_settings={"ignore_unknown_options": True, "allow_interspersed_args": False})
@click.argument("agent")
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
@click.pass_context
def run(ctx: click.Context, agent: str, args: tuple[str, ...]) -> None:
    """Run AGENT (claude, gemini, codex) with metrics collection.

    Arguments after AGENT are passed to the assistant unchanged.

    Example:
        agentmeter run claude --model sonnet
    """
    try:
        exit_code = asyncio.run(run_agent(get_config(ctx), agent, list(args)))
    except AgentMeterError as e:
        handle_error(e)
    sys.exit(exit_code)


# =============================================================================
# Hook Command
# =============================================================================


@main.command()
@click.argument("event")
@click.pass_context
def hook(ctx: click.Context, event: str) -> None:
    """Handle an assistant lifecycle hook (start, turn, end)."""
    hook_ctx = HookContext.from_env(event, config=get_config(ctx))
    sys.exit(handle_hook(hook_ctx))


# =============================================================================
# Sync Command
# =============================================================================


async def _sync_sessions(config: MetricsConfig, session_ids: list[str]) -> dict[str, tuple[int, int, int]]:
    service = SyncService.from_config(config)
    if service is None:
        raise SyncError("AGENTMETER_API_URL is not set, nothing to sync to")
    results = {}
    try:
        for session_id in session_ids:
            report = await service.sync_pending(session_id)
            results[session_id] = (len(report.synced), len(report.retrying), len(report.gave_up))
    finally:
        await service.aclose()
    return results


@main.command()
@click.argument("session_id", required=False)
@click.pass_context
def sync(ctx: click.Context, session_id: str | None) -> None:
    """Send pending deltas to the collector (all sessions by default)."""
    config = get_config(ctx)
    try:
        if session_id:
            session_ids = [session_id]
        else:
            session_ids = [s.session_id for s in SessionStore(config.sessions_dir).list_sessions()]

        with console.status("Syncing metrics..."):
            results = asyncio.run(_sync_sessions(config, session_ids))

        synced = sum(r[0] for r in results.values())
        retrying = sum(r[1] for r in results.values())
        gave_up = sum(r[2] for r in results.values())
        console.print(f"[green]Synced {synced} deltas[/green] from {len(results)} sessions")
        if retrying:
            console.print(f"[yellow]{retrying} deltas will be retried[/yellow]")
        if gave_up:
            console.print(f"[red]{gave_up} deltas failed permanently[/red]")

    except AgentMeterError as e:
        handle_error(e)


# =============================================================================
# Status Command
# =============================================================================


def _format_time(ts: float | None) -> str:
    if not ts:
        return "-"
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M")


@main.command()
@click.option("--limit", "-n", default=20, help="Number of sessions to show")
@click.pass_context
def status(ctx: click.Context, limit: int) -> None:
    """Show recent metrics sessions."""
    config = get_config(ctx)
    sessions = SessionStore(config.sessions_dir).list_sessions()[:limit]
    if not sessions:
        console.print("[yellow]No metrics sessions recorded yet[/yellow]")
        return

    table = Table(title="agentmeter Sessions")
    table.add_column("Session", style="cyan")
    table.add_column("Agent")
    table.add_column("Started")
    table.add_column("Status", style="green")
    table.add_column("Correlation")
    table.add_column("Deltas", justify="right")
    table.add_column("Synced", justify="right")
    table.add_column("Pending", justify="right")
    table.add_column("Failed", justify="right")

    for session in sessions:
        counts = DeltaLog(config.metrics_dir, session.session_id).counts()
        table.add_row(
            session.session_id[:8],
            session.agent_name,
            _format_time(session.start_time),
            session.status.value,
            session.correlation.status.value,
            str(session.sync.total_deltas if session.sync else 0),
            str(counts.get("synced", 0)),
            str(counts.get("pending", 0)),
            str(counts.get("failed", 0)),
        )

    console.print(table)
    if not config.sync_enabled:
        console.print("[dim]Sync disabled (AGENTMETER_API_URL not set)[/dim]")


# =============================================================================
# Proxy Command
# =============================================================================


@main.command()
@click.option("--upstream", "-u", envvar="AGENTMETER_UPSTREAM_URL", required=True, help="Backend base URL")
@click.option("--host", default=None, help="Bind address (default: AGENTMETER_PROXY_HOST)")
@click.option("--port", "-p", type=int, default=None, help="Port (default: AGENTMETER_PROXY_PORT)")
@click.option("--agent", default="claude", help="Assistant name recorded in events")
@click.option("--session-id", default="standalone", help="Session id recorded in events")
@click.pass_context
def proxy(
    ctx: click.Context,
    upstream: str,
    host: str | None,
    port: int | None,
    agent: str,
    session_id: str,
) -> None:
    """Run the local proxy in the foreground."""
    import uvicorn

    config = get_config(ctx).model_copy(update={"upstream_url": upstream})
    host = host or config.proxy_host
    port = port if port is not None else config.proxy_port
    try:
        config.ensure_dirs()
        event_log = ProxyEventLog(config.events_dir, session_id)
        app = create_proxy_app(config, session_id, agent, default_interceptors(config, event_log))
    except AgentMeterError as e:
        handle_error(e)

    console.print(f"[green]Proxying[/green] http://{host}:{port} -> {upstream}")
    uvicorn.run(app, host=host, port=port, log_level="info" if ctx.obj["verbose"] else "warning")


# =============================================================================
# Maintenance Commands
# =============================================================================


@main.command()
@click.pass_context
def recover(ctx: click.Context) -> None:
    """Finalize sessions whose assistant process is gone."""
    config = get_config(ctx)

    async def _recover() -> list[str]:
        service = SyncService.from_config(config)
        try:
            return await MetricsOrchestrator.recover_sessions(config, sync_service=service)
        finally:
            if service is not None:
                await service.aclose()

    recovered = asyncio.run(_recover())
    if recovered:
        console.print(f"[green]Recovered {len(recovered)} sessions[/green]")
        for session_id in recovered:
            console.print(f"  {session_id}")
    else:
        console.print("[dim]No abandoned sessions[/dim]")


@main.command()
@click.option("--days", default=7, help="Remove session files older than this")
@click.pass_context
def cleanup(ctx: click.Context, days: int) -> None:
    """Remove expired watermarks and old session files."""
    config = get_config(ctx)
    watermarks = WatermarkStore(config.watermarks_dir, config.watermark_ttl).cleanup_expired()
    sessions = SessionStore(config.sessions_dir).cleanup_old(days)
    console.print(f"Removed {watermarks} expired watermarks and {sessions} old sessions")


if __name__ == "__main__":
    main()
