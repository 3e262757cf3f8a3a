"""Request interceptors for the local proxy.

Interceptors run in list order for each request. ``on_request`` may edit
the ProxyContext (headers, body, target) or return a response to answer the
request locally; ``on_response`` and ``on_error`` observe the outcome.
"""

import logging
import time

from starlette.responses import JSONResponse, Response

from agentmeter.models import ProxyContext
from agentmeter.proxy.events import ProxyEventLog

logger = logging.getLogger(__name__)

INJECTED_HEADERS_KEY = "injected_headers"


def _set_header(ctx: ProxyContext, name: str, value: str) -> None:
    """Replace a header case-insensitively and remember it was injected."""
    for existing in [k for k in ctx.headers if k.lower() == name.lower()]:
        del ctx.headers[existing]
    ctx.headers[name] = value
    ctx.metadata.setdefault(INJECTED_HEADERS_KEY, set()).add(name.lower())


class BaseInterceptor:
    """No-op hooks; subclasses override what they need."""

    name = "base"

    async def on_request(self, ctx: ProxyContext) -> Response | None:
        return None

    async def on_response(self, ctx: ProxyContext, status: int, headers: dict[str, str]) -> None:
        return None

    async def on_error(self, ctx: ProxyContext, error: Exception) -> None:
        return None


class EndpointBlocker(BaseInterceptor):
    """Answers telemetry endpoints locally with 200 instead of forwarding."""

    name = "endpoint-blocker"

    def __init__(self, blocked_paths: list[str]):
        self.blocked_paths = [p.rstrip("/") for p in blocked_paths]

    def is_blocked(self, path: str) -> bool:
        path = path.split("?", 1)[0].rstrip("/")
        return any(path == p or path.endswith(p) for p in self.blocked_paths)

    async def on_request(self, ctx: ProxyContext) -> Response | None:
        path = ctx.url.split("?", 1)[0]
        if self.is_blocked(path):
            logger.debug(f"Blocked {ctx.method} {path} for {ctx.session_id[:8]}")
            ctx.metadata["blocked"] = True
            return JSONResponse({"success": True}, status_code=200)
        return None


class AuthHeaderInjector(BaseInterceptor):
    """Swaps the placeholder credential the assistant sends for the real one."""

    name = "auth-header"

    def __init__(self, header: str, value: str, placeholder_headers: tuple[str, ...] = ("x-api-key",)):
        self.header = header
        self.value = value
        self.placeholder_headers = placeholder_headers

    async def on_request(self, ctx: ProxyContext) -> Response | None:
        for name in [k for k in ctx.headers if k.lower() in self.placeholder_headers]:
            if name.lower() != self.header.lower():
                del ctx.headers[name]
        _set_header(ctx, self.header, self.value)
        return None


class CookieInjector(BaseInterceptor):
    """Adds configured cookies to every upstream request."""

    name = "cookies"

    def __init__(self, cookies: dict[str, str]):
        self.cookies = cookies

    async def on_request(self, ctx: ProxyContext) -> Response | None:
        if not self.cookies:
            return None
        existing = next((v for k, v in ctx.headers.items() if k.lower() == "cookie"), "")
        injected = "; ".join(f"{k}={v}" for k, v in self.cookies.items())
        _set_header(ctx, "Cookie", f"{existing}; {injected}" if existing else injected)
        return None


class EventRecorder(BaseInterceptor):
    """Writes request/response boundaries to the session's event log."""

    name = "event-recorder"

    def __init__(self, event_log: ProxyEventLog):
        self.event_log = event_log

    async def on_request(self, ctx: ProxyContext) -> Response | None:
        self.event_log.record_request(ctx.request_id, ctx.method, ctx.url)
        return None

    async def on_response(self, ctx: ProxyContext, status: int, headers: dict[str, str]) -> None:
        self.event_log.record_response(
            ctx.request_id, ctx.method, ctx.url, status, time.time() - ctx.start_time
        )

    async def on_error(self, ctx: ProxyContext, error: Exception) -> None:
        status = ctx.metadata.get("error_status", 502)
        self.event_log.record_response(
            ctx.request_id, ctx.method, ctx.url, status, time.time() - ctx.start_time
        )


def default_interceptors(config, event_log: ProxyEventLog | None = None) -> list[BaseInterceptor]:
    """Interceptor chain built from configuration.

    The recorder goes first so blocked requests are logged too.
    """
    chain: list[BaseInterceptor] = []
    if event_log is not None:
        chain.append(EventRecorder(event_log))
    if config.blocked_endpoints:
        chain.append(EndpointBlocker(config.blocked_endpoints))
    if config.upstream_api_key:
        chain.append(AuthHeaderInjector(
            config.auth_header, config.auth_value_format.format(key=config.upstream_api_key)
        ))
    if config.upstream_cookies:
        chain.append(CookieInjector(config.upstream_cookies))
    return chain
