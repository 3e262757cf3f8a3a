"""Local reverse proxy between the assistant and its real backend.

The assistant is pointed at ``http://127.0.0.1:{port}`` with a placeholder
credential. Each request is framed into a ProxyContext, passed through the
interceptor chain (auth and cookie injection, telemetry blocking, event
recording) and forwarded with httpx. The upstream body is streamed back
as-is; hop-by-hop and injected headers are removed from the response.
"""

import asyncio
import contextlib
import json
import logging
import uuid
from http.cookiejar import CookieJar, DefaultCookiePolicy

import httpx
from starlette.applications import Starlette
from starlette.background import BackgroundTask
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.routing import Route

from agentmeter.config import MetricsConfig
from agentmeter.errors import ProxyError
from agentmeter.models import ProxyContext
from agentmeter.proxy.interceptors import INJECTED_HEADERS_KEY, BaseInterceptor

logger = logging.getLogger(__name__)

HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

ALL_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def _request_headers(request: Request) -> dict[str, str]:
    return {
        k: v for k, v in request.headers.items()
        if k.lower() not in HOP_BY_HOP_HEADERS and k.lower() not in ("host", "content-length")
    }


def _response_headers(upstream: httpx.Response, injected: set[str]) -> dict[str, str]:
    return {
        k: v for k, v in upstream.headers.items()
        if k.lower() not in HOP_BY_HOP_HEADERS
        and k.lower() != "content-length"
        and k.lower() not in injected
    }


def _check_body(ctx: ProxyContext) -> None:
    """Note the requested model; malformed JSON is forwarded untouched."""
    content_type = next((v for k, v in ctx.headers.items() if k.lower() == "content-type"), "")
    if not ctx.body or "json" not in content_type:
        return
    try:
        payload = json.loads(ctx.body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning(f"Forwarding malformed JSON body for {ctx.method} {ctx.url} unchanged")
        return
    if isinstance(payload, dict) and isinstance(payload.get("model"), str):
        ctx.metadata["model"] = payload["model"]


def create_proxy_app(
    config: MetricsConfig,
    session_id: str,
    agent_name: str,
    interceptors: list[BaseInterceptor] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Starlette:
    """Create the proxy ASGI app.

    Args:
        config: Supplies the upstream base URL.
        session_id: CLI session every request is tagged with.
        agent_name: Assistant being proxied.
        interceptors: Chain run for every request, in order.
        transport: Optional httpx transport (tests use MockTransport).

    Raises:
        ProxyError: If no upstream URL is configured.
    """
    if not config.upstream_url:
        raise ProxyError("AGENTMETER_UPSTREAM_URL is required to run the proxy")

    upstream_base = config.upstream_url.rstrip("/")
    chain = list(interceptors or [])
    client_holder: dict[str, httpx.AsyncClient] = {}

    def get_client() -> httpx.AsyncClient:
        if "client" not in client_holder:
            # The assistant's own timeouts apply; the proxy adds none. The jar
            # accepts no domain, so one request's Set-Cookie never rides on the next.
            client_holder["client"] = httpx.AsyncClient(
                timeout=None,
                transport=transport,
                cookies=CookieJar(policy=DefaultCookiePolicy(allowed_domains=[])),
            )
        return client_holder["client"]

    async def on_shutdown() -> None:
        client = client_holder.pop("client", None)
        if client is not None:
            await client.aclose()

    async def finish(ctx: ProxyContext, status: int, headers: dict[str, str]) -> None:
        for interceptor in chain:
            await interceptor.on_response(ctx, status, headers)

    async def proxy(request: Request) -> Response:
        path = request.url.path
        if request.url.query:
            path = f"{path}?{request.url.query}"

        ctx = ProxyContext(
            request_id=uuid.uuid4().hex,
            session_id=session_id,
            agent_name=agent_name,
            method=request.method,
            url=path,
            headers=_request_headers(request),
            body=await request.body(),
        )
        _check_body(ctx)

        for interceptor in chain:
            local = await interceptor.on_request(ctx)
            if local is not None:
                await finish(ctx, local.status_code, dict(local.headers))
                return local

        ctx.target_url = ctx.target_url or f"{upstream_base}{ctx.url}"
        client = get_client()
        try:
            upstream_request = client.build_request(
                ctx.method, ctx.target_url, headers=ctx.headers, content=ctx.body or None
            )
            upstream = await client.send(upstream_request, stream=True)
        except httpx.TimeoutException as e:
            ctx.metadata["error_status"] = 504
            logger.warning(f"Upstream timeout for {ctx.method} {ctx.url}: {e}")
            for interceptor in chain:
                await interceptor.on_error(ctx, e)
            return JSONResponse({"error": "upstream timeout", "detail": str(e)}, status_code=504)
        except httpx.HTTPError as e:
            ctx.metadata["error_status"] = 502
            logger.warning(f"Upstream unreachable for {ctx.method} {ctx.url}: {e}")
            for interceptor in chain:
                await interceptor.on_error(ctx, e)
            return JSONResponse({"error": "upstream unavailable", "detail": str(e)}, status_code=502)

        headers = _response_headers(upstream, ctx.metadata.get(INJECTED_HEADERS_KEY, set()))
        await finish(ctx, upstream.status_code, headers)
        return StreamingResponse(
            upstream.aiter_raw(),
            status_code=upstream.status_code,
            headers=headers,
            background=BackgroundTask(upstream.aclose),
        )

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette):
        yield
        await on_shutdown()

    # The path converter also matches "/"
    routes = [Route("/{path:path}", proxy, methods=ALL_METHODS)]
    return Starlette(routes=routes, lifespan=lifespan)


class ProxyServer:
    """Runs the proxy app under uvicorn inside the current event loop."""

    def __init__(self, app: Starlette, host: str = "127.0.0.1", port: int = 0):
        self.app = app
        self.host = host
        self.port = port
        self._server = None
        self._task: asyncio.Task | None = None

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    async def start(self) -> str:
        """Bind (port 0 picks a free port) and return the base URL."""
        import uvicorn

        config = uvicorn.Config(self.app, host=self.host, port=self.port, log_level="warning", lifespan="on")
        self._server = uvicorn.Server(config)
        self._task = asyncio.create_task(self._server.serve())

        while not self._server.started:
            if self._task.done():
                exc = self._task.exception() if not self._task.cancelled() else None
                raise ProxyError(f"Proxy failed to start on {self.host}:{self.port}: {exc}")
            await asyncio.sleep(0.01)

        sockets = [s for server in self._server.servers for s in server.sockets]
        if sockets:
            self.port = sockets[0].getsockname()[1]
        logger.info(f"Proxy listening on {self.base_url}")
        return self.base_url

    async def stop(self) -> None:
        if self._server is None or self._task is None:
            return
        self._server.should_exit = True
        await self._task
        self._server = None
        self._task = None
        logger.debug("Proxy stopped")
