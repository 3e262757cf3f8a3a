"""Local reverse proxy that injects credentials and records request events."""

from agentmeter.proxy.events import ProxyEventLog
from agentmeter.proxy.interceptors import (
    AuthHeaderInjector,
    BaseInterceptor,
    CookieInjector,
    EndpointBlocker,
    EventRecorder,
    default_interceptors,
)
from agentmeter.proxy.server import ProxyServer, create_proxy_app

__all__ = [
    "AuthHeaderInjector",
    "BaseInterceptor",
    "CookieInjector",
    "EndpointBlocker",
    "EventRecorder",
    "ProxyEventLog",
    "ProxyServer",
    "create_proxy_app",
    "default_interceptors",
]
