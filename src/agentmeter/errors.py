"""Exception types for agentmeter."""


class AgentMeterError(Exception):
    """Base exception for agentmeter errors."""

    pass


class AdapterError(AgentMeterError):
    """A session file could not be parsed at all."""

    def __init__(self, message: str, path: str | None = None):
        super().__init__(message)
        self.path = path


class SyncError(AgentMeterError):
    """Collector request failed."""

    def __init__(self, message: str, status_code: int | None = None, retryable: bool = True):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class ProxyError(AgentMeterError):
    """Local proxy could not be started or configured."""

    pass
