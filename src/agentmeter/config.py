"""Configuration for agentmeter.

Environment Variables:
    - AGENTMETER_STORAGE_DIR: Root for session, watermark, delta and event files
      (default: ~/.agentmeter)
    - AGENTMETER_API_URL: Metrics collector base URL. Sync is disabled when unset.
    - AGENTMETER_API_KEY: Bearer token for the metrics collector
    - AGENTMETER_UPSTREAM_URL: Real backend the local proxy forwards to
    - AGENTMETER_UPSTREAM_API_KEY: Credential injected by the proxy

    Timing knobs (seconds):
    - AGENTMETER_DEBOUNCE_DELAY, AGENTMETER_POLL_INTERVAL
    - AGENTMETER_WATERMARK_TTL, AGENTMETER_LOCK_STALE_AFTER
    - AGENTMETER_CORRELATION_DELAYS (JSON list, e.g. "[0.5, 1, 2, 4, 8]")
"""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class MetricsConfig(BaseSettings):
    """agentmeter configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="AGENTMETER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Storage paths
    storage_dir: Path = Field(
        default=Path.home() / ".agentmeter",
        description="Base directory for sessions, watermarks, deltas and proxy events",
    )

    # Providers for which metrics are collected. Empty list = all providers.
    enabled_providers: list[str] = Field(default_factory=list)

    # =========================================================================
    # Correlation
    # =========================================================================
    correlation_delays: list[float] = Field(
        default=[0.5, 1.0, 2.0, 4.0, 8.0],
        description="Backoff schedule between correlation attempts",
    )
    clock_skew_tolerance: float = Field(
        default=2.0,
        description="Seconds subtracted from spawn time when filtering candidates",
    )

    # =========================================================================
    # Monitoring
    # =========================================================================
    debounce_delay: float = Field(default=5.0, description="Quiescence window before extraction")
    poll_interval: float = Field(default=5.0, description="Polling fallback interval")

    # =========================================================================
    # Watermarks & locks
    # =========================================================================
    watermark_ttl: float = Field(default=24 * 3600, description="Watermark time-to-live")
    lock_stale_after: float = Field(default=30.0, description="Lock file staleness threshold")

    # =========================================================================
    # Remote sync
    # =========================================================================
    api_url: str | None = Field(default=None, description="Metrics collector base URL")
    api_key: str | None = Field(default=None, description="Metrics collector API key")
    sync_batch_size: int = Field(default=50, description="Deltas per collector request")
    sync_max_attempts: int = Field(default=3, description="Attempts before a delta is given up")
    sync_timeout: float = Field(default=30.0, description="Collector request timeout")
    exclude_errors_from_tools: list[str] = Field(
        default_factory=list,
        description="Tool names whose error text is dropped before sync",
    )

    # =========================================================================
    # Proxy
    # =========================================================================
    proxy_host: str = Field(default="127.0.0.1", description="Local proxy bind address")
    proxy_port: int = Field(default=0, description="Local proxy port (0 = ephemeral)")
    upstream_url: str | None = Field(default=None, description="Real backend base URL")
    upstream_api_key: str | None = Field(default=None, description="Credential injected upstream")
    upstream_cookies: dict[str, str] = Field(default_factory=dict)
    auth_header: str = Field(default="Authorization", description="Injected auth header name")
    auth_value_format: str = Field(default="Bearer {key}", description="Injected auth header value")
    blocked_endpoints: list[str] = Field(
        default=["/api/event_logging/batch"],
        description="Paths answered locally with 200 instead of being forwarded",
    )

    @property
    def sessions_dir(self) -> Path:
        """Per-session metadata files and lock files."""
        return self.storage_dir / "sessions"

    @property
    def watermarks_dir(self) -> Path:
        return self.storage_dir / "watermarks"

    @property
    def metrics_dir(self) -> Path:
        """Per-session JSONL delta logs."""
        return self.storage_dir / "metrics"

    @property
    def events_dir(self) -> Path:
        """Per-session proxy request/response event logs."""
        return self.storage_dir / "events"

    @property
    def sync_enabled(self) -> bool:
        return bool(self.api_url)

    def is_enabled_for(self, provider: str) -> bool:
        """Check whether metrics collection runs for a provider."""
        if not self.enabled_providers:
            return True
        return provider in self.enabled_providers

    def ensure_dirs(self) -> None:
        """Ensure all required directories exist."""
        for path in (self.sessions_dir, self.watermarks_dir, self.metrics_dir, self.events_dir):
            path.mkdir(parents=True, exist_ok=True)
