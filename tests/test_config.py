"""Tests for agentmeter configuration."""

from pathlib import Path

from agentmeter.config import MetricsConfig


class TestMetricsConfig:
    """Tests for MetricsConfig."""

    def test_defaults(self):
        config = MetricsConfig()
        assert config.storage_dir == Path.home() / ".agentmeter"
        assert config.correlation_delays == [0.5, 1.0, 2.0, 4.0, 8.0]
        assert config.debounce_delay == 5.0
        assert config.watermark_ttl == 86400
        assert config.lock_stale_after == 30.0
        assert config.sync_enabled is False
        assert config.blocked_endpoints == ["/api/event_logging/batch"]

    def test_from_environment(self, monkeypatch, tmp_path):
        monkeypatch.setenv("AGENTMETER_STORAGE_DIR", str(tmp_path / "state"))
        monkeypatch.setenv("AGENTMETER_API_URL", "https://collector.test")
        monkeypatch.setenv("AGENTMETER_CORRELATION_DELAYS", "[0.1, 0.2]")
        monkeypatch.setenv("AGENTMETER_ENABLED_PROVIDERS", '["anthropic"]')
        monkeypatch.setenv("AGENTMETER_DEBOUNCE_DELAY", "1.5")

        config = MetricsConfig()

        assert config.storage_dir == tmp_path / "state"
        assert config.sync_enabled is True
        assert config.correlation_delays == [0.1, 0.2]
        assert config.debounce_delay == 1.5
        assert config.is_enabled_for("anthropic") is True
        assert config.is_enabled_for("openai") is False

    def test_all_providers_enabled_by_default(self):
        assert MetricsConfig().is_enabled_for("google") is True

    def test_derived_directories(self, tmp_path):
        config = MetricsConfig(storage_dir=tmp_path)
        config.ensure_dirs()

        assert config.sessions_dir == tmp_path / "sessions"
        assert config.watermarks_dir == tmp_path / "watermarks"
        assert config.metrics_dir == tmp_path / "metrics"
        assert config.events_dir == tmp_path / "events"
        assert all(p.is_dir() for p in (
            config.sessions_dir, config.watermarks_dir, config.metrics_dir, config.events_dir
        ))
