"""Pytest configuration for agentmeter tests."""

import os

import pytest


@pytest.fixture(autouse=True)
def clean_agentmeter_env(monkeypatch, tmp_path):
    """Clear agentmeter environment variables and prevent .env loading for test isolation."""
    for var in [k for k in os.environ if k.startswith("AGENTMETER_")]:
        monkeypatch.delenv(var, raising=False)

    # Assistant base URLs would leak into spawned-process env assertions
    for var in ("ANTHROPIC_BASE_URL", "GOOGLE_GEMINI_BASE_URL", "OPENAI_BASE_URL"):
        monkeypatch.delenv(var, raising=False)

    # Change to temp directory to avoid loading local .env file
    monkeypatch.chdir(tmp_path)

    yield


@pytest.fixture
def config(tmp_path):
    """MetricsConfig rooted in a temp storage dir with fast timings."""
    from agentmeter.config import MetricsConfig

    cfg = MetricsConfig(
        storage_dir=tmp_path / "storage",
        correlation_delays=[0.5, 1.0, 2.0, 4.0, 8.0],
        debounce_delay=0.05,
        poll_interval=0.05,
    )
    cfg.ensure_dirs()
    return cfg
