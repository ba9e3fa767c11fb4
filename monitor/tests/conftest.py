"""
Shared test fixtures for the monitoring engine tests.

All monitor env vars are cleaned before each test, and the working
directory is moved to tmp_path so no stray .env file is loaded by
MonitorSettings.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

from pathlib import Path

import pytest

# All MonitorSettings environment variable names, used for cleanup.
_ALL_MONITOR_ENV_VARS = (
    "DEYE_BASE_URL",
    "DEYE_APP_ID",
    "DEYE_APP_SECRET",
    "DEYE_EMAIL",
    "DEYE_PASSWORD",
    "SMTP_HOST",
    "SMTP_PORT",
    "SMTP_USER",
    "SMTP_PASSWORD",
    "RECIPIENT_EMAIL",
    "LLM_PROVIDER",
    "OPENAI_API_KEY",
    "OPENAI_MODEL",
    "ANTHROPIC_API_KEY",
    "ANTHROPIC_MODEL",
    "OLLAMA_URL",
    "OLLAMA_MODEL",
    "MONITOR_INTERVAL_S",
    "ALERT_COOLDOWN_S",
    "STATION_PAGE_SIZE",
    "HTTP_TIMEOUT_S",
    "HISTORY_RETENTION_DAYS",
    "STORAGE_PATH",
    "HEALTH_PATH",
    "TRIGGER_TOKEN",
)


@pytest.fixture(autouse=True)
def _clean_monitor_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Remove all monitor env vars and isolate from .env files before each test."""
    for var in _ALL_MONITOR_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture()
def env_vars_full(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set a complete, valid environment for MonitorSettings.

    Returns the dict of env var names to values for assertion convenience.
    """
    env = {
        "DEYE_BASE_URL": "https://eu1-developer.deyecloud.com/",
        "DEYE_APP_ID": "app-123",
        "DEYE_APP_SECRET": "secret-abc",
        "DEYE_EMAIL": "owner@example.com",
        "DEYE_PASSWORD": "hunter2",
        "SMTP_HOST": "smtp.example.com",
        "SMTP_PORT": "587",
        "SMTP_USER": "alerts@example.com",
        "SMTP_PASSWORD": "mail-pass",
        "RECIPIENT_EMAIL": "installer@example.com",
        "LLM_PROVIDER": "Anthropic",
        "ANTHROPIC_API_KEY": "sk-ant-test",
        "MONITOR_INTERVAL_S": "120",
        "ALERT_COOLDOWN_S": "600",
        "STATION_PAGE_SIZE": "20",
        "HTTP_TIMEOUT_S": "10",
        "HISTORY_RETENTION_DAYS": "14",
        "STORAGE_PATH": "/data/monitor.db",
        "HEALTH_PATH": "/data/health.json",
        "TRIGGER_TOKEN": "trigger-xyz",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env
