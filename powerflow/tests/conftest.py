"""
Shared test fixtures for poller tests.

Provides environment variable fixtures for PollerSettings configuration tests.
All poller env vars are cleaned before each test to ensure isolation.

CHANGELOG:
- 2026-10-16: Initial creation

TODO:
- None
"""

from __future__ import annotations

from pathlib import Path

import pytest

# All PollerSettings environment variable names, used for cleanup.
_ALL_POLLER_ENV_VARS = (
    "SOLAREDGE_SITE_ID",
    "SOLAREDGE_API_KEY",
    "SOLAREDGE_BASE_URL",
    "INSTANCE_ID",
    "CYCLE_TIMEOUT_S",
    "HTTP_TIMEOUT_S",
    "CHARGE_EDGE",
    "LOAD_MODE",
    "PUBLISH_BATTERY_SOC",
    "PUBLISH_LAST_UPDATE_TIME",
    "STORE_BACKEND",
    "STORE_PATH",
    "REDIS_URL",
    "HEALTH_PATH",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def _clean_poller_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Remove all poller env vars and isolate from .env files before each test.

    Changes working directory to tmp_path so no .env file is accidentally
    loaded by Pydantic BaseSettings.
    """
    for var in _ALL_POLLER_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture()
def env_vars_full(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> dict[str, str]:
    """Set every environment variable PollerSettings reads.

    Returns the dict of env var names to values for assertion convenience.
    """
    env = {
        "SOLAREDGE_SITE_ID": "123456",
        "SOLAREDGE_API_KEY": "ABCD1234SECRETKEY",
        "SOLAREDGE_BASE_URL": "https://monitoring.example.com/",
        "INSTANCE_ID": "2",
        "CYCLE_TIMEOUT_S": "20",
        "HTTP_TIMEOUT_S": "5",
        "CHARGE_EDGE": "pv",
        "LOAD_MODE": "node",
        "PUBLISH_BATTERY_SOC": "false",
        "PUBLISH_LAST_UPDATE_TIME": "false",
        "STORE_BACKEND": "sqlite",
        "STORE_PATH": str(tmp_path / "states.db"),
        "HEALTH_PATH": str(tmp_path / "health.json"),
        "LOG_LEVEL": "debug",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env


@pytest.fixture()
def env_vars_required_only(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set only the site id and API key.

    Everything else should fall back to its default.
    """
    env = {
        "SOLAREDGE_SITE_ID": "654321",
        "SOLAREDGE_API_KEY": "WXYZ9876OTHERKEY",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env
