"""Shared test fixtures for clawfleet."""

from __future__ import annotations

import pytest
from pydantic import SecretStr

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, not fixtures - importable by test files)
# ---------------------------------------------------------------------------

# cached_property values are injected through __dict__; model_construct ignores them.
_CACHED_PROPERTY_NAMES = frozenset({"project_root", "data_dir", "db_path", "instances_dir"})

TEST_ENCRYPTION_KEY = "test-encryption-key"


def make_settings(**overrides):
    """Settings for a test run: remote credentials, an encryption key and a public URL preset.

    Accepts both model fields (deploy, remote, etc.) and cached property
    overrides (data_dir, instances_dir, ...).

    Usage::

        s = make_settings(instances_dir=tmp_path)
        s = make_settings(deploy=DeployConfig(backend="local"))
    """
    from clawfleet.config import (
        DeployConfig,
        LocalConfig,
        LoggingConfig,
        PortsConfig,
        RemoteConfig,
        RuntimeConfig,
        SecretsConfig,
        ServiceConfig,
        Settings,
    )

    cached = {k: overrides.pop(k) for k in list(overrides) if k in _CACHED_PROPERTY_NAMES}

    defaults = {
        "deploy": DeployConfig(),
        "remote": RemoteConfig(
            token=SecretStr("test-token"),
            project_id="proj-1",
            environment_id="env-1",
        ),
        "local": LocalConfig(),
        "runtime": RuntimeConfig(),
        "ports": PortsConfig(),
        "service": ServiceConfig(public_url="https://fleet.example.com"),
        "secrets": SecretsConfig(encryption_key=SecretStr(TEST_ENCRYPTION_KEY)),
        "logging": LoggingConfig(),
        "plugins": {},
    }
    defaults.update(overrides)
    s = Settings.model_construct(**defaults)

    for key, value in cached.items():
        s.__dict__[key] = value

    return s


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch):
    """Each test starts from pure defaults: no config.toml, no .env."""
    monkeypatch.setattr("clawfleet.config._settings", make_settings())


@pytest.fixture(autouse=True)
def _reset_provider():
    from clawfleet.deploy import reset_provider

    reset_provider()
    yield
    reset_provider()


@pytest.fixture(autouse=True, scope="session")
def _close_test_database():
    """Stop the last aiosqlite worker thread when the session ends.

    Uses ``stop()`` + thread join rather than ``await close()`` because the
    connection was created on a function-scoped event loop.
    """
    yield
    import clawfleet.state.connection as db_conn

    if db_conn._db is not None:
        db_conn._db.stop()
        if db_conn._db._thread is not None and db_conn._db._thread.is_alive():
            db_conn._db._thread.join(timeout=2)
        db_conn._db = None


# ---------------------------------------------------------------------------
# Reusable fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def db():
    from clawfleet.state import _init_test_database

    await _init_test_database()


@pytest.fixture
def box():
    from clawfleet.crypto import SecretBox

    return SecretBox(TEST_ENCRYPTION_KEY)


@pytest.fixture
def desired():
    """Factory for DesiredConfiguration with a working provider key."""
    from clawfleet.types import DesiredConfiguration

    def _make(**overrides):
        defaults = {"provider": "ANTHROPIC", "api_key": "sk-test-key-123456"}
        defaults.update(overrides)
        return DesiredConfiguration(**defaults)

    return _make
