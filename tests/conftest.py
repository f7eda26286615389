"""
Shared fixtures: every test gets its own SQLite file, a fresh engine and an
empty scheduler registry.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from reviewgate.core import dao, heartbeat
from reviewgate.core.config import ReviewConfigProvider, ReviewConfiguration
from reviewgate.core.engine import ReviewEngine, reset_engine

T0 = datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)

ROLE_DIRECTORY = {
    "Developer": ("dev1", "dev2"),
    "SeniorDeveloper": ("lead1",),
    "SecurityAnalyst": ("sec1",),
    "SecurityOfficer": ("officer1",),
    "SecurityManager": ("manager1",),
    "DataAnalyst": ("analyst1",),
    "BusinessAnalyst": ("ba1",),
    "ProductOwner": ("po1",),
}


def _default_policy(**overrides) -> ReviewConfiguration:
    overrides.setdefault("role_directory", dict(ROLE_DIRECTORY))
    return ReviewConfiguration(**overrides)


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Point storage at a per-test database file."""
    monkeypatch.setenv("REVIEWGATE_DB_PATH", str(tmp_path / "reviewgate.db"))
    monkeypatch.delenv("NOTIFICATION_WEBHOOK_URL", raising=False)
    dao.initialize()
    reset_engine(None)
    yield
    reset_engine(None)


@pytest.fixture(autouse=True)
def reset_heartbeat():
    """Reset scheduler loop state between tests."""
    heartbeat.tasks.clear()
    heartbeat.running = False
    heartbeat.shutdown_event = None
    heartbeat._thread = None
    yield
    heartbeat.tasks.clear()
    heartbeat.running = False


@pytest.fixture
def transport():
    """Notification transport that always succeeds."""
    mock = MagicMock()
    mock.send.return_value = True
    return mock


@pytest.fixture
def make_config():
    """Factory: default policy plus a populated role directory."""
    return _default_policy


@pytest.fixture
def config():
    return _default_policy()


@pytest.fixture
def make_engine(transport):
    """Factory: engine over a given policy with a recording transport."""
    def _build(config: ReviewConfiguration) -> ReviewEngine:
        return ReviewEngine(config_provider=ReviewConfigProvider(config=config), transport=transport)
    return _build


@pytest.fixture
def engine(config, make_engine):
    return make_engine(config)


@pytest.fixture
def t0():
    return T0
