"""Shared fixtures: a store in tmp_path, a signed-in session, and a mocked remote."""
import datetime as dt
from unittest.mock import MagicMock

import pytest

from core.config import SyncSettings
from core.events import EventBus
from core.models import UTC
from services.scheduler import SyncScheduler
from storage.auth import AuthSession
from storage.backups import BackupManager
from storage.documents import DocumentStore
from storage.remote import RemoteRecordClient

BASE = dt.datetime(2024, 3, 1, 9, 0, tzinfo=UTC)


def at(minutes: int) -> dt.datetime:
    """A fixed timestamp `minutes` after BASE."""
    return BASE + dt.timedelta(minutes=minutes)


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def store(tmp_path, bus):
    return DocumentStore(tmp_path / "data", bus=bus)


@pytest.fixture
def backups(store, tmp_path):
    return BackupManager(store, backup_dir=tmp_path / "backups", keep=5)


@pytest.fixture
def auth(bus):
    session = AuthSession("https://example.test", bus=bus, session=MagicMock())
    session.adopt("user-1", "token-1", "me@example.test")
    return session


@pytest.fixture
def remote():
    client = MagicMock(spec=RemoteRecordClient)
    client.fetch.return_value = None
    return client


@pytest.fixture
def settings():
    return SyncSettings(base_url="https://example.test", debounce_delay=0.05,
                        auto_sync_interval=3600, shutdown_timeout=1.0)


@pytest.fixture
def scheduler(store, remote, backups, auth, bus, settings):
    sched = SyncScheduler(store, remote, backups, auth, bus=bus, settings=settings)
    yield sched
    sched.cancel()
