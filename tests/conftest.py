import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# keep the data dir (sqlite file, sync.log) out of the user's home during tests
os.environ.setdefault("INDEXSYNC_DATA_DIR", tempfile.mkdtemp(prefix="indexsync-tests-"))

from sqlalchemy.pool import StaticPool  # noqa: E402
from sqlmodel import Session, SQLModel, create_engine  # noqa: E402

import models  # noqa: E402,F401
from core.settings import CaptureSettings, WorkerSettings  # noqa: E402
from models.product import Product  # noqa: E402
from services.change_capture import ChangeCapture  # noqa: E402
from services.index_configs import IndexConfigRegistry  # noqa: E402
from services.sync_queue import SyncQueue  # noqa: E402


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start=None):
        self.now = start or datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)
        return self.now


class FakeMonotonic:
    def __init__(self):
        self.value = 0.0

    def __call__(self):
        return self.value


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    def factory():
        return Session(engine)

    return factory


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def queue(session_factory, clock):
    return SyncQueue(session_factory, clock)


@pytest.fixture()
def configs(session_factory):
    return IndexConfigRegistry(session_factory)


@pytest.fixture()
def worker_settings():
    return WorkerSettings(
        batch_size=10,
        poll_interval=0.01,
        max_retries=5,
        shutdown_timeout=5.0,
        claim_timeout=300.0,
        backoff_base=2.0,
        backoff_cap=300.0,
    )


@pytest.fixture()
def capture_factory():
    installed = []

    def factory(enqueue_when_disabled=True):
        capture = ChangeCapture(CaptureSettings(mode="orm", enqueue_when_disabled=enqueue_when_disabled))
        capture.register_source(Product)
        capture.install(Session)
        installed.append(capture)
        return capture

    yield factory
    for capture in installed:
        capture.uninstall(Session)
