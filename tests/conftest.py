"""
Pytest configuration and shared fixtures.

Points DATABASE_URL at a throwaway SQLite file before anything from the
missiv package is imported, so the module-level engine picks it up. A file
(not :memory:) is used so threaded tests get real, separate connections.
"""

import os
import tempfile

import pytest

_TEST_DB_DIR = tempfile.mkdtemp(prefix="missiv-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(_TEST_DB_DIR, 'missiv.db')}")
os.environ.setdefault("LOG_LEVEL", "WARNING")

# Clear settings cache before any app imports to ensure test env vars are used
from missiv.config import get_settings  # noqa: E402
get_settings.cache_clear()

import missiv.models  # noqa: E402,F401
from missiv.notifications import NotificationSink  # noqa: E402
from missiv.storage import Base, SessionLocal, engine  # noqa: E402


ALICE = "1000000001"
BOB = "2000000002"
CAROL = "3000000003"


class RecordingSink(NotificationSink):
    """Keeps emitted events in memory instead of writing notification rows."""

    def __init__(self):
        self.events = []

    def notify(self, db, desk_id, type, miv, message):
        self.events.append((desk_id, type, miv.id, message))


@pytest.fixture(scope="function")
def schema():
    """Fresh tables for each test."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db(schema):
    """A session on a fresh database."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture(scope="function")
def client(schema):
    """Create test client with fresh database for each test."""
    from fastapi.testclient import TestClient
    from missiv.main import app

    with TestClient(app) as test_client:
        yield test_client
