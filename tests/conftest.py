"""Shared test fixtures for the RepoLens test suite.

Tests run against a throw-away SQLite database created in a temporary
directory for the session. Tables are emptied before every test. Gateways
are replaced with the in-memory fakes from ``fakes.py``; nothing talks to
a real sandbox, agent or GitHub.
"""

import os
import tempfile

# Point the app at a scratch database before any app imports.
_TMP_DIR = tempfile.mkdtemp(prefix="repolens-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP_DIR}/repolens_test.db"
os.environ["EXPORT_DIR"] = os.path.join(_TMP_DIR, "exports")
os.environ["LOG_FORMAT"] = "text"
os.environ["ENVIRONMENT"] = "development"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import text

from repolens.core.config import settings
from repolens.core.services import build_services
from repolens.database import SessionLocal, init_db
from repolens.main import app
from repolens.middleware.request_context import _rate_buckets
from repolens.pipeline.event_bus import EventBus
from repolens.repositories.job_store import JobStore

from fakes import FakeAgent, FakeOwnership, FakeSandbox

init_db()

# Children first for the foreign key.
_CLEAN_TABLES = ["job_chats", "analysis_jobs"]


@pytest.fixture(autouse=True)
def _clean_tables():
    """Empty all tables before each test so failures leave data to inspect."""
    db = SessionLocal()
    try:
        for table in _CLEAN_TABLES:
            db.execute(text(f"DELETE FROM {table}"))
        db.commit()
    finally:
        db.close()
    yield


@pytest.fixture()
def test_settings(tmp_path):
    return settings.model_copy(update={
        "export_dir": str(tmp_path / "exports"),
        "idle_timeout_seconds": 0.05,
        "stream_keepalive_seconds": 0.05,
    })


@pytest.fixture()
def store() -> JobStore:
    return JobStore(SessionLocal)


@pytest.fixture()
def bus() -> EventBus:
    return EventBus(buffer_size=100)


@pytest.fixture()
def sandbox() -> FakeSandbox:
    return FakeSandbox()


@pytest.fixture()
def agent() -> FakeAgent:
    return FakeAgent()


@pytest.fixture()
def ownership() -> FakeOwnership:
    return FakeOwnership()


@pytest.fixture()
def services(test_settings, sandbox, agent, ownership):
    """Service container wired to the fake gateways."""
    return build_services(test_settings, SessionLocal, sandbox=sandbox, agent=agent, ownership=ownership)


@pytest.fixture()
def client(services):
    """TestClient whose app uses the fake-backed service container."""
    app.state.services = services
    _rate_buckets.clear()
    with TestClient(app) as c:
        yield c
    del app.state.services
