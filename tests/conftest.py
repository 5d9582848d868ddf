import fakeredis
import pytest
from fastapi.testclient import TestClient

import config
import frontdesk
import notifications
import services


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch):
    """Every test starts without Redis, with the default PIN and 15 minute slots."""
    monkeypatch.setattr(config, "REDIS_URL", None)
    monkeypatch.setattr(config, "ADMIN_PASS", None)
    monkeypatch.setattr(config, "DEFAULT_CONSULTATION_MINUTES", 15)
    monkeypatch.setattr(notifications, "_redis_client", None)
    frontdesk.reset_desks()
    yield
    frontdesk.reset_desks()


@pytest.fixture
def db():
    services.configure_engine("sqlite://")
    services.init_db()
    yield
    services.get_engine().dispose()


@pytest.fixture
def file_db(tmp_path):
    """A file database, for tests that write from several threads."""
    services.configure_engine(f"sqlite:///{tmp_path / 'queue.db'}")
    services.init_db()
    yield
    services.get_engine().dispose()


@pytest.fixture
def session(db):
    with services.get_session() as session:
        yield session


@pytest.fixture
def fake_redis(monkeypatch):
    client = fakeredis.FakeRedis(decode_responses=True)
    monkeypatch.setattr(notifications, "_redis_client", client)
    yield client


@pytest.fixture
def client(db):
    from main import app

    with TestClient(app) as client:
        yield client


@pytest.fixture
def enroll_many(session):
    """Register patients in order; returns (patient, entry) pairs."""

    def enroll(*names):
        return [services.register_patient(session, name) for name in names]

    return enroll
