"""
Shared fixtures: a SQLite database per test, a mocked network, and a wired orchestrator.
"""
import os
import tempfile

# The application module builds its static mount at import time
os.environ.setdefault("MEDIA_DIR", tempfile.mkdtemp(prefix="wapi-media-"))
os.environ.setdefault("DATABASE_URL", f"sqlite:///{tempfile.mkdtemp(prefix='wapi-db-')}/ingest.db")
os.environ.setdefault("LOG_FORMAT", "text")

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from wapi_ingest.api.webhook import build_http_client, build_orchestrator, get_orchestrator
from wapi_ingest.core.config import Settings
from wapi_ingest.core.database import get_db, init_db
from wapi_ingest.main import app
from wapi_ingest.models.connection import Connection

from tests.factories import INSTANCE_ID, TOKEN, MockNetwork


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'ingest.db'}",
        media_dir=str(tmp_path / "uploads"),
        public_base_url="http://testserver",
        provider_base_url="https://api.w-api.test/v1",
        eager_media_timeout_seconds=5.0,
        media_workers=2,
        max_media_bytes=1024 * 1024,
        log_level="DEBUG",
        log_format="text",
    )


@pytest.fixture
def engine(settings):
    engine = create_engine(settings.database_url, connect_args={"check_same_thread": False})
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def network() -> MockNetwork:
    return MockNetwork()


@pytest.fixture
def http(settings, network):
    client = build_http_client(settings, transport=httpx.MockTransport(network.handler))
    yield client
    client.close()


@pytest.fixture
def orchestrator(settings, session_factory, http):
    orchestrator = build_orchestrator(settings, session_factory=session_factory, http=http)
    yield orchestrator
    orchestrator.pool.shutdown(wait=True)


@pytest.fixture
def connection(session_factory) -> Connection:
    with session_factory() as session:
        connection = Connection(
            name="Test connection",
            instance_id=INSTANCE_ID,
            token=TOKEN,
            accept_groups=False,
        )
        session.add(connection)
        session.commit()
        return connection


@pytest.fixture
def client(orchestrator, session_factory):
    """Test client bound to the per-test database and orchestrator."""
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    yield TestClient(app)
    app.dependency_overrides.clear()
