"""
Pytest configuration and fixtures.
"""

from __future__ import annotations

import os

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from tests.test_constants import TEST_INTERNAL_JOB_TOKEN

# Force an in-memory database when pytest runs; don't inherit from .env
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["INTERNAL_JOB_TOKEN"] = TEST_INTERNAL_JOB_TOKEN
os.environ["ALERT_EMAIL_ENABLED"] = "false"
os.environ["USE_STATIC_PROVIDER"] = "false"


@pytest.fixture
def engine():
    """Fresh in-memory SQLite schema per test.

    pysqlite defers BEGIN until the first write, which breaks SAVEPOINT
    semantics; emit BEGIN ourselves as the SQLAlchemy docs recommend.
    """
    import replywatch.models  # noqa: F401
    from replywatch.db.session import Base

    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False)


@pytest.fixture
def db(session_factory) -> Session:
    """Database session for service tests."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def _clear_process_caches() -> None:
    """Settings and checkpoint caches are process-wide; reset them around each test."""
    from replywatch.config import get_settings
    from replywatch.services.checkpoint_store import checkpoint_cache

    get_settings.cache_clear()
    checkpoint_cache.clear()
    yield
    get_settings.cache_clear()
    checkpoint_cache.clear()


@pytest.fixture
def registry():
    """Provider registry that tests fill with StaticMailboxProvider instances."""
    from replywatch.providers.registry import ProviderRegistry

    return ProviderRegistry()


@pytest.fixture
def client_with_db(db: Session, registry) -> TestClient:
    """TestClient with get_db and the provider registry bound to the test fixtures."""
    from replywatch.api.deps import get_provider_registry
    from replywatch.db.session import get_db
    from replywatch.main import app

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_provider_registry] = lambda: registry
    c = TestClient(app)
    yield c
    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_provider_registry, None)


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {"X-Internal-Token": TEST_INTERNAL_JOB_TOKEN}
