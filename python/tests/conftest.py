"""Pytest configuration and fixtures for Quire tests.

Test isolation strategy:
- Every test gets a fresh database: a file-backed SQLite database under
  tmp_path by default, or TEST_DATABASE_URL (e.g. PostgreSQL) when set
- Tables are created from the ORM metadata and dropped afterwards
- File-backed SQLite lets threads and the app's event loop use separate
  connections that see each other's commits
- Publish tests use a scripted in-process builder and sub-second poll intervals
"""

import os
from collections.abc import Generator
from pathlib import Path
from uuid import UUID

# Settings are read lazily, but quire.celery reads them at import time.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("QUIRE_ENV", "test")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker

from quire.app import add_request_id_middleware, create_app
from quire.config import clear_settings_cache
from quire.db.engine import create_db_engine
from quire.db.models import Base
from quire.db.session import create_session_factory
from quire.services.books import create_book
from quire.services.publish import JobRegistry, PayloadSource, PublishOrchestrator
from quire.services.tree_store import TreeStore
from tests.fakes import FAST_PUBLISH_CONFIG, ScriptedBuilder


@pytest.fixture(autouse=True)
def reset_settings_cache() -> Generator[None, None, None]:
    """Make every test read settings from its own environment."""
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def engine(tmp_path: Path) -> Generator[Engine, None, None]:
    url = os.environ.get("TEST_DATABASE_URL") or f"sqlite:///{tmp_path / 'quire.db'}"
    engine = create_db_engine(url)
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return create_session_factory(engine)


@pytest.fixture
def db_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def tree_store(session_factory: sessionmaker[Session]) -> TreeStore:
    return TreeStore(session_factory)


@pytest.fixture
def registry(session_factory: sessionmaker[Session]) -> JobRegistry:
    return JobRegistry(session_factory)


@pytest.fixture
def book_id(db_session: Session) -> UUID:
    """An empty book."""
    return create_book(db_session, "The Test Book").id


@pytest.fixture
def chaptered_book_id(book_id: UUID, tree_store: TreeStore) -> UUID:
    """A book with two root chapters, the first with one child."""
    intro = tree_store.insert(book_id, None, "Intro")
    tree_store.insert(book_id, None, "Body")
    tree_store.insert(book_id, intro.id, "Background")
    return book_id


@pytest.fixture
def payloads(session_factory: sessionmaker[Session], tree_store: TreeStore) -> PayloadSource:
    return PayloadSource(session_factory, tree_store, "https://quire.test")


@pytest.fixture
def builder() -> ScriptedBuilder:
    return ScriptedBuilder()


@pytest.fixture
def orchestrator(
    registry: JobRegistry, builder: ScriptedBuilder, payloads: PayloadSource
) -> PublishOrchestrator:
    return PublishOrchestrator(registry, builder, payloads, FAST_PUBLISH_CONFIG)


@pytest.fixture
def client(
    session_factory: sessionmaker[Session], builder: ScriptedBuilder
) -> Generator[TestClient, None, None]:
    """FastAPI test client wired to the test database and the scripted builder."""
    app = create_app(
        session_factory=session_factory,
        builder=builder,
        publish_config=FAST_PUBLISH_CONFIG,
    )
    add_request_id_middleware(app, log_requests=False)
    with TestClient(app) as client:
        yield client
