"""Pytest fixtures: file-backed sqlite DB, in-memory cache, fake collaborators, API client."""
import os
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("CACHE_BACKEND", "memory")
os.environ.setdefault("OPENAI_API_KEY", "test-key")
os.environ.setdefault("SECRET_KEY", "test-secret")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import NullPool, StaticPool
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker

from app.main import app
from app.auth import get_current_user_required
from app.config import settings
from app.database import get_db
from app.models import Base, User
from app.services.cache import CacheService, MemoryBackend, get_cache_service
from app.services.sync_service import SyncOrchestrator, get_sync_orchestrator

from fakes import FakeExtractor, FakeMailSource, RecordingStatusStore


@pytest.fixture
def db_urls(tmp_path):
    """
    Use a file-based sqlite DB so sync setup code (tests) and async app sessions
    can see the same data.
    """
    db_path = tmp_path / "test.db"
    sync_url = f"sqlite:///{db_path}"
    async_url = f"sqlite+aiosqlite:///{db_path}"
    return sync_url, async_url


@pytest.fixture
def db_engine(db_urls):
    sync_url, _ = db_urls
    engine = create_engine(sync_url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def db_session(db_engine):
    from sqlalchemy.orm import sessionmaker
    Session = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = Session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def session_factory(db_urls, db_engine):
    """Async sessions on the same file. NullPool: concurrent sessions get their own connection."""
    _, async_url = db_urls
    async_engine = create_async_engine(async_url, poolclass=NullPool)
    return async_sessionmaker(async_engine, expire_on_commit=False, autoflush=False)


@pytest.fixture
def user(db_session):
    u = User(email="owner@inbox.test", password_hash=None, name="Owner")
    db_session.add(u)
    db_session.commit()
    db_session.refresh(u)
    return u


@pytest.fixture
def other_user(db_session):
    u = User(email="other@inbox.test", password_hash=None)
    db_session.add(u)
    db_session.commit()
    db_session.refresh(u)
    return u


@pytest.fixture
def cache_backend():
    return MemoryBackend()


@pytest.fixture
def cache(cache_backend):
    return CacheService(cache_backend)


@pytest.fixture
def status_store(cache_backend):
    return RecordingStatusStore(cache_backend, ttl_s=300)


@pytest.fixture
def test_settings():
    return settings.model_copy(update={"sync_batch_pause_s": 0.0})


@pytest.fixture
def make_orchestrator(status_store, session_factory, cache, test_settings):
    def _make(mail_source=None, extractor=None, **overrides) -> SyncOrchestrator:
        config = test_settings.model_copy(update=overrides) if overrides else test_settings
        return SyncOrchestrator(
            status_store=status_store,
            mail_source=mail_source or FakeMailSource(),
            extractor=extractor or FakeExtractor(),
            session_factory=session_factory,
            cache=cache,
            config=config,
        )
    return _make


@pytest.fixture
def orchestrator(make_orchestrator):
    return make_orchestrator()


@pytest.fixture
def client(session_factory, cache, user, orchestrator):
    """TestClient authenticated as `user`, with DB, cache and orchestrator overridden."""
    async def override_get_db():
        async with session_factory() as session:
            yield session

    async def override_get_current_user_required():
        return user

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user_required] = override_get_current_user_required
    app.dependency_overrides[get_cache_service] = lambda: cache
    app.dependency_overrides[get_sync_orchestrator] = lambda: orchestrator
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def anonymous_client(session_factory):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()

