import os

os.environ.setdefault('JWT_SECRET', 'test-secret')
os.environ.setdefault('DATABASE_URL', 'sqlite:///:memory:')

import fakeredis
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlmodel import Session

from readalong.api import api_router
from readalong.db.session import get_session, init_db, make_engine
from readalong.db.unit_of_work import UnitOfWork
from readalong.services.cache import InvalidationDispatcher, SessionCache
from readalong.services.coordinator import AdmissionCoordinator
from readalong.services.lifecycle import LifecycleManager
from tests.utils import InlineExecutor, RecordingDispatcher


# --- Storage ---
@pytest.fixture
def engine(tmp_path):
    # file-backed so that concurrent threads get their own connections
    engine = make_engine(f'sqlite:///{tmp_path / "readalong_test.db"}', echo=False)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def unit_of_work(engine):
    return UnitOfWork(engine, max_attempts=5, backoff_s=0.005)


# --- Cache ---
@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def session_cache(redis_client):
    return SessionCache(redis_client, ttl_s=60)


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def coordinator(unit_of_work, dispatcher):
    return AdmissionCoordinator(unit_of_work, dispatcher)


# --- API ---
@pytest.fixture
def api_app(engine, unit_of_work, session_cache):
    app = FastAPI()
    app.include_router(api_router)

    invalidation = InvalidationDispatcher(session_cache, executor=InlineExecutor())
    app.state.session_cache = session_cache
    app.state.invalidation = invalidation
    app.state.coordinator = AdmissionCoordinator(unit_of_work, invalidation)
    app.state.lifecycle = LifecycleManager(unit_of_work, invalidation)

    def override_get_session():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def test_client(api_app):
    with TestClient(api_app) as client:
        yield client
