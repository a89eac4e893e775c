import asyncio
import os
import time
from functools import partial
from typing import Generator, List

# Settings are read at import time; point them at throwaway values first
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ["ENVIRONMENT"] = "testing"
os.environ.setdefault("LOG_FORMAT", "console")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import app.models  # noqa: F401 - registers the mappers
from app.core.exceptions import GenerationError
from app.core.security import create_access_token
from app.database.connection import Base, DatabaseSession, get_db
from app.main import app
from app.services import chat_service as chat_service_module
from app.services.chat_service import build_chat_service, get_chat_service
from app.services.delivery_router import LiveSession, RealtimeEvent
from app.services.notifications import build_notification


class FakeProvider:
    """Scripted stand-in for the generation collaborator"""

    def __init__(self, chunks=("Hello", " there"), fail_at=None, hang=False, delay=0.0):
        self.chunks = list(chunks)
        self.fail_at = fail_at
        self.hang = hang
        self.delay = delay
        self.calls = []

    async def stream(self, history, prompt):
        self.calls.append((list(history), prompt))
        for index, chunk in enumerate(self.chunks):
            if self.fail_at is not None and index == self.fail_at:
                raise GenerationError("model exploded")
            if self.delay:
                await asyncio.sleep(self.delay)
            yield chunk
        if self.hang:
            await asyncio.Event().wait()


class RecordingNotificationPublisher:
    """Keeps every notification so tests can inspect them"""

    def __init__(self):
        self.sent = []

    def notify_new_message(self, user_id, chat_id, message):
        self.sent.append(build_notification(user_id, chat_id, message))


@pytest.fixture()
def engine():
    """Fresh in-memory database per test"""
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    Base.metadata.drop_all(bind=test_engine)
    test_engine.dispose()


@pytest.fixture()
def session_maker(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture()
def session_factory(session_maker):
    return partial(DatabaseSession, "test", session_maker=session_maker)


@pytest.fixture()
def db(session_maker) -> Generator[Session, None, None]:
    session = session_maker()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def provider():
    return FakeProvider()


@pytest.fixture()
def notifier():
    return RecordingNotificationPublisher()


@pytest.fixture()
def service(session_factory, provider, notifier):
    return build_chat_service(session_factory=session_factory, provider=provider, notifier=notifier)


@pytest.fixture()
def wired_app(service, session_maker):
    """The app with its database and chat service pointed at the test fixtures"""

    async def override_get_db():
        # Async so the session is opened and closed on the event loop thread
        session = session_maker()
        try:
            yield session
        finally:
            session.close()

    previous = chat_service_module._chat_service
    chat_service_module._chat_service = service
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_chat_service] = lambda: service
    try:
        yield app
    finally:
        app.dependency_overrides.clear()
        chat_service_module._chat_service = previous


@pytest.fixture()
def client(wired_app) -> Generator[TestClient, None, None]:
    with TestClient(wired_app) as test_client:
        yield test_client


@pytest.fixture()
def token():
    return create_access_token("user-1", device_id="laptop")


@pytest.fixture()
def auth_headers(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def other_headers():
    return {"Authorization": f"Bearer {create_access_token('user-2')}"}


async def drain_events(session: LiveSession) -> List[RealtimeEvent]:
    """Everything currently queued for a live session"""
    events = []
    while session.pending:
        events.append(await session.next_event())
    return events


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def poll_until(fetch, predicate, timeout: float = 3.0):
    """Poll a synchronous fetch until the predicate holds; returns the last value"""
    deadline = time.monotonic() + timeout
    value = fetch()
    while not predicate(value):
        if time.monotonic() > deadline:
            raise AssertionError(f"condition not met in time: {value}")
        time.sleep(0.02)
        value = fetch()
    return value
