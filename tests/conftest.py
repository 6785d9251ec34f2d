"""Pytest configuration and fixtures."""

import asyncio
from datetime import datetime, timedelta

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from notifier import __version__
from notifier.channels.base import ChannelSender
from notifier.channels.registry import ChannelRegistry
from notifier.delivery.state import NotificationSnapshot
from notifier.dispatcher.core import Dispatcher, reset_dispatcher
from notifier.models.database import Base, check_database, get_db, reset_engine
from notifier.models.notification import Channel
from notifier.services.notification_service import NotificationService, Recipient
from notifier.utils.config import Config, reset_config


class FakeClock:
    """Controllable clock returning naive UTC datetimes."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeSender(ChannelSender):
    """Scripted channel sender.

    Each call pops the next scripted result: ``None`` succeeds, an exception
    instance is raised, a float sleeps that many seconds before succeeding.
    Once the script is empty every call succeeds.
    """

    def __init__(self, channel: Channel, results: list | None = None):
        self._channel = channel
        self.results = list(results or [])
        self.calls: list[int] = []
        self.closed = False

    @property
    def channel(self) -> Channel:
        return self._channel

    async def _deliver(self, snapshot: NotificationSnapshot) -> str | None:
        self.calls.append(snapshot.id)
        result = self.results.pop(0) if self.results else None
        if isinstance(result, BaseException):
            raise result
        if isinstance(result, float):
            await asyncio.sleep(result)
        return f"{self._channel.value}-{snapshot.id}-{len(self.calls)}"

    async def close(self) -> None:
        self.closed = True


@pytest.fixture(scope="function")
def test_config():
    """Create a test configuration."""
    return Config(
        database={"url": "sqlite:///:memory:", "echo": False},
        dispatcher={"instance_id": "test-dispatcher", "send_timeout_seconds": 0.5},
    )


@pytest.fixture(scope="function")
def test_db_engine():
    """Create an in-memory SQLite engine for testing.

    Uses StaticPool to ensure the same connection is used throughout,
    which is required for in-memory SQLite databases.
    """
    # Import models to ensure they're registered with Base
    from notifier.models import notification  # noqa: F401

    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(test_db_engine):
    """Session factory bound to the test engine."""
    return sessionmaker(autocommit=False, autoflush=False, bind=test_db_engine)


@pytest.fixture(scope="function")
def test_db_session(session_factory):
    """Create a database session for testing."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    """Clock fixed at a known instant; advance it explicitly."""
    return FakeClock(datetime(2026, 3, 2, 9, 0, 0))


@pytest.fixture
def web_sender():
    return FakeSender(Channel.WEB)


@pytest.fixture
def wechat_sender():
    return FakeSender(Channel.WECHAT)


@pytest.fixture
def email_sender():
    return FakeSender(Channel.EMAIL)


@pytest.fixture
def registry(web_sender, wechat_sender, email_sender):
    """Registry with scripted senders for every channel."""
    return ChannelRegistry(
        {Channel.WEB: web_sender, Channel.WECHAT: wechat_sender, Channel.EMAIL: email_sender}
    )


@pytest.fixture
def dispatcher(test_config, session_factory, registry, clock):
    """Dispatcher wired to the test database, scripted senders and fake clock."""
    reset_dispatcher()
    return Dispatcher(test_config, session_factory=session_factory, registry=registry, clock=clock)


@pytest.fixture
def api_dispatcher(test_config, session_factory, registry):
    """Dispatcher on the real clock, matching timestamps written by the API."""
    return Dispatcher(test_config, session_factory=session_factory, registry=registry)


@pytest.fixture
def service(test_db_session, test_config, clock):
    """Notification service using the fake clock."""
    return NotificationService(test_db_session, test_config, clock=clock)


@pytest.fixture
def recipient():
    """A recipient reachable on every channel."""
    return Recipient(
        user_id="user-1",
        username="Alice",
        email="alice@example.com",
        wechat_open_id="o6_bmjrPTlm6_2sgVt7hMZOPfL2M",
    )


@pytest.fixture
def make_notification(service, recipient):
    """Factory creating notifications with sensible defaults."""

    def _make(**overrides):
        data = {
            "title": "Quarterly report due",
            "content": "Please submit the quarterly report by Friday.",
            "type": "task_reminder",
            "recipient": recipient,
        }
        data.update(overrides)
        return service.create_notification(**data)

    return _make


@pytest.fixture
def sample_notification_data():
    """Sample notification payload for API tests."""
    return {
        "title": "Design review",
        "content": "The design review starts in 15 minutes.",
        "type": "meeting_reminder",
        "priority": "high",
        "recipient": {
            "user_id": "user-1",
            "username": "Alice",
            "email": "alice@example.com",
            "wechat_open_id": "o6_bmjrPTlm6_2sgVt7hMZOPfL2M",
        },
        "related_data": {"meeting_id": "mtg-42"},
        "tags": ["design", "weekly"],
    }


@pytest.fixture(scope="function")
def client(test_db_engine, session_factory, test_config, api_dispatcher, monkeypatch):
    """Create a test client with dependency overrides."""
    from notifier.api.dependencies import get_notification_dispatcher, get_notification_service
    from notifier.api.main import register_exception_handlers
    from notifier.api.routes import dispatcher_router, notifications_router
    from notifier.api.schemas import HealthResponse

    # Reset global state
    reset_config()
    reset_engine()

    # Create a test app without lifespan
    app = FastAPI(
        title="Notifier API (Test)",
        version=__version__,
    )
    register_exception_handlers(app)
    app.include_router(notifications_router, prefix="/api")
    app.include_router(dispatcher_router, prefix="/api")

    @app.get("/health", response_model=HealthResponse, tags=["health"])
    def health_check() -> HealthResponse:
        return HealthResponse(
            status="healthy",
            version=__version__,
            database="unknown",
        )

    @app.get("/health/ready", response_model=HealthResponse, tags=["health"])
    def readiness_check(db: Session = Depends(get_db)) -> HealthResponse:
        """Readiness check endpoint for testing."""
        return HealthResponse(
            status="ready",
            version=__version__,
            database=check_database(db),
        )

    # Override get_db dependency to use the test session
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    def override_get_service(db: Session = Depends(get_db)):
        return NotificationService(db, test_config)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_notification_service] = override_get_service
    app.dependency_overrides[get_notification_dispatcher] = lambda: api_dispatcher

    # Override get_config
    def override_get_config():
        return test_config

    monkeypatch.setattr("notifier.models.database.get_config", override_get_config)
    monkeypatch.setattr("notifier.utils.config.get_config", override_get_config)

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def user_headers():
    """Headers identifying the default test user."""
    return {"X-User-Id": "user-1"}
