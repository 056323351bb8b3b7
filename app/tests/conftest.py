"""
Pytest configuration and fixtures for testing.
Provides test database, test client, gateway stub and other shared fixtures.
"""
import pytest
import httpx
from datetime import datetime, timedelta
from typing import Any, Dict, Generator, List, Optional, Tuple
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from fastapi.testclient import TestClient

import main
from main import app
from api.dependencies import get_db
from api.websocket_manager import ConnectionManager
from core.config import settings
from core.security import create_access_token
from db.database import Base
from db import models  # noqa: F401 - registers models with Base
from db.models import Chat, Contact
from db.repository import Repository
from services.whatsapp_gateway import WhatsAppGateway
from workers.connection_monitor import ConnectionMonitor
from workers.delivery_queue import DeliveryQueue


# Test database (in-memory SQLite shared by every session and thread)
TEST_DATABASE_URL = "sqlite://"

test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool
)
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


class GatewayStub:
    """
    httpx.MockTransport handler standing in for the Evolution API.

    Attributes:
        requests: Every request received, in order
        state: Link state reported by /instance/info
        fail_sends: When True, message sends answer 500
        fail_status: When True, /instance/info answers 503
        fail_init: When True, /instance/init answers 500
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.state: Optional[str] = "open"
        self.fail_sends = False
        self.fail_status = False
        self.fail_init = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/instance/info":
            if self.fail_status:
                return httpx.Response(503, json={"error": "gateway unavailable"})
            instance = {"instanceName": "test"}
            if self.state is not None:
                instance["state"] = self.state
            return httpx.Response(200, json={"instance": instance})

        if path == "/instance/init":
            if self.fail_init:
                return httpx.Response(500, json={"error": "init failed"})
            return httpx.Response(201, json={"instance": {"instanceName": "test", "state": "connecting"}})

        if path.startswith("/message/"):
            if self.fail_sends:
                return httpx.Response(500, json={"error": "send failed"})
            return httpx.Response(201, json={"key": {"id": "WA-MSG-1"}, "status": "PENDING"})

        return httpx.Response(404, json={"error": "not found"})

    def calls_to(self, path: str) -> List[httpx.Request]:
        return [request for request in self.requests if request.url.path == path]


class RecordingBroadcaster:
    """Broadcaster double recording every emission."""

    def __init__(self):
        self.events: List[Tuple[str, Optional[str], str, Dict[str, Any]]] = []

    async def emit_to_user(self, user_id: str, event: str, data: Dict[str, Any]) -> int:
        self.events.append(("user", user_id, event, data))
        return 1

    async def emit_to_chat(self, chat_id: str, event: str, data: Dict[str, Any], exclude_session_id=None) -> int:
        self.events.append(("chat", chat_id, event, data))
        return 1

    async def emit_to_all(self, event: str, data: Dict[str, Any]) -> int:
        self.events.append(("all", None, event, data))
        return 1


class FakeClock:
    """Controllable clock for the delivery queue."""

    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture(scope="function")
def test_db() -> Generator[Session, None, None]:
    """
    Create a fresh database for each test.
    Automatically creates and destroys tables.
    """
    Base.metadata.create_all(bind=test_engine)
    db = TestSessionLocal()

    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def gateway_stub() -> GatewayStub:
    return GatewayStub()


@pytest.fixture
def gateway(gateway_stub: GatewayStub) -> WhatsAppGateway:
    """WhatsAppGateway wired to the in-process stub transport."""
    return WhatsAppGateway(
        base_url="http://gateway.test",
        api_key="test-key",
        instance_name="test",
        webhook_url="http://api.test/api/whatsapp/webhook",
        transport=httpx.MockTransport(gateway_stub)
    )


@pytest.fixture
def broadcaster() -> RecordingBroadcaster:
    return RecordingBroadcaster()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(scope="function")
def test_client(test_db: Session, gateway: WhatsAppGateway, monkeypatch) -> Generator[TestClient, None, None]:
    """
    Create a test client with test database dependency override.

    The client is entered as a context manager so HTTP requests and
    WebSocket sessions share one event loop. Background workers stay off.
    """
    def override_get_db():
        try:
            yield test_db
        finally:
            pass

    monkeypatch.setattr(settings, "run_delivery_workers", False)
    monkeypatch.setattr(settings, "run_health_monitor", False)
    monkeypatch.setattr(settings, "redis_fanout_enabled", False)
    monkeypatch.setattr(main, "init_db", lambda: Base.metadata.create_all(bind=test_engine))

    connection_manager = ConnectionManager()
    original_state = {
        name: getattr(app.state, name)
        for name in ("session_factory", "connection_manager", "gateway", "delivery_queue", "monitor")
    }
    app.state.session_factory = TestSessionLocal
    app.state.connection_manager = connection_manager
    app.state.gateway = gateway
    app.state.delivery_queue = DeliveryQueue(TestSessionLocal, gateway, broadcaster=connection_manager)
    app.state.monitor = ConnectionMonitor(gateway, connection_manager, interval_seconds=3600)
    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()
    for name, value in original_state.items():
        setattr(app.state, name, value)


@pytest.fixture
def connection_manager(test_client: TestClient) -> ConnectionManager:
    return app.state.connection_manager


@pytest.fixture
def delivery_queue(test_client: TestClient) -> DeliveryQueue:
    return app.state.delivery_queue


@pytest.fixture
def auth_token() -> str:
    return create_access_token("operator-1", email="operator1@example.com", role="USER")


@pytest.fixture
def second_auth_token() -> str:
    return create_access_token("operator-2", email="operator2@example.com", role="MANAGER")


@pytest.fixture
def auth_headers(auth_token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {auth_token}"}


@pytest.fixture
def contact_and_chat(test_db: Session) -> Tuple[Contact, Chat]:
    """A contact with one open chat."""
    repository = Repository(test_db)
    contact = repository.create_contact(phone_number="5511999990000", name="Maria Silva")
    chat = repository.create_chat(contact.id)
    return contact, chat


@pytest.fixture
def session_factory(test_db: Session):
    """Session factory bound to the test database (tables already created)."""
    return TestSessionLocal
