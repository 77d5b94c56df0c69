"""Shared fixtures: in-memory storage, event bridge and a scripted provider."""

import asyncio
from typing import List, Optional

import pytest
import pytest_asyncio

from esferazap.core.exceptions import ProviderConfigurationError
from esferazap.integrations.whatsapp.providers.base import (
    BaseWhatsAppProvider,
    ConnectionCheck,
    ProviderConnection,
    ProviderEvent,
    ProviderResult,
    QRCodeResult,
    QRStatus,
)
from esferazap.services.event_bridge import ALL_EVENTS, EventBridge
from esferazap.services.session_manager import SessionManager
from esferazap.services.storage import BotRecord, MemoryStorage


class FakeConnection(ProviderConnection):
    """Connection whose events are injected by the test"""

    def __init__(self, provider, bot_id, session_id, on_event):
        super().__init__(provider, bot_id, session_id, on_event)
        self.started = False
        self.close_calls = 0

    async def start(self) -> None:
        self.started = True
        if self.provider.start_gate is not None:
            await self.provider.start_gate.wait()
        if self.closed:
            return
        if self.provider.start_error is not None:
            raise self.provider.start_error
        if self.provider.start_event is not None:
            await self.emit(self.provider.start_event)

    async def _close_transport(self) -> None:
        self.close_calls += 1


class FakeProvider(BaseWhatsAppProvider):
    name = "fake"

    def __init__(self, config, http_client=None, bot_id=None):
        super().__init__(config, http_client=http_client, bot_id=bot_id)
        self.start_error: Optional[Exception] = None
        self.start_event: Optional[ProviderEvent] = None
        self.start_gate: Optional[asyncio.Event] = None
        self.sent: List[tuple] = []
        self.connections: List[FakeConnection] = []
        self.webhook_valid = True

    async def generate_qr_code(self) -> QRCodeResult:
        return QRCodeResult(qr_code="data:image/png;base64,AAAA", status=QRStatus.PENDING)

    async def check_connection(self) -> ConnectionCheck:
        return ConnectionCheck(connected=False, status="disconnected")

    async def send_message(self, to: str, content: str) -> ProviderResult:
        self.sent.append((to, content))
        return ProviderResult(success=True, message_id=f"msg-{len(self.sent)}")

    def validate_webhook(self, payload, signature=None, url=None) -> bool:
        return self.webhook_valid

    def parse_webhook(self, payload) -> List[ProviderEvent]:
        if payload == {"event": "open"}:
            return [ProviderEvent.open()]
        return []

    def create_connection(self, bot_id, session_id, on_event) -> FakeConnection:
        connection = FakeConnection(self, bot_id, session_id, on_event)
        self.connections.append(connection)
        return connection


class FakeProviderFactory:
    """Records every adapter it builds; next_start_* settings apply to the next adapter only"""

    def __init__(self):
        self.providers: List[FakeProvider] = []
        self.next_start_error: Optional[Exception] = None
        self.next_start_event: Optional[ProviderEvent] = None
        self.next_start_gate: Optional[asyncio.Event] = None

    def create_provider(self, config, bot_id=None, http_client=None) -> FakeProvider:
        provider = FakeProvider(config, http_client=http_client, bot_id=bot_id)
        provider.start_error, self.next_start_error = self.next_start_error, None
        provider.start_event, self.next_start_event = self.next_start_event, None
        provider.start_gate, self.next_start_gate = self.next_start_gate, None
        self.providers.append(provider)
        return provider

    @property
    def connections(self) -> List[FakeConnection]:
        return [c for p in self.providers for c in p.connections]


@pytest.fixture
def storage():
    store = MemoryStorage()
    store.bots["b1"] = BotRecord(id="b1", user_id="tenant-1", name="Loja", whatsapp_provider="baileys")
    store.bots["b2"] = BotRecord(id="b2", user_id="tenant-2", name="Clinica", whatsapp_provider="twilio")
    return store


@pytest.fixture
def event_bridge():
    return EventBridge()


@pytest.fixture
def published(event_bridge):
    """Every domain event published on the bridge, in order"""
    events = []
    event_bridge.subscribe(ALL_EVENTS, events.append)
    return events


@pytest.fixture
def provider_factory():
    return FakeProviderFactory()


@pytest_asyncio.fixture
async def session_manager(storage, event_bridge, provider_factory):
    manager = SessionManager(
        storage,
        event_bridge,
        provider_factory=provider_factory,
        reconnect_delay=0.01,
        max_reconnect_attempts=3,
        qr_wait_timeout=0.05,
    )
    yield manager
    await manager.shutdown()


@pytest.fixture
def config_error():
    return ProviderConfigurationError("fake", "missing api_key")


async def wait_until(predicate, timeout: float = 1.0, interval: float = 0.005) -> bool:
    """Poll predicate until it is true or timeout expires"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()
