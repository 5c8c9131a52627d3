"""Shared test fixtures for session-gateway."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from src.audit.logger import AuditLogger
from src.config import GatewaySettings
from src.models import AuditEvent, AuditEventType, RiskLevel
from src.sessions.lifecycle import ReconnectPolicy
from src.sessions.registry import SessionRegistry
from src.transport.base import TransportContext, TransportEvent
from src.transport.credentials import CredentialStore
from src.webhook.dispatcher import WebhookDispatcher

API_KEY = "test-api-key-12345"


class FakeTransport:
    """Transport handle double: records calls, lets tests emit events."""

    def __init__(self, context: TransportContext) -> None:
        self.context = context
        self.sent: list[tuple[str, dict[str, Any]]] = []
        self.logged_out = False
        self.closed = False
        self.send_error: Exception | None = None
        self.logout_error: Exception | None = None

    def emit(self, event: TransportEvent) -> None:
        self.context.emit(event)

    async def send(self, jid: str, content: dict[str, Any]) -> str | None:
        if self.send_error:
            raise self.send_error
        self.sent.append((jid, content))
        return f"MSG{len(self.sent)}"

    async def logout(self) -> None:
        if self.logout_error:
            raise self.logout_error
        self.logged_out = True

    async def close(self) -> None:
        self.closed = True


class FakeTransportFactory:
    def __init__(self) -> None:
        self.handles: list[FakeTransport] = []
        self.error: Exception | None = None
        self.on_create: Callable[[FakeTransport], None] | None = None

    async def __call__(self, context: TransportContext) -> FakeTransport:
        if self.error:
            raise self.error
        handle = FakeTransport(context)
        self.handles.append(handle)
        if self.on_create:
            self.on_create(handle)
        return handle

    @property
    def latest(self) -> FakeTransport:
        return self.handles[-1]


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def factory() -> FakeTransportFactory:
    return FakeTransportFactory()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def dispatcher() -> MagicMock:
    return MagicMock(spec=WebhookDispatcher)


@pytest.fixture
def mock_audit_logger() -> MagicMock:
    return MagicMock(spec=AuditLogger)


@pytest.fixture
def auth_root(tmp_path: Path) -> Path:
    return tmp_path / "auth_info"


@pytest.fixture
def registry(
    auth_root: Path,
    factory: FakeTransportFactory,
    dispatcher: MagicMock,
    clock: FakeClock,
) -> SessionRegistry:
    return make_registry(auth_root, factory, dispatcher, clock=clock)


@pytest.fixture
def settings(auth_root: Path) -> GatewaySettings:
    return GatewaySettings(api_key=API_KEY, auth_dir=auth_root, create_wait_seconds=0.5)


# --- Factory functions for test data ---


def make_registry(
    auth_root: Path,
    factory: FakeTransportFactory,
    dispatcher: Any,
    max_attempts: int = 3,
    delay: float = 0.0,
    **kwargs: Any,
) -> SessionRegistry:
    """Registry over fakes; reconnects fire immediately unless ``delay`` is set."""
    return SessionRegistry(
        credentials=CredentialStore(auth_root),
        transport_factory=factory,
        dispatcher=dispatcher,
        policy=ReconnectPolicy(max_attempts=max_attempts, base_delay=delay, max_delay=delay),
        **kwargs,
    )


def make_audit_event(**kwargs: Any) -> AuditEvent:
    """Factory for AuditEvent with sensible defaults."""
    defaults: dict[str, object] = {
        "event_type": AuditEventType.AUTH_FAILURE,
        "action": "test_action",
        "result": "failure",
        "risk_level": RiskLevel.HIGH,
    }
    defaults.update(kwargs)
    return AuditEvent(**defaults)  # type: ignore[arg-type]


def make_message(
    text: str | None = "hello",
    sender: str = "5511888888888@s.whatsapp.net",
    message_id: str = "ABC123",
    from_me: bool = False,
    message: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Inbound message in the transport's upsert shape."""
    body = message if message is not None else ({"conversation": text} if text is not None else None)
    return {
        "key": {"id": message_id, "remoteJid": sender, "fromMe": from_me},
        "message": body,
        "messageTimestamp": 1700000000,
        "pushName": "Maria",
    }
