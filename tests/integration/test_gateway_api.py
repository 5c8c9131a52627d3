"""Integration tests for the gateway HTTP API over fake transports."""

from __future__ import annotations

from pathlib import Path

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from src.config import GatewaySettings
from src.gateway.app import create_app
from src.models import SessionState
from src.sessions.registry import SessionRegistry
from src.transport.base import Authenticated, QrIssued
from src.webhook.dispatcher import WebhookDispatcher
from tests.conftest import API_KEY, FakeClock, FakeTransportFactory, make_registry

AUTH = {"x-api-key": API_KEY}


@pytest.fixture()
def gateway_registry(auth_root: Path, factory: FakeTransportFactory, clock: FakeClock) -> SessionRegistry:
    return make_registry(auth_root, factory, WebhookDispatcher(None), clock=clock)


@pytest.fixture()
def app(settings: GatewaySettings, gateway_registry: SessionRegistry) -> FastAPI:
    return create_app(settings, registry=gateway_registry)


def _client(app: FastAPI) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


async def _connect(registry: SessionRegistry, factory: FakeTransportFactory, session_id: str) -> None:
    session = await registry.connect(session_id)
    factory.latest.emit(Authenticated(account_id="5511999999999:4@s.whatsapp.net"))
    await session.events.join()


# --- Auth ---


@pytest.mark.asyncio
async def test_health_is_public(app: FastAPI) -> None:
    async with _client(app) as client:
        resp = await client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert body["sessions"] == 0


@pytest.mark.asyncio
async def test_missing_key_rejected(app: FastAPI) -> None:
    async with _client(app) as client:
        resp = await client.get("/status")
        assert resp.status_code == 401


@pytest.mark.asyncio
async def test_wrong_key_rejected(app: FastAPI) -> None:
    async with _client(app) as client:
        resp = await client.post("/create-session", json={}, headers={"x-api-key": "nope"})
        assert resp.status_code == 403


# --- Create session / QR ---


@pytest.mark.asyncio
async def test_create_session_returns_qr(app: FastAPI, factory: FakeTransportFactory) -> None:
    factory.on_create = lambda handle: handle.emit(QrIssued("XYZ"))
    async with _client(app) as client:
        resp = await client.post(
            "/create-session", json={"sessionId": "acct1", "instanceId": "inst-1"}, headers=AUTH,
        )

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["status"] == "qr_ready"
    assert body["qr"] == "XYZ"
    assert body["qrcode"].startswith("data:image/png;base64,")


@pytest.mark.asyncio
async def test_create_session_without_qr_yet(app: FastAPI) -> None:
    async with _client(app) as client:
        resp = await client.post("/create-session", json={"sessionId": "slow"}, headers=AUTH)

    body = resp.json()
    assert resp.status_code == 200
    assert body["status"] == "connecting"
    assert body["message"] == "Session created, waiting for QR code"
    assert "qr" not in body


@pytest.mark.asyncio
async def test_create_session_defaults_id(app: FastAPI, gateway_registry: SessionRegistry) -> None:
    async with _client(app) as client:
        await client.post("/create-session", headers=AUTH)
    assert "default" in gateway_registry


@pytest.mark.asyncio
async def test_qr_expires_after_ttl(app: FastAPI, factory: FakeTransportFactory, clock: FakeClock) -> None:
    factory.on_create = lambda handle: handle.emit(QrIssued("XYZ"))
    async with _client(app) as client:
        await client.post("/create-session", json={"sessionId": "acct1"}, headers=AUTH)

        clock.advance(10)
        resp = await client.get("/qrcode", params={"sessionId": "acct1"})
        assert resp.json()["qr"] == "XYZ"
        assert resp.json()["qrcode"].startswith("data:image/png;base64,")

        clock.advance(55)
        resp = await client.get("/qrcode", params={"sessionId": "acct1"})
        body = resp.json()
        assert body["status"] in ("disconnected", "connecting")
        assert "qr" not in body
        assert "qrcode" not in body


@pytest.mark.asyncio
async def test_qrcode_for_unknown_session(app: FastAPI) -> None:
    async with _client(app) as client:
        resp = await client.get("/qrcode", params={"sessionId": "ghost"})
    assert resp.status_code == 200
    assert resp.json() == {"status": "disconnected", "message": "Session not found"}


@pytest.mark.asyncio
async def test_create_on_connected_session_keeps_handle(
    app: FastAPI, gateway_registry: SessionRegistry, factory: FakeTransportFactory,
) -> None:
    await _connect(gateway_registry, factory, "acct1")
    async with _client(app) as client:
        resp = await client.post("/create-session", json={"sessionId": "acct1"}, headers=AUTH)

    body = resp.json()
    assert body["status"] == "connected"
    assert body["phone"] == "5511999999999"
    assert len(factory.handles) == 1


@pytest.mark.asyncio
async def test_create_session_construction_error(app: FastAPI, factory: FakeTransportFactory) -> None:
    factory.error = RuntimeError("corrupt credentials")
    async with _client(app) as client:
        resp = await client.post("/create-session", json={"sessionId": "acct1"}, headers=AUTH)

    assert resp.status_code == 502
    body = resp.json()
    assert body["success"] is False
    assert body["status"] == "error"
    assert "corrupt credentials" in body["error"]


@pytest.mark.asyncio
async def test_create_session_rejects_bad_id(app: FastAPI) -> None:
    async with _client(app) as client:
        resp = await client.post("/create-session", json={"sessionId": "../etc"}, headers=AUTH)
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_create_session_rejects_malformed_json(app: FastAPI) -> None:
    async with _client(app) as client:
        resp = await client.post(
            "/create-session",
            content=b"{not json",
            headers={**AUTH, "content-type": "application/json"},
        )
    assert resp.status_code == 400
    assert resp.json()["success"] is False


# --- Status ---


@pytest.mark.asyncio
async def test_status_aggregate(app: FastAPI, gateway_registry: SessionRegistry, factory: FakeTransportFactory) -> None:
    await _connect(gateway_registry, factory, "acct1")
    await gateway_registry.get_or_create("acct2")
    async with _client(app) as client:
        resp = await client.get("/status", headers=AUTH)

    body = resp.json()
    assert body["success"] is True
    assert body["total"] == 2
    assert body["sessions"]["acct1"]["status"] == "connected"
    assert body["sessions"]["acct1"]["phone"] == "5511999999999"
    assert body["sessions"]["acct2"]["status"] == "disconnected"
    assert body["sessions"]["acct2"]["hasQR"] is False


@pytest.mark.asyncio
async def test_status_single_session(app: FastAPI, gateway_registry: SessionRegistry, factory: FakeTransportFactory) -> None:
    await _connect(gateway_registry, factory, "acct1")
    async with _client(app) as client:
        resp = await client.get("/status", params={"sessionId": "acct1"}, headers=AUTH)

    body = resp.json()
    assert body["sessionId"] == "acct1"
    assert body["status"] == "connected"
    assert body["reconnectAttempts"] == 0


@pytest.mark.asyncio
async def test_status_unknown_session(app: FastAPI) -> None:
    async with _client(app) as client:
        resp = await client.get("/status", params={"sessionId": "ghost"}, headers=AUTH)
    assert resp.status_code == 404


# --- Send message ---


@pytest.mark.asyncio
async def test_send_message(app: FastAPI, gateway_registry: SessionRegistry, factory: FakeTransportFactory) -> None:
    await _connect(gateway_registry, factory, "acct1")
    async with _client(app) as client:
        resp = await client.post(
            "/send-message",
            json={"sessionId": "acct1", "phone": "5511888888888", "message": "hi"},
            headers=AUTH,
        )

    assert resp.status_code == 200
    assert resp.json() == {"success": True, "messageId": "MSG1"}
    assert factory.latest.sent == [("5511888888888@s.whatsapp.net", {"text": "hi"})]


@pytest.mark.asyncio
async def test_send_message_image(app: FastAPI, gateway_registry: SessionRegistry, factory: FakeTransportFactory) -> None:
    await _connect(gateway_registry, factory, "acct1")
    async with _client(app) as client:
        resp = await client.post(
            "/send-message",
            json={"sessionId": "acct1", "to": "5511888888888", "image": "https://cdn.example/a.png", "caption": "c"},
            headers=AUTH,
        )

    assert resp.status_code == 200
    assert factory.latest.sent[0][1] == {"image": {"url": "https://cdn.example/a.png"}, "caption": "c"}


@pytest.mark.asyncio
async def test_send_message_when_disconnected(
    app: FastAPI, gateway_registry: SessionRegistry, factory: FakeTransportFactory,
) -> None:
    await _connect(gateway_registry, factory, "acct1")
    handle = factory.latest
    await gateway_registry.disconnect("acct1")

    async with _client(app) as client:
        resp = await client.post(
            "/send-message",
            json={"sessionId": "acct1", "phone": "5511888888888", "message": "hi"},
            headers=AUTH,
        )

    assert resp.status_code == 409
    assert resp.json() == {"success": False, "error": "Session not connected"}
    assert handle.sent == []


@pytest.mark.asyncio
async def test_send_message_requires_phone(app: FastAPI) -> None:
    async with _client(app) as client:
        resp = await client.post("/send-message", json={"message": "hi"}, headers=AUTH)
    assert resp.status_code == 400
    assert "phone" in resp.json()["error"]


@pytest.mark.asyncio
async def test_send_message_transport_failure(
    app: FastAPI, gateway_registry: SessionRegistry, factory: FakeTransportFactory,
) -> None:
    await _connect(gateway_registry, factory, "acct1")
    factory.latest.send_error = RuntimeError("rate limited")
    async with _client(app) as client:
        resp = await client.post(
            "/send-message",
            json={"sessionId": "acct1", "phone": "5511888888888", "message": "hi"},
            headers=AUTH,
        )
    assert resp.status_code == 502


# --- Disconnect / delete ---


@pytest.mark.asyncio
@pytest.mark.parametrize("path", ["/disconnect", "/logout"])
async def test_disconnect_signs_out(
    app: FastAPI, gateway_registry: SessionRegistry, factory: FakeTransportFactory, path: str,
) -> None:
    await _connect(gateway_registry, factory, "acct1")
    handle = factory.latest
    async with _client(app) as client:
        resp = await client.post(path, json={"sessionId": "acct1"}, headers=AUTH)

    assert resp.status_code == 200
    assert resp.json()["success"] is True
    assert handle.logged_out
    session = gateway_registry.get("acct1")
    assert session is not None and session.state is SessionState.DISCONNECTED


@pytest.mark.asyncio
async def test_delete_session(
    app: FastAPI, gateway_registry: SessionRegistry, factory: FakeTransportFactory, auth_root: Path,
) -> None:
    await _connect(gateway_registry, factory, "acct1")
    assert (auth_root / "acct1").is_dir()

    async with _client(app) as client:
        resp = await client.delete("/session/acct1", headers=AUTH)
        assert resp.status_code == 200
        status = await client.get("/status", params={"sessionId": "acct1"}, headers=AUTH)
        assert status.status_code == 404

    assert not (auth_root / "acct1").exists()
    fresh = await gateway_registry.get_or_create("acct1")
    assert fresh.state is SessionState.DISCONNECTED
    assert fresh.phone_number is None
    assert not fresh.qr.has_qr


@pytest.mark.asyncio
async def test_delete_default_session(app: FastAPI, gateway_registry: SessionRegistry) -> None:
    await gateway_registry.get_or_create(None)
    async with _client(app) as client:
        resp = await client.delete("/session", headers=AUTH)
    assert resp.status_code == 200
    assert "default" not in gateway_registry
