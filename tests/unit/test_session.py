"""Tests for the session record and QR issuance tracker."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from src.models import SessionState
from src.sessions.qr import QrTracker
from src.sessions.session import Session, phone_from_account
from tests.conftest import FakeClock


def _make_session(clock: FakeClock | None = None, ttl: float = 60.0) -> Session:
    tracker = QrTracker(ttl_seconds=ttl, clock=clock or FakeClock())
    return Session(id="acct1", credentials_dir=Path("/tmp/auth/acct1"), qr=tracker)


class TestQrTracker:
    def test_empty_tracker(self) -> None:
        tracker = QrTracker(clock=FakeClock())
        assert tracker.current() is None
        assert not tracker.has_qr
        assert tracker.issued_at is None

    def test_fresh_payload_is_returned(self) -> None:
        clock = FakeClock()
        tracker = QrTracker(ttl_seconds=60, clock=clock)
        tracker.issue("2@abc")
        clock.advance(60)
        assert tracker.current() == "2@abc"
        assert tracker.issued_at == 1000.0

    def test_expired_payload_is_cleared(self) -> None:
        clock = FakeClock()
        tracker = QrTracker(ttl_seconds=60, clock=clock)
        tracker.issue("2@abc")
        clock.advance(60.5)
        assert tracker.current() is None
        assert tracker.issued_at is None

    def test_issue_restarts_ttl(self) -> None:
        clock = FakeClock()
        tracker = QrTracker(ttl_seconds=60, clock=clock)
        tracker.issue("old")
        clock.advance(50)
        tracker.issue("new")
        clock.advance(50)
        assert tracker.current() == "new"

    def test_clear(self) -> None:
        tracker = QrTracker(clock=FakeClock())
        tracker.issue("2@abc")
        tracker.clear()
        assert not tracker.has_qr


class TestSession:
    def test_phone_from_account(self) -> None:
        assert phone_from_account("5511999999999:12@s.whatsapp.net") == "5511999999999"
        assert phone_from_account("5511999999999@s.whatsapp.net") == "5511999999999"
        assert phone_from_account(None) is None
        assert phone_from_account("") is None

    def test_mark_connecting_clears_previous_run(self) -> None:
        session = _make_session()
        session.mark_connected("5511")
        session.mark_connecting()
        assert session.state is SessionState.CONNECTING
        assert session.phone_number is None
        assert session.connected_at is None

    def test_qr_expiry_falls_back_to_connecting(self) -> None:
        clock = FakeClock()
        session = _make_session(clock)
        session.mark_qr("2@abc")

        clock.advance(10)
        assert session.current_qr() == "2@abc"
        assert session.state is SessionState.QR_READY

        clock.advance(55)
        assert session.current_qr() is None
        assert session.state is SessionState.CONNECTING

    def test_snapshot_reflects_state(self) -> None:
        session = _make_session()
        session.instance_id = "inst-1"
        session.mark_connected("5511999999999")

        snap = session.snapshot()

        assert snap.status is SessionState.CONNECTED
        assert snap.phone == "5511999999999"
        assert not snap.has_qr
        dumped = snap.model_dump(mode="json", by_alias=True)
        assert dumped["instanceId"] == "inst-1"
        assert dumped["hasQR"] is False
        assert dumped["reconnectAttempts"] == 0

    def test_snapshot_hides_phone_when_not_connected(self) -> None:
        session = _make_session()
        session.phone_number = "5511"
        session.set_state(SessionState.DISCONNECTED)
        assert session.snapshot().phone is None

    def test_reset_forgets_history(self) -> None:
        session = _make_session()
        session.reconnect_attempts = 3
        session.mark_error("boom")
        session.reset()
        assert session.reconnect_attempts == 0
        assert session.last_error is None

    @pytest.mark.asyncio
    async def test_wait_for_wakes_on_change(self) -> None:
        session = _make_session()
        waiter = asyncio.create_task(session.wait_for({SessionState.CONNECTED}, timeout=1.0))
        await asyncio.sleep(0)
        session.mark_connecting()
        await asyncio.sleep(0)
        assert not waiter.done()

        session.mark_connected("5511")

        assert await waiter is True

    @pytest.mark.asyncio
    async def test_wait_for_times_out(self) -> None:
        session = _make_session()
        assert await session.wait_for({SessionState.CONNECTED}, timeout=0.01) is False

    @pytest.mark.asyncio
    async def test_wait_for_returns_immediately_when_in_state(self) -> None:
        session = _make_session()
        assert await session.wait_for({SessionState.DISCONNECTED}, timeout=0) is True
