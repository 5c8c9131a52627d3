"""In-memory record of one tenant session."""

from __future__ import annotations

import asyncio
from collections.abc import Collection
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from src.models import SessionSnapshot, SessionState
from src.sessions.qr import QrTracker
from src.transport.base import Transport, TransportEvent


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def phone_from_account(account_id: str | None) -> str | None:
    """User part of an account id: ``5511999:12@s.whatsapp.net`` -> ``5511999``."""
    if not account_id:
        return None
    user = account_id.split("@", 1)[0].split(":", 1)[0]
    return user or None


@dataclass(eq=False)
class Session:
    """State of one session, owned exclusively by the registry.

    ``generation`` identifies the current transport handle. It is bumped
    whenever a handle is created or released, and events queued under an
    older generation are discarded by the consumer.
    """

    id: str
    credentials_dir: Path
    qr: QrTracker
    state: SessionState = SessionState.DISCONNECTED
    phone_number: str | None = None
    transport: Transport | None = None
    reconnect_attempts: int = 0
    instance_id: str | None = None
    print_qr: bool = False
    generation: int = 0
    last_error: str | None = None
    created_at: str = field(default_factory=_now_iso)
    connected_at: str | None = None
    deleted: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    events: asyncio.Queue[tuple[int, TransportEvent]] = field(
        default_factory=asyncio.Queue, repr=False,
    )
    consumer: asyncio.Task[None] | None = field(default=None, repr=False)
    reconnect_task: asyncio.Task[None] | None = field(default=None, repr=False)
    _changed: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    def set_state(self, state: SessionState) -> None:
        self.state = state
        self._notify()

    def _notify(self) -> None:
        # Wake everyone waiting on the old event, then arm a new one.
        self._changed.set()
        self._changed = asyncio.Event()

    def mark_connecting(self) -> None:
        self.qr.clear()
        self.phone_number = None
        self.connected_at = None
        self.last_error = None
        self.set_state(SessionState.CONNECTING)

    def mark_qr(self, payload: str) -> None:
        self.qr.issue(payload)
        self.set_state(SessionState.QR_READY)

    def mark_connected(self, phone_number: str | None) -> None:
        self.qr.clear()
        self.phone_number = phone_number
        self.reconnect_attempts = 0
        self.last_error = None
        self.connected_at = _now_iso()
        self.set_state(SessionState.CONNECTED)

    def mark_disconnected(self) -> None:
        self.qr.clear()
        self.phone_number = None
        self.connected_at = None
        self.set_state(SessionState.DISCONNECTED)

    def mark_error(self, message: str) -> None:
        self.qr.clear()
        self.phone_number = None
        self.last_error = message
        self.set_state(SessionState.ERROR)

    def current_qr(self) -> str | None:
        """Fresh pairing payload, if any.

        Once the payload expires the session falls back from ``qr_ready`` to
        ``connecting``: the handle is still live and waiting for a new offer.
        """
        payload = self.qr.current() if self.state is SessionState.QR_READY else None
        if payload is None and self.state is SessionState.QR_READY:
            self.set_state(SessionState.CONNECTING)
        return payload

    def reset(self) -> None:
        """Forget pairing, account and retry history (fresh pairing)."""
        self.qr.clear()
        self.phone_number = None
        self.connected_at = None
        self.reconnect_attempts = 0
        self.last_error = None

    async def wait_for(self, states: Collection[SessionState], timeout: float) -> bool:
        """Wait until the session reaches one of ``states`` or ``timeout`` elapses."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while self.state not in states:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            changed = self._changed
            try:
                await asyncio.wait_for(changed.wait(), remaining)
            except TimeoutError:
                return self.state in states
        return True

    def snapshot(self) -> SessionSnapshot:
        has_qr = self.current_qr() is not None
        return SessionSnapshot(
            status=self.state,
            phone=self.phone_number if self.state is SessionState.CONNECTED else None,
            has_qr=has_qr,
            reconnect_attempts=self.reconnect_attempts,
            instance_id=self.instance_id or self.id,
            last_error=self.last_error,
            connected_at=self.connected_at,
        )
