"""Connection lifecycle state machine.

Maps transport events onto session state transitions:

- ``QrIssued``: store the pairing payload, move to ``qr_ready``.
- ``Authenticated``: clear the QR, record the phone, reset the retry
  counter, move to ``connected``.
- ``Closed``: release the handle, move to ``disconnected`` and, unless the
  closure was a logout or the retry budget is spent, schedule a reconnect.
- ``MessageBatch``: forward kept messages as ``message`` webhooks.

Every transition that clients care about is reported through the webhook
dispatcher without waiting for delivery.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from src.models import (
    AuditEvent,
    AuditEventType,
    RiskLevel,
    SessionState,
    WebhookEventType,
)
from src.qr.render import render_ascii
from src.sessions.ingest import MessageIngestor
from src.sessions.session import Session, phone_from_account
from src.transport.base import (
    Authenticated,
    Closed,
    MessageBatch,
    QrIssued,
    Transport,
    TransportEvent,
)

if TYPE_CHECKING:
    from src.audit.logger import AuditLogger
    from src.webhook.dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)


class ReconnectPolicy:
    """Bounded linear backoff: ``min(base_delay * attempt, max_delay)``."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 5.0,
        max_delay: float = 60.0,
    ) -> None:
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max(max_delay, base_delay)

    def backoff(self, attempt: int) -> float:
        return min(self.base_delay * max(attempt, 1), self.max_delay)

    def should_retry(self, attempts: int) -> bool:
        return attempts < self.max_attempts


ScheduleReconnect = Callable[[Session, float], None]
CloseTransport = Callable[[str, Transport], Awaitable[None]]


class ConnectionLifecycle:
    def __init__(
        self,
        dispatcher: WebhookDispatcher,
        policy: ReconnectPolicy,
        schedule_reconnect: ScheduleReconnect,
        close_transport: CloseTransport,
        ingestor: MessageIngestor | None = None,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._policy = policy
        self._schedule_reconnect = schedule_reconnect
        self._close_transport = close_transport
        self._ingestor = ingestor or MessageIngestor()
        self._audit = audit_logger

    async def apply(self, session: Session, event: TransportEvent) -> None:
        if isinstance(event, QrIssued):
            self._on_qr(session, event)
        elif isinstance(event, Authenticated):
            self._on_authenticated(session, event)
        elif isinstance(event, Closed):
            await self._on_closed(session, event)
        elif isinstance(event, MessageBatch):
            self._on_messages(session, event)
        else:
            logger.warning("[%s] Ignoring unknown transport event %r", session.id, event)

    def _emit(self, session: Session, event_type: WebhookEventType, data: dict[str, object]) -> None:
        self._dispatcher.submit(event_type, session.id, data, session.instance_id or session.id)

    def _on_qr(self, session: Session, event: QrIssued) -> None:
        if session.state is SessionState.CONNECTED:
            logger.warning("[%s] Pairing payload received while connected; ignored", session.id)
            return
        session.mark_qr(event.payload)
        logger.info("[%s] QR code available", session.id)
        if session.print_qr:
            logger.info("[%s] Scan to pair:\n%s", session.id, render_ascii(event.payload))
        self._emit(session, WebhookEventType.QR, {"qr": event.payload})

    def _on_authenticated(self, session: Session, event: Authenticated) -> None:
        session.mark_connected(phone_from_account(event.account_id))
        logger.info("[%s] Connected: %s", session.id, session.phone_number)
        self._emit(session, WebhookEventType.CONNECTED, {"phone": session.phone_number})
        if self._audit:
            self._audit.log(AuditEvent(
                event_type=AuditEventType.SESSION_CONNECTED,
                session_id=session.id,
                action="authenticated",
                result="success",
                risk_level=RiskLevel.INFO,
                details={"phone": session.phone_number},
            ))

    async def _on_closed(self, session: Session, event: Closed) -> None:
        # State is settled before the first await; a connect() may run
        # while the old handle is closing.
        transport = session.transport
        session.transport = None
        session.generation += 1
        session.mark_disconnected()

        reconnect = not event.logged_out and self._policy.should_retry(session.reconnect_attempts)
        delay: float | None = None
        if reconnect:
            session.reconnect_attempts += 1
            delay = self._policy.backoff(session.reconnect_attempts)
            self._schedule_reconnect(session, delay)

        if event.logged_out:
            logger.warning("[%s] Logged out remotely; new pairing required", session.id)
        elif reconnect:
            logger.warning(
                "[%s] Connection closed (%s); reconnect %d/%d in %.1fs",
                session.id, event.reason.value, session.reconnect_attempts,
                self._policy.max_attempts, delay,
            )
        else:
            logger.error(
                "[%s] Connection closed (%s); giving up after %d reconnect attempts",
                session.id, event.reason.value, session.reconnect_attempts,
            )

        self._emit(session, WebhookEventType.DISCONNECTED, {
            "reason": event.reason.value,
            "statusCode": event.status_code,
            "reconnect": reconnect,
            "reconnectAttempts": session.reconnect_attempts,
        })
        if self._audit:
            self._audit.log(AuditEvent(
                event_type=AuditEventType.SESSION_DISCONNECTED,
                session_id=session.id,
                action="closed",
                result=event.reason.value,
                risk_level=RiskLevel.MEDIUM if event.logged_out else RiskLevel.LOW,
                details={"status_code": event.status_code, "reconnect": reconnect},
            ))

        if transport is not None:
            await self._close_transport(session.id, transport)

    def _on_messages(self, session: Session, event: MessageBatch) -> None:
        for packet in self._ingestor.ingest(session.id, event.messages):
            self._emit(session, WebhookEventType.MESSAGE, packet)
