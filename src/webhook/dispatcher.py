"""Outbound webhook delivery with bounded retry.

Delivery is best effort: every event gets at most ``max_attempts`` POSTs,
after which it is logged and dropped. Events are delivered independently,
so a failing ``qr`` delivery never holds back a later ``connected`` one.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

import httpx

from src.models import (
    AuditEvent,
    AuditEventType,
    RiskLevel,
    WebhookEnvelope,
    WebhookEventType,
)

if TYPE_CHECKING:
    from src.audit.logger import AuditLogger

logger = logging.getLogger(__name__)

_DEFAULT_MAX_ATTEMPTS = 3
_DEFAULT_RETRY_DELAY = 1.0
_DEFAULT_TIMEOUT = 10.0
_DRAIN_TIMEOUT = 15.0


class WebhookDispatcher:
    """Posts event envelopes to a single configured endpoint."""

    def __init__(
        self,
        url: str | None,
        max_attempts: int = _DEFAULT_MAX_ATTEMPTS,
        retry_delay: float = _DEFAULT_RETRY_DELAY,
        timeout: float = _DEFAULT_TIMEOUT,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        self._url = url
        self._max_attempts = max(1, max_attempts)
        self._retry_delay = retry_delay
        self._timeout = timeout
        self._audit = audit_logger
        self._pending: set[asyncio.Task[bool]] = set()

    @property
    def enabled(self) -> bool:
        return bool(self._url)

    def submit(
        self,
        event_type: WebhookEventType,
        session_id: str,
        data: dict[str, Any],
        instance_id: str | None = None,
    ) -> asyncio.Task[bool] | None:
        """Schedule delivery in the background and return immediately."""
        if not self.enabled:
            return None
        task = asyncio.create_task(
            self.deliver(event_type, session_id, data, instance_id),
            name=f"webhook-{event_type.value}-{session_id}",
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def deliver(
        self,
        event_type: WebhookEventType,
        session_id: str,
        data: dict[str, Any],
        instance_id: str | None = None,
    ) -> bool:
        """Deliver one event, retrying on errors and non-2xx responses.

        Returns True when the endpoint acknowledged the event.
        """
        if not self._url:
            return False

        envelope = WebhookEnvelope(
            type=event_type,
            session_id=session_id,
            instance_id=instance_id or session_id,
            data=data,
        )
        payload = envelope.model_dump(mode="json", by_alias=True)

        last_failure = ""
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            for attempt in range(1, self._max_attempts + 1):
                try:
                    resp = await client.post(self._url, json=payload)
                except httpx.HTTPError as exc:
                    last_failure = f"{type(exc).__name__}: {exc}"
                else:
                    if 200 <= resp.status_code < 300:
                        logger.debug(
                            "[%s] Webhook %s delivered (attempt %d)",
                            session_id, event_type.value, attempt,
                        )
                        return True
                    last_failure = f"HTTP {resp.status_code}"

                logger.warning(
                    "[%s] Webhook %s attempt %d/%d failed: %s",
                    session_id, event_type.value, attempt, self._max_attempts, last_failure,
                )
                if attempt < self._max_attempts:
                    await asyncio.sleep(self._retry_delay * attempt)

        logger.error(
            "[%s] Webhook %s dropped after %d attempts",
            session_id, event_type.value, self._max_attempts,
        )
        if self._audit:
            self._audit.log(AuditEvent(
                event_type=AuditEventType.WEBHOOK_DROPPED,
                session_id=session_id,
                action=f"webhook:{event_type.value}",
                result="dropped",
                risk_level=RiskLevel.LOW,
                details={"attempts": self._max_attempts, "last_failure": last_failure},
            ))
        return False

    async def aclose(self, timeout: float = _DRAIN_TIMEOUT) -> None:
        """Wait for in-flight deliveries, cancelling whatever outlives ``timeout``."""
        if not self._pending:
            return
        pending = set(self._pending)
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning("Cancelled %d undelivered webhook(s) on shutdown", len(still_running))
