"""Session registry: creation, connection, teardown and reads for all sessions.

The registry exclusively owns every ``Session``. Mutating operations on one
session are serialized by the session's lock; transport events for a session
are applied in emit order by a single consumer task per session.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from functools import partial
from typing import TYPE_CHECKING

from src.models import (
    AuditEvent,
    AuditEventType,
    RiskLevel,
    SessionSnapshot,
    SessionState,
    WebhookEventType,
)
from src.sessions.errors import (
    SessionNotConnectedError,
    TransportConstructionError,
    TransportError,
)
from src.sessions.ingest import MessageIngestor
from src.sessions.lifecycle import ConnectionLifecycle, ReconnectPolicy
from src.sessions.outbound import build_content, normalize_jid
from src.sessions.qr import DEFAULT_QR_TTL_SECONDS, QrTracker
from src.sessions.session import Session
from src.transport.base import Transport, TransportContext, TransportEvent, TransportFactory
from src.transport.credentials import CredentialStore, validate_session_id

if TYPE_CHECKING:
    from src.audit.logger import AuditLogger
    from src.webhook.dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)

DEFAULT_SESSION_ID = "default"

# States in which a create request has something to show the caller.
OUTCOME_STATES = frozenset({SessionState.QR_READY, SessionState.CONNECTED, SessionState.ERROR})


class SessionRegistry:
    """Owns all sessions of the process and orchestrates their connections."""

    def __init__(
        self,
        credentials: CredentialStore,
        transport_factory: TransportFactory,
        dispatcher: WebhookDispatcher,
        policy: ReconnectPolicy | None = None,
        qr_ttl_seconds: float = DEFAULT_QR_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        audit_logger: AuditLogger | None = None,
        logout_on_shutdown: bool = True,
        ingestor: MessageIngestor | None = None,
    ) -> None:
        self._credentials = credentials
        self._factory = transport_factory
        self._dispatcher = dispatcher
        self._policy = policy or ReconnectPolicy()
        self._qr_ttl = qr_ttl_seconds
        self._clock = clock
        self._audit = audit_logger
        self._logout_on_shutdown = logout_on_shutdown
        self._sessions: dict[str, Session] = {}
        self._lifecycle = ConnectionLifecycle(
            dispatcher=dispatcher,
            policy=self._policy,
            schedule_reconnect=self._schedule_reconnect,
            close_transport=self._close_quietly,
            ingestor=ingestor,
            audit_logger=audit_logger,
        )

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    @property
    def policy(self) -> ReconnectPolicy:
        return self._policy

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    async def get_or_create(self, session_id: str | None = None) -> Session:
        """Return the session for ``session_id``, allocating it on first use.

        The record is inserted before the first await, so concurrent callers
        for one id always share a single record.
        """
        session_id = validate_session_id(session_id or DEFAULT_SESSION_ID)
        session = self._sessions.get(session_id)
        if session is None:
            session = Session(
                id=session_id,
                credentials_dir=self._credentials.path_for(session_id),
                qr=QrTracker(ttl_seconds=self._qr_ttl, clock=self._clock),
            )
            self._sessions[session_id] = session
            logger.info("[%s] New session created", session_id)
        await self._credentials.ensure(session_id)
        return session

    async def connect(
        self,
        session_id: str | None = None,
        *,
        fresh: bool = False,
        force: bool = False,
        print_qr: bool = False,
        instance_id: str | None = None,
        reset_attempts: bool = True,
    ) -> Session:
        """Make sure ``session_id`` has a live transport handle.

        A session that is already connected is returned untouched unless
        ``fresh`` (wipe credentials, pair again) or ``force`` (rebuild the
        handle) is set. Returns once the handle exists; pairing and
        authentication progress is reported asynchronously.

        Raises:
            InvalidSessionIdError: If ``session_id`` is not usable.
            TransportConstructionError: If the handle could not be built.
        """
        while True:
            session = await self.get_or_create(session_id)
            async with session.lock:
                if session.deleted:
                    continue  # deleted while we waited for the lock
                return await self._connect_locked(
                    session,
                    fresh=fresh,
                    force=force,
                    print_qr=print_qr,
                    instance_id=instance_id,
                    reset_attempts=reset_attempts,
                )

    async def _connect_locked(
        self,
        session: Session,
        *,
        fresh: bool,
        force: bool,
        print_qr: bool,
        instance_id: str | None,
        reset_attempts: bool,
    ) -> Session:
        self._cancel_reconnect(session)

        if (
            session.state is SessionState.CONNECTED
            and session.transport is not None
            and not (fresh or force)
        ):
            logger.info("[%s] Already connected; keeping the current connection", session.id)
            return session

        if reset_attempts:
            session.reconnect_attempts = 0
        if instance_id:
            session.instance_id = instance_id
        session.print_qr = print_qr

        await self._release(session)
        if fresh:
            session.reset()
            await self._credentials.wipe(session.id)
            logger.info("[%s] Credentials wiped for a fresh pairing", session.id)
        else:
            await self._credentials.ensure(session.id)

        session.generation += 1
        generation = session.generation
        session.mark_connecting()
        self._ensure_consumer(session)

        if self._audit:
            self._audit.log(AuditEvent(
                event_type=AuditEventType.SESSION_CONNECT,
                session_id=session.id,
                action="connect",
                result="started",
                risk_level=RiskLevel.INFO,
                details={"fresh": fresh, "force": force, "attempt": session.reconnect_attempts},
            ))

        context = TransportContext(
            session_id=session.id,
            credentials_dir=session.credentials_dir,
            emit=partial(self._enqueue, session, generation),
            print_qr=print_qr,
        )
        try:
            transport = await self._factory(context)
        except Exception as exc:
            if session.generation == generation:
                session.generation += 1
                session.mark_error(str(exc) or type(exc).__name__)
            logger.error("[%s] Could not create transport: %s", session.id, exc)
            raise TransportConstructionError(
                f"Could not create transport for session '{session.id}': {exc}",
            ) from exc

        if session.generation != generation or session.deleted:
            # Superseded while constructing (the handle closed already).
            logger.info("[%s] Discarding superseded transport handle", session.id)
            await self._close_quietly(session.id, transport)
            return session

        session.transport = transport
        logger.info("[%s] Connection initiated", session.id)
        return session

    async def wait_for_outcome(self, session_id: str, timeout: float) -> Session | None:
        """Wait up to ``timeout`` seconds for a QR code, a connection or an error."""
        session = self._sessions.get(session_id)
        if session is None:
            return None
        await session.wait_for(OUTCOME_STATES, timeout)
        return session

    async def disconnect(
        self,
        session_id: str | None = None,
        *,
        sign_out: bool = True,
        strict: bool = True,
        reason: str = "requested",
    ) -> None:
        """Close the session's connection, keeping its credentials.

        An authenticated connection is signed out when ``sign_out`` is set;
        anything else is simply released. With ``strict``, a failing sign-out
        is raised as ``TransportError`` after the session has been reset.
        """
        session_id = validate_session_id(session_id or DEFAULT_SESSION_ID)
        session = self._sessions.get(session_id)
        if session is None:
            return

        async with session.lock:
            self._cancel_reconnect(session)
            authenticated = session.state is SessionState.CONNECTED
            had_transport = session.transport is not None
            try:
                await self._release(session, sign_out=sign_out and authenticated, strict=strict)
            finally:
                session.mark_disconnected()
                if had_transport:
                    self._dispatcher.submit(
                        WebhookEventType.DISCONNECTED,
                        session.id,
                        {
                            "reason": reason,
                            "statusCode": None,
                            "reconnect": False,
                            "reconnectAttempts": session.reconnect_attempts,
                        },
                        session.instance_id or session.id,
                    )
                logger.info("[%s] Disconnected (%s)", session.id, reason)

        if self._audit:
            self._audit.log(AuditEvent(
                event_type=AuditEventType.SESSION_DISCONNECTED,
                session_id=session_id,
                action="disconnect",
                result=reason,
                risk_level=RiskLevel.INFO,
                details={"signed_out": sign_out and authenticated},
            ))

    async def delete(self, session_id: str | None = None) -> None:
        """Disconnect, delete the credential directory and forget the session."""
        session_id = validate_session_id(session_id or DEFAULT_SESSION_ID)
        session = self._sessions.get(session_id)
        if session is not None:
            await self.disconnect(session_id, strict=False, reason="deleted")
            async with session.lock:
                session.deleted = True
                self._cancel_reconnect(session)
                await self._release(session)
                if session.consumer is not None:
                    session.consumer.cancel()
                await self._credentials.remove(session_id)
                if self._sessions.get(session_id) is session:
                    del self._sessions[session_id]
        else:
            await self._credentials.remove(session_id)

        logger.info("[%s] Session deleted", session_id)
        if self._audit:
            self._audit.log(AuditEvent(
                event_type=AuditEventType.SESSION_DELETED,
                session_id=session_id,
                action="delete",
                result="success",
                risk_level=RiskLevel.MEDIUM,
            ))

    def snapshot(self, session_id: str) -> SessionSnapshot | None:
        session = self._sessions.get(session_id)
        return session.snapshot() if session else None

    def snapshot_all(self) -> dict[str, SessionSnapshot]:
        return {sid: session.snapshot() for sid, session in self._sessions.items()}

    async def send_message(
        self,
        session_id: str | None,
        to: str,
        text: str | None = None,
        image: str | None = None,
        caption: str | None = None,
    ) -> str | None:
        """Send a message through a connected session and return its id.

        Raises:
            ValueError: If the recipient or the content is invalid.
            SessionNotConnectedError: If the session is not connected.
            TransportError: If the transport rejects the message.
        """
        session_id = validate_session_id(session_id or DEFAULT_SESSION_ID)
        session = self._sessions.get(session_id)
        if session is None or session.state is not SessionState.CONNECTED or session.transport is None:
            raise SessionNotConnectedError(session_id)

        jid = normalize_jid(to)
        content = build_content(text=text, image=image, caption=caption)
        try:
            message_id = await session.transport.send(jid, content)
        except Exception as exc:
            logger.error("[%s] Send to %s failed: %s", session_id, jid, exc)
            raise TransportError(f"Failed to send message: {exc}") from exc

        logger.info("[%s] Message sent to %s", session_id, jid)
        if self._audit:
            self._audit.log(AuditEvent(
                event_type=AuditEventType.MESSAGE_SENT,
                session_id=session_id,
                action="send_message",
                result="success",
                risk_level=RiskLevel.INFO,
                details={"to": jid, "kind": "image" if image else "text"},
            ))
        return message_id

    async def shutdown(self) -> None:
        """Best-effort disconnect of every session, then drain pending webhooks."""
        logger.info("Shutting down %d session(s)", len(self._sessions))
        for session_id in list(self._sessions):
            try:
                await self.disconnect(
                    session_id,
                    sign_out=self._logout_on_shutdown,
                    strict=False,
                    reason="shutdown",
                )
            except Exception:
                logger.exception("[%s] Error during shutdown", session_id)

        tasks: list[asyncio.Task[None]] = []
        for session in self._sessions.values():
            for task in (session.consumer, session.reconnect_task):
                if task is not None and not task.done():
                    task.cancel()
                    tasks.append(task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self._dispatcher.aclose()

    # --- internals ---

    def _enqueue(self, session: Session, generation: int, event: TransportEvent) -> None:
        if session.deleted:
            return
        session.events.put_nowait((generation, event))

    def _ensure_consumer(self, session: Session) -> None:
        if session.consumer is None or session.consumer.done():
            session.consumer = asyncio.create_task(
                self._consume(session), name=f"session-events-{session.id}",
            )

    async def _consume(self, session: Session) -> None:
        while True:
            generation, event = await session.events.get()
            try:
                if generation != session.generation or session.deleted:
                    logger.debug(
                        "[%s] Dropping %s from a superseded handle",
                        session.id, type(event).__name__,
                    )
                    continue
                await self._lifecycle.apply(session, event)
            except Exception:
                logger.exception("[%s] Error handling %s", session.id, type(event).__name__)
            finally:
                session.events.task_done()

    def _schedule_reconnect(self, session: Session, delay: float) -> None:
        self._cancel_reconnect(session)
        session.reconnect_task = asyncio.create_task(
            self._reconnect_later(session, session.generation, delay),
            name=f"session-reconnect-{session.id}",
        )

    def _cancel_reconnect(self, session: Session) -> None:
        task = session.reconnect_task
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        session.reconnect_task = None

    async def _reconnect_later(self, session: Session, generation: int, delay: float) -> None:
        await asyncio.sleep(delay)
        # Stale-timer guard: the session may have been deleted, replaced or
        # reconnected through another path while we slept.
        if self._sessions.get(session.id) is not session or session.deleted:
            return
        if session.generation != generation or session.state is SessionState.CONNECTED:
            return
        logger.info(
            "[%s] Reconnecting (attempt %d/%d)",
            session.id, session.reconnect_attempts, self._policy.max_attempts,
        )
        try:
            await self.connect(session.id, print_qr=session.print_qr, reset_attempts=False)
        except TransportConstructionError as exc:
            logger.warning("[%s] Reconnect failed: %s", session.id, exc)
        except Exception:
            logger.exception("[%s] Unexpected error while reconnecting", session.id)

    async def _release(self, session: Session, sign_out: bool = False, strict: bool = False) -> None:
        """Detach and close the session's handle. Safe to call repeatedly."""
        transport = session.transport
        session.transport = None
        session.generation += 1
        if transport is None:
            return
        if not sign_out:
            await self._close_quietly(session.id, transport)
            return
        try:
            await transport.logout()
        except Exception as exc:
            logger.warning("[%s] Sign-out failed: %s", session.id, exc)
            if strict:
                raise TransportError(f"Sign-out failed: {exc}") from exc
        finally:
            await self._close_quietly(session.id, transport)

    async def _close_quietly(self, session_id: str, transport: Transport) -> None:
        try:
            await transport.close()
        except Exception as exc:
            logger.warning("[%s] Error closing transport: %s", session_id, exc)
