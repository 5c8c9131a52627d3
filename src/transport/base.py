"""Port between the session orchestrator and the messaging transport library.

A transport handle reports what happens on its connection by calling the
``emit`` callback it was built with. Every report is one of four event
variants; the orchestrator consumes them in order, one queue per session.
"""

from __future__ import annotations

import importlib
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Protocol


class CloseReason(str, Enum):
    LOGGED_OUT = "logged_out"
    CONNECTION_LOST = "connection_lost"
    CONNECTION_CLOSED = "connection_closed"
    TIMED_OUT = "timed_out"
    RESTART_REQUIRED = "restart_required"
    REPLACED = "replaced"
    UNKNOWN = "unknown"


# Status codes used by the device-linking protocol's disconnect reasons.
_STATUS_REASONS = {
    401: CloseReason.LOGGED_OUT,
    408: CloseReason.TIMED_OUT,
    428: CloseReason.CONNECTION_CLOSED,
    440: CloseReason.REPLACED,
    515: CloseReason.RESTART_REQUIRED,
}


def reason_from_status(status_code: int | None) -> CloseReason:
    """Map a transport disconnect status code onto a ``CloseReason``."""
    if status_code is None:
        return CloseReason.UNKNOWN
    return _STATUS_REASONS.get(status_code, CloseReason.CONNECTION_LOST)


@dataclass(frozen=True)
class QrIssued:
    payload: str


@dataclass(frozen=True)
class Authenticated:
    account_id: str | None = None


@dataclass(frozen=True)
class Closed:
    reason: CloseReason = CloseReason.UNKNOWN
    status_code: int | None = None
    detail: str | None = None

    @property
    def logged_out(self) -> bool:
        return self.reason is CloseReason.LOGGED_OUT


@dataclass(frozen=True)
class MessageBatch:
    messages: list[dict[str, Any]] = field(default_factory=list)


TransportEvent = QrIssued | Authenticated | Closed | MessageBatch


@dataclass(frozen=True)
class TransportContext:
    """Everything a factory needs to build the handle for one session."""

    session_id: str
    credentials_dir: Path
    emit: Callable[[TransportEvent], None]
    print_qr: bool = False


class Transport(Protocol):
    """Live connection handle for one session."""

    async def send(self, jid: str, content: dict[str, Any]) -> str | None:
        """Send ``content`` to ``jid`` and return the message id, if known."""
        ...

    async def logout(self) -> None:
        """Sign the linked device out, invalidating its credentials remotely."""
        ...

    async def close(self) -> None:
        """Release the connection without signing out. Must be idempotent."""
        ...


class TransportFactory(Protocol):
    async def __call__(self, context: TransportContext) -> Transport: ...


def load_transport_factory(path: str) -> TransportFactory:
    """Import a factory from a ``package.module:attribute`` path."""
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Transport factory must look like 'module:attribute', got {path!r}")
    module = importlib.import_module(module_name)
    factory = getattr(module, attr, None)
    if factory is None or not callable(factory):
        raise ValueError(f"{path!r} does not name a callable transport factory")
    return factory  # type: ignore[no-any-return]
