"""QR issuance tracker: the current pairing payload of one session.

Expiry is lazy. Nothing runs in the background; a snapshot older than the
TTL is discarded the next time someone reads it.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass

DEFAULT_QR_TTL_SECONDS = 60.0


@dataclass(frozen=True)
class QrSnapshot:
    payload: str
    issued_at: float


class QrTracker:
    """Holds at most one pairing payload together with its issue time."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_QR_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._snapshot: QrSnapshot | None = None

    def issue(self, payload: str) -> QrSnapshot:
        """Replace the current snapshot with ``payload`` issued now."""
        self._snapshot = QrSnapshot(payload=payload, issued_at=self._clock())
        return self._snapshot

    def current(self) -> str | None:
        """Return the payload while it is fresh, clearing it once expired."""
        snapshot = self._snapshot
        if snapshot is None:
            return None
        if self._clock() - snapshot.issued_at > self._ttl:
            self._snapshot = None
            return None
        return snapshot.payload

    def clear(self) -> None:
        self._snapshot = None

    @property
    def has_qr(self) -> bool:
        return self.current() is not None

    @property
    def issued_at(self) -> float | None:
        return self._snapshot.issued_at if self._snapshot else None
