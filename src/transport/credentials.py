"""Per-session credential directories.

The directory contents belong to the transport library; this store only
reserves, wipes and removes the directory of a session.
"""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
from pathlib import Path

from src.sessions.errors import InvalidSessionIdError

logger = logging.getLogger(__name__)

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")


def validate_session_id(session_id: str) -> str:
    """Return ``session_id`` if it is safe to use as a directory name."""
    if not _SESSION_ID_RE.fullmatch(session_id) or ".." in session_id:
        raise InvalidSessionIdError(f"Invalid session id: {session_id!r}")
    return session_id


class CredentialStore:
    """Directory-backed credential locations, one directory per session id."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def path_for(self, session_id: str) -> Path:
        return self.root / validate_session_id(session_id)

    async def ensure(self, session_id: str) -> Path:
        path = self.path_for(session_id)
        await asyncio.to_thread(path.mkdir, parents=True, exist_ok=True)
        return path

    async def remove(self, session_id: str) -> None:
        path = self.path_for(session_id)
        if await asyncio.to_thread(path.exists):
            await asyncio.to_thread(shutil.rmtree, path)
            logger.info("[%s] Credential directory removed", session_id)

    async def wipe(self, session_id: str) -> Path:
        """Empty the directory, leaving a fresh one in place."""
        await self.remove(session_id)
        return await self.ensure(session_id)
