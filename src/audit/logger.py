"""Audit trail for session lifecycle and API access.

Events are appended as JSON Lines. Each line carries ``prev_hash``, the
SHA-256 of the line before it, so truncation or edits are detectable with
``validate_audit_chain``. The file is rotated by size.
"""

from __future__ import annotations

import fcntl
import hashlib
import json
import os
from dataclasses import dataclass
from pathlib import Path

from src.models import AuditEvent


@dataclass
class ChainValidationResult:
    valid: bool
    broken_at_line: int | None = None


def _line_hash(line: str) -> str:
    return hashlib.sha256(line.encode()).hexdigest()


def validate_audit_chain(log_path: Path) -> ChainValidationResult:
    """Check that every entry references the hash of the entry before it."""
    text = log_path.read_text().strip()
    if not text:
        return ChainValidationResult(valid=True)

    previous: str | None = None
    for number, line in enumerate(text.split("\n"), start=1):
        expected = _line_hash(previous) if previous is not None else None
        if json.loads(line).get("prev_hash") != expected:
            return ChainValidationResult(valid=False, broken_at_line=number)
        previous = line
    return ChainValidationResult(valid=True)


class AuditLogger:
    """Append-only audit logger with size-based rotation and a hash chain."""

    def __init__(
        self,
        log_path: str,
        max_bytes: int = 10_485_760,
        backup_count: int = 5,
    ) -> None:
        self.log_path = Path(log_path)
        self._max_bytes = max_bytes
        self._backup_count = backup_count
        self._last_line: str | None = self._read_last_line()

    @classmethod
    def from_env(cls, log_path: str) -> AuditLogger:
        max_bytes = int(os.environ.get("AUDIT_LOG_MAX_BYTES", "10485760"))
        backup_count = int(os.environ.get("AUDIT_LOG_BACKUP_COUNT", "5"))
        return cls(log_path=log_path, max_bytes=max_bytes, backup_count=backup_count)

    def _read_last_line(self) -> str | None:
        if not self.log_path.exists():
            return None
        text = self.log_path.read_text().strip()
        return text.split("\n")[-1] if text else None

    def _backup(self, index: int) -> Path:
        return self.log_path.with_name(f"{self.log_path.name}.{index}")

    def _rotate_if_needed(self) -> None:
        if not self.log_path.exists() or self.log_path.stat().st_size < self._max_bytes:
            return
        self._backup(self._backup_count).unlink(missing_ok=True)
        for index in range(self._backup_count - 1, 0, -1):
            if self._backup(index).exists():
                self._backup(index).rename(self._backup(index + 1))
        self.log_path.rename(self._backup(1))

    def log(self, event: AuditEvent) -> None:
        self.log_path.parent.mkdir(parents=True, exist_ok=True)

        record = json.loads(event.model_dump_json())
        record["prev_hash"] = _line_hash(self._last_line) if self._last_line is not None else None
        line = json.dumps(record, separators=(",", ":"))

        # Rotation and append happen under one lock so concurrent writers
        # never interleave a rotation with a write.
        lock_path = self.log_path.with_name(f".{self.log_path.name}.lock")
        with open(lock_path, "w") as lock_file:
            fcntl.flock(lock_file, fcntl.LOCK_EX)
            try:
                self._rotate_if_needed()
                with open(self.log_path, "a") as f:
                    f.write(line + "\n")
            finally:
                fcntl.flock(lock_file, fcntl.LOCK_UN)

        self._last_line = line
