"""Shared Pydantic data models for session-gateway."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

# --- Enums ---


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    QR_READY = "qr_ready"
    CONNECTED = "connected"
    ERROR = "error"


class WebhookEventType(str, Enum):
    QR = "qr"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    MESSAGE = "message"


class AuditEventType(str, Enum):
    AUTH_SUCCESS = "auth_success"
    AUTH_FAILURE = "auth_failure"
    SESSION_CONNECT = "session_connect"
    SESSION_CONNECTED = "session_connected"
    SESSION_DISCONNECTED = "session_disconnected"
    SESSION_DELETED = "session_deleted"
    MESSAGE_SENT = "message_sent"
    WEBHOOK_DROPPED = "webhook_dropped"


class RiskLevel(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


# --- Session Models ---


class SessionSnapshot(BaseModel):
    """Read-only status projection of one session, keyed the way clients read it."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    status: SessionState
    phone: str | None = None
    has_qr: bool = Field(default=False, alias="hasQR")
    reconnect_attempts: int = Field(default=0, ge=0, alias="reconnectAttempts")
    instance_id: str | None = Field(default=None, alias="instanceId")
    last_error: str | None = Field(default=None, alias="lastError")
    connected_at: str | None = Field(default=None, alias="connectedAt")


# --- Webhook Models ---


class WebhookEnvelope(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: WebhookEventType
    session_id: str = Field(alias="sessionId")
    instance_id: str | None = Field(default=None, alias="instanceId")
    timestamp: str = Field(default_factory=_now_iso)
    data: dict[str, object] = Field(default_factory=dict)


# --- Audit Models ---


class AuditEvent(BaseModel):
    timestamp: str = Field(default_factory=_now_iso)
    event_type: AuditEventType
    source_ip: str | None = None
    session_id: str | None = None
    action: str
    result: str  # "success" | "failure" | "dropped"
    risk_level: RiskLevel
    details: dict[str, object] | None = None
