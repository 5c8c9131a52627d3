"""Gateway settings loaded from environment variables."""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}

# Environment variable -> settings field
_ENV_FIELDS = {
    "API_KEY": "api_key",
    "WEBHOOK_URL": "webhook_url",
    "HOST": "host",
    "PORT": "port",
    "LOG_LEVEL": "log_level",
    "AUTH_DIR": "auth_dir",
    "TRANSPORT_FACTORY": "transport_factory",
    "MAX_RECONNECT_ATTEMPTS": "max_reconnect_attempts",
    "RECONNECT_BASE_DELAY": "reconnect_base_delay",
    "RECONNECT_MAX_DELAY": "reconnect_max_delay",
    "QR_TTL_SECONDS": "qr_ttl_seconds",
    "WEBHOOK_MAX_ATTEMPTS": "webhook_max_attempts",
    "WEBHOOK_RETRY_DELAY": "webhook_retry_delay",
    "WEBHOOK_TIMEOUT": "webhook_timeout",
    "CREATE_WAIT_SECONDS": "create_wait_seconds",
    "AUDIT_LOG_PATH": "audit_log_path",
    "LOGOUT_ON_SHUTDOWN": "logout_on_shutdown",
}


class ConfigError(Exception):
    """Raised when the environment does not describe a usable gateway."""


class GatewaySettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    api_key: str = Field(min_length=1)
    webhook_url: str | None = None
    host: str = "0.0.0.0"
    port: int = Field(default=3000, ge=1, le=65535)
    log_level: str = "info"
    auth_dir: Path = Path("auth_info")
    transport_factory: str | None = None
    max_reconnect_attempts: int = Field(default=3, ge=0)
    reconnect_base_delay: float = Field(default=5.0, ge=0)
    reconnect_max_delay: float = Field(default=60.0, ge=0)
    qr_ttl_seconds: float = Field(default=60.0, gt=0)
    webhook_max_attempts: int = Field(default=3, ge=1)
    webhook_retry_delay: float = Field(default=1.0, ge=0)
    webhook_timeout: float = Field(default=10.0, gt=0)
    create_wait_seconds: float = Field(default=5.0, ge=0)
    audit_log_path: str | None = None
    logout_on_shutdown: bool = True

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> GatewaySettings:
        """Build settings from ``environ`` (``os.environ`` by default).

        Empty variables count as unset.
        """
        env = os.environ if environ is None else environ
        values: dict[str, object] = {}
        for var, field_name in _ENV_FIELDS.items():
            raw = env.get(var, "").strip()
            if raw:
                values[field_name] = raw

        if "api_key" not in values:
            raise ConfigError("API_KEY must be set")
        if "logout_on_shutdown" in values:
            values["logout_on_shutdown"] = _parse_bool(
                "LOGOUT_ON_SHUTDOWN", str(values["logout_on_shutdown"]),
            )

        try:
            return cls.model_validate(values)
        except ValidationError as exc:
            raise ConfigError(f"Invalid gateway configuration: {exc}") from exc


def _parse_bool(name: str, raw: str) -> bool:
    value = raw.lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ConfigError(f"{name} must be a boolean, got {raw!r}")
