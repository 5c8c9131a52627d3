"""FastAPI application for the multi-session gateway."""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from src.audit.logger import AuditLogger
from src.config import ConfigError, GatewaySettings
from src.gateway.auth_middleware import ApiKeyMiddleware
from src.gateway.routes import create_session_router
from src.sessions.lifecycle import ReconnectPolicy
from src.sessions.registry import SessionRegistry
from src.transport.base import TransportFactory, load_transport_factory
from src.transport.credentials import CredentialStore
from src.webhook.dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)


def create_app_from_env() -> FastAPI:
    """Factory for uvicorn --factory: reads config from environment variables."""
    settings = GatewaySettings.from_env()
    if not settings.transport_factory:
        raise ConfigError("TRANSPORT_FACTORY must be set (module:attribute)")
    try:
        factory = load_transport_factory(settings.transport_factory)
    except (ImportError, ValueError) as exc:
        raise ConfigError(f"Cannot load transport factory: {exc}") from exc
    return create_app(settings, transport_factory=factory)


def build_registry(
    settings: GatewaySettings,
    transport_factory: TransportFactory,
    audit_logger: AuditLogger | None = None,
) -> SessionRegistry:
    dispatcher = WebhookDispatcher(
        settings.webhook_url,
        max_attempts=settings.webhook_max_attempts,
        retry_delay=settings.webhook_retry_delay,
        timeout=settings.webhook_timeout,
        audit_logger=audit_logger,
    )
    if not dispatcher.enabled:
        logger.warning("WEBHOOK_URL not set; events will not be delivered")
    policy = ReconnectPolicy(
        max_attempts=settings.max_reconnect_attempts,
        base_delay=settings.reconnect_base_delay,
        max_delay=settings.reconnect_max_delay,
    )
    return SessionRegistry(
        credentials=CredentialStore(settings.auth_dir),
        transport_factory=transport_factory,
        dispatcher=dispatcher,
        policy=policy,
        qr_ttl_seconds=settings.qr_ttl_seconds,
        audit_logger=audit_logger,
        logout_on_shutdown=settings.logout_on_shutdown,
    )


def create_app(
    settings: GatewaySettings,
    transport_factory: TransportFactory | None = None,
    registry: SessionRegistry | None = None,
    audit_logger: AuditLogger | None = None,
) -> FastAPI:
    """Create the gateway app with API-key auth in front of all session routes."""
    if audit_logger is None and settings.audit_log_path:
        audit_logger = AuditLogger.from_env(settings.audit_log_path)
    if registry is None:
        if transport_factory is None:
            raise ConfigError("A transport factory or a registry is required")
        registry = build_registry(settings, transport_factory, audit_logger)

    started = time.monotonic()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("Gateway listening on %s:%d", settings.host, settings.port)
        yield
        logger.info("Shutting down gateway")
        await registry.shutdown()

    app = FastAPI(docs_url=None, redoc_url=None, lifespan=lifespan)
    app.state.registry = registry

    @app.get("/health")
    async def health() -> dict[str, object]:
        return {
            "status": "ok",
            "sessions": len(registry),
            "uptime": round(time.monotonic() - started, 3),
        }

    app.include_router(create_session_router(registry, settings.create_wait_seconds))

    # Add auth middleware (wraps the entire app)
    app.add_middleware(ApiKeyMiddleware, api_key=settings.api_key, audit_logger=audit_logger)

    return app
