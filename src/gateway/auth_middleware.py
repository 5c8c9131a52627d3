"""ASGI middleware for API-key authentication."""

from __future__ import annotations

import hmac

from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from src.audit.logger import AuditLogger
from src.models import AuditEvent, AuditEventType, RiskLevel

API_KEY_HEADER = "x-api-key"

# (method, path) pairs that bypass authentication
PUBLIC_ROUTES = frozenset({("GET", "/health"), ("GET", "/qrcode")})


class ApiKeyMiddleware:
    """Rejects requests whose ``x-api-key`` header does not match the secret."""

    def __init__(
        self,
        app: ASGIApp,
        api_key: str,
        audit_logger: AuditLogger | None = None,
        public_routes: frozenset[tuple[str, str]] = PUBLIC_ROUTES,
    ) -> None:
        self.app = app
        self._api_key = api_key.encode()
        self.audit_logger = audit_logger
        self._public_routes = public_routes

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        path = request.url.path.rstrip("/") or "/"
        method = "GET" if request.method == "HEAD" else request.method

        if (method, path) in self._public_routes:
            await self.app(scope, receive, send)
            return

        provided = request.headers.get(API_KEY_HEADER, "")
        if not provided:
            self._log(request, AuditEventType.AUTH_FAILURE, "failure", {"reason": "missing_key"})
            response = JSONResponse({"error": "Authentication required"}, status_code=401)
            await response(scope, receive, send)
            return

        if not hmac.compare_digest(provided.encode(), self._api_key):
            self._log(request, AuditEventType.AUTH_FAILURE, "failure", {"reason": "invalid_key"})
            response = JSONResponse({"error": "Access denied"}, status_code=403)
            await response(scope, receive, send)
            return

        self._log(request, AuditEventType.AUTH_SUCCESS, "success")
        await self.app(scope, receive, send)

    def _log(
        self,
        request: Request,
        event_type: AuditEventType,
        result: str,
        details: dict[str, object] | None = None,
    ) -> None:
        if not self.audit_logger:
            return
        self.audit_logger.log(AuditEvent(
            event_type=event_type,
            source_ip=request.client.host if request.client else None,
            action=f"{request.method} {request.url.path}",
            result=result,
            risk_level=RiskLevel.INFO if result == "success" else RiskLevel.HIGH,
            details=details,
        ))
