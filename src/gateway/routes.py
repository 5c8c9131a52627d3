"""Session management endpoints.

Provides endpoints for:
- Creating (connecting) sessions and polling their QR code
- Status of one or all sessions
- Disconnecting and deleting sessions
- Sending messages through a connected session
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, TypeVar

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from src.gateway.schemas import CreateSessionRequest, SendMessageRequest, SessionRequest
from src.models import SessionState
from src.qr.render import render_data_url
from src.sessions.errors import (
    InvalidSessionIdError,
    SessionNotConnectedError,
    TransportConstructionError,
    TransportError,
)
from src.sessions.registry import DEFAULT_SESSION_ID

if TYPE_CHECKING:
    from src.sessions.registry import SessionRegistry
    from src.sessions.session import Session

logger = logging.getLogger(__name__)

_BodyT = TypeVar("_BodyT", bound=BaseModel)


class BadRequestError(Exception):
    """Raised when a request body cannot be parsed or validated."""


async def _parse_body(request: Request, model: type[_BodyT]) -> _BodyT:
    raw = await request.body()
    if not raw.strip():
        data: Any = {}
    else:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise BadRequestError("Request body must be JSON") from exc
    if not isinstance(data, dict):
        raise BadRequestError("Request body must be a JSON object")
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        messages = "; ".join(err["msg"].removeprefix("Value error, ") for err in exc.errors())
        raise BadRequestError(messages) from exc


def _error(message: str, status_code: int, **extra: Any) -> JSONResponse:
    return JSONResponse({"success": False, "error": message, **extra}, status_code=status_code)


def session_view(session: Session) -> dict[str, Any]:
    """Status, QR and phone of a session as returned to polling clients."""
    qr = session.current_qr()
    body: dict[str, Any] = {"status": session.state.value}
    if qr is not None:
        body["qr"] = qr
        body["qrcode"] = render_data_url(qr)
    elif session.state is SessionState.CONNECTED:
        body["phone"] = session.phone_number
    elif session.state is SessionState.ERROR and session.last_error:
        body["error"] = session.last_error
    return body


def create_session_router(registry: SessionRegistry, create_wait_seconds: float = 5.0) -> APIRouter:
    """Create the router exposing session lifecycle operations."""
    router = APIRouter()

    @router.post("/create-session")
    async def create_session(request: Request) -> JSONResponse:
        try:
            body = await _parse_body(request, CreateSessionRequest)
        except BadRequestError as e:
            return _error(str(e), 400)

        session_id = body.session_id or DEFAULT_SESSION_ID
        logger.info("[%s] POST /create-session", session_id)
        try:
            session = await registry.connect(
                session_id,
                fresh=body.fresh,
                force=body.force,
                print_qr=body.print_qr,
                instance_id=body.instance_id,
            )
        except InvalidSessionIdError as e:
            return _error(str(e), 400)
        except TransportConstructionError as e:
            return _error(str(e), 502, status=SessionState.ERROR.value)
        except Exception:
            logger.exception("[%s] Unexpected error creating session", session_id)
            return _error("Internal error", 500)

        await registry.wait_for_outcome(session.id, create_wait_seconds)
        view = session_view(session)
        if "qr" not in view and session.state not in (SessionState.CONNECTED, SessionState.ERROR):
            view["message"] = "Session created, waiting for QR code"
        return JSONResponse({"success": session.state is not SessionState.ERROR, **view})

    @router.get("/qrcode")
    async def qrcode(sessionId: str | None = None) -> JSONResponse:  # noqa: N803
        session = registry.get(sessionId or DEFAULT_SESSION_ID)
        if session is None:
            return JSONResponse({
                "status": SessionState.DISCONNECTED.value,
                "message": "Session not found",
            })
        return JSONResponse(session_view(session))

    @router.get("/status")
    async def status(sessionId: str | None = None) -> JSONResponse:  # noqa: N803
        if sessionId:
            snapshot = registry.snapshot(sessionId)
            if snapshot is None:
                return _error("Session not found", 404)
            return JSONResponse({
                "success": True,
                "sessionId": sessionId,
                **snapshot.model_dump(mode="json", by_alias=True),
            })

        sessions = {
            sid: snap.model_dump(mode="json", by_alias=True)
            for sid, snap in registry.snapshot_all().items()
        }
        return JSONResponse({"success": True, "sessions": sessions, "total": len(sessions)})

    async def _disconnect(request: Request) -> JSONResponse:
        try:
            body = await _parse_body(request, SessionRequest)
        except BadRequestError as e:
            return _error(str(e), 400)

        session_id = body.session_id or DEFAULT_SESSION_ID
        logger.info("[%s] POST %s", session_id, request.url.path)
        try:
            await registry.disconnect(session_id)
        except InvalidSessionIdError as e:
            return _error(str(e), 400)
        except TransportError as e:
            return _error(str(e), 502)
        except Exception:
            logger.exception("[%s] Unexpected error disconnecting", session_id)
            return _error("Internal error", 500)
        return JSONResponse({"success": True, "message": "Disconnected"})

    router.add_api_route("/disconnect", _disconnect, methods=["POST"])
    router.add_api_route("/logout", _disconnect, methods=["POST"])

    @router.delete("/session")
    @router.delete("/session/{session_id}")
    async def delete_session(session_id: str = DEFAULT_SESSION_ID) -> JSONResponse:
        logger.info("[%s] DELETE /session", session_id)
        try:
            await registry.delete(session_id)
        except InvalidSessionIdError as e:
            return _error(str(e), 400)
        except Exception:
            logger.exception("[%s] Unexpected error deleting session", session_id)
            return _error("Internal error", 500)
        return JSONResponse({"success": True, "message": "Session deleted"})

    @router.post("/send-message")
    async def send_message(request: Request) -> JSONResponse:
        try:
            body = await _parse_body(request, SendMessageRequest)
        except BadRequestError as e:
            return _error(str(e), 400)

        session_id = body.session_id or DEFAULT_SESSION_ID
        try:
            message_id = await registry.send_message(
                session_id,
                body.recipient,
                text=body.body,
                image=body.image,
                caption=body.caption,
            )
        except SessionNotConnectedError:
            return _error("Session not connected", 409)
        except ValueError as e:
            return _error(str(e), 400)
        except TransportError as e:
            return _error(str(e), 502)
        except Exception:
            logger.exception("[%s] Unexpected error sending message", session_id)
            return _error("Internal error", 500)
        return JSONResponse({"success": True, "messageId": message_id})

    return router
