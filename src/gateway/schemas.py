"""Request bodies accepted by the gateway endpoints."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, model_validator


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class SessionRequest(_Body):
    session_id: str | None = Field(default=None, alias="sessionId")


class CreateSessionRequest(SessionRequest):
    force: bool = False
    fresh: bool = False
    print_qr: bool = Field(default=False, alias="printQR")
    instance_id: str | None = Field(default=None, alias="instanceId")


class SendMessageRequest(SessionRequest):
    """Accepts ``phone`` or ``to`` for the recipient and ``message`` or
    ``text`` for a text body; ``image`` (URL or base64) with an optional
    ``caption`` sends an image instead.
    """

    phone: str | None = None
    to: str | None = None
    message: str | None = None
    text: str | None = None
    image: str | None = None
    caption: str | None = None

    @model_validator(mode="after")
    def _require_recipient_and_content(self) -> SendMessageRequest:
        if not (self.phone or self.to):
            raise ValueError("phone (or to) is required")
        if not (self.message or self.text or self.image):
            raise ValueError("message (or image) is required")
        return self

    @property
    def recipient(self) -> str:
        return self.phone or self.to or ""

    @property
    def body(self) -> str | None:
        return self.message or self.text
