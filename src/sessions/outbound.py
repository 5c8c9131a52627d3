"""Addressing and content helpers for outgoing messages."""

from __future__ import annotations

import base64
import binascii
import re
from typing import Any

USER_SERVER = "s.whatsapp.net"

_NON_DIGITS = re.compile(r"\D")


def normalize_jid(recipient: str) -> str:
    """Return the transport address for ``recipient``.

    Addresses that already carry a domain (``...@g.us``, ``...@s.whatsapp.net``)
    are kept; bare phone numbers are reduced to digits and get the user domain.
    """
    recipient = recipient.strip()
    if "@" in recipient:
        return recipient
    digits = _NON_DIGITS.sub("", recipient)
    if not digits:
        raise ValueError(f"Invalid recipient: {recipient!r}")
    return f"{digits}@{USER_SERVER}"


def build_content(
    text: str | None = None,
    image: str | None = None,
    caption: str | None = None,
) -> dict[str, Any]:
    """Build the transport content for a text or an image message.

    ``image`` is either an http(s) URL or base64 data, optionally as a
    ``data:`` URL.
    """
    if image:
        content: dict[str, Any] = {"image": _image_source(image)}
        if caption:
            content["caption"] = caption
        return content
    if text:
        return {"text": text}
    raise ValueError("Either text or image is required")


def _image_source(image: str) -> dict[str, Any] | bytes:
    if image.startswith(("http://", "https://")):
        return {"url": image}
    if image.startswith("data:"):
        _, _, image = image.partition(",")
    try:
        return base64.b64decode(image, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("Image must be a URL or base64 data") from exc
