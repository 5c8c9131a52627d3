"""Render pairing payloads for display."""

from __future__ import annotations

import base64
import io

import qrcode
from qrcode.constants import ERROR_CORRECT_M


def _build(payload: str) -> qrcode.QRCode:
    qr = qrcode.QRCode(error_correction=ERROR_CORRECT_M, box_size=8, border=4)
    qr.add_data(payload)
    qr.make(fit=True)
    return qr


def render_png(payload: str) -> bytes:
    img = _build(payload).make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def render_data_url(payload: str) -> str:
    """Encode ``payload`` as a ``data:image/png;base64,...`` URL."""
    encoded = base64.b64encode(render_png(payload)).decode("ascii")
    return f"data:image/png;base64,{encoded}"


def render_ascii(payload: str) -> str:
    """Text rendition for printing a QR code to a terminal."""
    buf = io.StringIO()
    _build(payload).print_ascii(out=buf, invert=True)
    return buf.getvalue()
