"""Tests for QR rendering."""

from __future__ import annotations

import base64

from src.qr.render import render_ascii, render_data_url, render_png

PAYLOAD = "2@Xk9rYb3d,QmFzZTY0S2V5,Tm90aGVyS2V5,c2VjcmV0"


def test_png_has_signature() -> None:
    assert render_png(PAYLOAD).startswith(b"\x89PNG\r\n\x1a\n")


def test_data_url_wraps_png() -> None:
    url = render_data_url(PAYLOAD)
    prefix = "data:image/png;base64,"
    assert url.startswith(prefix)
    assert base64.b64decode(url[len(prefix):]).startswith(b"\x89PNG")


def test_different_payloads_render_differently() -> None:
    assert render_data_url(PAYLOAD) != render_data_url(PAYLOAD + "x")


def test_ascii_rendering_is_multiline() -> None:
    art = render_ascii(PAYLOAD)
    assert len(art.splitlines()) > 10
