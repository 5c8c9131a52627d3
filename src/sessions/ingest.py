"""Inbound message ingestion: filter and normalize transport message batches."""

from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger(__name__)


def extract_text(message: dict[str, Any]) -> str | None:
    """Best-effort plain text of a simple text message; None for richer types."""
    if "conversation" in message:
        text = message.get("conversation")
        return text if isinstance(text, str) else None
    extended = message.get("extendedTextMessage")
    if isinstance(extended, dict):
        text = extended.get("text")
        return text if isinstance(text, str) else None
    return None


def normalize_message(raw: dict[str, Any]) -> dict[str, Any] | None:
    """Build the webhook packet for one inbound message.

    Returns None for messages without a body and for messages sent by the
    session itself.
    """
    body = raw.get("message")
    key = raw.get("key") or {}
    if not body or key.get("fromMe"):
        return None
    return {
        "messageId": key.get("id"),
        "sender": key.get("remoteJid"),
        "fromMe": False,
        "rawMessage": body,
        "timestamp": raw.get("messageTimestamp"),
        "senderDisplayName": raw.get("pushName"),
    }


class MessageIngestor:
    """Turns a batch from the transport into ordered ``message`` packets."""

    def ingest(self, session_id: str, messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        packets: list[dict[str, Any]] = []
        for raw in messages:
            packet = normalize_message(raw)
            if packet is None:
                continue
            text = extract_text(packet["rawMessage"])
            if text is not None:
                logger.info("[%s] Message from %s: %s", session_id, packet["sender"], text)
            else:
                kinds = ", ".join(packet["rawMessage"]) if isinstance(packet["rawMessage"], dict) else "?"
                logger.info("[%s] Message from %s (%s)", session_id, packet["sender"], kinds)
            packets.append(packet)
        return packets
