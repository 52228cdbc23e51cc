"""Inbound webhook event parsing.

Only text messages with a resolvable sender and reply token are acted on;
every other event (follow, postback, stickers, images, ...) maps to ``None``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class TextMessageEvent:
    user_id: str
    text: str
    reply_token: str


def parse_text_event(event: Any) -> TextMessageEvent | None:
    if not isinstance(event, dict):
        return None
    if event.get("type") != "message":
        return None

    message = event.get("message") if isinstance(event.get("message"), dict) else {}
    if message.get("type") != "text":
        return None

    text = message.get("text")
    if not isinstance(text, str) or not text:
        return None

    source = event.get("source") if isinstance(event.get("source"), dict) else {}
    user_id = str(source.get("userId") or "").strip()
    reply_token = str(event.get("replyToken") or "").strip()
    if not user_id or not reply_token:
        return None

    return TextMessageEvent(
        user_id=user_id,
        text=text,
        reply_token=reply_token,
    )
