"""Conversation message records and the timestamp clock that orders them.

``typed_at`` is a fixed-width UTC string with nanosecond precision
(``2024-05-01T12:00:00.123456789Z``), so lexicographic order equals
chronological order.  The pipeline assigns it, never the store.
"""

from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Literal

from .openai_client import ChatMessage

Role = Literal["user", "assistant", "system"]

ROLES: frozenset[str] = frozenset({"user", "assistant", "system"})


def format_typed_at(epoch_ns: int) -> str:
    """Render nanoseconds since the epoch as ``YYYY-MM-DDTHH:MM:SS.fffffffffZ``."""
    seconds, nanos = divmod(epoch_ns, 1_000_000_000)
    base = datetime.fromtimestamp(seconds, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")
    return f"{base}.{nanos:09d}Z"


class MonotonicClock:
    """Issues strictly increasing ``typed_at`` values within one process.

    If the wall clock has not advanced (or went backwards) since the last
    call, the previous value is bumped by one nanosecond.
    """

    def __init__(self, time_ns: Callable[[], int] = time.time_ns) -> None:
        self._time_ns = time_ns
        self._last_ns = 0
        self._lock = threading.Lock()

    def now_ns(self) -> int:
        with self._lock:
            current = self._time_ns()
            if current <= self._last_ns:
                current = self._last_ns + 1
            self._last_ns = current
            return current

    def now(self) -> str:
        return format_typed_at(self.now_ns())


default_clock = MonotonicClock()


@dataclass(frozen=True)
class Message:
    id: str
    user_id: str
    role: Role
    content: str
    typed_at: str

    @classmethod
    def create(
        cls,
        *,
        user_id: str,
        role: Role,
        content: str,
        clock: MonotonicClock | None = None,
    ) -> "Message":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            role=role,
            content=content,
            typed_at=(clock or default_clock).now(),
        )

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "role": self.role,
            "content": self.content,
            "typed_at": self.typed_at,
        }

    def to_chat_message(self) -> ChatMessage:
        return ChatMessage(role=self.role, content=self.content)


def coerce_message(row: dict[str, Any]) -> Message:
    """Build a Message from a store row; unknown roles fall back to ``user``."""
    role = str(row.get("role") or "user")
    if role not in ROLES:
        role = "user"
    return Message(
        id=str(row.get("id") or ""),
        user_id=str(row.get("user_id") or ""),
        role=role,  # type: ignore[arg-type]
        content=str(row.get("content") or ""),
        typed_at=str(row.get("typed_at") or ""),
    )
