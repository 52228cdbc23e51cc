"""Bounded conversation window over a user's stored messages.

Pure functions, no I/O.  Given the full history for one user, order it by
``typed_at`` and keep the newest ``window_size`` messages as context for the
next completion.  Everything older is stale and should be pruned from the
store by the caller.

Ordering is a stable sort, so messages sharing a ``typed_at`` keep the order
in which the store returned them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from .messages import Message

DEFAULT_WINDOW_SIZE: int = 3


@dataclass(frozen=True)
class WindowSelection:
    window: list[Message] = field(default_factory=list)
    stale: list[Message] = field(default_factory=list)

    @property
    def stale_ids(self) -> list[str]:
        return [m.id for m in self.stale]


def order_messages(history: Iterable[Message]) -> list[Message]:
    """Return messages ascending by ``typed_at`` (stable on ties)."""
    return sorted(history, key=lambda m: m.typed_at)


def select_window(
    history: Iterable[Message],
    window_size: int = DEFAULT_WINDOW_SIZE,
) -> WindowSelection:
    """Split ``history`` into the newest ``window_size`` messages and the rest."""
    if window_size < 0:
        raise ValueError("window_size must be >= 0")

    ordered = order_messages(history)
    cut = max(len(ordered) - window_size, 0)
    return WindowSelection(window=ordered[cut:], stale=ordered[:cut])


def exclude_message(history: Iterable[Message], message_id: str) -> list[Message]:
    """Drop the record with ``message_id`` so a just-stored turn is not counted twice."""
    return [m for m in history if m.id != message_id]
