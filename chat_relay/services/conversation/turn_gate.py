"""Optional per-user serialization of pipeline runs.

Off by default: two rapid messages from the same user run concurrently and
may see overlapping history, or one run's prune may delete a message the
other just wrote.  With ``RELAY_SERIALIZE_PER_USER`` enabled, runs for the
same user wait on a keyed lock.  Single-process only.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class UserTurnGate:
    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    def active_users(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, user_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._waiters[user_id] = self._waiters.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[user_id] -= 1
            if self._waiters[user_id] == 0:
                # Last holder for this user; drop the entry so idle users don't accumulate.
                del self._waiters[user_id]
                del self._locks[user_id]


_turn_gate: UserTurnGate | None = None


def get_turn_gate() -> UserTurnGate:
    global _turn_gate  # noqa: PLW0603
    if _turn_gate is None:
        _turn_gate = UserTurnGate()
    return _turn_gate
