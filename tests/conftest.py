from __future__ import annotations

from typing import Any, Callable, Iterable
from unittest.mock import AsyncMock

import pytest

from chat_relay.services.conversation.message_store import PersistError
from chat_relay.services.conversation.messages import Message


class FakeMessageStore:
    """In-memory stand-in for the Supabase store with failure switches."""

    def __init__(self, messages: Iterable[Message] = ()) -> None:
        self.messages: list[Message] = list(messages)
        self.appended: list[Message] = []
        self.deleted: list[str] = []
        self.fail_append_roles: set[str] = set()
        self.fail_query = False
        self.fail_delete = False

    async def append(self, message: Message) -> None:
        if message.role in self.fail_append_roles:
            raise PersistError(f"append failed for {message.role}")
        self.messages.append(message)
        self.appended.append(message)

    async def query_by_user(self, user_id: str) -> list[Message]:
        if self.fail_query:
            raise PersistError("query failed")
        return [m for m in self.messages if m.user_id == user_id]

    async def batch_delete(self, ids: Iterable[str]) -> int:
        ids = list(ids)
        if self.fail_delete:
            raise PersistError("delete failed")
        self.deleted.extend(ids)
        self.messages = [m for m in self.messages if m.id not in ids]
        return len(ids)

    def for_user(self, user_id: str, role: str | None = None) -> list[Message]:
        return [m for m in self.messages if m.user_id == user_id and (role is None or m.role == role)]


def history_message(idx: int, role: str, content: str, user_id: str = "U1") -> Message:
    return Message(
        id=f"h{idx}",
        user_id=user_id,
        role=role,  # type: ignore[arg-type]
        content=content,
        typed_at=f"2024-01-01T00:00:0{idx}.000000000Z",
    )


@pytest.fixture
def store() -> FakeMessageStore:
    return FakeMessageStore()


@pytest.fixture
def make_history() -> Callable[..., Message]:
    return history_message


@pytest.fixture
def reply_client() -> AsyncMock:
    client = AsyncMock()
    client.reply_text.return_value = None
    return client


@pytest.fixture
def text_event() -> Callable[..., dict[str, Any]]:
    def _build(text: str = "hello", user_id: str = "U1", reply_token: str = "rt-1") -> dict[str, Any]:
        return {
            "type": "message",
            "replyToken": reply_token,
            "source": {"type": "user", "userId": user_id},
            "message": {"type": "text", "id": "1", "text": text},
        }

    return _build
