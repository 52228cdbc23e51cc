"""Typed collaborator protocols for the conversation pipeline."""

from __future__ import annotations

from typing import Any, Iterable, Protocol, Sequence

from .messages import Message


class MessageStoreProtocol(Protocol):
    async def append(self, message: Message) -> None: ...
    async def query_by_user(self, user_id: str) -> list[Message]: ...
    async def batch_delete(self, ids: Iterable[str]) -> int: ...


class CompletionInvokerProtocol(Protocol):
    async def complete(
        self, window: Sequence[Message], new_content: str, *, user_id: str | None = None
    ) -> str: ...


class ReplyClientProtocol(Protocol):
    async def reply_text(self, *, reply_token: str, text: str) -> Any: ...
