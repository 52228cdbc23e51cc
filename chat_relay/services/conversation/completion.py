"""Completion request shaping for the relay.

Builds the provider message list from the fixed system instructions, the
selected window and the new user turn, then extracts the single reply.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Protocol, Sequence

from ..ai_token_usage_logger import log_ai_token_usage
from .messages import Message
from .openai_client import ChatMessage, CompletionResult, OpenAIError, get_openai_chat_client

logger = logging.getLogger(__name__)


class CompletionError(Exception):
    pass


class ChatClientProtocol(Protocol):
    async def complete(self, messages: list[ChatMessage], *, temperature: float) -> CompletionResult:
        ...


def build_completion_messages(
    window: Sequence[Message],
    new_content: str,
    *,
    system_instructions: Sequence[str] = (),
) -> list[ChatMessage]:
    """System instructions first, then the window oldest-first, then the new turn."""
    messages: list[ChatMessage] = [
        ChatMessage(role="system", content=text) for text in system_instructions if text
    ]
    messages.extend(m.to_chat_message() for m in window)
    messages.append(ChatMessage(role="user", content=new_content))
    return messages


class CompletionInvoker:
    def __init__(
        self,
        *,
        system_instructions: Sequence[str] = (),
        temperature: float = 0.7,
        client: ChatClientProtocol | None = None,
        log_ai_token_usage_fn: Callable[..., Awaitable[None]] = log_ai_token_usage,
    ) -> None:
        self.system_instructions = tuple(system_instructions)
        self.temperature = temperature
        self._client = client
        self._log_ai_token_usage = log_ai_token_usage_fn

    def _get_client(self) -> ChatClientProtocol:
        if self._client is None:
            self._client = get_openai_chat_client()
        return self._client

    async def complete(
        self,
        window: Sequence[Message],
        new_content: str,
        *,
        user_id: str | None = None,
    ) -> str:
        """Issue exactly one completion request and return the reply text.

        Raises :class:`CompletionError` on provider failure or empty content.
        """
        messages = build_completion_messages(
            window, new_content, system_instructions=self.system_instructions
        )
        logger.debug("Requesting completion with %d messages", len(messages))
        try:
            result = await self._get_client().complete(messages, temperature=self.temperature)
        except OpenAIError as exc:
            raise CompletionError(str(exc)) from exc

        content = result.content or ""
        if not content.strip():
            raise CompletionError("Completion provider returned no content")

        await self._log_ai_token_usage(
            tool="chat_relay",
            user_id=user_id,
            stage="reply",
            prompt_tokens=result.prompt_tokens,
            completion_tokens=result.completion_tokens,
            total_tokens=result.total_tokens,
            model=result.model,
            meta={"duration_ms": result.duration_ms, "window_size": len(window)},
        )
        return content
