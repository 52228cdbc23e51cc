"""OpenAI chat completions client for the relay.

One call shape: an ordered ``ChatMessage`` list in, one ``CompletionResult``
out.  When the primary model fails and ``OPENAI_MODEL_FALLBACK`` names a
different model, the same request is sent once more on the fallback.
Every transport or protocol failure surfaces as :class:`OpenAIError`.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Optional, TypedDict

import httpx

logger = logging.getLogger(__name__)

_DEFAULT_BASE_URL = "https://api.openai.com/v1"
_DEFAULT_MODEL = "gpt-4o-mini"


class OpenAIError(Exception):
    pass


class OpenAIConfigurationError(OpenAIError):
    pass


class ChatMessage(TypedDict):
    role: str  # "system" | "user" | "assistant"
    content: str


@dataclass(frozen=True)
class CompletionResult:
    content: str
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    duration_ms: int = 0


def parse_completion(data: Any, *, requested_model: str, duration_ms: int) -> CompletionResult:
    """Pull the first choice and the usage block out of a completions response body."""
    if not isinstance(data, dict):
        raise OpenAIError("OpenAI response is not a JSON object")

    choices = data.get("choices") or []
    first = choices[0] if choices and isinstance(choices[0], dict) else None
    if first is None:
        raise OpenAIError("No choices in OpenAI response")
    content = (first.get("message") or {}).get("content")
    if not isinstance(content, str) or not content:
        raise OpenAIError("No content in OpenAI response")

    usage = data.get("usage") if isinstance(data.get("usage"), dict) else {}
    prompt = int(usage.get("prompt_tokens") or 0)
    completion = int(usage.get("completion_tokens") or 0)
    return CompletionResult(
        content=content,
        model=str(data.get("model") or requested_model),
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=int(usage.get("total_tokens") or prompt + completion),
        duration_ms=duration_ms,
    )


class OpenAIChatClient:
    def __init__(
        self,
        *,
        api_key: str,
        model: str = _DEFAULT_MODEL,
        fallback_model: Optional[str] = None,
        base_url: str = _DEFAULT_BASE_URL,
        timeout_s: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = (api_key or "").strip()
        if not self.api_key:
            raise OpenAIConfigurationError("OPENAI_API_KEY environment variable is not set")
        self.model = model
        self.fallback_model = fallback_model if fallback_model != model else None
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self._transport = transport

    async def complete(self, messages: list[ChatMessage], *, temperature: float) -> CompletionResult:
        try:
            return await self._post(messages, model=self.model, temperature=temperature)
        except OpenAIError as exc:
            if not self.fallback_model:
                raise
            logger.warning("OpenAI call on %s failed (%s); retrying on %s", self.model, exc, self.fallback_model)
            return await self._post(messages, model=self.fallback_model, temperature=temperature)

    async def _post(self, messages: list[ChatMessage], *, model: str, temperature: float) -> CompletionResult:
        started = time.monotonic()
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=httpx.Timeout(self.timeout_s),
                transport=self._transport,
            ) as client:
                response = await client.post(
                    "/chat/completions",
                    json={"model": model, "messages": messages, "temperature": temperature},
                )
        except httpx.HTTPError as exc:
            raise OpenAIError(f"OpenAI request failed on {model}: {exc}") from exc
        duration_ms = int((time.monotonic() - started) * 1000)

        if response.status_code != 200:
            raise OpenAIError(f"OpenAI API error ({response.status_code}) on {model}: {response.text[:500]}")
        try:
            data = response.json()
        except ValueError as exc:
            raise OpenAIError(f"OpenAI returned invalid JSON: {exc}") from exc
        return parse_completion(data, requested_model=model, duration_ms=duration_ms)


def get_openai_chat_client() -> OpenAIChatClient:
    return OpenAIChatClient(
        api_key=os.environ.get("OPENAI_API_KEY", ""),
        model=os.environ.get("OPENAI_MODEL_PRIMARY", "").strip() or _DEFAULT_MODEL,
        fallback_model=os.environ.get("OPENAI_MODEL_FALLBACK", "").strip() or None,
        base_url=os.environ.get("OPENAI_BASE_URL", "").strip() or _DEFAULT_BASE_URL,
    )
