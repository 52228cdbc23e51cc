import base64
import hashlib
import hmac
import json
import os
from dataclasses import dataclass
from typing import Any, Optional

import httpx

# LINE rejects text messages longer than this.
MAX_TEXT_LENGTH = 5000


class LineError(Exception):
    pass


class LineConfigurationError(LineError):
    pass


class LineAuthError(LineError):
    pass


class LineAPIError(LineError):
    pass


def verify_line_signature(channel_secret: str, body: bytes, signature: str) -> bool:
    """
    Verify request came from LINE.

    LINE signs the raw request body:
      signature = base64(HMAC_SHA256(channel_secret, body))
    and sends it in the X-Line-Signature header.
    """
    channel_secret = (channel_secret or "").strip()
    if not channel_secret:
        return False

    signature = (signature or "").strip()
    if not signature:
        return False

    digest = hmac.new(
        channel_secret.encode("utf-8"),
        body,
        hashlib.sha256,
    ).digest()
    expected = base64.b64encode(digest).decode("ascii")
    return hmac.compare_digest(expected, signature)


@dataclass(frozen=True)
class LineReplyResponse:
    ok: bool
    request_id: Optional[str] = None
    raw: Optional[dict[str, Any]] = None


class LineService:
    def __init__(self, channel_access_token: str) -> None:
        self.channel_access_token = (channel_access_token or "").strip()
        if not self.channel_access_token:
            raise LineConfigurationError("LINE_CHANNEL_ACCESS_TOKEN not set")

        self._client = httpx.AsyncClient(
            base_url="https://api.line.me",
            headers={"Authorization": f"Bearer {self.channel_access_token}"},
            timeout=httpx.Timeout(10.0),
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def reply_text(self, *, reply_token: str, text: str) -> LineReplyResponse:
        reply_token = (reply_token or "").strip()
        if not reply_token:
            raise LineAPIError("LINE reply missing reply token")

        payload: dict[str, Any] = {
            "replyToken": reply_token,
            "messages": [{"type": "text", "text": text[:MAX_TEXT_LENGTH]}],
        }

        try:
            response = await self._client.post("/v2/bot/message/reply", json=payload)
        except httpx.HTTPError as exc:
            raise LineAPIError(f"LINE reply request failed: {exc}") from exc

        if response.status_code == 401:
            raise LineAuthError("LINE auth failed (401). Check LINE_CHANNEL_ACCESS_TOKEN.")

        if response.status_code < 200 or response.status_code >= 300:
            raise LineAPIError(f"LINE API error ({response.status_code}): {response.text}")

        # Success bodies are normally "{}"; tolerate an empty one.
        data: dict[str, Any] = {}
        if response.content:
            try:
                parsed = response.json()
            except json.JSONDecodeError as exc:
                raise LineAPIError(f"LINE API returned invalid JSON: {exc}") from exc
            if isinstance(parsed, dict):
                data = parsed

        return LineReplyResponse(
            ok=True,
            request_id=response.headers.get("x-line-request-id"),
            raw=data,
        )


def get_line_channel_secret() -> str:
    return os.environ.get("LINE_CHANNEL_SECRET", "")


def get_line_service() -> LineService:
    return LineService(channel_access_token=os.environ.get("LINE_CHANNEL_ACCESS_TOKEN", ""))
