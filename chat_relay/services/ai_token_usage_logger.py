"""Best-effort AI token usage logger.

Writes one row per completion to ``public.ai_token_usage`` via the
service-role Supabase client.  Never throws: failures are logged and
swallowed so they never block the reply path.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from ..config import settings

logger = logging.getLogger(__name__)


async def log_ai_token_usage(
    *,
    tool: str,
    user_id: str | None = None,
    stage: str | None = None,
    prompt_tokens: int | None = None,
    completion_tokens: int | None = None,
    total_tokens: int | None = None,
    model: str | None = None,
    meta: dict[str, Any] | None = None,
) -> None:
    """Insert a row into ``ai_token_usage``.  Best-effort, never raises."""
    if not settings.usage_logging_enabled:
        return
    if not user_id:
        # ai_token_usage.user_id is NOT NULL; skip silently if the sender is unknown.
        return

    try:
        from .conversation.message_store import get_supabase_admin_client

        db = get_supabase_admin_client()

        payload: dict[str, Any] = {"tool": tool, "user_id": user_id}
        optional = {
            "stage": stage,
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": total_tokens,
            "model": model,
            "meta": meta,
        }
        payload.update({k: v for k, v in optional.items() if v is not None})

        await asyncio.to_thread(
            lambda: db.table("ai_token_usage").insert(payload).execute()
        )
    except Exception as exc:  # noqa: BLE001
        logger.warning("Failed to log AI token usage: %s", exc)
