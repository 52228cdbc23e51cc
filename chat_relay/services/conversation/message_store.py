"""Supabase-backed message store.

Append, query-by-user and bulk delete over the ``messages`` table.  There is
no update path: records are immutable once written.  The Supabase SDK is
synchronous, so every call is pushed to a worker thread.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Optional

from supabase import Client, create_client

from ...config import settings
from .messages import Message, coerce_message

logger = logging.getLogger(__name__)

# PostgREST puts ``in.(...)`` filters in the query string; keep URLs short.
_DELETE_CHUNK_SIZE = 100


class MessageStoreError(Exception):
    pass


class MessageStoreConfigurationError(MessageStoreError):
    pass


class PersistError(MessageStoreError):
    pass


class SupabaseMessageStore:
    def __init__(self, supabase_client: Client, table: str = "messages") -> None:
        self.db = supabase_client
        self.table = table

    def _append_sync(self, message: Message) -> None:
        self.db.table(self.table).insert(message.to_row()).execute()

    def _query_by_user_sync(self, user_id: str) -> list[Message]:
        response = (
            self.db.table(self.table)
            .select("id,user_id,role,content,typed_at")
            .eq("user_id", user_id)
            .execute()
        )
        rows = response.data if isinstance(response.data, list) else []
        return [coerce_message(row) for row in rows if isinstance(row, dict)]

    def _delete_sync(self, ids: list[str]) -> None:
        self.db.table(self.table).delete().in_("id", ids).execute()

    async def append(self, message: Message) -> None:
        try:
            await asyncio.to_thread(self._append_sync, message)
        except Exception as exc:  # noqa: BLE001
            raise PersistError(f"Failed to append message {message.id}: {exc}") from exc

    async def query_by_user(self, user_id: str) -> list[Message]:
        user_id = (user_id or "").strip()
        if not user_id:
            return []
        try:
            return await asyncio.to_thread(self._query_by_user_sync, user_id)
        except Exception as exc:  # noqa: BLE001
            raise PersistError(f"Failed to query messages for {user_id}: {exc}") from exc

    async def batch_delete(self, ids: Iterable[str]) -> int:
        """Delete records by id in chunks.  Returns how many ids were submitted."""
        unique = list(dict.fromkeys(i for i in ids if i))
        if not unique:
            return 0
        for start in range(0, len(unique), _DELETE_CHUNK_SIZE):
            chunk = unique[start : start + _DELETE_CHUNK_SIZE]
            try:
                await asyncio.to_thread(self._delete_sync, chunk)
            except Exception as exc:  # noqa: BLE001
                raise PersistError(f"Failed to delete {len(chunk)} messages: {exc}") from exc
        logger.debug("Deleted %d messages from %s", len(unique), self.table)
        return len(unique)


_supabase_admin_client: Optional[Client] = None


def get_supabase_admin_client() -> Client:
    global _supabase_admin_client  # noqa: PLW0603
    if _supabase_admin_client:
        return _supabase_admin_client
    if not settings.supabase_url or not settings.supabase_service_role:
        raise MessageStoreConfigurationError("Supabase credentials not configured")
    _supabase_admin_client = create_client(settings.supabase_url, settings.supabase_service_role)
    return _supabase_admin_client


def get_message_store() -> SupabaseMessageStore:
    return SupabaseMessageStore(get_supabase_admin_client(), table=settings.messages_table)

