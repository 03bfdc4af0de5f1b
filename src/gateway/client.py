"""Supabase Gateway — row CRUD and push subscriptions over supabase-py.

Wraps the async Supabase client behind a small table-oriented API so the
sync core never touches query builders directly. Every read failure is
raised as FetchError and every write failure as PersistError, with the
underlying client exception chained.

Usage:
    from src.gateway.client import SupabaseGateway

    gateway = SupabaseGateway()
    rows = await gateway.select("service_requests", order="created_at", desc=True)
    sub = await gateway.subscribe("service_notes", "INSERT", on_note)
    ...
    await sub.unsubscribe()
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

from src.common.config import get_supabase_credentials
from src.common.exceptions import ConfigError, FetchError, PersistError

logger = logging.getLogger(__name__)

PushHandler = Callable[[dict], Union[Awaitable[None], None]]

# Tables the sync core reads and writes.
REQUESTS_TABLE = "service_requests"
NOTES_TABLE = "service_notes"
PROFILES_TABLE = "profiles"
NOTIFICATIONS_TABLE = "notifications"
INVENTORY_TABLE = "inventory"


def extract_record(payload: dict) -> dict:
    """Pull the changed row out of a realtime postgres_changes payload.

    realtime-py has shipped both ``{"data": {"record": ...}}`` and the
    flatter ``{"new": ...}`` shapes; accept either.
    """
    if not isinstance(payload, dict):
        return {}
    if payload.get("new"):
        return payload["new"]
    data = payload.get("data") or {}
    return data.get("record") or payload.get("record") or {}


@dataclass
class Subscription:
    """Handle for one push channel; unsubscribe on teardown."""

    table: str
    event: str
    channel: Any
    _gateway: Optional[SupabaseGateway] = field(default=None, repr=False)
    active: bool = True

    async def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        if self._gateway is not None:
            await self._gateway.remove_channel(self.channel)


class SupabaseGateway:
    """Table-oriented async access to the remote datastore."""

    def __init__(
        self,
        supabase_url: Optional[str] = None,
        supabase_key: Optional[str] = None,
    ):
        self._supabase_url = supabase_url
        self._supabase_key = supabase_key
        self._client = None  # Lazy init
        self._pending: set[asyncio.Future] = set()
        self._channel_seq = 0

    @property
    def supabase_url(self) -> str:
        if not self._supabase_url:
            self._supabase_url, self._supabase_key = self._resolve_credentials()
        return self._supabase_url

    def _resolve_credentials(self) -> tuple[str, str]:
        if self._supabase_url and self._supabase_key:
            return self._supabase_url, self._supabase_key
        url, key = get_supabase_credentials()
        return self._supabase_url or url, self._supabase_key or key

    async def get_client(self):
        """Lazy-initialize the async Supabase client."""
        if self._client is not None:
            return self._client
        url, key = self._resolve_credentials()
        from supabase import acreate_client

        self._supabase_url, self._supabase_key = url, key
        self._client = await acreate_client(url, key)
        logger.info("Connected to Supabase: %s", url)
        return self._client

    # --- Reads ---

    async def select(
        self,
        table: str,
        *,
        columns: str = "*",
        filters: Optional[dict[str, Any]] = None,
        in_filter: Optional[tuple[str, list]] = None,
        order: Optional[str] = None,
        desc: bool = False,
        limit: Optional[int] = None,
    ) -> list[dict]:
        """Select rows. Raises FetchError on any client failure."""
        try:
            client = await self.get_client()
            query = client.table(table).select(columns)
            for column, value in (filters or {}).items():
                query = query.eq(column, value)
            if in_filter is not None:
                query = query.in_(in_filter[0], in_filter[1])
            if order:
                query = query.order(order, desc=desc)
            if limit:
                query = query.limit(limit)
            response = await query.execute()
        except ConfigError:
            raise
        except Exception as exc:
            raise FetchError(f"Failed to read {table}: {exc}") from exc
        return list(response.data or [])

    async def select_one(
        self, table: str, filters: dict[str, Any], columns: str = "*"
    ) -> Optional[dict]:
        """Return the first matching row or None."""
        rows = await self.select(table, columns=columns, filters=filters, limit=1)
        return rows[0] if rows else None

    # --- Writes ---

    async def insert(self, table: str, rows: Union[dict, list[dict]]) -> list[dict]:
        """Insert one or many rows and return the stored representation."""
        try:
            client = await self.get_client()
            response = await client.table(table).insert(rows).execute()
        except ConfigError:
            raise
        except Exception as exc:
            raise PersistError(f"Failed to insert into {table}: {exc}") from exc
        return list(response.data or [])

    async def update(
        self, table: str, values: dict[str, Any], filters: dict[str, Any]
    ) -> list[dict]:
        """Update rows matching every filter column."""
        if not filters:
            raise PersistError(f"Refusing unfiltered update on {table}")
        try:
            client = await self.get_client()
            query = client.table(table).update(values)
            for column, value in filters.items():
                query = query.eq(column, value)
            response = await query.execute()
        except ConfigError:
            raise
        except Exception as exc:
            raise PersistError(f"Failed to update {table}: {exc}") from exc
        return list(response.data or [])

    async def delete(self, table: str, filters: dict[str, Any]) -> None:
        """Delete rows matching every filter column."""
        if not filters:
            raise PersistError(f"Refusing unfiltered delete on {table}")
        try:
            client = await self.get_client()
            query = client.table(table).delete()
            for column, value in filters.items():
                query = query.eq(column, value)
            await query.execute()
        except ConfigError:
            raise
        except Exception as exc:
            raise PersistError(f"Failed to delete from {table}: {exc}") from exc

    # --- Push ---

    async def subscribe(
        self,
        table: str,
        event: str,
        handler: PushHandler,
        filter: Optional[str] = None,
    ) -> Subscription:
        """Subscribe to INSERT/UPDATE row events on a table.

        Args:
            table: Table name.
            event: "INSERT" or "UPDATE".
            handler: Called with the changed row; may be a coroutine function.
            filter: PostgREST-style predicate, e.g. "user_id=eq.<uuid>".
        """
        client = await self.get_client()
        self._channel_seq += 1
        channel = client.channel(f"{table}:{event.lower()}:{self._channel_seq}")

        def _on_change(payload: dict) -> None:
            self._dispatch(handler, extract_record(payload))

        kwargs: dict[str, Any] = {"schema": "public", "table": table}
        if filter:
            kwargs["filter"] = filter
        channel.on_postgres_changes(event.upper(), callback=_on_change, **kwargs)
        await channel.subscribe()
        logger.info("Subscribed to %s %s (filter=%s)", table, event, filter or "-")
        return Subscription(table=table, event=event, channel=channel, _gateway=self)

    async def remove_channel(self, channel: Any) -> None:
        client = await self.get_client()
        try:
            await client.remove_channel(channel)
        except Exception as exc:
            logger.warning("Failed to remove channel: %s", exc)

    def _dispatch(self, handler: PushHandler, record: dict) -> None:
        """Run a push handler; coroutine handlers are scheduled as tasks."""
        if not record:
            return
        result = handler(record)
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._pending.add(task)
            task.add_done_callback(self._on_handler_done)

    def _on_handler_done(self, task: asyncio.Future) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Push handler failed: %s", exc, exc_info=exc)

    async def drain(self) -> None:
        """Wait for in-flight push handlers (used on teardown)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
