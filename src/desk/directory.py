"""Staff-side listings: customer directory with request counts, and inventory."""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any

import pydantic

from src.common.exceptions import ValidationError
from src.common.models import InventoryItem, InventoryStatus, ProfileWithStats
from src.gateway.client import INVENTORY_TABLE, PROFILES_TABLE, REQUESTS_TABLE, SupabaseGateway

logger = logging.getLogger(__name__)

UNNAMED_PROFILE = "Unnamed"


class ProfileDirectory:
    """All profiles, newest first, each with its number of requests."""

    def __init__(self, gateway: SupabaseGateway) -> None:
        self._gateway = gateway
        self._profiles: list[ProfileWithStats] = []

    def snapshot(self) -> list[ProfileWithStats]:
        return list(self._profiles)

    def has_cache(self) -> bool:
        return bool(self._profiles)

    async def list_with_stats(self) -> list[ProfileWithStats]:
        profiles = await self._gateway.select(PROFILES_TABLE, order="created_at", desc=True)
        owners = await self._gateway.select(REQUESTS_TABLE, columns="user_id")
        counts = Counter(str(r["user_id"]) for r in owners if r.get("user_id"))
        return [
            ProfileWithStats(
                **{**row, "full_name": row.get("full_name") or UNNAMED_PROFILE},
                request_count=counts.get(str(row["id"]), 0),
            )
            for row in profiles
        ]

    def apply(self, profiles: list[ProfileWithStats], silent: bool = False) -> None:
        self._profiles = list(profiles)


class InventoryRepository:
    """Parts on the shelf."""

    def __init__(self, gateway: SupabaseGateway) -> None:
        self._gateway = gateway
        self._items: list[InventoryItem] = []

    def snapshot(self) -> list[InventoryItem]:
        return list(self._items)

    def has_cache(self) -> bool:
        return bool(self._items)

    def critical_items(self) -> list[InventoryItem]:
        return [item for item in self._items if item.is_critical]

    async def list_items(self) -> list[InventoryItem]:
        rows = await self._gateway.select(INVENTORY_TABLE, order="created_at", desc=True)
        return [InventoryItem(**row) for row in rows]

    def apply(self, items: list[InventoryItem], silent: bool = False) -> None:
        self._items = list(items)

    async def add_item(self, fields: dict[str, Any]) -> InventoryItem:
        """Validate and insert a stock item. Raises ValidationError / PersistError."""
        if not (fields.get("name") or "").strip():
            raise ValidationError("Item name is required")
        try:
            draft = InventoryItem(id="pending", **{"status": InventoryStatus.NEW, **fields})
        except pydantic.ValidationError as exc:
            raise ValidationError(str(exc)) from exc
        stored = await self._gateway.insert(
            INVENTORY_TABLE, draft.to_row(exclude={"id", "created_at"})
        )
        item = InventoryItem(**stored[0]) if stored else draft
        self._items.insert(0, item)
        logger.info("Inventory item added: %s (qty %d)", item.name, item.quantity)
        return item
