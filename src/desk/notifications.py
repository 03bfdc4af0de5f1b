"""Notification feed — send, receive and acknowledge per-actor notifications.

Sending (``NotificationService``) is a best-effort side effect of request
and note mutations: failures are logged and reported as ``False``, never
raised into the mutation that triggered them.

Receiving (``NotificationFeed``) keeps the actor's latest notifications,
applies push inserts/updates, and performs read/delete acknowledgments
optimistically with rollback-by-refetch.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

from src.common.config import settings
from src.common.exceptions import FetchError, PersistError
from src.common.models import Actor, Notification, NotificationType, Role
from src.gateway.client import NOTIFICATIONS_TABLE, PROFILES_TABLE, SupabaseGateway

from .feedback import SoundPlayer, Toaster

logger = logging.getLogger(__name__)

ADMIN_DASHBOARD_LINK = "#/admin-dashboard"
CUSTOMER_REQUESTS_LINK = "#/my-requests"


def request_link(role: Role, request_id: str) -> str:
    """Deep link that opens a request's thread for the given viewer."""
    base = ADMIN_DASHBOARD_LINK if role is Role.ADMIN else CUSTOMER_REQUESTS_LINK
    return f"{base}?id={request_id}"


class VolumePreference:
    """Per-actor notification volume (0.0–1.0) persisted as JSON."""

    def __init__(self, path: Optional[Path] = None, default: Optional[float] = None) -> None:
        self._path = Path(path or settings.notifications.prefs_path)
        self._default = settings.notifications.default_volume if default is None else default
        self._values: dict[str, float] = self._read()

    def _read(self) -> dict[str, float]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Could not read volume preferences %s: %s", self._path, e)
            return {}
        return {str(k): float(v) for k, v in data.items()} if isinstance(data, dict) else {}

    def get(self, actor_id: str) -> float:
        return self._values.get(actor_id, self._default)

    def set(self, actor_id: str, volume: float) -> float:
        volume = min(max(float(volume), 0.0), 1.0)
        self._values[actor_id] = volume
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(self._values, indent=2), encoding="utf-8")
        return volume


class NotificationService:
    """Creates notification rows for other actors."""

    def __init__(self, gateway: SupabaseGateway) -> None:
        self._gateway = gateway

    async def send_notification(
        self,
        user_id: str,
        title: str,
        message: str,
        type: NotificationType = NotificationType.INFO,
        link: Optional[str] = None,
    ) -> bool:
        """Send a notification to a specific user."""
        row = {
            "user_id": user_id,
            "title": title,
            "message": message,
            "type": type.value,
            "is_read": False,
        }
        if link:
            row["link"] = link
        try:
            await self._gateway.insert(NOTIFICATIONS_TABLE, row)
        except PersistError as e:
            logger.error("Failed to send notification: %s", e)
            return False
        return True

    async def notify_admins(
        self,
        title: str,
        message: str,
        type: NotificationType = NotificationType.INFO,
        link: str = ADMIN_DASHBOARD_LINK,
    ) -> bool:
        """Send a notification to every user with the admin role."""
        try:
            admins = await self._gateway.select(
                PROFILES_TABLE, columns="id", filters={"role": Role.ADMIN.value}
            )
            if not admins:
                return False
            rows = [
                {
                    "user_id": admin["id"],
                    "title": title,
                    "message": message,
                    "type": type.value,
                    "link": link,
                    "is_read": False,
                }
                for admin in admins
            ]
            await self._gateway.insert(NOTIFICATIONS_TABLE, rows)
        except (FetchError, PersistError) as e:
            logger.error("Failed to notify admins: %s", e)
            return False
        return True

    async def notify_counterpart(
        self,
        actor: Actor,
        owner_id: Optional[str],
        title: str,
        message: str,
        type: NotificationType = NotificationType.INFO,
        request_id: Optional[str] = None,
    ) -> bool:
        """Staff actions notify the request owner; customer actions notify staff."""
        if actor.role is Role.ADMIN:
            if not owner_id or owner_id == actor.id:
                return False
            link = request_link(Role.CUSTOMER, request_id) if request_id else CUSTOMER_REQUESTS_LINK
            return await self.send_notification(owner_id, title, message, type, link)
        link = request_link(Role.ADMIN, request_id) if request_id else ADMIN_DASHBOARD_LINK
        return await self.notify_admins(title, message, type, link)


class NotificationFeed:
    """The current actor's notification list."""

    def __init__(
        self,
        gateway: SupabaseGateway,
        actor_id: str,
        sound: Optional[SoundPlayer] = None,
        toaster: Optional[Toaster] = None,
        volume: Optional[VolumePreference] = None,
        limit: Optional[int] = None,
    ) -> None:
        self._gateway = gateway
        self._actor_id = actor_id
        self._sound = sound or SoundPlayer()
        self._toaster = toaster or Toaster()
        self._volume = volume or VolumePreference()
        self._limit = limit or settings.sync.notification_feed_limit
        self._items: list[Notification] = []

    # --- Snapshots ---

    @property
    def items(self) -> list[Notification]:
        return list(self._items)

    @property
    def unread_count(self) -> int:
        return sum(1 for n in self._items if not n.is_read)

    @property
    def volume(self) -> float:
        return self._volume.get(self._actor_id)

    def set_volume(self, volume: float) -> float:
        return self._volume.set(self._actor_id, volume)

    # --- Loading ---

    async def fetch(self) -> list[Notification]:
        rows = await self._gateway.select(
            NOTIFICATIONS_TABLE,
            filters={"user_id": self._actor_id},
            order="created_at",
            desc=True,
            limit=self._limit,
        )
        return [Notification(**row) for row in rows]

    def apply(self, items: list[Notification]) -> None:
        self._items = list(items)

    async def load(self) -> list[Notification]:
        self.apply(await self.fetch())
        return self.items

    async def _resync(self, previous: list[Notification]) -> None:
        """Restore the pre-write list, then reload from the server."""
        self._items = previous
        try:
            await self.load()
        except FetchError as e:
            logger.warning("Notification re-sync failed: %s", e)

    # --- Push ---

    def on_inserted(self, row: dict, alert: bool = True) -> Optional[Notification]:
        """Prepend a pushed notification; ``alert=False`` skips sound and toast."""
        notification = Notification(**row)
        if notification.user_id != self._actor_id:
            return None
        if any(n.id == notification.id for n in self._items):
            return None
        self._items.insert(0, notification)
        if not alert:
            return notification
        self._sound.play(self.volume)
        self._toaster.show(notification.title, "success" if notification.type is NotificationType.SUCCESS else "info")
        return notification

    def on_updated(self, row: dict) -> Optional[Notification]:
        updated = Notification(**row)
        for index, existing in enumerate(self._items):
            if existing.id == updated.id:
                self._items[index] = updated
                return updated
        return None

    # --- Acknowledgment ---

    def _set_read(self, notification_id: Optional[str] = None) -> None:
        self._items = [
            n.model_copy(update={"is_read": True})
            if notification_id is None or n.id == notification_id
            else n
            for n in self._items
        ]

    async def mark_read(self, notification_id: str) -> None:
        previous = self._items
        self._set_read(notification_id)
        try:
            await self._gateway.update(NOTIFICATIONS_TABLE, {"is_read": True}, {"id": notification_id})
        except PersistError:
            await self._resync(previous)
            raise

    async def mark_all_read(self, actor_id: Optional[str] = None) -> None:
        """Bulk-acknowledge every notification of the actor (optimistic)."""
        actor_id = actor_id or self._actor_id
        previous = self._items
        self._set_read()
        try:
            await self._gateway.update(NOTIFICATIONS_TABLE, {"is_read": True}, {"user_id": actor_id})
        except PersistError:
            await self._resync(previous)
            raise

    async def delete(self, notification_id: str) -> None:
        previous = self._items
        self._items = [n for n in self._items if n.id != notification_id]
        try:
            await self._gateway.delete(NOTIFICATIONS_TABLE, {"id": notification_id})
        except PersistError:
            await self._resync(previous)
            raise
