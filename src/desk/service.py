"""ServiceDesk — the per-session facade presentation layers talk to.

Owns one instance of every component for the signed-in actor, wires the
push subscriptions, and exposes read-only snapshots plus the user intents
(create, change status, reject, approve, send note, open thread, refresh).

Lifecycle: INIT → READY (``start``) → DISPOSED (``dispose``). Push
handlers and load completions arriving after ``dispose`` are dropped.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Optional
from urllib.parse import parse_qs

from src.common.exceptions import ServiceDeskError, ValidationError
from src.common.models import (
    Actor,
    MediaItem,
    Notification,
    RequestDraft,
    RequestStatus,
    Role,
    ServiceNote,
    ServiceRequest,
)
from src.gateway.auth import SessionHandle
from src.gateway.client import (
    NOTES_TABLE,
    NOTIFICATIONS_TABLE,
    REQUESTS_TABLE,
    Subscription,
    SupabaseGateway,
)
from src.gateway.email import EmailNotifier
from src.gateway.storage import MediaFile, MediaStorage

from .controller import DomainStatus, SyncController
from .directory import InventoryRepository, ProfileDirectory
from .feedback import SoundPlayer, Toaster
from .notes import NoteThreadManager
from .notifications import NotificationFeed, NotificationService, VolumePreference
from .repository import RequestRepository, check_upload_sizes
from .retry import RetryPolicy
from .unread import (
    ALERT_NOTE,
    ALERT_NOTIFICATION,
    AlertPairing,
    NoteOutcome,
    UnreadTracker,
    build_notes_index,
    compute_unread_map,
)

logger = logging.getLogger(__name__)

REQUEST_UPDATED_TOAST = "Your request status was updated."

DOMAIN_REQUESTS = "requests"
DOMAIN_NOTES = "notes"
DOMAIN_NOTIFICATIONS = "notifications"
DOMAIN_PROFILES = "profiles"
DOMAIN_INVENTORY = "inventory"


class DeskState(str, Enum):
    INIT = "init"
    READY = "ready"
    DISPOSED = "disposed"


def parse_request_link(link: str) -> Optional[str]:
    """Extract the request id from a deep link such as ``#/my-requests?id=42``."""
    if not link or "?" not in link:
        return None
    values = parse_qs(link.split("?", 1)[1]).get("id")
    return values[0] if values else None


class ServiceDesk:
    """Snapshots and intents for one signed-in actor."""

    def __init__(
        self,
        gateway: SupabaseGateway,
        session: SessionHandle,
        *,
        storage: Optional[MediaStorage] = None,
        email: Optional[EmailNotifier] = None,
        toaster: Optional[Toaster] = None,
        sound: Optional[SoundPlayer] = None,
        volume: Optional[VolumePreference] = None,
        policy: Optional[RetryPolicy] = None,
    ) -> None:
        actor = session.actor
        if actor is None:
            raise ServiceDeskError("ServiceDesk needs a signed-in session")
        self.actor: Actor = actor
        self._gateway = gateway
        self._session = session
        self._storage = storage
        self.toaster = toaster or Toaster()
        self.sound = sound or SoundPlayer()
        self.state = DeskState.INIT
        self._subscriptions: list[Subscription] = []

        self.notifier = NotificationService(gateway)
        self.feed = NotificationFeed(
            gateway, actor.id, sound=self.sound, toaster=self.toaster, volume=volume
        )
        self.notes = NoteThreadManager(
            gateway,
            actor,
            notifier=self.notifier,
            storage=storage,
            request_lookup=lambda request_id: self.repository.get(request_id),
        )
        self.repository = RequestRepository(
            gateway, actor, self.notes, self.notifier, email=email
        )
        self.unread = UnreadTracker(
            sound=self.sound, toaster=self.toaster, volume=lambda: self.feed.volume
        )
        self.alerts = AlertPairing()
        self.profiles = ProfileDirectory(gateway)
        self.inventory = InventoryRepository(gateway)
        self.controller = SyncController(policy=policy, toaster=self.toaster)
        self._register_domains()

    # --- Wiring ---

    def _register_domains(self) -> None:
        self.controller.register(
            DOMAIN_REQUESTS,
            self._fetch_requests,
            self._apply_requests,
            self.repository.has_cache,
        )
        self.controller.register(
            DOMAIN_NOTES,
            self._fetch_open_thread,
            self._apply_open_thread,
            self.notes.has_cache,
            enabled=lambda: self.notes.open_thread_id is not None,
        )
        self.controller.register(
            DOMAIN_NOTIFICATIONS,
            self.feed.fetch,
            lambda items, silent: self.feed.apply(items),
            lambda: bool(self.feed.items),
        )
        if self.actor.is_admin:
            self.controller.register(
                DOMAIN_PROFILES,
                self.profiles.list_with_stats,
                self.profiles.apply,
                self.profiles.has_cache,
            )
            self.controller.register(
                DOMAIN_INVENTORY,
                self.inventory.list_items,
                self.inventory.apply,
                self.inventory.has_cache,
            )

    async def _fetch_requests(self) -> tuple[list[ServiceRequest], list[dict]]:
        requests = await self.repository.list_requests()
        notes_rows = await self.repository.fetch_notes_index([r.id for r in requests])
        return requests, notes_rows

    def _apply_requests(self, result: tuple[list[ServiceRequest], list[dict]], silent: bool) -> None:
        requests, notes_rows = result
        self.repository.apply_list(requests)
        if not silent:
            unread = compute_unread_map(requests, build_notes_index(notes_rows), self.actor.id)
            # The open thread is being read right now.
            if self.notes.open_thread_id is not None:
                unread[self.notes.open_thread_id] = False
            self.unread.rebuild(unread)

    async def _fetch_open_thread(self) -> tuple[str, list[ServiceNote]]:
        request_id = self.notes.open_thread_id
        return request_id, await self.notes.fetch_thread(request_id)

    def _apply_open_thread(self, result: tuple[str, list[ServiceNote]], silent: bool) -> None:
        request_id, notes = result
        self.notes.apply_thread(request_id, notes)

    async def start(self, load: bool = True) -> ServiceDesk:
        """Subscribe to push events and run the first (blocking) loads."""
        if self.state is DeskState.DISPOSED:
            raise ServiceDeskError("ServiceDesk already disposed")
        await self._subscribe()
        self.state = DeskState.READY
        if load:
            await self.controller.refresh(silent=False)
        return self

    async def _subscribe(self) -> None:
        own = f"user_id=eq.{self.actor.id}"
        request_filter = None if self.actor.is_admin else own
        subs = [
            await self._gateway.subscribe(
                REQUESTS_TABLE, "UPDATE", self._on_request_updated, filter=request_filter
            ),
            await self._gateway.subscribe(NOTES_TABLE, "INSERT", self._on_note_inserted),
            await self._gateway.subscribe(
                NOTIFICATIONS_TABLE, "INSERT", self._on_notification_inserted, filter=own
            ),
            await self._gateway.subscribe(
                NOTIFICATIONS_TABLE, "UPDATE", self._on_notification_updated, filter=own
            ),
        ]
        if self.actor.is_admin:
            subs.append(
                await self._gateway.subscribe(REQUESTS_TABLE, "INSERT", self._on_request_inserted)
            )
        self._subscriptions.extend(subs)

    async def dispose(self) -> None:
        """Tear down: unsubscribe every channel and drop in-flight results."""
        if self.state is DeskState.DISPOSED:
            return
        self.state = DeskState.DISPOSED
        self.controller.dispose()
        for sub in self._subscriptions:
            await sub.unsubscribe()
        self._subscriptions.clear()

    @property
    def alive(self) -> bool:
        return self.state is not DeskState.DISPOSED

    # --- Push handlers ---

    def _on_request_updated(self, row: dict) -> None:
        if not self.alive:
            return
        updated = self.repository.apply_remote_update(row)
        if updated is not None and self.actor.role is Role.CUSTOMER:
            self.toaster.success(REQUEST_UPDATED_TOAST)

    def _on_request_inserted(self, row: dict) -> None:
        if not self.alive:
            return
        created = self.repository.apply_remote_insert(row)
        if created is not None:
            self.toaster.info(f"New service request: {created.device}")

    async def _on_note_inserted(self, row: dict) -> None:
        if not self.alive:
            return
        note = ServiceNote(**row)
        outcome = self.unread.on_note_inserted(
            note,
            self.actor.id,
            open_thread_id=self.notes.open_thread_id,
            known_request_ids=[r.id for r in self.repository.snapshot()],
            claim=lambda request_id: self.alerts.claim(request_id, ALERT_NOTE),
        )
        if outcome is NoteOutcome.OPEN_THREAD:
            await self.notes.receive(note)
        elif outcome is NoteOutcome.OWN:
            # Echo of our own insert: merge is a no-op when append already added it.
            self.notes.merge_incoming(note)

    def _on_notification_inserted(self, row: dict) -> None:
        if not self.alive:
            return
        alert = True
        request_id = parse_request_link(row.get("link") or "")
        if (
            request_id is not None
            and str(row.get("user_id")) == self.actor.id
            and self.repository.get(request_id) is not None
            and not any(n.id == str(row.get("id")) for n in self.feed.items)
        ):
            # The note push for the same message may already have alerted
            alert = self.alerts.claim(request_id, ALERT_NOTIFICATION)
        self.feed.on_inserted(row, alert=alert)

    def _on_notification_updated(self, row: dict) -> None:
        if self.alive:
            self.feed.on_updated(row)

    # --- Snapshots ---

    @property
    def requests(self) -> list[ServiceRequest]:
        return self.repository.snapshot()

    @property
    def thread(self) -> list[ServiceNote]:
        return self.notes.notes

    @property
    def unread_map(self) -> dict[str, bool]:
        return self.unread.snapshot()

    @property
    def notifications(self) -> list[Notification]:
        return self.feed.items

    def sync_status(self, domain: str = DOMAIN_REQUESTS) -> DomainStatus:
        return self.controller.status(domain)

    # --- Intents ---

    async def refresh(self, silent: bool = False) -> dict[str, bool]:
        return await self.controller.refresh(silent=silent)

    async def retry(self, domain: str = DOMAIN_REQUESTS) -> bool:
        return await self.controller.retry(domain)

    async def on_visibility_change(self, visible: bool) -> dict[str, bool]:
        return await self.controller.on_visibility_change(visible)

    async def open_thread(self, request_id: str) -> list[ServiceNote]:
        """Open a request's thread: clears its unread flag and loads notes."""
        if self.repository.get(request_id) is None:
            raise ValidationError(f"Unknown request: {request_id}")
        self.notes.open(request_id)
        self.acknowledge_thread(request_id)
        await self.controller.load(DOMAIN_NOTES)
        return self.thread

    async def open_link(self, link: str) -> Optional[list[ServiceNote]]:
        request_id = parse_request_link(link)
        if request_id is None or self.repository.get(request_id) is None:
            return None
        return await self.open_thread(request_id)

    def acknowledge_thread(self, request_id: str) -> None:
        self.unread.acknowledge(request_id)

    def close_thread(self) -> None:
        self.notes.close()

    async def submit_request(
        self, draft: RequestDraft | dict, files: list[MediaFile]
    ) -> ServiceRequest:
        """Upload every file, then create the request.

        An upload failure aborts before anything is inserted (UploadError);
        an insert failure after upload surfaces as PersistError.
        """
        if self._storage is None:
            raise ServiceDeskError("Media storage is not configured")
        # Validate before spending time on uploads.
        self.repository.build_draft(draft)
        check_upload_sizes(files, self.repository.media_settings.max_video_bytes)
        media = await self._storage.upload_request_media(self.actor.id, files)
        return await self.repository.create_request(draft, media)

    async def create_request(
        self, draft: RequestDraft | dict, uploaded_media: list[MediaItem]
    ) -> ServiceRequest:
        return await self.repository.create_request(draft, uploaded_media)

    async def change_status(
        self,
        request_id: str,
        new_status: RequestStatus | str,
        extra_fields: Optional[dict[str, Any]] = None,
    ) -> ServiceRequest:
        return await self.repository.update_status(request_id, new_status, extra_fields)

    async def reject(self, request_id: str, reason: str) -> ServiceRequest:
        return await self.repository.reject_request(request_id, reason)

    async def approve_cost(self, request_id: str) -> ServiceRequest:
        return await self.repository.approve_cost(request_id)

    async def send_note(
        self,
        text: str,
        attachment: Optional[MediaFile] = None,
        request_id: Optional[str] = None,
    ) -> ServiceNote:
        """Send a note to the open thread (or ``request_id``)."""
        request_id = request_id or self.notes.open_thread_id
        if request_id is None:
            raise ValidationError("No thread is open")
        if not (text or "").strip() and attachment is None:
            raise ValidationError("A note needs text or an attachment")
        media = await self.notes.upload_attachment(attachment) if attachment else None
        return await self.notes.append_note(request_id, text, media)

    async def mark_notification_read(self, notification_id: str) -> None:
        await self.feed.mark_read(notification_id)

    async def mark_all_read(self) -> None:
        await self.feed.mark_all_read(self.actor.id)

    async def delete_notification(self, notification_id: str) -> None:
        await self.feed.delete(notification_id)

    def set_volume(self, volume: float) -> float:
        return self.feed.set_volume(volume)
