"""Note Thread Manager — ordered, de-duplicated history of one request.

Notes store only ``author_id``; display info is resolved when a thread is
read, with a single batched profile lookup per load. Notes reach the open
thread three ways (initial load, the actor's own append, push events) in
no guaranteed order, so every merge de-duplicates by note id.
"""

from __future__ import annotations

import bisect
import logging
from typing import Callable, Iterable, Optional

from src.common.exceptions import FetchError, ValidationError
from src.common.models import (
    UNKNOWN_AUTHOR,
    Actor,
    MediaItem,
    NoteAuthor,
    ServiceNote,
    ServiceRequest,
)
from src.gateway.client import NOTES_TABLE, PROFILES_TABLE, SupabaseGateway
from src.gateway.storage import MediaFile, MediaStorage

from .notifications import NotificationService

logger = logging.getLogger(__name__)


class NoteThread:
    """Notes of one request in ``created_at`` order; ties keep arrival order."""

    def __init__(self, request_id: str, notes: Iterable[ServiceNote] = ()) -> None:
        self.request_id = request_id
        self._notes: list[ServiceNote] = []
        self._ids: set[str] = set()
        for note in notes:
            self.merge(note)

    def __len__(self) -> int:
        return len(self._notes)

    def __contains__(self, note_id: str) -> bool:
        return note_id in self._ids

    @property
    def notes(self) -> list[ServiceNote]:
        return list(self._notes)

    def merge(self, note: ServiceNote) -> bool:
        """Insert a note unless its id is already present. Returns True if added."""
        if note.id in self._ids or note.request_id != self.request_id:
            return False
        keys = [n.created_at for n in self._notes]
        position = bisect.bisect_right(keys, note.created_at)
        self._notes.insert(position, note)
        self._ids.add(note.id)
        return True


class NoteThreadManager:
    """Loads, appends and merges notes for the currently open request."""

    def __init__(
        self,
        gateway: SupabaseGateway,
        actor: Actor,
        notifier: Optional[NotificationService] = None,
        storage: Optional[MediaStorage] = None,
        request_lookup: Optional[Callable[[str], Optional[ServiceRequest]]] = None,
    ) -> None:
        self._gateway = gateway
        self._actor = actor
        self._notifier = notifier
        self._storage = storage
        self._request_lookup = request_lookup
        self._authors: dict[str, NoteAuthor] = {actor.id: self._own_author()}
        self._thread: Optional[NoteThread] = None

    def _own_author(self) -> NoteAuthor:
        return NoteAuthor(role=self._actor.role, full_name=self._actor.full_name or "Me")

    # --- Open thread ---

    @property
    def open_thread_id(self) -> Optional[str]:
        return self._thread.request_id if self._thread else None

    @property
    def notes(self) -> list[ServiceNote]:
        return self._thread.notes if self._thread else []

    def has_cache(self) -> bool:
        return bool(self._thread and len(self._thread))

    def open(self, request_id: str) -> NoteThread:
        if self._thread is None or self._thread.request_id != request_id:
            self._thread = NoteThread(request_id)
        return self._thread

    def close(self) -> None:
        self._thread = None

    # --- Loading ---

    async def _resolve_authors(self, author_ids: list[str]) -> dict[str, NoteAuthor]:
        """One batched profile lookup for all distinct, not-yet-known authors."""
        missing = [a for a in author_ids if a not in self._authors]
        if missing:
            try:
                rows = await self._gateway.select(
                    PROFILES_TABLE,
                    columns="id, full_name, role",
                    in_filter=("id", missing),
                )
            except FetchError as e:
                logger.warning("Author lookup failed, using placeholders: %s", e)
                rows = []
            for row in rows:
                self._authors[str(row["id"])] = NoteAuthor(
                    role=row.get("role") or UNKNOWN_AUTHOR.role,
                    full_name=row.get("full_name") or UNKNOWN_AUTHOR.full_name,
                )
        return {a: self._authors.get(a, UNKNOWN_AUTHOR) for a in author_ids}

    async def fetch_thread(self, request_id: str) -> list[ServiceNote]:
        rows = await self._gateway.select(
            NOTES_TABLE,
            filters={"request_id": request_id},
            order="created_at",
        )
        author_ids = list(dict.fromkeys(str(r["author_id"]) for r in rows if r.get("author_id")))
        authors = await self._resolve_authors(author_ids)
        notes = []
        for row in rows:
            note = ServiceNote(**{k: v for k, v in row.items() if k != "author"})
            note.author = authors.get(note.author_id or "", UNKNOWN_AUTHOR)
            notes.append(note)
        return notes

    def apply_thread(self, request_id: str, notes: list[ServiceNote]) -> bool:
        """Install fetched notes if the thread is still the open one.

        Notes merged while the fetch was in flight are kept.
        """
        if self._thread is None or self._thread.request_id != request_id:
            return False
        fresh = NoteThread(request_id, notes)
        for note in self._thread.notes:
            fresh.merge(note)
        self._thread = fresh
        return True

    async def load_thread(self, request_id: str) -> list[ServiceNote]:
        notes = await self.fetch_thread(request_id)
        self.apply_thread(request_id, notes)
        return notes

    # --- Merging ---

    def merge_incoming(self, note: ServiceNote) -> bool:
        """Merge a pushed note into the open thread (idempotent by id)."""
        if self._thread is None or self._thread.request_id != note.request_id:
            return False
        if note.author is None:
            note = note.model_copy(update={"author": self._authors.get(note.author_id or "", UNKNOWN_AUTHOR)})
        return self._thread.merge(note)

    async def receive(self, note: ServiceNote) -> bool:
        """Resolve the author of a pushed note, then merge it."""
        if self._thread is None or self._thread.request_id != note.request_id:
            return False
        if note.author is None and note.author_id:
            authors = await self._resolve_authors([note.author_id])
            note = note.model_copy(update={"author": authors[note.author_id]})
        return self.merge_incoming(note)

    # --- Appending ---

    async def upload_attachment(self, media: MediaFile) -> MediaItem:
        if self._storage is None:
            raise ValidationError("Attachments are not available without media storage")
        return await self._storage.upload_note_attachment(media)

    async def _insert(self, request_id: str, text: str, media: Optional[MediaItem]) -> ServiceNote:
        row = {"request_id": request_id, "author_id": self._actor.id, "note": text}
        if media is not None:
            row["media_url"] = media.url
            row["media_type"] = media.type.value
        stored = await self._gateway.insert(NOTES_TABLE, row)
        note = ServiceNote(**stored[0])
        note.author = self._own_author()
        if self._thread is not None and self._thread.request_id == request_id:
            self._thread.merge(note)
        return note

    async def append_note(
        self,
        request_id: str,
        text: str,
        media: Optional[MediaItem] = None,
    ) -> ServiceNote:
        """Add a note from the actor and tell the other party.

        Raises:
            ValidationError: Neither text nor media given.
            PersistError: The gateway refused the insert (not retried).
        """
        text = (text or "").strip()
        if not text and media is None:
            raise ValidationError("A note needs text or an attachment")
        note = await self._insert(request_id, text, media)

        if self._notifier is not None:
            request = self._request_lookup(request_id) if self._request_lookup else None
            sender = self._actor.full_name or ("Staff" if self._actor.is_admin else "Customer")
            await self._notifier.notify_counterpart(
                self._actor,
                request.user_id if request else None,
                "New message",
                f"{sender} sent a new message.",
                request_id=request_id,
            )
        return note

    async def append_system_note(self, request_id: str, text: str) -> ServiceNote:
        """Record a workflow event in the thread (no notification)."""
        return await self._insert(request_id, text, None)
