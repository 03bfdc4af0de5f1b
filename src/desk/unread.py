"""Per-request "has unread message" tracking."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, Iterable, Mapping, Optional, Sequence, Union

from src.common.models import ServiceNote, ServiceRequest

from .feedback import SoundPlayer, Toaster

logger = logging.getLogger(__name__)

NEW_MESSAGE_TOAST = "You have a new message."

NoteLike = Union[ServiceNote, Mapping]


def _author_of(note: NoteLike) -> Optional[str]:
    if isinstance(note, ServiceNote):
        return note.author_id
    value = note.get("author_id")
    return None if value is None else str(value)


def build_notes_index(rows: Iterable[Mapping]) -> dict[str, list[Mapping]]:
    """Group note rows (already ordered by created_at) by request id."""
    index: dict[str, list[Mapping]] = {}
    for row in rows:
        index.setdefault(str(row["request_id"]), []).append(row)
    return index


def compute_unread_map(
    requests: Sequence[ServiceRequest],
    notes_index: Mapping[str, Sequence[NoteLike]],
    actor_id: str,
) -> dict[str, bool]:
    """True for each request whose latest note was written by someone else."""
    unread: dict[str, bool] = {}
    for request in requests:
        notes = notes_index.get(request.id) or ()
        unread[request.id] = bool(notes) and _author_of(notes[-1]) != actor_id
    return unread


class NoteOutcome(str, Enum):
    OWN = "own"                # written by the actor: nothing to do
    UNKNOWN = "unknown"        # request not in the actor's list
    OPEN_THREAD = "open"       # merge into the open thread, no badge
    MARKED_UNREAD = "unread"   # badge set, sound + toast raised


ALERT_NOTE = "note"
ALERT_NOTIFICATION = "notification"


class AlertPairing:
    """Pairs a note push with the notification announcing it.

    Both arrive on separate channels in either order. The first one to
    reach ``claim`` for a request alerts; its counterpart from the other
    source is consumed silently.
    """

    def __init__(self) -> None:
        self._pending: dict[str, str] = {}

    def claim(self, request_id: str, source: str) -> bool:
        other = self._pending.get(request_id)
        if other is not None and other != source:
            del self._pending[request_id]
            return False
        self._pending[request_id] = source
        return True


class UnreadTracker:
    """Holds the unread map and reacts to note push events."""

    def __init__(
        self,
        sound: Optional[SoundPlayer] = None,
        toaster: Optional[Toaster] = None,
        volume: Optional[Callable[[], float]] = None,
    ) -> None:
        self._sound = sound or SoundPlayer()
        self._toaster = toaster or Toaster()
        self._volume = volume or (lambda: 0.5)
        self._unread: dict[str, bool] = {}

    def snapshot(self) -> dict[str, bool]:
        return dict(self._unread)

    def is_unread(self, request_id: str) -> bool:
        return self._unread.get(request_id, False)

    def rebuild(self, unread: Mapping[str, bool]) -> None:
        """Replace the whole map (foreground refresh only)."""
        self._unread = dict(unread)

    def on_note_inserted(
        self,
        note: ServiceNote,
        actor_id: str,
        open_thread_id: Optional[str] = None,
        known_request_ids: Optional[Iterable[str]] = None,
        claim: Optional[Callable[[str], bool]] = None,
    ) -> NoteOutcome:
        """Classify a pushed note; only MARKED_UNREAD raises sound and toast.

        ``claim`` is asked before alerting; a False answer means the same
        message was already announced and the flag is set silently.
        """
        if note.author_id == actor_id:
            return NoteOutcome.OWN
        if known_request_ids is not None and note.request_id not in set(known_request_ids):
            return NoteOutcome.UNKNOWN
        if open_thread_id is not None and note.request_id == open_thread_id:
            if claim is not None:
                claim(note.request_id)
            return NoteOutcome.OPEN_THREAD
        self._unread[note.request_id] = True
        if claim is None or claim(note.request_id):
            self._sound.play(self._volume())
            self._toaster.info(NEW_MESSAGE_TOAST)
        logger.info("New message on request %s", note.request_id)
        return NoteOutcome.MARKED_UNREAD

    def acknowledge(self, request_id: str) -> None:
        """Called when the actor opens the thread."""
        self._unread[request_id] = False
