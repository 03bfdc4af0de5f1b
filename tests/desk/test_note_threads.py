"""Tests for note threads: ordering, de-duplication, append, author lookup."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.common.exceptions import PersistError, ValidationError
from src.common.models import MediaItem, MediaType, Role, ServiceNote
from src.desk.notes import NoteThread, NoteThreadManager
from src.desk.notifications import NotificationService
from src.gateway.storage import MediaFile, MediaStorage

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def _note(note_id, minutes, request_id="r1", author_id="cust-1", text="hi"):
    return ServiceNote(
        id=note_id,
        created_at=T0 + timedelta(minutes=minutes),
        request_id=request_id,
        author_id=author_id,
        note=text,
    )


class TestNoteThread:
    def test_orders_by_created_at(self):
        thread = NoteThread("r1", [_note("b", 2), _note("a", 1), _note("c", 3)])
        assert [n.id for n in thread.notes] == ["a", "b", "c"]

    def test_merge_is_idempotent(self):
        thread = NoteThread("r1", [_note("a", 1)])
        assert not thread.merge(_note("a", 1))
        assert len(thread) == 1
        assert "a" in thread

    def test_ties_keep_arrival_order(self):
        thread = NoteThread("r1")
        thread.merge(_note("first", 5))
        thread.merge(_note("second", 5))
        thread.merge(_note("early", 1))
        assert [n.id for n in thread.notes] == ["early", "first", "second"]

    def test_other_request_ignored(self):
        thread = NoteThread("r1")
        assert not thread.merge(_note("x", 1, request_id="r2"))


@pytest.fixture
def manager(gateway, admin_actor):
    notifier = MagicMock(spec=NotificationService)
    notifier.notify_counterpart = AsyncMock(return_value=True)
    owner = MagicMock(user_id="cust-1")
    return NoteThreadManager(
        gateway, admin_actor, notifier=notifier, request_lookup=lambda request_id: owner
    )


class TestLoading:
    def test_fetch_resolves_authors_in_one_batch(self, manager, gateway):
        gateway.seed("service_notes", {"request_id": "r1", "author_id": "cust-1", "note": "hello"})
        gateway.seed("service_notes", {"request_id": "r1", "author_id": "cust-1", "note": "again"})
        gateway.seed("service_notes", {"request_id": "r1", "author_id": "ghost", "note": "?"})
        gateway.seed("service_notes", {"request_id": "r2", "author_id": "cust-1", "note": "other"})

        manager.open("r1")
        notes = asyncio.run(manager.load_thread("r1"))

        assert [n.note for n in notes] == ["hello", "again", "?"]
        assert notes[0].author.full_name == "Ayse Yilmaz"
        assert notes[0].author.role == Role.CUSTOMER
        assert notes[2].author.full_name == "Unknown"
        assert gateway.count("select", "profiles") == 1
        assert [n.note for n in manager.notes] == ["hello", "again", "?"]

    def test_author_lookup_failure_uses_placeholder(self, manager, gateway):
        gateway.seed("service_notes", {"request_id": "r1", "author_id": "cust-1", "note": "hello"})
        gateway.fail("select", "profiles")
        notes = asyncio.run(manager.fetch_thread("r1"))
        assert notes[0].author.full_name == "Unknown"

    def test_apply_ignored_when_thread_changed(self, manager):
        manager.open("r2")
        assert not manager.apply_thread("r1", [_note("a", 1)])
        assert manager.notes == []

    def test_apply_keeps_notes_merged_in_flight(self, manager):
        manager.open("r1")
        manager.merge_incoming(_note("pushed", 9, author_id="cust-1"))
        manager.apply_thread("r1", [_note("a", 1), _note("pushed", 9)])
        assert [n.id for n in manager.notes] == ["a", "pushed"]


class TestAppend:
    def test_append_merges_and_notifies(self, manager, gateway):
        manager.open("r1")
        note = asyncio.run(manager.append_note("r1", "  Parts ordered  "))

        assert note.note == "Parts ordered"
        assert note.author_id == "admin-1"
        assert note.author.role == Role.ADMIN
        assert [n.id for n in manager.notes] == [note.id]
        kwargs = manager._notifier.notify_counterpart.call_args
        assert kwargs.args[1] == "cust-1"
        assert kwargs.args[2] == "New message"

    def test_push_echo_after_append_is_deduplicated(self, manager, gateway):
        manager.open("r1")
        note = asyncio.run(manager.append_note("r1", "hello"))
        echo = ServiceNote(**gateway.rows("service_notes")[0])
        assert not manager.merge_incoming(echo)
        assert len(manager.notes) == 1
        assert manager.notes[0].id == note.id

    def test_empty_note_rejected(self, manager, gateway):
        with pytest.raises(ValidationError):
            asyncio.run(manager.append_note("r1", "   "))
        assert gateway.count("insert", "service_notes") == 0

    def test_media_only_note(self, manager, gateway):
        media = MediaItem(type=MediaType.IMAGE, url="https://x/n.jpg", path="notes/n.jpg")
        note = asyncio.run(manager.append_note("r1", "", media))
        assert note.media_type is MediaType.IMAGE
        assert gateway.rows("service_notes")[0]["media_url"] == "https://x/n.jpg"

    def test_insert_failure_not_retried(self, manager, gateway):
        gateway.fail("insert", "service_notes")
        with pytest.raises(PersistError):
            asyncio.run(manager.append_note("r1", "hello"))
        assert gateway.count("insert", "service_notes") == 1
        manager._notifier.notify_counterpart.assert_not_called()

    def test_system_note_does_not_notify(self, manager):
        asyncio.run(manager.append_system_note("r1", "Status changed"))
        manager._notifier.notify_counterpart.assert_not_called()

    def test_attachment_upload(self, gateway, admin_actor):
        storage = MagicMock(spec=MediaStorage)
        item = MediaItem(type=MediaType.VIDEO, url="https://x/v.mp4", path="notes/v.mp4")
        storage.upload_note_attachment = AsyncMock(return_value=item)
        mgr = NoteThreadManager(gateway, admin_actor, storage=storage)

        result = asyncio.run(mgr.upload_attachment(MediaFile("v.mp4", b"..", "video/mp4")))
        assert result is item

    def test_attachment_without_storage(self, manager):
        with pytest.raises(ValidationError):
            asyncio.run(manager.upload_attachment(MediaFile("v.mp4", b"..", "video/mp4")))


class TestReceive:
    def test_receive_resolves_author(self, manager):
        manager.open("r1")
        assert asyncio.run(manager.receive(_note("n1", 1, author_id="cust-1")))
        assert manager.notes[0].author.full_name == "Ayse Yilmaz"

    def test_receive_for_closed_thread(self, manager):
        manager.open("r1")
        manager.close()
        assert not asyncio.run(manager.receive(_note("n1", 1)))
        assert manager.open_thread_id is None
