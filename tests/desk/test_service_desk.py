"""Tests for the ServiceDesk facade: lifecycle, push wiring, intents."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.common.exceptions import ServiceDeskError, UploadError, ValidationError
from src.common.models import MediaItem, MediaType, RequestStatus
from src.desk.controller import LoadState
from src.desk.service import REQUEST_UPDATED_TOAST, DeskState, ServiceDesk, parse_request_link
from src.gateway.auth import SessionHandle
from src.gateway.storage import MediaFile, MediaStorage


class TestParseRequestLink:
    def test_links(self):
        assert parse_request_link("#/my-requests?id=42") == "42"
        assert parse_request_link("#/admin-dashboard?id=abc&tab=notes") == "abc"
        assert parse_request_link("#/my-requests") is None
        assert parse_request_link("") is None


class TestLifecycle:
    def test_requires_signed_in_session(self, gateway):
        with pytest.raises(ServiceDeskError):
            ServiceDesk(gateway, SessionHandle(gateway))

    def test_customer_subscriptions(self, gateway, make_desk, customer_actor):
        desk = make_desk(customer_actor)
        asyncio.run(desk.start(load=False))

        channels = {(c.table, c.event): c.filter for c in gateway.active_channels()}
        assert channels == {
            ("service_requests", "UPDATE"): "user_id=eq.cust-1",
            ("service_notes", "INSERT"): None,
            ("notifications", "INSERT"): "user_id=eq.cust-1",
            ("notifications", "UPDATE"): "user_id=eq.cust-1",
        }
        assert desk.state is DeskState.READY

    def test_admin_subscriptions(self, gateway, make_desk, admin_actor):
        desk = make_desk(admin_actor)
        asyncio.run(desk.start(load=False))

        channels = {(c.table, c.event): c.filter for c in gateway.active_channels()}
        assert channels[("service_requests", "UPDATE")] is None
        assert ("service_requests", "INSERT") in channels

    def test_dispose_unsubscribes_and_ignores_pushes(self, gateway, make_desk, make_request,
                                                     customer_actor):
        req = make_request()
        desk = make_desk(customer_actor)

        async def scenario():
            await desk.start()
            await desk.dispose()
            await desk.dispose()
            desk._on_request_updated({**req, "status": "shipped"})

        asyncio.run(scenario())
        assert gateway.active_channels() == []
        assert desk.state is DeskState.DISPOSED
        assert desk.requests[0].status is RequestStatus.PENDING
        with pytest.raises(ServiceDeskError):
            asyncio.run(desk.start())


class TestInitialLoad:
    def test_requests_and_unread_map(self, gateway, make_desk, make_request, customer_actor):
        answered = make_request()
        waiting = make_request()
        gateway.seed("service_notes", {"request_id": answered["id"], "author_id": "cust-1", "note": "q"})
        gateway.seed("service_notes", {"request_id": answered["id"], "author_id": "admin-1", "note": "a"})
        gateway.seed("service_notes", {"request_id": waiting["id"], "author_id": "cust-1", "note": "q"})
        gateway.seed("notifications", {"user_id": "cust-1", "title": "Welcome"})
        desk = make_desk(customer_actor)

        asyncio.run(desk.start())

        assert {r.id for r in desk.requests} == {answered["id"], waiting["id"]}
        assert desk.unread_map == {answered["id"]: True, waiting["id"]: False}
        assert [n.title for n in desk.notifications] == ["Welcome"]
        assert desk.sync_status().state is LoadState.SUCCESS

    def test_admin_loads_directory_and_inventory(self, gateway, make_desk, admin_actor):
        gateway.seed("inventory", {"name": "Grip", "quantity": 0, "critical_level": 1})
        desk = make_desk(admin_actor)
        asyncio.run(desk.start())
        assert desk.profiles.has_cache()
        assert [i.name for i in desk.inventory.critical_items()] == ["Grip"]

    def test_failed_first_load_shows_error(self, gateway, make_desk, customer_actor):
        gateway.fail("select", "service_requests", times=3)
        desk = make_desk(customer_actor)
        asyncio.run(desk.start())
        status = desk.sync_status()
        assert status.state is LoadState.ERROR
        assert all(t.level != "error" for t in desk.toaster.history)

        assert asyncio.run(desk.retry())
        assert desk.sync_status().state is LoadState.SUCCESS

    def test_silent_refresh_keeps_unread_map(self, gateway, make_desk, make_request, customer_actor):
        req = make_request()
        desk = make_desk(customer_actor)
        asyncio.run(desk.start())
        gateway.seed("service_notes", {"request_id": req["id"], "author_id": "admin-1", "note": "a"})

        asyncio.run(desk.refresh(silent=True))
        assert desk.unread_map == {req["id"]: False}

        asyncio.run(desk.refresh())
        assert desk.unread_map == {req["id"]: True}


class TestThreads:
    def test_open_thread_acknowledges(self, gateway, make_desk, make_request, customer_actor):
        req = make_request()
        gateway.seed("service_notes", {"request_id": req["id"], "author_id": "admin-1", "note": "a"})
        desk = make_desk(customer_actor)

        async def scenario():
            await desk.start()
            assert desk.unread_map[req["id"]]
            return await desk.open_thread(req["id"])

        thread = asyncio.run(scenario())
        assert [n.note for n in thread] == ["a"]
        assert thread[0].author.full_name == "Deniz Staff"
        assert not desk.unread_map[req["id"]]

    def test_open_unknown_thread(self, make_desk, customer_actor):
        desk = make_desk(customer_actor)
        with pytest.raises(ValidationError):
            asyncio.run(desk.open_thread("nope"))

    def test_open_link(self, make_desk, make_request, customer_actor):
        req = make_request()
        desk = make_desk(customer_actor)

        async def scenario():
            await desk.start()
            missing = await desk.open_link("#/my-requests?id=999")
            await desk.open_link(f"#/my-requests?id={req['id']}")
            return missing

        assert asyncio.run(scenario()) is None
        assert desk.notes.open_thread_id == req["id"]

    def test_send_note_needs_open_thread(self, make_desk, customer_actor):
        desk = make_desk(customer_actor)
        with pytest.raises(ValidationError, match="No thread"):
            asyncio.run(desk.send_note("hello"))

    def test_send_note_with_attachment(self, gateway, make_desk, make_request, customer_actor):
        req = make_request()
        storage = MagicMock(spec=MediaStorage)
        storage.upload_note_attachment = AsyncMock(
            return_value=MediaItem(type=MediaType.IMAGE, url="https://x/p.jpg", path="notes/p.jpg")
        )
        desk = make_desk(customer_actor, storage=storage)

        async def scenario():
            await desk.start()
            await desk.open_thread(req["id"])
            return await desk.send_note("", MediaFile("p.jpg", b"..", "image/jpeg"))

        note = asyncio.run(scenario())
        assert note.media_url == "https://x/p.jpg"
        assert [n.id for n in desk.thread] == [note.id]
        assert gateway.rows("notifications")[0]["user_id"] == "admin-1"

    def test_close_thread(self, make_desk, make_request, customer_actor):
        req = make_request()
        desk = make_desk(customer_actor)

        async def scenario():
            await desk.start()
            await desk.open_thread(req["id"])
            desk.close_thread()

        asyncio.run(scenario())
        assert desk.thread == []
        assert desk.notes.open_thread_id is None


class TestPushHandlers:
    def test_request_update_overwrites_and_toasts(self, gateway, make_desk, make_request,
                                                  customer_actor):
        req = make_request()
        desk = make_desk(customer_actor)

        async def scenario():
            await desk.start()
            await gateway.emit("service_requests", "UPDATE", {**req, "status": "diagnosing"})

        asyncio.run(scenario())
        assert desk.requests[0].status is RequestStatus.DIAGNOSING
        assert desk.toaster.history[-1].message == REQUEST_UPDATED_TOAST

    def test_other_customers_updates_filtered(self, gateway, make_desk, make_request, customer_actor):
        other = make_request(user_id="cust-2")
        desk = make_desk(customer_actor)

        async def scenario():
            await desk.start()
            await gateway.emit("service_requests", "UPDATE", {**other, "status": "shipped"})

        asyncio.run(scenario())
        assert desk.requests == []
        assert not desk.toaster.history

    def test_admin_sees_new_requests(self, gateway, make_desk, make_request, admin_actor):
        desk = make_desk(admin_actor)

        async def scenario():
            await desk.start()
            row = make_request()
            await gateway.emit("service_requests", "INSERT", row)
            return row

        row = asyncio.run(scenario())
        assert [r.id for r in desk.requests] == [row["id"]]

    def test_notification_push(self, gateway, make_desk, customer_actor):
        desk = make_desk(customer_actor)

        async def scenario():
            await desk.start()
            row = gateway.seed("notifications", {"user_id": "cust-1", "title": "Shipped"})
            await gateway.emit("notifications", "INSERT", row)
            await gateway.emit("notifications", "UPDATE", {**row, "is_read": True})

        asyncio.run(scenario())
        assert [n.title for n in desk.notifications] == ["Shipped"]
        assert desk.feed.unread_count == 0
        assert desk.sound.play_count == 1


class TestIntents:
    def test_submit_request_uploads_then_creates(self, gateway, make_desk, customer_actor):
        storage = MagicMock(spec=MediaStorage)
        storage.upload_request_media = AsyncMock(return_value=[
            MediaItem(type=MediaType.IMAGE, url="https://x/a.jpg", path="cust-1/a.jpg"),
            MediaItem(type=MediaType.VIDEO, url="https://x/b.mp4", path="cust-1/b.mp4"),
        ])
        desk = make_desk(customer_actor, storage=storage)
        draft = {"brand": "Cheyenne", "model": "Sol Nova", "category": "Other",
                 "product_date": "2024-05", "description": "Grinding noise when running."}

        async def scenario():
            await desk.start()
            return await desk.submit_request(draft, [MediaFile("a.jpg", b".", "image/jpeg")])

        created = asyncio.run(scenario())
        assert created.status is RequestStatus.PENDING
        storage.upload_request_media.assert_awaited_once()

    def test_submit_rejects_bad_draft_before_upload(self, make_desk, customer_actor):
        storage = MagicMock(spec=MediaStorage)
        storage.upload_request_media = AsyncMock()
        desk = make_desk(customer_actor, storage=storage)
        draft = {"brand": "Cheyenne", "model": "Sol Nova", "category": "Other",
                 "product_date": "2024-05", "description": "short"}

        with pytest.raises(ValidationError):
            asyncio.run(desk.submit_request(draft, []))
        storage.upload_request_media.assert_not_called()

    def test_upload_failure_aborts_creation(self, gateway, make_desk, customer_actor):
        client = MagicMock()
        bucket_api = client.storage.from_.return_value
        bucket_api.upload = AsyncMock(side_effect=[{}, RuntimeError("storage offline")])
        storage = MediaStorage(gateway)
        gateway.get_client = AsyncMock(return_value=client)
        desk = make_desk(customer_actor, storage=storage)
        draft = {"brand": "Cheyenne", "model": "Sol Nova", "category": "Other",
                 "product_date": "2024-05", "description": "Grinding noise when running."}
        files = [MediaFile("a.jpg", b".", "image/jpeg"), MediaFile("b.mp4", b".", "video/mp4")]

        async def scenario():
            await desk.start()
            await desk.submit_request(draft, files)

        with pytest.raises(UploadError, match="storage offline"):
            asyncio.run(scenario())
        assert bucket_api.upload.await_count == 2
        assert gateway.count("insert", "service_requests") == 0
        assert desk.requests == []
        assert gateway.rows("notifications") == []

    def test_submit_without_storage(self, make_desk, customer_actor):
        desk = make_desk(customer_actor)
        with pytest.raises(ServiceDeskError):
            asyncio.run(desk.submit_request({}, []))

    def test_mark_all_read_and_volume(self, gateway, make_desk, customer_actor):
        gateway.seed("notifications", {"user_id": "cust-1", "title": "a", "is_read": False})
        desk = make_desk(customer_actor)

        async def scenario():
            await desk.start()
            await desk.mark_all_read()

        asyncio.run(scenario())
        assert desk.feed.unread_count == 0
        assert desk.set_volume(0.8) == 0.8
        assert desk.feed.volume == 0.8

    def test_visibility_change_revalidates(self, gateway, make_desk, make_request, customer_actor):
        make_request()
        desk = make_desk(customer_actor)
        asyncio.run(desk.start())
        before = gateway.count("select", "service_requests")

        assert asyncio.run(desk.on_visibility_change(True)) == {"requests": True}
        assert gateway.count("select", "service_requests") == before + 1
