"""Shared test fixtures for the service desk sync core."""

import asyncio
import inspect
import itertools
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Ensure src is importable
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from src.common.exceptions import FetchError, PersistError
from src.common.models import Actor, Profile, Role
from src.desk.feedback import SoundPlayer, Toaster
from src.desk.notifications import VolumePreference
from src.desk.retry import RetryPolicy
from src.desk.service import ServiceDesk
from src.gateway.auth import SessionHandle
from src.gateway.client import Subscription

BASE_TIME = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

ADMIN_ID = "admin-1"
CUSTOMER_ID = "cust-1"
OTHER_CUSTOMER_ID = "cust-2"


class FakeChannel:
    def __init__(self, table, event, handler, filter=None):
        self.table = table
        self.event = event
        self.handler = handler
        self.filter = filter
        self.removed = False

    def matches(self, table, event, row):
        if self.removed or self.table != table or self.event != event:
            return False
        if not self.filter:
            return True
        column, _, value = self.filter.partition("=eq.")
        return str(row.get(column)) == value


class FakeGateway:
    """In-memory stand-in for SupabaseGateway with the same method surface.

    Rows get sequential string ids and increasing ``created_at`` stamps.
    ``fail(op, table)`` makes the next calls raise; ``delay(table, s)``
    slows reads down so timeouts can be exercised. Push events are
    delivered with ``await emit(table, event, row)``.
    """

    supabase_url = "https://test.supabase.co"

    def __init__(self):
        self.tables: dict[str, list[dict]] = {}
        self.calls: list[tuple] = []
        self.channels: list[FakeChannel] = []
        self._ids = itertools.count(1)
        self._clock = itertools.count(1)
        self._failures: dict[tuple[str, str], list[Exception]] = {}
        self._delays: dict[str, float] = {}

    # --- Test controls ---

    def seed(self, table, row):
        stored = dict(row)
        stored.setdefault("id", str(next(self._ids)))
        stored.setdefault("created_at", self.next_timestamp())
        self.tables.setdefault(table, []).append(stored)
        return dict(stored)

    def next_timestamp(self):
        return (BASE_TIME + timedelta(minutes=next(self._clock))).isoformat()

    def fail(self, op, table, times=1, exc=None):
        error_type = FetchError if op == "select" else PersistError
        errors = self._failures.setdefault((op, table), [])
        errors.extend(exc or error_type(f"injected {op} failure on {table}") for _ in range(times))

    def delay(self, table, seconds):
        self._delays[table] = seconds

    def rows(self, table):
        return [dict(r) for r in self.tables.get(table, [])]

    def count(self, op, table=None):
        return sum(1 for call in self.calls if call[0] == op and (table is None or call[1] == table))

    def active_channels(self):
        return [c for c in self.channels if not c.removed]

    async def emit(self, table, event, row):
        for channel in list(self.channels):
            if channel.matches(table, event, row):
                result = channel.handler(dict(row))
                if inspect.isawaitable(result):
                    await result

    def _maybe_fail(self, op, table):
        errors = self._failures.get((op, table))
        if errors:
            raise errors.pop(0)

    # --- Gateway surface ---

    async def get_client(self):
        return self

    async def select(self, table, *, columns="*", filters=None, in_filter=None,
                     order=None, desc=False, limit=None):
        self.calls.append(("select", table, dict(filters or {})))
        if self._delays.get(table):
            await asyncio.sleep(self._delays[table])
        self._maybe_fail("select", table)
        rows = self.rows(table)
        for column, value in (filters or {}).items():
            rows = [r for r in rows if str(r.get(column)) == str(value)]
        if in_filter is not None:
            column, values = in_filter
            wanted = {str(v) for v in values}
            rows = [r for r in rows if str(r.get(column)) in wanted]
        if order:
            rows.sort(key=lambda r: str(r.get(order) or ""), reverse=desc)
        if limit:
            rows = rows[:limit]
        return rows

    async def select_one(self, table, filters, columns="*"):
        rows = await self.select(table, columns=columns, filters=filters, limit=1)
        return rows[0] if rows else None

    async def insert(self, table, rows):
        self.calls.append(("insert", table, rows))
        self._maybe_fail("insert", table)
        batch = rows if isinstance(rows, list) else [rows]
        return [self.seed(table, row) for row in batch]

    async def update(self, table, values, filters):
        self.calls.append(("update", table, dict(values), dict(filters)))
        self._maybe_fail("update", table)
        updated = []
        for row in self.tables.get(table, []):
            if all(str(row.get(k)) == str(v) for k, v in filters.items()):
                row.update(values)
                updated.append(dict(row))
        return updated

    async def delete(self, table, filters):
        self.calls.append(("delete", table, dict(filters)))
        self._maybe_fail("delete", table)
        self.tables[table] = [
            row for row in self.tables.get(table, [])
            if not all(str(row.get(k)) == str(v) for k, v in filters.items())
        ]

    async def subscribe(self, table, event, handler, filter=None):
        channel = FakeChannel(table, event, handler, filter)
        self.channels.append(channel)
        return Subscription(table=table, event=event, channel=channel, _gateway=self)

    async def remove_channel(self, channel):
        channel.removed = True

    async def drain(self):
        return None


# --- Fixtures ---


@pytest.fixture
def gateway() -> FakeGateway:
    """Gateway seeded with one admin and two customers."""
    gw = FakeGateway()
    gw.seed("profiles", {"id": ADMIN_ID, "full_name": "Deniz Staff", "role": "admin",
                         "email": "staff@example.com"})
    gw.seed("profiles", {"id": CUSTOMER_ID, "full_name": "Ayse Yilmaz", "role": "customer",
                         "email": "ayse@example.com", "phone": "555-0101"})
    gw.seed("profiles", {"id": OTHER_CUSTOMER_ID, "full_name": None, "role": "customer",
                         "email": "other@example.com"})
    return gw


@pytest.fixture
def admin_actor() -> Actor:
    return Actor(id=ADMIN_ID, role=Role.ADMIN, full_name="Deniz Staff", email="staff@example.com")


@pytest.fixture
def customer_actor() -> Actor:
    return Actor(
        id=CUSTOMER_ID,
        role=Role.CUSTOMER,
        full_name="Ayse Yilmaz",
        email="ayse@example.com",
        phone="555-0101",
    )


@pytest.fixture
def fast_policy() -> RetryPolicy:
    """Three attempts with no waiting, short timeout."""
    return RetryPolicy(timeout=0.2, delays=[0.0, 0.0, 0.0])


@pytest.fixture
def toaster() -> Toaster:
    return Toaster()


@pytest.fixture
def sound() -> SoundPlayer:
    return SoundPlayer()


@pytest.fixture
def volume_prefs(tmp_path) -> VolumePreference:
    return VolumePreference(path=tmp_path / "prefs.json", default=0.4)


@pytest.fixture
def make_request(gateway):
    """Seed a service request row and return it."""

    def _make(user_id=CUSTOMER_ID, status="pending", **fields):
        row = {
            "user_id": user_id,
            "full_name": "Ayse Yilmaz",
            "email": "ayse@example.com",
            "phone": "555-0101",
            "brand": "Cheyenne",
            "model": "Sol Nova",
            "category": "Other",
            "product_date": "2024-05",
            "description": "Machine stops after a few seconds of use.",
            "media_urls": [],
            "status": status,
            **fields,
        }
        return gateway.seed("service_requests", row)

    return _make


@pytest.fixture
def make_session(gateway):
    """A SessionHandle already holding the actor's profile."""

    def _make(actor: Actor) -> SessionHandle:
        handle = SessionHandle(gateway)
        handle.profile = Profile(
            id=actor.id,
            full_name=actor.full_name,
            email=actor.email,
            phone=actor.phone,
            role=actor.role,
        )
        return handle

    return _make


@pytest.fixture
def make_desk(gateway, make_session, fast_policy, volume_prefs):
    """Build a ServiceDesk for an actor; call ``await desk.start()`` yourself."""

    def _make(actor: Actor, **kwargs) -> ServiceDesk:
        kwargs.setdefault("toaster", Toaster())
        kwargs.setdefault("sound", SoundPlayer())
        kwargs.setdefault("volume", volume_prefs)
        kwargs.setdefault("policy", fast_policy)
        return ServiceDesk(gateway, make_session(actor), **kwargs)

    return _make
