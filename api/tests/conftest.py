"""
Shared fixtures: an in-memory gateway that honours the same filter/order
contract as SqlGateway, plus record factories.

FakeGateway extras for tests:
  fail(op, entity, ...)   make the next matching call raise
  hold(entity, **match)   park matching selects until the returned Event is set
  emit(...)               push a change event as if another session wrote it
  calls                   log of (op, entity, filters-or-id)
Change events are delivered synchronously, before the write call returns.
"""
import asyncio
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest
from jose import jwt

from kost.core.config import settings
from kost.core.errors import NotFoundError, RemoteError
from kost.core.gateway import ChangeEvent, Entity, EventType, Subscription, order_keys, record_matches


@dataclass
class _Failure:
    op: str
    entity: Entity
    error: Exception
    record_id: uuid.UUID | None
    after: int


class FakeGateway:
    def __init__(self):
        self.tables: dict[Entity, dict[str, dict]] = defaultdict(dict)
        self.calls: list[tuple] = []
        self._failures: list[_Failure] = []
        self._holds: list[tuple[Entity, dict, asyncio.Event]] = []
        self._subscriptions: list[tuple[Subscription, object]] = []
        self._clock = datetime(2025, 5, 1, tzinfo=timezone.utc)

    # ── Test controls ───────────────────────────

    def fail(self, op, entity, error=None, record_id=None, after=0):
        self._failures.append(
            _Failure(op, entity, error or RemoteError(f"{op} {entity.value} failed"), record_id, after)
        )

    def hold(self, entity, **match) -> asyncio.Event:
        release = asyncio.Event()
        self._holds.append((entity, match, release))
        return release

    def ops(self, op, entity=None) -> list[tuple]:
        return [c for c in self.calls if c[0] == op and (entity is None or c[1] == entity)]

    @property
    def live_subscriptions(self) -> list[Subscription]:
        return [sub for sub, _ in self._subscriptions if sub.active]

    def callbacks(self) -> list:
        return [callback for _, callback in self._subscriptions]

    def get(self, entity, record_id) -> dict | None:
        return self.tables[entity].get(str(record_id))

    async def emit(self, event_type, entity, record):
        event = ChangeEvent(event_type, entity, dict(record))
        for sub, callback in list(self._subscriptions):
            if sub.active and sub.entity == entity and record_matches(event.record, sub.filters):
                await callback(event)

    # ── Gateway contract ────────────────────────

    async def select(self, entity, filters=None, order=None):
        self.calls.append(("select", entity, dict(filters or {})))
        self._check("select", entity, None)
        for held_entity, match, release in list(self._holds):
            if held_entity == entity and all((filters or {}).get(k) == v for k, v in match.items()):
                await release.wait()
        rows = [dict(r) for r in self.tables[entity].values() if record_matches(r, filters)]
        for key in reversed(order_keys(order)):
            column = key.lstrip("-")
            rows.sort(key=lambda r: (r.get(column) is None, r.get(column)), reverse=key.startswith("-"))
        return rows

    async def insert(self, entity, record):
        self.calls.append(("insert", entity, dict(record)))
        self._check("insert", entity, None)
        row = dict(record)
        row.setdefault("id", uuid.uuid4())
        row.setdefault("created_at", self._tick())
        self.tables[entity][str(row["id"])] = row
        await self.emit(EventType.INSERT, entity, row)
        return dict(row)

    async def update(self, entity, record_id, patch):
        self.calls.append(("update", entity, record_id))
        self._check("update", entity, record_id)
        row = self.tables[entity].get(str(record_id))
        if row is None:
            raise NotFoundError(entity.value, record_id)
        row.update(patch)
        await self.emit(EventType.UPDATE, entity, row)
        return dict(row)

    async def delete(self, entity, record_id):
        self.calls.append(("delete", entity, record_id))
        self._check("delete", entity, record_id)
        row = self.tables[entity].pop(str(record_id), None)
        if row is None:
            raise NotFoundError(entity.value, record_id)
        await self.emit(EventType.DELETE, entity, row)

    async def subscribe(self, entity, filters, callback):
        self.calls.append(("subscribe", entity, dict(filters or {})))
        self._check("subscribe", entity, None)
        sub = Subscription(entity=entity, filters=dict(filters or {}))
        self._subscriptions.append((sub, callback))
        return sub

    async def unsubscribe(self, handle):
        self.calls.append(("unsubscribe", handle.entity, handle.id))
        await handle.close()
        self._subscriptions = [(s, cb) for s, cb in self._subscriptions if s is not handle]

    # ── Internals ───────────────────────────────

    def _check(self, op, entity, record_id):
        for failure in list(self._failures):
            if failure.op != op or failure.entity != entity:
                continue
            if failure.record_id is not None and str(failure.record_id) != str(record_id):
                continue
            if failure.after:
                failure.after -= 1
                continue
            self._failures.remove(failure)
            raise failure.error

    def _tick(self) -> datetime:
        self._clock += timedelta(minutes=1)
        return self._clock

    # ── Factories ───────────────────────────────

    def seed(self, entity, **fields) -> dict:
        row = {"id": uuid.uuid4(), "created_at": self._tick(), **fields}
        self.tables[entity][str(row["id"])] = row
        return dict(row)

    def add_user(self, **fields):
        defaults = {"email": "owner@example.com", "full_name": "Ibu Sari", "role": "owner", "is_active": True}
        return self.seed(Entity.USERS, **{**defaults, **fields})

    def add_property(self, owner_id, name="Kost Melati", **fields):
        return self.seed(Entity.PROPERTIES, owner_id=owner_id, name=name, address=None, **fields)

    def add_room(self, property_id, name="A1", **fields):
        defaults = {
            "floor": "1",
            "room_type": "standard",
            "price": Decimal("1500000"),
            "facilities": ["AC", "WiFi"],
            "status": "vacant",
            "tenant_id": None,
        }
        return self.seed(Entity.ROOMS, property_id=property_id, name=name, **{**defaults, **fields})

    def add_tenant(self, property_id, name="Budi", **fields):
        defaults = {
            "email": f"{name.lower()}@example.com",
            "phone": "081234567890",
            "room_id": None,
            "status": "active",
            "payment_status": "pending",
        }
        return self.seed(Entity.TENANTS, property_id=property_id, name=name, **{**defaults, **fields})

    def occupy(self, room, tenant):
        self.tables[Entity.ROOMS][str(room["id"])].update(status="occupied", tenant_id=tenant["id"])
        self.tables[Entity.TENANTS][str(tenant["id"])].update(room_id=room["id"])

    def add_payment(self, property_id, tenant_id, room_id, **fields):
        defaults = {
            "amount": Decimal("500000"),
            "due_date": date(2025, 5, 1),
            "paid_date": None,
            "status": "pending",
            "method": None,
            "notes": None,
        }
        return self.seed(
            Entity.PAYMENTS,
            property_id=property_id,
            tenant_id=tenant_id,
            room_id=room_id,
            **{**defaults, **fields},
        )

    def add_notification(self, **fields):
        defaults = {
            "title": "Info",
            "message": "Something happened",
            "type": "system",
            "status": "unread",
            "target_user_id": None,
            "target_property_id": None,
        }
        return self.seed(Entity.NOTIFICATIONS, **{**defaults, **fields})


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


def make_token(user_id, token_type="access", secret=None) -> str:
    payload = {
        "sub": str(user_id),
        "type": token_type,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=30),
    }
    return jwt.encode(payload, secret or settings.api_secret_key, algorithm=settings.algorithm)


@pytest.fixture
def token_for():
    return make_token
