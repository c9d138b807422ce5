"""
Persistence gateway: the only way the managers touch remote state.

The contract is small (select / insert / update / delete plus a
change-feed subscription) and carries plain dict records keyed by column name.
Each call is its own transaction; nothing here spans two entities, which is
why the occupancy manager needs paired writes with compensation.

Filters are ``{column: value}`` mappings combined with AND:
  value            → column = value
  None             → column IS NULL
  list/tuple/set   → column IN (...), where a None member also admits NULL

Order is a column name or a list of them; a leading "-" sorts descending.
"""
import enum
import json
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Protocol

from redis.exceptions import RedisError
from sqlalchemy import Select, inspect as sa_inspect, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from kost.core.errors import NotFoundError, RemoteError
from kost.models import Notification, Payment, Property, Room, Tenant, User

if TYPE_CHECKING:
    from kost.core.redis import RedisChangeFeed

logger = logging.getLogger(__name__)

Record = dict[str, Any]
Filters = dict[str, Any]
Order = str | list[str] | None


class Entity(str, enum.Enum):
    PROPERTIES = "properties"
    USERS = "users"
    ROOMS = "rooms"
    TENANTS = "tenants"
    PAYMENTS = "payments"
    NOTIFICATIONS = "notifications"


class EventType(str, enum.Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


def _json_default(value: Any) -> str:
    if isinstance(value, (uuid.UUID, Decimal)):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    raise TypeError(f"Unserializable value of type {type(value).__name__}")


@dataclass
class ChangeEvent:
    event_type: EventType
    entity: Entity
    record: Record

    def to_json(self) -> str:
        return json.dumps(
            {"eventType": self.event_type.value, "entity": self.entity.value, "record": self.record},
            default=_json_default,
        )

    @classmethod
    def from_json(cls, raw: str | bytes) -> "ChangeEvent":
        data = json.loads(raw)
        return cls(
            event_type=EventType(data["eventType"]),
            entity=Entity(data["entity"]),
            record=data.get("record") or {},
        )


ChangeCallback = Callable[[ChangeEvent], Awaitable[None]]


@dataclass
class Subscription:
    """Handle for one live change feed. Owned by whoever subscribed; must be closed explicitly."""

    entity: Entity
    filters: Filters
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    active: bool = True
    _close: Callable[[], Awaitable[None]] | None = field(default=None, repr=False)

    async def close(self) -> None:
        if not self.active:
            return
        self.active = False
        if self._close is not None:
            await self._close()


class Gateway(Protocol):
    async def select(self, entity: Entity, filters: Filters | None = None, order: Order = None) -> list[Record]: ...

    async def insert(self, entity: Entity, record: Record) -> Record: ...

    async def update(self, entity: Entity, record_id: uuid.UUID, patch: Record) -> Record: ...

    async def delete(self, entity: Entity, record_id: uuid.UUID) -> None: ...

    async def subscribe(self, entity: Entity, filters: Filters | None, callback: ChangeCallback) -> Subscription: ...

    async def unsubscribe(self, handle: Subscription) -> None: ...


# ─── Filter helpers (shared by SQL, the Redis feed and test doubles) ────────

def _same(actual: Any, expected: Any) -> bool:
    if actual is None or expected is None:
        return actual is None and expected is None
    # Records arriving over the feed carry ids and dates as strings
    return actual == expected or str(actual) == str(expected)


def record_matches(record: Record, filters: Filters | None) -> bool:
    for column, expected in (filters or {}).items():
        actual = record.get(column)
        if isinstance(expected, (list, tuple, set, frozenset)):
            if not any(_same(actual, option) for option in expected):
                return False
        elif not _same(actual, expected):
            return False
    return True


def order_keys(order: Order) -> list[str]:
    if not order:
        return []
    if isinstance(order, str):
        return [order]
    return list(order)


# ─── SQL implementation ──────────────────────────────────────────────────────

_MODELS = {
    Entity.PROPERTIES: Property,
    Entity.USERS: User,
    Entity.ROOMS: Room,
    Entity.TENANTS: Tenant,
    Entity.PAYMENTS: Payment,
    Entity.NOTIFICATIONS: Notification,
}


def _to_record(obj: Any) -> Record:
    return {attr.key: getattr(obj, attr.key) for attr in sa_inspect(obj).mapper.column_attrs}


def _apply_filters(query: Select, model: Any, filters: Filters | None) -> Select:
    for column_name, expected in (filters or {}).items():
        column = getattr(model, column_name)
        if isinstance(expected, (list, tuple, set, frozenset)):
            values = [v for v in expected if v is not None]
            clauses = [column.in_(values)] if values else []
            if len(values) != len(expected):
                clauses.append(column.is_(None))
            query = query.where(or_(*clauses))
        elif expected is None:
            query = query.where(column.is_(None))
        else:
            query = query.where(column == expected)
    return query


class SqlGateway:
    """Gateway over PostgreSQL; committed writes are announced on the Redis change feed."""

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        feed: "RedisChangeFeed | None" = None,
    ):
        self._sessionmaker = sessionmaker
        self._feed = feed
        self._engine: AsyncEngine | None = None

    @classmethod
    def from_url(cls, database_url: str, redis_url: str | None = None) -> "SqlGateway":
        """Build a gateway with its own engine (for Celery tasks running their own event loop)."""
        from kost.core.redis import RedisChangeFeed, new_redis_client  # noqa: PLC0415

        engine = create_async_engine(database_url, pool_pre_ping=True)
        feed = RedisChangeFeed(new_redis_client(redis_url)) if redis_url else None
        gateway = cls(async_sessionmaker(engine, expire_on_commit=False), feed)
        gateway._engine = engine
        return gateway

    async def aclose(self) -> None:
        if self._feed is not None:
            await self._feed.aclose()
        if self._engine is not None:
            await self._engine.dispose()

    async def select(self, entity: Entity, filters: Filters | None = None, order: Order = None) -> list[Record]:
        model = _MODELS[entity]
        query = _apply_filters(select(model), model, filters)
        for key in order_keys(order):
            column = getattr(model, key.lstrip("-"))
            query = query.order_by(column.desc() if key.startswith("-") else column.asc())
        try:
            async with self._sessionmaker() as db:
                result = await db.execute(query)
                return [_to_record(row) for row in result.scalars().all()]
        except SQLAlchemyError as exc:
            raise RemoteError(f"Failed to load {entity.value}") from exc

    async def insert(self, entity: Entity, record: Record) -> Record:
        model = _MODELS[entity]
        try:
            async with self._sessionmaker() as db, db.begin():
                obj = model(**record)
                db.add(obj)
                await db.flush()
                await db.refresh(obj)
                created = _to_record(obj)
        except SQLAlchemyError as exc:
            raise RemoteError(f"Failed to create {entity.value} record") from exc
        await self._publish(EventType.INSERT, entity, created)
        return created

    async def update(self, entity: Entity, record_id: uuid.UUID, patch: Record) -> Record:
        model = _MODELS[entity]
        try:
            async with self._sessionmaker() as db, db.begin():
                obj = await db.get(model, record_id)
                if obj is None:
                    raise NotFoundError(entity.value, record_id)
                for column, value in patch.items():
                    setattr(obj, column, value)
                await db.flush()
                await db.refresh(obj)
                updated = _to_record(obj)
        except SQLAlchemyError as exc:
            raise RemoteError(f"Failed to update {entity.value} {record_id}") from exc
        await self._publish(EventType.UPDATE, entity, updated)
        return updated

    async def delete(self, entity: Entity, record_id: uuid.UUID) -> None:
        model = _MODELS[entity]
        try:
            async with self._sessionmaker() as db, db.begin():
                obj = await db.get(model, record_id)
                if obj is None:
                    raise NotFoundError(entity.value, record_id)
                removed = _to_record(obj)
                await db.delete(obj)
        except SQLAlchemyError as exc:
            raise RemoteError(f"Failed to delete {entity.value} {record_id}") from exc
        await self._publish(EventType.DELETE, entity, removed)

    async def subscribe(self, entity: Entity, filters: Filters | None, callback: ChangeCallback) -> Subscription:
        if self._feed is None:
            raise RemoteError("Change feed is not configured")
        return await self._feed.subscribe(entity, filters or {}, callback)

    async def unsubscribe(self, handle: Subscription) -> None:
        await handle.close()

    async def _publish(self, event_type: EventType, entity: Entity, record: Record) -> None:
        if self._feed is None:
            return
        try:
            await self._feed.publish(ChangeEvent(event_type, entity, record))
        except RedisError as exc:
            # The write is already committed; listeners catch up on their next reload
            logger.warning("Change feed publish failed for %s: %s", entity.value, exc)
