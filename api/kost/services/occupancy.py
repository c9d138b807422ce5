"""
Occupancy manager: owns the room ↔ tenant assignment.

Both sides of an assignment are plain id columns (rooms.tenant_id and
tenants.room_id) and the gateway offers no transaction spanning the two
tables, so every change to the pair is a *paired write*:

  1. write the room
  2. write the tenant; if that fails, write the room back (compensation)
     and surface the original error
  3. only after both commit, reload room and tenant together

The local cache is an arena keyed by id and is only ever replaced with data
read back from the gateway for the currently active property.
"""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable, Iterable
from decimal import Decimal

from kost.core.errors import ConflictError, ConflictKind, NotFoundError, RemoteError, ValidationError, parse_input
from kost.core.gateway import Entity, Gateway, Record
from kost.core.scope import AuthEvent, ScopeContext, ScopeGuard, ScopeToken
from kost.models.enums import PaymentStatus, RoomStatus, RoomType, TenantStatus
from kost.schemas.dashboard import OccupancySummary
from kost.schemas.rental import RoomCreate, RoomRead, RoomUpdate, TenantCreate, TenantRead, TenantUpdate

logger = logging.getLogger(__name__)


class OccupancyManager:
    def __init__(self, gateway: Gateway):
        self._gateway = gateway
        self._guard = ScopeGuard()
        self.rooms: dict[uuid.UUID, RoomRead] = {}
        self.tenants: dict[uuid.UUID, TenantRead] = {}

    @property
    def scope_id(self) -> uuid.UUID | None:
        return self._guard.scope_id

    def bind(self, context: ScopeContext) -> Callable[[], None]:
        """Follow scope switches and sign-outs announced by ``context``."""

        async def _on_auth(event: AuthEvent, _session) -> None:
            if event is AuthEvent.SIGNED_OUT:
                await self.set_scope(None)

        remove_auth = context.on_auth_state_change(_on_auth)
        remove_scope = context.on_scope_change(self.set_scope)

        def unbind() -> None:
            remove_auth()
            remove_scope()

        return unbind

    # ── Loading ─────────────────────────────────────────────────────────────

    async def set_scope(self, scope_id: uuid.UUID | None) -> None:
        self._guard.switch(scope_id)
        self.rooms = {}
        self.tenants = {}
        if scope_id is not None:
            await self.load(scope_id)

    async def load(self, scope_id: uuid.UUID) -> bool:
        """Load rooms and tenants for ``scope_id``; False if the result arrived for a stale scope."""
        token = self._guard.capture(scope_id)
        room_rows, tenant_rows = await asyncio.gather(
            self._gateway.select(Entity.ROOMS, {"property_id": scope_id}, order="name"),
            self._gateway.select(Entity.TENANTS, {"property_id": scope_id}, order="name"),
        )
        if not self._guard.is_current(token):
            logger.debug("Discarding stale room/tenant load for property %s", scope_id)
            return False
        rooms = [RoomRead.model_validate(row) for row in room_rows]
        tenants = [TenantRead.model_validate(row) for row in tenant_rows]
        self.rooms = {room.id: room for room in rooms}
        self.tenants = {tenant.id: tenant for tenant in tenants}
        return True

    # ── Rooms ───────────────────────────────────────────────────────────────

    async def create_room(
        self,
        scope_id: uuid.UUID,
        name: str,
        floor: str,
        room_type: RoomType | str = RoomType.STANDARD,
        price: Decimal | int | str = Decimal("0"),
        facilities: Iterable[str] = (),
    ) -> RoomRead:
        payload = parse_input(
            RoomCreate,
            {"name": name, "floor": floor, "room_type": room_type, "price": price, "facilities": list(facilities)},
        )
        token = self._guard.capture(scope_id)
        row = await self._gateway.insert(
            Entity.ROOMS,
            {
                "property_id": scope_id,
                **payload.model_dump(),
                "status": RoomStatus.VACANT.value,
                "tenant_id": None,
            },
        )
        return self._cache_room(token, row)

    async def update_room(self, scope_id: uuid.UUID, room_id: uuid.UUID, **fields) -> RoomRead:
        changes = parse_input(RoomUpdate, fields).model_dump(exclude_unset=True, exclude_none=True)
        status = changes.get("status")
        if status == RoomStatus.OCCUPIED:
            raise ValidationError("status", "a room becomes occupied only by assigning a tenant")

        token = self._guard.capture(scope_id)
        room = await self._get_room(scope_id, room_id)
        if not changes:
            return room
        if status is not None and status != room.status and room.status == RoomStatus.OCCUPIED:
            raise ConflictError(
                ConflictKind.ALREADY_OCCUPIED,
                f"Room {room.name} is occupied; vacate it before changing its status",
            )
        row = await self._gateway.update(Entity.ROOMS, room.id, changes)
        return self._cache_room(token, row)

    async def duplicate_room(self, scope_id: uuid.UUID, room_id: uuid.UUID) -> RoomRead:
        """Copy descriptive fields only; the copy is always vacant and never inherits a tenant."""
        source = await self._get_room(scope_id, room_id)
        token = self._guard.capture(scope_id)
        row = await self._gateway.insert(
            Entity.ROOMS,
            {
                "property_id": scope_id,
                "name": f"{source.name} (Copy)",
                "floor": source.floor,
                "room_type": source.room_type.value,
                "price": source.price,
                "facilities": list(source.facilities),
                "status": RoomStatus.VACANT.value,
                "tenant_id": None,
            },
        )
        return self._cache_room(token, row)

    async def delete_room(self, scope_id: uuid.UUID, room_id: uuid.UUID) -> None:
        room = await self._get_room(scope_id, room_id)
        referencing = await self._gateway.select(
            Entity.TENANTS, {"property_id": scope_id, "room_id": room.id}
        )
        blocking = {str(row["id"]) for row in referencing}
        if room.tenant_id is not None:
            blocking.add(str(room.tenant_id))
        if blocking:
            raise ConflictError(
                ConflictKind.HAS_TENANTS,
                f"Room {room.name} still has {len(blocking)} tenant(s); move or remove them first",
                blocking=len(blocking),
            )
        if room.status != RoomStatus.VACANT:
            raise ConflictError(ConflictKind.NOT_VACANT, f"Room {room.name} is {room.status.value}, not vacant")

        token = self._guard.capture(scope_id)
        await self._gateway.delete(Entity.ROOMS, room.id)
        if self._guard.is_current(token):
            self.rooms.pop(room.id, None)
        logger.info("Deleted room %s (%s)", room.id, room.name)

    # ── Assignment ──────────────────────────────────────────────────────────

    async def assign_tenant(
        self, scope_id: uuid.UUID, room_id: uuid.UUID, tenant_id: uuid.UUID
    ) -> tuple[RoomRead, TenantRead]:
        token = self._guard.capture(scope_id)
        room, tenant = await asyncio.gather(
            self._get_room(scope_id, room_id),
            self._get_tenant(scope_id, tenant_id),
        )
        if room.status != RoomStatus.VACANT or room.tenant_id is not None:
            raise ConflictError(ConflictKind.ALREADY_OCCUPIED, f"Room {room.name} is not vacant")
        if tenant.room_id is not None:
            raise ConflictError(ConflictKind.ALREADY_ASSIGNED, f"Tenant {tenant.name} already has a room")
        if tenant.status != TenantStatus.ACTIVE:
            raise ConflictError(ConflictKind.TENANT_INACTIVE, f"Tenant {tenant.name} is not active")

        await self._paired_write(
            room,
            {"status": RoomStatus.OCCUPIED.value, "tenant_id": tenant.id},
            {"status": room.status.value, "tenant_id": None},
            lambda: self._gateway.update(Entity.TENANTS, tenant.id, {"room_id": room.id}),
            "assign tenant",
        )
        logger.info("Assigned tenant %s to room %s", tenant.id, room.id)
        return await self._reload_pair(token, scope_id, room.id, tenant.id)

    async def vacate_room(
        self, scope_id: uuid.UUID, room_id: uuid.UUID
    ) -> tuple[RoomRead, TenantRead | None]:
        token = self._guard.capture(scope_id)
        room = await self._get_room(scope_id, room_id)
        if room.status != RoomStatus.OCCUPIED or room.tenant_id is None:
            raise ConflictError(ConflictKind.NOT_OCCUPIED, f"Room {room.name} is not occupied")

        tenant_id = room.tenant_id
        rows = await self._gateway.select(Entity.TENANTS, {"id": tenant_id})
        tenant = TenantRead.model_validate(rows[0]) if rows else None
        if tenant is None or tenant.property_id != scope_id or tenant.room_id != room.id:
            # Dangling reference: the tenant side does not point back, so only the room is cleared
            logger.warning(
                "Room %s references tenant %s which does not point back; clearing the room only", room.id, tenant_id
            )
            return await self._clear_room(token, room), None

        await self._paired_write(
            room,
            {"status": RoomStatus.VACANT.value, "tenant_id": None},
            {"status": RoomStatus.OCCUPIED.value, "tenant_id": tenant_id},
            lambda: self._gateway.update(Entity.TENANTS, tenant_id, {"room_id": None}),
            "vacate room",
        )
        logger.info("Vacated room %s (tenant %s)", room.id, tenant_id)
        return await self._reload_pair(token, scope_id, room.id, tenant_id)

    # ── Tenants ─────────────────────────────────────────────────────────────

    async def create_tenant(self, scope_id: uuid.UUID, name: str, email: str, phone: str) -> TenantRead:
        payload = parse_input(TenantCreate, {"name": name, "email": email, "phone": phone})
        token = self._guard.capture(scope_id)
        row = await self._gateway.insert(
            Entity.TENANTS,
            {
                "property_id": scope_id,
                **payload.model_dump(),
                "room_id": None,
                "status": TenantStatus.ACTIVE.value,
                "payment_status": PaymentStatus.PENDING.value,
            },
        )
        return self._cache_tenant(token, row)

    async def update_tenant(self, scope_id: uuid.UUID, tenant_id: uuid.UUID, **fields) -> TenantRead:
        changes = parse_input(TenantUpdate, fields).model_dump(exclude_unset=True, exclude_none=True)
        token = self._guard.capture(scope_id)
        tenant = await self._get_tenant(scope_id, tenant_id)
        if not changes:
            return tenant
        if changes.get("status") == TenantStatus.INACTIVE and tenant.room_id is not None:
            raise ConflictError(
                ConflictKind.ALREADY_ASSIGNED,
                f"Tenant {tenant.name} still occupies a room; vacate it before deactivating",
            )
        row = await self._gateway.update(Entity.TENANTS, tenant.id, changes)
        return self._cache_tenant(token, row)

    async def remove_tenant(self, scope_id: uuid.UUID, tenant_id: uuid.UUID) -> None:
        token = self._guard.capture(scope_id)
        tenant = await self._get_tenant(scope_id, tenant_id)

        room = None
        if tenant.room_id is not None:
            rows = await self._gateway.select(Entity.ROOMS, {"id": tenant.room_id})
            if rows:
                room = RoomRead.model_validate(rows[0])
            if room is not None and room.tenant_id != tenant.id:
                logger.warning("Room %s does not point back at tenant %s; deleting tenant only", room.id, tenant.id)
                room = None

        if room is None:
            stale = await self._gateway.select(Entity.ROOMS, {"property_id": scope_id, "tenant_id": tenant.id})
            for row in stale:
                logger.warning("Room %s still references tenant %s; clearing it", row["id"], tenant.id)
                await self._clear_room(token, RoomRead.model_validate(row))
            await self._gateway.delete(Entity.TENANTS, tenant.id)
        else:
            await self._paired_write(
                room,
                {"status": RoomStatus.VACANT.value, "tenant_id": None},
                {"status": room.status.value, "tenant_id": tenant.id},
                lambda: self._gateway.delete(Entity.TENANTS, tenant.id),
                "remove tenant",
            )
            refreshed = await self._get_room(scope_id, room.id)
            if self._guard.is_current(token):
                self.rooms[refreshed.id] = refreshed

        if self._guard.is_current(token):
            self.tenants.pop(tenant.id, None)
        logger.info("Removed tenant %s", tenant.id)

    # ── Derived views ───────────────────────────────────────────────────────

    def occupancy_summary(self, scope_id: uuid.UUID) -> OccupancySummary:
        if not self._guard.is_active(scope_id):
            return OccupancySummary()
        rooms = list(self.rooms.values())
        total = len(rooms)
        occupied = sum(1 for r in rooms if r.status == RoomStatus.OCCUPIED)
        return OccupancySummary(
            total=total,
            occupied=occupied,
            vacant=sum(1 for r in rooms if r.status == RoomStatus.VACANT),
            maintenance=sum(1 for r in rooms if r.status == RoomStatus.MAINTENANCE),
            # round half up, as the dashboard has always shown it
            occupancy_rate=(occupied * 200 + total) // (2 * total) if total else 0,
        )

    def tenant_of(self, room_id: uuid.UUID) -> TenantRead | None:
        room = self.rooms.get(room_id)
        if room is None or room.tenant_id is None:
            return None
        return self.tenants.get(room.tenant_id)

    # ── Internals ───────────────────────────────────────────────────────────

    async def _paired_write(
        self,
        room: RoomRead,
        room_patch: Record,
        room_revert: Record,
        tenant_write: Callable[[], Awaitable[object]],
        action: str,
    ) -> None:
        await self._gateway.update(Entity.ROOMS, room.id, room_patch)
        try:
            await tenant_write()
        except Exception as exc:
            logger.warning("%s: tenant write failed (%s); reverting room %s", action, exc, room.id)
            try:
                await self._gateway.update(Entity.ROOMS, room.id, room_revert)
            except Exception:
                logger.exception("%s: compensating write for room %s failed", action, room.id)
                raise RemoteError(
                    f"Could not {action}: room {room.name} was changed but could not be reverted",
                    compensated=False,
                ) from exc
            raise

    async def _clear_room(self, token: ScopeToken, room: RoomRead) -> RoomRead:
        row = await self._gateway.update(Entity.ROOMS, room.id, {"status": RoomStatus.VACANT.value, "tenant_id": None})
        return self._cache_room(token, row)

    async def _reload_pair(
        self, token: ScopeToken, scope_id: uuid.UUID, room_id: uuid.UUID, tenant_id: uuid.UUID
    ) -> tuple[RoomRead, TenantRead]:
        room, tenant = await asyncio.gather(
            self._get_room(scope_id, room_id),
            self._get_tenant(scope_id, tenant_id),
        )
        if self._guard.is_current(token):
            self.rooms[room.id] = room
            self.tenants[tenant.id] = tenant
        return room, tenant

    async def _get_room(self, scope_id: uuid.UUID, room_id: uuid.UUID) -> RoomRead:
        rows = await self._gateway.select(Entity.ROOMS, {"id": room_id})
        room = RoomRead.model_validate(rows[0]) if rows else None
        if room is None or room.property_id != scope_id:
            raise NotFoundError(Entity.ROOMS.value, room_id)
        return room

    async def _get_tenant(self, scope_id: uuid.UUID, tenant_id: uuid.UUID) -> TenantRead:
        rows = await self._gateway.select(Entity.TENANTS, {"id": tenant_id})
        tenant = TenantRead.model_validate(rows[0]) if rows else None
        if tenant is None or tenant.property_id != scope_id:
            raise NotFoundError(Entity.TENANTS.value, tenant_id)
        return tenant

    def _cache_room(self, token: ScopeToken, row: Record) -> RoomRead:
        room = RoomRead.model_validate(row)
        if self._guard.is_current(token):
            self.rooms[room.id] = room
        return room

    def _cache_tenant(self, token: ScopeToken, row: Record) -> TenantRead:
        tenant = TenantRead.model_validate(row)
        if self._guard.is_current(token):
            self.tenants[tenant.id] = tenant
        return tenant
