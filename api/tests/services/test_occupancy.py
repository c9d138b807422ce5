"""
Tests for OccupancyManager: paired room/tenant writes against the in-memory gateway.
"""
import asyncio
import uuid
from decimal import Decimal

import pytest

from kost.core.errors import ConflictError, ConflictKind, NotFoundError, RemoteError, ValidationError
from kost.core.gateway import Entity
from kost.models.enums import RoomStatus
from kost.services.occupancy import OccupancyManager

PROP = uuid.uuid4()
OTHER = uuid.uuid4()


def _assert_pair_consistent(gateway):
    """Both directions of every assignment agree in the backing store."""
    rooms = gateway.tables[Entity.ROOMS]
    tenants = gateway.tables[Entity.TENANTS]
    for room in rooms.values():
        if room["tenant_id"] is not None:
            assert tenants[str(room["tenant_id"])]["room_id"] == room["id"]
            assert room["status"] == "occupied"
        else:
            assert room["status"] != "occupied"
    for tenant in tenants.values():
        if tenant["room_id"] is not None:
            assert rooms[str(tenant["room_id"])]["tenant_id"] == tenant["id"]


@pytest.fixture
def manager(gateway):
    return OccupancyManager(gateway)


# ── Loading ──────────────────────────────────────────────────────────────────

class TestLoad:
    def test_loads_only_active_property(self, gateway, manager):
        gateway.add_room(PROP, "B2")
        gateway.add_room(PROP, "A1")
        gateway.add_room(OTHER, "Z9")
        gateway.add_tenant(PROP, "Budi")

        asyncio.run(manager.set_scope(PROP))

        assert [r.name for r in manager.rooms.values()] == ["A1", "B2"]
        assert [t.name for t in manager.tenants.values()] == ["Budi"]

    def test_clearing_scope_empties_caches(self, gateway, manager):
        gateway.add_room(PROP)

        async def scenario():
            await manager.set_scope(PROP)
            await manager.set_scope(None)

        asyncio.run(scenario())
        assert manager.rooms == {} and manager.tenants == {}
        assert manager.scope_id is None

    def test_stale_response_is_discarded(self, gateway, manager):
        gateway.add_room(PROP, "From A")
        gateway.add_room(OTHER, "From B")

        async def scenario():
            release = gateway.hold(Entity.ROOMS, property_id=PROP)
            slow = asyncio.create_task(manager.set_scope(PROP))
            await asyncio.sleep(0)
            await manager.set_scope(OTHER)
            release.set()
            await slow
            return await manager.load(OTHER)

        assert asyncio.run(scenario()) is True
        assert [r.name for r in manager.rooms.values()] == ["From B"]
        assert manager.occupancy_summary(PROP).total == 0


# ── Room writes ──────────────────────────────────────────────────────────────

class TestRoomWrites:
    def test_create_room_starts_vacant(self, gateway, manager):
        async def scenario():
            await manager.set_scope(PROP)
            return await manager.create_room(PROP, "  C3 ", "2", "deluxe", 2000000, ["AC"])

        room = asyncio.run(scenario())
        assert room.name == "C3"
        assert room.status == RoomStatus.VACANT
        assert room.tenant_id is None
        assert room.price == Decimal("2000000")
        assert manager.rooms[room.id] == room

    def test_blank_name_rejected_without_remote_call(self, gateway, manager):
        with pytest.raises(ValidationError) as exc:
            asyncio.run(manager.create_room(PROP, "   ", "1"))
        assert exc.value.field == "name"
        assert gateway.ops("insert") == []

    def test_update_to_occupied_is_rejected(self, gateway, manager):
        room = gateway.add_room(PROP)
        with pytest.raises(ValidationError):
            asyncio.run(manager.update_room(PROP, room["id"], status="occupied"))
        assert gateway.ops("update") == []

    def test_occupied_room_status_cannot_change(self, gateway, manager):
        room = gateway.add_room(PROP)
        gateway.occupy(room, gateway.add_tenant(PROP))
        with pytest.raises(ConflictError) as exc:
            asyncio.run(manager.update_room(PROP, room["id"], status="maintenance"))
        assert exc.value.kind is ConflictKind.ALREADY_OCCUPIED

    def test_occupied_room_price_can_change(self, gateway, manager):
        room = gateway.add_room(PROP)
        gateway.occupy(room, gateway.add_tenant(PROP))
        updated = asyncio.run(manager.update_room(PROP, room["id"], price=1750000))
        assert updated.price == Decimal("1750000")
        assert updated.status == RoomStatus.OCCUPIED

    def test_duplicate_never_copies_tenant(self, gateway, manager):
        room = gateway.add_room(PROP, "A1", price=Decimal("1800000"))
        gateway.occupy(room, gateway.add_tenant(PROP))

        copy = asyncio.run(manager.duplicate_room(PROP, room["id"]))

        assert copy.name == "A1 (Copy)"
        assert copy.status == RoomStatus.VACANT
        assert copy.tenant_id is None
        assert copy.price == Decimal("1800000")
        assert copy.facilities == ["AC", "WiFi"]
        _assert_pair_consistent(gateway)

    def test_delete_vacant_room(self, gateway, manager):
        room = gateway.add_room(PROP)
        asyncio.run(manager.delete_room(PROP, room["id"]))
        assert gateway.get(Entity.ROOMS, room["id"]) is None

    def test_delete_room_with_tenant_reports_blocking_count(self, gateway, manager):
        room = gateway.add_room(PROP)
        gateway.occupy(room, gateway.add_tenant(PROP))

        with pytest.raises(ConflictError) as exc:
            asyncio.run(manager.delete_room(PROP, room["id"]))

        assert exc.value.kind is ConflictKind.HAS_TENANTS
        assert exc.value.blocking == 1
        assert gateway.ops("delete") == []

    def test_delete_room_under_maintenance(self, gateway, manager):
        room = gateway.add_room(PROP, status="maintenance")
        with pytest.raises(ConflictError) as exc:
            asyncio.run(manager.delete_room(PROP, room["id"]))
        assert exc.value.kind is ConflictKind.NOT_VACANT

    def test_room_of_other_property_is_not_found(self, gateway, manager):
        room = gateway.add_room(OTHER)
        with pytest.raises(NotFoundError):
            asyncio.run(manager.update_room(PROP, room["id"], name="Hijacked"))


# ── Assignment ───────────────────────────────────────────────────────────────

class TestAssign:
    def test_assign_sets_both_sides(self, gateway, manager):
        room = gateway.add_room(PROP, "R1")
        tenant = gateway.add_tenant(PROP, "T1")

        async def scenario():
            await manager.set_scope(PROP)
            return await manager.assign_tenant(PROP, room["id"], tenant["id"])

        r, t = asyncio.run(scenario())

        assert r.status == RoomStatus.OCCUPIED
        assert r.tenant_id == tenant["id"]
        assert t.room_id == room["id"]
        assert manager.rooms[r.id] == r
        assert manager.tenant_of(r.id) == t
        _assert_pair_consistent(gateway)

    def test_room_checked_before_tenant(self, gateway, manager):
        room = gateway.add_room(PROP)
        gateway.occupy(room, gateway.add_tenant(PROP, "Ani"))
        assigned = gateway.add_tenant(PROP, "Budi")
        gateway.occupy(gateway.add_room(PROP, "B1"), assigned)

        with pytest.raises(ConflictError) as exc:
            asyncio.run(manager.assign_tenant(PROP, room["id"], assigned["id"]))
        assert exc.value.kind is ConflictKind.ALREADY_OCCUPIED

    def test_tenant_already_assigned(self, gateway, manager):
        tenant = gateway.add_tenant(PROP)
        gateway.occupy(gateway.add_room(PROP, "A1"), tenant)
        vacant = gateway.add_room(PROP, "A2")

        with pytest.raises(ConflictError) as exc:
            asyncio.run(manager.assign_tenant(PROP, vacant["id"], tenant["id"]))
        assert exc.value.kind is ConflictKind.ALREADY_ASSIGNED

    def test_inactive_tenant(self, gateway, manager):
        room = gateway.add_room(PROP)
        tenant = gateway.add_tenant(PROP, status="inactive")
        with pytest.raises(ConflictError) as exc:
            asyncio.run(manager.assign_tenant(PROP, room["id"], tenant["id"]))
        assert exc.value.kind is ConflictKind.TENANT_INACTIVE

    def test_tenant_write_failure_reverts_room(self, gateway, manager):
        room = gateway.add_room(PROP)
        tenant = gateway.add_tenant(PROP)
        gateway.fail("update", Entity.TENANTS)

        with pytest.raises(RemoteError) as exc:
            asyncio.run(manager.assign_tenant(PROP, room["id"], tenant["id"]))

        assert exc.value.compensated is True
        assert gateway.get(Entity.ROOMS, room["id"])["status"] == "vacant"
        assert gateway.get(Entity.ROOMS, room["id"])["tenant_id"] is None
        assert len(gateway.ops("update", Entity.ROOMS)) == 2
        _assert_pair_consistent(gateway)

    def test_failed_compensation_is_reported(self, gateway, manager):
        room = gateway.add_room(PROP)
        tenant = gateway.add_tenant(PROP)
        original = RemoteError("tenant write lost")
        gateway.fail("update", Entity.TENANTS, error=original)
        gateway.fail("update", Entity.ROOMS, after=1)

        with pytest.raises(RemoteError) as exc:
            asyncio.run(manager.assign_tenant(PROP, room["id"], tenant["id"]))

        assert exc.value.compensated is False
        assert exc.value.__cause__ is original

    def test_room_write_failure_touches_nothing(self, gateway, manager):
        room = gateway.add_room(PROP)
        tenant = gateway.add_tenant(PROP)
        gateway.fail("update", Entity.ROOMS)

        with pytest.raises(RemoteError):
            asyncio.run(manager.assign_tenant(PROP, room["id"], tenant["id"]))

        assert gateway.ops("update", Entity.TENANTS) == []
        _assert_pair_consistent(gateway)


# ── Vacate / remove ──────────────────────────────────────────────────────────

class TestVacate:
    def test_vacate_clears_both_sides(self, gateway, manager):
        room = gateway.add_room(PROP, "R2")
        tenant = gateway.add_tenant(PROP, "T2")
        gateway.occupy(room, tenant)

        r, t = asyncio.run(manager.vacate_room(PROP, room["id"]))

        assert r.status == RoomStatus.VACANT
        assert r.tenant_id is None
        assert t.room_id is None
        _assert_pair_consistent(gateway)

    def test_vacate_vacant_room(self, gateway, manager):
        room = gateway.add_room(PROP)
        with pytest.raises(ConflictError) as exc:
            asyncio.run(manager.vacate_room(PROP, room["id"]))
        assert exc.value.kind is ConflictKind.NOT_OCCUPIED

    def test_vacate_repairs_dangling_tenant_reference(self, gateway, manager):
        room = gateway.add_room(PROP, status="occupied", tenant_id=uuid.uuid4())

        r, t = asyncio.run(manager.vacate_room(PROP, room["id"]))

        assert t is None
        assert r.status == RoomStatus.VACANT
        assert gateway.ops("update", Entity.TENANTS) == []

    def test_vacate_leaves_tenant_living_in_another_room(self, gateway, manager):
        home = gateway.add_room(PROP, "R3")
        tenant = gateway.add_tenant(PROP, "T")
        gateway.occupy(home, tenant)
        stale = gateway.add_room(PROP, "R2", status="occupied", tenant_id=tenant["id"])

        r, t = asyncio.run(manager.vacate_room(PROP, stale["id"]))

        assert t is None
        assert r.status == RoomStatus.VACANT
        assert gateway.get(Entity.TENANTS, tenant["id"])["room_id"] == home["id"]
        assert gateway.get(Entity.ROOMS, home["id"])["tenant_id"] == tenant["id"]
        assert gateway.ops("update", Entity.TENANTS) == []
        _assert_pair_consistent(gateway)

    def test_vacate_never_writes_tenant_of_other_property(self, gateway, manager):
        room = gateway.add_room(PROP, "R1")
        foreign = gateway.add_tenant(OTHER, "Asing", room_id=room["id"])
        gateway.tables[Entity.ROOMS][str(room["id"])].update(status="occupied", tenant_id=foreign["id"])

        r, t = asyncio.run(manager.vacate_room(PROP, room["id"]))

        assert t is None
        assert r.tenant_id is None
        assert gateway.get(Entity.TENANTS, foreign["id"])["room_id"] == room["id"]
        assert gateway.ops("update", Entity.TENANTS) == []

    def test_vacate_compensates_on_tenant_failure(self, gateway, manager):
        room = gateway.add_room(PROP)
        tenant = gateway.add_tenant(PROP)
        gateway.occupy(room, tenant)
        gateway.fail("update", Entity.TENANTS)

        with pytest.raises(RemoteError):
            asyncio.run(manager.vacate_room(PROP, room["id"]))

        assert gateway.get(Entity.ROOMS, room["id"])["tenant_id"] == tenant["id"]
        _assert_pair_consistent(gateway)

    def test_assign_vacate_sequence_keeps_pairs_consistent(self, gateway, manager):
        rooms = [gateway.add_room(PROP, f"R{i}") for i in range(3)]
        tenants = [gateway.add_tenant(PROP, f"T{i}") for i in range(3)]

        async def scenario():
            await manager.assign_tenant(PROP, rooms[0]["id"], tenants[0]["id"])
            await manager.assign_tenant(PROP, rooms[1]["id"], tenants[1]["id"])
            _assert_pair_consistent(gateway)
            await manager.vacate_room(PROP, rooms[0]["id"])
            await manager.assign_tenant(PROP, rooms[0]["id"], tenants[2]["id"])
            _assert_pair_consistent(gateway)
            await manager.vacate_room(PROP, rooms[1]["id"])
            await manager.assign_tenant(PROP, rooms[2]["id"], tenants[1]["id"])

        asyncio.run(scenario())
        _assert_pair_consistent(gateway)


class TestTenants:
    def test_create_tenant_defaults(self, gateway, manager):
        tenant = asyncio.run(manager.create_tenant(PROP, "Siti", "siti@example.com", "081298765432"))
        assert tenant.status == "active"
        assert tenant.room_id is None
        assert tenant.payment_status == "pending"

    def test_short_phone_rejected(self, gateway, manager):
        with pytest.raises(ValidationError) as exc:
            asyncio.run(manager.create_tenant(PROP, "Siti", "siti@example.com", "0812"))
        assert exc.value.field == "phone"
        assert gateway.ops("insert") == []

    def test_deactivating_assigned_tenant(self, gateway, manager):
        tenant = gateway.add_tenant(PROP)
        gateway.occupy(gateway.add_room(PROP), tenant)
        with pytest.raises(ConflictError) as exc:
            asyncio.run(manager.update_tenant(PROP, tenant["id"], status="inactive"))
        assert exc.value.kind is ConflictKind.ALREADY_ASSIGNED

    def test_remove_assigned_tenant_vacates_room(self, gateway, manager):
        room = gateway.add_room(PROP)
        tenant = gateway.add_tenant(PROP)
        gateway.occupy(room, tenant)

        async def scenario():
            await manager.set_scope(PROP)
            await manager.remove_tenant(PROP, tenant["id"])

        asyncio.run(scenario())

        assert gateway.get(Entity.TENANTS, tenant["id"]) is None
        assert gateway.get(Entity.ROOMS, room["id"])["status"] == "vacant"
        assert tenant["id"] not in manager.tenants
        assert manager.rooms[room["id"]].tenant_id is None

    def test_remove_tenant_clears_room_still_referencing_it(self, gateway, manager):
        tenant = gateway.add_tenant(PROP, "T")
        room = gateway.add_room(PROP, "R1", status="occupied", tenant_id=tenant["id"])

        async def scenario():
            await manager.set_scope(PROP)
            await manager.remove_tenant(PROP, tenant["id"])

        asyncio.run(scenario())

        assert gateway.get(Entity.TENANTS, tenant["id"]) is None
        assert gateway.get(Entity.ROOMS, room["id"])["status"] == "vacant"
        assert gateway.get(Entity.ROOMS, room["id"])["tenant_id"] is None
        assert manager.rooms[room["id"]].status == RoomStatus.VACANT
        _assert_pair_consistent(gateway)

    def test_remove_tenant_delete_failure_restores_room(self, gateway, manager):
        room = gateway.add_room(PROP)
        tenant = gateway.add_tenant(PROP)
        gateway.occupy(room, tenant)
        gateway.fail("delete", Entity.TENANTS)

        with pytest.raises(RemoteError):
            asyncio.run(manager.remove_tenant(PROP, tenant["id"]))

        assert gateway.get(Entity.ROOMS, room["id"])["status"] == "occupied"
        _assert_pair_consistent(gateway)


class TestSummary:
    def test_occupancy_rate_rounds_to_whole_percent(self, gateway, manager):
        for i in range(3):
            gateway.add_room(PROP, f"R{i}")
        occupied = gateway.add_room(PROP, "R9")
        gateway.occupy(occupied, gateway.add_tenant(PROP))
        gateway.add_room(PROP, "M1", status="maintenance")

        asyncio.run(manager.set_scope(PROP))
        summary = manager.occupancy_summary(PROP)

        assert (summary.total, summary.occupied, summary.vacant, summary.maintenance) == (5, 1, 3, 1)
        assert summary.occupancy_rate == 20
