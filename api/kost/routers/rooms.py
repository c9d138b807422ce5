import uuid

from fastapi import APIRouter, Depends

from kost.core.deps import get_gateway, get_property
from kost.core.gateway import Gateway
from kost.schemas.rental import (
    AssignTenantRequest,
    OccupancyResponse,
    PropertyRead,
    RoomCreate,
    RoomRead,
    RoomUpdate,
    TenantCreate,
    TenantRead,
    TenantUpdate,
)
from kost.services.occupancy import OccupancyManager

router = APIRouter(prefix="/properties/{property_id}", tags=["rooms"])


async def get_occupancy(
    prop: PropertyRead = Depends(get_property),
    gateway: Gateway = Depends(get_gateway),
) -> OccupancyManager:
    manager = OccupancyManager(gateway)
    await manager.set_scope(prop.id)
    return manager


# ─── Rooms ───────────────────────────────────────────────────────────────────

@router.get("/rooms", response_model=list[RoomRead])
async def list_rooms(manager: OccupancyManager = Depends(get_occupancy)):
    return list(manager.rooms.values())


@router.post("/rooms", response_model=RoomRead, status_code=201)
async def create_room(payload: RoomCreate, manager: OccupancyManager = Depends(get_occupancy)):
    return await manager.create_room(manager.scope_id, **payload.model_dump())


@router.patch("/rooms/{room_id}", response_model=RoomRead)
async def update_room(
    room_id: uuid.UUID,
    payload: RoomUpdate,
    manager: OccupancyManager = Depends(get_occupancy),
):
    return await manager.update_room(manager.scope_id, room_id, **payload.model_dump(exclude_unset=True))


@router.delete("/rooms/{room_id}", status_code=204)
async def delete_room(room_id: uuid.UUID, manager: OccupancyManager = Depends(get_occupancy)):
    await manager.delete_room(manager.scope_id, room_id)


@router.post("/rooms/{room_id}/duplicate", response_model=RoomRead, status_code=201)
async def duplicate_room(room_id: uuid.UUID, manager: OccupancyManager = Depends(get_occupancy)):
    return await manager.duplicate_room(manager.scope_id, room_id)


@router.post("/rooms/{room_id}/assign", response_model=OccupancyResponse)
async def assign_tenant(
    room_id: uuid.UUID,
    payload: AssignTenantRequest,
    manager: OccupancyManager = Depends(get_occupancy),
):
    room, tenant = await manager.assign_tenant(manager.scope_id, room_id, payload.tenant_id)
    return OccupancyResponse(room=room, tenant=tenant)


@router.post("/rooms/{room_id}/vacate", response_model=RoomRead)
async def vacate_room(room_id: uuid.UUID, manager: OccupancyManager = Depends(get_occupancy)):
    room, _ = await manager.vacate_room(manager.scope_id, room_id)
    return room


# ─── Tenants ─────────────────────────────────────────────────────────────────

@router.get("/tenants", response_model=list[TenantRead])
async def list_tenants(manager: OccupancyManager = Depends(get_occupancy)):
    return list(manager.tenants.values())


@router.post("/tenants", response_model=TenantRead, status_code=201)
async def create_tenant(payload: TenantCreate, manager: OccupancyManager = Depends(get_occupancy)):
    return await manager.create_tenant(manager.scope_id, **payload.model_dump())


@router.patch("/tenants/{tenant_id}", response_model=TenantRead)
async def update_tenant(
    tenant_id: uuid.UUID,
    payload: TenantUpdate,
    manager: OccupancyManager = Depends(get_occupancy),
):
    return await manager.update_tenant(manager.scope_id, tenant_id, **payload.model_dump(exclude_unset=True))


@router.delete("/tenants/{tenant_id}", status_code=204)
async def delete_tenant(tenant_id: uuid.UUID, manager: OccupancyManager = Depends(get_occupancy)):
    await manager.remove_tenant(manager.scope_id, tenant_id)
