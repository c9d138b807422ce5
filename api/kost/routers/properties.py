from fastapi import APIRouter, Depends

from kost.core.deps import get_current_user, get_gateway
from kost.core.gateway import Entity, Gateway
from kost.core.scope import Session
from kost.schemas.rental import PropertyRead

router = APIRouter(prefix="/properties", tags=["properties"])


@router.get("/", response_model=list[PropertyRead])
async def list_properties(
    session: Session = Depends(get_current_user),
    gateway: Gateway = Depends(get_gateway),
):
    return await gateway.select(Entity.PROPERTIES, {"owner_id": session.user_id}, order="name")
