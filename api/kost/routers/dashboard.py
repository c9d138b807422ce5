import asyncio

from fastapi import APIRouter, Depends

from kost.core.deps import get_gateway, get_property
from kost.core.gateway import Gateway
from kost.schemas.dashboard import DashboardSummary
from kost.schemas.rental import PropertyRead
from kost.services.dashboard import build_summary
from kost.services.ledger import PaymentLedger
from kost.services.occupancy import OccupancyManager

router = APIRouter(prefix="/properties/{property_id}", tags=["dashboard"])


@router.get("/dashboard", response_model=DashboardSummary)
async def dashboard(
    prop: PropertyRead = Depends(get_property),
    gateway: Gateway = Depends(get_gateway),
):
    occupancy = OccupancyManager(gateway)
    ledger = PaymentLedger(gateway)
    await asyncio.gather(occupancy.set_scope(prop.id), ledger.set_scope(prop.id))
    return build_summary(occupancy, ledger, prop.id)
