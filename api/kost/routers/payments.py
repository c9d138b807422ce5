import uuid
from datetime import date

from fastapi import APIRouter, Depends, Query
from starlette.concurrency import run_in_threadpool

from kost.core.config import settings
from kost.core.deps import get_gateway, get_property
from kost.core.errors import NotFoundError, ValidationError
from kost.core.gateway import Entity, Gateway
from kost.models.enums import PaymentStatus
from kost.schemas.rental import (
    DateRange,
    PaymentCreate,
    PaymentRecordRequest,
    PaymentRead,
    PaymentTotals,
    PaymentView,
    PropertyRead,
    ReminderResponse,
)
from kost.services.ledger import PaymentLedger, SortField, SortOrder, reminder_text
from kost.services.whatsapp import send_whatsapp, whatsapp_link

router = APIRouter(prefix="/properties/{property_id}/payments", tags=["payments"])


async def get_ledger(
    prop: PropertyRead = Depends(get_property),
    gateway: Gateway = Depends(get_gateway),
) -> PaymentLedger:
    ledger = PaymentLedger(gateway)
    await ledger.set_scope(prop.id)
    return ledger


def _date_range(start: date | None, end: date | None) -> DateRange | None:
    if start is None and end is None:
        return None
    if start is None or end is None:
        raise ValidationError("start" if start is None else "end", "both ends of the date range are required")
    if start > end:
        raise ValidationError("start", "start must not be after end")
    return DateRange(start=start, end=end)


@router.get("/", response_model=list[PaymentView])
async def list_payments(
    start: date | None = None,
    end: date | None = None,
    status: PaymentStatus | None = None,
    sort: SortField = SortField.DUE_DATE,
    order: SortOrder = SortOrder.DESC,
    ledger: PaymentLedger = Depends(get_ledger),
):
    """Stateless view: the client owns the sort toggle and sends ``sort`` and ``order`` explicitly."""
    return ledger.list_filtered(ledger.scope_id, _date_range(start, end), status, sort, order)


@router.get("/totals", response_model=PaymentTotals)
async def payment_totals(
    start: date | None = None,
    end: date | None = None,
    ledger: PaymentLedger = Depends(get_ledger),
):
    return ledger.aggregate(ledger.scope_id, _date_range(start, end))


@router.post("/", response_model=PaymentRead, status_code=201)
async def create_payment(payload: PaymentCreate, ledger: PaymentLedger = Depends(get_ledger)):
    return await ledger.create_payment(ledger.scope_id, **payload.model_dump())


@router.post("/{payment_id}/record", response_model=PaymentRead)
async def record_payment(
    payment_id: uuid.UUID,
    payload: PaymentRecordRequest,
    ledger: PaymentLedger = Depends(get_ledger),
):
    return await ledger.record_payment(
        ledger.scope_id, payment_id, payload.method, notes=payload.notes, paid_at=payload.paid_at
    )


async def _reminder(
    payment_id: uuid.UUID, locale: str | None, prop: PropertyRead, ledger: PaymentLedger, gateway: Gateway
) -> tuple[PaymentRead, str, str | None]:
    payment = ledger.payments.get(payment_id)
    if payment is None:
        raise NotFoundError(Entity.PAYMENTS.value, payment_id)
    message = reminder_text(ledger.view(payment), prop.name or settings.business_name, locale or settings.reminder_locale)
    tenants = await gateway.select(Entity.TENANTS, {"id": payment.tenant_id})
    return payment, message, tenants[0]["phone"] if tenants else None


@router.get("/{payment_id}/reminder", response_model=ReminderResponse)
async def payment_reminder(
    payment_id: uuid.UUID,
    locale: str | None = Query(default=None, pattern="^(id|en)$"),
    prop: PropertyRead = Depends(get_property),
    ledger: PaymentLedger = Depends(get_ledger),
    gateway: Gateway = Depends(get_gateway),
):
    payment, message, phone = await _reminder(payment_id, locale, prop, ledger, gateway)
    return ReminderResponse(
        payment_id=payment.id,
        message=message,
        whatsapp_url=whatsapp_link(phone, message) if phone else None,
    )


@router.post("/{payment_id}/reminder/send")
async def send_payment_reminder(
    payment_id: uuid.UUID,
    locale: str | None = Query(default=None, pattern="^(id|en)$"),
    prop: PropertyRead = Depends(get_property),
    ledger: PaymentLedger = Depends(get_ledger),
    gateway: Gateway = Depends(get_gateway),
):
    """Relay the reminder through the WhatsApp bot. ``sent`` is False when the bot is disabled or down."""
    payment, message, phone = await _reminder(payment_id, locale, prop, ledger, gateway)
    sent = await run_in_threadpool(send_whatsapp, phone, message) if phone else False
    return {"payment_id": str(payment.id), "sent": sent}
