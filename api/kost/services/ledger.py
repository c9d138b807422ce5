"""
Payment ledger: payment lifecycle and the derived financial views.

Lifecycle is one-directional:

    pending ──(due date passes)──▶ overdue
       │                              │
       └──────(record_payment)──▶ paid ◀┘

Nothing ever leaves ``paid`` and nothing returns to ``pending``.

Rooms and tenants are only read here, to label payments with counterpart
names; the occupancy manager owns those tables.
"""

import asyncio
import enum
import logging
import uuid
from collections.abc import Callable
from datetime import date, datetime, timezone
from decimal import Decimal

from kost.core.errors import ConflictError, ConflictKind, NotFoundError, parse_input
from kost.core.gateway import Entity, Gateway, Record
from kost.core.scope import AuthEvent, ScopeContext, ScopeGuard, ScopeToken
from kost.models.enums import PaymentStatus
from kost.schemas.rental import DateRange, PaymentCreate, PaymentRead, PaymentRecordRequest, PaymentTotals, PaymentView

logger = logging.getLogger(__name__)

UNKNOWN = "Unknown"


class SortField(str, enum.Enum):
    TENANT_NAME = "tenant_name"
    ROOM_NAME = "room_name"
    AMOUNT = "amount"
    DUE_DATE = "due_date"
    PAID_DATE = "paid_date"


class SortOrder(str, enum.Enum):
    ASC = "asc"
    DESC = "desc"


_EPOCH = datetime.min.replace(tzinfo=timezone.utc)

_SORT_KEYS: dict[SortField, Callable[[PaymentView], object]] = {
    SortField.TENANT_NAME: lambda p: p.tenant_name.casefold(),
    SortField.ROOM_NAME: lambda p: p.room_name.casefold(),
    SortField.AMOUNT: lambda p: p.amount,
    SortField.DUE_DATE: lambda p: p.due_date,
    # unpaid sorts as the earliest possible payment date
    SortField.PAID_DATE: lambda p: p.paid_date or _EPOCH,
}


def _in_range(payment: PaymentRead, date_range: DateRange | None) -> bool:
    return date_range is None or payment.due_date in date_range


class PaymentLedger:
    def __init__(self, gateway: Gateway):
        self._gateway = gateway
        self._guard = ScopeGuard()
        self.payments: dict[uuid.UUID, PaymentRead] = {}
        self._tenant_names: dict[uuid.UUID, str] = {}
        self._room_names: dict[uuid.UUID, str] = {}
        self.sort_field = SortField.DUE_DATE
        self.sort_order = SortOrder.DESC

    @property
    def scope_id(self) -> uuid.UUID | None:
        return self._guard.scope_id

    def bind(self, context: ScopeContext) -> Callable[[], None]:
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
        self.payments = {}
        self._tenant_names = {}
        self._room_names = {}
        if scope_id is not None:
            await self.load(scope_id)

    async def load(self, scope_id: uuid.UUID) -> bool:
        token = self._guard.capture(scope_id)
        payment_rows, tenant_rows, room_rows = await asyncio.gather(
            self._gateway.select(Entity.PAYMENTS, {"property_id": scope_id}, order="-due_date"),
            self._gateway.select(Entity.TENANTS, {"property_id": scope_id}),
            self._gateway.select(Entity.ROOMS, {"property_id": scope_id}),
        )
        if not self._guard.is_current(token):
            logger.debug("Discarding stale payment load for property %s", scope_id)
            return False
        payments = [PaymentRead.model_validate(row) for row in payment_rows]
        self.payments = {p.id: p for p in payments}
        self._tenant_names = {uuid.UUID(str(row["id"])): row["name"] for row in tenant_rows}
        self._room_names = {uuid.UUID(str(row["id"])): row["name"] for row in room_rows}
        return True

    # ── Writes ──────────────────────────────────────────────────────────────

    async def create_payment(
        self,
        scope_id: uuid.UUID,
        tenant_id: uuid.UUID,
        room_id: uuid.UUID,
        amount: Decimal | int | str,
        due_date: date,
        notes: str | None = None,
    ) -> PaymentRead:
        payload = parse_input(
            PaymentCreate,
            {"tenant_id": tenant_id, "room_id": room_id, "amount": amount, "due_date": due_date, "notes": notes},
        )
        token = self._guard.capture(scope_id)
        row = await self._gateway.insert(
            Entity.PAYMENTS,
            {
                "property_id": scope_id,
                **payload.model_dump(),
                "status": PaymentStatus.PENDING.value,
                "paid_date": None,
                "method": None,
            },
        )
        return self._cache(token, row)

    async def record_payment(
        self,
        scope_id: uuid.UUID,
        payment_id: uuid.UUID,
        method: str,
        notes: str | None = None,
        paid_at: datetime | None = None,
    ) -> PaymentRead:
        """Settle a pending or overdue payment."""
        request = parse_input(PaymentRecordRequest, {"method": method, "notes": notes, "paid_at": paid_at})
        token = self._guard.capture(scope_id)
        payment = await self._get(scope_id, payment_id)
        if payment.status == PaymentStatus.PAID:
            raise ConflictError(ConflictKind.ALREADY_PAID, f"Payment {payment.id} is already paid")

        row = await self._gateway.update(
            Entity.PAYMENTS,
            payment.id,
            {
                "status": PaymentStatus.PAID.value,
                "paid_date": request.paid_at or datetime.now(timezone.utc),
                "method": request.method,
                "notes": request.notes or None,
            },
        )
        logger.info("Recorded %s payment %s (%s)", request.method, payment.id, payment.amount)
        return self._cache(token, row)

    async def mark_overdue(self, scope_id: uuid.UUID, today: date | None = None) -> int:
        """Move pending payments whose due date has passed to overdue. Returns how many moved."""
        today = today or date.today()
        token = self._guard.capture(scope_id)
        rows = await self._gateway.select(
            Entity.PAYMENTS, {"property_id": scope_id, "status": PaymentStatus.PENDING.value}
        )
        late = [p for p in map(PaymentRead.model_validate, rows) if p.due_date < today]
        for payment in late:
            row = await self._gateway.update(
                Entity.PAYMENTS, payment.id, {"status": PaymentStatus.OVERDUE.value}
            )
            self._cache(token, row)
        if late:
            logger.info("Marked %d payment(s) overdue for property %s", len(late), scope_id)
        return len(late)

    # ── Derived views ───────────────────────────────────────────────────────

    def sort_by(self, field: SortField) -> tuple[SortField, SortOrder]:
        """Asking for the current field again flips the order; a new field starts ascending."""
        if field == self.sort_field:
            self.sort_order = SortOrder.ASC if self.sort_order == SortOrder.DESC else SortOrder.DESC
        else:
            self.sort_field = field
            self.sort_order = SortOrder.ASC
        return self.sort_field, self.sort_order

    def view(self, payment: PaymentRead) -> PaymentView:
        return PaymentView(
            **payment.model_dump(),
            tenant_name=self._tenant_names.get(payment.tenant_id, UNKNOWN),
            room_name=self._room_names.get(payment.room_id, UNKNOWN),
        )

    def list_filtered(
        self,
        scope_id: uuid.UUID,
        date_range: DateRange | None = None,
        status_filter: PaymentStatus | None = None,
        sort_field: SortField | None = None,
        sort_order: SortOrder | None = None,
    ) -> list[PaymentView]:
        if not self._guard.is_active(scope_id):
            return []
        field = sort_field or self.sort_field
        order = sort_order or self.sort_order

        views = [
            self.view(p)
            for p in self.payments.values()
            if _in_range(p, date_range) and (status_filter is None or p.status == status_filter)
        ]
        # Two stable passes: id order first, so ties keep ascending id in either direction
        views.sort(key=lambda p: str(p.id))
        views.sort(key=_SORT_KEYS[field], reverse=order == SortOrder.DESC)
        return views

    def aggregate(self, scope_id: uuid.UUID, date_range: DateRange | None = None) -> PaymentTotals:
        totals = PaymentTotals()
        if not self._guard.is_active(scope_id):
            return totals
        for payment in self.payments.values():
            if not _in_range(payment, date_range):
                continue
            if payment.status == PaymentStatus.PAID:
                totals.total_paid += payment.amount
            elif payment.status == PaymentStatus.PENDING:
                totals.total_pending += payment.amount
            else:
                totals.total_overdue += payment.amount
        return totals

    # ── Internals ───────────────────────────────────────────────────────────

    async def _get(self, scope_id: uuid.UUID, payment_id: uuid.UUID) -> PaymentRead:
        rows = await self._gateway.select(Entity.PAYMENTS, {"id": payment_id})
        payment = PaymentRead.model_validate(rows[0]) if rows else None
        if payment is None or payment.property_id != scope_id:
            raise NotFoundError(Entity.PAYMENTS.value, payment_id)
        return payment

    def _cache(self, token: ScopeToken, row: Record) -> PaymentRead:
        payment = PaymentRead.model_validate(row)
        if self._guard.is_current(token):
            self.payments[payment.id] = payment
        return payment


# ─── Reminder text ────────────────────────────────────────────────────────────

_MONTHS = {
    "id": [
        "Januari", "Februari", "Maret", "April", "Mei", "Juni",
        "Juli", "Agustus", "September", "Oktober", "November", "Desember",
    ],
    "en": [
        "January", "February", "March", "April", "May", "June",
        "July", "August", "September", "October", "November", "December",
    ],
}

_TEMPLATES = {
    "id": {
        PaymentStatus.PAID: (
            "Halo {name},\n\n"
            "Terima kasih telah menyelesaikan pembayaran sewa untuk periode {period}. "
            "Kami sangat menghargai ketepatan Anda dalam melakukan pembayaran.\n\n"
            "Jika ada pertanyaan, jangan ragu untuk menghubungi kami.\n\n"
            "Salam hangat,\nManajemen {business}"
        ),
        PaymentStatus.PENDING: (
            "Halo {name},\n\n"
            "Kami ingin mengingatkan bahwa pembayaran sewa untuk periode {period} masih belum diterima. "
            "Mohon selesaikan pembayaran paling lambat {due}.\n\n"
            "Terima kasih atas perhatiannya.\n\n"
            "Salam hangat,\nManajemen {business}"
        ),
        PaymentStatus.OVERDUE: (
            "Halo {name},\n\n"
            "Pembayaran sewa untuk periode {period} belum kami terima dan telah melewati "
            "batas waktu pada {due}.\n\n"
            "Mohon segera selesaikan pembayaran untuk menghindari denda keterlambatan. "
            "Jika Anda mengalami kendala, silakan hubungi kami.\n\n"
            "Salam hangat,\nManajemen {business}"
        ),
    },
    "en": {
        PaymentStatus.PAID: (
            "Hello {name},\n\n"
            "Thank you for settling your rent for {period}. We appreciate your punctuality.\n\n"
            "If you have any questions, feel free to contact us.\n\n"
            "Kind regards,\n{business} Management"
        ),
        PaymentStatus.PENDING: (
            "Hello {name},\n\n"
            "This is a reminder that your rent for {period} has not been received yet. "
            "Please pay no later than {due}.\n\n"
            "Thank you.\n\n"
            "Kind regards,\n{business} Management"
        ),
        PaymentStatus.OVERDUE: (
            "Hello {name},\n\n"
            "Your rent for {period} is overdue; it was due on {due}.\n\n"
            "Please pay as soon as possible to avoid late fees, or contact us if you need help.\n\n"
            "Kind regards,\n{business} Management"
        ),
    },
}


def reminder_text(payment: PaymentView, business_name: str, locale: str = "id") -> str:
    """Message for the tenant matching the payment's status. Sending it is someone else's job."""
    months = _MONTHS.get(locale, _MONTHS["id"])
    templates = _TEMPLATES.get(locale, _TEMPLATES["id"])
    due = payment.due_date
    return templates[PaymentStatus(payment.status)].format(
        name=payment.tenant_name,
        period=f"{months[due.month - 1]} {due.year}",
        due=f"{due.day} {months[due.month - 1]} {due.year}",
        business=business_name,
    )
