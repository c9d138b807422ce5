import uuid
from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, EmailStr, Field, computed_field, field_validator, model_validator

from kost.models.enums import PaymentMethod, PaymentStatus, RoomStatus, RoomType, TenantStatus


# ─── Property ──────────────────────────────────────────────────────────────

class PropertyRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    owner_id: uuid.UUID
    name: str
    address: str | None = None
    created_at: datetime | None = None


# ─── Room ──────────────────────────────────────────────────────────────────

class RoomCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, use_enum_values=True)

    name: str = Field(min_length=1, max_length=100)
    floor: str = Field(min_length=1, max_length=20)
    room_type: RoomType = RoomType.STANDARD
    price: Decimal = Field(default=Decimal("0"), ge=0)
    facilities: list[str] = []


class RoomUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, use_enum_values=True)

    name: str | None = Field(default=None, min_length=1, max_length=100)
    floor: str | None = Field(default=None, min_length=1, max_length=20)
    room_type: RoomType | None = None
    price: Decimal | None = Field(default=None, ge=0)
    facilities: list[str] | None = None
    status: RoomStatus | None = None


class RoomRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    property_id: uuid.UUID
    name: str
    floor: str
    room_type: RoomType = RoomType.STANDARD
    price: Decimal = Decimal("0")
    facilities: list[str] = []
    status: RoomStatus = RoomStatus.VACANT
    tenant_id: uuid.UUID | None = None
    created_at: datetime | None = None

    @field_validator("facilities", mode="before")
    @classmethod
    def _none_is_empty(cls, v):
        return [] if v is None else v


# ─── Tenant ────────────────────────────────────────────────────────────────

class TenantCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, use_enum_values=True)

    name: str = Field(min_length=1, max_length=255)
    email: EmailStr
    phone: str = Field(min_length=10, max_length=50)


class TenantUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, use_enum_values=True)

    name: str | None = Field(default=None, min_length=1, max_length=255)
    email: EmailStr | None = None
    phone: str | None = Field(default=None, min_length=10, max_length=50)
    status: TenantStatus | None = None


class TenantRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    property_id: uuid.UUID
    name: str
    email: str
    phone: str
    room_id: uuid.UUID | None = None
    status: TenantStatus = TenantStatus.ACTIVE
    payment_status: PaymentStatus = PaymentStatus.PENDING
    created_at: datetime | None = None


class AssignTenantRequest(BaseModel):
    tenant_id: uuid.UUID


class OccupancyResponse(BaseModel):
    room: RoomRead
    tenant: TenantRead


# ─── Payment ───────────────────────────────────────────────────────────────

class PaymentCreate(BaseModel):
    tenant_id: uuid.UUID
    room_id: uuid.UUID
    amount: Decimal = Field(gt=0)
    due_date: date
    notes: str | None = None


class PaymentRecordRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, use_enum_values=True)

    method: PaymentMethod
    notes: str | None = None
    paid_at: datetime | None = None


class PaymentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    property_id: uuid.UUID
    tenant_id: uuid.UUID
    room_id: uuid.UUID
    amount: Decimal
    due_date: date
    paid_date: datetime | None = None
    status: PaymentStatus = PaymentStatus.PENDING
    method: str | None = None
    notes: str | None = None
    created_at: datetime | None = None


class PaymentView(PaymentRead):
    """A payment labelled with its counterpart names, as shown in the ledger table."""

    tenant_name: str
    room_name: str


class DateRange(BaseModel):
    """Inclusive range over payment due dates."""

    start: date
    end: date

    @model_validator(mode="after")
    def _ordered(self) -> "DateRange":
        if self.start > self.end:
            raise ValueError("start must not be after end")
        return self

    def __contains__(self, day: date) -> bool:
        return self.start <= day <= self.end


class PaymentTotals(BaseModel):
    total_paid: Decimal = Decimal("0")
    total_pending: Decimal = Decimal("0")
    total_overdue: Decimal = Decimal("0")

    @computed_field
    @property
    def total(self) -> Decimal:
        return self.total_paid + self.total_pending + self.total_overdue


class ReminderResponse(BaseModel):
    payment_id: uuid.UUID
    message: str
    whatsapp_url: str | None = None
