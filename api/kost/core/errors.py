"""
Error taxonomy shared by the managers, the gateway and the HTTP layer.

Every error carries the HTTP status the API should answer with, so routers
never translate errors by hand (see ``kost.main``).
"""
import enum
import uuid

from pydantic import ValidationError as PydanticValidationError


class KostError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"detail": self.message}


class ValidationError(KostError):
    """Missing or malformed input, raised before any remote call."""

    status_code = 422

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field

    @classmethod
    def from_pydantic(cls, exc: PydanticValidationError) -> "ValidationError":
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or "input"
        return cls(field, first.get("msg", "invalid value"))


class ConflictKind(str, enum.Enum):
    ALREADY_OCCUPIED = "already_occupied"
    ALREADY_ASSIGNED = "already_assigned"
    NOT_OCCUPIED = "not_occupied"
    HAS_TENANTS = "has_tenants"
    ALREADY_PAID = "already_paid"
    NOT_VACANT = "not_vacant"
    TENANT_INACTIVE = "tenant_inactive"


class ConflictError(KostError):
    status_code = 409

    def __init__(self, kind: ConflictKind, message: str, blocking: int | None = None):
        super().__init__(message)
        self.kind = kind
        self.blocking = blocking

    def to_dict(self) -> dict:
        body = {"detail": self.message, "kind": self.kind.value}
        if self.blocking is not None:
            body["blocking"] = self.blocking
        return body


class AuthError(KostError):
    status_code = 401


class NotFoundError(KostError):
    status_code = 404

    def __init__(self, entity: str, record_id: uuid.UUID | str | None):
        super().__init__(f"{entity.rstrip('s').capitalize()} {record_id} not found")
        self.entity = entity
        self.record_id = record_id


def parse_input(schema, data: dict):
    """Validate manager input with a pydantic schema, reporting failures as ValidationError."""
    try:
        return schema.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError.from_pydantic(exc) from exc


class RemoteError(KostError):
    """Backend failure. ``compensated`` is False when a paired write was left half-applied."""

    status_code = 502

    def __init__(self, message: str, compensated: bool = True):
        super().__init__(message)
        self.compensated = compensated
