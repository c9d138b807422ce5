"""Status vocabularies shared by the ORM models, the read schemas and the managers."""
import enum


class RoomStatus(str, enum.Enum):
    VACANT = "vacant"
    OCCUPIED = "occupied"
    MAINTENANCE = "maintenance"


class RoomType(str, enum.Enum):
    STANDARD = "standard"
    DELUXE = "deluxe"
    SUITE = "suite"
    SINGLE = "single"
    DOUBLE = "double"


class TenantStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    OVERDUE = "overdue"
    PAID = "paid"


class PaymentMethod(str, enum.Enum):
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    E_WALLET = "e_wallet"
    QRIS = "qris"
    OTHER = "other"


class NotificationType(str, enum.Enum):
    SYSTEM = "system"
    USER = "user"
    PROPERTY = "property"
    PAYMENT = "payment"


class NotificationStatus(str, enum.Enum):
    UNREAD = "unread"
    READ = "read"


class UserRole(str, enum.Enum):
    OWNER = "owner"
    ADMIN = "admin"
    STAFF = "staff"
