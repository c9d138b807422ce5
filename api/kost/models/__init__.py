from kost.models.user import User
from kost.models.property import Property
from kost.models.rental import Payment, Room, Tenant
from kost.models.notification import Notification

__all__ = [
    "User",
    "Property",
    "Room",
    "Tenant",
    "Payment",
    "Notification",
]
