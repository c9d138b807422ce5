"""
Overdue sweep: the elapsed-time half of the payment lifecycle.

Scheduled via celery beat (daily at ``settings.overdue_sweep_hour`` UTC):
  mark_overdue_all   pending payments past their due date become overdue,
                     and each affected property gets one payment notification
"""

import asyncio
import logging
from datetime import date

from kost.core.config import settings
from kost.core.gateway import Entity, Gateway, SqlGateway
from kost.models.enums import NotificationStatus, NotificationType
from kost.services.ledger import PaymentLedger
from kost.worker import celery_app

logger = logging.getLogger(__name__)


async def sweep(gateway: Gateway, today: date) -> dict[str, int]:
    """Run the sweep for every property. Returns the number of payments moved per property id."""
    ledger = PaymentLedger(gateway)
    moved: dict[str, int] = {}
    for prop in await gateway.select(Entity.PROPERTIES, order="name"):
        count = await ledger.mark_overdue(prop["id"], today)
        if not count:
            continue
        moved[str(prop["id"])] = count
        await gateway.insert(
            Entity.NOTIFICATIONS,
            {
                "title": "Pembayaran terlambat",
                "message": f"{count} pembayaran di {prop['name']} telah melewati jatuh tempo.",
                "type": NotificationType.PAYMENT.value,
                "status": NotificationStatus.UNREAD.value,
                "target_user_id": None,
                "target_property_id": prop["id"],
            },
        )
    return moved


async def _run(today: date) -> dict[str, int]:
    gateway = SqlGateway.from_url(settings.database_url, settings.redis_url)
    try:
        return await sweep(gateway, today)
    finally:
        await gateway.aclose()


@celery_app.task(name="kost.services.overdue.mark_overdue_all")
def mark_overdue_all():
    """Daily: move late pending payments to overdue across all properties."""
    logger.info("Running overdue payment sweep")
    moved = asyncio.run(_run(date.today()))
    logger.info("Overdue sweep done: %d payment(s) in %d property(ies)", sum(moved.values()), len(moved))
    return moved
