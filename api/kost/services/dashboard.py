"""Dashboard figures derived from the loaded occupancy and ledger caches."""
import uuid
from datetime import date
from decimal import Decimal

from kost.models.enums import PaymentStatus
from kost.schemas.dashboard import DashboardSummary, FinancialSummary
from kost.services.ledger import PaymentLedger, SortField, SortOrder
from kost.services.occupancy import OccupancyManager

UPCOMING_LIMIT = 5


def build_summary(
    occupancy: OccupancyManager,
    ledger: PaymentLedger,
    scope_id: uuid.UUID,
    today: date | None = None,
) -> DashboardSummary:
    today = today or date.today()
    totals = ledger.aggregate(scope_id)

    monthly_income = Decimal("0")
    if ledger.scope_id == scope_id:
        # Income counts by the date money arrived, not by the due date
        for p in ledger.payments.values():
            if p.status == PaymentStatus.PAID and p.paid_date and (p.paid_date.year, p.paid_date.month) == (
                today.year,
                today.month,
            ):
                monthly_income += p.amount

    unpaid = [
        p
        for p in ledger.list_filtered(scope_id, sort_field=SortField.DUE_DATE, sort_order=SortOrder.ASC)
        if p.status != PaymentStatus.PAID
    ]

    return DashboardSummary(
        occupancy=occupancy.occupancy_summary(scope_id),
        financial=FinancialSummary(
            total_revenue=totals.total_paid,
            pending_payments=totals.total_pending,
            overdue_payments=totals.total_overdue,
            monthly_income=monthly_income,
        ),
        upcoming_payments=unpaid[:UPCOMING_LIMIT],
    )
