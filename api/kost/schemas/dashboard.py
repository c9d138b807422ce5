from decimal import Decimal

from pydantic import BaseModel

from kost.schemas.rental import PaymentView


class OccupancySummary(BaseModel):
    total: int = 0
    occupied: int = 0
    vacant: int = 0
    maintenance: int = 0
    occupancy_rate: int = 0  # whole percent


class FinancialSummary(BaseModel):
    total_revenue: Decimal = Decimal("0")
    pending_payments: Decimal = Decimal("0")
    overdue_payments: Decimal = Decimal("0")
    monthly_income: Decimal = Decimal("0")


class DashboardSummary(BaseModel):
    occupancy: OccupancySummary
    financial: FinancialSummary
    upcoming_payments: list[PaymentView]
