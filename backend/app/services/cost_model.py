"""
Cost model: how much the owner and each guest pay for an activity.

Pure functions with no database access. The resource-unit count is whatever
the owner reserved; it is never derived from headcount here.
"""
from decimal import Decimal
from app.core.utils import round2


class CostBreakdown:
    """Result of a cost computation."""

    def __init__(
        self,
        resource_units: int,
        guest_count: int,
        owner_total: Decimal,
        shared_pool_total: Decimal,
        per_guest_amount: Decimal
    ):
        self.resource_units = resource_units
        self.guest_count = guest_count
        self.owner_total = owner_total
        self.shared_pool_total = shared_pool_total
        self.per_guest_amount = per_guest_amount

    @property
    def collected_total(self) -> Decimal:
        """What the guests pay in sum; may drift from the pool by half a cent per guest."""
        return self.per_guest_amount * self.guest_count

    @property
    def rounding_drift(self) -> Decimal:
        return self.collected_total - self.shared_pool_total if self.guest_count else Decimal("0.00")


def compute_cost(
    resource_units: int,
    owner_rate_per_unit: Decimal,
    shared_pool_rate_per_unit: Decimal,
    guest_count: int
) -> CostBreakdown:
    """
    Compute owner total, shared pool total and per-guest amount.

    Args:
        resource_units: Units reserved by the owner (e.g. courts booked)
        owner_rate_per_unit: Owner's fixed share per unit
        shared_pool_rate_per_unit: Amount per unit split across guests
        guest_count: Non-owner committed participants

    Returns:
        CostBreakdown; per_guest_amount is 0.00 when there are no guests.
    """
    if resource_units < 0:
        raise ValueError("resource_units cannot be negative")
    if guest_count < 0:
        raise ValueError("guest_count cannot be negative")

    owner_total = round2(Decimal(owner_rate_per_unit) * resource_units)
    shared_pool_total = round2(Decimal(shared_pool_rate_per_unit) * resource_units)
    if guest_count > 0:
        per_guest_amount = round2(shared_pool_total / guest_count)
    else:
        per_guest_amount = Decimal("0.00")

    return CostBreakdown(
        resource_units=resource_units,
        guest_count=guest_count,
        owner_total=owner_total,
        shared_pool_total=shared_pool_total,
        per_guest_amount=per_guest_amount
    )
