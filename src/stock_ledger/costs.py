"""Monthly indirect costs: lookups, range totals and write use cases.

Costs are booked per ``YYYY-MM`` month in three categories (shipping,
marketing, overhead). Revenue reports sum every month a date range touches;
a month without a row contributes nothing.
"""

from __future__ import annotations

from dataclasses import replace
from decimal import Decimal
from typing import TYPE_CHECKING, Any, List, Optional

from . import log
from .constants import CostField
from .domain import CostTotals, MonthlyCost, ZERO, to_decimal
from .errors import ValidationError
from .validation import is_valid_month, validate_number

if TYPE_CHECKING:
    from .core_logic import RuntimeContext


def months_in_range(start_date: str, end_date: str) -> List[str]:
    """List the ``YYYY-MM`` keys covered by two ISO-8601 dates, both inclusive.

    >>> months_in_range("2024-11-15T00:00:00Z", "2025-02-01T00:00:00Z")
    ['2024-11', '2024-12', '2025-01', '2025-02']
    """

    year, month = int(start_date[:4]), int(start_date[5:7])
    last_year, last_month = int(end_date[:4]), int(end_date[5:7])

    months = []
    while (year, month) <= (last_year, last_month):
        months.append(f"{year:04d}-{month:02d}")
        month += 1
        if month > 12:
            year, month = year + 1, 1
    return months


async def aggregate_monthly_costs(context: "RuntimeContext", start_date: str, end_date: str) -> CostTotals:
    """Sum each cost category over the months of ``[start_date, end_date]``."""

    shipping = marketing = overhead = ZERO
    months = months_in_range(start_date, end_date)
    for month in months:
        cost = await context.costs.get_monthly_cost(month)
        if cost is None:
            continue
        shipping += cost.shipping_cost or ZERO
        marketing += cost.marketing_cost or ZERO
        overhead += cost.overhead_cost or ZERO
    log.debug("Aggregated monthly costs over %d month(s)", len(months))
    return CostTotals(shipping_cost=shipping, marketing_cost=marketing, overhead_cost=overhead)


def _require_month(month: Any) -> None:
    if not is_valid_month(month):
        log.debug("Rejected month key %r", month)
        raise ValidationError(f'Invalid month format: {month}. Expected YYYY-MM format (e.g., "2025-01")')


def _cost_value(value: Any, field_name: str) -> Decimal:
    """Return ``value`` as a non-negative finite Decimal."""

    try:
        validate_number(value, field_name)
    except ValidationError:
        raise ValidationError(
            f"Invalid value for {field_name}: {value}. Must be a non-negative finite number (>= 0)"
        ) from None
    amount = to_decimal(value)
    if amount < 0:
        raise ValidationError(
            f"Invalid value for {field_name}: {value}. Must be a non-negative finite number (>= 0)"
        )
    return amount


async def get_monthly_cost(context: "RuntimeContext", month: str) -> Optional[MonthlyCost]:
    _require_month(month)
    return await context.costs.get_monthly_cost(month)


async def create_or_update_monthly_cost(context: "RuntimeContext", cost: MonthlyCost) -> MonthlyCost:
    """Validate all three categories and upsert the row for ``cost.month``.

    Raises:
        ValidationError: If the month key or any value is invalid.
    """

    _require_month(cost.month)
    normalized = replace(
        cost,
        shipping_cost=_cost_value(cost.shipping_cost, "shipping_cost"),
        marketing_cost=_cost_value(cost.marketing_cost, "marketing_cost"),
        overhead_cost=_cost_value(cost.overhead_cost, "overhead_cost"),
    )
    saved = await context.costs.create_or_update_monthly_cost(normalized)
    log.info("Saved monthly costs for %s", saved.month)
    return saved


async def update_monthly_cost_field(
    context: "RuntimeContext", month: str, field: CostField, value: Any
) -> MonthlyCost:
    """Set one cost category for ``month``, creating the row when needed.

    Raises:
        ValidationError: If the month, the field name or the value is invalid.
    """

    _require_month(month)
    try:
        field = CostField(field)
    except ValueError:
        allowed = ", ".join(f'"{member.value}"' for member in CostField)
        raise ValidationError(f"Invalid field name: {field}. Must be one of: {allowed}") from None
    amount = _cost_value(value, field.value)
    saved = await context.costs.update_monthly_cost_field(month, field, amount)
    log.info("Set %s cost for %s to %s", field.value, month, amount)
    return saved


__all__ = [
    "months_in_range",
    "aggregate_monthly_costs",
    "get_monthly_cost",
    "create_or_update_monthly_cost",
    "update_monthly_cost_field",
]
