"""Read-only reports derived from the activity ledger.

Every function pulls the full ledger (and, where prices are needed, the full
product list) from the stores in the runtime context and reduces it in memory.
Nothing here writes to a store. Date bounds are inclusive and compared as
ISO-8601 strings, which sort chronologically because every component is
zero-padded.

Sales whose product no longer exists are left out of profit and margin
figures. Each one is reported to the context's data-quality sink as an
``ORPHANED_SALE`` signal.
"""

from __future__ import annotations

import math
from collections import defaultdict
from decimal import Decimal
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Tuple

from . import log
from .constants import DEFAULT_PAGE_SIZE, ActivityType, RevenuePeriod, SignalKind, StatisticsPeriod
from .costs import aggregate_monthly_costs
from .domain import (
    ZERO,
    Activity,
    BusinessStatistics,
    DataQualitySignal,
    PaginatedActivities,
    PeriodStatistics,
    Product,
    ProductMargin,
    RevenueData,
)
from .validation import validate_date, validate_date_range

if TYPE_CHECKING:
    from .core_logic import RuntimeContext


HUNDRED = Decimal("100")


def filter_by_date_range(
    activities: Iterable[Activity],
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
) -> List[Activity]:
    """Keep activities dated within ``[start_date, end_date]``; ``None`` is unbounded."""

    return [
        activity
        for activity in activities
        if (start_date is None or activity.date >= start_date)
        and (end_date is None or activity.date <= end_date)
    ]


def sort_by_date_desc(activities: Iterable[Activity]) -> List[Activity]:
    return sorted(activities, key=lambda activity: activity.date, reverse=True)


def period_key(date: str, period: StatisticsPeriod) -> str:
    """Return the UTC calendar bucket for an ISO-8601 timestamp.

    >>> period_key("2025-03-09T23:30:00Z", StatisticsPeriod.MONTHLY)
    '2025-03'
    """

    period = StatisticsPeriod(period)
    if period is StatisticsPeriod.DAILY:
        return date[:10]
    if period is StatisticsPeriod.MONTHLY:
        return date[:7]
    return date[:4]


def _rate(numerator: Decimal, revenue: Decimal) -> Decimal:
    if revenue > 0:
        return numerator / revenue * HUNDRED
    return ZERO


async def _activities_in_range(
    context: "RuntimeContext", start_date: Optional[str], end_date: Optional[str]
) -> List[Activity]:
    validate_date_range(start_date, end_date)
    activities = await context.activities.list()
    filtered = filter_by_date_range(activities, start_date, end_date)
    log.debug("Selected %d of %d activities in range", len(filtered), len(activities))
    return filtered


async def _product_map(context: "RuntimeContext") -> Dict[str, Product]:
    return {product.product_id: product for product in await context.products.list()}


def _resolve_product(context: "RuntimeContext", sale: Activity, products: Dict[str, Product]) -> Optional[Product]:
    if not sale.product_id:
        return None
    product = products.get(sale.product_id)
    if product is None:
        context.sink.emit(
            DataQualitySignal(
                kind=SignalKind.ORPHANED_SALE,
                message=f"Sale {sale.activity_id} references missing product {sale.product_id}",
                attributes={"activity_id": sale.activity_id, "product_id": sale.product_id},
            )
        )
    return product


def _resolved_sales(
    context: "RuntimeContext", sales: Iterable[Activity], products: Dict[str, Product]
) -> List[Tuple[Activity, Product]]:
    pairs = []
    for sale in sales:
        product = _resolve_product(context, sale, products)
        if product is not None:
            pairs.append((sale, product))
    return pairs


def _sales(activities: Iterable[Activity]) -> List[Activity]:
    return [activity for activity in activities if activity.activity_type == ActivityType.SALE]


def _creation_count(activities: Iterable[Activity]) -> int:
    return sum(1 for activity in activities if activity.activity_type == ActivityType.CREATION)


def _sale_profit(sale: Activity, product: Product) -> Decimal:
    return (product.sale_price - product.unit_cost) * abs(sale.quantity)


def _margins(pairs: Iterable[Tuple[Activity, Product]]) -> List[ProductMargin]:
    totals: Dict[str, Dict[str, Decimal]] = {}
    for sale, product in pairs:
        entry = totals.setdefault(product.product_id, {"count": ZERO, "revenue": ZERO, "cost": ZERO})
        entry["count"] += 1
        entry["revenue"] += sale.amount
        entry["cost"] += product.unit_cost * abs(sale.quantity)

    margins = []
    for product_id, entry in totals.items():
        revenue = entry["revenue"]
        profit = revenue - entry["cost"]
        margins.append(
            ProductMargin(
                product_id=product_id,
                sales_count=int(entry["count"]),
                total_revenue=revenue,
                total_cost=entry["cost"],
                profit=profit,
                margin_percentage=profit / revenue * HUNDRED if revenue != 0 else ZERO,
            )
        )
    margins.sort(key=lambda margin: margin.profit, reverse=True)
    return margins


async def compute_stock_from_activities(
    context: "RuntimeContext", product_id: Optional[str] = None
) -> Dict[str, Decimal]:
    """Sum activity quantities per product, straight from the ledger.

    Every activity type that references a product contributes, including
    ``OTHER``. The sums are not clamped; callers compare them with the cached
    counters themselves.

    Args:
        context (RuntimeContext): Runtime context holding the activity store.
        product_id (str | None): Restrict the result to a single product.

    Returns:
        dict[str, Decimal]: Mapping of product id to summed quantity. A product
            without activities is absent from the mapping.
    """

    stock: Dict[str, Decimal] = defaultdict(lambda: ZERO)
    for activity in await context.activities.list():
        if not activity.product_id:
            continue
        if product_id is not None and activity.product_id != product_id:
            continue
        stock[activity.product_id] += activity.quantity
    log.debug("Computed ledger stock for %d products", len(stock))
    return dict(stock)


async def compute_profit(
    context: "RuntimeContext", start_date: Optional[str] = None, end_date: Optional[str] = None
) -> Decimal:
    """Return Σ (sale_price − unit_cost) × |quantity| over sales in range.

    Raises:
        ValidationError: If a date bound is not a valid ISO-8601 timestamp.
    """

    sales = _sales(await _activities_in_range(context, start_date, end_date))
    if not sales:
        return ZERO
    pairs = _resolved_sales(context, sales, await _product_map(context))
    return sum((_sale_profit(sale, product) for sale, product in pairs), ZERO)


async def compute_total_sales(
    context: "RuntimeContext", start_date: Optional[str] = None, end_date: Optional[str] = None
) -> Decimal:
    """Return the summed ``amount`` of sales in range."""

    sales = _sales(await _activities_in_range(context, start_date, end_date))
    return sum((sale.amount for sale in sales), ZERO)


async def compute_total_creations(
    context: "RuntimeContext", start_date: Optional[str] = None, end_date: Optional[str] = None
) -> int:
    return _creation_count(await _activities_in_range(context, start_date, end_date))


async def compute_profits_by_period(
    context: "RuntimeContext",
    period: StatisticsPeriod,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
) -> List[PeriodStatistics]:
    """Group profit, sales and creation counts into calendar buckets.

    Sales contribute profit and amount to the bucket of their date when their
    product resolves; creations add one to their bucket's count. Buckets are
    sorted ascending by key.

    Args:
        context (RuntimeContext): Runtime context holding the stores.
        period (StatisticsPeriod): ``DAILY`` (``YYYY-MM-DD``), ``MONTHLY``
            (``YYYY-MM``) or ``YEARLY`` (``YYYY``).
        start_date (str | None): Inclusive lower bound.
        end_date (str | None): Inclusive upper bound.

    Returns:
        list[PeriodStatistics]: One entry per bucket that saw at least one
            resolvable sale or one creation.

    Raises:
        ValidationError: If a date bound is invalid.
        ValueError: If ``period`` is not a :class:`StatisticsPeriod`.
    """

    period = StatisticsPeriod(period)
    activities = await _activities_in_range(context, start_date, end_date)
    sales = _sales(activities)
    products = await _product_map(context) if sales else {}

    buckets: Dict[str, Dict[str, Decimal]] = {}

    def bucket(key: str) -> Dict[str, Decimal]:
        return buckets.setdefault(key, {"profit": ZERO, "sales": ZERO, "creations": ZERO})

    for sale, product in _resolved_sales(context, sales, products):
        entry = bucket(period_key(sale.date, period))
        entry["profit"] += _sale_profit(sale, product)
        entry["sales"] += sale.amount

    for activity in activities:
        if activity.activity_type == ActivityType.CREATION:
            bucket(period_key(activity.date, period))["creations"] += 1

    return [
        PeriodStatistics(
            period=key,
            profit=entry["profit"],
            total_sales=entry["sales"],
            total_creations=int(entry["creations"]),
        )
        for key, entry in sorted(buckets.items())
    ]


async def compute_product_margins(
    context: "RuntimeContext", start_date: Optional[str] = None, end_date: Optional[str] = None
) -> List[ProductMargin]:
    """Per-product revenue, material cost, profit and margin, best first.

    ``margin_percentage`` is ``profit / total_revenue × 100`` and falls back to
    zero when the product earned nothing.
    """

    sales = _sales(await _activities_in_range(context, start_date, end_date))
    if not sales:
        return []
    return _margins(_resolved_sales(context, sales, await _product_map(context)))


async def compute_business_statistics(
    context: "RuntimeContext", start_date: Optional[str] = None, end_date: Optional[str] = None
) -> BusinessStatistics:
    """Headline totals and per-product margins from a single ledger read."""

    activities = await _activities_in_range(context, start_date, end_date)
    sales = _sales(activities)
    pairs = _resolved_sales(context, sales, await _product_map(context)) if sales else []
    return BusinessStatistics(
        start_date=start_date,
        end_date=end_date,
        total_profit=sum((_sale_profit(sale, product) for sale, product in pairs), ZERO),
        total_sales=sum((sale.amount for sale in sales), ZERO),
        total_creations=_creation_count(activities),
        product_margins=_margins(pairs),
    )


async def compute_revenue(
    context: "RuntimeContext",
    period: RevenuePeriod,
    start_date: str,
    end_date: str,
) -> RevenueData:
    """Revenue, gross margin and net result over ``[start_date, end_date]``.

    Total revenue counts every sale, including sales whose product is gone.
    Material costs only count sales with a known product. Indirect costs come
    from the monthly cost rows of every month the range touches.

    Raises:
        ValidationError: If either date is missing or invalid.
    """

    validate_date(start_date, "start_date")
    validate_date(end_date, "end_date")
    period = RevenuePeriod(period)

    sales = _sales(await _activities_in_range(context, start_date, end_date))
    products = await _product_map(context) if sales else {}

    total_revenue = ZERO
    material_costs = ZERO
    for sale in sales:
        total_revenue += sale.amount
        product = _resolve_product(context, sale, products)
        if product is not None:
            material_costs += product.unit_cost * abs(sale.quantity)

    gross_margin = total_revenue - material_costs
    costs = await aggregate_monthly_costs(context, start_date, end_date)
    net_result = gross_margin - costs.shipping_cost - costs.indirect_costs

    log.debug(
        "Revenue %s..%s: revenue=%s material=%s net=%s",
        start_date,
        end_date,
        total_revenue,
        material_costs,
        net_result,
    )
    return RevenueData(
        period=period,
        start_date=start_date,
        end_date=end_date,
        total_revenue=total_revenue,
        material_costs=material_costs,
        gross_margin=gross_margin,
        gross_margin_rate=_rate(gross_margin, total_revenue),
        shipping_cost=costs.shipping_cost,
        marketing_cost=costs.marketing_cost,
        overhead_cost=costs.overhead_cost,
        total_indirect_costs=costs.indirect_costs,
        net_result=net_result,
        net_margin_rate=_rate(net_result, total_revenue),
    )


async def list_activities_with_filters(
    context: "RuntimeContext",
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    activity_type: Optional[ActivityType] = None,
    product_id: Optional[str] = None,
) -> List[Activity]:
    """Return ledger entries matching every supplied filter, in store order."""

    activities = await _activities_in_range(context, start_date, end_date)
    if activity_type is not None:
        activity_type = ActivityType(activity_type)
        activities = [activity for activity in activities if activity.activity_type == activity_type]
    if product_id is not None:
        activities = [activity for activity in activities if activity.product_id == product_id]
    return activities


async def list_activities_paginated(
    context: "RuntimeContext",
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    activity_type: Optional[ActivityType] = None,
    product_id: Optional[str] = None,
    page: float = 1,
    page_size: float = DEFAULT_PAGE_SIZE,
) -> PaginatedActivities:
    """Filter, sort newest first and slice out one page.

    ``page`` and ``page_size`` are floored and raised to at least 1. A page
    past the end comes back empty but still reports the real totals.
    """

    page = max(1, math.floor(page))
    page_size = max(1, math.floor(page_size))

    matching = await list_activities_with_filters(context, start_date, end_date, activity_type, product_id)
    total = len(matching)
    if total == 0:
        return PaginatedActivities(activities=[], total=0, page=page, page_size=page_size, total_pages=0)

    total_pages = math.ceil(total / page_size)
    if page > total_pages:
        return PaginatedActivities(
            activities=[], total=total, page=page, page_size=page_size, total_pages=total_pages
        )

    start = (page - 1) * page_size
    return PaginatedActivities(
        activities=sort_by_date_desc(matching)[start : start + page_size],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=total_pages,
    )


__all__ = [
    "filter_by_date_range",
    "sort_by_date_desc",
    "period_key",
    "compute_stock_from_activities",
    "compute_profit",
    "compute_total_sales",
    "compute_total_creations",
    "compute_profits_by_period",
    "compute_product_margins",
    "compute_business_statistics",
    "compute_revenue",
    "list_activities_with_filters",
    "list_activities_paginated",
]
