"""Domain records for the activity ledger, the product catalog and reports.

Every record is an immutable dataclass. Numeric values are held as
:class:`~decimal.Decimal` once they have passed validation, mirroring the way
the workbook layer stores them.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from decimal import Decimal
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional

from .constants import ActivityType, ProductType, RevenuePeriod, SignalKind


ZERO = Decimal("0")

PATCHABLE_FIELDS: tuple[str, ...] = (
    "date",
    "activity_type",
    "product_id",
    "quantity",
    "amount",
    "note",
)
NUMERIC_FIELDS: tuple[str, ...] = ("quantity", "amount")


def to_decimal(value: Any) -> Decimal:
    """Convert an already validated number into a :class:`Decimal`."""

    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


@dataclass(frozen=True)
class Activity:
    """A single movement recorded in the ledger."""

    activity_id: str
    date: str
    activity_type: ActivityType
    product_id: Optional[str]
    quantity: Decimal
    amount: Decimal
    note: Optional[str] = None


@dataclass(frozen=True)
class ActivityCommand:
    """Caller intent for appending a new activity to the ledger."""

    date: str
    activity_type: ActivityType
    quantity: Decimal
    amount: Decimal
    product_id: Optional[str] = None
    note: Optional[str] = None

    def normalized(self) -> "ActivityCommand":
        """Return a copy with enum and decimal values coerced."""

        return replace(
            self,
            activity_type=ActivityType(self.activity_type),
            quantity=to_decimal(self.quantity),
            amount=to_decimal(self.amount),
        )


class ActivityPatch(Mapping[str, Any]):
    """Partial activity update that records which fields were supplied.

    A field that is present with ``None`` means "clear this field", while a
    field that is absent means "leave unchanged". The distinction matters for
    ``product_id``: removing it from a sale must be rejected, whereas simply
    not mentioning it is fine.

    >>> patch = ActivityPatch(quantity=-3, note=None)
    >>> "note" in patch, "product_id" in patch
    (True, False)
    """

    __slots__ = ("_fields",)

    def __init__(self, fields: Optional[Mapping[str, Any]] = None, **kwargs: Any) -> None:
        merged: Dict[str, Any] = dict(fields or {})
        merged.update(kwargs)
        unknown = sorted(set(merged) - set(PATCHABLE_FIELDS))
        if unknown:
            raise ValueError(f"Unknown activity field(s): {', '.join(unknown)}")
        self._fields = MappingProxyType(merged)

    def __getitem__(self, key: str) -> Any:
        return self._fields[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._fields)

    def __len__(self) -> int:
        return len(self._fields)

    def __repr__(self) -> str:
        body = ", ".join(f"{name}={value!r}" for name, value in self._fields.items())
        return f"ActivityPatch({body})"

    def apply_to(self, activity: Activity) -> Activity:
        """Merge the supplied fields over ``activity``."""

        return replace(activity, **dict(self._fields))

    def revert_from(self, activity: Activity) -> "ActivityPatch":
        """Build the narrow patch restoring ``activity``'s values for our fields."""

        return ActivityPatch({name: getattr(activity, name) for name in self._fields})

    def normalized(self) -> "ActivityPatch":
        """Return a copy with enum and decimal values coerced."""

        values = dict(self._fields)
        if values.get("activity_type") is not None:
            values["activity_type"] = ActivityType(values["activity_type"])
        for name in NUMERIC_FIELDS:
            if values.get(name) is not None:
                values[name] = to_decimal(values[name])
        return ActivityPatch(values)


@dataclass(frozen=True)
class Product:
    """Catalog entry owning the cached stock counter."""

    product_id: str
    unit_cost: Decimal
    sale_price: Decimal
    stock: Decimal
    model_id: Optional[str] = None
    coloris_id: Optional[str] = None
    weight: Optional[Decimal] = None
    name: Optional[str] = None


@dataclass(frozen=True)
class ProductModel:
    model_id: str
    product_type: ProductType
    name: str


@dataclass(frozen=True)
class ProductColoris:
    coloris_id: str
    model_id: str
    coloris: str


@dataclass(frozen=True)
class MonthlyCost:
    """Indirect costs booked for one ``YYYY-MM`` month."""

    month: str
    shipping_cost: Decimal = ZERO
    marketing_cost: Decimal = ZERO
    overhead_cost: Decimal = ZERO
    cost_id: Optional[str] = None


@dataclass(frozen=True)
class CostTotals:
    """Sum of each cost category over a range of months."""

    shipping_cost: Decimal = ZERO
    marketing_cost: Decimal = ZERO
    overhead_cost: Decimal = ZERO

    @property
    def indirect_costs(self) -> Decimal:
        return self.marketing_cost + self.overhead_cost

    @property
    def total(self) -> Decimal:
        return self.shipping_cost + self.indirect_costs


@dataclass(frozen=True)
class PeriodStatistics:
    period: str
    profit: Decimal
    total_sales: Decimal
    total_creations: int


@dataclass(frozen=True)
class ProductMargin:
    product_id: str
    sales_count: int
    total_revenue: Decimal
    total_cost: Decimal
    profit: Decimal
    margin_percentage: Decimal


@dataclass(frozen=True)
class BusinessStatistics:
    start_date: Optional[str]
    end_date: Optional[str]
    total_profit: Decimal
    total_sales: Decimal
    total_creations: int
    product_margins: List[ProductMargin] = field(default_factory=list)


@dataclass(frozen=True)
class RevenueData:
    """Revenue, margins and net result for a reporting window."""

    period: RevenuePeriod
    start_date: str
    end_date: str
    total_revenue: Decimal
    material_costs: Decimal
    gross_margin: Decimal
    gross_margin_rate: Decimal
    shipping_cost: Decimal
    marketing_cost: Decimal
    overhead_cost: Decimal
    total_indirect_costs: Decimal
    net_result: Decimal
    net_margin_rate: Decimal


@dataclass(frozen=True)
class PaginatedActivities:
    activities: List[Activity]
    total: int
    page: int
    page_size: int
    total_pages: int


@dataclass(frozen=True)
class StockDiscrepancy:
    """Product whose cached stock disagrees with its ledger sum."""

    product_id: str
    cached_stock: Decimal
    ledger_stock: Decimal

    @property
    def expected_stock(self) -> Decimal:
        return max(ZERO, self.ledger_stock)

    @property
    def delta(self) -> Decimal:
        return self.expected_stock - self.cached_stock


@dataclass(frozen=True)
class DataQualitySignal:
    """Structured observation handed to the data-quality sink."""

    kind: SignalKind
    message: str
    attributes: Mapping[str, Any] = field(default_factory=dict)
