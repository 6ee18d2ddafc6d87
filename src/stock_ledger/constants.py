"""Enumerations shared across the stock ledger modules.

Keeps activity types, aggregation periods, sheet names and data-quality signal
kinds in one place so that the store adapters, the coordinator and the
command-line layer agree on the same identifiers.
"""

from __future__ import annotations

from enum import Enum


# Workbook schema version expected by the data layer.
EXPECTED_SCHEMA_VERSION = "2.0.0"

DEFAULT_PAGE_SIZE = 20
DEFAULT_LOW_STOCK_THRESHOLD = 5
DEFAULT_RECENT_LIMIT = 10


class ActivityType(str, Enum):
    """Enumerate the kinds of movement recorded in the activity ledger."""

    CREATION = "CREATION"
    SALE = "SALE"
    STOCK_CORRECTION = "STOCK_CORRECTION"
    OTHER = "OTHER"


# Activity types that must reference a product.
PRODUCT_BOUND_TYPES: frozenset[ActivityType] = frozenset(
    {ActivityType.SALE, ActivityType.STOCK_CORRECTION}
)


class ProductType(str, Enum):
    """Catalog families a product model belongs to."""

    SAC_BANANE = "SAC_BANANE"
    POCHETTE_ORDINATEUR = "POCHETTE_ORDINATEUR"
    TROUSSE_TOILETTE = "TROUSSE_TOILETTE"
    POCHETTE_VOLANTS = "POCHETTE_VOLANTS"
    TROUSSE_ZIPPEE = "TROUSSE_ZIPPEE"
    ACCESSOIRES_DIVERS = "ACCESSOIRES_DIVERS"


class StatisticsPeriod(str, Enum):
    """Bucket granularity for period statistics."""

    DAILY = "DAILY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class RevenuePeriod(str, Enum):
    """Reporting window a revenue computation was requested for."""

    MONTH = "MONTH"
    QUARTER = "QUARTER"
    YEAR = "YEAR"
    CUSTOM = "CUSTOM"


class CostField(str, Enum):
    """Indirect cost categories stored per month."""

    SHIPPING = "shipping"
    MARKETING = "marketing"
    OVERHEAD = "overhead"


class SignalKind(str, Enum):
    """Data-quality conditions reported to the observability sink."""

    NEGATIVE_STOCK = "NEGATIVE_STOCK"
    ORPHANED_ACTIVITY = "ORPHANED_ACTIVITY"
    UNREVERTED_UPDATE = "UNREVERTED_UPDATE"
    ORPHANED_SALE = "ORPHANED_SALE"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the data layer."""

    ACTIVITIES = "Activities"
    PRODUCTS = "Products"
    MODELS = "Models"
    COLORIS = "Coloris"
    MONTHLY_COSTS = "MonthlyCosts"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_PAGE_SIZE",
    "DEFAULT_LOW_STOCK_THRESHOLD",
    "DEFAULT_RECENT_LIMIT",
    "ActivityType",
    "PRODUCT_BOUND_TYPES",
    "ProductType",
    "StatisticsPeriod",
    "RevenuePeriod",
    "CostField",
    "SignalKind",
    "SheetName",
]
