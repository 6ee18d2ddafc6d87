"""Runtime wiring and catalog use cases for the stock ledger.

This module assembles the :class:`RuntimeContext` every operation receives
(stores, data-quality sink, loaded settings) and hosts the product use cases.
Activity mutations live in :mod:`stock_ledger.coordinator` and read-only
reports in :mod:`stock_ledger.aggregation`.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from decimal import Decimal
from pathlib import Path
from typing import Any, List, Mapping, Optional

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import DEFAULT_LOW_STOCK_THRESHOLD, EXPECTED_SCHEMA_VERSION
from .domain import Product, to_decimal
from .errors import NotFoundError, ValidationError
from .ports import ActivityStore, CostStore, DataQualitySink, LoggingSink, ProductStore
from .validation import validate_number


PRODUCT_VALIDATION_FAILED = "Product validation failed"


@dataclass(frozen=True)
class RuntimeContext:
    """Bundle of collaborators handed to every use case.

    ``settings`` and ``workbook`` are only populated when the context was
    loaded from ``config.ini``; tests usually build a context from store
    doubles alone.
    """

    activities: ActivityStore
    products: ProductStore
    costs: CostStore
    sink: DataQualitySink = field(default_factory=LoggingSink)
    settings: Optional[data_manager.ConfigSettings] = None
    workbook: Optional[Workbook] = field(default=None, repr=False, compare=False)

    @property
    def low_stock_threshold(self) -> int:
        if self.settings is None:
            return DEFAULT_LOW_STOCK_THRESHOLD
        return self.settings.low_stock_threshold


def build_workbook_context(
    workbook: Workbook,
    settings: Optional[data_manager.ConfigSettings] = None,
    *,
    sink: Optional[DataQualitySink] = None,
) -> RuntimeContext:
    """Wrap ``workbook`` with the workbook-backed store adapters."""

    return RuntimeContext(
        activities=data_manager.WorkbookActivityStore(workbook),
        products=data_manager.WorkbookProductStore(workbook),
        costs=data_manager.WorkbookCostStore(workbook),
        sink=sink or LoggingSink(),
        settings=settings,
        workbook=workbook,
    )


def load_runtime_context(
    config_path: Optional[Path] = None,
    *,
    sink: Optional[DataQualitySink] = None,
) -> RuntimeContext:
    """Load configuration settings and a live workbook.

    The helper resolves ``config.ini``, parses the settings and opens the
    Excel workbook holding the ledger. A relative ``DataFile`` is resolved
    against the directory that contains the configuration file.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.
        sink (DataQualitySink | None): Receiver for data-quality signals.
            Defaults to :class:`~stock_ledger.ports.LoggingSink`.

    Returns:
        RuntimeContext: Context whose stores all share the opened workbook.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return build_workbook_context(workbook, settings, sink=sink)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Refuse to work on a workbook declared with another schema version.

    Raises:
        RuntimeError: If the configured schema version does not match
            ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings is None:
        return
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Save the workbook behind ``context`` to its configured location.

    Raises:
        RuntimeError: If the context was not loaded from a configuration file.
    """
    if context.workbook is None or context.settings is None:
        raise RuntimeError("Context has no workbook to persist")
    data_manager.save_workbook(context.workbook, context.settings.data_file)
    log.info("Saved workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reopen the workbook from disk and return a context over fresh stores.

    Unsaved changes held by ``context`` are discarded.
    """
    if context.settings is None:
        raise RuntimeError("Context has no workbook to refresh")
    workbook = data_manager.open_workbook(context.settings.data_file)
    log.debug("Reloaded workbook '%s'", context.settings.data_file)
    return build_workbook_context(workbook, context.settings, sink=context.sink)


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------


def is_valid_product(product: Product) -> bool:
    return product.unit_cost > 0 and product.sale_price > 0 and product.stock >= 0


def _coerce_product(product: Product) -> Product:
    for name in ("unit_cost", "sale_price", "stock"):
        validate_number(getattr(product, name), name)
    weight = product.weight
    if weight is not None:
        validate_number(weight, "weight")
        weight = to_decimal(weight)
    return replace(
        product,
        unit_cost=to_decimal(product.unit_cost),
        sale_price=to_decimal(product.sale_price),
        stock=to_decimal(product.stock),
        weight=weight,
    )


async def list_products(context: RuntimeContext) -> List[Product]:
    return await context.products.list()


async def list_low_stock_products(
    context: RuntimeContext, threshold: Optional[Decimal] = None
) -> List[Product]:
    """Return products whose stock is strictly below ``threshold``.

    When ``threshold`` is omitted the configured ``LowStockThreshold`` (5 by
    default) applies.
    """
    limit = context.low_stock_threshold if threshold is None else threshold
    products = await context.products.list()
    low = [product for product in products if product.stock < limit]
    log.debug("%d of %d products below stock threshold %s", len(low), len(products), limit)
    return low


async def get_product(context: RuntimeContext, product_id: str) -> Product:
    """Resolve a product by identifier.

    Raises:
        NotFoundError: If the product store has no such product.
    """
    product = await context.products.get_by_id(product_id)
    if product is None:
        log.debug("Product lookup failed for id '%s'", product_id)
        raise NotFoundError("Product", product_id)
    return product


async def create_product(context: RuntimeContext, product: Product) -> Product:
    """Validate and store a new catalog entry.

    Unit cost and sale price must be strictly positive and the opening stock
    non-negative. An empty ``product_id`` lets the store assign one.

    Raises:
        ValidationError: If any numeric field is invalid.
    """
    candidate = _coerce_product(product)
    if not is_valid_product(candidate):
        log.debug("Rejected product %r", candidate)
        raise ValidationError(PRODUCT_VALIDATION_FAILED)
    created = await context.products.create(candidate)
    log.info("Created product '%s'", created.product_id)
    return created


async def update_product(context: RuntimeContext, product_id: str, fields: Mapping[str, Any]) -> Product:
    """Merge ``fields`` over the stored product, validate, then persist them.

    ``stock`` is accepted here for manual corrections of the cached counter;
    routine stock movements go through the activity coordinator.

    Raises:
        NotFoundError: If the product does not exist.
        ValidationError: If the merged product is invalid.
    """
    if "product_id" in fields:
        raise ValidationError("product_id cannot be changed")
    existing = await get_product(context, product_id)
    try:
        merged = _coerce_product(replace(existing, **dict(fields)))
    except TypeError as exc:
        raise ValidationError(f"Unknown product field: {exc}") from exc
    if not is_valid_product(merged):
        log.debug("Rejected update for product '%s'", product_id)
        raise ValidationError(PRODUCT_VALIDATION_FAILED)
    normalized = {name: getattr(merged, name) for name in fields}
    updated = await context.products.update(product_id, normalized)
    log.info("Updated product '%s' fields: %s", product_id, ", ".join(sorted(fields)))
    return updated


__all__ = [
    "RuntimeContext",
    "build_workbook_context",
    "load_runtime_context",
    "ensure_schema_version",
    "persist_context",
    "refresh_context",
    "is_valid_product",
    "list_products",
    "list_low_stock_products",
    "get_product",
    "create_product",
    "update_product",
]
