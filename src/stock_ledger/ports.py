"""Store contracts the consistency engine depends on.

Implementations live outside the core (see :mod:`stock_ledger.data_manager`
for the workbook-backed ones). Every method is a coroutine: each call is a
suspension point where other requests may touch the same records.
"""

from __future__ import annotations

from decimal import Decimal
from typing import List, Mapping, Optional, Protocol, Any

from . import log
from .constants import CostField, SignalKind
from .domain import (
    Activity,
    ActivityCommand,
    ActivityPatch,
    DataQualitySignal,
    MonthlyCost,
    Product,
    ProductColoris,
    ProductModel,
)


class ActivityStore(Protocol):
    """The ledger of activities."""

    async def create(self, command: ActivityCommand) -> Activity: ...

    async def get_by_id(self, activity_id: str) -> Optional[Activity]: ...

    async def update(self, activity_id: str, patch: ActivityPatch) -> Activity:
        """Apply only the fields present in ``patch``; ``None`` values clear."""
        ...

    async def delete(self, activity_id: str) -> None: ...

    async def list(self) -> List[Activity]: ...


class ProductStore(Protocol):
    """Catalog and cached stock counters."""

    async def get_by_id(self, product_id: str) -> Optional[Product]: ...

    async def list(self) -> List[Product]: ...

    async def create(self, product: Product) -> Product: ...

    async def update(self, product_id: str, fields: Mapping[str, Any]) -> Product: ...

    async def update_stock_atomically(self, product_id: str, delta: Decimal) -> Decimal:
        """Add ``delta`` to the stock, clamp the result at zero and return it.

        Must be a single linearizable step per product.
        """
        ...

    async def get_model_by_id(self, model_id: str) -> Optional[ProductModel]: ...

    async def get_coloris_by_id(self, coloris_id: str) -> Optional[ProductColoris]: ...


class CostStore(Protocol):
    """Monthly indirect cost rows keyed by ``YYYY-MM``."""

    async def get_monthly_cost(self, month: str) -> Optional[MonthlyCost]: ...

    async def create_or_update_monthly_cost(self, cost: MonthlyCost) -> MonthlyCost: ...

    async def update_monthly_cost_field(self, month: str, field: CostField, value: Decimal) -> MonthlyCost: ...


class DataQualitySink(Protocol):
    """Receives non-fatal data-quality observations."""

    def emit(self, signal: DataQualitySignal) -> None: ...


_SIGNAL_LEVELS = {
    SignalKind.NEGATIVE_STOCK: "warning",
    SignalKind.ORPHANED_SALE: "warning",
    SignalKind.ORPHANED_ACTIVITY: "error",
    SignalKind.UNREVERTED_UPDATE: "error",
}


class LoggingSink:
    """Default sink writing each signal to the package logger."""

    def emit(self, signal: DataQualitySignal) -> None:
        level = _SIGNAL_LEVELS.get(signal.kind, "warning")
        getattr(log, level)("[%s] %s", signal.kind.value, signal.message)


__all__ = [
    "ActivityStore",
    "ProductStore",
    "CostStore",
    "DataQualitySink",
    "LoggingSink",
]
