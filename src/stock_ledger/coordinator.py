"""Keep each product's cached stock in step with the activity ledger.

The ledger write and the stock write go to two stores that share no
transaction. Every mutation therefore runs as a short saga:

1. validate the request (no store is touched when this fails);
2. write the ledger;
3. register a :class:`Compensation` that undoes step 2;
4. move the stock through the product store's atomic clamped add.

When step 4 fails the compensation runs and the caller receives a
:class:`~stock_ledger.errors.StockConsistencyError` chained from the original
failure. A compensation that fails in turn is logged and reported to the
data-quality sink; it never replaces the original error.

The sequence is not atomic. Concurrent writers can still interleave between
the ledger write and the stock step, and the update path recomputes stock
from the ledger before adding the difference, so a concurrent movement on
the same product may be counted twice or lost until the next resync.
:func:`find_stock_discrepancies` lists products whose counter drifted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Mapping

from . import log
from .aggregation import compute_stock_from_activities, sort_by_date_desc
from .constants import DEFAULT_RECENT_LIMIT, ActivityType, SignalKind
from .domain import (
    ZERO,
    Activity,
    ActivityCommand,
    ActivityPatch,
    DataQualitySignal,
    StockDiscrepancy,
)
from .errors import NotFoundError, StockConsistencyError
from .validation import validate_activity_update, validate_new_activity

if TYPE_CHECKING:
    from .core_logic import RuntimeContext


@dataclass(frozen=True)
class Compensation:
    """Undo step registered right after a ledger write.

    Attributes:
        description: Human readable summary used in log lines.
        action: Coroutine factory performing the compensating write.
        failure_kind: Signal reported when ``action`` raises.
        attributes: Context attached to that signal.
    """

    description: str
    action: Callable[[], Awaitable[Any]]
    failure_kind: SignalKind
    attributes: Mapping[str, Any] = field(default_factory=dict)


async def run_compensation(context: "RuntimeContext", compensation: Compensation) -> bool:
    """Execute ``compensation``; return ``False`` when it could not be applied."""

    try:
        await compensation.action()
    except Exception as exc:
        message = (
            f"Compensation failed ({compensation.description}): {exc}. "
            "Ledger and stock may now disagree."
        )
        log.error(message)
        context.sink.emit(
            DataQualitySignal(
                kind=compensation.failure_kind,
                message=message,
                attributes={**compensation.attributes, "error": str(exc)},
            )
        )
        return False

    log.info("Compensation applied: %s", compensation.description)
    return True


def _report_negative_stock(
    context: "RuntimeContext", product_id: str, current: Decimal, expected: Decimal
) -> None:
    context.sink.emit(
        DataQualitySignal(
            kind=SignalKind.NEGATIVE_STOCK,
            message=(
                f"Stock would go negative for product {product_id}: current stock {current}, "
                f"expected {expected}. Stock will be clamped to 0."
            ),
            attributes={"product_id": product_id, "current": current, "expected": expected},
        )
    )


async def _require_product(context: "RuntimeContext", product_id: str):
    product = await context.products.get_by_id(product_id)
    if product is None:
        raise NotFoundError("Product", product_id)
    return product


def moves_stock(activity: Activity) -> bool:
    """Whether creating ``activity`` touches its product's cached stock."""

    return (
        bool(activity.product_id)
        and activity.activity_type != ActivityType.OTHER
        and activity.quantity != 0
    )


def affects_stock(existing: Activity, patch: ActivityPatch) -> bool:
    """Whether applying ``patch`` can change any product's stock."""

    quantity_changed = "quantity" in patch and patch["quantity"] != existing.quantity
    product_changed = "product_id" in patch and patch["product_id"] != existing.product_id
    type_changed = patch.get("activity_type") is not None and patch["activity_type"] != existing.activity_type
    return quantity_changed or product_changed or type_changed


async def _apply_movement(context: "RuntimeContext", activity: Activity) -> None:
    product = await _require_product(context, activity.product_id)
    expected = product.stock + activity.quantity
    if expected < 0:
        _report_negative_stock(context, product.product_id, product.stock, expected)
    new_stock = await context.products.update_stock_atomically(product.product_id, activity.quantity)
    log.info("Stock for product '%s' is now %s", product.product_id, new_stock)


async def _resync_product(context: "RuntimeContext", product_id: str) -> None:
    ledger = await compute_stock_from_activities(context, product_id)
    recomputed = ledger.get(product_id, ZERO)
    product = await _require_product(context, product_id)
    if recomputed < 0:
        _report_negative_stock(context, product_id, product.stock, recomputed)
    delta = recomputed - product.stock
    if delta != 0:
        new_stock = await context.products.update_stock_atomically(product_id, delta)
        log.info("Resynced stock for product '%s' by %s to %s", product_id, delta, new_stock)


async def add_activity(context: "RuntimeContext", command: ActivityCommand) -> Activity:
    """Validate, record an activity and apply its stock movement.

    The stock step only runs for activities with a product, a type other
    than ``OTHER`` and a non-zero quantity. If that step fails the new
    activity is deleted again.

    Args:
        context (RuntimeContext): Stores and sink to operate on.
        command (ActivityCommand): What to record.

    Returns:
        Activity: The stored activity, including its generated identifier.

    Raises:
        ValidationError: If the command breaks a rule; nothing was written.
        StockConsistencyError: If the stock step failed after the activity was
            recorded. The activity has been deleted unless that delete failed
            too, in which case an ``ORPHANED_ACTIVITY`` signal was emitted.
    """

    command = validate_new_activity(command)
    activity = await context.activities.create(command)
    log.info(
        "Recorded %s activity '%s' for product '%s'",
        activity.activity_type.value,
        activity.activity_id,
        activity.product_id,
    )

    if not moves_stock(activity):
        return activity

    compensation = Compensation(
        description=f"delete activity {activity.activity_id}",
        action=lambda: context.activities.delete(activity.activity_id),
        failure_kind=SignalKind.ORPHANED_ACTIVITY,
        attributes={"activity_id": activity.activity_id, "product_id": activity.product_id},
    )
    try:
        await _apply_movement(context, activity)
    except Exception as exc:
        log.error("Stock update failed for activity '%s': %s", activity.activity_id, exc)
        await run_compensation(context, compensation)
        raise StockConsistencyError(exc, activity_id=activity.activity_id) from exc

    return activity


async def update_activity(context: "RuntimeContext", activity_id: str, patch: ActivityPatch) -> Activity:
    """Apply a partial update and resync every product it touches.

    Stock is recomputed from the ledger for the old and the new product
    whenever the quantity, the product or the type changed; the difference to
    the cached counter goes through the atomic add. If any of that fails,
    the fields named in ``patch`` are written back to their previous values.

    Args:
        context (RuntimeContext): Stores and sink to operate on.
        activity_id (str): Activity to modify.
        patch (ActivityPatch): Fields to change. A field set to ``None`` is
            cleared; a missing field is left alone.

    Returns:
        Activity: The activity as stored after the update.

    Raises:
        NotFoundError: If ``activity_id`` is unknown.
        ValidationError: If the merged activity breaks a rule.
        StockConsistencyError: If resyncing stock failed after the update.
    """

    existing = await context.activities.get_by_id(activity_id)
    if existing is None:
        raise NotFoundError("Activity", activity_id)

    validate_activity_update(existing, patch)
    patch = patch.normalized()
    stock_affected = affects_stock(existing, patch)

    updated = await context.activities.update(activity_id, patch)
    log.info("Updated activity '%s' fields: %s", activity_id, ", ".join(patch))

    if not stock_affected:
        return updated

    affected: Dict[str, None] = {}
    for product_id in (existing.product_id, updated.product_id):
        if product_id:
            affected[product_id] = None

    revert = patch.revert_from(existing)
    compensation = Compensation(
        description=f"revert activity {activity_id} fields {', '.join(revert)}",
        action=lambda: context.activities.update(activity_id, revert),
        failure_kind=SignalKind.UNREVERTED_UPDATE,
        attributes={"activity_id": activity_id, "fields": tuple(revert)},
    )
    try:
        for product_id in affected:
            await _resync_product(context, product_id)
    except Exception as exc:
        log.error("Stock resync failed for activity '%s': %s", activity_id, exc)
        await run_compensation(context, compensation)
        raise StockConsistencyError(exc, activity_id=activity_id) from exc

    return updated


async def get_activity(context: "RuntimeContext", activity_id: str) -> Activity:
    activity = await context.activities.get_by_id(activity_id)
    if activity is None:
        raise NotFoundError("Activity", activity_id)
    return activity


async def list_activities(context: "RuntimeContext") -> List[Activity]:
    return await context.activities.list()


async def list_recent_activities(context: "RuntimeContext", limit: int = DEFAULT_RECENT_LIMIT) -> List[Activity]:
    """Return the ``limit`` most recent activities, newest first."""

    return sort_by_date_desc(await context.activities.list())[: max(0, limit)]


async def find_stock_discrepancies(context: "RuntimeContext") -> List[StockDiscrepancy]:
    """List products whose cached stock differs from the clamped ledger sum.

    Read-only. A reconciliation job can apply each ``delta`` through the
    product store's atomic add.
    """

    ledger = await compute_stock_from_activities(context)
    discrepancies = []
    for product in await context.products.list():
        discrepancy = StockDiscrepancy(
            product_id=product.product_id,
            cached_stock=product.stock,
            ledger_stock=ledger.get(product.product_id, ZERO),
        )
        if discrepancy.delta != 0:
            discrepancies.append(discrepancy)
    log.debug("Found %d stock discrepancies", len(discrepancies))
    return discrepancies


__all__ = [
    "Compensation",
    "run_compensation",
    "moves_stock",
    "affects_stock",
    "add_activity",
    "update_activity",
    "get_activity",
    "list_activities",
    "list_recent_activities",
    "find_stock_discrepancies",
]
