"""Validation rules applied to activity mutations and report parameters.

All helpers are pure: they inspect their inputs and either return normally or
raise :class:`~stock_ledger.errors.ValidationError`. Nothing here touches a
store, so a rejected request never needs compensation.
"""

from __future__ import annotations

import math
import re
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from . import log
from .constants import PRODUCT_BOUND_TYPES, ActivityType
from .domain import Activity, ActivityCommand, ActivityPatch, NUMERIC_FIELDS
from .errors import ValidationError


ISO8601_PATTERN = re.compile(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d{3})?Z?")
MONTH_PATTERN = re.compile(r"\d{4}-(0[1-9]|1[0-2])")
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S"


def _reject(message: str) -> ValidationError:
    log.debug("Validation failed: %s", message)
    return ValidationError(message)


def is_valid_iso8601(value: Any) -> bool:
    """Return ``True`` for ``YYYY-MM-DDTHH:MM:SS[.mmm][Z]`` on a real calendar date.

    >>> is_valid_iso8601("2025-01-27T14:00:00.000Z")
    True
    >>> is_valid_iso8601("2025-02-30T00:00:00Z")
    False
    """

    if not isinstance(value, str) or ISO8601_PATTERN.fullmatch(value) is None:
        return False
    try:
        datetime.strptime(value[:19], TIMESTAMP_FORMAT)
    except ValueError:
        return False
    return True


def is_valid_month(value: Any) -> bool:
    """Return ``True`` for a ``YYYY-MM`` month key."""

    return isinstance(value, str) and MONTH_PATTERN.fullmatch(value) is not None


def validate_number(value: Any, field_name: str) -> None:
    """Reject NaN, infinities and anything that is not a real number."""

    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        raise _reject(f"{field_name} must be a valid number")
    if isinstance(value, Decimal):
        is_nan, is_infinite = value.is_nan(), value.is_infinite()
    elif isinstance(value, float):
        is_nan, is_infinite = math.isnan(value), math.isinf(value)
    else:
        is_nan = is_infinite = False
    if is_nan:
        raise _reject(f"{field_name} must be a valid number")
    if is_infinite:
        raise _reject(f"{field_name} must be a finite number")


def validate_activity_type(value: Any) -> ActivityType:
    try:
        return ActivityType(value)
    except ValueError:
        allowed = ", ".join(member.value for member in ActivityType)
        raise _reject(f"type must be one of: {allowed}") from None


def validate_date(value: Any, field_name: str = "date") -> None:
    if not value or not is_valid_iso8601(value):
        raise _reject(f"{field_name} must be a valid ISO 8601 string")


def validate_date_range(start_date: Optional[str], end_date: Optional[str]) -> None:
    """Check optional report bounds; ``None`` means unbounded."""

    if start_date is not None:
        validate_date(start_date, "start_date")
    if end_date is not None:
        validate_date(end_date, "end_date")


def require_product_for_type(activity_type: ActivityType, product_id: Optional[str]) -> None:
    if activity_type in PRODUCT_BOUND_TYPES and not product_id:
        raise _reject(f"productId is required for {activity_type.value} activity type")


def validate_new_activity(command: ActivityCommand) -> ActivityCommand:
    """Validate a creation request and return it with normalized values."""

    activity_type = validate_activity_type(command.activity_type)
    require_product_for_type(activity_type, command.product_id)
    validate_date(command.date)
    validate_number(command.quantity, "quantity")
    validate_number(command.amount, "amount")
    return command.normalized()


def validate_activity_update(existing: Activity, patch: ActivityPatch) -> Activity:
    """Validate ``patch`` against ``existing`` and return the merged activity.

    Clearing ``product_id`` on a sale or stock correction is reported as a
    removal rather than as a missing reference, so it is checked before the
    merged record.
    """

    if "activity_type" in patch:
        validate_activity_type(patch["activity_type"])

    if (
        "product_id" in patch
        and not patch["product_id"]
        and existing.activity_type in PRODUCT_BOUND_TYPES
    ):
        raise _reject(
            f"Cannot remove productId from {existing.activity_type.value} activity type"
        )

    merged_type = ActivityType(patch.get("activity_type", existing.activity_type))
    merged_product = patch["product_id"] if "product_id" in patch else existing.product_id
    require_product_for_type(merged_type, merged_product)

    if "date" in patch:
        validate_date(patch["date"])
    for name in NUMERIC_FIELDS:
        if name in patch:
            validate_number(patch[name], name)

    return patch.normalized().apply_to(existing)


__all__ = [
    "is_valid_iso8601",
    "is_valid_month",
    "validate_number",
    "validate_activity_type",
    "validate_date",
    "validate_date_range",
    "require_product_for_type",
    "validate_new_activity",
    "validate_activity_update",
]
