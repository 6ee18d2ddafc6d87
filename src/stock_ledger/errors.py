"""Exception taxonomy for the stock ledger."""

from __future__ import annotations

from typing import Optional


VALIDATION_ERROR_CODE = "VALIDATION_ERROR"


class ValidationError(ValueError):
    """Raised when a request is rejected before any store write happens."""

    code = VALIDATION_ERROR_CODE

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(LookupError):
    """Raised when a referenced activity or product does not exist."""

    def __init__(self, entity: str, identifier: object) -> None:
        super().__init__(f"{entity} with id {identifier} not found")
        self.entity = entity
        self.identifier = identifier


class StockConsistencyError(RuntimeError):
    """Raised when the stock step failed after the ledger was written.

    The coordinator always attempts a compensating write before raising this
    error. ``__cause__`` holds the original store failure.
    """

    def __init__(self, cause: BaseException, *, activity_id: Optional[str] = None) -> None:
        reason = str(cause) or type(cause).__name__
        super().__init__(f"Failed to update product stock for activity: {reason}")
        self.cause = cause
        self.activity_id = activity_id


class StoreError(Exception):
    """Base class for failures raised by store implementations."""


__all__ = [
    "VALIDATION_ERROR_CODE",
    "ValidationError",
    "NotFoundError",
    "StockConsistencyError",
    "StoreError",
]
