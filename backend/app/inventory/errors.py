from __future__ import annotations

from decimal import Decimal
from typing import Optional


class InventoryError(Exception):
    """Base class for every error the inventory engine raises on purpose."""

    code = "inventory_error"

    def __init__(self, detail: str, **context):
        super().__init__(detail)
        self.detail = detail
        self.context = context

    def to_dict(self) -> dict:
        return {"code": self.code, "detail": self.detail, **{k: v for k, v in self.context.items() if v is not None}}


# Rejected before any mutation.
class ValidationError(InventoryError):
    code = "validation_error"


class InsufficientStock(ValidationError):
    code = "insufficient_stock"

    def __init__(self, item_id: str, location_id: Optional[str], requested: Decimal, available: Decimal, detail: Optional[str] = None):
        if detail is None:
            detail = f"insufficient stock for item {item_id} at location {location_id}: requested {requested}, available {available}"
        super().__init__(detail, item_id=item_id, location_id=location_id, requested=requested, available=available)
        self.item_id = item_id
        self.location_id = location_id
        self.requested = requested
        self.available = available


class SameLocation(ValidationError):
    code = "same_location"

    def __init__(self, location_id: str):
        super().__init__(f"source and destination must differ (both are {location_id})", location_id=location_id)
        self.location_id = location_id


class InvalidQuantity(ValidationError):
    code = "invalid_quantity"

    def __init__(self, quantity, detail: Optional[str] = None):
        super().__init__(detail or f"quantity must be > 0 (got {quantity})", quantity=quantity)
        self.quantity = quantity


# Operation illegal for the current record status. No mutation.
class StateError(InventoryError):
    code = "state_error"


class InvalidState(StateError):
    code = "invalid_state"

    def __init__(self, record_id: str, status: str, event: str, detail: Optional[str] = None):
        if detail is None:
            detail = f"cannot {event} {record_id}: status is {status}"
        super().__init__(detail, record_id=record_id, status=status, event=event)
        self.record_id = record_id
        self.status = status
        self.event = event


class NotFound(InventoryError):
    code = "not_found"


class TransferNotFound(NotFound):
    code = "transfer_not_found"

    def __init__(self, transfer_id: str):
        super().__init__(f"transfer {transfer_id} not found", transfer_id=transfer_id)
        self.transfer_id = transfer_id


class ItemNotFound(NotFound):
    code = "item_not_found"

    def __init__(self, item_id: str):
        super().__init__(f"item {item_id} not found", item_id=item_id)
        self.item_id = item_id


class ConcurrencyConflict(InventoryError):
    code = "concurrency_conflict"
    retryable = True

    def __init__(self, item_id: str, location_id: str, attempts: int):
        super().__init__(
            f"concurrent update on item {item_id} at location {location_id}; gave up after {attempts} attempts",
            item_id=item_id,
            location_id=location_id,
            attempts=attempts,
        )
        self.attempts = attempts

    def to_dict(self) -> dict:
        return {**super().to_dict(), "retryable": True}


class Fault(InventoryError):
    """The backing store could not be reached; the operation in flight did not commit."""

    code = "store_unavailable"
