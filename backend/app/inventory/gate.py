"""
Precondition checks shared by every mutating operation.

Checks return a GateResult instead of raising; callers decide when a failed
result becomes an exception (`raise_for_failure`). Only infrastructure errors
escape from here, never domain conditions.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Optional, Tuple

from .errors import InsufficientStock, InvalidQuantity, InvalidState, SameLocation, ValidationError
from .models import TransferEvent, TransferStatus


TRANSITIONS: Dict[Tuple[TransferStatus, TransferEvent], TransferStatus] = {
    (TransferStatus.PENDING, TransferEvent.APPROVE): TransferStatus.IN_TRANSIT,
    (TransferStatus.PENDING, TransferEvent.REJECT): TransferStatus.CANCELLED,
    (TransferStatus.IN_TRANSIT, TransferEvent.RECEIVE): TransferStatus.RECEIVED,
}


@dataclass(frozen=True)
class GateResult:
    ok: bool
    code: Optional[str] = None
    detail: Optional[str] = None
    context: dict = field(default_factory=dict)

    def raise_for_failure(self) -> None:
        if self.ok:
            return
        ctx = self.context
        if self.code == "insufficient_stock":
            raise InsufficientStock(ctx["item_id"], ctx.get("location_id"), ctx["requested"], ctx["available"])
        if self.code == "same_location":
            raise SameLocation(ctx["location_id"])
        if self.code == "invalid_quantity":
            raise InvalidQuantity(ctx.get("quantity"), detail=self.detail)
        if self.code == "invalid_state":
            raise InvalidState(ctx["record_id"], ctx["status"], ctx["event"])
        raise ValidationError(self.detail or "validation failed", **ctx)


PASS = GateResult(ok=True)


def check_positive(quantity: Decimal, *, label: str = "quantity") -> GateResult:
    if quantity is None or quantity <= 0:
        return GateResult(
            ok=False,
            code="invalid_quantity",
            detail=f"{label} must be > 0 (got {quantity})",
            context={"quantity": quantity},
        )
    return PASS


def check_nonzero(delta: Decimal, *, label: str = "adjustment") -> GateResult:
    if delta is None or delta == 0:
        return GateResult(
            ok=False,
            code="invalid_quantity",
            detail=f"{label} must be non-zero (got {delta})",
            context={"quantity": delta},
        )
    return PASS


def check_sufficient(requested: Decimal, available: Decimal, *, item_id: str, location_id: Optional[str]) -> GateResult:
    if requested > available:
        return GateResult(
            ok=False,
            code="insufficient_stock",
            detail=f"insufficient stock for item {item_id} at location {location_id}: requested {requested}, available {available}",
            context={"item_id": item_id, "location_id": location_id, "requested": requested, "available": available},
        )
    return PASS


def check_distinct(source_id: str, destination_id: str) -> GateResult:
    if source_id == destination_id:
        return GateResult(
            ok=False,
            code="same_location",
            detail=f"source and destination must differ (both are {source_id})",
            context={"location_id": source_id},
        )
    return PASS


def next_status(status: TransferStatus, event: TransferEvent) -> Optional[TransferStatus]:
    return TRANSITIONS.get((TransferStatus(status), TransferEvent(event)))


def check_transition(record_id: str, status: TransferStatus, event: TransferEvent) -> GateResult:
    if next_status(status, event) is None:
        st = TransferStatus(status).value
        ev = TransferEvent(event).value
        return GateResult(
            ok=False,
            code="invalid_state",
            detail=f"cannot {ev} {record_id}: status is {st}",
            context={"record_id": record_id, "status": st, "event": ev},
        )
    return PASS
