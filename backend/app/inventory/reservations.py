"""
Order fulfillment: all-or-nothing material deduction through the bill of
materials, and its explicit inverse.

A reservation is recorded active in the same unit as its deduction, and
moves active -> rolled_back or active -> finalized exactly once. Only an active
reservation can be rolled back, so a second rollback finds nothing to
restore.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from ..jsonlog import json_log
from .errors import InsufficientStock, ValidationError
from .events import EventPublisher, safe_publish
from .gate import check_positive
from .ledger import StockLedger
from .models import (
    BOMLine,
    CellKey,
    DeductionLine,
    InsufficientMaterial,
    LowStockWarning,
    MaterialStock,
    OrderItem,
    Reservation,
    ReservationLine,
    ReservationStatus,
    RollbackResult,
    StockCell,
    StockValidationResult,
)
from .precision import ZERO
from .stores import BOMResolver, ReservationStore, utcnow


NOTHING_TO_RESTORE = "nothing to restore"

OrderItemLike = Union[OrderItem, Mapping]
MaterialStockLike = Union[MaterialStock, Mapping]


def _order_item(obj: OrderItemLike) -> OrderItem:
    return obj if isinstance(obj, OrderItem) else OrderItem.model_validate(obj)


def _material_stock(obj: MaterialStockLike) -> MaterialStock:
    return obj if isinstance(obj, MaterialStock) else MaterialStock.model_validate(obj)


def required_materials(order_items: Iterable[OrderItemLike], resolve: Optional[Callable[[str, Decimal], List[BOMLine]]] = None) -> Dict[str, Decimal]:
    """Aggregate Σ quantity_per_unit × order quantity per material, in first-seen order."""
    required: Dict[str, Decimal] = {}
    for raw in order_items:
        oi = _order_item(raw)
        if oi.materials is not None:
            lines = oi.materials
        elif resolve is not None:
            lines = resolve(oi.product_id, oi.quantity)
        else:
            raise ValidationError(f"no materials given for product {oi.product_id}", product_id=oi.product_id)
        for line in lines:
            amount = line.quantity_per_unit * oi.quantity
            required[line.material_id] = required.get(line.material_id, ZERO) + amount
    return required


def validate_stock(order_items: Sequence[OrderItemLike], available_stock: Sequence[MaterialStockLike]) -> StockValidationResult:
    """
    Advisory check of an order against a stock listing. Pure: reads its
    arguments only and never mutates them. A material missing from the
    listing counts as zero stock.
    """
    required = required_materials(order_items)
    stock = {m.material_id: m for m in (_material_stock(s) for s in available_stock)}

    insufficient: List[InsufficientMaterial] = []
    warnings: List[LowStockWarning] = []
    for material_id, need in required.items():
        m = stock.get(material_id)
        have = m.current_stock if m is not None else ZERO
        name = m.name if m is not None else None
        remaining = have - need
        if remaining < 0:
            insufficient.append(
                InsufficientMaterial(material_id=material_id, name=name, required=need, available=have, shortfall=-remaining)
            )
        elif m is not None and m.min_stock is not None and remaining < m.min_stock:
            warnings.append(
                LowStockWarning(material_id=material_id, name=name, required=need, remaining=remaining, min_stock=m.min_stock)
            )
    return StockValidationResult(valid=not insufficient, insufficient_items=insufficient, warnings=warnings)


class ReservationRollbackCoordinator:
    def __init__(
        self,
        ledger: StockLedger,
        store: ReservationStore,
        bom: BOMResolver,
        publisher: EventPublisher,
        *,
        location_id: str = "main",
        min_stock_for: Callable[[str, str], Optional[Decimal]] = lambda material_id, location_id: None,
        clock=utcnow,
    ):
        self.ledger = ledger
        self.store = store
        self.bom = bom
        self.publisher = publisher
        self.location_id = location_id
        self.min_stock_for = min_stock_for
        self.clock = clock

    def validate_stock(self, order_items: Sequence[OrderItemLike], available_stock: Sequence[MaterialStockLike]) -> StockValidationResult:
        return validate_stock(order_items, available_stock)

    def deduct_stock(self, order_id: str, items: Sequence[OrderItemLike], location_id: Optional[str] = None) -> List[DeductionLine]:
        loc = location_id or self.location_id
        parsed = [_order_item(i) for i in items]
        if not parsed:
            raise ValidationError(f"order {order_id} has no items", order_id=order_id)
        for oi in parsed:
            check_positive(oi.quantity, label=f"quantity for product {oi.product_id}").raise_for_failure()
        required = required_materials(parsed, self.bom.resolve)
        lines = [
            ReservationLine(material_id=mid, location_id=loc, amount=amt)
            for mid, amt in required.items()
            if amt > 0
        ]

        cells: Dict[CellKey, StockCell] = {}

        def debit(claimed: Reservation) -> None:
            cells.update(self.ledger.apply_deltas({CellKey(l.material_id, l.location_id): -l.amount for l in claimed.lines}))

        # The reservation is recorded in the same unit as the debit: both land or neither does,
        # and a concurrent deduction for the same order finds it already claimed.
        try:
            self.store.claim(Reservation(order_id=order_id, lines=lines, created_at=self.clock()), effect=debit)
        except InsufficientStock as exc:
            json_log("warning", "inventory.reservation.insufficient", order_id=order_id, material_id=exc.item_id, requested=exc.requested, available=exc.available)
            raise

        out = [
            DeductionLine(material_id=l.material_id, amount=l.amount, new_stock=cells[CellKey(l.material_id, l.location_id)].quantity)
            for l in lines
        ]
        json_log("info", "inventory.reservation.deducted", order_id=order_id, materials=len(out))
        safe_publish(
            self.publisher,
            "fulfillment.stock_deducted",
            {"order_id": order_id, "location_id": loc, "lines": [d.model_dump() for d in out]},
            source_type="order",
            source_id=order_id,
        )
        for d in out:
            threshold = self.min_stock_for(d.material_id, loc)
            if threshold is not None and d.new_stock < threshold:
                safe_publish(
                    self.publisher,
                    "materials.low_stock",
                    {"item_id": d.material_id, "location_id": loc, "stock": d.new_stock, "min_stock": threshold},
                    source_type="stock_cell",
                    source_id=f"{d.material_id}@{loc}",
                )
        return out

    def rollback_stock(self, order_id: str, deducted_items: Optional[Sequence[Union[DeductionLine, Mapping]]] = None) -> RollbackResult:
        res = self.store.get(order_id)
        if res is None or res.status != ReservationStatus.ACTIVE:
            json_log("info", "inventory.reservation.rollback_noop", order_id=order_id, status=(res.status.value if res else None))
            return RollbackResult(order_id=order_id, restored=False, reason=NOTHING_TO_RESTORE)

        if deducted_items:
            recorded = {l.material_id for l in res.lines}
            given = {
                (d.material_id if isinstance(d, DeductionLine) else str(d.get("material_id")))
                for d in deducted_items
            }
            unknown = sorted(given - recorded)
            if unknown:
                raise ValidationError(
                    f"order {order_id}: materials {', '.join(unknown)} were not deducted by this order",
                    order_id=order_id,
                    materials=unknown,
                )

        cells: Dict[CellKey, StockCell] = {}

        def restore(current: Reservation) -> None:
            cells.update(self.ledger.apply_deltas({CellKey(l.material_id, l.location_id): l.amount for l in current.lines}))

        # Only one caller wins the active -> rolled_back claim, and the restore rides on it.
        claimed = self.store.transition(
            order_id, ReservationStatus.ACTIVE, ReservationStatus.ROLLED_BACK, effect=restore, rolled_back_at=self.clock()
        )
        if claimed is None:
            return RollbackResult(order_id=order_id, restored=False, reason=NOTHING_TO_RESTORE)

        out = [
            DeductionLine(material_id=l.material_id, amount=l.amount, new_stock=cells[CellKey(l.material_id, l.location_id)].quantity)
            for l in claimed.lines
        ]
        json_log("info", "inventory.reservation.rolled_back", order_id=order_id, materials=len(out))
        safe_publish(
            self.publisher,
            "fulfillment.stock_restored",
            {"order_id": order_id, "lines": [d.model_dump() for d in out]},
            source_type="order",
            source_id=order_id,
        )
        return RollbackResult(order_id=order_id, restored=True, lines=out)

    def finalize_reservation(self, order_id: str) -> bool:
        done = self.store.transition(order_id, ReservationStatus.ACTIVE, ReservationStatus.FINALIZED, finalized_at=self.clock())
        if done is None:
            return False
        json_log("info", "inventory.reservation.finalized", order_id=order_id)
        return True
