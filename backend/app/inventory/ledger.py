"""
StockLedger: (item, location) -> quantity.

Quantities only move through additive deltas. Every committed change bumps the
cell version so callers can do optimistic check-then-mutate with
`compare_and_set`. A cell never goes below zero: every mutating call checks the
resulting quantity while it holds the cell and refuses with InsufficientStock.

The in-memory implementation locks per cell. Multi-cell updates
(`apply_deltas`) take the involved cell locks in sorted key order, so disjoint
updates run in parallel and overlapping ones cannot deadlock.
"""
from __future__ import annotations

import threading
from contextlib import ExitStack
from decimal import Decimal
from typing import Dict, Iterable, Mapping, Optional, Protocol, Tuple, Union

from .errors import InsufficientStock, InvalidQuantity
from .models import CellKey, StockCell
from .precision import ZERO, to_decimal


KeyLike = Union[CellKey, Tuple[str, str]]


def as_key(key: KeyLike) -> CellKey:
    if isinstance(key, CellKey):
        return key
    item_id, location_id = key
    return CellKey(str(item_id), str(location_id))


def _positive(amount) -> Decimal:
    amt = to_decimal(amount)
    if amt <= 0:
        raise InvalidQuantity(amt)
    return amt


class StockLedger(Protocol):
    def read(self, key: KeyLike) -> Decimal: ...

    def read_versioned(self, key: KeyLike) -> StockCell: ...

    def compare_and_set(self, key: KeyLike, expected_version: int, delta: Decimal) -> Optional[StockCell]:
        """Apply `delta` only if the cell is still at `expected_version`; None on a version conflict."""
        ...

    def increment(self, key: KeyLike, amount: Decimal) -> StockCell: ...

    def decrement(self, key: KeyLike, amount: Decimal) -> StockCell: ...

    def apply_delta(self, key: KeyLike, delta: Decimal) -> StockCell: ...

    def apply_deltas(self, deltas: Mapping[CellKey, Decimal]) -> Dict[CellKey, StockCell]:
        """All-or-nothing: either every delta commits or none does."""
        ...

    def total_for_item(self, item_id: str) -> Decimal: ...

    def snapshot(self) -> Dict[CellKey, Decimal]: ...


class InMemoryStockLedger:
    def __init__(self, initial: Optional[Mapping[KeyLike, Decimal]] = None):
        self._cells: Dict[CellKey, Tuple[Decimal, int]] = {}
        self._locks: Dict[CellKey, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        for key, qty in (initial or {}).items():
            self.seed(key, qty)

    def seed(self, key: KeyLike, quantity) -> StockCell:
        k = as_key(key)
        qty = to_decimal(quantity)
        if qty < 0:
            raise InvalidQuantity(qty, detail=f"opening stock cannot be negative (got {qty})")
        with self._lock_for(k):
            _, version = self._cells.get(k, (ZERO, 0))
            self._cells[k] = (qty, version + 1)
            return self._cell(k)

    def _lock_for(self, key: CellKey) -> threading.Lock:
        lock = self._locks.get(key)
        if lock is None:
            with self._registry_lock:
                lock = self._locks.setdefault(key, threading.Lock())
        return lock

    def _cell(self, key: CellKey) -> StockCell:
        qty, version = self._cells.get(key, (ZERO, 0))
        return StockCell(item_id=key.item_id, location_id=key.location_id, quantity=qty, version=version)

    def _apply_locked(self, key: CellKey, delta: Decimal) -> StockCell:
        qty, version = self._cells.get(key, (ZERO, 0))
        new_qty = qty + delta
        if new_qty < 0:
            raise InsufficientStock(key.item_id, key.location_id, -delta, qty)
        self._cells[key] = (new_qty, version + 1)
        return self._cell(key)

    def read(self, key: KeyLike) -> Decimal:
        return self.read_versioned(key).quantity

    def read_versioned(self, key: KeyLike) -> StockCell:
        k = as_key(key)
        lock = self._locks.get(k)
        if lock is None:
            # Never written: nothing to lock, and no lock is registered for it.
            return self._cell(k)
        with lock:
            return self._cell(k)

    def compare_and_set(self, key: KeyLike, expected_version: int, delta) -> Optional[StockCell]:
        k = as_key(key)
        d = to_decimal(delta)
        with self._lock_for(k):
            _, version = self._cells.get(k, (ZERO, 0))
            if version != expected_version:
                return None
            return self._apply_locked(k, d)

    def increment(self, key: KeyLike, amount) -> StockCell:
        return self.apply_delta(key, _positive(amount))

    def decrement(self, key: KeyLike, amount) -> StockCell:
        return self.apply_delta(key, -_positive(amount))

    def apply_delta(self, key: KeyLike, delta) -> StockCell:
        k = as_key(key)
        d = to_decimal(delta)
        with self._lock_for(k):
            return self._apply_locked(k, d)

    def apply_deltas(self, deltas: Mapping[KeyLike, Decimal]) -> Dict[CellKey, StockCell]:
        normalized = _merge_deltas(deltas.items())
        if not normalized:
            return {}
        ordered = sorted(normalized)
        with ExitStack() as stack:
            for k in ordered:
                stack.enter_context(self._lock_for(k))
            # Check every cell before touching any of them.
            for k in ordered:
                qty, _ = self._cells.get(k, (ZERO, 0))
                if qty + normalized[k] < 0:
                    raise InsufficientStock(k.item_id, k.location_id, -normalized[k], qty)
            return {k: self._apply_locked(k, normalized[k]) for k in ordered}

    def total_for_item(self, item_id: str) -> Decimal:
        total = ZERO
        for k, qty in self.snapshot().items():
            if k.item_id == item_id:
                total += qty
        return total

    def snapshot(self) -> Dict[CellKey, Decimal]:
        # Per-cell consistent; not a point-in-time view across cells.
        with self._registry_lock:
            keys = list(self._locks.keys())
        out: Dict[CellKey, Decimal] = {}
        for k in keys:
            cell = self.read_versioned(k)
            if cell.version:
                out[k] = cell.quantity
        return out


def _merge_deltas(items: Iterable[Tuple[KeyLike, Decimal]]) -> Dict[CellKey, Decimal]:
    merged: Dict[CellKey, Decimal] = {}
    for key, delta in items:
        k = as_key(key)
        merged[k] = merged.get(k, ZERO) + to_decimal(delta)
    return {k: d for k, d in merged.items() if d != 0}
