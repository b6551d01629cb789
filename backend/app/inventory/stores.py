"""
Record stores consumed by the engine, with in-memory implementations.

Status changes go through `transition`, a compare-and-set on the current
status: it returns the updated record, or None when the record has moved on
since the caller read it. Non-status fields follow last-write-wins.

`effect` is the ledger work that belongs to a status change. It runs after
the status check and before the record is written, in the same unit, and is
handed the record as it stands there. When it raises, the record is left as
it was. The in-memory stores hold the record's
lock across the unit; the PostgreSQL stores run it in one transaction.
"""
from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol

from .errors import InvalidState, ItemNotFound, TransferNotFound, ValidationError
from .models import (
    BOMLine,
    InventoryItem,
    Reservation,
    ReservationStatus,
    Transfer,
    TransferStatus,
)


ActorProvider = Callable[[], Optional[str]]
# Ledger work tied to a status change; called with the record as it stands in the unit.
Effect = Callable[[Any], None]

# Catalog fields that can never be written as a whole value: quantities only
# move through ledger deltas.
PROTECTED_ITEM_FIELDS = frozenset({"id", "stock"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def static_actor(actor_id: Optional[str]) -> ActorProvider:
    return lambda: actor_id


class TransferStore(Protocol):
    def add(self, transfer: Transfer) -> Transfer: ...

    def get(self, transfer_id: str) -> Optional[Transfer]: ...

    def transition(
        self, transfer_id: str, expected: TransferStatus, *, effect: Optional[Effect] = None, **changes
    ) -> Optional[Transfer]: ...

    def list_by_location(self, location_id: str, direction: str = "both") -> List[Transfer]: ...


class ReservationStore(Protocol):
    def claim(self, reservation: Reservation, *, effect: Optional[Effect] = None) -> Reservation:
        """Record an ACTIVE reservation; InvalidState if the order already has an active/finalized one."""
        ...

    def get(self, order_id: str) -> Optional[Reservation]: ...

    def transition(
        self, order_id: str, expected: ReservationStatus, new: ReservationStatus, *, effect: Optional[Effect] = None, **changes
    ) -> Optional[Reservation]: ...


class ItemCatalog(Protocol):
    def get(self, item_id: str) -> Optional[InventoryItem]: ...

    def get_many(self, item_ids: Iterable[str]) -> Dict[str, InventoryItem]: ...

    def list_items(self) -> List[InventoryItem]: ...

    def update_item(self, item_id: str, fields: Mapping) -> InventoryItem: ...

    def update_where_in(self, item_ids: List[str], fields: Mapping) -> List[str]: ...

    def dependency_counts(self, item_ids: List[str]) -> Dict[str, Dict[str, int]]: ...

    def delete_where_in(self, item_ids: List[str]) -> List[str]: ...


class BOMResolver(Protocol):
    def resolve(self, product_id: str, quantity) -> List[BOMLine]: ...


def check_item_fields(fields: Mapping) -> dict:
    bad = sorted(PROTECTED_ITEM_FIELDS.intersection(fields))
    if bad:
        raise ValidationError(f"fields cannot be overwritten: {', '.join(bad)} (use a stock adjustment)", fields=bad)
    unknown = sorted(set(fields) - set(InventoryItem.model_fields))
    if unknown:
        raise ValidationError(f"unknown item fields: {', '.join(unknown)}", fields=unknown)
    return dict(fields)


class _RecordLocks:
    """One lock per record id, registered when the record is first written."""

    def __init__(self):
        self._registry = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def __call__(self, record_id: str) -> threading.Lock:
        with self._registry:
            return self._locks.setdefault(record_id, threading.Lock())


class InMemoryTransferStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._rows: Dict[str, Transfer] = {}
        self._record_lock = _RecordLocks()

    def add(self, transfer: Transfer) -> Transfer:
        with self._lock:
            if transfer.id in self._rows:
                raise ValidationError(f"transfer {transfer.id} already exists", transfer_id=transfer.id)
            self._rows[transfer.id] = transfer
            return transfer

    def get(self, transfer_id: str) -> Optional[Transfer]:
        with self._lock:
            return self._rows.get(transfer_id)

    def transition(
        self, transfer_id: str, expected: TransferStatus, *, effect: Optional[Effect] = None, **changes
    ) -> Optional[Transfer]:
        if self.get(transfer_id) is None:
            raise TransferNotFound(transfer_id)
        with self._record_lock(transfer_id):
            cur = self.get(transfer_id)
            if cur.status != expected:
                return None
            if effect is not None:
                effect(cur)
            updated = cur.model_copy(update={**changes, "version": cur.version + 1})
            with self._lock:
                self._rows[transfer_id] = updated
            return updated

    def list_by_location(self, location_id: str, direction: str = "both") -> List[Transfer]:
        with self._lock:
            rows = list(self._rows.values())
        out = []
        for t in rows:
            outgoing = t.source_location_id == location_id
            incoming = t.destination_location_id == location_id
            if (direction == "outgoing" and outgoing) or (direction == "incoming" and incoming) or (
                direction == "both" and (outgoing or incoming)
            ):
                out.append(t)
        out.sort(key=lambda t: t.requested_at, reverse=True)
        return out


class InMemoryReservationStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._rows: Dict[str, Reservation] = {}
        self._record_lock = _RecordLocks()

    def claim(self, reservation: Reservation, *, effect: Optional[Effect] = None) -> Reservation:
        oid = reservation.order_id
        with self._record_lock(oid):
            cur = self.get(oid)
            if cur is not None and cur.status != ReservationStatus.ROLLED_BACK:
                raise InvalidState(oid, cur.status.value, "deduct")
            claimed = reservation.model_copy(update={"status": ReservationStatus.ACTIVE})
            if effect is not None:
                effect(claimed)
            with self._lock:
                self._rows[oid] = claimed
            return claimed

    def get(self, order_id: str) -> Optional[Reservation]:
        with self._lock:
            return self._rows.get(order_id)

    def transition(
        self, order_id: str, expected: ReservationStatus, new: ReservationStatus, *, effect: Optional[Effect] = None, **changes
    ) -> Optional[Reservation]:
        if self.get(order_id) is None:
            return None
        with self._record_lock(order_id):
            cur = self.get(order_id)
            if cur.status != expected:
                return None
            if effect is not None:
                effect(cur)
            updated = cur.model_copy(update={**changes, "status": new})
            with self._lock:
                self._rows[order_id] = updated
            return updated


class InMemoryItemCatalog:
    def __init__(self, items: Iterable[InventoryItem] = (), dependencies: Optional[Mapping[str, Mapping[str, int]]] = None):
        self._lock = threading.Lock()
        self._rows: Dict[str, InventoryItem] = {i.id: i for i in items}
        self._deps: Dict[str, Dict[str, int]] = {k: dict(v) for k, v in (dependencies or {}).items()}

    def add(self, item: InventoryItem) -> InventoryItem:
        with self._lock:
            self._rows[item.id] = item
            return item

    def get(self, item_id: str) -> Optional[InventoryItem]:
        with self._lock:
            return self._rows.get(item_id)

    def get_many(self, item_ids: Iterable[str]) -> Dict[str, InventoryItem]:
        with self._lock:
            return {i: self._rows[i] for i in item_ids if i in self._rows}

    def list_items(self) -> List[InventoryItem]:
        with self._lock:
            return sorted(self._rows.values(), key=lambda i: i.name)

    def update_item(self, item_id: str, fields: Mapping) -> InventoryItem:
        data = check_item_fields(fields)
        with self._lock:
            cur = self._rows.get(item_id)
            if cur is None:
                raise ItemNotFound(item_id)
            updated = cur.model_copy(update={**data, "updated_at": utcnow()})
            self._rows[item_id] = updated
            return updated

    def update_where_in(self, item_ids: List[str], fields: Mapping) -> List[str]:
        data = check_item_fields(fields)
        now = utcnow()
        with self._lock:
            matched = [i for i in item_ids if i in self._rows]
            for i in matched:
                self._rows[i] = self._rows[i].model_copy(update={**data, "updated_at": now})
            return matched

    def min_stock_for(self, item_id: str, location_id: str):
        with self._lock:
            item = self._rows.get(item_id)
            return item.min_stock if item is not None else None

    def dependency_counts(self, item_ids: List[str]) -> Dict[str, Dict[str, int]]:
        with self._lock:
            return {i: dict(self._deps.get(i, {})) for i in item_ids}

    def delete_where_in(self, item_ids: List[str]) -> List[str]:
        with self._lock:
            deleted = [i for i in item_ids if self._rows.pop(i, None) is not None]
            for i in deleted:
                self._deps.pop(i, None)
            return deleted


class StaticBOMResolver:
    def __init__(self, boms: Mapping[str, Iterable[BOMLine]]):
        self._boms = {pid: list(lines) for pid, lines in boms.items()}

    def resolve(self, product_id: str, quantity) -> List[BOMLine]:
        lines = self._boms.get(product_id)
        if lines is None:
            raise ValidationError(f"no bill of materials for product {product_id}", product_id=product_id)
        return list(lines)
