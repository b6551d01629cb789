"""
Cross-location transfer lifecycle.

    pending --approve--> in_transit --receive--> received
       `--reject--> cancelled

Stock leaves the source exactly once, on approval, and lands at the
destination on receipt. Nothing moves at initiation. Each stock movement
runs inside the store transition that records it, so a status change and
its movement commit together or not at all.
"""
from __future__ import annotations

import uuid
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from ..jsonlog import json_log
from .errors import ConcurrencyConflict, InvalidQuantity, InvalidState, TransferNotFound, ValidationError
from .events import EventPublisher, safe_publish
from .gate import check_distinct, check_positive, check_sufficient, check_transition, next_status
from .ledger import StockLedger
from .models import CellKey, ShortfallDisposition, StockCell, Transfer, TransferEvent, TransferStatus
from .precision import to_decimal
from .stores import ActorProvider, TransferStore, utcnow


ThresholdLookup = Callable[[str, str], Optional[Decimal]]


def _no_threshold(item_id: str, location_id: str) -> Optional[Decimal]:
    return None


class TransferWorkflow:
    def __init__(
        self,
        ledger: StockLedger,
        store: TransferStore,
        publisher: EventPublisher,
        actor: ActorProvider,
        *,
        max_retries: int = 5,
        partial_receipt_policy: str = "write_off",
        min_stock_for: ThresholdLookup = _no_threshold,
        clock=utcnow,
        id_factory=lambda: str(uuid.uuid4()),
    ):
        if partial_receipt_policy not in ("write_off", "return_to_source"):
            raise ValueError(f"unknown partial receipt policy: {partial_receipt_policy}")
        self.ledger = ledger
        self.store = store
        self.publisher = publisher
        self.actor = actor
        self.max_retries = max(1, int(max_retries))
        self.partial_receipt_policy = partial_receipt_policy
        self.min_stock_for = min_stock_for
        self.clock = clock
        self.id_factory = id_factory

    def _actor(self, actor_id: Optional[str]) -> Optional[str]:
        return actor_id if actor_id is not None else self.actor()

    def _load(self, transfer_id: str) -> Transfer:
        t = self.store.get(transfer_id)
        if t is None:
            raise TransferNotFound(transfer_id)
        return t

    def _publish(self, event_type: str, t: Transfer, **extra) -> None:
        payload = {
            "transfer_id": t.id,
            "item_id": t.item_id,
            "source_location_id": t.source_location_id,
            "destination_location_id": t.destination_location_id,
            "quantity_requested": t.quantity_requested,
            "status": t.status.value,
            **extra,
        }
        safe_publish(self.publisher, event_type, payload, source_type="stock_transfer", source_id=t.id)

    def initiate_transfer(
        self,
        source_location_id: str,
        destination_location_id: str,
        item_id: str,
        quantity,
        notes: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> Transfer:
        qty = to_decimal(quantity)
        check_distinct(source_location_id, destination_location_id).raise_for_failure()
        check_positive(qty).raise_for_failure()
        available = self.ledger.read(CellKey(item_id, source_location_id))
        check_sufficient(qty, available, item_id=item_id, location_id=source_location_id).raise_for_failure()

        t = self.store.add(
            Transfer(
                id=self.id_factory(),
                source_location_id=source_location_id,
                destination_location_id=destination_location_id,
                item_id=item_id,
                quantity_requested=qty,
                status=TransferStatus.PENDING,
                requested_at=self.clock(),
                requested_by=self._actor(actor_id),
                notes=(notes or "").strip() or None,
            )
        )
        json_log("info", "inventory.transfer.initiated", transfer_id=t.id, item_id=item_id, qty=qty)
        self._publish("inventory.transfer_initiated", t)
        return t

    def _decrement_with_retry(self, key: CellKey, qty: Decimal) -> StockCell:
        """Check-then-mutate on one cell, retried on version conflicts."""
        for attempt in range(1, self.max_retries + 1):
            cell = self.ledger.read_versioned(key)
            check_sufficient(qty, cell.quantity, item_id=key.item_id, location_id=key.location_id).raise_for_failure()
            updated = self.ledger.compare_and_set(key, cell.version, -qty)
            if updated is not None:
                return updated
            json_log("warning", "inventory.ledger.cas_conflict", item_id=key.item_id, location_id=key.location_id, attempt=attempt)
        raise ConcurrencyConflict(key.item_id, key.location_id, self.max_retries)

    def approve_transfer(
        self,
        transfer_id: str,
        approved: bool,
        notes: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> Transfer:
        t = self._load(transfer_id)
        event = TransferEvent.APPROVE if approved else TransferEvent.REJECT
        check_transition(t.id, t.status, event).raise_for_failure()
        actor = self._actor(actor_id)
        now = self.clock()
        note = (notes or "").strip() or t.notes

        if not approved:
            updated = self.store.transition(
                t.id, TransferStatus.PENDING,
                status=next_status(t.status, event), cancelled_by=actor, cancelled_at=now, notes=note,
            )
            if updated is None:
                raise InvalidState(t.id, self._load(t.id).status.value, event.value)
            json_log("info", "inventory.transfer.cancelled", transfer_id=t.id, actor_id=actor)
            self._publish("inventory.transfer_cancelled", updated)
            return updated

        source = CellKey(t.item_id, t.source_location_id)
        debited: List[StockCell] = []

        def debit(current: Transfer) -> None:
            debited.append(self._decrement_with_retry(source, current.quantity_requested))

        updated = self.store.transition(
            t.id, TransferStatus.PENDING,
            effect=debit,
            status=next_status(t.status, event), approved_by=actor, approved_at=now, notes=note,
        )
        if updated is None:
            # Another approver/rejecter got there first; the debit never ran.
            current = self._load(t.id).status.value
            json_log("warning", "inventory.transfer.approve_race_lost", transfer_id=t.id, status=current)
            raise InvalidState(t.id, current, event.value)

        (cell,) = debited
        json_log("info", "inventory.transfer.approved", transfer_id=t.id, actor_id=actor, source_stock=cell.quantity)
        self._publish("inventory.transfer_approved", updated, source_stock=cell.quantity)
        self._check_low_stock(source, cell.quantity)
        return updated

    def receive_transfer(
        self,
        transfer_id: str,
        quantity_received=None,
        notes: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> Transfer:
        t = self._load(transfer_id)
        check_transition(t.id, t.status, TransferEvent.RECEIVE).raise_for_failure()
        qty = t.quantity_requested if quantity_received is None else to_decimal(quantity_received)
        check_positive(qty, label="quantity_received").raise_for_failure()
        if qty > t.quantity_requested:
            raise InvalidQuantity(qty, detail=f"quantity_received {qty} exceeds quantity_requested {t.quantity_requested} for transfer {t.id}")

        shortfall = t.quantity_requested - qty
        disposition = None
        if shortfall > 0:
            disposition = (
                ShortfallDisposition.RETURNED_TO_SOURCE
                if self.partial_receipt_policy == "return_to_source"
                else ShortfallDisposition.WRITTEN_OFF
            )
        actor = self._actor(actor_id)
        dest_key = CellKey(t.item_id, t.destination_location_id)
        credits = {dest_key: qty}
        if disposition == ShortfallDisposition.RETURNED_TO_SOURCE:
            credits[CellKey(t.item_id, t.source_location_id)] = shortfall
        credited: Dict[CellKey, StockCell] = {}

        def credit(current: Transfer) -> None:
            credited.update(self.ledger.apply_deltas(credits))

        # The in_transit claim and the credit are one unit: a duplicate receive
        # finds the transfer received and never credits.
        updated = self.store.transition(
            t.id, TransferStatus.IN_TRANSIT,
            effect=credit,
            status=TransferStatus.RECEIVED,
            quantity_received=qty,
            received_by=actor,
            received_at=self.clock(),
            notes=(notes or "").strip() or t.notes,
            shortfall=shortfall if shortfall > 0 else None,
            shortfall_disposition=disposition,
        )
        if updated is None:
            raise InvalidState(t.id, self._load(t.id).status.value, TransferEvent.RECEIVE.value)

        dest = credited[dest_key]
        json_log("info", "inventory.transfer.received", transfer_id=t.id, actor_id=actor, qty=qty, shortfall=shortfall)
        self._publish("inventory.transfer_received", updated, quantity_received=qty, destination_stock=dest.quantity)
        if disposition is not None:
            self._publish("inventory.transfer_shortfall", updated, shortfall=shortfall, disposition=disposition.value)
        return updated

    def get_transfer(self, transfer_id: str) -> Transfer:
        return self._load(transfer_id)

    def get_transfers_by_location(self, location_id: str, direction: str = "both") -> List[Transfer]:
        d = (direction or "both").strip().lower()
        if d not in ("outgoing", "incoming", "both"):
            raise ValidationError(f"invalid direction: {direction} (expected outgoing, incoming or both)", direction=direction)
        return self.store.list_by_location(location_id, d)

    def _check_low_stock(self, key: CellKey, quantity: Decimal) -> None:
        threshold = self.min_stock_for(key.item_id, key.location_id)
        if threshold is not None and quantity < threshold:
            safe_publish(
                self.publisher,
                "materials.low_stock",
                {"item_id": key.item_id, "location_id": key.location_id, "stock": quantity, "min_stock": threshold},
                source_type="stock_cell",
                source_id=f"{key.item_id}@{key.location_id}",
            )
