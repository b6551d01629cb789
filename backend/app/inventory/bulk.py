"""
Bulk operations over catalog items.

Every entry is its own transaction: a failing entry is recorded in the
returned BulkOperationResult and the batch carries on. Set-valued changes
(category, active flag, deletion) go to the catalog as one in-set call;
stock adjustments carry an independent delta per item and stay one ledger
call per item.
"""
from __future__ import annotations

from typing import IO, Iterable, Iterator, List, Optional, Sequence

from ..jsonlog import json_log
from .csv_export import export_to_csv, iter_csv_lines, write_csv
from .errors import InventoryError, ValidationError
from .events import EventPublisher, safe_publish
from .gate import check_nonzero
from .ledger import StockLedger
from .models import BulkItemOutcome, BulkOperationResult, CellKey, InventoryItem, StockAdjustment
from .precision import ZERO, to_decimal
from .stores import ActorProvider, ItemCatalog


def _dedupe(ids: Iterable[str]) -> List[str]:
    seen = set()
    out = []
    for i in ids:
        if i not in seen:
            seen.add(i)
            out.append(i)
    return out


def _error_text(exc: Exception) -> str:
    if isinstance(exc, InventoryError):
        return exc.detail
    return str(exc) or exc.__class__.__name__


class BulkOperationsProcessor:
    def __init__(
        self,
        ledger: StockLedger,
        catalog: ItemCatalog,
        publisher: EventPublisher,
        actor: ActorProvider,
        *,
        default_location_id: str = "main",
    ):
        self.ledger = ledger
        self.catalog = catalog
        self.publisher = publisher
        self.actor = actor
        self.default_location_id = default_location_id

    def _finish(self, operation: str, outcomes: List[BulkItemOutcome]) -> BulkOperationResult:
        result = BulkOperationResult.from_outcomes(outcomes)
        for o in result.failed:
            json_log("warning", "inventory.bulk.item_failed", operation=operation, item_id=o.id, error=o.error)
        json_log(
            "info",
            "inventory.bulk.completed",
            operation=operation,
            total=result.total_processed,
            succeeded=result.total_succeeded,
            failed=result.total_failed,
        )
        return result

    def _location_for(self, adj: StockAdjustment, item: InventoryItem) -> str:
        return adj.location_id or item.location_id or self.default_location_id

    def adjust_stock(self, adjustments: Sequence[StockAdjustment], actor_id: Optional[str] = None) -> BulkOperationResult:
        if not adjustments:
            return self._finish("adjust_stock", [])
        actor = actor_id if actor_id is not None else self.actor()
        try:
            items = self.catalog.get_many(_dedupe(a.item_id for a in adjustments))
        except Exception as exc:
            # Without the catalog no entry can be resolved; report, don't abort.
            err = _error_text(exc)
            return self._finish("adjust_stock", [BulkItemOutcome(id=a.item_id, error=err) for a in adjustments])

        outcomes: List[BulkItemOutcome] = []
        for adj in adjustments:
            item = items.get(adj.item_id)
            if item is None:
                outcomes.append(BulkItemOutcome(id=adj.item_id, error=f"item {adj.item_id} not found"))
                continue
            try:
                delta = to_decimal(adj.delta, field="adjustment")
                check_nonzero(delta, label="adjustment").raise_for_failure()
                key = CellKey(adj.item_id, self._location_for(adj, item))
                try:
                    cell = self.ledger.apply_delta(key, delta)
                except ValidationError as exc:
                    if exc.code == "insufficient_stock":
                        raise ValidationError(f"Stock cannot be negative ({exc.detail})", item_id=adj.item_id)
                    raise
            except Exception as exc:
                outcomes.append(BulkItemOutcome(id=adj.item_id, error=_error_text(exc)))
                continue
            outcomes.append(BulkItemOutcome(id=adj.item_id))
            safe_publish(
                self.publisher,
                "materials.stock_updated",
                {
                    "item_id": adj.item_id,
                    "name": item.name,
                    "location_id": key.location_id,
                    "previous_stock": cell.quantity - delta,
                    "new_stock": cell.quantity,
                    "adjustment": delta,
                    "reason": adj.reason,
                    "actor_id": actor,
                },
                source_type="item",
                source_id=adj.item_id,
            )
            if item.min_stock is not None and cell.quantity < item.min_stock:
                safe_publish(
                    self.publisher,
                    "materials.low_stock",
                    {"item_id": adj.item_id, "location_id": key.location_id, "stock": cell.quantity, "min_stock": item.min_stock},
                    source_type="item",
                    source_id=adj.item_id,
                )
        return self._finish("adjust_stock", outcomes)

    def _set_fields(self, operation: str, item_ids: Sequence[str], fields: dict, event_type: str) -> BulkOperationResult:
        ids = _dedupe(item_ids)
        if not ids:
            return self._finish(operation, [])
        try:
            matched = set(self.catalog.update_where_in(ids, fields))
        except Exception as exc:
            err = _error_text(exc)
            return self._finish(operation, [BulkItemOutcome(id=i, error=err) for i in ids])
        outcomes = [
            BulkItemOutcome(id=i) if i in matched else BulkItemOutcome(id=i, error=f"item {i} not found")
            for i in ids
        ]
        if matched:
            safe_publish(
                self.publisher,
                event_type,
                {"item_ids": [i for i in ids if i in matched], "count": len(matched), "actor_id": self.actor(), **fields},
                source_type="item",
            )
        return self._finish(operation, outcomes)

    def change_category(self, item_ids: Sequence[str], category: str) -> BulkOperationResult:
        cat = (category or "").strip()
        if not cat:
            raise ValidationError("Category cannot be empty")
        return self._set_fields("change_category", item_ids, {"category": cat}, "materials.bulk_category_changed")

    def toggle_active(self, item_ids: Sequence[str], active: bool) -> BulkOperationResult:
        return self._set_fields("toggle_active", item_ids, {"is_active": bool(active)}, "materials.bulk_status_changed")

    def delete_items(self, item_ids: Sequence[str], force: bool = False) -> BulkOperationResult:
        ids = _dedupe(item_ids)
        if not ids:
            return self._finish("delete_items", [])
        errors: dict = {}
        deletable = ids
        if not force:
            try:
                deps = self.catalog.dependency_counts(ids)
            except Exception as exc:
                err = _error_text(exc)
                return self._finish("delete_items", [BulkItemOutcome(id=i, error=err) for i in ids])
            deletable = []
            for i in ids:
                blocking = {k: v for k, v in (deps.get(i) or {}).items() if v}
                if blocking:
                    what = ", ".join(f"{k}={v}" for k, v in sorted(blocking.items()))
                    errors[i] = f"item {i} has dependencies ({what})"
                else:
                    deletable.append(i)
        if deletable:
            try:
                deleted = set(self.catalog.delete_where_in(deletable))
            except Exception as exc:
                err = _error_text(exc)
                deleted = set()
                for i in deletable:
                    errors[i] = err
            for i in deletable:
                if i not in deleted and i not in errors:
                    errors[i] = f"item {i} not found"
        outcomes = [BulkItemOutcome(id=i, error=errors.get(i)) for i in ids]
        removed = [o.id for o in outcomes if o.error is None]
        if removed:
            safe_publish(
                self.publisher,
                "materials.bulk_deleted",
                {"item_ids": removed, "count": len(removed), "forced": bool(force), "actor_id": self.actor()},
                source_type="item",
            )
        return self._finish("delete_items", outcomes)

    def export_to_csv(self, items: Iterable) -> str:
        return export_to_csv(items)

    def _with_ledger_stock(self, items: Iterable[InventoryItem]) -> Iterable[InventoryItem]:
        totals: dict = {}
        for key, qty in self.ledger.snapshot().items():
            totals[key.item_id] = totals.get(key.item_id, ZERO) + qty
        # Totals are read up front; only the per-item copies are lazy.
        return (item.model_copy(update={"stock": totals.get(item.id, ZERO)}) for item in items)

    def export_catalog(self, fp: Optional[IO[str]] = None):
        """
        Export every catalog item with its stock summed over all locations.
        Streams to `fp` when given (returns the row count), otherwise returns the text.
        """
        items = self._with_ledger_stock(self.catalog.list_items())
        if fp is not None:
            return write_csv(items, fp)
        return export_to_csv(items)

    def iter_catalog_csv(self, item_ids: Optional[Sequence[str]] = None) -> Iterator[str]:
        """CSV lines for the given items (all items when None), for streaming responses."""
        if item_ids:
            ids = _dedupe(item_ids)
            found = self.catalog.get_many(ids)
            items = [found[i] for i in ids if i in found]
        else:
            items = self.catalog.list_items()
        return iter_csv_lines(self._with_ledger_stock(items))
