from decimal import Decimal

import pytest

from backend.app.inventory.bulk import BulkOperationsProcessor
from backend.app.inventory.csv_export import parse_csv
from backend.app.inventory.errors import Fault, ValidationError
from backend.app.inventory.events import RecordingPublisher
from backend.app.inventory.ledger import InMemoryStockLedger
from backend.app.inventory.models import CellKey, InventoryItem, StockAdjustment
from backend.app.inventory.stores import InMemoryItemCatalog, static_actor


def _item(i, **kw):
    data = {"id": f"m-{i}", "name": f"Material {i}", "category": "dry", "unit": "kg", "unit_cost": Decimal("1.50")}
    data.update(kw)
    return InventoryItem(**data)


class _CountingCatalog(InMemoryItemCatalog):
    """Records each store round trip by method name."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.calls = []

    def get_many(self, item_ids):
        self.calls.append("get_many")
        return super().get_many(item_ids)

    def update_where_in(self, item_ids, fields):
        self.calls.append("update_where_in")
        return super().update_where_in(item_ids, fields)

    def dependency_counts(self, item_ids):
        self.calls.append("dependency_counts")
        return super().dependency_counts(item_ids)

    def delete_where_in(self, item_ids):
        self.calls.append("delete_where_in")
        return super().delete_where_in(item_ids)


def _processor(items, stock=None, dependencies=None):
    ledger = InMemoryStockLedger(stock or {})
    catalog = _CountingCatalog(items, dependencies)
    publisher = RecordingPublisher()
    proc = BulkOperationsProcessor(ledger, catalog, publisher, static_actor("u-1"))
    return proc, ledger, catalog, publisher


def test_adjust_stock_applies_valid_entries_despite_one_invalid_id():
    items = [_item(i) for i in range(99)]
    stock = {CellKey(it.id, "main"): Decimal("10") for it in items}
    proc, ledger, catalog, publisher = _processor(items, stock)

    adjustments = [StockAdjustment(item_id=it.id, delta=Decimal("5"), reason="recount") for it in items]
    adjustments.insert(42, StockAdjustment(item_id="does-not-exist", delta=Decimal("5")))
    result = proc.adjust_stock(adjustments)

    assert result.total_processed == 100
    assert result.total_succeeded == 99
    assert result.total_failed == 1
    (failed,) = result.failed
    assert failed.id == "does-not-exist"
    assert "not found" in failed.error
    assert all(ledger.read(CellKey(it.id, "main")) == Decimal("15") for it in items)
    # One catalog lookup for the whole batch.
    assert catalog.calls == ["get_many"]
    assert len(publisher.of_type("materials.stock_updated")) == 99


def test_adjust_stock_refuses_negative_result_per_item():
    items = [_item(1), _item(2)]
    proc, ledger, _, publisher = _processor(items, {CellKey("m-1", "main"): Decimal("3"), CellKey("m-2", "main"): Decimal("3")})
    result = proc.adjust_stock(
        [
            StockAdjustment(item_id="m-1", delta=Decimal("-5")),
            StockAdjustment(item_id="m-2", delta=Decimal("-2")),
            StockAdjustment(item_id="m-2", delta=Decimal("0")),
        ]
    )
    assert result.total_succeeded == 1
    errors = {o.id: o.error for o in result.failed}
    assert errors["m-1"].startswith("Stock cannot be negative")
    assert "non-zero" in errors["m-2"]
    assert ledger.read(CellKey("m-1", "main")) == Decimal("3")
    assert ledger.read(CellKey("m-2", "main")) == Decimal("1")
    (event,) = publisher.of_type("materials.stock_updated")
    assert event["previous_stock"] == Decimal("3")
    assert event["new_stock"] == Decimal("1")


def test_adjust_stock_uses_item_location_and_flags_low_stock():
    items = [_item(1, location_id="kitchen", min_stock=Decimal("5"))]
    proc, ledger, _, publisher = _processor(items, {CellKey("m-1", "kitchen"): Decimal("6")})
    result = proc.adjust_stock([StockAdjustment(item_id="m-1", delta=Decimal("-2"))])
    assert result.total_succeeded == 1
    assert ledger.read(CellKey("m-1", "kitchen")) == Decimal("4")
    (low,) = publisher.of_type("materials.low_stock")
    assert low["min_stock"] == Decimal("5")


def test_toggle_active_is_one_catalog_call():
    items = [_item(i) for i in range(20)]
    proc, _, catalog, publisher = _processor(items)
    result = proc.toggle_active([it.id for it in items] + ["ghost"], False)

    assert catalog.calls == ["update_where_in"]
    assert result.total_succeeded == 20
    assert [o.id for o in result.failed] == ["ghost"]
    assert all(not it.is_active for it in catalog.list_items())
    (event,) = publisher.of_type("materials.bulk_status_changed")
    assert event["count"] == 20
    assert event["is_active"] is False


def test_change_category_rejects_blank_and_updates_in_one_call():
    proc, _, catalog, publisher = _processor([_item(1), _item(2)])
    with pytest.raises(ValidationError) as exc_info:
        proc.change_category(["m-1"], "   ")
    assert exc_info.value.detail == "Category cannot be empty"
    assert catalog.calls == []

    result = proc.change_category(["m-1", "m-2", "m-1"], " frozen ")
    assert result.total_processed == 2
    assert catalog.calls == ["update_where_in"]
    assert {it.category for it in catalog.list_items()} == {"frozen"}
    assert publisher.of_type("materials.bulk_category_changed")[0]["category"] == "frozen"


def test_delete_items_skips_items_with_dependencies_unless_forced():
    items = [_item(1), _item(2), _item(3)]
    deps = {"m-1": {"stock_entries": 2, "recipe_items": 0}, "m-3": {"recipe_items": 1}}
    proc, _, catalog, publisher = _processor(items, dependencies=deps)

    result = proc.delete_items(["m-1", "m-2", "m-3"])
    assert result.total_succeeded == 1
    errors = {o.id: o.error for o in result.failed}
    assert errors["m-1"] == "item m-1 has dependencies (stock_entries=2)"
    assert errors["m-3"] == "item m-3 has dependencies (recipe_items=1)"
    assert catalog.calls == ["dependency_counts", "delete_where_in"]
    assert publisher.of_type("materials.bulk_deleted")[0]["item_ids"] == ["m-2"]

    catalog.calls.clear()
    result = proc.delete_items(["m-1", "m-3", "m-2"], force=True)
    assert catalog.calls == ["delete_where_in"]
    assert result.total_succeeded == 2
    assert [o.id for o in result.failed] == ["m-2"]
    assert catalog.list_items() == []


class _DownCatalog(InMemoryItemCatalog):
    def update_where_in(self, item_ids, fields):
        raise Fault("connection refused")


def test_store_fault_is_recorded_per_item_not_raised():
    catalog = _DownCatalog([_item(1), _item(2)])
    proc = BulkOperationsProcessor(InMemoryStockLedger(), catalog, RecordingPublisher(), static_actor(None))
    result = proc.toggle_active(["m-1", "m-2"], True)
    assert result.total_failed == 2
    assert {o.error for o in result.items} == {"connection refused"}


def test_empty_batches_report_zero_counts():
    proc, _, catalog, _ = _processor([_item(1)])
    for result in (proc.adjust_stock([]), proc.toggle_active([], True), proc.delete_items([])):
        assert (result.total_processed, result.total_succeeded, result.total_failed) == (0, 0, 0)
    assert catalog.calls == []


def test_export_catalog_uses_ledger_totals_across_locations():
    items = [_item(1), _item(2, is_active=False)]
    stock = {CellKey("m-1", "main"): Decimal("4.5"), CellKey("m-1", "branch"): Decimal("1"), CellKey("m-2", "main"): Decimal("0")}
    proc, _, _, _ = _processor(items, stock)

    rows = parse_csv(proc.export_catalog())
    by_id = {r["id"]: r for r in rows}
    assert by_id["m-1"]["stock"] == Decimal("5.50")
    assert by_id["m-2"]["stock"] == Decimal("0")
    assert by_id["m-2"]["is_active"] is False

    streamed = "".join(proc.iter_catalog_csv(["m-2"]))
    assert [r["id"] for r in parse_csv(streamed)] == ["m-2"]


def test_catalog_metadata_edits_are_last_write_wins_but_stock_is_protected():
    catalog = InMemoryItemCatalog([_item(1)])
    catalog.update_item("m-1", {"name": "First", "unit": "g"})
    updated = catalog.update_item("m-1", {"name": "Second"})
    assert updated.name == "Second"
    assert updated.unit == "g"
    assert updated.updated_at is not None
    with pytest.raises(ValidationError):
        catalog.update_item("m-1", {"stock": Decimal("99")})
    with pytest.raises(ValidationError):
        catalog.update_item("m-1", {"colour": "red"})
