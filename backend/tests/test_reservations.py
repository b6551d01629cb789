import copy
import threading
from decimal import Decimal

import pytest

from backend.app.inventory.errors import Fault, InsufficientStock, InvalidQuantity, InvalidState, ValidationError
from backend.app.inventory.events import RecordingPublisher
from backend.app.inventory.ledger import InMemoryStockLedger
from backend.app.inventory.models import BOMLine, CellKey, OrderItem, ReservationStatus
from backend.app.inventory.reservations import NOTHING_TO_RESTORE, ReservationRollbackCoordinator, validate_stock
from backend.app.inventory.stores import InMemoryReservationStore, StaticBOMResolver


BOMS = {
    "bread": [BOMLine(material_id="flour", quantity_per_unit=Decimal("0.5")), BOMLine(material_id="yeast", quantity_per_unit=Decimal("0.01"))],
    "cake": [BOMLine(material_id="flour", quantity_per_unit=Decimal("0.3")), BOMLine(material_id="sugar", quantity_per_unit=Decimal("0.2"))],
    "tea": [BOMLine(material_id="leaves", quantity_per_unit=Decimal("0.005"))],
}


def _coordinator(stock, **kwargs):
    ledger = InMemoryStockLedger({CellKey(m, "main"): Decimal(q) for m, q in stock.items()})
    store = InMemoryReservationStore()
    publisher = RecordingPublisher()
    coord = ReservationRollbackCoordinator(ledger, store, StaticBOMResolver(BOMS), publisher, **kwargs)
    return coord, ledger, store, publisher


def _qty(ledger, material):
    return ledger.read(CellKey(material, "main"))


def test_validate_stock_reports_shortfalls_and_low_stock_warnings():
    order = [
        {"product_id": "bread", "quantity": "10", "materials": [{"material_id": "flour", "quantity_per_unit": "0.5"}]},
        {"product_id": "cake", "quantity": "5", "materials": [{"material_id": "flour", "quantity_per_unit": "0.3"}, {"material_id": "sugar", "quantity_per_unit": "0.2"}]},
        {"product_id": "tea", "quantity": "1", "materials": [{"material_id": "leaves", "quantity_per_unit": "1"}]},
    ]
    stock = [
        {"material_id": "flour", "name": "Flour", "current_stock": "8", "min_stock": "2"},
        {"material_id": "sugar", "name": "Sugar", "current_stock": "1.5", "min_stock": "1"},
    ]
    frozen = copy.deepcopy((order, stock))

    result = validate_stock(order, stock)

    assert not result.valid
    by_id = {m.material_id: m for m in result.insufficient_items}
    # 10*0.5 + 5*0.3 = 6.5 flour: enough, but leaves 1.5 < min 2.
    assert "flour" not in by_id
    assert by_id["leaves"].available == Decimal("0")
    assert by_id["leaves"].shortfall == Decimal("1")
    (warning,) = [w for w in result.warnings if w.material_id == "flour"]
    assert warning.remaining == Decimal("1.5")
    # sugar: 1.5 - 1.0 = 0.5 < 1
    assert {w.material_id for w in result.warnings} == {"flour", "sugar"}

    # Pure: same answer twice, inputs untouched.
    assert validate_stock(order, stock) == result
    assert (order, stock) == frozen


def test_validate_stock_valid_when_everything_covered():
    order = [OrderItem(product_id="tea", quantity=Decimal("2"), materials=BOMS["tea"])]
    result = validate_stock(order, [{"material_id": "leaves", "current_stock": "1"}])
    assert result.valid
    assert result.insufficient_items == []
    assert result.warnings == []


def test_deduct_stock_resolves_bom_and_aggregates_materials():
    coord, ledger, store, publisher = _coordinator({"flour": "10", "yeast": "1", "sugar": "5"})
    lines = coord.deduct_stock("o-1", [{"product_id": "bread", "quantity": 4}, {"product_id": "cake", "quantity": 10}])

    amounts = {l.material_id: l.amount for l in lines}
    assert amounts == {"flour": Decimal("5.0"), "yeast": Decimal("0.04"), "sugar": Decimal("2.0")}
    assert _qty(ledger, "flour") == Decimal("5.0")
    assert _qty(ledger, "yeast") == Decimal("0.96")
    assert {l.material_id: l.new_stock for l in lines}["sugar"] == Decimal("3.0")
    assert store.get("o-1").status == ReservationStatus.ACTIVE
    (event,) = publisher.of_type("fulfillment.stock_deducted")
    assert event["order_id"] == "o-1"


def test_deduct_stock_is_all_or_nothing():
    coord, ledger, store, _ = _coordinator({"flour": "10", "yeast": "0.01"})
    with pytest.raises(InsufficientStock) as exc_info:
        coord.deduct_stock("o-1", [{"product_id": "bread", "quantity": 2}])
    assert exc_info.value.item_id == "yeast"
    assert _qty(ledger, "flour") == Decimal("10")
    assert _qty(ledger, "yeast") == Decimal("0.01")
    assert store.get("o-1") is None

    # The failed attempt left nothing behind, so a later deduction can go through.
    ledger.increment(CellKey("yeast", "main"), Decimal("1"))
    coord.deduct_stock("o-1", [{"product_id": "bread", "quantity": 2}])
    assert _qty(ledger, "flour") == Decimal("9.0")


def test_deduct_stock_rejects_bad_input_before_touching_stock():
    coord, ledger, _, _ = _coordinator({"flour": "10"})
    with pytest.raises(ValidationError):
        coord.deduct_stock("o-1", [])
    with pytest.raises(InvalidQuantity):
        coord.deduct_stock("o-1", [{"product_id": "bread", "quantity": 0}])
    with pytest.raises(ValidationError):
        coord.deduct_stock("o-1", [{"product_id": "unknown", "quantity": 1}])
    assert _qty(ledger, "flour") == Decimal("10")


def test_second_deduction_for_same_order_is_refused():
    coord, ledger, _, _ = _coordinator({"leaves": "1"})
    coord.deduct_stock("o-1", [{"product_id": "tea", "quantity": 10}])
    with pytest.raises(InvalidState):
        coord.deduct_stock("o-1", [{"product_id": "tea", "quantity": 10}])
    assert _qty(ledger, "leaves") == Decimal("0.950")


def test_rollback_restores_once_then_reports_nothing_to_restore():
    coord, ledger, store, publisher = _coordinator({"flour": "10", "yeast": "1"})
    deducted = coord.deduct_stock("o-1", [{"product_id": "bread", "quantity": 4}])

    first = coord.rollback_stock("o-1", deducted)
    assert first.restored
    assert {l.material_id for l in first.lines} == {"flour", "yeast"}
    assert _qty(ledger, "flour") == Decimal("10.0")
    assert _qty(ledger, "yeast") == Decimal("1.00")
    assert store.get("o-1").status == ReservationStatus.ROLLED_BACK
    assert store.get("o-1").rolled_back_at is not None

    second = coord.rollback_stock("o-1")
    assert not second.restored
    assert second.reason == NOTHING_TO_RESTORE
    assert _qty(ledger, "flour") == Decimal("10.0")
    assert len(publisher.of_type("fulfillment.stock_restored")) == 1


def test_rollback_of_unknown_order_restores_nothing():
    coord, _, _, _ = _coordinator({})
    result = coord.rollback_stock("never-deducted")
    assert not result.restored
    assert result.reason == NOTHING_TO_RESTORE


def test_rollback_refuses_materials_the_order_did_not_deduct():
    coord, ledger, store, _ = _coordinator({"leaves": "1", "flour": "5"})
    coord.deduct_stock("o-1", [{"product_id": "tea", "quantity": 2}])
    with pytest.raises(ValidationError):
        coord.rollback_stock("o-1", [{"material_id": "flour", "amount": "5"}])
    assert store.get("o-1").status == ReservationStatus.ACTIVE
    assert _qty(ledger, "flour") == Decimal("5")


def test_finalized_reservation_cannot_be_rolled_back():
    coord, ledger, _, _ = _coordinator({"leaves": "1"})
    coord.deduct_stock("o-1", [{"product_id": "tea", "quantity": 100}])
    assert coord.finalize_reservation("o-1") is True
    assert coord.finalize_reservation("o-1") is False
    result = coord.rollback_stock("o-1")
    assert not result.restored
    assert _qty(ledger, "leaves") == Decimal("0.500")
    with pytest.raises(InvalidState):
        coord.deduct_stock("o-1", [{"product_id": "tea", "quantity": 1}])


def test_order_can_be_deducted_again_after_rollback():
    coord, ledger, store, _ = _coordinator({"leaves": "1"})
    coord.deduct_stock("o-1", [{"product_id": "tea", "quantity": 20}])
    coord.rollback_stock("o-1")
    coord.deduct_stock("o-1", [{"product_id": "tea", "quantity": 40}])
    assert _qty(ledger, "leaves") == Decimal("0.800")
    assert store.get("o-1").status == ReservationStatus.ACTIVE


def test_low_stock_event_after_deduction():
    coord, _, _, publisher = _coordinator({"leaves": "1"}, min_stock_for=lambda m, loc: Decimal("0.9"))
    coord.deduct_stock("o-1", [{"product_id": "tea", "quantity": 40}])
    (event,) = publisher.of_type("materials.low_stock")
    assert event["item_id"] == "leaves"
    assert event["stock"] == Decimal("0.800")


def _run_all(targets):
    threads = [threading.Thread(target=t) for t in targets]
    for th in threads:
        th.start()
    for th in threads:
        th.join()


def test_concurrent_deductions_on_disjoint_materials_both_apply():
    coord, ledger, _, _ = _coordinator({"flour": "10", "yeast": "1", "leaves": "1"})
    errors = []

    def bread():
        try:
            coord.deduct_stock("o-bread", [{"product_id": "bread", "quantity": 10}])
        except Exception as ex:
            errors.append(ex)

    def tea():
        try:
            coord.deduct_stock("o-tea", [{"product_id": "tea", "quantity": 100}])
        except Exception as ex:
            errors.append(ex)

    _run_all([bread, tea])
    assert errors == []
    assert _qty(ledger, "flour") == Decimal("5.0")
    assert _qty(ledger, "yeast") == Decimal("0.90")
    assert _qty(ledger, "leaves") == Decimal("0.500")


def test_concurrent_deductions_never_oversell():
    coord, ledger, _, _ = _coordinator({"leaves": "1"})
    done = []
    lock = threading.Lock()

    def order(n):
        def run():
            try:
                coord.deduct_stock(f"o-{n}", [{"product_id": "tea", "quantity": 60}])
                with lock:
                    done.append(n)
            except InsufficientStock:
                pass
        return run

    _run_all([order(n) for n in range(10)])
    # 60 * 0.005 = 0.3 per order: at most three fit in 1.
    assert len(done) == 3
    assert _qty(ledger, "leaves") == Decimal("0.100")


def test_concurrent_rollbacks_restore_exactly_once():
    coord, ledger, _, _ = _coordinator({"flour": "10", "yeast": "1"})
    coord.deduct_stock("o-1", [{"product_id": "bread", "quantity": 4}])
    results = []

    _run_all([lambda: results.append(coord.rollback_stock("o-1")) for _ in range(8)])

    assert sum(1 for r in results if r.restored) == 1
    assert _qty(ledger, "flour") == Decimal("10.0")
    assert _qty(ledger, "yeast") == Decimal("1.00")


class _FaultyLedger(InMemoryStockLedger):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.faults = 0

    def apply_deltas(self, deltas):
        if self.faults > 0:
            self.faults -= 1
            raise Fault("inventory store unavailable during apply_deltas", operation="apply_deltas")
        return super().apply_deltas(deltas)


def _faulty_coordinator(stock):
    ledger = _FaultyLedger({CellKey(m, "main"): Decimal(q) for m, q in stock.items()})
    store = InMemoryReservationStore()
    coord = ReservationRollbackCoordinator(ledger, store, StaticBOMResolver(BOMS), RecordingPublisher())
    return coord, ledger, store


def test_fault_during_deduction_records_no_reservation():
    coord, ledger, store = _faulty_coordinator({"flour": "10", "yeast": "1"})
    ledger.faults = 1
    with pytest.raises(Fault):
        coord.deduct_stock("o-1", [{"product_id": "bread", "quantity": 2}])
    assert store.get("o-1") is None
    assert _qty(ledger, "flour") == Decimal("10")

    coord.deduct_stock("o-1", [{"product_id": "bread", "quantity": 2}])
    assert store.get("o-1").status == ReservationStatus.ACTIVE
    assert _qty(ledger, "flour") == Decimal("9.0")


def test_fault_during_rollback_keeps_reservation_active_and_retry_restores_once():
    coord, ledger, store = _faulty_coordinator({"flour": "10", "yeast": "1"})
    coord.deduct_stock("o-1", [{"product_id": "bread", "quantity": 2}])
    ledger.faults = 1
    with pytest.raises(Fault):
        coord.rollback_stock("o-1")
    assert store.get("o-1").status == ReservationStatus.ACTIVE
    assert _qty(ledger, "flour") == Decimal("9.0")

    assert coord.rollback_stock("o-1").restored
    assert not coord.rollback_stock("o-1").restored
    assert _qty(ledger, "flour") == Decimal("10.0")
    assert store.get("o-1").status == ReservationStatus.ROLLED_BACK
