import io
import tracemalloc
from decimal import Decimal

import pytest

from backend.app.inventory.csv_export import COLUMNS, export_to_csv, iter_csv_lines, parse_csv, write_csv
from backend.app.inventory.errors import ValidationError
from backend.app.inventory.models import InventoryItem
from backend.app.inventory.precision import fmt_decimal


def test_fmt_decimal_keeps_two_places_without_rounding():
    assert fmt_decimal(Decimal("100")) == "100.00"
    assert fmt_decimal(Decimal("50.5")) == "50.50"
    assert fmt_decimal(Decimal("0.125")) == "0.125"
    assert fmt_decimal(None) == ""


def test_export_quotes_every_field_and_escapes_embedded_quotes():
    item = InventoryItem(
        id="m-1",
        name='Flour, "00" grade',
        category="dry goods",
        type="MEASURABLE",
        stock=Decimal("12.5"),
        unit="kg",
        unit_cost=Decimal("0.8"),
    )
    text = export_to_csv([item])
    header, row = text.splitlines()
    assert header == ",".join(f'"{c}"' for c in COLUMNS)
    assert row == '"m-1","Flour, ""00"" grade","dry goods","MEASURABLE","12.50","kg","0.80","","true"'


def test_empty_list_exports_header_only():
    assert export_to_csv([]) == ",".join(f'"{c}"' for c in COLUMNS) + "\n"


def test_round_trip_reproduces_exported_fields():
    items = [
        InventoryItem(id="a", name="Sugar", category=None, type="COUNTABLE", stock=Decimal("3"), unit=None, unit_cost=Decimal("1.25"), min_stock=Decimal("2"), is_active=False),
        InventoryItem(id="b", name="Line\nbreak, comma", category="x", type="MEASURABLE", stock=Decimal("0.0005"), unit="g", unit_cost=Decimal("0")),
        {"id": "c", "name": "Dict item", "type": "countable", "stock": "7.10", "unit_cost": 2},
    ]
    rows = parse_csv(export_to_csv(items))
    assert len(rows) == 3
    for row, src in zip(rows, items):
        src = src if isinstance(src, InventoryItem) else InventoryItem.model_validate(src)
        for col in COLUMNS:
            assert row[col] == getattr(src, col), col


def test_blank_labels_read_back_as_unset():
    items = [InventoryItem(id="a", name="Salt", category="", unit="  ", unit_cost=Decimal("1"))]
    assert items[0].category is None
    assert items[0].unit is None
    (row,) = parse_csv(export_to_csv(items))
    assert row["category"] is None and row["unit"] is None
    assert InventoryItem.model_validate(row) == items[0]


def test_parse_rejects_bad_header_and_ragged_rows():
    with pytest.raises(ValidationError):
        parse_csv("")
    with pytest.raises(ValidationError):
        parse_csv('"name","stock"\n"a","1"\n')
    good_header = ",".join(COLUMNS)
    with pytest.raises(ValidationError) as exc_info:
        parse_csv(good_header + "\n" + "a,b,c\n")
    assert exc_info.value.context["line"] == 2
    with pytest.raises(ValidationError):
        parse_csv(good_header + "\n" + "a,Sugar,,COUNTABLE,lots,,1.00,,true\n")


def test_iter_lines_matches_full_export():
    items = [InventoryItem(id=f"i-{n}", name=f"Item {n}", unit_cost=Decimal(n)) for n in range(50)]
    assert "".join(iter_csv_lines(items)) == export_to_csv(items)


def test_streaming_export_of_5000_items_stays_within_memory_bound():
    def items():
        for n in range(5000):
            yield InventoryItem(
                id=f"item-{n:05d}",
                name=f"Material number {n}",
                category="bulk",
                type="COUNTABLE",
                stock=Decimal(n),
                unit="pcs",
                unit_cost=Decimal("2.75"),
            )

    sink = io.StringIO()
    tracemalloc.start()
    try:
        written = write_csv(items(), sink)
        _, peak = tracemalloc.get_traced_memory()
    finally:
        tracemalloc.stop()

    text = sink.getvalue()
    assert written == 5000
    assert len(text.splitlines()) == 5001
    # Output buffer included; items are never held all at once.
    assert peak < 10 * len(text)
