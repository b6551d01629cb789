from __future__ import annotations

import csv
import io
from typing import IO, Iterable, Iterator, List, Mapping, Union

from .errors import ValidationError
from .models import InventoryItem
from .precision import fmt_decimal, to_decimal


COLUMNS = ["id", "name", "category", "type", "stock", "unit", "unit_cost", "min_stock", "is_active"]
_DECIMAL_COLUMNS = {"stock", "unit_cost", "min_stock"}
_OPTIONAL_COLUMNS = {"category", "unit", "min_stock"}

ItemLike = Union[InventoryItem, Mapping]


def _as_item(obj: ItemLike) -> InventoryItem:
    if isinstance(obj, InventoryItem):
        return obj
    return InventoryItem.model_validate(obj)


def _row(item: InventoryItem) -> List[str]:
    return [
        item.id,
        item.name,
        item.category or "",
        item.type,
        fmt_decimal(item.stock),
        item.unit or "",
        fmt_decimal(item.unit_cost),
        fmt_decimal(item.min_stock),
        "true" if item.is_active else "false",
    ]


def _writer(fp: IO[str]):
    return csv.writer(fp, quoting=csv.QUOTE_ALL, lineterminator="\n")


def write_csv(items: Iterable[ItemLike], fp: IO[str]) -> int:
    """Stream items to `fp` one row at a time. Returns the number of data rows written."""
    writer = _writer(fp)
    writer.writerow(COLUMNS)
    n = 0
    for obj in items:
        writer.writerow(_row(_as_item(obj)))
        n += 1
    return n


def iter_csv_lines(items: Iterable[ItemLike]) -> Iterator[str]:
    # One small buffer reused per line: memory stays flat no matter how many items.
    buf = io.StringIO()
    writer = _writer(buf)

    def _take() -> str:
        line = buf.getvalue()
        buf.seek(0)
        buf.truncate(0)
        return line

    writer.writerow(COLUMNS)
    yield _take()
    for obj in items:
        writer.writerow(_row(_as_item(obj)))
        yield _take()


def export_to_csv(items: Iterable[ItemLike]) -> str:
    output = io.StringIO()
    write_csv(items, output)
    return output.getvalue()


def parse_csv(text: str) -> List[dict]:
    reader = csv.reader(io.StringIO(text))
    header = next(reader, None)
    if header is None:
        raise ValidationError("csv is empty")
    if [h.strip() for h in header] != COLUMNS:
        raise ValidationError(f"unexpected csv header: {','.join(header)}", expected=",".join(COLUMNS))
    out: List[dict] = []
    for lineno, row in enumerate(reader, start=2):
        if not row or not any(c.strip() for c in row):
            continue
        if len(row) != len(COLUMNS):
            raise ValidationError(f"line {lineno}: expected {len(COLUMNS)} fields, got {len(row)}", line=lineno)
        rec: dict = {}
        for col, raw in zip(COLUMNS, row):
            if col in _OPTIONAL_COLUMNS and raw == "":
                rec[col] = None
            elif col in _DECIMAL_COLUMNS:
                try:
                    rec[col] = to_decimal(raw, field=col)
                except ValueError as ex:
                    raise ValidationError(f"line {lineno}: {ex}", line=lineno)
            elif col == "is_active":
                rec[col] = raw.strip().lower() == "true"
            else:
                rec[col] = raw
        out.append(rec)
    return out
