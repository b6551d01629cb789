"""
PostgreSQL implementations of the ledger and record stores (psycopg 3).

`connect` is a zero-arg callable returning a connection context manager that
commits on success and rolls back on error (`backend.app.db.get_conn`).
Rows are read with dict_row. Connection-level failures surface as Fault.

A status transition is one transaction: the record row is locked FOR UPDATE,
the transition's effect runs, then the row is updated. Ledger calls made from
the effect join that transaction (their own blocks become savepoints), so the
stock movement and the status change commit or roll back together.

Tables: backend/db/migrations/001_inventory_engine.sql
"""
from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Mapping, Optional

import psycopg
from psycopg import errors as pg_errors

from .errors import Fault, InsufficientStock, InvalidState, ItemNotFound, TransferNotFound, ValidationError
from .ledger import KeyLike, _merge_deltas, _positive, as_key
from .models import BOMLine, CellKey, InventoryItem, Reservation, ReservationLine, ReservationStatus, StockCell, Transfer, TransferStatus
from .precision import ZERO, to_decimal
from .stores import Effect, check_item_fields


# Connection of the store transition in progress in this thread/task.
_unit_conn: ContextVar = ContextVar("inventory_unit_conn", default=None)


@contextmanager
def _guard(op: str):
    try:
        yield
    except psycopg.OperationalError as exc:
        raise Fault(f"inventory store unavailable during {op}: {exc}", operation=op) from exc


@contextmanager
def _connection(connect: Callable):
    conn = _unit_conn.get()
    if conn is not None:
        yield conn
        return
    with connect() as conn:
        yield conn


@contextmanager
def _unit(connect: Callable):
    with connect() as conn:
        with conn.transaction():
            token = _unit_conn.set(conn)
            try:
                yield conn
            finally:
                _unit_conn.reset(token)


def _dec(v) -> Decimal:
    return Decimal(str(v if v is not None else 0))


def _record_move(cur, key: CellKey, delta: Decimal, source_type: str = "ledger") -> None:
    cur.execute(
        """
        INSERT INTO stock_moves (id, item_id, location_id, qty_in, qty_out, source_type)
        VALUES (gen_random_uuid(), %s, %s, %s, %s, %s)
        """,
        (key.item_id, key.location_id, delta if delta > 0 else ZERO, -delta if delta < 0 else ZERO, source_type),
    )


def _read_cell(cur, key: CellKey, *, for_update: bool = False) -> StockCell:
    lock = "FOR UPDATE" if for_update else ""
    cur.execute(
        f"""
        SELECT quantity, version
        FROM stock_cells
        WHERE item_id=%s AND location_id=%s
        {lock}
        """,
        (key.item_id, key.location_id),
    )
    row = cur.fetchone()
    if not row:
        return StockCell(item_id=key.item_id, location_id=key.location_id, quantity=ZERO, version=0)
    return StockCell(item_id=key.item_id, location_id=key.location_id, quantity=_dec(row["quantity"]), version=int(row["version"]))


class PostgresStockLedger:
    def __init__(self, connect: Callable):
        self._connect = connect

    def read(self, key: KeyLike) -> Decimal:
        return self.read_versioned(key).quantity

    def read_versioned(self, key: KeyLike) -> StockCell:
        k = as_key(key)
        with _guard("read"):
            with _connection(self._connect) as conn:
                with conn.cursor() as cur:
                    return _read_cell(cur, k)

    def compare_and_set(self, key: KeyLike, expected_version: int, delta) -> Optional[StockCell]:
        k = as_key(key)
        d = to_decimal(delta)
        with _guard("compare_and_set"):
            with _connection(self._connect) as conn:
                with conn.transaction():
                    with conn.cursor() as cur:
                        if expected_version == 0:
                            if d < 0:
                                raise InsufficientStock(k.item_id, k.location_id, -d, ZERO)
                            cur.execute(
                                """
                                INSERT INTO stock_cells (item_id, location_id, quantity, version, updated_at)
                                VALUES (%s, %s, %s, 1, now())
                                ON CONFLICT (item_id, location_id) DO NOTHING
                                RETURNING quantity, version
                                """,
                                (k.item_id, k.location_id, d),
                            )
                        else:
                            cur.execute(
                                """
                                UPDATE stock_cells
                                SET quantity = quantity + %s, version = version + 1, updated_at = now()
                                WHERE item_id=%s AND location_id=%s AND version=%s AND quantity + %s >= 0
                                RETURNING quantity, version
                                """,
                                (d, k.item_id, k.location_id, expected_version, d),
                            )
                        row = cur.fetchone()
                        if not row:
                            current = _read_cell(cur, k)
                            if current.version != expected_version:
                                return None
                            raise InsufficientStock(k.item_id, k.location_id, -d, current.quantity)
                        _record_move(cur, k, d)
                        return StockCell(item_id=k.item_id, location_id=k.location_id, quantity=_dec(row["quantity"]), version=int(row["version"]))

    def increment(self, key: KeyLike, amount) -> StockCell:
        return self.apply_delta(key, _positive(amount))

    def decrement(self, key: KeyLike, amount) -> StockCell:
        return self.apply_delta(key, -_positive(amount))

    def apply_delta(self, key: KeyLike, delta) -> StockCell:
        k = as_key(key)
        d = to_decimal(delta)
        with _guard("apply_delta"):
            with _connection(self._connect) as conn:
                with conn.transaction():
                    with conn.cursor() as cur:
                        if d >= 0:
                            cur.execute(
                                """
                                INSERT INTO stock_cells (item_id, location_id, quantity, version, updated_at)
                                VALUES (%s, %s, %s, 1, now())
                                ON CONFLICT (item_id, location_id) DO UPDATE
                                  SET quantity = stock_cells.quantity + EXCLUDED.quantity,
                                      version = stock_cells.version + 1,
                                      updated_at = now()
                                RETURNING quantity, version
                                """,
                                (k.item_id, k.location_id, d),
                            )
                        else:
                            cur.execute(
                                """
                                UPDATE stock_cells
                                SET quantity = quantity + %s, version = version + 1, updated_at = now()
                                WHERE item_id=%s AND location_id=%s AND quantity + %s >= 0
                                RETURNING quantity, version
                                """,
                                (d, k.item_id, k.location_id, d),
                            )
                        row = cur.fetchone()
                        if not row:
                            current = _read_cell(cur, k)
                            raise InsufficientStock(k.item_id, k.location_id, -d, current.quantity)
                        _record_move(cur, k, d)
                        return StockCell(item_id=k.item_id, location_id=k.location_id, quantity=_dec(row["quantity"]), version=int(row["version"]))

    def apply_deltas(self, deltas: Mapping[KeyLike, Decimal]) -> Dict[CellKey, StockCell]:
        normalized = _merge_deltas(deltas.items())
        if not normalized:
            return {}
        ordered = sorted(normalized)
        with _guard("apply_deltas"):
            with _connection(self._connect) as conn:
                with conn.transaction():
                    with conn.cursor() as cur:
                        # Row locks in key order: overlapping callers queue, disjoint ones don't touch.
                        current = {k: _read_cell(cur, k, for_update=True) for k in ordered}
                        for k in ordered:
                            if current[k].quantity + normalized[k] < 0:
                                raise InsufficientStock(k.item_id, k.location_id, -normalized[k], current[k].quantity)
                        out: Dict[CellKey, StockCell] = {}
                        for k in ordered:
                            cur.execute(
                                """
                                INSERT INTO stock_cells (item_id, location_id, quantity, version, updated_at)
                                VALUES (%s, %s, %s, 1, now())
                                ON CONFLICT (item_id, location_id) DO UPDATE
                                  SET quantity = stock_cells.quantity + EXCLUDED.quantity,
                                      version = stock_cells.version + 1,
                                      updated_at = now()
                                RETURNING quantity, version
                                """,
                                (k.item_id, k.location_id, normalized[k]),
                            )
                            row = cur.fetchone()
                            _record_move(cur, k, normalized[k])
                            out[k] = StockCell(item_id=k.item_id, location_id=k.location_id, quantity=_dec(row["quantity"]), version=int(row["version"]))
                        return out

    def total_for_item(self, item_id: str) -> Decimal:
        with _guard("total_for_item"):
            with _connection(self._connect) as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT COALESCE(SUM(quantity), 0) AS total FROM stock_cells WHERE item_id=%s", (item_id,))
                    return _dec((cur.fetchone() or {}).get("total"))

    def snapshot(self) -> Dict[CellKey, Decimal]:
        with _guard("snapshot"):
            with _connection(self._connect) as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT item_id, location_id, quantity FROM stock_cells ORDER BY item_id, location_id")
                    return {CellKey(r["item_id"], r["location_id"]): _dec(r["quantity"]) for r in cur.fetchall()}


_TRANSFER_COLUMNS = (
    "quantity_received", "status", "approved_by", "approved_at", "cancelled_by", "cancelled_at",
    "received_by", "received_at", "notes", "shortfall", "shortfall_disposition",
)


def _db_value(v):
    return v.value if hasattr(v, "value") else v


class PostgresTransferStore:
    def __init__(self, connect: Callable):
        self._connect = connect

    def add(self, transfer: Transfer) -> Transfer:
        with _guard("transfer.add"):
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        INSERT INTO inventory_transfers
                          (id, source_location_id, destination_location_id, item_id, quantity_requested,
                           status, requested_at, requested_by, notes, version)
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, 0)
                        RETURNING *
                        """,
                        (
                            transfer.id,
                            transfer.source_location_id,
                            transfer.destination_location_id,
                            transfer.item_id,
                            transfer.quantity_requested,
                            transfer.status.value,
                            transfer.requested_at,
                            transfer.requested_by,
                            transfer.notes,
                        ),
                    )
                    return Transfer.model_validate(cur.fetchone())

    def get(self, transfer_id: str) -> Optional[Transfer]:
        with _guard("transfer.get"):
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT * FROM inventory_transfers WHERE id=%s", (transfer_id,))
                    row = cur.fetchone()
                    return Transfer.model_validate(row) if row else None

    def transition(
        self, transfer_id: str, expected: TransferStatus, *, effect: Optional[Effect] = None, **changes
    ) -> Optional[Transfer]:
        unknown = sorted(set(changes) - set(_TRANSFER_COLUMNS))
        if unknown:
            raise ValueError(f"unknown transfer columns: {', '.join(unknown)}")
        sets = [f"{k}=%s" for k in changes]
        params = [_db_value(v) for v in changes.values()]
        params.append(transfer_id)
        with _guard("transfer.transition"):
            with _unit(self._connect) as conn:
                with conn.cursor() as cur:
                    # Concurrent transitions of this transfer queue on the row lock.
                    cur.execute("SELECT * FROM inventory_transfers WHERE id=%s FOR UPDATE", (transfer_id,))
                    row = cur.fetchone()
                    if not row:
                        raise TransferNotFound(transfer_id)
                    current = Transfer.model_validate(row)
                    if current.status != TransferStatus(expected):
                        return None
                    if effect is not None:
                        effect(current)
                    cur.execute(
                        f"""
                        UPDATE inventory_transfers
                        SET {', '.join(sets + ['version = version + 1'])}
                        WHERE id=%s
                        RETURNING *
                        """,
                        params,
                    )
                    return Transfer.model_validate(cur.fetchone())

    def list_by_location(self, location_id: str, direction: str = "both") -> List[Transfer]:
        if direction == "outgoing":
            where, params = "source_location_id=%s", [location_id]
        elif direction == "incoming":
            where, params = "destination_location_id=%s", [location_id]
        else:
            where, params = "(source_location_id=%s OR destination_location_id=%s)", [location_id, location_id]
        with _guard("transfer.list"):
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(f"SELECT * FROM inventory_transfers WHERE {where} ORDER BY requested_at DESC", params)
                    return [Transfer.model_validate(r) for r in cur.fetchall()]


class PostgresReservationStore:
    def __init__(self, connect: Callable):
        self._connect = connect

    def _load(self, cur, order_id: str, *, for_update: bool = False) -> Optional[Reservation]:
        lock = "FOR UPDATE" if for_update else ""
        cur.execute(
            f"SELECT order_id, status, created_at, rolled_back_at, finalized_at FROM reservations WHERE order_id=%s {lock}",
            (order_id,),
        )
        row = cur.fetchone()
        if not row:
            return None
        cur.execute(
            """
            SELECT material_id, location_id, amount
            FROM reservation_lines
            WHERE order_id=%s
            ORDER BY line_no ASC
            """,
            (order_id,),
        )
        lines = [ReservationLine(material_id=r["material_id"], location_id=r["location_id"], amount=_dec(r["amount"])) for r in cur.fetchall()]
        return Reservation(lines=lines, **row)

    def claim(self, reservation: Reservation, *, effect: Optional[Effect] = None) -> Reservation:
        oid = reservation.order_id
        claimed = reservation.model_copy(update={"status": ReservationStatus.ACTIVE})
        with _guard("reservation.claim"):
            try:
                with _unit(self._connect) as conn:
                    with conn.cursor() as cur:
                        cur.execute("SELECT status FROM reservations WHERE order_id=%s FOR UPDATE", (oid,))
                        row = cur.fetchone()
                        if row and row["status"] != ReservationStatus.ROLLED_BACK.value:
                            raise InvalidState(oid, row["status"], "deduct")
                        if row:
                            cur.execute("DELETE FROM reservations WHERE order_id=%s", (oid,))
                        cur.execute(
                            "INSERT INTO reservations (order_id, status, created_at) VALUES (%s, %s, %s)",
                            (oid, ReservationStatus.ACTIVE.value, reservation.created_at),
                        )
                        for idx, line in enumerate(reservation.lines, start=1):
                            cur.execute(
                                """
                                INSERT INTO reservation_lines (order_id, line_no, material_id, location_id, amount)
                                VALUES (%s, %s, %s, %s, %s)
                                """,
                                (oid, idx, line.material_id, line.location_id, line.amount),
                            )
                        if effect is not None:
                            effect(claimed)
            except pg_errors.UniqueViolation:
                # A concurrent deduction for the same order inserted first.
                raise InvalidState(oid, ReservationStatus.ACTIVE.value, "deduct")
        return claimed

    def get(self, order_id: str) -> Optional[Reservation]:
        with _guard("reservation.get"):
            with self._connect() as conn:
                with conn.cursor() as cur:
                    return self._load(cur, order_id)

    def transition(
        self,
        order_id: str,
        expected: ReservationStatus,
        new: ReservationStatus,
        *,
        effect: Optional[Effect] = None,
        **changes,
    ) -> Optional[Reservation]:
        allowed = {"rolled_back_at", "finalized_at"}
        unknown = sorted(set(changes) - allowed)
        if unknown:
            raise ValueError(f"unknown reservation columns: {', '.join(unknown)}")
        sets = ["status=%s"] + [f"{k}=%s" for k in changes]
        params = [ReservationStatus(new).value, *changes.values(), order_id]
        with _guard("reservation.transition"):
            with _unit(self._connect) as conn:
                with conn.cursor() as cur:
                    current = self._load(cur, order_id, for_update=True)
                    if current is None or current.status != ReservationStatus(expected):
                        return None
                    if effect is not None:
                        effect(current)
                    cur.execute(f"UPDATE reservations SET {', '.join(sets)} WHERE order_id=%s", params)
                    return self._load(cur, order_id)


_ITEM_COLUMNS = "id, name, category, type, unit, unit_cost, min_stock, supplier_id, location_id, is_active, updated_at"


class PostgresItemCatalog:
    def __init__(self, connect: Callable):
        self._connect = connect

    def get(self, item_id: str) -> Optional[InventoryItem]:
        return self.get_many([item_id]).get(item_id)

    def get_many(self, item_ids: Iterable[str]) -> Dict[str, InventoryItem]:
        ids = sorted({str(i) for i in item_ids})
        if not ids:
            return {}
        with _guard("items.get_many"):
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(f"SELECT {_ITEM_COLUMNS} FROM items WHERE id = ANY(%s)", (ids,))
                    return {r["id"]: InventoryItem.model_validate(r) for r in cur.fetchall()}

    def list_items(self) -> List[InventoryItem]:
        with _guard("items.list"):
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(f"SELECT {_ITEM_COLUMNS} FROM items ORDER BY name ASC")
                    return [InventoryItem.model_validate(r) for r in cur.fetchall()]

    def min_stock_for(self, item_id: str, location_id: str) -> Optional[Decimal]:
        item = self.get(item_id)
        return item.min_stock if item is not None else None

    def update_item(self, item_id: str, fields: Mapping) -> InventoryItem:
        data = check_item_fields(fields)
        if not data:
            item = self.get(item_id)
            if item is None:
                raise ItemNotFound(item_id)
            return item
        sets = [f"{k}=%s" for k in data] + ["updated_at=now()"]
        with _guard("items.update"):
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"UPDATE items SET {', '.join(sets)} WHERE id=%s RETURNING {_ITEM_COLUMNS}",
                        [*data.values(), item_id],
                    )
                    row = cur.fetchone()
                    if not row:
                        raise ItemNotFound(item_id)
                    return InventoryItem.model_validate(row)

    def update_where_in(self, item_ids: List[str], fields: Mapping) -> List[str]:
        data = check_item_fields(fields)
        if not item_ids:
            return []
        sets = [f"{k}=%s" for k in data] + ["updated_at=now()"]
        with _guard("items.update_where_in"):
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"UPDATE items SET {', '.join(sets)} WHERE id = ANY(%s) RETURNING id",
                        [*data.values(), list(item_ids)],
                    )
                    return [r["id"] for r in cur.fetchall()]

    def dependency_counts(self, item_ids: List[str]) -> Dict[str, Dict[str, int]]:
        out: Dict[str, Dict[str, int]] = {i: {} for i in item_ids}
        if not item_ids:
            return out
        with _guard("items.dependency_counts"):
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        SELECT item_id, COUNT(*) AS n
                        FROM stock_moves
                        WHERE item_id = ANY(%s)
                        GROUP BY item_id
                        """,
                        (list(item_ids),),
                    )
                    for r in cur.fetchall():
                        out.setdefault(r["item_id"], {})["stock_entries"] = int(r["n"])
                    cur.execute(
                        """
                        SELECT material_id, COUNT(*) AS n
                        FROM bom_lines
                        WHERE material_id = ANY(%s)
                        GROUP BY material_id
                        """,
                        (list(item_ids),),
                    )
                    for r in cur.fetchall():
                        out.setdefault(r["material_id"], {})["recipe_items"] = int(r["n"])
        return out

    def delete_where_in(self, item_ids: List[str]) -> List[str]:
        if not item_ids:
            return []
        with _guard("items.delete_where_in"):
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute("DELETE FROM items WHERE id = ANY(%s) RETURNING id", (list(item_ids),))
                    return [r["id"] for r in cur.fetchall()]


class PostgresBOMResolver:
    def __init__(self, connect: Callable):
        self._connect = connect

    def resolve(self, product_id: str, quantity) -> List[BOMLine]:
        with _guard("bom.resolve"):
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        SELECT material_id, quantity_per_unit
                        FROM bom_lines
                        WHERE product_id=%s
                        ORDER BY line_no ASC
                        """,
                        (product_id,),
                    )
                    rows = cur.fetchall()
        if not rows:
            raise ValidationError(f"no bill of materials for product {product_id}", product_id=product_id)
        return [BOMLine(material_id=r["material_id"], quantity_per_unit=_dec(r["quantity_per_unit"])) for r in rows]
