"""
Wires the ledger, stores and publisher into the four engine services.

`build_engine()` uses PostgreSQL through the shared connection pool;
`build_memory_engine()` keeps everything in process (tests, scripts).
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache
from typing import Iterable, Mapping, Optional

from ..config import Settings, settings as default_settings
from ..db import get_conn
from .bulk import BulkOperationsProcessor
from .events import EventPublisher, LoggingPublisher, OutboxPublisher, RecordingPublisher
from .ledger import InMemoryStockLedger, KeyLike, StockLedger
from .models import BOMLine, InventoryItem
from .pg_store import PostgresBOMResolver, PostgresItemCatalog, PostgresReservationStore, PostgresStockLedger, PostgresTransferStore
from .reservations import ReservationRollbackCoordinator
from .stores import ActorProvider, InMemoryItemCatalog, InMemoryReservationStore, InMemoryTransferStore, StaticBOMResolver, static_actor
from .transfers import TransferWorkflow


@dataclass
class InventoryEngine:
    ledger: StockLedger
    publisher: EventPublisher
    transfers: TransferWorkflow
    bulk: BulkOperationsProcessor
    reservations: ReservationRollbackCoordinator


def _assemble(ledger, transfer_store, reservation_store, catalog, bom, publisher, actor: ActorProvider, cfg: Settings) -> InventoryEngine:
    return InventoryEngine(
        ledger=ledger,
        publisher=publisher,
        transfers=TransferWorkflow(
            ledger,
            transfer_store,
            publisher,
            actor,
            max_retries=cfg.cas_max_retries,
            partial_receipt_policy=cfg.partial_receipt_policy,
            min_stock_for=catalog.min_stock_for,
        ),
        bulk=BulkOperationsProcessor(ledger, catalog, publisher, actor, default_location_id=cfg.default_location_id),
        reservations=ReservationRollbackCoordinator(
            ledger,
            reservation_store,
            bom,
            publisher,
            location_id=cfg.default_location_id,
            min_stock_for=catalog.min_stock_for,
        ),
    )


def build_memory_engine(
    *,
    stock: Optional[Mapping[KeyLike, Decimal]] = None,
    items: Iterable[InventoryItem] = (),
    dependencies: Optional[Mapping[str, Mapping[str, int]]] = None,
    boms: Optional[Mapping[str, Iterable[BOMLine]]] = None,
    publisher: Optional[EventPublisher] = None,
    actor_id: Optional[str] = None,
    cfg: Optional[Settings] = None,
) -> InventoryEngine:
    return _assemble(
        InMemoryStockLedger(stock),
        InMemoryTransferStore(),
        InMemoryReservationStore(),
        InMemoryItemCatalog(items, dependencies),
        StaticBOMResolver(boms or {}),
        publisher if publisher is not None else RecordingPublisher(),
        static_actor(actor_id),
        cfg or default_settings,
    )


def build_engine(cfg: Optional[Settings] = None, connect=get_conn) -> InventoryEngine:
    cfg = cfg or default_settings
    publisher: EventPublisher = OutboxPublisher(connect) if cfg.events_sink == "outbox" else LoggingPublisher()
    return _assemble(
        PostgresStockLedger(connect),
        PostgresTransferStore(connect),
        PostgresReservationStore(connect),
        PostgresItemCatalog(connect),
        PostgresBOMResolver(connect),
        publisher,
        # Actors are passed explicitly per request by the HTTP layer.
        static_actor(None),
        cfg,
    )


@lru_cache(maxsize=1)
def get_engine() -> InventoryEngine:
    return build_engine()
