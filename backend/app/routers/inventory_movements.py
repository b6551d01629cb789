from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.encoders import jsonable_encoder
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from typing import List, Optional
from decimal import Decimal
from contextlib import contextmanager

from ..deps import get_current_user, require_permission
from ..validation import EntityId, TransferDirection
from ..inventory.engine import InventoryEngine, get_engine
from ..inventory.errors import ConcurrencyConflict, Fault, InventoryError, NotFound, StateError, ValidationError
from ..inventory.models import BOMLine, MaterialStock, OrderItem, StockAdjustment

router = APIRouter(prefix="/inventory/engine", tags=["inventory"])


def _status_for(ex: InventoryError) -> int:
    if isinstance(ex, NotFound):
        return 404
    if isinstance(ex, Fault):
        return 503
    if isinstance(ex, (StateError, ConcurrencyConflict)):
        return 409
    if isinstance(ex, ValidationError):
        # Insufficient stock is a conflict with the current state, not a malformed request.
        return 409 if ex.code == "insufficient_stock" else 400
    return 400


@contextmanager
def _engine_errors():
    try:
        yield
    except InventoryError as ex:
        raise HTTPException(status_code=_status_for(ex), detail=jsonable_encoder(ex.to_dict()))
    except ValueError as ex:
        raise HTTPException(status_code=400, detail=str(ex))


class TransferIn(BaseModel):
    source_location_id: EntityId
    destination_location_id: EntityId
    item_id: EntityId
    quantity: Decimal
    notes: Optional[str] = None


class TransferApproveIn(BaseModel):
    approved: bool = True
    notes: Optional[str] = None


class TransferReceiveIn(BaseModel):
    # Omitted means received in full.
    quantity_received: Optional[Decimal] = None
    notes: Optional[str] = None


class AdjustmentIn(BaseModel):
    item_id: EntityId
    adjustment: Decimal
    reason: Optional[str] = None
    location_id: Optional[EntityId] = None


class BulkAdjustIn(BaseModel):
    adjustments: List[AdjustmentIn]


class BulkCategoryIn(BaseModel):
    item_ids: List[str]
    category: str


class BulkActiveIn(BaseModel):
    item_ids: List[str]
    active: bool


class BulkDeleteIn(BaseModel):
    item_ids: List[str]
    force: bool = False


class BulkExportIn(BaseModel):
    item_ids: Optional[List[str]] = None


class OrderItemIn(BaseModel):
    product_id: EntityId
    quantity: Decimal
    materials: Optional[List[BOMLine]] = None


class ValidateStockIn(BaseModel):
    items: List[OrderItemIn]
    available_stock: List[MaterialStock]


class DeductIn(BaseModel):
    items: List[OrderItemIn]
    location_id: Optional[EntityId] = None


class DeductedLineIn(BaseModel):
    material_id: str
    amount: Optional[Decimal] = None


class RollbackIn(BaseModel):
    deducted_items: Optional[List[DeductedLineIn]] = None


def _order_items(items: List[OrderItemIn]) -> List[OrderItem]:
    return [OrderItem(product_id=i.product_id, quantity=i.quantity, materials=i.materials) for i in items]


@router.post("/transfers", dependencies=[Depends(require_permission("inventory:write"))])
def initiate_transfer(data: TransferIn, user=Depends(get_current_user), engine: InventoryEngine = Depends(get_engine)):
    with _engine_errors():
        t = engine.transfers.initiate_transfer(
            data.source_location_id,
            data.destination_location_id,
            data.item_id,
            data.quantity,
            notes=data.notes,
            actor_id=str(user["user_id"]),
        )
    return {"transfer": t}


@router.post("/transfers/{transfer_id}/approve", dependencies=[Depends(require_permission("inventory:write"))])
def approve_transfer(transfer_id: str, data: TransferApproveIn, user=Depends(get_current_user), engine: InventoryEngine = Depends(get_engine)):
    with _engine_errors():
        t = engine.transfers.approve_transfer(transfer_id, data.approved, notes=data.notes, actor_id=str(user["user_id"]))
    return {"transfer": t}


@router.post("/transfers/{transfer_id}/receive", dependencies=[Depends(require_permission("inventory:write"))])
def receive_transfer(transfer_id: str, data: TransferReceiveIn, user=Depends(get_current_user), engine: InventoryEngine = Depends(get_engine)):
    with _engine_errors():
        t = engine.transfers.receive_transfer(
            transfer_id, quantity_received=data.quantity_received, notes=data.notes, actor_id=str(user["user_id"])
        )
    return {"transfer": t}


@router.get("/transfers/{transfer_id}", dependencies=[Depends(require_permission("inventory:read"))])
def get_transfer(transfer_id: str, engine: InventoryEngine = Depends(get_engine)):
    with _engine_errors():
        return {"transfer": engine.transfers.get_transfer(transfer_id)}


@router.get("/locations/{location_id}/transfers", dependencies=[Depends(require_permission("inventory:read"))])
def list_location_transfers(
    location_id: str,
    direction: TransferDirection = Query("both", description="outgoing|incoming|both"),
    engine: InventoryEngine = Depends(get_engine),
):
    with _engine_errors():
        return {"transfers": engine.transfers.get_transfers_by_location(location_id, direction)}


@router.post("/bulk/adjust-stock", dependencies=[Depends(require_permission("inventory:write"))])
def bulk_adjust_stock(data: BulkAdjustIn, user=Depends(get_current_user), engine: InventoryEngine = Depends(get_engine)):
    if not data.adjustments:
        raise HTTPException(status_code=400, detail="at least one adjustment is required")
    adjustments = [
        StockAdjustment(item_id=a.item_id, delta=a.adjustment, reason=a.reason, location_id=a.location_id)
        for a in data.adjustments
    ]
    with _engine_errors():
        return engine.bulk.adjust_stock(adjustments, actor_id=str(user["user_id"]))


@router.post("/bulk/category", dependencies=[Depends(require_permission("inventory:write"))])
def bulk_change_category(data: BulkCategoryIn, engine: InventoryEngine = Depends(get_engine)):
    with _engine_errors():
        return engine.bulk.change_category(data.item_ids, data.category)


@router.post("/bulk/active", dependencies=[Depends(require_permission("inventory:write"))])
def bulk_toggle_active(data: BulkActiveIn, engine: InventoryEngine = Depends(get_engine)):
    with _engine_errors():
        return engine.bulk.toggle_active(data.item_ids, data.active)


@router.post("/bulk/delete", dependencies=[Depends(require_permission("inventory:write"))])
def bulk_delete(data: BulkDeleteIn, engine: InventoryEngine = Depends(get_engine)):
    with _engine_errors():
        return engine.bulk.delete_items(data.item_ids, force=data.force)


@router.post("/bulk/export", dependencies=[Depends(require_permission("inventory:read"))])
def bulk_export(data: BulkExportIn, engine: InventoryEngine = Depends(get_engine)):
    with _engine_errors():
        lines = engine.bulk.iter_catalog_csv(data.item_ids)
    return StreamingResponse(
        lines,
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="inventory.csv"'},
    )


@router.post("/orders/validate-stock", dependencies=[Depends(require_permission("inventory:read"))])
def validate_order_stock(data: ValidateStockIn, engine: InventoryEngine = Depends(get_engine)):
    with _engine_errors():
        return engine.reservations.validate_stock(_order_items(data.items), data.available_stock)


@router.post("/orders/{order_id}/deduct", dependencies=[Depends(require_permission("inventory:write"))])
def deduct_order_stock(order_id: str, data: DeductIn, engine: InventoryEngine = Depends(get_engine)):
    if not data.items:
        raise HTTPException(status_code=400, detail="at least one item is required")
    with _engine_errors():
        lines = engine.reservations.deduct_stock(order_id, _order_items(data.items), location_id=data.location_id)
    return {"order_id": order_id, "lines": lines}


@router.post("/orders/{order_id}/rollback", dependencies=[Depends(require_permission("inventory:write"))])
def rollback_order_stock(order_id: str, data: Optional[RollbackIn] = None, engine: InventoryEngine = Depends(get_engine)):
    deducted = None
    if data is not None and data.deducted_items:
        deducted = [{"material_id": d.material_id} for d in data.deducted_items]
    with _engine_errors():
        return engine.reservations.rollback_stock(order_id, deducted)


@router.post("/orders/{order_id}/finalize", dependencies=[Depends(require_permission("inventory:write"))])
def finalize_order_stock(order_id: str, engine: InventoryEngine = Depends(get_engine)):
    with _engine_errors():
        finalized = engine.reservations.finalize_reservation(order_id)
    return {"order_id": order_id, "finalized": finalized}
