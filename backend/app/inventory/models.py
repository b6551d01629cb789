"""
Records owned or exchanged by the inventory movement engine.

Quantities are always Decimal. Records handed back to callers are frozen
pydantic models; stores keep their own copies and hand out new instances on
every change.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..validation import ItemType, OptionalLabel


class CellKey(NamedTuple):
    item_id: str
    location_id: str


class StockCell(BaseModel):
    model_config = ConfigDict(frozen=True)

    item_id: str
    location_id: str
    quantity: Decimal = Decimal("0")
    version: int = 0

    @property
    def key(self) -> CellKey:
        return CellKey(self.item_id, self.location_id)


class TransferStatus(str, Enum):
    PENDING = "pending"
    IN_TRANSIT = "in_transit"
    RECEIVED = "received"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TransferStatus.RECEIVED, TransferStatus.CANCELLED)


class TransferEvent(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    RECEIVE = "receive"


class ShortfallDisposition(str, Enum):
    WRITTEN_OFF = "written_off"
    RETURNED_TO_SOURCE = "returned_to_source"


class Transfer(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    source_location_id: str
    destination_location_id: str
    item_id: str
    quantity_requested: Decimal
    quantity_received: Optional[Decimal] = None
    status: TransferStatus = TransferStatus.PENDING
    requested_at: datetime
    requested_by: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    received_by: Optional[str] = None
    received_at: Optional[datetime] = None
    notes: Optional[str] = None
    shortfall: Optional[Decimal] = None
    shortfall_disposition: Optional[ShortfallDisposition] = None
    version: int = 0


class BulkItemOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class BulkOperationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_processed: int
    total_succeeded: int
    total_failed: int
    items: List[BulkItemOutcome] = Field(default_factory=list)

    @classmethod
    def from_outcomes(cls, outcomes: List[BulkItemOutcome]) -> "BulkOperationResult":
        failed = sum(1 for o in outcomes if o.error is not None)
        return cls(
            total_processed=len(outcomes),
            total_succeeded=len(outcomes) - failed,
            total_failed=failed,
            items=list(outcomes),
        )

    @property
    def failed(self) -> List[BulkItemOutcome]:
        return [o for o in self.items if o.error is not None]


class StockAdjustment(BaseModel):
    item_id: str
    delta: Decimal
    reason: Optional[str] = None
    location_id: Optional[str] = None


class InventoryItem(BaseModel):
    id: str
    name: str
    category: OptionalLabel = None
    type: ItemType = "COUNTABLE"
    stock: Decimal = Decimal("0")
    unit: OptionalLabel = None
    unit_cost: Decimal = Decimal("0")
    min_stock: Optional[Decimal] = None
    supplier_id: Optional[str] = None
    location_id: Optional[str] = None
    is_active: bool = True
    updated_at: Optional[datetime] = None


class BOMLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    material_id: str
    quantity_per_unit: Decimal


class OrderItem(BaseModel):
    product_id: str
    quantity: Decimal
    # When present, used instead of the BOM resolver (already expanded by the caller).
    materials: Optional[List[BOMLine]] = None


class MaterialStock(BaseModel):
    material_id: str
    name: Optional[str] = None
    current_stock: Decimal
    min_stock: Optional[Decimal] = None
    unit: Optional[str] = None


class InsufficientMaterial(BaseModel):
    model_config = ConfigDict(frozen=True)

    material_id: str
    name: Optional[str] = None
    required: Decimal
    available: Decimal
    shortfall: Decimal


class LowStockWarning(BaseModel):
    model_config = ConfigDict(frozen=True)

    material_id: str
    name: Optional[str] = None
    required: Decimal
    remaining: Decimal
    min_stock: Decimal


class StockValidationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    valid: bool
    insufficient_items: List[InsufficientMaterial] = Field(default_factory=list)
    warnings: List[LowStockWarning] = Field(default_factory=list)


class DeductionLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    material_id: str
    amount: Decimal
    new_stock: Decimal


class ReservationStatus(str, Enum):
    ACTIVE = "active"
    ROLLED_BACK = "rolled_back"
    FINALIZED = "finalized"


class ReservationLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    material_id: str
    location_id: str
    amount: Decimal


class Reservation(BaseModel):
    model_config = ConfigDict(frozen=True)

    order_id: str
    lines: List[ReservationLine]
    status: ReservationStatus = ReservationStatus.ACTIVE
    created_at: datetime
    rolled_back_at: Optional[datetime] = None
    finalized_at: Optional[datetime] = None


class RollbackResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    order_id: str
    restored: bool
    lines: List[DeductionLine] = Field(default_factory=list)
    reason: Optional[str] = None
