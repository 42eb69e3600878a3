from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from .models import MovementReason, PurchaseOrderStatus, ReservationState, TransferState, as_utc


class _UtcModel(BaseModel):
    """Output models: datetimes coming out of SQLite are naive UTC."""

    model_config = {"from_attributes": True}

    @field_validator("*", mode="after")
    @classmethod
    def _utc(cls, value):
        if isinstance(value, datetime):
            return as_utc(value)
        return value


# -----------------------------
# Stock
# -----------------------------

class WarehouseCreate(BaseModel):
    id: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=100)


class WarehouseOut(_UtcModel):
    id: str
    name: str
    is_active: bool
    created_at: datetime


class StockOpen(BaseModel):
    warehouse_id: str = Field(..., min_length=1)
    product_id: str = Field(..., min_length=1)
    on_hand: int = Field(0, ge=0)


class StockReceive(BaseModel):
    warehouse_id: str = Field(..., min_length=1)
    product_id: str = Field(..., min_length=1)
    quantity: int = Field(..., gt=0)
    reference: Optional[str] = None


class AvailabilityOut(_UtcModel):
    warehouse_id: str
    product_id: str
    on_hand: int
    reserved: int
    available: int


class MovementOut(_UtcModel):
    id: int
    warehouse_id: str
    product_id: str
    change: int
    reason: MovementReason
    reference: Optional[str] = None
    created_at: datetime


# -----------------------------
# Reservations
# -----------------------------

class ReservationLineIn(BaseModel):
    warehouse_id: str = Field(..., min_length=1)
    product_id: str = Field(..., min_length=1)
    quantity: int = Field(..., gt=0)


class ReservationCreate(BaseModel):
    owner_id: str = Field(..., min_length=1)
    lines: List[ReservationLineIn] = Field(..., min_length=1)


class ReservationExtend(BaseModel):
    expires_at: datetime


class ReservationLineOut(_UtcModel):
    position: int
    warehouse_id: str
    product_id: str
    quantity: int


class ReservationOut(_UtcModel):
    id: str
    owner_id: str
    state: ReservationState
    created_at: datetime
    expires_at: datetime
    resolved_at: Optional[datetime] = None
    lines: List[ReservationLineOut] = []


# -----------------------------
# Transfers
# -----------------------------

class TransferCreate(BaseModel):
    source_warehouse_id: str = Field(..., min_length=1)
    dest_warehouse_id: str = Field(..., min_length=1)
    product_id: str = Field(..., min_length=1)
    quantity: int = Field(..., gt=0)
    requested_by: Optional[str] = None


class TransferOut(_UtcModel):
    id: str
    source_warehouse_id: str
    dest_warehouse_id: str
    product_id: str
    quantity: int
    state: TransferState
    failure_reason: Optional[str] = None
    requested_by: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None


# -----------------------------
# Purchase orders
# -----------------------------

class PurchaseOrderLineIn(BaseModel):
    product_id: str = Field(..., min_length=1)
    quantity: int = Field(..., gt=0)


class PurchaseOrderCreate(BaseModel):
    supplier_name: str = Field(..., min_length=1, max_length=100)
    warehouse_id: str = Field(..., min_length=1)
    po_number: Optional[str] = Field(None, max_length=32)
    created_by: Optional[str] = None
    lines: List[PurchaseOrderLineIn] = Field(..., min_length=1)


class PurchaseOrderReceive(BaseModel):
    received_by: Optional[str] = None


class PurchaseOrderLineOut(_UtcModel):
    product_id: str
    quantity: int
    received: bool


class PurchaseOrderOut(_UtcModel):
    id: str
    po_number: str
    supplier_name: str
    warehouse_id: str
    status: PurchaseOrderStatus
    created_by: Optional[str] = None
    received_by: Optional[str] = None
    created_at: datetime
    received_at: Optional[datetime] = None
    lines: List[PurchaseOrderLineOut] = []


class SweepOut(BaseModel):
    expired: int
    conflicts: int
    failed: int
    reconciled: int
    skipped: bool
