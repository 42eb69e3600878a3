from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from .. import crud
from ..errors import (
    DuplicateId,
    InconsistentLedger,
    InsufficientStock,
    InvalidExpiry,
    InvalidLine,
    InvalidTransfer,
    InventoryError,
    NotFound,
    StateConflict,
    UnknownStockKey,
    UnknownWarehouse,
)
from ..models import PurchaseOrderStatus, ReservationState, TransferState
from ..schemas import (
    AvailabilityOut,
    MovementOut,
    PurchaseOrderCreate,
    PurchaseOrderOut,
    PurchaseOrderReceive,
    ReservationCreate,
    ReservationExtend,
    ReservationOut,
    StockOpen,
    StockReceive,
    SweepOut,
    TransferCreate,
    TransferOut,
    WarehouseCreate,
    WarehouseOut,
)
from ..services import InventoryServices

router = APIRouter(prefix="/inventory", tags=["Inventory Service"])

_STATUS_BY_ERROR = [
    (InsufficientStock, 409),
    (StateConflict, 409),
    (NotFound, 404),
    (UnknownStockKey, 404),
    (UnknownWarehouse, 404),
    (InvalidLine, 400),
    (InvalidTransfer, 400),
    (InvalidExpiry, 400),
    (InconsistentLedger, 500),
    (DuplicateId, 500),
]


def get_services(request: Request) -> InventoryServices:
    return request.app.state.services


def get_db(services: InventoryServices = Depends(get_services)):
    db = services.session_factory()
    try:
        yield db
    finally:
        db.close()


def _http_error(exc: InventoryError) -> HTTPException:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=exc.to_detail())
    return HTTPException(status_code=400, detail=exc.to_detail())


# -----------------------------
# Warehouses & stock (admin)
# -----------------------------


@router.post("/warehouses", response_model=WarehouseOut, status_code=201)
def register_warehouse(body: WarehouseCreate, db: Session = Depends(get_db)):
    try:
        return crud.create_warehouse(db, body.id, body.name)
    except ValueError as e:
        if str(e) == "duplicate_warehouse":
            raise HTTPException(status_code=409, detail="Warehouse already exists")
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/warehouses", response_model=list[WarehouseOut])
def list_warehouses(
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    active_only: bool = Query(False),
    db: Session = Depends(get_db),
):
    return crud.get_warehouses(db, skip=skip, limit=limit, active_only=active_only)


@router.post("/warehouses/{warehouse_id}/deactivate", response_model=WarehouseOut)
def deactivate_warehouse(warehouse_id: str, db: Session = Depends(get_db)):
    warehouse = crud.set_warehouse_active(db, warehouse_id, False)
    if not warehouse:
        raise HTTPException(status_code=404, detail="Warehouse not found")
    return warehouse


@router.post("/stock/open", response_model=AvailabilityOut, status_code=201)
def open_stock_record(body: StockOpen, services: InventoryServices = Depends(get_services)):
    try:
        return services.ledger.open_record(body.warehouse_id, body.product_id, body.on_hand)
    except InventoryError as e:
        raise _http_error(e)


@router.post("/stock/receive", response_model=AvailabilityOut)
def receive_stock(body: StockReceive, services: InventoryServices = Depends(get_services)):
    try:
        return services.purchase_orders.receive(body.warehouse_id, body.product_id, body.quantity, body.reference)
    except InventoryError as e:
        raise _http_error(e)


@router.get("/stock", response_model=list[AvailabilityOut])
def list_stock(
    warehouse_id: Optional[str] = Query(None),
    product_id: Optional[str] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    return crud.get_stock_records(db, warehouse_id=warehouse_id, product_id=product_id, skip=skip, limit=limit)


@router.get("/stock/{warehouse_id}/{product_id}", response_model=AvailabilityOut)
def get_availability(warehouse_id: str, product_id: str, services: InventoryServices = Depends(get_services)):
    try:
        return services.ledger.availability(warehouse_id, product_id)
    except InventoryError as e:
        raise _http_error(e)


@router.get("/movements", response_model=list[MovementOut])
def list_movements(
    warehouse_id: Optional[str] = Query(None),
    product_id: Optional[str] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    services: InventoryServices = Depends(get_services),
):
    return services.ledger.movements(warehouse_id=warehouse_id, product_id=product_id, skip=skip, limit=limit)


# -----------------------------
# Reservations (used by checkout)
# -----------------------------


@router.post("/reservations", response_model=ReservationOut, status_code=201)
def create_reservation(body: ReservationCreate, services: InventoryServices = Depends(get_services)):
    """Hold stock for a cart that proceeds to checkout.

    All lines are held or none are.
    """
    try:
        return services.reservations.create(body.owner_id, [line.model_dump() for line in body.lines])
    except InventoryError as e:
        raise _http_error(e)


@router.get("/reservations", response_model=list[ReservationOut])
def list_reservations(
    owner_id: Optional[str] = Query(None),
    state: Optional[ReservationState] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    services: InventoryServices = Depends(get_services),
):
    return services.reservations.list(owner_id=owner_id, state=state, skip=skip, limit=limit)


@router.get("/reservations/{reservation_id}", response_model=ReservationOut)
def get_reservation(reservation_id: str, services: InventoryServices = Depends(get_services)):
    reservation = services.reservations.get(reservation_id)
    if not reservation:
        raise HTTPException(status_code=404, detail="Reservation not found")
    return reservation


@router.post("/reservations/{reservation_id}/commit", response_model=ReservationOut)
def commit_reservation(reservation_id: str, services: InventoryServices = Depends(get_services)):
    """Called after successful payment."""
    try:
        return services.reservations.commit(reservation_id)
    except InventoryError as e:
        raise _http_error(e)


@router.post("/reservations/{reservation_id}/release", response_model=ReservationOut)
def release_reservation(reservation_id: str, services: InventoryServices = Depends(get_services)):
    """Called when the shopper abandons the cart."""
    try:
        return services.reservations.release(reservation_id)
    except InventoryError as e:
        raise _http_error(e)


@router.post("/reservations/{reservation_id}/extend", response_model=ReservationOut)
def extend_reservation(
    reservation_id: str,
    body: ReservationExtend,
    services: InventoryServices = Depends(get_services),
):
    try:
        return services.reservations.extend(reservation_id, body.expires_at)
    except InventoryError as e:
        raise _http_error(e)


# -----------------------------
# Transfers & purchase orders (admin)
# -----------------------------


@router.post("/transfers", response_model=TransferOut, status_code=201)
def create_transfer(body: TransferCreate, services: InventoryServices = Depends(get_services)):
    try:
        return services.transfers.transfer(
            body.source_warehouse_id,
            body.dest_warehouse_id,
            body.product_id,
            body.quantity,
            requested_by=body.requested_by,
        )
    except InventoryError as e:
        raise _http_error(e)


@router.get("/transfers", response_model=list[TransferOut])
def list_transfers(
    warehouse_id: Optional[str] = Query(None),
    state: Optional[TransferState] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    services: InventoryServices = Depends(get_services),
):
    return services.transfers.list(warehouse_id=warehouse_id, state=state, skip=skip, limit=limit)


@router.get("/transfers/{transfer_id}", response_model=TransferOut)
def get_transfer(transfer_id: str, services: InventoryServices = Depends(get_services)):
    record = services.transfers.get(transfer_id)
    if not record:
        raise HTTPException(status_code=404, detail="Transfer not found")
    return record


@router.post("/purchase-orders", response_model=PurchaseOrderOut, status_code=201)
def create_purchase_order(body: PurchaseOrderCreate, services: InventoryServices = Depends(get_services)):
    try:
        return services.purchase_orders.create_order(
            body.supplier_name,
            body.warehouse_id,
            [line.model_dump() for line in body.lines],
            po_number=body.po_number,
            created_by=body.created_by,
        )
    except InventoryError as e:
        raise _http_error(e)


@router.get("/purchase-orders", response_model=list[PurchaseOrderOut])
def list_purchase_orders(
    warehouse_id: Optional[str] = Query(None),
    status: Optional[PurchaseOrderStatus] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    services: InventoryServices = Depends(get_services),
):
    return services.purchase_orders.list(warehouse_id=warehouse_id, status=status, skip=skip, limit=limit)


@router.post("/purchase-orders/{order_id}/receive", response_model=PurchaseOrderOut)
def receive_purchase_order(
    order_id: str,
    body: Optional[PurchaseOrderReceive] = None,
    services: InventoryServices = Depends(get_services),
):
    try:
        return services.purchase_orders.receive_order(order_id, received_by=body.received_by if body else None)
    except InventoryError as e:
        raise _http_error(e)


# -----------------------------
# Maintenance
# -----------------------------


@router.post("/maintenance/expire", response_model=SweepOut)
def run_expiry_sweep(services: InventoryServices = Depends(get_services)):
    """Run one reaper sweep now; skipped if the scheduled one is in flight."""
    result = services.reaper.run_once()
    return SweepOut(**vars(result))
