from typing import List, Optional

from sqlalchemy.orm import Session

from .models import StockMovement, StockRecord, Warehouse


def create_warehouse(db: Session, warehouse_id: str, name: str) -> Warehouse:
    warehouse_id = (warehouse_id or "").strip()
    name = (name or "").strip()
    if not warehouse_id:
        raise ValueError("warehouse_id_required")
    if not name:
        raise ValueError("name_required")

    if db.get(Warehouse, warehouse_id) is not None:
        raise ValueError("duplicate_warehouse")

    db_warehouse = Warehouse(id=warehouse_id, name=name, is_active=True)
    db.add(db_warehouse)
    db.commit()
    db.refresh(db_warehouse)
    return db_warehouse


def get_warehouse(db: Session, warehouse_id: str) -> Optional[Warehouse]:
    return db.get(Warehouse, warehouse_id)


def get_warehouses(db: Session, skip: int = 0, limit: int = 100, active_only: bool = False) -> List[Warehouse]:
    query = db.query(Warehouse)
    if active_only:
        query = query.filter(Warehouse.is_active.is_(True))
    return query.order_by(Warehouse.id).offset(skip).limit(limit).all()


def set_warehouse_active(db: Session, warehouse_id: str, is_active: bool) -> Optional[Warehouse]:
    # Existing holds stay valid; an inactive warehouse only refuses new stock keys and new holds.
    db_warehouse = get_warehouse(db, warehouse_id)
    if not db_warehouse:
        return None
    db_warehouse.is_active = is_active
    db.commit()
    db.refresh(db_warehouse)
    return db_warehouse


def get_stock_records(
    db: Session,
    warehouse_id: Optional[str] = None,
    product_id: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
) -> List[StockRecord]:
    query = db.query(StockRecord)
    if warehouse_id:
        query = query.filter(StockRecord.warehouse_id == warehouse_id)
    if product_id:
        query = query.filter(StockRecord.product_id == product_id)
    return (
        query.order_by(StockRecord.warehouse_id, StockRecord.product_id)
        .offset(skip)
        .limit(limit)
        .all()
    )


def get_movements(
    db: Session,
    warehouse_id: Optional[str] = None,
    product_id: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
) -> List[StockMovement]:
    query = db.query(StockMovement)
    if warehouse_id:
        query = query.filter(StockMovement.warehouse_id == warehouse_id)
    if product_id:
        query = query.filter(StockMovement.product_id == product_id)
    return query.order_by(StockMovement.id.desc()).offset(skip).limit(limit).all()
