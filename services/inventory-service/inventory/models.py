import datetime as dt
import enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def as_utc(value: dt.datetime | None) -> dt.datetime | None:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


def _enum(enum_cls, length: int = 16) -> Enum:
    return Enum(enum_cls, native_enum=False, length=length, validate_strings=True)


class ReservationState(str, enum.Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    COMMITTED = "COMMITTED"
    RELEASED = "RELEASED"
    EXPIRED = "EXPIRED"
    ABORTED = "ABORTED"


TERMINAL_RESERVATION_STATES = frozenset(
    {
        ReservationState.COMMITTED,
        ReservationState.RELEASED,
        ReservationState.EXPIRED,
        ReservationState.ABORTED,
    }
)


class TransferState(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class PurchaseOrderStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    RECEIVED = "RECEIVED"


class MovementReason(str, enum.Enum):
    RESTOCK = "RESTOCK"
    SALE = "SALE"
    TRANSFER_OUT = "TRANSFER_OUT"
    TRANSFER_IN = "TRANSFER_IN"
    TRANSFER_ROLLBACK = "TRANSFER_ROLLBACK"


class Warehouse(Base):
    __tablename__ = "warehouses"

    id = Column(String(64), primary_key=True)
    name = Column(String(100), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class StockRecord(Base):
    """Counters for one (warehouse, product) key.

    ``available`` is derived from the two counters and never stored.
    """

    __tablename__ = "stock_records"
    __table_args__ = (
        CheckConstraint("on_hand >= 0", name="ck_stock_on_hand_non_negative"),
        CheckConstraint("reserved >= 0", name="ck_stock_reserved_non_negative"),
        CheckConstraint("reserved <= on_hand", name="ck_stock_reserved_within_on_hand"),
    )

    warehouse_id = Column(String(64), ForeignKey("warehouses.id"), primary_key=True)
    product_id = Column(String(64), primary_key=True, index=True)
    on_hand = Column(Integer, nullable=False, default=0)
    reserved = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def available(self) -> int:
        return self.on_hand - self.reserved


class Reservation(Base):
    __tablename__ = "reservations"
    __table_args__ = (Index("ix_reservations_state_expires_at", "state", "expires_at"),)

    id = Column(String(32), primary_key=True)
    owner_id = Column(String(64), nullable=False, index=True)
    state = Column(_enum(ReservationState), nullable=False, default=ReservationState.PENDING)
    created_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    resolved_at = Column(DateTime(timezone=True))

    lines = relationship(
        "ReservationLine",
        order_by="ReservationLine.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class ReservationLine(Base):
    """One requested (warehouse, product, quantity).

    ``held`` is true exactly while ``quantity`` is counted in the ledger's
    ``reserved`` for this key. It only changes in the same transaction as the
    matching ledger mutation.
    """

    __tablename__ = "reservation_lines"
    __table_args__ = (CheckConstraint("quantity > 0", name="ck_reservation_line_quantity_positive"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    reservation_id = Column(String(32), ForeignKey("reservations.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    warehouse_id = Column(String(64), nullable=False)
    product_id = Column(String(64), nullable=False)
    quantity = Column(Integer, nullable=False)
    held = Column(Boolean, nullable=False, default=False, index=True)


class TransferRecord(Base):
    __tablename__ = "transfers"

    id = Column(String(32), primary_key=True)
    source_warehouse_id = Column(String(64), nullable=False, index=True)
    dest_warehouse_id = Column(String(64), nullable=False, index=True)
    product_id = Column(String(64), nullable=False)
    quantity = Column(Integer, nullable=False)
    state = Column(_enum(TransferState), nullable=False, default=TransferState.PENDING)
    failure_reason = Column(Text)
    requested_by = Column(String(64))
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at = Column(DateTime(timezone=True))


class PurchaseOrder(Base):
    __tablename__ = "purchase_orders"

    id = Column(String(32), primary_key=True)
    po_number = Column(String(32), nullable=False, unique=True)
    supplier_name = Column(String(100), nullable=False)
    warehouse_id = Column(String(64), nullable=False, index=True)
    status = Column(_enum(PurchaseOrderStatus), nullable=False, default=PurchaseOrderStatus.DRAFT)
    created_by = Column(String(64))
    received_by = Column(String(64))
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    received_at = Column(DateTime(timezone=True))

    lines = relationship(
        "PurchaseOrderLine",
        order_by="PurchaseOrderLine.id",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class PurchaseOrderLine(Base):
    __tablename__ = "purchase_order_lines"
    __table_args__ = (CheckConstraint("quantity > 0", name="ck_po_line_quantity_positive"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    purchase_order_id = Column(String(32), ForeignKey("purchase_orders.id"), nullable=False, index=True)
    product_id = Column(String(64), nullable=False)
    quantity = Column(Integer, nullable=False)
    received = Column(Boolean, nullable=False, default=False)


class StockMovement(Base):
    """Append-only journal of on-hand changes."""

    __tablename__ = "stock_movements"

    id = Column(Integer, primary_key=True, autoincrement=True)
    warehouse_id = Column(String(64), nullable=False, index=True)
    product_id = Column(String(64), nullable=False, index=True)
    change = Column(Integer, nullable=False)
    reason = Column(_enum(MovementReason, length=24), nullable=False)
    reference = Column(String(64))
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
