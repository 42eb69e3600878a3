"""StockLedger: the only code that read-modify-writes a StockRecord.

Every mutation locks the (warehouse, product) row, checks, writes and commits
inside one short transaction, so mutations on one key are linearizable while
different keys never wait on each other. Callers that need to record their own
bookkeeping atomically with a ledger change pass their ``Session``; the ledger
then leaves the commit to them, and they call ``check_low_stock`` once it lands.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, List, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from . import config, crud
from .database import session_scope, storage_retry
from .errors import (
    InconsistentLedger,
    InsufficientStock,
    InvalidLine,
    UnknownStockKey,
    UnknownWarehouse,
)
from .events import LOW_STOCK_ROUTING_KEY, EventPublisher
from .models import MovementReason, StockMovement, StockRecord, Warehouse, utcnow

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Availability:
    warehouse_id: str
    product_id: str
    on_hand: int
    reserved: int

    @property
    def available(self) -> int:
        return self.on_hand - self.reserved

    @classmethod
    def of(cls, record: StockRecord) -> "Availability":
        return cls(record.warehouse_id, record.product_id, record.on_hand, record.reserved)


def check_quantity(qty, line_index: Optional[int] = None) -> int:
    if isinstance(qty, bool) or not isinstance(qty, int) or qty <= 0:
        raise InvalidLine(f"quantity must be a positive integer, got {qty!r}", line_index=line_index)
    return qty


def warehouse_is_active(db: Session, warehouse_id: str) -> bool:
    warehouse = db.get(Warehouse, warehouse_id)
    return warehouse is not None and bool(warehouse.is_active)


def stock_record_exists(db: Session, warehouse_id: str, product_id: str) -> bool:
    return db.get(StockRecord, (warehouse_id, product_id)) is not None


class StockLedger:
    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        publisher: Optional[EventPublisher] = None,
        low_stock_threshold: int = config.LOW_STOCK_THRESHOLD,
    ):
        self._session_factory = session_factory
        self._publisher = publisher
        self._low_stock_threshold = low_stock_threshold

    @contextmanager
    def _unit(self, db: Optional[Session]) -> Iterator[Session]:
        if db is not None:
            yield db
            return
        with session_scope(self._session_factory) as own:
            yield own

    def _lock(self, db: Session, warehouse_id: str, product_id: str) -> Optional[StockRecord]:
        return (
            db.query(StockRecord)
            .filter(StockRecord.warehouse_id == warehouse_id, StockRecord.product_id == product_id)
            .with_for_update()
            .populate_existing()
            .first()
        )

    def _lock_existing(self, db: Session, warehouse_id: str, product_id: str) -> StockRecord:
        record = self._lock(db, warehouse_id, product_id)
        if record is None:
            raise UnknownStockKey(warehouse_id, product_id)
        return record

    def _journal(self, db: Session, record: StockRecord, change: int, reason: MovementReason, reference) -> None:
        db.add(
            StockMovement(
                warehouse_id=record.warehouse_id,
                product_id=record.product_id,
                change=change,
                reason=reason,
                reference=reference,
            )
        )

    def _touch(self, record: StockRecord) -> Availability:
        record.updated_at = utcnow()
        return Availability.of(record)

    def check_low_stock(self, snapshot: Availability) -> None:
        """Publish ``stock.low`` for a committed snapshot at or under the threshold."""
        if self._publisher is None or snapshot.available > self._low_stock_threshold:
            return
        self._publisher.publish(
            LOW_STOCK_ROUTING_KEY,
            {
                "event": LOW_STOCK_ROUTING_KEY,
                "warehouse_id": snapshot.warehouse_id,
                "product_id": snapshot.product_id,
                "available": snapshot.available,
                "threshold": self._low_stock_threshold,
            },
        )

    # -----------------------------
    # Mutations
    # -----------------------------

    def reserve(self, warehouse_id: str, product_id: str, qty: int, *, db: Optional[Session] = None) -> Availability:
        check_quantity(qty)
        with self._unit(db) as session:
            record = self._lock_existing(session, warehouse_id, product_id)
            if record.available < qty:
                raise InsufficientStock(warehouse_id, product_id, record.available, qty)
            record.reserved += qty
            snapshot = self._touch(record)
        if db is None:
            self.check_low_stock(snapshot)
        return snapshot

    def release(self, warehouse_id: str, product_id: str, qty: int, *, db: Optional[Session] = None) -> Availability:
        check_quantity(qty)
        with self._unit(db) as session:
            record = self._lock_existing(session, warehouse_id, product_id)
            if record.reserved < qty:
                # A double release upstream; clamp instead of wrapping.
                logger.critical(
                    "ledger_invariant_violation",
                    operation="release",
                    warehouse_id=warehouse_id,
                    product_id=product_id,
                    reserved=record.reserved,
                    requested=qty,
                )
                record.reserved = 0
            else:
                record.reserved -= qty
            return self._touch(record)

    def commit(
        self,
        warehouse_id: str,
        product_id: str,
        qty: int,
        *,
        reference: Optional[str] = None,
        db: Optional[Session] = None,
    ) -> Availability:
        check_quantity(qty)
        with self._unit(db) as session:
            record = self._lock_existing(session, warehouse_id, product_id)
            if record.reserved < qty or record.on_hand < qty:
                logger.critical(
                    "ledger_invariant_violation",
                    operation="commit",
                    warehouse_id=warehouse_id,
                    product_id=product_id,
                    on_hand=record.on_hand,
                    reserved=record.reserved,
                    requested=qty,
                )
                raise InconsistentLedger(
                    f"cannot commit {qty} of warehouse={warehouse_id} product={product_id}: "
                    f"on_hand={record.on_hand} reserved={record.reserved}"
                )
            record.on_hand -= qty
            record.reserved -= qty
            self._journal(session, record, -qty, MovementReason.SALE, reference)
            snapshot = self._touch(record)
        if db is None:
            self.check_low_stock(snapshot)
        return snapshot

    def receive(
        self,
        warehouse_id: str,
        product_id: str,
        qty: int,
        *,
        reason: MovementReason = MovementReason.RESTOCK,
        reference: Optional[str] = None,
        db: Optional[Session] = None,
    ) -> Availability:
        check_quantity(qty)
        with self._unit(db) as session:
            record = self._lock_or_create(session, warehouse_id, product_id)
            record.on_hand += qty
            self._journal(session, record, qty, reason, reference)
            return self._touch(record)

    def withdraw(
        self,
        warehouse_id: str,
        product_id: str,
        qty: int,
        *,
        reason: MovementReason = MovementReason.TRANSFER_OUT,
        reference: Optional[str] = None,
        db: Optional[Session] = None,
    ) -> Availability:
        """Take stock off the shelf without a reservation; never dips into held units."""
        check_quantity(qty)
        with self._unit(db) as session:
            record = self._lock_existing(session, warehouse_id, product_id)
            if record.available < qty:
                raise InsufficientStock(warehouse_id, product_id, record.available, qty)
            record.on_hand -= qty
            self._journal(session, record, -qty, reason, reference)
            snapshot = self._touch(record)
        if db is None:
            self.check_low_stock(snapshot)
        return snapshot

    def open_record(
        self,
        warehouse_id: str,
        product_id: str,
        on_hand: int = 0,
        *,
        reference: Optional[str] = None,
    ) -> Availability:
        """Create the key if missing. An existing key is returned untouched."""
        if isinstance(on_hand, bool) or not isinstance(on_hand, int) or on_hand < 0:
            raise InvalidLine(f"on_hand must be a non-negative integer, got {on_hand!r}")
        with session_scope(self._session_factory) as session:
            existing = self._lock(session, warehouse_id, product_id)
            if existing is not None:
                return Availability.of(existing)
            record = self._lock_or_create(session, warehouse_id, product_id)
            if on_hand:
                record.on_hand = on_hand
                self._journal(session, record, on_hand, MovementReason.RESTOCK, reference or "opening-balance")
            return self._touch(record)

    def _lock_or_create(self, db: Session, warehouse_id: str, product_id: str) -> StockRecord:
        record = self._lock(db, warehouse_id, product_id)
        if record is not None:
            return record
        if not warehouse_is_active(db, warehouse_id):
            raise UnknownWarehouse(warehouse_id)
        try:
            with db.begin_nested():
                db.add(StockRecord(warehouse_id=warehouse_id, product_id=product_id, on_hand=0, reserved=0))
        except IntegrityError:
            # Someone else created the key first; lock theirs.
            pass
        return self._lock_existing(db, warehouse_id, product_id)

    # -----------------------------
    # Reads
    # -----------------------------

    @storage_retry
    def availability(self, warehouse_id: str, product_id: str) -> Availability:
        db = self._session_factory()
        try:
            record = db.get(StockRecord, (warehouse_id, product_id))
            if record is None:
                raise UnknownStockKey(warehouse_id, product_id)
            return Availability.of(record)
        finally:
            db.close()

    @storage_retry
    def movements(
        self,
        warehouse_id: Optional[str] = None,
        product_id: Optional[str] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[StockMovement]:
        """Journal entries, newest first."""
        db = self._session_factory()
        try:
            return crud.get_movements(db, warehouse_id=warehouse_id, product_id=product_id, skip=skip, limit=limit)
        finally:
            db.close()
