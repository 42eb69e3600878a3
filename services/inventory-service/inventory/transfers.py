"""Warehouse-to-warehouse stock transfers.

Two ledger steps, source withdraw then destination receive. If the receive
fails the withdraw is compensated, so stock never vanishes from both sides.
The TransferRecord is resolved before ``transfer`` returns. A record left
PENDING by a crash is resolved later by ``recover`` from the movement journal.
"""

from __future__ import annotations

import datetime as dt
import uuid
from typing import List, Optional, Set

import structlog
from sqlalchemy import update
from sqlalchemy.orm import Session, sessionmaker

from .database import session_scope, storage_retry
from .errors import InconsistentLedger, InsufficientStock, InvalidTransfer, UnknownStockKey, UnknownWarehouse
from .events import AuditSink
from .ledger import StockLedger, stock_record_exists, warehouse_is_active
from .models import MovementReason, StockMovement, TransferRecord, TransferState, utcnow

logger = structlog.get_logger(__name__)


def _journaled_reasons(db: Session, transfer_id: str) -> Set[MovementReason]:
    rows = db.query(StockMovement.reason).filter(StockMovement.reference == transfer_id).all()
    return {row.reason for row in rows}


class TransferOrchestrator:
    def __init__(self, session_factory: sessionmaker, ledger: StockLedger, *, audit: Optional[AuditSink] = None):
        self._session_factory = session_factory
        self._ledger = ledger
        self._audit = audit

    def transfer(
        self,
        source_warehouse_id: str,
        dest_warehouse_id: str,
        product_id: str,
        quantity: int,
        requested_by: Optional[str] = None,
    ) -> TransferRecord:
        self._validate(source_warehouse_id, dest_warehouse_id, product_id, quantity)

        record = TransferRecord(
            id=uuid.uuid4().hex,
            source_warehouse_id=source_warehouse_id,
            dest_warehouse_id=dest_warehouse_id,
            product_id=product_id,
            quantity=quantity,
            state=TransferState.PENDING,
            requested_by=requested_by,
            created_at=utcnow(),
        )
        with session_scope(self._session_factory) as db:
            db.add(record)

        try:
            self._ledger.withdraw(
                source_warehouse_id,
                product_id,
                quantity,
                reason=MovementReason.TRANSFER_OUT,
                reference=record.id,
            )
        except InsufficientStock:
            failed = self._finish(record.id, TransferState.FAILED, "insufficient_stock")
            self._emit("TRANSFER_FAILED", failed)
            raise
        except Exception as exc:
            # The commit may have landed before the error; the journal knows.
            if MovementReason.TRANSFER_OUT not in self._journaled(record.id):
                logger.warning("transfer_withdraw_failed", transfer_id=record.id, error=str(exc))
                failed = self._finish(record.id, TransferState.FAILED, f"source_unavailable: {exc}")
                self._emit("TRANSFER_FAILED", failed)
                return failed
            logger.warning("transfer_withdraw_error_after_commit", transfer_id=record.id, error=str(exc))

        try:
            self._ledger.receive(
                dest_warehouse_id,
                product_id,
                quantity,
                reason=MovementReason.TRANSFER_IN,
                reference=record.id,
            )
        except Exception as exc:
            if MovementReason.TRANSFER_IN not in self._journaled(record.id):
                logger.warning(
                    "transfer_receive_failed",
                    transfer_id=record.id,
                    dest_warehouse_id=dest_warehouse_id,
                    error=str(exc),
                )
                self._restore_source(record)
                failed = self._finish(record.id, TransferState.FAILED, f"destination_unavailable: {exc}")
                self._emit("TRANSFER_FAILED", failed)
                return failed
            logger.warning("transfer_receive_error_after_commit", transfer_id=record.id, error=str(exc))

        completed = self._finish(record.id, TransferState.COMPLETED, None)
        logger.info(
            "transfer_completed",
            transfer_id=completed.id,
            source_warehouse_id=source_warehouse_id,
            dest_warehouse_id=dest_warehouse_id,
            product_id=product_id,
            quantity=quantity,
        )
        self._emit("TRANSFER_COMPLETED", completed)
        return completed

    @storage_retry
    def get(self, transfer_id: str) -> Optional[TransferRecord]:
        db = self._session_factory()
        try:
            return db.get(TransferRecord, transfer_id)
        finally:
            db.close()

    @storage_retry
    def list(
        self,
        warehouse_id: Optional[str] = None,
        state: Optional[TransferState] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[TransferRecord]:
        db = self._session_factory()
        try:
            query = db.query(TransferRecord)
            if warehouse_id:
                query = query.filter(
                    (TransferRecord.source_warehouse_id == warehouse_id)
                    | (TransferRecord.dest_warehouse_id == warehouse_id)
                )
            if state is not None:
                query = query.filter(TransferRecord.state == state)
            return query.order_by(TransferRecord.created_at.desc()).offset(skip).limit(limit).all()
        finally:
            db.close()

    @storage_retry
    def find_stale_pending(self, created_before: dt.datetime, limit: int = 100) -> List[TransferRecord]:
        db = self._session_factory()
        try:
            return (
                db.query(TransferRecord)
                .filter(TransferRecord.state == TransferState.PENDING, TransferRecord.created_at <= created_before)
                .order_by(TransferRecord.created_at.asc())
                .limit(limit)
                .all()
            )
        finally:
            db.close()

    def recover(self, transfer_id: str) -> Optional[TransferRecord]:
        """Resolve a transfer left PENDING by a crash or a failed bookkeeping write.

        The journal decides the outcome. A booked destination leg means the
        transfer completed. A source withdrawal with no receive and no rollback
        is restored first. The record is locked and updated in the same
        transaction as any restore, so a second pass finds nothing to do.
        Returns the resolved record, or None if it was not PENDING.
        """
        with session_scope(self._session_factory) as db:
            record = db.get(TransferRecord, transfer_id, with_for_update=True, populate_existing=True)
            if record is None or record.state != TransferState.PENDING:
                return None
            legs = _journaled_reasons(db, transfer_id)
            if MovementReason.TRANSFER_IN in legs:
                state, reason = TransferState.COMPLETED, None
            elif MovementReason.TRANSFER_ROLLBACK in legs:
                state, reason = TransferState.FAILED, "interrupted: source restored"
            elif MovementReason.TRANSFER_OUT in legs:
                self._ledger.receive(
                    record.source_warehouse_id,
                    record.product_id,
                    record.quantity,
                    reason=MovementReason.TRANSFER_ROLLBACK,
                    reference=record.id,
                    db=db,
                )
                state, reason = TransferState.FAILED, "interrupted: source restored"
            else:
                state, reason = TransferState.FAILED, "interrupted: nothing applied"
            record.state = state
            record.failure_reason = reason
            record.completed_at = utcnow()

        recovered = self.get(transfer_id)
        logger.warning("transfer_recovered", transfer_id=transfer_id, state=state.value, reason=reason)
        self._emit("TRANSFER_COMPLETED" if state == TransferState.COMPLETED else "TRANSFER_FAILED", recovered)
        return recovered

    @storage_retry
    def _journaled(self, transfer_id: str) -> Set[MovementReason]:
        db = self._session_factory()
        try:
            return _journaled_reasons(db, transfer_id)
        finally:
            db.close()

    @storage_retry
    def _validate(self, source: str, dest: str, product_id: str, quantity: int) -> None:
        if not source or not dest or not product_id:
            raise InvalidTransfer("source, destination and product are required")
        if source == dest:
            raise InvalidTransfer("source and destination warehouse must differ")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise InvalidTransfer(f"quantity must be a positive integer, got {quantity!r}")

        db = self._session_factory()
        try:
            for warehouse_id in (source, dest):
                if not warehouse_is_active(db, warehouse_id):
                    raise UnknownWarehouse(warehouse_id)
            if not stock_record_exists(db, source, product_id):
                raise UnknownStockKey(source, product_id)
        finally:
            db.close()

    def _restore_source(self, record: TransferRecord) -> None:
        try:
            storage_retry(self._ledger.receive)(
                record.source_warehouse_id,
                record.product_id,
                record.quantity,
                reason=MovementReason.TRANSFER_ROLLBACK,
                reference=record.id,
            )
        except Exception as exc:
            logger.critical(
                "transfer_rollback_failed",
                transfer_id=record.id,
                source_warehouse_id=record.source_warehouse_id,
                product_id=record.product_id,
                quantity=record.quantity,
            )
            self._finish(record.id, TransferState.FAILED, f"rollback_failed: {exc}")
            raise InconsistentLedger(
                f"transfer {record.id}: {record.quantity} unit(s) withdrawn from "
                f"{record.source_warehouse_id} could not be restored"
            ) from exc

    @storage_retry
    def _finish(self, transfer_id: str, state: TransferState, reason: Optional[str]) -> TransferRecord:
        with session_scope(self._session_factory) as db:
            db.execute(
                update(TransferRecord)
                .where(TransferRecord.id == transfer_id, TransferRecord.state == TransferState.PENDING)
                .values(state=state, failure_reason=reason, completed_at=utcnow())
                .execution_options(synchronize_session=False)
            )
        return self.get(transfer_id)

    def _emit(self, action: str, record: TransferRecord) -> None:
        if self._audit is None:
            return
        self._audit.emit(
            action,
            performed_by=record.requested_by,
            target_id=record.id,
            target_type="TRANSFER",
            details=record.failure_reason or "",
            source_warehouse_id=record.source_warehouse_id,
            dest_warehouse_id=record.dest_warehouse_id,
            product_id=record.product_id,
            quantity=record.quantity,
        )
