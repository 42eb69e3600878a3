from __future__ import annotations

import uuid
from typing import Any, List, Mapping, Optional, Sequence

import structlog
from sqlalchemy import update
from sqlalchemy.orm import sessionmaker

from .database import session_scope, storage_retry
from .errors import AlreadyResolved, InvalidLine, NotFound, UnknownWarehouse
from .events import AuditSink
from .ledger import Availability, StockLedger, check_quantity, warehouse_is_active
from .models import MovementReason, PurchaseOrder, PurchaseOrderLine, PurchaseOrderStatus, utcnow

logger = structlog.get_logger(__name__)


class PurchaseOrderProcessor:
    """Supply coming into a warehouse.

    Receipts only ever raise ``on_hand``, so they cannot cause oversell and
    need nothing beyond the ledger's per-key locking to run alongside
    reservations.
    """

    def __init__(self, session_factory: sessionmaker, ledger: StockLedger, *, audit: Optional[AuditSink] = None):
        self._session_factory = session_factory
        self._ledger = ledger
        self._audit = audit

    def receive(
        self,
        warehouse_id: str,
        product_id: str,
        quantity: int,
        reference: Optional[str] = None,
    ) -> Availability:
        return self._ledger.receive(
            warehouse_id, product_id, quantity, reason=MovementReason.RESTOCK, reference=reference
        )

    def create_order(
        self,
        supplier_name: str,
        warehouse_id: str,
        lines: Sequence[Mapping[str, Any]],
        po_number: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> PurchaseOrder:
        if not supplier_name:
            raise InvalidLine("supplier_name is required")
        if not lines:
            raise InvalidLine("a purchase order needs at least one line")
        for index, line in enumerate(lines):
            if not line.get("product_id"):
                raise InvalidLine("product_id is required", line_index=index)
            check_quantity(line.get("quantity"), line_index=index)

        order_id = uuid.uuid4().hex
        order = PurchaseOrder(
            id=order_id,
            po_number=po_number or f"PO-{order_id[:8].upper()}",
            supplier_name=supplier_name,
            warehouse_id=warehouse_id,
            status=PurchaseOrderStatus.DRAFT,
            created_by=created_by,
            created_at=utcnow(),
            lines=[
                PurchaseOrderLine(product_id=str(line["product_id"]), quantity=line["quantity"], received=False)
                for line in lines
            ],
        )
        with session_scope(self._session_factory) as db:
            if not warehouse_is_active(db, warehouse_id):
                raise UnknownWarehouse(warehouse_id)
            db.add(order)
        self._emit("PURCHASE_ORDER_CREATED", order, created_by)
        return order

    def receive_order(self, order_id: str, received_by: Optional[str] = None) -> PurchaseOrder:
        """Book a DRAFT order into stock exactly once."""
        with session_scope(self._session_factory) as db:
            result = db.execute(
                update(PurchaseOrder)
                .where(PurchaseOrder.id == order_id, PurchaseOrder.status == PurchaseOrderStatus.DRAFT)
                .values(status=PurchaseOrderStatus.RECEIVED, received_at=utcnow(), received_by=received_by)
                .execution_options(synchronize_session=False)
            )
            matched = result.rowcount

        if matched != 1:
            current = self.get(order_id)
            if current is None:
                raise NotFound(f"purchase order {order_id} not found")
            raise AlreadyResolved(order_id, PurchaseOrderStatus.DRAFT.value, current.status.value)

        order = self.get(order_id)
        for line in order.lines:
            self._receive_line(order, line.id)

        order = self.get(order_id)
        logger.info("purchase_order_received", purchase_order_id=order.id, po_number=order.po_number)
        self._emit("PURCHASE_ORDER_RECEIVED", order, received_by)
        return order

    def finish_pending_receipts(self, limit: int = 100) -> int:
        """Receive lines of RECEIVED orders that a crash left unbooked."""
        db = self._session_factory()
        try:
            orders = (
                db.query(PurchaseOrder)
                .join(PurchaseOrderLine, PurchaseOrderLine.purchase_order_id == PurchaseOrder.id)
                .filter(
                    PurchaseOrder.status == PurchaseOrderStatus.RECEIVED,
                    PurchaseOrderLine.received.is_(False),
                )
                .distinct()
                .limit(limit)
                .all()
            )
        finally:
            db.close()

        booked = 0
        for order in orders:
            try:
                for line in order.lines:
                    if self._receive_line(order, line.id):
                        booked += 1
            except Exception:
                logger.exception("purchase_order_receipt_failed", purchase_order_id=order.id)
        return booked

    @storage_retry
    def get(self, order_id: str) -> Optional[PurchaseOrder]:
        db = self._session_factory()
        try:
            return db.get(PurchaseOrder, order_id)
        finally:
            db.close()

    @storage_retry
    def list(
        self,
        warehouse_id: Optional[str] = None,
        status: Optional[PurchaseOrderStatus] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[PurchaseOrder]:
        db = self._session_factory()
        try:
            query = db.query(PurchaseOrder)
            if warehouse_id:
                query = query.filter(PurchaseOrder.warehouse_id == warehouse_id)
            if status is not None:
                query = query.filter(PurchaseOrder.status == status)
            return query.order_by(PurchaseOrder.created_at.desc()).offset(skip).limit(limit).all()
        finally:
            db.close()

    def _receive_line(self, order: PurchaseOrder, line_id: int) -> bool:
        with session_scope(self._session_factory) as db:
            line = db.get(PurchaseOrderLine, line_id, with_for_update=True, populate_existing=True)
            if line is None or line.received:
                return False
            self._ledger.receive(
                order.warehouse_id,
                line.product_id,
                line.quantity,
                reason=MovementReason.RESTOCK,
                reference=order.po_number,
                db=db,
            )
            line.received = True
        return True

    def _emit(self, action: str, order: PurchaseOrder, performed_by: Optional[str]) -> None:
        if self._audit is None:
            return
        self._audit.emit(
            action,
            performed_by=performed_by,
            target_id=order.id,
            target_type="PURCHASE_ORDER",
            details=f"{order.po_number} from {order.supplier_name}",
            warehouse_id=order.warehouse_id,
            lines=[{"product_id": line.product_id, "quantity": line.quantity} for line in order.lines],
        )
