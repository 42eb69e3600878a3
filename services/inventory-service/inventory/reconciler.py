"""Finishes multi-step operations a crash or storage error interrupted.

Every step re-checks its flag under lock, so running a pass twice, or
alongside the normal code paths, changes nothing the second time. A repair
that fails is logged and retried on the next pass; it never blocks the rest.
"""

from __future__ import annotations

import datetime as dt
from typing import Optional

import structlog

from . import config
from .models import ReservationState, as_utc, utcnow
from .purchase_orders import PurchaseOrderProcessor
from .reservation_store import ReservationStore
from .reservations import COMMIT, RELEASE, ReservationManager
from .transfers import TransferOrchestrator

logger = structlog.get_logger(__name__)


class Reconciler:
    def __init__(
        self,
        store: ReservationStore,
        manager: ReservationManager,
        purchase_orders: Optional[PurchaseOrderProcessor] = None,
        transfers: Optional[TransferOrchestrator] = None,
        *,
        pending_grace: dt.timedelta = dt.timedelta(seconds=config.PENDING_GRACE_SECONDS),
        batch_size: int = config.REAPER_BATCH_SIZE,
    ):
        self._store = store
        self._manager = manager
        self._purchase_orders = purchase_orders
        self._transfers = transfers
        self._pending_grace = pending_grace
        self._batch_size = batch_size

    def run(self, now: Optional[dt.datetime] = None) -> int:
        now = as_utc(now) or utcnow()
        stale_before = now - self._pending_grace
        repaired = 0

        for reservation in self._store.find_stale_pending(stale_before, limit=self._batch_size):
            try:
                if self._manager.abort_stale(reservation.id, now):
                    repaired += 1
            except Exception:
                logger.exception("stale_reservation_abort_failed", reservation_id=reservation.id)

        for reservation in self._store.find_unsettled(limit=self._batch_size):
            action = COMMIT if reservation.state == ReservationState.COMMITTED else RELEASE
            try:
                settled = self._manager.settle_held_lines(reservation.id, action)
            except Exception:
                logger.exception("reservation_settle_failed", reservation_id=reservation.id, action=action)
                continue
            if settled:
                logger.warning(
                    "reservation_lines_settled",
                    reservation_id=reservation.id,
                    state=reservation.state.value,
                    action=action,
                    lines=settled,
                )
                repaired += 1

        if self._transfers is not None:
            for record in self._transfers.find_stale_pending(stale_before, limit=self._batch_size):
                try:
                    if self._transfers.recover(record.id) is not None:
                        repaired += 1
                except Exception:
                    logger.exception("transfer_recovery_failed", transfer_id=record.id)

        if self._purchase_orders is not None:
            try:
                booked = self._purchase_orders.finish_pending_receipts(limit=self._batch_size)
            except Exception:
                logger.exception("purchase_order_receipts_failed")
                booked = 0
            if booked:
                logger.warning("purchase_order_lines_booked", lines=booked)
                repaired += booked

        return repaired
