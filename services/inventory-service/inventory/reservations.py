"""ReservationManager: checkout holds and their lifecycle.

A reservation is written PENDING first, then each line takes its ledger hold
and is marked ``held`` in the same transaction, and only then does the record
become ACTIVE. At every instant each unit counted in ``reserved`` belongs to a
held line, and an ACTIVE reservation holds all of its lines. Leaving ACTIVE
is a compare-and-swap, so a commit racing the reaper resolves to exactly one
outcome.
"""

from __future__ import annotations

import datetime as dt
import uuid
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Sequence, Union

import structlog
from sqlalchemy.orm import sessionmaker

from . import config
from .database import session_scope, storage_retry
from .errors import AlreadyResolved, InvalidExpiry, InvalidLine, StateConflict, UnknownStockKey, UnknownWarehouse
from .events import AuditSink
from .ledger import StockLedger, check_quantity, stock_record_exists, warehouse_is_active
from .models import Reservation, ReservationLine, ReservationState, as_utc, utcnow
from .reservation_store import ReservationStore

logger = structlog.get_logger(__name__)

COMMIT = "commit"
RELEASE = "release"


@dataclass(frozen=True)
class LineRequest:
    warehouse_id: str
    product_id: str
    quantity: int


LineLike = Union[LineRequest, Mapping[str, Any]]


def _coerce_line(raw: LineLike, index: int) -> LineRequest:
    if isinstance(raw, LineRequest):
        line = raw
    elif isinstance(raw, Mapping):
        try:
            line = LineRequest(str(raw["warehouse_id"]), str(raw["product_id"]), raw["quantity"])
        except KeyError as exc:
            raise InvalidLine(f"line is missing {exc.args[0]}", line_index=index) from exc
    else:
        line = LineRequest(raw.warehouse_id, raw.product_id, raw.quantity)

    if not line.warehouse_id or not line.product_id:
        raise InvalidLine("warehouse_id and product_id are required", line_index=index)
    check_quantity(line.quantity, line_index=index)
    return line


class ReservationManager:
    def __init__(
        self,
        session_factory: sessionmaker,
        store: ReservationStore,
        ledger: StockLedger,
        *,
        audit: Optional[AuditSink] = None,
        hold_duration: dt.timedelta = dt.timedelta(seconds=config.HOLD_DURATION_SECONDS),
    ):
        self._session_factory = session_factory
        self._store = store
        self._ledger = ledger
        self._audit = audit
        self.hold_duration = hold_duration

    # -----------------------------
    # Lifecycle
    # -----------------------------

    def create(self, owner_id: str, lines: Sequence[LineLike], now: Optional[dt.datetime] = None) -> Reservation:
        if not owner_id:
            raise InvalidLine("owner_id is required")
        if not lines:
            raise InvalidLine("a reservation needs at least one line")
        requested = [_coerce_line(raw, index) for index, raw in enumerate(lines)]
        self._check_keys(requested)

        now = as_utc(now) or utcnow()
        reservation = Reservation(
            id=uuid.uuid4().hex,
            owner_id=str(owner_id),
            state=ReservationState.PENDING,
            created_at=now,
            expires_at=now + self.hold_duration,
            lines=[
                ReservationLine(
                    position=index,
                    warehouse_id=line.warehouse_id,
                    product_id=line.product_id,
                    quantity=line.quantity,
                    held=False,
                )
                for index, line in enumerate(requested)
            ],
        )
        self._store.create(reservation)

        for index, line in enumerate(reservation.lines):
            try:
                self._hold_line(line.id)
            except Exception as exc:
                if hasattr(exc, "line_index"):
                    exc.line_index = index
                logger.info(
                    "reservation_rejected",
                    reservation_id=reservation.id,
                    owner_id=reservation.owner_id,
                    line_index=index,
                    error=str(exc),
                )
                self._abort(reservation)
                raise

        try:
            active = self._store.transition(reservation.id, ReservationState.PENDING, ReservationState.ACTIVE)
        except StateConflict as exc:
            # Only the reconciler moves a PENDING record; it releases the holds.
            raise AlreadyResolved(reservation.id, exc.expected, exc.actual) from exc

        logger.info(
            "reservation_created",
            reservation_id=active.id,
            owner_id=active.owner_id,
            lines=len(active.lines),
            expires_at=as_utc(active.expires_at).isoformat(),
        )
        self._emit("RESERVATION_CREATED", active, details=f"{len(active.lines)} line(s) held")
        return active

    def commit(self, reservation_id: str, now: Optional[dt.datetime] = None) -> Reservation:
        reservation = self._resolve(reservation_id, ReservationState.COMMITTED, now)
        # No blind retry: each step re-checks ``held`` under lock before acting.
        for line in reservation.lines:
            self._settle_line(line.id, COMMIT)
        logger.info("reservation_committed", reservation_id=reservation.id, owner_id=reservation.owner_id)
        self._emit("RESERVATION_COMMITTED", reservation)
        return reservation

    def release(self, reservation_id: str, now: Optional[dt.datetime] = None) -> Reservation:
        reservation = self._resolve(reservation_id, ReservationState.RELEASED, now)
        for line in reservation.lines:
            self._settle_line(line.id, RELEASE)
        logger.info("reservation_released", reservation_id=reservation.id, owner_id=reservation.owner_id)
        self._emit("RESERVATION_RELEASED", reservation)
        return reservation

    def expire(self, reservation_id: str, now: Optional[dt.datetime] = None) -> Reservation:
        """Expire a hold whose ``expires_at`` has passed by ``now``.

        A hold that is no longer ACTIVE, or was extended past ``now``, raises
        ``AlreadyResolved`` and keeps its stock.
        """
        now = as_utc(now) or utcnow()
        reservation = self._resolve(reservation_id, ReservationState.EXPIRED, now, expired_by=now)
        for line in reservation.lines:
            self._settle_line(line.id, RELEASE)
        logger.info(
            "reservation_expired",
            reservation_id=reservation.id,
            owner_id=reservation.owner_id,
            expired_at=as_utc(reservation.expires_at).isoformat(),
        )
        self._emit("RESERVATION_EXPIRED", reservation)
        return reservation

    def extend(self, reservation_id: str, new_expiry: dt.datetime, now: Optional[dt.datetime] = None) -> Reservation:
        new_expiry = as_utc(new_expiry)
        now = as_utc(now) or utcnow()
        if new_expiry is None or new_expiry <= now:
            raise InvalidExpiry("new expiry must be in the future")
        try:
            reservation = self._store.set_expiry(reservation_id, new_expiry)
        except StateConflict as exc:
            raise AlreadyResolved(reservation_id, exc.expected, exc.actual) from exc
        self._emit("RESERVATION_EXTENDED", reservation, details=f"expires at {new_expiry.isoformat()}")
        return reservation

    # -----------------------------
    # Reads
    # -----------------------------

    def get(self, reservation_id: str) -> Optional[Reservation]:
        return self._store.get(reservation_id)

    def list(
        self,
        owner_id: Optional[str] = None,
        state: Optional[ReservationState] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[Reservation]:
        return self._store.list(owner_id=owner_id, state=state, skip=skip, limit=limit)

    def find_expired(self, now: dt.datetime, limit: int = 100) -> List[Reservation]:
        return self._store.find_expired(as_utc(now), limit=limit)

    # -----------------------------
    # Repair (used by the reconciler)
    # -----------------------------

    def settle_held_lines(self, reservation_id: str, action: str) -> int:
        settled = 0
        for line_id in self._store.held_line_ids(reservation_id):
            if self._settle_line(line_id, action):
                settled += 1
        return settled

    def abort_stale(self, reservation_id: str, now: Optional[dt.datetime] = None) -> bool:
        """Abort a reservation left PENDING by a crashed create."""
        try:
            reservation = self._store.transition(
                reservation_id, ReservationState.PENDING, ReservationState.ABORTED, now
            )
        except StateConflict:
            return False
        released = self.settle_held_lines(reservation_id, RELEASE)
        logger.warning("stale_reservation_aborted", reservation_id=reservation_id, released_lines=released)
        self._emit("RESERVATION_ABORTED", reservation, details="creation did not finish")
        return True

    # -----------------------------
    # Internals
    # -----------------------------

    @storage_retry
    def _check_keys(self, requested: Sequence[LineRequest]) -> None:
        db = self._session_factory()
        try:
            for index, line in enumerate(requested):
                if not warehouse_is_active(db, line.warehouse_id):
                    raise UnknownWarehouse(line.warehouse_id)
                if not stock_record_exists(db, line.warehouse_id, line.product_id):
                    raise UnknownStockKey(line.warehouse_id, line.product_id, line_index=index)
        finally:
            db.close()

    def _resolve(
        self,
        reservation_id: str,
        to_state: ReservationState,
        now: Optional[dt.datetime],
        expired_by: Optional[dt.datetime] = None,
    ) -> Reservation:
        try:
            return self._store.transition(
                reservation_id, ReservationState.ACTIVE, to_state, as_utc(now), expired_by=expired_by
            )
        except StateConflict as exc:
            logger.info(
                "reservation_already_resolved",
                reservation_id=reservation_id,
                attempted=to_state.value,
                state=exc.actual,
            )
            raise AlreadyResolved(reservation_id, exc.expected, exc.actual) from exc

    def _hold_line(self, line_id: int) -> None:
        with session_scope(self._session_factory) as db:
            line = db.get(ReservationLine, line_id, with_for_update=True)
            if line is None or line.held:
                return
            snapshot = self._ledger.reserve(line.warehouse_id, line.product_id, line.quantity, db=db)
            line.held = True
        self._ledger.check_low_stock(snapshot)

    def _settle_line(self, line_id: int, action: str) -> bool:
        """Commit or release one held line; a line that is not held is left alone."""
        with session_scope(self._session_factory) as db:
            line = db.get(ReservationLine, line_id, with_for_update=True, populate_existing=True)
            if line is None or not line.held:
                return False
            if action == COMMIT:
                snapshot = self._ledger.commit(
                    line.warehouse_id, line.product_id, line.quantity, reference=line.reservation_id, db=db
                )
            else:
                snapshot = None
                self._ledger.release(line.warehouse_id, line.product_id, line.quantity, db=db)
            line.held = False
        if snapshot is not None:
            self._ledger.check_low_stock(snapshot)
        return True

    def _abort(self, reservation: Reservation) -> None:
        for line in reversed(reservation.lines):
            storage_retry(self._settle_line)(line.id, RELEASE)
        try:
            self._store.transition(reservation.id, ReservationState.PENDING, ReservationState.ABORTED)
        except StateConflict:
            logger.info("reservation_abort_raced", reservation_id=reservation.id)
        self._emit("RESERVATION_REJECTED", reservation, details="a line could not be held")

    def _emit(self, action: str, reservation: Reservation, details: str = "") -> None:
        if self._audit is None:
            return
        self._audit.emit(
            action,
            performed_by=reservation.owner_id,
            target_id=reservation.id,
            target_type="RESERVATION",
            details=details,
            lines=[
                {"warehouse_id": line.warehouse_id, "product_id": line.product_id, "quantity": line.quantity}
                for line in reservation.lines
            ],
        )