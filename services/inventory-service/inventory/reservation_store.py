"""Durable Reservation records and the compare-and-swap state transition."""

from __future__ import annotations

import datetime as dt
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from .database import session_scope, storage_retry
from .errors import DuplicateId, NotFound, StateConflict
from .models import (
    TERMINAL_RESERVATION_STATES,
    Reservation,
    ReservationLine,
    ReservationState,
    utcnow,
)


class ReservationStore:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def create(self, reservation: Reservation) -> Reservation:
        try:
            with session_scope(self._session_factory) as db:
                if db.get(Reservation, reservation.id) is not None:
                    raise DuplicateId(f"reservation id {reservation.id} already exists")
                db.add(reservation)
                db.flush()
        except IntegrityError as exc:
            raise DuplicateId(f"reservation id {reservation.id} already exists") from exc
        return reservation

    @storage_retry
    def get(self, reservation_id: str) -> Optional[Reservation]:
        db = self._session_factory()
        try:
            return db.get(Reservation, reservation_id)
        finally:
            db.close()

    @storage_retry
    def list(
        self,
        owner_id: Optional[str] = None,
        state: Optional[ReservationState] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[Reservation]:
        db = self._session_factory()
        try:
            query = db.query(Reservation)
            if owner_id:
                query = query.filter(Reservation.owner_id == owner_id)
            if state is not None:
                query = query.filter(Reservation.state == state)
            return query.order_by(Reservation.created_at.desc()).offset(skip).limit(limit).all()
        finally:
            db.close()

    def transition(
        self,
        reservation_id: str,
        from_state: ReservationState,
        to_state: ReservationState,
        now: Optional[dt.datetime] = None,
        *,
        expired_by: Optional[dt.datetime] = None,
    ) -> Reservation:
        """Move ``from_state`` -> ``to_state`` or raise ``StateConflict``.

        A single conditional UPDATE, so of two racing transitions out of the
        same state exactly one matches a row. With ``expired_by`` the row must
        also have ``expires_at <= expired_by``; a hold extended after it was
        listed no longer matches.
        """
        values = {"state": to_state}
        if to_state in TERMINAL_RESERVATION_STATES:
            values["resolved_at"] = now or utcnow()

        conditions = [Reservation.id == reservation_id, Reservation.state == from_state]
        if expired_by is not None:
            conditions.append(Reservation.expires_at <= expired_by)

        with session_scope(self._session_factory) as db:
            result = db.execute(
                update(Reservation)
                .where(*conditions)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            matched = result.rowcount

        if matched != 1:
            current = self.get(reservation_id)
            if current is None:
                raise NotFound(f"reservation {reservation_id} not found")
            raise StateConflict(reservation_id, from_state.value, current.state.value)
        return self.get(reservation_id)

    def set_expiry(self, reservation_id: str, expires_at: dt.datetime) -> Reservation:
        with session_scope(self._session_factory) as db:
            result = db.execute(
                update(Reservation)
                .where(Reservation.id == reservation_id, Reservation.state == ReservationState.ACTIVE)
                .values(expires_at=expires_at)
                .execution_options(synchronize_session=False)
            )
            matched = result.rowcount

        if matched != 1:
            current = self.get(reservation_id)
            if current is None:
                raise NotFound(f"reservation {reservation_id} not found")
            raise StateConflict(reservation_id, ReservationState.ACTIVE.value, current.state.value)
        return self.get(reservation_id)

    @storage_retry
    def find_expired(self, now: dt.datetime, limit: int = 100) -> List[Reservation]:
        """ACTIVE reservations whose hold has run out, oldest-expired first."""
        db = self._session_factory()
        try:
            return (
                db.query(Reservation)
                .filter(Reservation.state == ReservationState.ACTIVE, Reservation.expires_at <= now)
                .order_by(Reservation.expires_at.asc(), Reservation.id.asc())
                .limit(limit)
                .all()
            )
        finally:
            db.close()

    @storage_retry
    def find_stale_pending(self, created_before: dt.datetime, limit: int = 100) -> List[Reservation]:
        db = self._session_factory()
        try:
            return (
                db.query(Reservation)
                .filter(Reservation.state == ReservationState.PENDING, Reservation.created_at <= created_before)
                .order_by(Reservation.created_at.asc())
                .limit(limit)
                .all()
            )
        finally:
            db.close()

    @storage_retry
    def find_unsettled(self, limit: int = 100) -> List[Reservation]:
        """Terminal reservations that still have a line counted in ``reserved``."""
        db = self._session_factory()
        try:
            held = select(ReservationLine.reservation_id).where(ReservationLine.held.is_(True))
            return (
                db.query(Reservation)
                .filter(
                    Reservation.state.in_(list(TERMINAL_RESERVATION_STATES)),
                    Reservation.id.in_(held),
                )
                .order_by(Reservation.resolved_at.asc())
                .limit(limit)
                .all()
            )
        finally:
            db.close()

    @storage_retry
    def held_line_ids(self, reservation_id: str) -> List[int]:
        db = self._session_factory()
        try:
            rows = (
                db.query(ReservationLine.id)
                .filter(ReservationLine.reservation_id == reservation_id, ReservationLine.held.is_(True))
                .order_by(ReservationLine.position.asc())
                .all()
            )
            return [row.id for row in rows]
        finally:
            db.close()
