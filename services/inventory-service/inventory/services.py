"""Wires the inventory components together around one session factory."""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from . import config
from .events import AuditSink, EventPublisher, build_publisher
from .ledger import StockLedger
from .purchase_orders import PurchaseOrderProcessor
from .reaper import ExpiryReaper
from .reconciler import Reconciler
from .reservation_store import ReservationStore
from .reservations import ReservationManager
from .transfers import TransferOrchestrator


@dataclass
class InventoryServices:
    engine: Engine
    session_factory: sessionmaker
    publisher: EventPublisher
    ledger: StockLedger
    store: ReservationStore
    reservations: ReservationManager
    transfers: TransferOrchestrator
    purchase_orders: PurchaseOrderProcessor
    reconciler: Reconciler
    reaper: ExpiryReaper

    def shutdown(self, timeout: Optional[float] = 10.0) -> None:
        self.reaper.stop(timeout)
        self.publisher.close(timeout)


def build_services(
    engine: Engine,
    session_factory: sessionmaker,
    *,
    publisher: Optional[EventPublisher] = None,
    hold_duration: dt.timedelta = dt.timedelta(seconds=config.HOLD_DURATION_SECONDS),
    reaper_interval: float = config.REAPER_INTERVAL_SECONDS,
    pending_grace: dt.timedelta = dt.timedelta(seconds=config.PENDING_GRACE_SECONDS),
    low_stock_threshold: int = config.LOW_STOCK_THRESHOLD,
) -> InventoryServices:
    publisher = publisher or build_publisher()
    audit = AuditSink(publisher)

    ledger = StockLedger(session_factory, publisher=publisher, low_stock_threshold=low_stock_threshold)
    store = ReservationStore(session_factory)
    reservations = ReservationManager(session_factory, store, ledger, audit=audit, hold_duration=hold_duration)
    transfers = TransferOrchestrator(session_factory, ledger, audit=audit)
    purchase_orders = PurchaseOrderProcessor(session_factory, ledger, audit=audit)
    reconciler = Reconciler(store, reservations, purchase_orders, transfers, pending_grace=pending_grace)
    reaper = ExpiryReaper(reservations, reconciler, interval=reaper_interval)

    return InventoryServices(
        engine=engine,
        session_factory=session_factory,
        publisher=publisher,
        ledger=ledger,
        store=store,
        reservations=reservations,
        transfers=transfers,
        purchase_orders=purchase_orders,
        reconciler=reconciler,
        reaper=reaper,
    )
