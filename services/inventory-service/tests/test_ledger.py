"""StockLedger counters, journal and per-key serialization."""

from threading import Barrier, Thread

import pytest
from helpers import counters, line, stock

from inventory import crud
from inventory.database import session_scope
from inventory.errors import (
    InconsistentLedger,
    InsufficientStock,
    InvalidLine,
    UnknownStockKey,
    UnknownWarehouse,
)
from inventory.events import LOW_STOCK_ROUTING_KEY
from inventory.models import MovementReason


class TestReserve:
    def test_reserve_within_available(self, services, ledger):
        stock(services, "W1", "SKU-1", 10)

        snapshot = ledger.reserve("W1", "SKU-1", 6)

        assert (snapshot.on_hand, snapshot.reserved, snapshot.available) == (10, 6, 4)
        assert counters(services, "W1", "SKU-1") == (10, 6)

    def test_reserve_beyond_available_changes_nothing(self, services, ledger):
        stock(services, "W1", "SKU-1", 10)
        ledger.reserve("W1", "SKU-1", 6)

        with pytest.raises(InsufficientStock) as exc_info:
            ledger.reserve("W1", "SKU-1", 5)

        assert exc_info.value.available == 4
        assert exc_info.value.requested == 5
        assert counters(services, "W1", "SKU-1") == (10, 6)

    @pytest.mark.parametrize("qty", [0, -1, True, 1.5, "2"])
    def test_rejects_non_positive_or_non_integer_quantity(self, services, ledger, qty):
        stock(services, "W1", "SKU-1", 10)

        with pytest.raises(InvalidLine):
            ledger.reserve("W1", "SKU-1", qty)

    def test_unknown_key(self, services, ledger):
        with pytest.raises(UnknownStockKey):
            ledger.reserve("W1", "NOPE", 1)


class TestReleaseAndCommit:
    def test_release_returns_units(self, services, ledger):
        stock(services, "W1", "SKU-1", 10)
        ledger.reserve("W1", "SKU-1", 4)

        ledger.release("W1", "SKU-1", 4)

        assert counters(services, "W1", "SKU-1") == (10, 0)

    def test_over_release_clamps_at_zero(self, services, ledger):
        stock(services, "W1", "SKU-1", 10)
        ledger.reserve("W1", "SKU-1", 2)

        snapshot = ledger.release("W1", "SKU-1", 5)

        assert snapshot.reserved == 0
        assert counters(services, "W1", "SKU-1") == (10, 0)

    def test_commit_decrements_both_counters_and_journals_sale(self, services, ledger):
        stock(services, "W1", "SKU-1", 10)
        ledger.reserve("W1", "SKU-1", 6)

        ledger.commit("W1", "SKU-1", 6, reference="res-1")

        assert counters(services, "W1", "SKU-1") == (4, 0)
        movements = ledger.movements(warehouse_id="W1", product_id="SKU-1")
        assert [(m.change, m.reason) for m in movements] == [
            (-6, MovementReason.SALE),
            (10, MovementReason.RESTOCK),
        ]
        assert movements[0].reference == "res-1"

    def test_commit_without_reservation_is_a_defect(self, services, ledger):
        stock(services, "W1", "SKU-1", 10)

        with pytest.raises(InconsistentLedger):
            ledger.commit("W1", "SKU-1", 1)

        assert counters(services, "W1", "SKU-1") == (10, 0)


class TestReceiveAndWithdraw:
    def test_receive_creates_missing_key(self, services, ledger):
        snapshot = ledger.receive("W2", "SKU-9", 7)

        assert (snapshot.on_hand, snapshot.reserved) == (7, 0)
        assert counters(services, "W2", "SKU-9") == (7, 0)

    def test_receive_into_unknown_warehouse(self, ledger):
        with pytest.raises(UnknownWarehouse):
            ledger.receive("W404", "SKU-1", 1)

    def test_receive_into_inactive_warehouse(self, services, ledger, session_factory):
        with session_scope(session_factory) as db:
            crud.set_warehouse_active(db, "W2", False)

        with pytest.raises(UnknownWarehouse):
            ledger.receive("W2", "SKU-1", 1)

    def test_withdraw_never_touches_held_units(self, services, ledger):
        stock(services, "W1", "SKU-1", 10)
        ledger.reserve("W1", "SKU-1", 8)

        with pytest.raises(InsufficientStock):
            ledger.withdraw("W1", "SKU-1", 3)

        ledger.withdraw("W1", "SKU-1", 2)
        assert counters(services, "W1", "SKU-1") == (8, 8)

    def test_open_record_is_idempotent(self, services, ledger):
        first = stock(services, "W1", "SKU-1", 10)
        second = stock(services, "W1", "SKU-1", 99)

        assert first == second
        assert counters(services, "W1", "SKU-1") == (10, 0)

    def test_open_record_rejects_negative_balance(self, ledger):
        with pytest.raises(InvalidLine):
            ledger.open_record("W1", "SKU-1", -1)


class TestLowStock:
    def test_alert_when_available_drops_to_threshold(self, services, ledger, publisher):
        stock(services, "W1", "SKU-1", 10)

        ledger.reserve("W1", "SKU-1", 7)
        assert publisher.payloads(LOW_STOCK_ROUTING_KEY) == []

        ledger.reserve("W1", "SKU-1", 1)
        [alert] = publisher.payloads(LOW_STOCK_ROUTING_KEY)
        assert alert["warehouse_id"] == "W1"
        assert alert["product_id"] == "SKU-1"
        assert alert["available"] == 2

    def test_no_alert_for_a_change_the_caller_rolled_back(self, services, ledger, publisher, session_factory):
        stock(services, "W1", "SKU-1", 10)

        db = session_factory()
        try:
            ledger.reserve("W1", "SKU-1", 9, db=db)
            db.rollback()
        finally:
            db.close()

        assert publisher.payloads(LOW_STOCK_ROUTING_KEY) == []
        assert counters(services, "W1", "SKU-1") == (10, 0)

    def test_alert_for_a_checkout_hold_once_it_commits(self, services, manager, publisher):
        stock(services, "W1", "SKU-1", 10)

        manager.create("cart-1", [line("W1", "SKU-1", 9)])

        [alert] = publisher.payloads(LOW_STOCK_ROUTING_KEY)
        assert alert["available"] == 1


class TestConcurrentReserve:
    def test_reserved_never_exceeds_on_hand(self, services, ledger):
        """10 units, 8 shoppers grabbing 2 each at once: exactly 5 succeed."""
        stock(services, "W1", "SKU-1", 10)
        workers = 8
        barrier = Barrier(workers)
        outcomes = []

        def grab():
            barrier.wait()
            try:
                ledger.reserve("W1", "SKU-1", 2)
                outcomes.append("ok")
            except InsufficientStock:
                outcomes.append("short")

        threads = [Thread(target=grab) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(30)

        assert outcomes.count("ok") == 5
        assert outcomes.count("short") == 3
        assert counters(services, "W1", "SKU-1") == (10, 10)

    def test_concurrent_receive_and_reserve_stay_consistent(self, services, ledger):
        stock(services, "W1", "SKU-1", 5)
        barrier = Barrier(6)
        errors = []

        def receive():
            barrier.wait()
            ledger.receive("W1", "SKU-1", 5)

        def reserve():
            barrier.wait()
            try:
                ledger.reserve("W1", "SKU-1", 3)
            except InsufficientStock:
                pass
            except Exception as exc:
                errors.append(exc)

        threads = [Thread(target=receive) for _ in range(2)] + [Thread(target=reserve) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(30)

        on_hand, reserved = counters(services, "W1", "SKU-1")
        assert errors == []
        assert on_hand == 15
        assert 0 <= reserved <= on_hand
        assert reserved % 3 == 0
