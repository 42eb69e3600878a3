import datetime as dt
import threading
import time

import pytest
from helpers import HOLD, counters, line, stock

from inventory.errors import AlreadyResolved
from inventory.models import ReservationState, utcnow
from inventory.reaper import ExpiryReaper


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


class TestSweep:
    def test_expires_abandoned_holds(self, services, manager):
        stock(services, "W1", "SKU-1", 10)
        created_at = utcnow()
        reservation = manager.create("cart-1", [line("W1", "SKU-1", 4)], now=created_at)

        result = services.reaper.run_once(now=created_at + HOLD + dt.timedelta(seconds=1))

        assert result.expired == 1
        assert result.skipped is False
        assert manager.get(reservation.id).state == ReservationState.EXPIRED
        assert counters(services, "W1", "SKU-1") == (10, 0)

    def test_leaves_live_holds_alone(self, services, manager):
        stock(services, "W1", "SKU-1", 10)
        created_at = utcnow()
        reservation = manager.create("cart-1", [line("W1", "SKU-1", 4)], now=created_at)

        result = services.reaper.run_once(now=created_at + HOLD - dt.timedelta(seconds=1))

        assert result.expired == 0
        assert manager.get(reservation.id).state == ReservationState.ACTIVE
        assert counters(services, "W1", "SKU-1") == (10, 4)

    def test_expires_oldest_first_and_drains_the_backlog(self, services, manager, monkeypatch):
        stock(services, "W1", "SKU-1", 10)
        start = utcnow() - dt.timedelta(hours=1)
        ids = [
            manager.create(f"cart-{n}", [line("W1", "SKU-1", 1)], now=start + dt.timedelta(seconds=n)).id
            for n in range(5)
        ]
        reaper = ExpiryReaper(manager, interval=1, batch_size=2)
        order = []
        original = manager.expire

        def expire(reservation_id, now=None):
            order.append(reservation_id)
            return original(reservation_id, now)

        monkeypatch.setattr(manager, "expire", expire)

        result = reaper.run_once()

        assert result.expired == 5
        assert order == ids
        assert counters(services, "W1", "SKU-1") == (10, 0)

    def test_failing_holds_do_not_block_later_batches(self, services, manager, monkeypatch):
        stock(services, "W1", "SKU-1", 10)
        start = utcnow() - dt.timedelta(hours=1)
        ids = [
            manager.create(f"cart-{n}", [line("W1", "SKU-1", 1)], now=start + dt.timedelta(seconds=n)).id
            for n in range(5)
        ]
        stuck = set(ids[:2])
        reaper = ExpiryReaper(manager, interval=1, batch_size=2)
        original = manager.expire

        def expire(reservation_id, now=None):
            if reservation_id in stuck:
                raise RuntimeError("storage hiccup")
            return original(reservation_id, now)

        monkeypatch.setattr(manager, "expire", expire)

        result = reaper.run_once()

        assert result.failed == 2
        assert result.expired == 3
        assert [manager.get(i).state for i in ids[2:]] == [ReservationState.EXPIRED] * 3
        assert counters(services, "W1", "SKU-1") == (10, 2)

    def test_counts_holds_resolved_after_listing(self, services, manager, monkeypatch):
        stock(services, "W1", "SKU-1", 10)
        created_at = utcnow() - HOLD - dt.timedelta(minutes=1)
        reservation = manager.create("cart-1", [line("W1", "SKU-1", 3)], now=created_at)
        listed = manager.find_expired(utcnow())
        manager.commit(reservation.id)
        monkeypatch.setattr(manager, "find_expired", lambda now, limit=100: listed)

        result = services.reaper.run_once()

        assert result.expired == 0
        assert result.conflicts == 1
        assert counters(services, "W1", "SKU-1") == (7, 0)

    def test_extended_hold_survives_a_stale_listing(self, services, manager, monkeypatch):
        stock(services, "W1", "SKU-1", 10)
        created_at = utcnow() - HOLD - dt.timedelta(minutes=1)
        reservation = manager.create("cart-1", [line("W1", "SKU-1", 3)], now=created_at)
        listed = manager.find_expired(utcnow())
        manager.extend(reservation.id, utcnow() + dt.timedelta(minutes=10))
        monkeypatch.setattr(manager, "find_expired", lambda now, limit=100: listed)

        result = services.reaper.run_once()

        assert result.expired == 0
        assert result.conflicts == 1
        assert manager.get(reservation.id).state == ReservationState.ACTIVE
        assert counters(services, "W1", "SKU-1") == (10, 3)

    def test_one_failing_reservation_does_not_stop_the_sweep(self, services, manager, monkeypatch):
        stock(services, "W1", "SKU-1", 10)
        created_at = utcnow() - HOLD - dt.timedelta(minutes=1)
        bad = manager.create("cart-1", [line("W1", "SKU-1", 1)], now=created_at)
        good = manager.create("cart-2", [line("W1", "SKU-1", 1)], now=created_at + dt.timedelta(seconds=1))
        original = manager.expire

        def flaky_expire(reservation_id, now=None):
            if reservation_id == bad.id:
                raise RuntimeError("storage hiccup")
            return original(reservation_id, now)

        monkeypatch.setattr(manager, "expire", flaky_expire)

        result = services.reaper.run_once()

        assert result.failed == 1
        assert result.expired == 1
        assert manager.get(good.id).state == ReservationState.EXPIRED
        assert manager.get(bad.id).state == ReservationState.ACTIVE


class TestCommitRacingReaper:
    def test_exactly_one_outcome(self, services, manager):
        for attempt in range(5):
            product = f"SKU-{attempt}"
            stock(services, "W1", product, 10)
            created_at = utcnow() - HOLD - dt.timedelta(seconds=1)
            reservation = manager.create("cart-1", [line("W1", product, 3)], now=created_at)
            barrier = threading.Barrier(2)
            outcomes = {}

            def run(name, action):
                barrier.wait()
                try:
                    action(reservation.id)
                    outcomes[name] = "won"
                except AlreadyResolved:
                    outcomes[name] = "lost"

            threads = [
                threading.Thread(target=run, args=("commit", manager.commit)),
                threading.Thread(target=run, args=("expire", manager.expire)),
            ]
            for t in threads:
                t.start()
            for t in threads:
                t.join(30)

            assert sorted(outcomes.values()) == ["lost", "won"]
            final = manager.get(reservation.id).state
            if outcomes["commit"] == "won":
                assert final == ReservationState.COMMITTED
                assert counters(services, "W1", product) == (7, 0)
            else:
                assert final == ReservationState.EXPIRED
                assert counters(services, "W1", product) == (10, 0)


class TestScheduling:
    def test_overlapping_tick_is_skipped(self, services, manager, monkeypatch):
        entered = threading.Event()
        proceed = threading.Event()
        original = manager.find_expired

        def slow_find_expired(now, limit=100):
            entered.set()
            proceed.wait(5)
            return original(now, limit=limit)

        monkeypatch.setattr(manager, "find_expired", slow_find_expired)
        in_flight = threading.Thread(target=services.reaper.run_once)
        in_flight.start()
        assert entered.wait(5)

        result = services.reaper.run_once()

        proceed.set()
        in_flight.join(5)
        assert result.skipped is True

    @pytest.mark.parametrize("interval", [0, -1, HOLD.total_seconds(), HOLD.total_seconds() + 1])
    def test_interval_must_be_shorter_than_hold(self, manager, interval):
        with pytest.raises(ValueError):
            ExpiryReaper(manager, interval=interval)

    def test_background_thread_expires_and_stops(self, services, manager):
        stock(services, "W1", "SKU-1", 10)
        reservation = manager.create(
            "cart-1", [line("W1", "SKU-1", 5)], now=utcnow() - HOLD - dt.timedelta(seconds=1)
        )

        services.reaper.start()
        assert services.reaper.running
        assert _wait_for(lambda: manager.get(reservation.id).state == ReservationState.EXPIRED)

        services.reaper.stop(timeout=5)
        assert not services.reaper.running
        assert counters(services, "W1", "SKU-1") == (10, 0)

    def test_start_twice_keeps_one_thread(self, services):
        services.reaper.start()
        services.reaper.start()

        names = [t.name for t in threading.enumerate() if t.name == "expiry-reaper"]
        services.reaper.stop(timeout=5)
        assert len(names) == 1
