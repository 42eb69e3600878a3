"""ExpiryReaper: the periodic sweep that expires abandoned checkout holds.

At most one sweep runs at a time. A tick that fires while a sweep is still in
flight is skipped, never queued. ``stop`` prevents new sweeps and lets the
current one finish its reservation; the per-line ledger step and its
bookkeeping commit together, so a stop never leaves a hold half-released.
"""

from __future__ import annotations

import datetime as dt
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from . import config
from .errors import StateConflict
from .models import as_utc, utcnow
from .reconciler import Reconciler
from .reservations import ReservationManager

logger = structlog.get_logger(__name__)


@dataclass
class SweepResult:
    expired: int = 0
    conflicts: int = 0
    failed: int = 0
    reconciled: int = 0
    skipped: bool = False


class ExpiryReaper:
    def __init__(
        self,
        manager: ReservationManager,
        reconciler: Optional[Reconciler] = None,
        *,
        interval: float = config.REAPER_INTERVAL_SECONDS,
        batch_size: int = config.REAPER_BATCH_SIZE,
        clock: Callable[[], dt.datetime] = utcnow,
    ):
        hold_seconds = manager.hold_duration.total_seconds()
        if interval <= 0 or interval >= hold_seconds:
            raise ValueError(
                f"reaper interval must be positive and shorter than the hold duration "
                f"({hold_seconds:.0f}s), got {interval}"
            )
        self._manager = manager
        self._reconciler = reconciler
        self._interval = interval
        self._batch_size = batch_size
        self._clock = clock
        self._sweep_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self, now: Optional[dt.datetime] = None) -> SweepResult:
        if not self._sweep_lock.acquire(blocking=False):
            logger.info("reaper_sweep_skipped", reason="sweep_in_flight")
            return SweepResult(skipped=True)
        try:
            return self._sweep(as_utc(now) or self._clock())
        finally:
            self._sweep_lock.release()

    def _sweep(self, now: dt.datetime) -> SweepResult:
        result = SweepResult()
        failed_ids = set()
        # Batches until one comes back short; failed holds are skipped for the rest of the sweep.
        while not self._stop.is_set():
            limit = self._batch_size + len(failed_ids)
            listed = self._manager.find_expired(now, limit=limit)
            for reservation in listed:
                if self._stop.is_set():
                    break
                if reservation.id in failed_ids:
                    continue
                try:
                    self._manager.expire(reservation.id, now)
                    result.expired += 1
                except StateConflict:
                    # Committed, released or extended between listing and processing.
                    result.conflicts += 1
                except Exception:
                    result.failed += 1
                    failed_ids.add(reservation.id)
                    logger.exception("reservation_expiry_failed", reservation_id=reservation.id)
            if len(listed) < limit:
                break

        if self._reconciler is not None and not self._stop.is_set():
            try:
                result.reconciled = self._reconciler.run(now)
            except Exception:
                logger.exception("reconcile_pass_failed")

        if result.expired or result.conflicts or result.failed or result.reconciled:
            logger.info(
                "reaper_sweep_complete",
                expired=result.expired,
                conflicts=result.conflicts,
                failed=result.failed,
                reconciled=result.reconciled,
            )
        return result

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="expiry-reaper", daemon=True)
        self._thread.start()
        logger.info("reaper_started", interval_seconds=self._interval)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning("reaper_stop_timeout", timeout=timeout)
            else:
                self._thread = None
        logger.info("reaper_stopped")

    def _run(self) -> None:
        next_tick = time.monotonic() + self._interval
        while not self._stop.wait(max(0.0, next_tick - time.monotonic())):
            try:
                self.run_once()
            except Exception:
                # The next tick tries again.
                logger.exception("reaper_sweep_failed")
            next_tick += self._interval
            now = time.monotonic()
            if next_tick <= now:
                missed = int((now - next_tick) // self._interval) + 1
                logger.info("reaper_ticks_skipped", missed=missed)
                next_tick += missed * self._interval
