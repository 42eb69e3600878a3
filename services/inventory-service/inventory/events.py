"""Fire-and-forget event publishing: audit trail and stock alerts.

Publishing must never block or fail the inventory operation that triggered
it, so ``publish`` only enqueues; a daemon thread drains the queue into the
broker. Anything that goes wrong is logged and the event is dropped.
"""

from __future__ import annotations

import datetime as dt
import queue
import threading
from collections import deque
from typing import Any, Deque, Dict, Optional, Tuple

import structlog

from . import config
from .messaging import publish_event

logger = structlog.get_logger(__name__)

AUDIT_ROUTING_KEY = "audit.inventory"
LOW_STOCK_ROUTING_KEY = "stock.low"


class EventPublisher:
    def publish(self, routing_key: str, payload: Dict[str, Any]) -> None:
        try:
            self._send(routing_key, payload)
        except Exception:
            logger.warning("event_publish_failed", routing_key=routing_key, exc_info=True)

    def _send(self, routing_key: str, payload: Dict[str, Any]) -> None:
        raise NotImplementedError

    def close(self, timeout: Optional[float] = None) -> None:
        pass


class InMemoryPublisher(EventPublisher):
    """Keeps the most recent events in process; used when the broker is off."""

    def __init__(self, maxlen: int = 1000):
        self.events: Deque[Tuple[str, Dict[str, Any]]] = deque(maxlen=maxlen)

    def _send(self, routing_key: str, payload: Dict[str, Any]) -> None:
        self.events.append((routing_key, payload))

    def payloads(self, routing_key: str) -> list[Dict[str, Any]]:
        return [payload for key, payload in list(self.events) if key == routing_key]


class BrokerPublisher(EventPublisher):
    _STOP = object()

    def __init__(self, maxsize: int = config.AUDIT_QUEUE_SIZE):
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._thread = threading.Thread(target=self._drain, name="event-publisher", daemon=True)
        self._thread.start()

    def _send(self, routing_key: str, payload: Dict[str, Any]) -> None:
        try:
            self._queue.put_nowait((routing_key, payload))
        except queue.Full:
            logger.warning("event_dropped_queue_full", routing_key=routing_key)

    def _drain(self) -> None:
        while True:
            item = self._queue.get()
            if item is self._STOP:
                return
            routing_key, payload = item
            try:
                publish_event(routing_key, payload)
            except Exception:
                logger.warning("event_broker_unavailable", routing_key=routing_key, exc_info=True)

    def close(self, timeout: Optional[float] = 5.0) -> None:
        try:
            self._queue.put(self._STOP, timeout=timeout)
        except queue.Full:
            logger.warning("event_publisher_close_timeout")
            return
        self._thread.join(timeout)


class AuditSink:
    """One append-only audit event per state transition."""

    def __init__(self, publisher: EventPublisher):
        self._publisher = publisher

    def emit(
        self,
        action: str,
        *,
        performed_by: Optional[str],
        target_id: str,
        target_type: str,
        details: str = "",
        **metadata: Any,
    ) -> None:
        event = {
            "action": action,
            "performedBy": performed_by or "system",
            "targetId": target_id,
            "targetType": target_type,
            "details": details,
            "timestamp": dt.datetime.now(dt.timezone.utc).isoformat().replace("+00:00", "Z"),
        }
        if metadata:
            event["metadata"] = metadata
        self._publisher.publish(AUDIT_ROUTING_KEY, event)


def build_publisher() -> EventPublisher:
    if config.AUDIT_ENABLED:
        return BrokerPublisher()
    return InMemoryPublisher()
