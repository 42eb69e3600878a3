from __future__ import annotations

import threading
from typing import Any, Callable, Dict

import structlog

from .errors import AlreadyResolved, NotFound
from .messaging import start_consumer_in_thread
from .reservations import ReservationManager

logger = structlog.get_logger(__name__)

CHECKOUT_QUEUE = "inventory-service.checkout.q"

ORDER_PAID = "order.paid"
CHECKOUT_ABANDONED = "checkout.abandoned"


def build_checkout_handler(manager: ReservationManager) -> Callable[[str, Dict[str, Any]], None]:
    """Expected payload (from order-service):
    {
      "event": "order.paid" | "checkout.abandoned",
      "order_id": 123,
      "reservation_id": "9f0c..."
    }
    """

    def _handle(routing_key: str, payload: Dict[str, Any]) -> None:
        reservation_id = payload.get("reservation_id")
        event = payload.get("event") or routing_key
        if not reservation_id:
            logger.warning("checkout_event_without_reservation", event_name=event, order_id=payload.get("order_id"))
            return

        try:
            if event == ORDER_PAID:
                manager.commit(str(reservation_id))
            elif event == CHECKOUT_ABANDONED:
                manager.release(str(reservation_id))
            else:
                logger.info("checkout_event_ignored", event_name=event)
        except AlreadyResolved as exc:
            # The hold already expired or was settled; order-service reconciles on its side.
            logger.info(
                "checkout_event_already_resolved",
                event_name=event,
                reservation_id=reservation_id,
                state=exc.actual,
            )
        except NotFound:
            logger.warning("checkout_event_unknown_reservation", event_name=event, reservation_id=reservation_id)

    return _handle


def start_checkout_consumer(manager: ReservationManager) -> threading.Thread:
    return start_consumer_in_thread(
        queue_name=CHECKOUT_QUEUE,
        binding_keys=[ORDER_PAID, CHECKOUT_ABANDONED],
        handler=build_checkout_handler(manager),
    )
