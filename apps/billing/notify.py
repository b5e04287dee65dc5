from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import List

from .schema import InvoiceNotification

log = logging.getLogger(__name__)


class InvoiceNotifier(ABC):
    """Hands invoice-email requests to the delivery service. Fire-and-forget."""

    @abstractmethod
    def enqueue(self, request: InvoiceNotification) -> None: ...


class InMemoryNotificationOutbox(InvoiceNotifier):
    def __init__(self) -> None:
        self._items: List[InvoiceNotification] = []
        self._lock = threading.Lock()

    def enqueue(self, request: InvoiceNotification) -> None:
        with self._lock:
            self._items.append(request)

    def list_all(self) -> List[InvoiceNotification]:
        with self._lock:
            return list(self._items)

    def drain(self) -> List[InvoiceNotification]:
        with self._lock:
            items, self._items = self._items, []
            return items


def dispatch(notifier: InvoiceNotifier, request: InvoiceNotification) -> bool:
    """Delivery problems never fail billing: they are logged and reported as False."""
    try:
        notifier.enqueue(request)
    except Exception:
        log.exception("invoice_notify_failed", extra={"meter_id": request.meter_id, "event_id": request.event_id})
        return False
    log.info("invoice_notify_enqueued", extra={"meter_id": request.meter_id, "event_id": request.event_id})
    return True


__all__ = ["InvoiceNotifier", "InMemoryNotificationOutbox", "dispatch"]
