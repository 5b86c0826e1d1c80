"""
Order transition notifications.

In-process handlers per event ("completed", "refunded", "cancelled", "stuck"),
plus an optional JSON webhook posted with httpx.
"""

import logging
import threading
from typing import Callable, Dict, List, Optional

import httpx

from ..core import Order

log = logging.getLogger(__name__)

NOTIFY_EVENTS = ("completed", "refunded", "cancelled", "stuck")


class Notifier:
    """Terminal / stuck transition fan-out."""

    def __init__(self, webhook_url: str = "", timeout: float = 5.0):
        self.webhook_url = webhook_url
        self.timeout = timeout
        self._handlers: Dict[str, List[Callable]] = {event: [] for event in NOTIFY_EVENTS}
        self._client: Optional[httpx.Client] = None
        self._lock = threading.Lock()

    def on(self, event: str, handler: Callable):
        """Register event handler ("*" for every event)."""
        if event == "*":
            for handlers in self._handlers.values():
                handlers.append(handler)
        elif event in self._handlers:
            self._handlers[event].append(handler)
        else:
            raise ValueError(f"Unknown notification event: {event}")

    def off(self, event: str, handler: Callable):
        """Remove event handler."""
        if event in self._handlers and handler in self._handlers[event]:
            self._handlers[event].remove(handler)

    def emit(self, event: str, order: Order):
        for handler in list(self._handlers.get(event, [])):
            try:
                handler(event, order)
            except Exception as e:
                log.error(f"Handler error for {event}: {e}")

        if self.webhook_url:
            self._post_webhook(event, order)

    def _get_client(self) -> httpx.Client:
        with self._lock:
            if self._client is None or self._client.is_closed:
                self._client = httpx.Client(timeout=self.timeout)
            return self._client

    def _post_webhook(self, event: str, order: Order):
        payload = {"event": event, "order": order.snapshot()}
        try:
            response = self._get_client().post(self.webhook_url, json=payload)
            response.raise_for_status()
        except httpx.TimeoutException:
            log.warning(f"Webhook timeout for order {order.id} ({event})")
        except httpx.HTTPError as e:
            log.error(f"Webhook failed for order {order.id} ({event}): {e}")

    def close(self):
        with self._lock:
            if self._client is not None and not self._client.is_closed:
                self._client.close()
