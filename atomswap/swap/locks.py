"""
Per-order serialization.

OrderGuard hands out one threading.Lock per order id so different orders
never block each other, and takes the Order Store lease so that a second
coordinator instance sharing the store cannot write the same order.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Optional

from ..core import LeaseHeld

log = logging.getLogger(__name__)


class OrderLockTimeout(Exception):
    """Raised when an order lock cannot be acquired within the timeout period."""


class OrderGuard:

    def __init__(self, store, owner: str, lease_ttl: int = 60, timeout: Optional[float] = 30.0):
        self.store = store
        self.owner = owner
        self.lease_ttl = lease_ttl
        self.timeout = timeout
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _get_lock(self, order_id: str) -> threading.Lock:
        with self._registry_lock:
            if order_id not in self._locks:
                self._locks[order_id] = threading.Lock()
            return self._locks[order_id]

    @contextmanager
    def hold(self, order_id: str, operation: str = "update"):
        """
        Exclusive access to one order.

        Example:
            with guard.hold(order_id, "fill"):
                order = store.get(order_id)
                ...
                store.put(order)
        """
        lock = self._get_lock(order_id)
        acquired = lock.acquire(timeout=self.timeout) if self.timeout else lock.acquire()
        if not acquired:
            log.warning(f"Lock timeout for order {order_id} after {self.timeout}s: {operation}")
            raise OrderLockTimeout(f"Could not lock order {order_id} within {self.timeout}s")

        try:
            if not self.store.acquire_lease(order_id, self.owner, self.lease_ttl):
                raise LeaseHeld(f"Order {order_id} is leased by another instance")
            try:
                log.debug(f"Order {order_id} locked: {operation}")
                yield
            finally:
                self.store.release_lease(order_id, self.owner)
        finally:
            lock.release()
            log.debug(f"Order {order_id} released: {operation}")
