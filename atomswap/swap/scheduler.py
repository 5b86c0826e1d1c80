"""
Timeout Scheduler.

Keeps one min-heap of (timelock, lock id, order id) per chain and fires
Coordinator.on_lock_expired() once that chain's clock passes the timelock.
Timelocks are compared against chain_time(), never wall-clock time, since
that is what the lock contract enforces.

A second heap holds order acceptance deadlines (wall clock); pending orders
past their deadline are handed to Coordinator.on_acceptance_timeout().

The heaps are an in-memory index rebuilt from the Order Store at startup.
"""

import heapq
import logging
import threading
import time
from typing import Dict, List, Optional, Set, Tuple

from ..core import Order, OrderStatus, LockState, TERMINAL_STATUSES
from ..chains.base import LedgerAdapter

log = logging.getLogger(__name__)


class TimeoutScheduler:
    """Fires expiry and acceptance-deadline callbacks on the coordinator."""

    def __init__(self, coordinator, ledgers: Dict[str, LedgerAdapter], interval: float = 5.0):
        self.coordinator = coordinator
        self.ledgers = ledgers
        self.interval = interval
        self._heaps: Dict[str, List[Tuple[int, str, str]]] = {name: [] for name in ledgers}
        self._deadlines: List[Tuple[int, str]] = []
        self._scheduled: Set[str] = set()      # "chain:lock_id" and "deadline:order_id"
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def watch(self, order: Order):
        """Index an order's open locks and acceptance deadline. Safe to call repeatedly."""
        if order.status in TERMINAL_STATUSES:
            return
        with self._lock:
            for lock in order.locks:
                if lock.terminal:
                    continue
                # Expired locks we did not create have nothing left for us to do
                if lock.state == LockState.EXPIRED and not lock.owned:
                    continue
                key = f"{lock.chain}:{lock.id}"
                if key in self._scheduled or lock.chain not in self._heaps:
                    continue
                heapq.heappush(self._heaps[lock.chain], (lock.timelock, lock.id, order.id))
                self._scheduled.add(key)

            key = f"deadline:{order.id}"
            if order.status == OrderStatus.PENDING and order.acceptance_deadline and key not in self._scheduled:
                heapq.heappush(self._deadlines, (order.acceptance_deadline, order.id))
                self._scheduled.add(key)

    def rebuild(self, store) -> int:
        """Index every non-terminal order in the store. Returns the number watched."""
        orders = store.list(active_only=True)
        for order in orders:
            self.watch(order)
        log.info(f"Scheduler rebuilt: {len(orders)} active orders, {self.pending()} timers")
        return len(orders)

    def pending(self) -> int:
        with self._lock:
            return sum(len(h) for h in self._heaps.values()) + len(self._deadlines)

    def next_expiry(self, chain: str) -> Optional[int]:
        with self._lock:
            heap = self._heaps.get(chain)
            return heap[0][0] if heap else None

    def _due(self) -> Tuple[List[Tuple[str, str, str]], List[str]]:
        expired, deadlines = [], []
        with self._lock:
            for chain, heap in self._heaps.items():
                if not heap:
                    continue
                chain_now = self.ledgers[chain].chain_time()
                while heap and heap[0][0] <= chain_now:
                    _timelock, lock_id, order_id = heapq.heappop(heap)
                    self._scheduled.discard(f"{chain}:{lock_id}")
                    expired.append((chain, lock_id, order_id))

            wall_now = int(time.time())
            while self._deadlines and self._deadlines[0][0] <= wall_now:
                _deadline, order_id = heapq.heappop(self._deadlines)
                self._scheduled.discard(f"deadline:{order_id}")
                deadlines.append(order_id)
        return expired, deadlines

    def tick(self) -> int:
        """Fire every due timer. Returns the number of callbacks made."""
        expired, deadlines = self._due()
        fired = 0

        for chain, lock_id, order_id in expired:
            try:
                order = self.coordinator.store.get(order_id)
            except Exception as e:
                log.error(f"Scheduler: cannot load order {order_id}: {e}")
                continue
            if order.terminal:
                continue
            lock = order.get_lock(lock_id)
            if lock is None or lock.terminal:
                continue
            if self._in_flight(order, lock_id):
                log.debug(f"[{chain}] Lock {lock_id[:16]}... has a call in flight, checking next tick")
                self._reschedule(chain, lock.timelock, lock_id, order_id)
                continue
            log.info(f"[{chain}] Lock {lock_id[:16]}... of order {order_id} passed its timelock")
            try:
                self.coordinator.on_lock_expired(order_id, lock_id)
                fired += 1
            except Exception as e:
                log.error(f"Scheduler: expiry of {lock_id[:16]}... failed: {e}")
                # Try again next tick
                self._reschedule(chain, lock.timelock, lock_id, order_id)

        for order_id in deadlines:
            try:
                if self.coordinator.on_acceptance_timeout(order_id):
                    fired += 1
                else:
                    # Still pending behind a create in flight: check again next tick
                    self.watch(self.coordinator.store.get(order_id))
            except Exception as e:
                log.error(f"Scheduler: acceptance timeout of {order_id} failed: {e}")

        return fired

    def _reschedule(self, chain: str, timelock: int, lock_id: str, order_id: str):
        with self._lock:
            key = f"{chain}:{lock_id}"
            if key not in self._scheduled:
                heapq.heappush(self._heaps[chain], (timelock, lock_id, order_id))
                self._scheduled.add(key)

    def _in_flight(self, order: Order, lock_id: str) -> bool:
        """A claim or refund of this lock was started recently and has not finished."""
        ttl = self.coordinator.config.in_flight_ttl
        for marker in order.in_flight.values():
            if marker.get("lock_id") == lock_id and time.time() - marker["since"] < ttl:
                return True
        return False

    # -------------------------------------------------------------------------
    # Background loop
    # -------------------------------------------------------------------------

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="timeout-scheduler", daemon=True)
        self._thread.start()
        log.info(f"Timeout scheduler started (interval={self.interval}s)")

    def stop(self):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=5)
        log.info("Timeout scheduler stopped")

    def _run(self):
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception as e:
                log.error(f"Scheduler error: {e}")
            self._stop.wait(self.interval)
