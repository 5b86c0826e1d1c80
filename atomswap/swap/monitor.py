"""
Chain Monitor.

One monitor per chain. Each poll reads lock events from the ledger adapter
and pushes normalized ChainEvents onto the coordinator's queue.

Reorg handling: only blocks at least `confirmations` deep are scanned, so an
event is emitted once it can no longer be reorged away and is never
retracted. Expiry is reported as a synthetic LOCK_EXPIRED event once the
chain's own clock passes a watched lock's timelock.

Delivery is at-least-once: the monitor skips keys it already emitted in
this process, but consumers must still dedup on (lock id, event kind).
Emitted keys are kept per lock and dropped once the lock is claimed or
refunded and the cursor has moved past that block.
"""

import logging
import queue
import threading
from typing import Dict, List, Optional, Set

from ..core import EventKind
from ..chains.base import LedgerAdapter, ChainEvent

log = logging.getLogger(__name__)


class ChainMonitor:
    """Polls one ledger and emits confirmed lock events."""

    def __init__(
        self,
        ledger: LedgerAdapter,
        sink: queue.Queue,
        confirmations: int = 1,
        poll_interval: float = 5.0,
        start_height: int = 0,
    ):
        self.ledger = ledger
        self.sink = sink
        self.confirmations = max(1, confirmations)
        self.poll_interval = poll_interval
        self.cursor = start_height          # Next block height to scan
        self._emitted: Dict[str, Set[str]] = {}    # lock id -> emitted event keys
        self._closed: Set[str] = set()             # claimed / refunded, keys droppable
        self._open: Dict[str, ChainEvent] = {}  # lock id -> LOCK_CREATED event
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def chain(self) -> str:
        return self.ledger.name

    def confirmed_height(self) -> int:
        return self.ledger.block_height() - self.confirmations + 1

    def poll_once(self) -> List[ChainEvent]:
        """Scan newly confirmed blocks and check watched locks for expiry."""
        emitted = []

        confirmed = self.confirmed_height()
        if confirmed >= self.cursor:
            for event in self.ledger.events(self.cursor, confirmed):
                self._track(event)
                if self._emit(event):
                    emitted.append(event)
            self.cursor = confirmed + 1
            self._prune()

        if self._open:
            chain_now = self.ledger.chain_time()
            for lock_id, created in list(self._open.items()):
                if created.timelock is not None and chain_now >= created.timelock:
                    expired = ChainEvent(
                        kind=EventKind.LOCK_EXPIRED,
                        chain=self.chain,
                        lock_id=lock_id,
                        height=max(confirmed, created.height),
                        hashlock=created.hashlock,
                        amount=created.amount,
                        timelock=created.timelock,
                        sender=created.sender,
                        receiver=created.receiver,
                    )
                    del self._open[lock_id]
                    if self._emit(expired):
                        emitted.append(expired)

        return emitted

    def _track(self, event: ChainEvent):
        if event.kind == EventKind.LOCK_CREATED:
            self._open[event.lock_id] = event
        elif event.kind in (EventKind.LOCK_CLAIMED, EventKind.LOCK_REFUNDED):
            self._open.pop(event.lock_id, None)
            self._closed.add(event.lock_id)

    def _emit(self, event: ChainEvent) -> bool:
        keys = self._emitted.setdefault(event.lock_id, set())
        if event.key in keys:
            return False
        keys.add(event.key)
        log.info(f"[{self.chain}] {event.kind.value} {event.lock_id[:16]}... at height {event.height}")
        self.sink.put(event)
        return True

    def _prune(self):
        for lock_id in self._closed:
            self._emitted.pop(lock_id, None)
        self._closed.clear()

    # -------------------------------------------------------------------------
    # Background loop
    # -------------------------------------------------------------------------

    def start(self):
        """Start polling in background thread."""
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=f"monitor-{self.chain}", daemon=True)
        self._thread.start()
        log.info(f"[{self.chain}] Monitor started (confirmations={self.confirmations}, "
                 f"interval={self.poll_interval}s, from height {self.cursor})")

    def stop(self):
        """Stop polling."""
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=5)
        log.info(f"[{self.chain}] Monitor stopped")

    def _run(self):
        while not self._stop.is_set():
            try:
                self.poll_once()
            except Exception as e:
                log.error(f"[{self.chain}] Monitor error: {e}")
            self._stop.wait(self.poll_interval)
