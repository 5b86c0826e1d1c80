"""
Order Store.

Durable, versioned order records keyed by order id. Each record holds the
order and its child locks, fills and deposits. Writes are compare-and-set on
`version`; the file is rewritten atomically (tmp + rename) on every change.

Secrets are never written: only claimed locks carry a secret, and those are
public on chain already.
"""

import copy
import json
import logging
import os
import threading
import time
from typing import Optional, Dict, List, Any

from ..core import Order, OrderStatus, OrderNotFound, VersionConflict, TERMINAL_STATUSES

log = logging.getLogger(__name__)


class OrderStore:
    """JSON-file order repository. path=None keeps everything in memory."""

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._records: Dict[str, Dict[str, Any]] = {}
        self._leases: Dict[str, Dict[str, Any]] = {}
        self._by_lock: Dict[str, str] = {}          # "chain:lock_id" -> order id
        self._by_hashlock: Dict[str, List[str]] = {}  # "chain:hashlock" -> order ids
        self._lock = threading.RLock()

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def load(self) -> int:
        """Load records from disk and rebuild indexes. Returns the order count."""
        if not self.path or not os.path.exists(self.path):
            return 0
        with self._lock:
            with open(self.path, "r") as f:
                data = json.load(f)
            self._records = data.get("orders", {})
            self._leases = data.get("leases", {})
            self._by_lock = {}
            self._by_hashlock = {}
            for record in self._records.values():
                self._index(record)
            log.info(f"Loaded {len(self._records)} orders from {self.path}")
            return len(self._records)

    def _save(self):
        if not self.path:
            return
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp = self.path + ".tmp"
        with open(tmp, "w") as f:
            json.dump({"orders": self._records, "leases": self._leases}, f, indent=2)
        os.replace(tmp, self.path)

    def _index(self, record: Dict[str, Any]):
        order_id = record["id"]
        for lock in record.get("locks", []):
            self._by_lock[f"{lock['chain']}:{lock['id']}"] = order_id
        # Locks being created are indexed before they exist on chain
        for marker in record.get("in_flight", {}).values():
            if marker.get("lock_id"):
                self._by_lock[f"{marker['chain']}:{marker['lock_id']}"] = order_id

        hashlocks = dict(record.get("hashlocks") or {})
        hashlocks.setdefault(record["source_chain"], record["hashlock"])
        for fill in record.get("fills", []):
            for chain, hashlock in (fill.get("hashlocks") or {}).items():
                self._add_hashlock(chain, hashlock, order_id)
        for chain, hashlock in hashlocks.items():
            self._add_hashlock(chain, hashlock, order_id)

    def _add_hashlock(self, chain: str, hashlock: str, order_id: str):
        ids = self._by_hashlock.setdefault(f"{chain}:{hashlock}", [])
        if order_id not in ids:
            ids.append(order_id)

    # -------------------------------------------------------------------------
    # Repository
    # -------------------------------------------------------------------------

    def create(self, order: Order) -> Order:
        with self._lock:
            if order.id in self._records:
                raise ValueError(f"Order {order.id} already exists")
            order.version = 1
            order.updated_at = int(time.time())
            record = order.to_dict()
            self._records[order.id] = record
            self._index(record)
            self._save()
            return Order.from_dict(copy.deepcopy(record))

    def get(self, order_id: str) -> Order:
        """Fresh copy of the stored order. Mutating it does not touch the store."""
        with self._lock:
            record = self._records.get(order_id)
            if record is None:
                raise OrderNotFound(order_id)
            return Order.from_dict(copy.deepcopy(record))

    def put(self, order: Order) -> Order:
        """
        Compare-and-set write.

        The order's version must match the stored version; on success the
        version is bumped and the new copy returned.

        Raises:
            VersionConflict if another writer got there first
        """
        with self._lock:
            current = self._records.get(order.id)
            if current is None:
                raise OrderNotFound(order.id)
            if current["version"] != order.version:
                raise VersionConflict(
                    f"Order {order.id}: expected version {order.version}, stored {current['version']}"
                )
            order.version += 1
            order.updated_at = int(time.time())
            record = order.to_dict()
            self._records[order.id] = record
            self._index(record)
            self._save()
            return Order.from_dict(copy.deepcopy(record))

    def find_by_lock(self, chain: str, lock_id: str) -> Optional[str]:
        with self._lock:
            return self._by_lock.get(f"{chain}:{lock_id}")

    def find_by_hashlock(self, chain: str, hashlock: str) -> List[str]:
        with self._lock:
            return list(self._by_hashlock.get(f"{chain}:{hashlock}", []))

    def list(self, status: Optional[OrderStatus] = None, chain: Optional[str] = None,
             active_only: bool = False) -> List[Order]:
        with self._lock:
            records = [copy.deepcopy(r) for r in self._records.values()]

        orders = []
        for record in records:
            if status is not None and record["status"] != status.value:
                continue
            if chain is not None and chain not in (record["source_chain"], record["dest_chain"]):
                continue
            if active_only and OrderStatus(record["status"]) in TERMINAL_STATUSES:
                continue
            orders.append(Order.from_dict(record))
        orders.sort(key=lambda o: o.created_at)
        return orders

    # -------------------------------------------------------------------------
    # Leases (one writer per order across coordinator instances)
    # -------------------------------------------------------------------------

    def acquire_lease(self, order_id: str, owner: str, ttl: int) -> bool:
        with self._lock:
            now = time.time()
            lease = self._leases.get(order_id)
            if lease and lease["owner"] != owner and lease["expires"] > now:
                return False
            self._leases[order_id] = {"owner": owner, "expires": now + ttl}
            self._save()
            return True

    def release_lease(self, order_id: str, owner: str):
        with self._lock:
            lease = self._leases.get(order_id)
            if lease and lease["owner"] == owner:
                del self._leases[order_id]
                self._save()

    # -------------------------------------------------------------------------
    # Metrics
    # -------------------------------------------------------------------------

    def metrics(self) -> Dict[str, Any]:
        with self._lock:
            records = list(self._records.values())

        by_status = {s.value: 0 for s in OrderStatus}
        volume: Dict[str, int] = {}
        fees: Dict[str, int] = {}
        for record in records:
            by_status[record["status"]] += 1
            if record["status"] == OrderStatus.COMPLETED.value:
                asset = record["source_asset"]
                volume[asset] = volume.get(asset, 0) + record["source_amount"]
                if record.get("protocol_fee"):
                    fees[asset] = fees.get(asset, 0) + record["protocol_fee"]

        finished = (by_status["completed"] + by_status["refunded"]
                    + by_status["cancelled"] + by_status["stuck"])
        return {
            "total_orders": len(records),
            "by_status": by_status,
            "completed_orders": by_status["completed"],
            "failed_orders": by_status["refunded"] + by_status["cancelled"] + by_status["stuck"],
            "total_volume": volume,
            "protocol_fees": fees,
            "success_rate": (by_status["completed"] / finished) if finished else 0.0,
        }
