"""
In-process ledger.

Used for dry-run mode and tests. Behaves like a single-token HTLC contract:
every successful call mines one block carrying one lock event. The clock,
block production, reorgs and failures are all driven by the caller.
"""

import copy
import hashlib
import logging
import threading
import time
from typing import Optional, Dict, List, Tuple

from ..core import EventKind, LockState, hash_secret, normalize_hex
from .base import (
    LedgerAdapter, LockHandle, Receipt, LockSnapshot, ChainEvent,
    LockNotFound, InvalidSecret, AlreadyClaimed, AlreadyRefunded,
    NotExpired, LockExpired, InsufficientFunds,
)

log = logging.getLogger(__name__)


class MemoryLedger(LedgerAdapter):
    """Thread-safe in-memory HTLC ledger."""

    def __init__(
        self,
        name: str,
        hash_function: str = "sha256",
        address: str = "resolver",
        start_time: Optional[int] = None,
        balances: Optional[Dict[str, int]] = None,
    ):
        self.name = name
        self.hash_function = hash_function
        self.address = address
        self._now = int(start_time if start_time is not None else time.time())
        # None = unlimited funds
        self._balances = dict(balances) if balances is not None else None
        self._locks: Dict[str, dict] = {}
        # (height, timestamp, events, state before this block)
        self._blocks: List[Tuple[int, int, List[ChainEvent], dict]] = []
        self._failures: Dict[str, List[Exception]] = {}
        self._lock = threading.RLock()
        self.calls: List[Tuple[str, str]] = []

    # -------------------------------------------------------------------------
    # Test controls
    # -------------------------------------------------------------------------

    def advance(self, seconds: int):
        """Move the chain clock forward."""
        with self._lock:
            self._now += seconds

    def set_time(self, timestamp: int):
        with self._lock:
            self._now = timestamp

    def mine(self, count: int = 1):
        """Mine empty blocks."""
        with self._lock:
            for _ in range(count):
                self._mine([])

    def reorg(self, depth: int):
        """Drop the last `depth` blocks and undo their state changes."""
        with self._lock:
            depth = min(depth, len(self._blocks))
            if depth <= 0:
                return
            dropped = self._blocks[-depth:]
            self._blocks = self._blocks[:-depth]
            before = dropped[0][3]
            self._locks = copy.deepcopy(before["locks"])
            self._balances = copy.deepcopy(before["balances"])
            log.info(f"[{self.name}] Reorg: dropped {depth} block(s), tip now {self.block_height()}")

    def fail_next(self, op: str, exc: Exception, times: int = 1):
        """Raise `exc` on the next `times` calls of `op` (create_lock, claim, refund, get_lock)."""
        with self._lock:
            self._failures.setdefault(op, []).extend([exc] * times)

    def balance_of(self, address: str) -> int:
        with self._lock:
            if self._balances is None:
                return 0
            return self._balances.get(address, 0)

    def calls_for(self, op: str, lock_id: Optional[str] = None) -> List[Tuple[str, str]]:
        return [c for c in self.calls if c[0] == op and (lock_id is None or c[1] == lock_id)]

    # -------------------------------------------------------------------------
    # LedgerAdapter
    # -------------------------------------------------------------------------

    def lock_id_for(self, receiver: str, amount: int, hashlock: str, timelock: int,
                    sender: Optional[str] = None) -> str:
        sender = sender or self.address
        raw = f"{self.name}:{sender}:{receiver}:{amount}:{normalize_hex(hashlock)}:{timelock}"
        return hashlib.sha256(raw.encode()).hexdigest()

    def create_lock(self, receiver: str, amount: int, hashlock: str, timelock: int,
                    sender: Optional[str] = None) -> LockHandle:
        sender = sender or self.address
        hashlock = normalize_hex(hashlock)
        with self._lock:
            lock_id = self.lock_id_for(receiver, amount, hashlock, timelock, sender=sender)
            self.calls.append(("create_lock", lock_id))
            self._maybe_fail("create_lock")

            if lock_id in self._locks:
                log.info(f"[{self.name}] Lock {lock_id[:16]}... already exists")
                return LockHandle(self.name, lock_id)

            if self._balances is not None:
                if self._balances.get(sender, 0) < amount:
                    raise InsufficientFunds(
                        f"{sender} has {self._balances.get(sender, 0)}, needs {amount}"
                    )
                undo = self._state()
                self._balances[sender] -= amount
            else:
                undo = self._state()

            self._locks[lock_id] = {
                "sender": sender,
                "receiver": receiver,
                "amount": amount,
                "hashlock": hashlock,
                "timelock": timelock,
                "state": LockState.CREATED,
                "secret": None,
            }
            self._mine([ChainEvent(
                kind=EventKind.LOCK_CREATED,
                chain=self.name,
                lock_id=lock_id,
                height=0,
                hashlock=hashlock,
                amount=amount,
                timelock=timelock,
                sender=sender,
                receiver=receiver,
            )], undo=undo)
            return LockHandle(self.name, lock_id)

    def claim(self, handle: LockHandle, secret: str) -> Receipt:
        secret = normalize_hex(secret)
        with self._lock:
            self.calls.append(("claim", handle.lock_id))
            self._maybe_fail("claim")
            lock = self._get(handle.lock_id)

            if lock["state"] == LockState.CLAIMED:
                raise AlreadyClaimed(handle.lock_id)
            if lock["state"] == LockState.REFUNDED:
                raise AlreadyRefunded(handle.lock_id)
            if self._now >= lock["timelock"]:
                raise LockExpired(f"{handle.lock_id} expired at {lock['timelock']}")
            if hash_secret(self.hash_function, secret) != lock["hashlock"]:
                raise InvalidSecret(handle.lock_id)

            undo = self._state()
            lock["state"] = LockState.CLAIMED
            lock["secret"] = secret
            self._credit(lock["receiver"], lock["amount"])
            height = self._mine([ChainEvent(
                kind=EventKind.LOCK_CLAIMED,
                chain=self.name,
                lock_id=handle.lock_id,
                height=0,
                hashlock=lock["hashlock"],
                amount=lock["amount"],
                timelock=lock["timelock"],
                sender=lock["sender"],
                receiver=lock["receiver"],
                secret=secret,
            )], undo=undo)
            return Receipt(self.name, handle.lock_id, "claim", tx_hash=self._tx_hash("claim", handle.lock_id), height=height)

    def refund(self, handle: LockHandle) -> Receipt:
        with self._lock:
            self.calls.append(("refund", handle.lock_id))
            self._maybe_fail("refund")
            lock = self._get(handle.lock_id)

            if lock["state"] == LockState.CLAIMED:
                raise AlreadyClaimed(handle.lock_id)
            if lock["state"] == LockState.REFUNDED:
                raise AlreadyRefunded(handle.lock_id)
            if self._now < lock["timelock"]:
                raise NotExpired(f"{handle.lock_id} locked until {lock['timelock']}")

            undo = self._state()
            lock["state"] = LockState.REFUNDED
            self._credit(lock["sender"], lock["amount"])
            height = self._mine([ChainEvent(
                kind=EventKind.LOCK_REFUNDED,
                chain=self.name,
                lock_id=handle.lock_id,
                height=0,
                hashlock=lock["hashlock"],
                amount=lock["amount"],
                timelock=lock["timelock"],
                sender=lock["sender"],
                receiver=lock["receiver"],
            )], undo=undo)
            return Receipt(self.name, handle.lock_id, "refund", tx_hash=self._tx_hash("refund", handle.lock_id), height=height)

    def get_lock(self, handle: LockHandle) -> LockSnapshot:
        with self._lock:
            self._maybe_fail("get_lock")
            lock = self._get(handle.lock_id)
            return LockSnapshot(
                lock_id=handle.lock_id,
                sender=lock["sender"],
                receiver=lock["receiver"],
                amount=lock["amount"],
                hashlock=lock["hashlock"],
                timelock=lock["timelock"],
                state=lock["state"],
                secret=lock["secret"],
            )

    def block_height(self) -> int:
        with self._lock:
            return self._blocks[-1][0] if self._blocks else 0

    def chain_time(self) -> int:
        with self._lock:
            return self._now

    def events(self, from_height: int, to_height: int) -> List[ChainEvent]:
        with self._lock:
            result = []
            for height, _ts, evs, _undo in self._blocks:
                if from_height <= height <= to_height:
                    result.extend(copy.copy(ev) for ev in evs)
            return result

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _get(self, lock_id: str) -> dict:
        lock = self._locks.get(lock_id)
        if lock is None:
            raise LockNotFound(lock_id)
        return lock

    def _state(self) -> dict:
        return {"locks": copy.deepcopy(self._locks), "balances": copy.deepcopy(self._balances)}

    def _mine(self, events: List[ChainEvent], undo: Optional[dict] = None) -> int:
        height = self.block_height() + 1
        for ev in events:
            ev.height = height
        self._blocks.append((height, self._now, events, undo if undo is not None else self._state()))
        return height

    def _credit(self, address: str, amount: int):
        if self._balances is not None:
            self._balances[address] = self._balances.get(address, 0) + amount

    def _maybe_fail(self, op: str):
        pending = self._failures.get(op)
        if pending:
            raise pending.pop(0)

    def _tx_hash(self, action: str, lock_id: str) -> str:
        return hashlib.sha256(f"{action}:{lock_id}:{len(self._blocks)}".encode()).hexdigest()
