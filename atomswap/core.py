"""
Core types and helpers for atomswap.

Orders, locks, partial fills and safety deposits are plain dataclasses with
to_dict()/from_dict() so the Order Store can persist them as JSON.
"""

import copy
import hashlib
import secrets
import time
import uuid
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List


class OrderStatus(Enum):
    """Order lifecycle states."""
    PENDING = "pending"                 # Submitted, waiting for the source lock
    SOURCE_LOCKED = "source_locked"     # Source lock seen and verified
    DEST_LOCKED = "dest_locked"         # At least one destination lock created
    COMPLETED = "completed"             # Source and every destination lock claimed
    REFUNDED = "refunded"               # Every lock refunded, none claimed
    CANCELLED = "cancelled"             # Aborted before any funds were at risk
    STUCK = "stuck"                     # Needs operator attention (see reason)


TERMINAL_STATUSES = (OrderStatus.COMPLETED, OrderStatus.REFUNDED, OrderStatus.CANCELLED)


class LockRole(Enum):
    SOURCE = "source"
    DEST = "dest"


class LockState(Enum):
    CREATED = "created"
    CLAIMED = "claimed"
    REFUNDED = "refunded"
    EXPIRED = "expired"     # Timelock passed, not yet refunded


class EventKind(Enum):
    """Normalized chain events emitted by ChainMonitor."""
    LOCK_CREATED = "lock_created"
    LOCK_CLAIMED = "lock_claimed"
    LOCK_REFUNDED = "lock_refunded"
    LOCK_EXPIRED = "lock_expired"


class FillStatus(Enum):
    ACCEPTED = "accepted"       # Amount reserved, destination lock not created yet
    LOCKED = "locked"           # Destination lock created
    CLAIMED = "claimed"         # Destination lock claimed by the beneficiary
    CANCELLED = "cancelled"     # Released before any lock (e.g. insufficient funds)
    EXPIRED = "expired"         # Destination lock expired unclaimed


ACTIVE_FILL_STATUSES = (FillStatus.ACCEPTED, FillStatus.LOCKED, FillStatus.CLAIMED)


class DepositStatus(Enum):
    HELD = "held"
    RELEASED = "released"
    FORFEITED = "forfeited"


class FillSecretMode(Enum):
    """How destination locks of a partially filled order are hashlocked."""
    SHARED = "shared"           # Every fill uses the order hashlock
    PER_FILL = "per_fill"       # Each fill gets a secret derived from the master secret


class ReasonCode(Enum):
    TIMELOCK_MARGIN = "timelock_margin"
    AMOUNT_MISMATCH = "amount_mismatch"
    HASHLOCK_MISMATCH = "hashlock_mismatch"
    INVALID_SECRET = "invalid_secret"
    RETRIES_EXHAUSTED = "retries_exhausted"
    NO_FILLER = "no_filler"
    MIXED_OUTCOME = "mixed_outcome"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    CHAIN_ERROR = "chain_error"
    TIMELOCK_TOO_LONG = "timelock_too_long"


# =============================================================================
# Errors
# =============================================================================

class SwapError(Exception):
    """Base class for coordinator errors."""


class ProtocolViolation(SwapError):
    """Hash, amount or timelock rule broken. Never retried."""

    def __init__(self, reason: ReasonCode, message: str):
        super().__init__(message)
        self.reason = reason


class OrderNotFound(SwapError):
    pass


class VersionConflict(SwapError):
    """Optimistic-concurrency check failed on OrderStore.put()."""


class LeaseHeld(SwapError):
    """Another coordinator instance holds the order lease."""


class InsufficientRemaining(SwapError):
    pass


class BelowMinimumFill(SwapError):
    pass


class FillRejected(SwapError):
    """Order is not in a state that accepts fills."""


class InsufficientCollateral(SwapError):
    pass


class DepositAlreadySettled(SwapError):
    pass


class RetriesExhausted(SwapError):
    pass


# =============================================================================
# Data model
# =============================================================================

@dataclass
class Lock:
    """One HTLC instance on one chain."""
    id: str
    chain: str
    role: LockRole
    amount: int
    hashlock: str
    timelock: int
    state: LockState = LockState.CREATED
    secret: Optional[str] = None    # Set once claimed (public from then on)
    owned: bool = False             # Created by this coordinator
    fill_id: Optional[str] = None
    sender: str = ""
    receiver: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "chain": self.chain,
            "role": self.role.value,
            "amount": self.amount,
            "hashlock": self.hashlock,
            "timelock": self.timelock,
            "state": self.state.value,
            "secret": self.secret,
            "owned": self.owned,
            "fill_id": self.fill_id,
            "sender": self.sender,
            "receiver": self.receiver,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Lock":
        return cls(
            id=d["id"],
            chain=d["chain"],
            role=LockRole(d["role"]),
            amount=d["amount"],
            hashlock=d["hashlock"],
            timelock=d["timelock"],
            state=LockState(d.get("state", "created")),
            secret=d.get("secret"),
            owned=d.get("owned", False),
            fill_id=d.get("fill_id"),
            sender=d.get("sender", ""),
            receiver=d.get("receiver", ""),
        )

    @property
    def terminal(self) -> bool:
        return self.state in (LockState.CLAIMED, LockState.REFUNDED)


@dataclass
class PartialFill:
    id: str
    order_id: str
    filler: str
    amount: int                     # Source-side amount
    dest_amount: int = 0
    claimed: bool = False
    status: FillStatus = FillStatus.ACCEPTED
    lock_id: Optional[str] = None
    secret_index: Optional[int] = None
    hashlocks: Dict[str, str] = field(default_factory=dict)

    @property
    def active(self) -> bool:
        return self.status in ACTIVE_FILL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "filler": self.filler,
            "amount": self.amount,
            "dest_amount": self.dest_amount,
            "claimed": self.claimed,
            "status": self.status.value,
            "lock_id": self.lock_id,
            "secret_index": self.secret_index,
            "hashlocks": dict(self.hashlocks),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "PartialFill":
        return cls(
            id=d["id"],
            order_id=d["order_id"],
            filler=d["filler"],
            amount=d["amount"],
            dest_amount=d.get("dest_amount", 0),
            claimed=d.get("claimed", False),
            status=FillStatus(d.get("status", "accepted")),
            lock_id=d.get("lock_id"),
            secret_index=d.get("secret_index"),
            hashlocks=dict(d.get("hashlocks") or {}),
        )


@dataclass
class SafetyDeposit:
    order_id: str
    fill_id: str
    poster: str
    amount: int
    claimed_by: Optional[str] = None
    status: DepositStatus = DepositStatus.HELD

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "fill_id": self.fill_id,
            "poster": self.poster,
            "amount": self.amount,
            "claimed_by": self.claimed_by,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "SafetyDeposit":
        return cls(
            order_id=d["order_id"],
            fill_id=d["fill_id"],
            poster=d["poster"],
            amount=d["amount"],
            claimed_by=d.get("claimed_by"),
            status=DepositStatus(d.get("status", "held")),
        )


@dataclass
class Secret:
    """A swap secret. Plaintext stays in memory on the generating side until revealed."""
    hashlocks: Dict[str, str]           # chain -> digest under that chain's hash function
    plaintext: Optional[str] = None
    revealed_on_chain: Optional[str] = None
    revealed_at: Optional[int] = None

    @property
    def revealed(self) -> bool:
        return self.revealed_at is not None


@dataclass
class Order:
    """A cross-chain swap order and its child locks, fills and deposits."""
    id: str
    source_chain: str
    dest_chain: str
    source_asset: str
    dest_asset: str
    source_amount: int
    dest_amount: int
    initiator: str
    beneficiary: str
    hashlock: str                   # Digest checked by the source chain
    timelock_source: int
    timelock_dest: int
    status: OrderStatus = OrderStatus.PENDING
    min_fill_amount: Optional[int] = None
    created_at: int = 0

    hashlocks: Dict[str, str] = field(default_factory=dict)
    fill_secret_mode: FillSecretMode = FillSecretMode.SHARED
    acceptance_deadline: int = 0
    lock_source: bool = False       # Coordinator creates the source lock itself
    filled_amount: int = 0
    reason: Optional[str] = None
    stuck_from: Optional[str] = None
    locks: List[Lock] = field(default_factory=list)
    fills: List[PartialFill] = field(default_factory=list)
    deposits: List[SafetyDeposit] = field(default_factory=list)
    in_flight: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    seen_events: List[str] = field(default_factory=list)
    version: int = 0
    updated_at: int = 0
    completed_at: Optional[int] = None
    protocol_fee: Optional[int] = None     # Charged in source_asset on completion

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def fillable(self) -> bool:
        return self.min_fill_amount is not None

    @property
    def remaining(self) -> int:
        return self.source_amount - self.filled_amount

    @property
    def source_lock(self) -> Optional[Lock]:
        for lock in self.locks:
            if lock.role == LockRole.SOURCE:
                return lock
        return None

    @property
    def dest_locks(self) -> List[Lock]:
        return [l for l in self.locks if l.role == LockRole.DEST]

    def get_lock(self, lock_id: str) -> Optional[Lock]:
        for lock in self.locks:
            if lock.id == lock_id:
                return lock
        return None

    def get_fill(self, fill_id: str) -> Optional[PartialFill]:
        for fill in self.fills:
            if fill.id == fill_id:
                return fill
        return None

    def get_deposit(self, fill_id: str) -> Optional[SafetyDeposit]:
        for deposit in self.deposits:
            if deposit.fill_id == fill_id:
                return deposit
        return None

    def hashlock_for(self, chain: str, fill: Optional[PartialFill] = None) -> str:
        if fill is not None and fill.hashlocks:
            return fill.hashlocks[chain]
        return self.hashlocks.get(chain, self.hashlock)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source_chain": self.source_chain,
            "dest_chain": self.dest_chain,
            "source_asset": self.source_asset,
            "dest_asset": self.dest_asset,
            "source_amount": self.source_amount,
            "dest_amount": self.dest_amount,
            "initiator": self.initiator,
            "beneficiary": self.beneficiary,
            "hashlock": self.hashlock,
            "timelock_source": self.timelock_source,
            "timelock_dest": self.timelock_dest,
            "status": self.status.value,
            "min_fill_amount": self.min_fill_amount,
            "created_at": self.created_at,
            "hashlocks": dict(self.hashlocks),
            "fill_secret_mode": self.fill_secret_mode.value,
            "acceptance_deadline": self.acceptance_deadline,
            "lock_source": self.lock_source,
            "filled_amount": self.filled_amount,
            "reason": self.reason,
            "stuck_from": self.stuck_from,
            "locks": [l.to_dict() for l in self.locks],
            "fills": [f.to_dict() for f in self.fills],
            "deposits": [d.to_dict() for d in self.deposits],
            "in_flight": copy.deepcopy(self.in_flight),
            "seen_events": list(self.seen_events),
            "version": self.version,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
            "protocol_fee": self.protocol_fee,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Order":
        return cls(
            id=d["id"],
            source_chain=d["source_chain"],
            dest_chain=d["dest_chain"],
            source_asset=d["source_asset"],
            dest_asset=d["dest_asset"],
            source_amount=d["source_amount"],
            dest_amount=d["dest_amount"],
            initiator=d["initiator"],
            beneficiary=d["beneficiary"],
            hashlock=d["hashlock"],
            timelock_source=d["timelock_source"],
            timelock_dest=d["timelock_dest"],
            status=OrderStatus(d.get("status", "pending")),
            min_fill_amount=d.get("min_fill_amount"),
            created_at=d.get("created_at", 0),
            hashlocks=dict(d.get("hashlocks") or {}),
            fill_secret_mode=FillSecretMode(d.get("fill_secret_mode", "shared")),
            acceptance_deadline=d.get("acceptance_deadline", 0),
            lock_source=d.get("lock_source", False),
            filled_amount=d.get("filled_amount", 0),
            reason=d.get("reason"),
            stuck_from=d.get("stuck_from"),
            locks=[Lock.from_dict(x) for x in d.get("locks", [])],
            fills=[PartialFill.from_dict(x) for x in d.get("fills", [])],
            deposits=[SafetyDeposit.from_dict(x) for x in d.get("deposits", [])],
            in_flight=copy.deepcopy(d.get("in_flight") or {}),
            seen_events=list(d.get("seen_events", [])),
            version=d.get("version", 0),
            updated_at=d.get("updated_at", 0),
            completed_at=d.get("completed_at"),
            protocol_fee=d.get("protocol_fee"),
        )

    def snapshot(self) -> Dict[str, Any]:
        """Public view of the order (no bookkeeping fields)."""
        data = self.to_dict()
        data.pop("seen_events")
        return data


# =============================================================================
# Hash utilities
# =============================================================================

HASH_FUNCTIONS = ("sha256", "keccak256")


def normalize_hex(value: str) -> str:
    """Lowercase hex without 0x prefix."""
    value = value.strip().lower()
    if value.startswith("0x"):
        value = value[2:]
    return value


def hash_secret(hash_function: str, secret_hex: str) -> str:
    """
    Digest a secret with the given hash function.

    Args:
        hash_function: "sha256" or "keccak256"
        secret_hex: secret as hex string

    Returns:
        digest as lowercase hex (no 0x)
    """
    data = bytes.fromhex(normalize_hex(secret_hex))
    if hash_function == "sha256":
        return hashlib.sha256(data).hexdigest()
    if hash_function == "keccak256":
        from web3 import Web3
        return normalize_hex(Web3.keccak(data).hex())
    raise ValueError(f"Unknown hash function: {hash_function}")


def verify_preimage(hash_function: str, preimage_hex: str, hashlock_hex: str) -> bool:
    """Check that hash(preimage) == hashlock."""
    try:
        return hash_secret(hash_function, preimage_hex) == normalize_hex(hashlock_hex)
    except (ValueError, TypeError):
        return False


def generate_secret() -> str:
    """Random 32-byte secret as hex."""
    return secrets.token_bytes(32).hex()


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def now() -> int:
    return int(time.time())


# =============================================================================
# Timelock rules
# =============================================================================

# Destination lock must expire at least this long before the source lock
TIMELOCK_MIN_MARGIN_SECONDS = 1800


def validate_timelock_margin(timelock_source: int, timelock_dest: int,
                             min_margin: int = TIMELOCK_MIN_MARGIN_SECONDS) -> bool:
    """Validate that the destination lock expires strictly before the source lock.

    Returns True if valid, raises ProtocolViolation if not.
    """
    if not timelock_dest < timelock_source:
        raise ProtocolViolation(
            ReasonCode.TIMELOCK_MARGIN,
            f"Timelock ordering violated: T_dest={timelock_dest} >= T_source={timelock_source}"
        )
    if timelock_source - timelock_dest < min_margin:
        raise ProtocolViolation(
            ReasonCode.TIMELOCK_MARGIN,
            f"Insufficient gap T_source - T_dest: {timelock_source - timelock_dest}s "
            f"(min {min_margin}s)"
        )
    return True
