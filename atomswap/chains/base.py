"""
Ledger adapter interface.

Every chain exposes the same lock surface: create / claim / refund / query,
plus a height-indexed event feed used by ChainMonitor.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any

from ..core import EventKind, LockState


class LedgerError(Exception):
    """Base class for adapter errors."""


class TransientChainError(LedgerError):
    """Timeout, congestion or RPC hiccup. Safe to retry."""


class LockNotFound(LedgerError):
    pass


class InvalidSecret(LedgerError):
    pass


class AlreadyClaimed(LedgerError):
    pass


class AlreadyRefunded(LedgerError):
    pass


class NotExpired(LedgerError):
    pass


class LockExpired(LedgerError):
    """Claim rejected because the timelock has passed."""


class InsufficientFunds(LedgerError):
    pass


@dataclass
class LockHandle:
    chain: str
    lock_id: str


@dataclass
class Receipt:
    chain: str
    lock_id: str
    action: str
    tx_hash: Optional[str] = None
    height: Optional[int] = None


@dataclass
class LockSnapshot:
    lock_id: str
    sender: str
    receiver: str
    amount: int
    hashlock: str
    timelock: int
    state: LockState
    secret: Optional[str] = None


@dataclass
class ChainEvent:
    """Normalized lock event."""
    kind: EventKind
    chain: str
    lock_id: str
    height: int
    hashlock: Optional[str] = None
    amount: Optional[int] = None
    timelock: Optional[int] = None
    sender: Optional[str] = None
    receiver: Optional[str] = None
    secret: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        """Dedup key: (chain, lock id, event kind)."""
        return f"{self.chain}:{self.lock_id}:{self.kind.value}"


class LedgerAdapter(ABC):
    """Uniform lock-contract surface over one chain."""

    name: str = ""
    hash_function: str = "sha256"
    address: str = ""

    @abstractmethod
    def lock_id_for(self, receiver: str, amount: int, hashlock: str, timelock: int) -> str:
        """Deterministic id of the lock create_lock() would produce for these params."""

    @abstractmethod
    def create_lock(self, receiver: str, amount: int, hashlock: str, timelock: int) -> LockHandle:
        """Lock funds. Returns the existing handle if the same lock already exists."""

    @abstractmethod
    def claim(self, handle: LockHandle, secret: str) -> Receipt:
        pass

    @abstractmethod
    def refund(self, handle: LockHandle) -> Receipt:
        pass

    @abstractmethod
    def get_lock(self, handle: LockHandle) -> LockSnapshot:
        pass

    @abstractmethod
    def block_height(self) -> int:
        pass

    @abstractmethod
    def chain_time(self) -> int:
        """Chain's own notion of now (latest block timestamp)."""

    @abstractmethod
    def events(self, from_height: int, to_height: int) -> List[ChainEvent]:
        """Lock events in blocks [from_height, to_height], in chain order."""
