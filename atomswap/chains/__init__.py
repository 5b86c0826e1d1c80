"""Chain adapters for atomswap."""

from .base import (
    LedgerAdapter, LockHandle, Receipt, LockSnapshot, ChainEvent,
    LedgerError, TransientChainError, LockNotFound, InvalidSecret,
    AlreadyClaimed, AlreadyRefunded, NotExpired, LockExpired, InsufficientFunds,
)
from .memory import MemoryLedger
from .evm import EVMLedger, EVMLedgerConfig
