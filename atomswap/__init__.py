"""
atomswap - Cross-Chain HTLC Swap Coordinator

Moves value between two independent ledgers with hash time-locked
contracts: either both legs settle or both refund.

Usage:
    from atomswap import SwapService, ChainConfig, CoordinatorConfig

    chains = {
        "chain_a": ChainConfig(name="chain_a"),
        "chain_b": ChainConfig(name="chain_b", hash_function="keccak256"),
    }
    service = SwapService(chains, CoordinatorConfig())
    service.start()

    order_id = service.coordinator.submit_order({
        "source_chain": "chain_a", "dest_chain": "chain_b",
        "source_asset": "A", "dest_asset": "B",
        "source_amount": 1000, "dest_amount": 2000,
        "initiator": "alice", "beneficiary": "bob",
        "timelock_source": now + 7200, "timelock_dest": now + 3600,
    })
"""

from .core import (
    Order,
    OrderStatus,
    Lock,
    LockRole,
    LockState,
    EventKind,
    PartialFill,
    FillStatus,
    SafetyDeposit,
    DepositStatus,
    FillSecretMode,
    ReasonCode,
    SwapError,
    ProtocolViolation,
    OrderNotFound,
    generate_secret,
    hash_secret,
    verify_preimage,
)
from .config import ChainConfig, CoordinatorConfig, load_chains_from_env

from .chains import LedgerAdapter, ChainEvent, MemoryLedger, EVMLedger, EVMLedgerConfig

from .swap import (
    Coordinator,
    ChainMonitor,
    TimeoutScheduler,
    SecretManager,
    OrderStore,
    PartialFillAllocator,
    SafetyDepositLedger,
    Notifier,
)
from .service import SwapService

__version__ = "0.1.0"
__all__ = [
    # Core types
    "Order",
    "OrderStatus",
    "Lock",
    "LockRole",
    "LockState",
    "EventKind",
    "PartialFill",
    "FillStatus",
    "SafetyDeposit",
    "DepositStatus",
    "FillSecretMode",
    "ReasonCode",
    # Errors
    "SwapError",
    "ProtocolViolation",
    "OrderNotFound",
    # Utilities
    "generate_secret",
    "hash_secret",
    "verify_preimage",
    # Config
    "ChainConfig",
    "CoordinatorConfig",
    "load_chains_from_env",
    # Chains
    "LedgerAdapter",
    "ChainEvent",
    "MemoryLedger",
    "EVMLedger",
    "EVMLedgerConfig",
    # Swap
    "Coordinator",
    "ChainMonitor",
    "TimeoutScheduler",
    "SecretManager",
    "OrderStore",
    "PartialFillAllocator",
    "SafetyDepositLedger",
    "Notifier",
    "SwapService",
]
