"""
Swap coordination for atomswap.

Drives HTLC orders across chains: monitors, coordinator, fills, deposits, timeouts.
"""

from .coordinator import Coordinator
from .monitor import ChainMonitor
from .scheduler import TimeoutScheduler
from .secret_manager import SecretManager
from .store import OrderStore
from .fills import PartialFillAllocator
from .deposits import SafetyDepositLedger
from .notify import Notifier

__all__ = [
    "Coordinator",
    "ChainMonitor",
    "TimeoutScheduler",
    "SecretManager",
    "OrderStore",
    "PartialFillAllocator",
    "SafetyDepositLedger",
    "Notifier",
]
