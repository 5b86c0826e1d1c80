"""
Configuration for atomswap.

All settings come from dataclass defaults overridden by ATOMSWAP_* environment
variables. Per-chain settings use ATOMSWAP_<CHAIN>_* (chain name uppercased).
Private keys are read from the environment only and never persisted.
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Optional, Dict, List

from .core import FillSecretMode, TIMELOCK_MIN_MARGIN_SECONDS, HASH_FUNCTIONS

log = logging.getLogger(__name__)

DEFAULT_DATA_DIR = os.path.expanduser("~/.atomswap")


@dataclass
class ChainConfig:
    """One ledger the coordinator talks to."""
    name: str
    kind: str = "memory"                # "memory" (dry-run) or "evm"
    hash_function: str = "sha256"       # Digest the chain's lock contract verifies
    confirmations: int = 1
    poll_interval: float = 5.0          # seconds
    resolver_address: str = "resolver"
    start_height: int = 0

    # EVM only
    rpc_url: str = ""
    chain_id: int = 0
    contract_address: str = ""
    token_address: str = ""
    private_key: str = field(default="", repr=False)

    def __post_init__(self):
        if self.hash_function not in HASH_FUNCTIONS:
            raise ValueError(f"Unknown hash function for {self.name}: {self.hash_function}")
        if self.kind not in ("memory", "evm"):
            raise ValueError(f"Unknown chain kind for {self.name}: {self.kind}")
        if self.confirmations < 1:
            raise ValueError(f"confirmations must be >= 1 for {self.name}")


@dataclass
class CoordinatorConfig:
    """Coordinator policy."""
    instance_id: str = "coordinator-1"

    # Timelocks (seconds)
    min_timelock_margin: int = TIMELOCK_MIN_MARGIN_SECONDS
    acceptance_window: int = 900        # Pending orders cancel after this
    max_timelock_duration: int = 7 * 24 * 3600   # Longest source timelock accepted, 0 = no limit

    # Retry policy for chain calls
    max_attempts: int = 5
    backoff_base: float = 1.0
    backoff_max: float = 60.0

    # Fills
    fill_secret_mode: FillSecretMode = FillSecretMode.SHARED
    auto_fill: bool = True              # Fill non-fillable orders as resolver

    # Safety deposits
    safety_deposit_bps: int = 0         # e.g. 100 = 1% of the filled amount
    forfeit_destination: str = "beneficiary"   # "beneficiary" or "treasury"
    treasury_address: str = ""
    resolver_id: str = "resolver"
    resolver_collateral: int = 0

    # Protocol fee, taken from the source amount when an order completes
    protocol_fee_bps: int = 0

    # Concurrency
    lease_ttl: int = 60
    in_flight_ttl: int = 600            # Markers older than this are treated as stale
    workers: int = 4
    scheduler_interval: float = 5.0

    # Persistence / notifications
    db_path: Optional[str] = None
    webhook_url: str = ""

    def __post_init__(self):
        if isinstance(self.fill_secret_mode, str):
            self.fill_secret_mode = FillSecretMode(self.fill_secret_mode)
        if self.forfeit_destination not in ("beneficiary", "treasury"):
            raise ValueError(f"forfeit_destination must be 'beneficiary' or 'treasury', "
                             f"got {self.forfeit_destination!r}")
        if self.forfeit_destination == "treasury" and not self.treasury_address:
            raise ValueError("forfeit_destination=treasury requires treasury_address")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if not 0 <= self.protocol_fee_bps <= 10000:
            raise ValueError(f"protocol_fee_bps must be in [0, 10000], got {self.protocol_fee_bps}")
        if self.max_timelock_duration < 0:
            raise ValueError("max_timelock_duration must be >= 0")

    @classmethod
    def from_env(cls) -> "CoordinatorConfig":
        env = os.environ
        return cls(
            instance_id=env.get("ATOMSWAP_INSTANCE_ID", "coordinator-1"),
            min_timelock_margin=int(env.get("ATOMSWAP_MIN_TIMELOCK_MARGIN", TIMELOCK_MIN_MARGIN_SECONDS)),
            acceptance_window=int(env.get("ATOMSWAP_ACCEPTANCE_WINDOW", 900)),
            max_timelock_duration=int(env.get("ATOMSWAP_MAX_TIMELOCK_DURATION", 7 * 24 * 3600)),
            max_attempts=int(env.get("ATOMSWAP_MAX_ATTEMPTS", 5)),
            backoff_base=float(env.get("ATOMSWAP_BACKOFF_BASE", 1.0)),
            backoff_max=float(env.get("ATOMSWAP_BACKOFF_MAX", 60.0)),
            fill_secret_mode=FillSecretMode(env.get("ATOMSWAP_FILL_SECRET_MODE", "shared")),
            auto_fill=env.get("ATOMSWAP_AUTO_FILL", "1") not in ("0", "false", "no"),
            safety_deposit_bps=int(env.get("ATOMSWAP_SAFETY_DEPOSIT_BPS", 0)),
            forfeit_destination=env.get("ATOMSWAP_FORFEIT_DESTINATION", "beneficiary"),
            treasury_address=env.get("ATOMSWAP_TREASURY_ADDRESS", ""),
            resolver_id=env.get("ATOMSWAP_RESOLVER_ID", "resolver"),
            resolver_collateral=int(env.get("ATOMSWAP_RESOLVER_COLLATERAL", 0)),
            protocol_fee_bps=int(env.get("ATOMSWAP_PROTOCOL_FEE_BPS", 0)),
            lease_ttl=int(env.get("ATOMSWAP_LEASE_TTL", 60)),
            in_flight_ttl=int(env.get("ATOMSWAP_IN_FLIGHT_TTL", 600)),
            workers=int(env.get("ATOMSWAP_WORKERS", 4)),
            scheduler_interval=float(env.get("ATOMSWAP_SCHEDULER_INTERVAL", 5.0)),
            db_path=env.get("ATOMSWAP_DB_PATH", os.path.join(DEFAULT_DATA_DIR, "orders.json")),
            webhook_url=env.get("ATOMSWAP_WEBHOOK_URL", ""),
        )


def load_chains_from_env() -> Dict[str, ChainConfig]:
    """
    Build chain configs from the environment.

    ATOMSWAP_CHAINS=base,stellar
    ATOMSWAP_BASE_KIND=evm
    ATOMSWAP_BASE_HASH=sha256
    ATOMSWAP_BASE_RPC_URL=https://sepolia.base.org
    ...

    Without ATOMSWAP_CHAINS, two in-memory chains (chain_a, chain_b) are used.
    """
    env = os.environ
    names: List[str] = [n.strip() for n in env.get("ATOMSWAP_CHAINS", "chain_a,chain_b").split(",") if n.strip()]

    chains = {}
    for name in names:
        prefix = f"ATOMSWAP_{name.upper()}_"
        chains[name] = ChainConfig(
            name=name,
            kind=env.get(prefix + "KIND", "memory"),
            hash_function=env.get(prefix + "HASH", "sha256"),
            confirmations=int(env.get(prefix + "CONFIRMATIONS", 1)),
            poll_interval=float(env.get(prefix + "POLL_INTERVAL", 5.0)),
            resolver_address=env.get(prefix + "RESOLVER_ADDRESS", "resolver"),
            start_height=int(env.get(prefix + "START_HEIGHT", 0)),
            rpc_url=env.get(prefix + "RPC_URL", ""),
            chain_id=int(env.get(prefix + "CHAIN_ID", 0)),
            contract_address=env.get(prefix + "CONTRACT_ADDRESS", ""),
            token_address=env.get(prefix + "TOKEN_ADDRESS", ""),
            private_key=env.get(prefix + "PRIVATE_KEY", ""),
        )
        log.info(f"Chain {name}: kind={chains[name].kind}, hash={chains[name].hash_function}, "
                 f"confirmations={chains[name].confirmations}")
    return chains
