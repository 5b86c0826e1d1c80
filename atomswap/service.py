"""
Service wiring.

Builds ledgers, monitors, store, coordinator and scheduler from config and
runs them as background threads.
"""

import logging
from typing import Dict, Optional

from .config import ChainConfig, CoordinatorConfig
from .chains import LedgerAdapter, MemoryLedger, EVMLedger, EVMLedgerConfig
from .swap import (
    Coordinator, ChainMonitor, TimeoutScheduler, SecretManager, OrderStore,
    SafetyDepositLedger,
)

log = logging.getLogger(__name__)


def build_ledger(chain: ChainConfig) -> LedgerAdapter:
    if chain.kind == "evm":
        return EVMLedger(EVMLedgerConfig(
            name=chain.name,
            rpc_url=chain.rpc_url,
            chain_id=chain.chain_id,
            contract_address=chain.contract_address,
            token_address=chain.token_address,
            private_key=chain.private_key,
            hash_function=chain.hash_function,
        ))
    return MemoryLedger(chain.name, hash_function=chain.hash_function, address=chain.resolver_address)


class SwapService:
    """All coordinator components for one instance."""

    def __init__(
        self,
        chains: Dict[str, ChainConfig],
        config: Optional[CoordinatorConfig] = None,
        ledgers: Optional[Dict[str, LedgerAdapter]] = None,
    ):
        self.chains = chains
        self.config = config or CoordinatorConfig()
        self.ledgers = ledgers or {name: build_ledger(c) for name, c in chains.items()}

        self.secrets = SecretManager({name: l.hash_function for name, l in self.ledgers.items()})
        self.store = OrderStore(self.config.db_path)
        self.store.load()

        self.deposits = SafetyDepositLedger(
            bps=self.config.safety_deposit_bps,
            forfeit_destination=self.config.forfeit_destination,
            treasury_address=self.config.treasury_address,
            fee_bps=self.config.protocol_fee_bps,
        )
        if self.config.resolver_collateral:
            self.deposits.fund(self.config.resolver_id, self.config.resolver_collateral)
        self.deposits.rebuild(self.store.list())

        self.coordinator = Coordinator(
            self.store, self.ledgers, self.secrets, self.config, deposits=self.deposits,
        )
        self.scheduler = TimeoutScheduler(self.coordinator, self.ledgers, self.config.scheduler_interval)
        self.coordinator.add_lock_listener(self.scheduler.watch)
        self.scheduler.rebuild(self.store)

        self.monitors = {
            name: ChainMonitor(
                self.ledgers[name],
                self.coordinator.events,
                confirmations=c.confirmations,
                poll_interval=c.poll_interval,
                start_height=c.start_height,
            )
            for name, c in chains.items()
        }
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self):
        if self._running:
            return
        self.coordinator.start()
        recovered = self.coordinator.recover()
        if recovered:
            log.info(f"Re-driving {recovered} order(s) with interrupted chain calls")
        for monitor in self.monitors.values():
            monitor.start()
        self.scheduler.start()
        self._running = True
        log.info(f"Swap service started: chains={list(self.ledgers)}, "
                 f"{len(self.store.list(active_only=True))} active orders")

    def stop(self):
        if not self._running:
            return
        self.scheduler.stop()
        for monitor in self.monitors.values():
            monitor.stop()
        self.coordinator.stop()
        self._running = False
        log.info("Swap service stopped")

    def status(self) -> Dict:
        return {
            "running": self._running,
            "instance_id": self.config.instance_id,
            "chains": {
                name: {
                    "hash_function": ledger.hash_function,
                    "cursor": self.monitors[name].cursor if name in self.monitors else None,
                    "next_expiry": self.scheduler.next_expiry(name),
                }
                for name, ledger in self.ledgers.items()
            },
            "scheduled_timers": self.scheduler.pending(),
        }
