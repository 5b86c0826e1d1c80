"""
Safety Deposit Ledger.

Resolvers post collateral alongside each destination lock. A deposit is
settled exactly once: released to its poster when the fill completes (or
never reached the chain), forfeited when the poster's lock expires unclaimed.

Collateral balances (available / locked per poster) are kept in memory and
rebuilt from the deposits recorded on orders at startup, the same way
inventory reservations are rebuilt from the swap database.

The protocol fee is booked here too: a completed order is charged
`fee_bps` of its filled source amount once, accrued per source asset.
"""

import logging
import threading
from typing import Dict, Any, Optional

from ..core import (
    Order, PartialFill, SafetyDeposit, DepositStatus,
    InsufficientCollateral, DepositAlreadySettled,
)

log = logging.getLogger(__name__)


def required_deposit(amount: int, bps: int) -> int:
    """Deposit for a fill of `amount` at `bps` basis points (rounded up)."""
    return (amount * bps + 9999) // 10000


def protocol_fee(amount: int, bps: int) -> int:
    """Fee on `amount` at `bps` basis points (rounded down)."""
    return amount * bps // 10000


class SafetyDepositLedger:

    def __init__(self, bps: int = 100, forfeit_destination: str = "beneficiary",
                 treasury_address: str = "", fee_bps: int = 0):
        self.bps = bps
        self.forfeit_destination = forfeit_destination
        self.treasury_address = treasury_address
        self.fee_bps = fee_bps
        self._funded: Dict[str, int] = {}
        self._locked: Dict[str, int] = {}
        self._lost: Dict[str, int] = {}
        self._payouts: Dict[str, int] = {}      # forfeits received, by recipient
        self._fees: Dict[str, int] = {}         # protocol fees, by asset
        self._lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Collateral accounts
    # -------------------------------------------------------------------------

    def fund(self, poster: str, amount: int):
        with self._lock:
            self._funded[poster] = self._funded.get(poster, 0) + amount
        log.info(f"Collateral funded: {poster} +{amount}")

    def available(self, poster: str) -> int:
        with self._lock:
            return self._available(poster)

    def _available(self, poster: str) -> int:
        return (self._funded.get(poster, 0) - self._locked.get(poster, 0)
                - self._lost.get(poster, 0))

    def locked(self, poster: str) -> int:
        with self._lock:
            return self._locked.get(poster, 0)

    def rebuild(self, orders):
        """Recompute locked/lost collateral from persisted deposits."""
        with self._lock:
            self._locked = {}
            self._lost = {}
            self._payouts = {}
            self._fees = {}
            for order in orders:
                if order.protocol_fee:
                    self._fees[order.source_asset] = self._fees.get(order.source_asset, 0) + order.protocol_fee
                for deposit in order.deposits:
                    if deposit.status == DepositStatus.HELD:
                        self._locked[deposit.poster] = self._locked.get(deposit.poster, 0) + deposit.amount
                    elif deposit.status == DepositStatus.FORFEITED:
                        self._lost[deposit.poster] = self._lost.get(deposit.poster, 0) + deposit.amount
                        self._payouts[deposit.claimed_by] = self._payouts.get(deposit.claimed_by, 0) + deposit.amount
        log.info(f"Rebuilt collateral: locked={self._locked}, fees={self._fees}")

    # -------------------------------------------------------------------------
    # Deposits (caller holds the per-order guard and persists the order)
    # -------------------------------------------------------------------------

    def post(self, order: Order, fill: PartialFill) -> SafetyDeposit:
        amount = required_deposit(fill.amount, self.bps)
        with self._lock:
            if self._available(fill.filler) < amount:
                raise InsufficientCollateral(
                    f"{fill.filler} has {self._available(fill.filler)} available, deposit needs {amount}"
                )
            self._locked[fill.filler] = self._locked.get(fill.filler, 0) + amount

        deposit = SafetyDeposit(order_id=order.id, fill_id=fill.id, poster=fill.filler, amount=amount)
        order.deposits.append(deposit)
        log.info(f"Order {order.id}: deposit {amount} posted by {fill.filler} for {fill.id}")
        return deposit

    def release(self, order: Order, fill_id: str) -> SafetyDeposit:
        """Return the deposit to its poster."""
        deposit = self._held(order, fill_id)
        with self._lock:
            self._locked[deposit.poster] -= deposit.amount
        deposit.status = DepositStatus.RELEASED
        deposit.claimed_by = deposit.poster
        log.info(f"Order {order.id}: deposit {deposit.amount} released to {deposit.poster}")
        return deposit

    def forfeit(self, order: Order, fill_id: str) -> SafetyDeposit:
        """Pay the deposit to the beneficiary (or treasury)."""
        deposit = self._held(order, fill_id)
        recipient = self.treasury_address if self.forfeit_destination == "treasury" else order.beneficiary
        with self._lock:
            self._locked[deposit.poster] -= deposit.amount
            self._lost[deposit.poster] = self._lost.get(deposit.poster, 0) + deposit.amount
            self._payouts[recipient] = self._payouts.get(recipient, 0) + deposit.amount
        deposit.status = DepositStatus.FORFEITED
        deposit.claimed_by = recipient
        log.warning(f"Order {order.id}: deposit {deposit.amount} of {deposit.poster} forfeited to {recipient}")
        return deposit

    def settle_if_held(self, order: Order, fill_id: str, forfeit: bool = False) -> Optional[SafetyDeposit]:
        deposit = order.get_deposit(fill_id)
        if deposit is None or deposit.status != DepositStatus.HELD:
            return None
        return self.forfeit(order, fill_id) if forfeit else self.release(order, fill_id)

    def charge_fee(self, order: Order) -> int:
        """Book the protocol fee for a completed order. Charged at most once."""
        if order.protocol_fee is not None:
            return order.protocol_fee
        claimed = sum(f.amount for f in order.fills if f.claimed)
        fee = protocol_fee(claimed or order.source_amount, self.fee_bps)
        order.protocol_fee = fee
        if fee:
            with self._lock:
                self._fees[order.source_asset] = self._fees.get(order.source_asset, 0) + fee
            log.info(f"Order {order.id}: protocol fee {fee} {order.source_asset}")
        return fee

    def _held(self, order: Order, fill_id: str) -> SafetyDeposit:
        deposit = order.get_deposit(fill_id)
        if deposit is None:
            raise KeyError(f"No deposit for fill {fill_id}")
        if deposit.status != DepositStatus.HELD:
            raise DepositAlreadySettled(
                f"Deposit for {fill_id} already {deposit.status.value} to {deposit.claimed_by}"
            )
        return deposit

    def summary(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "bps": self.bps,
                "forfeit_destination": self.forfeit_destination,
                "funded": dict(self._funded),
                "locked": dict(self._locked),
                "forfeited": dict(self._lost),
                "payouts": dict(self._payouts),
                "fee_bps": self.fee_bps,
                "fees": dict(self._fees),
            }
