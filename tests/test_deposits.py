#!/usr/bin/env python3
"""
Safety Deposit Ledger.
"""

import sys
import os
import unittest

# Add package to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from atomswap.core import (
    Order, PartialFill, DepositStatus, InsufficientCollateral, DepositAlreadySettled,
)
from atomswap.swap.deposits import SafetyDepositLedger, required_deposit, protocol_fee


def make_order():
    return Order(
        id="order_1",
        source_chain="chain_a",
        dest_chain="chain_b",
        source_asset="A",
        dest_asset="B",
        source_amount=1000,
        dest_amount=1000,
        initiator="alice",
        beneficiary="bob",
        hashlock="aa" * 32,
        timelock_source=10000,
        timelock_dest=5000,
    )


class TestRequiredDeposit(unittest.TestCase):

    def test_rounds_up(self):
        self.assertEqual(required_deposit(1000, 100), 10)
        self.assertEqual(required_deposit(1, 100), 1)
        self.assertEqual(required_deposit(1000, 0), 0)


class TestProtocolFee(unittest.TestCase):

    def test_rounds_down(self):
        self.assertEqual(protocol_fee(1000, 30), 3)
        self.assertEqual(protocol_fee(333, 30), 0)

    def test_charged_once_and_rebuilt(self):
        ledger = SafetyDepositLedger(bps=0, fee_bps=50)
        order = make_order()
        fill = PartialFill("f1", "order_1", "r1", 600)
        fill.claimed = True
        order.fills.append(fill)

        self.assertEqual(ledger.charge_fee(order), 3)
        self.assertEqual(ledger.charge_fee(order), 3)
        self.assertEqual(ledger.summary()["fees"], {"A": 3})

        rebuilt = SafetyDepositLedger(bps=0, fee_bps=50)
        rebuilt.rebuild([order])
        self.assertEqual(rebuilt.summary()["fees"], {"A": 3})


class TestSafetyDepositLedger(unittest.TestCase):

    def setUp(self):
        self.ledger = SafetyDepositLedger(bps=100)
        self.ledger.fund("r1", 50)
        self.order = make_order()
        self.fill = PartialFill("f1", "order_1", "r1", 1000)

    def assert_conserved(self, poster="r1", funded=50):
        summary = self.ledger.summary()
        total = (self.ledger.available(poster) + self.ledger.locked(poster)
                 + summary["forfeited"].get(poster, 0))
        self.assertEqual(total, funded)

    def test_post_locks_collateral(self):
        deposit = self.ledger.post(self.order, self.fill)
        self.assertEqual(deposit.amount, 10)
        self.assertEqual(self.ledger.locked("r1"), 10)
        self.assertEqual(self.ledger.available("r1"), 40)
        self.assertIs(self.order.get_deposit("f1"), deposit)
        self.assert_conserved()

    def test_post_without_collateral(self):
        fill = PartialFill("f2", "order_1", "r2", 1000)
        with self.assertRaises(InsufficientCollateral):
            self.ledger.post(self.order, fill)
        self.assertEqual(self.order.deposits, [])

    def test_release_to_poster(self):
        self.ledger.post(self.order, self.fill)
        deposit = self.ledger.release(self.order, "f1")
        self.assertEqual(deposit.status, DepositStatus.RELEASED)
        self.assertEqual(deposit.claimed_by, "r1")
        self.assertEqual(self.ledger.available("r1"), 50)
        self.assert_conserved()

    def test_forfeit_to_beneficiary(self):
        self.ledger.post(self.order, self.fill)
        deposit = self.ledger.forfeit(self.order, "f1")
        self.assertEqual(deposit.status, DepositStatus.FORFEITED)
        self.assertEqual(deposit.claimed_by, "bob")
        self.assertEqual(self.ledger.summary()["payouts"], {"bob": 10})
        self.assertEqual(self.ledger.available("r1"), 40)
        self.assert_conserved()

    def test_forfeit_to_treasury(self):
        ledger = SafetyDepositLedger(bps=100, forfeit_destination="treasury", treasury_address="0xtreasury")
        ledger.fund("r1", 50)
        ledger.post(self.order, self.fill)
        deposit = ledger.forfeit(self.order, "f1")
        self.assertEqual(deposit.claimed_by, "0xtreasury")

    def test_settled_once(self):
        self.ledger.post(self.order, self.fill)
        self.ledger.release(self.order, "f1")
        with self.assertRaises(DepositAlreadySettled):
            self.ledger.forfeit(self.order, "f1")
        with self.assertRaises(DepositAlreadySettled):
            self.ledger.release(self.order, "f1")
        self.assertIsNone(self.ledger.settle_if_held(self.order, "f1", forfeit=True))
        self.assert_conserved()

    def test_rebuild_from_orders(self):
        self.ledger.post(self.order, self.fill)
        other = make_order()
        other.id = "order_2"
        fill2 = PartialFill("f2", "order_2", "r1", 1000)
        self.ledger.post(other, fill2)
        self.ledger.forfeit(other, "f2")

        fresh = SafetyDepositLedger(bps=100)
        fresh.fund("r1", 50)
        fresh.rebuild([self.order, other])
        self.assertEqual(fresh.locked("r1"), 10)
        self.assertEqual(fresh.available("r1"), 30)


if __name__ == "__main__":
    unittest.main(verbosity=2)
