#!/usr/bin/env python3
"""
In-memory ledger: HTLC rules, events, reorgs, injected failures.
"""

import sys
import os
import unittest

# Add package to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from atomswap.core import EventKind, LockState, generate_secret, hash_secret
from atomswap.chains import (
    MemoryLedger, LockHandle, TransientChainError, LockNotFound, InvalidSecret,
    AlreadyClaimed, AlreadyRefunded, NotExpired, LockExpired, InsufficientFunds,
)

T0 = 1_700_000_000


class TestMemoryLedger(unittest.TestCase):

    def setUp(self):
        self.ledger = MemoryLedger("chain_a", start_time=T0, balances={"alice": 1000})
        self.secret = generate_secret()
        self.hashlock = hash_secret("sha256", self.secret)

    def lock(self, amount=500, timelock=T0 + 3600):
        return self.ledger.create_lock("bob", amount, self.hashlock, timelock, sender="alice")

    def test_create_moves_funds_and_mines_event(self):
        handle = self.lock()
        self.assertEqual(self.ledger.balance_of("alice"), 500)
        self.assertEqual(self.ledger.block_height(), 1)

        events = self.ledger.events(1, 1)
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].kind, EventKind.LOCK_CREATED)
        self.assertEqual(events[0].lock_id, handle.lock_id)
        self.assertEqual(events[0].amount, 500)

    def test_create_is_idempotent(self):
        first = self.lock()
        second = self.lock()
        self.assertEqual(first.lock_id, second.lock_id)
        self.assertEqual(self.ledger.balance_of("alice"), 500)
        self.assertEqual(self.ledger.block_height(), 1)

    def test_lock_id_matches_create(self):
        expected = self.ledger.lock_id_for("bob", 500, self.hashlock, T0 + 3600, sender="alice")
        self.assertEqual(self.lock().lock_id, expected)

    def test_insufficient_funds(self):
        with self.assertRaises(InsufficientFunds):
            self.lock(amount=5000)

    def test_claim_with_secret(self):
        handle = self.lock()
        receipt = self.ledger.claim(handle, self.secret)
        self.assertEqual(receipt.action, "claim")
        self.assertEqual(self.ledger.balance_of("bob"), 500)

        snap = self.ledger.get_lock(handle)
        self.assertEqual(snap.state, LockState.CLAIMED)
        self.assertEqual(snap.secret, self.secret)

        claimed = self.ledger.events(2, 2)[0]
        self.assertEqual(claimed.kind, EventKind.LOCK_CLAIMED)
        self.assertEqual(claimed.secret, self.secret)

    def test_claim_wrong_secret(self):
        handle = self.lock()
        with self.assertRaises(InvalidSecret):
            self.ledger.claim(handle, generate_secret())

    def test_claim_twice(self):
        handle = self.lock()
        self.ledger.claim(handle, self.secret)
        with self.assertRaises(AlreadyClaimed):
            self.ledger.claim(handle, self.secret)

    def test_claim_after_timelock(self):
        handle = self.lock()
        self.ledger.advance(3600)
        with self.assertRaises(LockExpired):
            self.ledger.claim(handle, self.secret)

    def test_refund_before_timelock(self):
        handle = self.lock()
        with self.assertRaises(NotExpired):
            self.ledger.refund(handle)

    def test_refund_after_timelock(self):
        handle = self.lock()
        self.ledger.advance(3600)
        self.ledger.refund(handle)
        self.assertEqual(self.ledger.balance_of("alice"), 1000)
        with self.assertRaises(AlreadyRefunded):
            self.ledger.refund(handle)
        with self.assertRaises(AlreadyRefunded):
            self.ledger.claim(handle, self.secret)

    def test_unknown_lock(self):
        with self.assertRaises(LockNotFound):
            self.ledger.get_lock(LockHandle("chain_a", "00" * 32))

    def test_reorg_undoes_blocks(self):
        handle = self.lock()
        self.ledger.claim(handle, self.secret)
        self.ledger.reorg(1)

        self.assertEqual(self.ledger.block_height(), 1)
        self.assertEqual(self.ledger.get_lock(handle).state, LockState.CREATED)
        self.assertEqual(self.ledger.balance_of("bob"), 0)
        self.assertEqual(self.ledger.events(2, 10), [])

    def test_fail_next(self):
        self.ledger.fail_next("create_lock", TransientChainError("rpc down"), times=2)
        for _ in range(2):
            with self.assertRaises(TransientChainError):
                self.lock()
        self.lock()
        self.assertEqual(len(self.ledger.calls_for("create_lock")), 3)

    def test_mine_empty_blocks(self):
        self.ledger.mine(3)
        self.assertEqual(self.ledger.block_height(), 3)
        self.assertEqual(self.ledger.events(0, 3), [])


if __name__ == "__main__":
    unittest.main(verbosity=2)
