#!/usr/bin/env python3
"""
Core types and hash/timelock helpers.
"""

import sys
import os
import hashlib
import unittest

# Add package to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from atomswap.core import (
    Order, OrderStatus, Lock, LockRole, LockState, PartialFill, FillStatus,
    SafetyDeposit, FillSecretMode, ReasonCode, ProtocolViolation,
    hash_secret, verify_preimage, generate_secret, normalize_hex,
    validate_timelock_margin, TIMELOCK_MIN_MARGIN_SECONDS,
)


def sample_order(**kw):
    fields = dict(
        id="order_1",
        source_chain="chain_a",
        dest_chain="chain_b",
        source_asset="A",
        dest_asset="B",
        source_amount=1000,
        dest_amount=2000,
        initiator="alice",
        beneficiary="bob",
        hashlock="aa" * 32,
        timelock_source=10000,
        timelock_dest=5000,
    )
    fields.update(kw)
    return Order(**fields)


class TestHashing(unittest.TestCase):

    def test_sha256_digest(self):
        secret = generate_secret()
        self.assertEqual(
            hash_secret("sha256", secret),
            hashlib.sha256(bytes.fromhex(secret)).hexdigest()
        )

    def test_keccak_differs_from_sha256(self):
        secret = generate_secret()
        keccak = hash_secret("keccak256", secret)
        self.assertEqual(len(keccak), 64)
        self.assertNotEqual(keccak, hash_secret("sha256", secret))

    def test_unknown_hash_function(self):
        with self.assertRaises(ValueError):
            hash_secret("md5", "00")

    def test_verify_preimage(self):
        secret = generate_secret()
        hashlock = "0x" + hash_secret("sha256", secret).upper()
        self.assertTrue(verify_preimage("sha256", secret, hashlock))
        self.assertFalse(verify_preimage("sha256", generate_secret(), hashlock))
        self.assertFalse(verify_preimage("sha256", "not-hex", hashlock))

    def test_normalize_hex(self):
        self.assertEqual(normalize_hex("0xABcd"), "abcd")
        self.assertEqual(normalize_hex(" abcd "), "abcd")


class TestTimelockMargin(unittest.TestCase):

    def test_valid(self):
        self.assertTrue(validate_timelock_margin(7200, 3600))

    def test_dest_not_before_source(self):
        with self.assertRaises(ProtocolViolation) as ctx:
            validate_timelock_margin(3600, 3600)
        self.assertEqual(ctx.exception.reason, ReasonCode.TIMELOCK_MARGIN)

    def test_gap_below_minimum(self):
        with self.assertRaises(ProtocolViolation):
            validate_timelock_margin(3600 + TIMELOCK_MIN_MARGIN_SECONDS - 1, 3600)

    def test_custom_margin(self):
        self.assertTrue(validate_timelock_margin(200, 100, min_margin=100))


class TestOrderModel(unittest.TestCase):

    def test_dict_round_trip_keeps_children(self):
        order = sample_order(min_fill_amount=100, fill_secret_mode=FillSecretMode.PER_FILL)
        order.locks.append(Lock("l1", "chain_a", LockRole.SOURCE, 1000, "aa" * 32, 10000))
        order.locks.append(Lock("l2", "chain_b", LockRole.DEST, 2000, "bb" * 32, 5000,
                                state=LockState.CLAIMED, secret="cc" * 32, owned=True, fill_id="f1"))
        order.fills.append(PartialFill("f1", order.id, "r1", 1000, dest_amount=2000,
                                       status=FillStatus.LOCKED, secret_index=0))
        order.deposits.append(SafetyDeposit(order.id, "f1", "r1", 10))
        order.seen_events.append("chain_a:l1:lock_created")

        restored = Order.from_dict(order.to_dict())
        self.assertEqual(restored.to_dict(), order.to_dict())
        self.assertEqual(restored.fill_secret_mode, FillSecretMode.PER_FILL)
        self.assertEqual(restored.get_lock("l2").state, LockState.CLAIMED)

    def test_lock_accessors(self):
        order = sample_order()
        self.assertIsNone(order.source_lock)
        order.locks.append(Lock("d1", "chain_b", LockRole.DEST, 1000, "bb" * 32, 5000))
        order.locks.append(Lock("s1", "chain_a", LockRole.SOURCE, 1000, "aa" * 32, 10000))
        self.assertEqual(order.source_lock.id, "s1")
        self.assertEqual([l.id for l in order.dest_locks], ["d1"])

    def test_hashlock_for_prefers_fill(self):
        order = sample_order(hashlocks={"chain_a": "aa" * 32, "chain_b": "bb" * 32})
        fill = PartialFill("f1", order.id, "r1", 100, hashlocks={"chain_b": "cc" * 32})
        self.assertEqual(order.hashlock_for("chain_b"), "bb" * 32)
        self.assertEqual(order.hashlock_for("chain_b", fill), "cc" * 32)

    def test_snapshot_hides_seen_events(self):
        order = sample_order()
        order.seen_events.append("x")
        self.assertNotIn("seen_events", order.snapshot())

    def test_remaining_and_terminal(self):
        order = sample_order(filled_amount=300)
        self.assertEqual(order.remaining, 700)
        self.assertFalse(order.terminal)
        order.status = OrderStatus.REFUNDED
        self.assertTrue(order.terminal)


if __name__ == "__main__":
    unittest.main(verbosity=2)
