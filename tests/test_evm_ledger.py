#!/usr/bin/env python3
"""
EVM ledger adapter (web3 mocked, no RPC).
"""

import sys
import os
import unittest
from unittest.mock import MagicMock

# Add package to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from atomswap.core import EventKind, LockState, generate_secret, hash_secret
from atomswap.chains import (
    EVMLedger, EVMLedgerConfig, LockHandle, LedgerError, TransientChainError,
    LockNotFound, InvalidSecret, AlreadyClaimed, AlreadyRefunded, NotExpired,
    LockExpired, InsufficientFunds,
)

T0 = 1_700_000_000
TEST_KEY = "0x" + "11" * 32
CONTRACT = "0x" + "22" * 20
TOKEN = "0x" + "33" * 20
RECEIVER = "0x" + "44" * 20


def make_ledger(**kw):
    config = EVMLedgerConfig(
        name="base",
        rpc_url="http://localhost:8545",
        chain_id=84532,
        contract_address=CONTRACT,
        token_address=TOKEN,
        private_key=TEST_KEY,
    )
    for key, value in kw.items():
        setattr(config, key, value)
    return EVMLedger(config)


def htlc(hashlock, timelock=T0 + 3600, withdrawn=False, refunded=False, preimage=""):
    return {
        "sender": "0x" + "55" * 20,
        "receiver": RECEIVER,
        "token": TOKEN,
        "amount": 1000,
        "hashlock": hashlock,
        "timelock": timelock,
        "withdrawn": withdrawn,
        "refunded": refunded,
        "preimage": preimage,
    }


class TestEVMLockId(unittest.TestCase):

    def test_deterministic(self):
        ledger = make_ledger()
        hashlock = "ab" * 32
        first = ledger.lock_id_for(RECEIVER, 1000, hashlock, T0)
        self.assertEqual(first, ledger.lock_id_for(RECEIVER, 1000, "0x" + hashlock, T0))
        self.assertEqual(len(first), 64)
        self.assertNotEqual(first, ledger.lock_id_for(RECEIVER, 1001, hashlock, T0))

    def test_address_from_key(self):
        ledger = make_ledger()
        self.assertTrue(ledger.address.startswith("0x"))
        self.assertEqual(len(ledger.address), 42)


class TestEVMClaimRefund(unittest.TestCase):

    def setUp(self):
        self.ledger = make_ledger()
        self.secret = generate_secret()
        self.hashlock = hash_secret("sha256", self.secret)
        self.handle = LockHandle("base", "cd" * 32)
        self.receipt = {"status": 1, "transactionHash": bytes.fromhex("ef" * 32), "blockNumber": 42}

    def patch(self, state, chain_time=T0):
        self.ledger._read_htlc = MagicMock(return_value=state)
        self.ledger.chain_time = MagicMock(return_value=chain_time)
        self.ledger._send = MagicMock(return_value=self.receipt)
        self.ledger._contract = MagicMock()

    def test_claim(self):
        self.patch(htlc(self.hashlock))
        receipt = self.ledger.claim(self.handle, self.secret)
        self.assertEqual(receipt.tx_hash, "ef" * 32)
        self.assertEqual(receipt.height, 42)
        self.ledger._send.assert_called_once()

    def test_claim_rejections_before_sending(self):
        cases = [
            (None, T0, LockNotFound),
            (htlc(self.hashlock, withdrawn=True), T0, AlreadyClaimed),
            (htlc(self.hashlock, refunded=True), T0, AlreadyRefunded),
            (htlc(self.hashlock), T0 + 3600, LockExpired),
            (htlc("00" * 32), T0, InvalidSecret),
        ]
        for state, now, error in cases:
            with self.subTest(error=error.__name__):
                self.patch(state, now)
                with self.assertRaises(error):
                    self.ledger.claim(self.handle, self.secret)
                self.ledger._send.assert_not_called()

    def test_refund(self):
        self.patch(htlc(self.hashlock), chain_time=T0 + 3600)
        receipt = self.ledger.refund(self.handle)
        self.assertEqual(receipt.action, "refund")

    def test_refund_too_early(self):
        self.patch(htlc(self.hashlock), chain_time=T0 + 3599)
        with self.assertRaises(NotExpired):
            self.ledger.refund(self.handle)
        self.ledger._send.assert_not_called()

    def test_get_lock_states(self):
        self.patch(htlc(self.hashlock, withdrawn=True, preimage=self.secret))
        snap = self.ledger.get_lock(self.handle)
        self.assertEqual(snap.state, LockState.CLAIMED)
        self.assertEqual(snap.secret, self.secret)

        self.patch(htlc(self.hashlock), chain_time=T0 + 3600)
        self.assertEqual(self.ledger.get_lock(self.handle).state, LockState.EXPIRED)


class TestEVMCreateLock(unittest.TestCase):

    def setUp(self):
        self.ledger = make_ledger()
        self.ledger._send = MagicMock(return_value={"status": 1})
        self.ledger._contract = MagicMock()
        self.lock_id = self.ledger.lock_id_for(RECEIVER, 1000, "ab" * 32, T0 + 3600)
        self.create = self.ledger._contract.return_value.functions.create.return_value
        self.create.call.return_value = bytes.fromhex(self.lock_id)

    def created_log(self, lock_id, address=CONTRACT):
        return {"address": address, "topics": [bytes.fromhex("99" * 32), bytes.fromhex(lock_id)]}

    def test_existing_lock_not_recreated(self):
        self.ledger._read_htlc = MagicMock(return_value=htlc("ab" * 32))
        handle = self.ledger.create_lock(RECEIVER, 1000, "ab" * 32, T0 + 3600)
        self.assertEqual(handle.lock_id, self.lock_id)
        self.ledger._send.assert_not_called()

    def test_creates_after_allowance(self):
        self.ledger._read_htlc = MagicMock(return_value=None)
        self.ledger._ensure_allowance = MagicMock()
        self.ledger.create_lock(RECEIVER, 1000, "ab" * 32, T0 + 3600)
        self.ledger._ensure_allowance.assert_called_once_with(1000)
        self.ledger._send.assert_called_once()
        self.create.call.assert_called_once_with({"from": self.ledger.address})

    def test_simulated_id_mismatch_not_sent(self):
        self.ledger._read_htlc = MagicMock(return_value=None)
        self.ledger._ensure_allowance = MagicMock()
        self.create.call.return_value = bytes.fromhex("77" * 32)
        with self.assertRaises(LedgerError) as ctx:
            self.ledger.create_lock(RECEIVER, 1000, "ab" * 32, T0 + 3600)
        self.assertNotIsInstance(ctx.exception, TransientChainError)
        self.ledger._send.assert_not_called()

    def test_simulation_rpc_failure_is_transient(self):
        self.ledger._read_htlc = MagicMock(return_value=None)
        self.ledger._ensure_allowance = MagicMock()
        self.create.call.side_effect = OSError("connection reset")
        with self.assertRaises(TransientChainError):
            self.ledger.create_lock(RECEIVER, 1000, "ab" * 32, T0 + 3600)
        self.ledger._send.assert_not_called()

    def test_receipt_log_confirms_id(self):
        self.ledger._read_htlc = MagicMock(return_value=None)
        self.ledger._ensure_allowance = MagicMock()
        token_log = {"address": TOKEN, "topics": [bytes.fromhex("88" * 32), bytes.fromhex("00" * 32)]}
        self.ledger._send.return_value = {"status": 1, "logs": [token_log, self.created_log(self.lock_id)]}
        handle = self.ledger.create_lock(RECEIVER, 1000, "ab" * 32, T0 + 3600)
        self.assertEqual(handle.lock_id, self.lock_id)

    def test_receipt_log_mismatch(self):
        self.ledger._read_htlc = MagicMock(return_value=None)
        self.ledger._ensure_allowance = MagicMock()
        self.ledger._send.return_value = {"status": 1, "logs": [self.created_log("66" * 32)]}
        with self.assertRaises(LedgerError) as ctx:
            self.ledger.create_lock(RECEIVER, 1000, "ab" * 32, T0 + 3600)
        self.assertIn("66" * 32, str(ctx.exception))
        self.assertIn(self.lock_id, str(ctx.exception))

    def test_insufficient_token_balance(self):
        self.ledger._read_htlc = MagicMock(return_value=None)
        token = MagicMock()
        token.functions.balanceOf.return_value.call.return_value = 10
        self.ledger._token = MagicMock(return_value=token)
        with self.assertRaises(InsufficientFunds):
            self.ledger.create_lock(RECEIVER, 1000, "ab" * 32, T0 + 3600)
        self.ledger._send.assert_not_called()

    def test_approves_when_allowance_low(self):
        self.ledger._read_htlc = MagicMock(return_value=None)
        token = MagicMock()
        token.functions.balanceOf.return_value.call.return_value = 5000
        token.functions.allowance.return_value.call.return_value = 0
        self.ledger._token = MagicMock(return_value=token)
        self.ledger.create_lock(RECEIVER, 1000, "ab" * 32, T0 + 3600)
        self.assertEqual(self.ledger._send.call_count, 2)


class TestEVMSend(unittest.TestCase):

    def setUp(self):
        self.ledger = make_ledger()
        self.w3 = MagicMock()
        self.w3.eth.gas_price = 1_000_000_000
        self.w3.eth.get_transaction_count.return_value = 7
        self.ledger._web3 = self.w3
        self.ledger._account = MagicMock(address="0x" + "55" * 20)

    def test_connection_error_is_transient(self):
        self.w3.eth.get_transaction_count.side_effect = OSError("connection refused")
        with self.assertRaises(TransientChainError):
            self.ledger._send(MagicMock(), gas=100000)

    def test_reverted_transaction(self):
        self.w3.eth.wait_for_transaction_receipt.return_value = {"status": 0}
        with self.assertRaises(LedgerError) as ctx:
            self.ledger._send(MagicMock(), gas=100000)
        self.assertNotIsInstance(ctx.exception, TransientChainError)

    def test_builds_signed_transaction(self):
        self.w3.eth.wait_for_transaction_receipt.return_value = {"status": 1}
        fn_call = MagicMock()
        self.ledger._send(fn_call, gas=150000)

        tx_params = fn_call.build_transaction.call_args[0][0]
        self.assertEqual(tx_params["nonce"], 7)
        self.assertEqual(tx_params["gas"], 150000)
        self.assertEqual(tx_params["chainId"], 84532)
        self.assertEqual(tx_params["gasPrice"], 1_100_000_000)
        self.ledger._account.sign_transaction.assert_called_once()


class TestEVMEvents(unittest.TestCase):

    def test_created_event(self):
        ledger = make_ledger()
        decoded = {
            "args": {
                "htlcId": bytes.fromhex("aa" * 32),
                "sender": "0x" + "55" * 20,
                "receiver": RECEIVER,
                "amount": 1000,
                "hashlock": bytes.fromhex("bb" * 32),
                "timelock": T0 + 3600,
            },
            "blockNumber": 12,
            "transactionHash": bytes.fromhex("cc" * 32),
        }
        event = ledger._to_event(EventKind.LOCK_CREATED, decoded)
        self.assertEqual(event.lock_id, "aa" * 32)
        self.assertEqual(event.hashlock, "bb" * 32)
        self.assertEqual(event.height, 12)
        self.assertEqual(event.extra["tx_hash"], "cc" * 32)

    def test_claimed_event_has_secret(self):
        ledger = make_ledger()
        decoded = {
            "args": {"htlcId": bytes.fromhex("aa" * 32), "preimage": bytes.fromhex("dd" * 32)},
            "blockNumber": 13,
            "transactionHash": bytes.fromhex("cc" * 32),
        }
        event = ledger._to_event(EventKind.LOCK_CLAIMED, decoded)
        self.assertEqual(event.secret, "dd" * 32)
        self.assertEqual(event.key, f"base:{'aa' * 32}:lock_claimed")

    def test_empty_range(self):
        ledger = make_ledger()
        ledger._web3 = MagicMock()
        self.assertEqual(ledger.events(10, 9), [])
        ledger._web3.eth.get_logs.assert_not_called()

    def test_rpc_failure_is_transient(self):
        ledger = make_ledger()
        ledger._web3 = MagicMock()
        ledger._web3.eth.get_logs.side_effect = TimeoutError("timed out")
        with self.assertRaises(TransientChainError):
            ledger.events(1, 5)


if __name__ == "__main__":
    unittest.main(verbosity=2)
