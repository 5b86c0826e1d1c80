#!/usr/bin/env python3
"""
HTTP API tests (FastAPI TestClient over in-memory chains).
"""

import sys
import os
import unittest

# Add package to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from fastapi.testclient import TestClient

import server
from atomswap import SwapService, CoordinatorConfig, ChainConfig
from atomswap.chains import MemoryLedger

T0 = 1_700_000_000


def order_body(**kw):
    body = {
        "source_chain": "chain_a",
        "dest_chain": "chain_b",
        "source_asset": "USDC",
        "dest_asset": "M1",
        "source_amount": 100,
        "dest_amount": 200,
        "initiator": "alice",
        "beneficiary": "bob",
        "timelock_source": T0 + 7200,
        "timelock_dest": T0 + 3600,
    }
    body.update(kw)
    return body


class TestServerAPI(unittest.TestCase):

    def setUp(self):
        chains = {
            "chain_a": ChainConfig(name="chain_a"),
            "chain_b": ChainConfig(name="chain_b"),
        }
        ledgers = {
            "chain_a": MemoryLedger("chain_a", start_time=T0),
            "chain_b": MemoryLedger("chain_b", start_time=T0),
        }
        server.service = SwapService(chains, CoordinatorConfig(), ledgers=ledgers)
        # No context manager: startup hooks (background threads) stay off
        self.client = TestClient(server.app)

    def tearDown(self):
        server.service = None

    def create(self, **kw):
        resp = self.client.post("/api/orders", json=order_body(**kw))
        self.assertEqual(resp.status_code, 200, resp.text)
        return resp.json()

    def test_root(self):
        resp = self.client.get("/")
        self.assertEqual(resp.json()["name"], "atomswap")

    def test_create_and_get_order(self):
        created = self.create()
        self.assertEqual(created["status"], "pending")
        self.assertEqual(len(created["hashlock"]), 64)
        self.assertEqual(set(created["hashlocks"]), {"chain_a", "chain_b"})

        resp = self.client.get(f"/api/orders/{created['order_id']}")
        self.assertEqual(resp.status_code, 200)
        order = resp.json()
        self.assertEqual(order["source_amount"], 100)
        self.assertNotIn("seen_events", order)

    def test_unknown_order(self):
        self.assertEqual(self.client.get("/api/orders/order_missing").status_code, 404)
        self.assertEqual(self.client.post("/api/orders/order_missing/fills",
                                          json={"filler": "r1", "amount": 10}).status_code, 404)

    def test_bad_timelocks_rejected(self):
        resp = self.client.post("/api/orders", json=order_body(timelock_dest=T0 + 7000))
        self.assertEqual(resp.status_code, 400)

        resp = self.client.post("/api/orders", json=order_body(source_chain="nowhere"))
        self.assertEqual(resp.status_code, 400)

        # Source timelock beyond the configured maximum
        resp = self.client.post("/api/orders", json=order_body(timelock_source=T0 + 30 * 86400,
                                                                timelock_dest=T0 + 29 * 86400))
        self.assertEqual(resp.status_code, 400)

    def test_invalid_body(self):
        resp = self.client.post("/api/orders", json=order_body(source_amount=0))
        self.assertEqual(resp.status_code, 422)

    def test_list_orders(self):
        self.create()
        self.create(source_amount=50)
        resp = self.client.get("/api/orders", params={"status": "pending"})
        self.assertEqual(resp.json()["count"], 2)
        resp = self.client.get("/api/orders", params={"status": "completed"})
        self.assertEqual(resp.json()["count"], 0)
        resp = self.client.get("/api/orders", params={"status": "bogus"})
        self.assertEqual(resp.status_code, 400)

    def test_fills(self):
        order_id = self.create(min_fill_amount=10)["order_id"]

        resp = self.client.post(f"/api/orders/{order_id}/fills", json={"filler": "r1", "amount": 5})
        self.assertEqual(resp.status_code, 400)

        resp = self.client.post(f"/api/orders/{order_id}/fills", json={"filler": "r1", "amount": 60})
        self.assertEqual(resp.status_code, 200, resp.text)
        self.assertEqual(resp.json()["amount"], 60)

        resp = self.client.post(f"/api/orders/{order_id}/fills", json={"filler": "r2", "amount": 60})
        self.assertEqual(resp.status_code, 400)

        order = self.client.get(f"/api/orders/{order_id}").json()
        self.assertEqual(order["filled_amount"], 60)

    def test_reveal_requires_dest_locked(self):
        order_id = self.create()["order_id"]
        resp = self.client.post(f"/api/orders/{order_id}/reveal")
        self.assertEqual(resp.status_code, 409)

    def test_resume_requires_stuck(self):
        order_id = self.create()["order_id"]
        resp = self.client.post(f"/api/orders/{order_id}/resume")
        self.assertEqual(resp.status_code, 409)

    def test_metrics_and_status(self):
        self.create()
        metrics = self.client.get("/api/metrics").json()
        self.assertEqual(metrics["total_orders"], 1)
        self.assertEqual(metrics["by_status"]["pending"], 1)

        status = self.client.get("/api/status").json()
        self.assertEqual(status["status"], "ok")
        self.assertFalse(status["running"])
        self.assertEqual(set(status["chains"]), {"chain_a", "chain_b"})

    def test_service_unavailable(self):
        server.service = None
        self.assertEqual(self.client.get("/api/status").status_code, 503)


if __name__ == "__main__":
    unittest.main(verbosity=2)
