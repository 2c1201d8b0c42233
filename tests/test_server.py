import unittest
from fastapi.testclient import TestClient

from fakes import REAL_SHOT, FakeHost, FakeVendor, fast_settings, screen_payload
from screensync import server
from screensync.config import settings
from screensync.engine import ReconciliationService
from screensync.state import StateManager

class TestServer(unittest.TestCase):
    def setUp(self):
        fast_settings()
        settings.HTTP_SERVER_TOKEN = "secret"
        self.vendor = FakeVendor()
        self.host = FakeHost()
        self.host.link("L1", "D1")
        self.vendor.add_screen("D1", screen_payload("layout", 77))
        self.vendor.shots["D1"] = [REAL_SHOT]
        server.service = ReconciliationService(
            vendor=self.vendor,
            state_manager=StateManager("/tmp/screensync-test-state.json"),
            directory=self.host,
            ads_provider=self.host,
            baseline_provider=self.host,
        )
        self.client = TestClient(server.app)
        self.auth = {"X-Token": "secret"}

    def tearDown(self):
        server.service = None
        settings.HTTP_SERVER_TOKEN = None

    def test_healthz_is_public(self):
        resp = self.client.get("/healthz")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "ok")

    def test_token_required(self):
        self.assertEqual(self.client.get("/status").status_code, 401)
        self.assertEqual(self.client.get("/status", headers=self.auth).status_code, 200)

    def test_reconcile_then_status(self):
        resp = self.client.post("/locations/L1/reconcile", headers=self.auth)
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["outcome"], "CONVERGED")
        self.assertTrue(body["attempt_id"].startswith("rc-"))

        status = self.client.get("/locations/L1/status", headers=self.auth).json()
        self.assertTrue(status["canonical_mode"])
        self.assertEqual(status["baseline_count"], 3)

        metrics = self.client.get("/metrics").text
        self.assertIn("screensync_locations_converged 1", metrics)

    def test_force_reset(self):
        resp = self.client.post("/locations/L1/force-reset", headers=self.auth)
        self.assertEqual(resp.json()["outcome"], "CONVERGED")
        states = {s["state"] for s in resp.json()["steps"]}
        self.assertIn("RESETTING", states)

    def test_unlinked_location(self):
        body = self.client.post("/locations/L9/reconcile", headers=self.auth).json()
        self.assertEqual(body["outcome"], "DEGRADED")
        self.assertEqual(body["error"]["kind"], "NotLinked")

    def test_not_ready(self):
        server.service = None
        resp = self.client.get("/locations/L1/status", headers=self.auth)
        self.assertEqual(resp.status_code, 503)

if __name__ == '__main__':
    unittest.main()
