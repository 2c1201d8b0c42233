import asyncio
import unittest

from fakes import PLACEHOLDER_SHOT, REAL_SHOT, FakeHost, FakeVendor, fast_settings, screen_payload
from screensync.config import settings
from screensync.engine import DEVICE_OFFLINE, SEQUENCE_DRIFTED, ReconciliationService, check_applied_config
from screensync.models import ContentItem, ReconcileState, RemoteDeviceConfig, SourceKind
from screensync.refresh import PUSH, SKIPPED, TOGGLE_NUDGE
from screensync.state import StateManager
from screensync.writer import sequence_name

WRITES = ("patch_screen", "set_items", "create_sequence", "push_screen")

def actions(result):
    return [s.action for s in result.steps]

class EngineTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        fast_settings()
        self.vendor = FakeVendor()
        self.host = FakeHost(baseline=["101", "102", "103"])
        self.host.link("L1", "D1")
        self.vendor.add_screen("D1", screen_payload("layout", 77))
        self.vendor.shots["D1"] = [REAL_SHOT]

    async def asyncSetUp(self):
        self.service = ReconciliationService(
            vendor=self.vendor,
            state_manager=StateManager("/tmp/screensync-test-state.json"),
            directory=self.host,
            ads_provider=self.host,
            baseline_provider=self.host,
        )

    def writes(self):
        return [c for c in self.vendor.calls if c.startswith(WRITES)]

    def bound_sequence(self, device_id="D1"):
        kind, source_id = self.vendor.bound_source(device_id)
        self.assertEqual(kind, "playlist")
        return str(source_id)

class TestReconcile(EngineTestCase):
    async def test_fresh_location_on_layout_converges(self):
        self.host.set_ads("L1", ["201"])
        self.vendor.shots["D1"] = [PLACEHOLDER_SHOT, REAL_SHOT]

        result = await self.service.reconcile("L1")

        self.assertEqual(result.outcome, ReconcileState.CONVERGED, result.error)
        seq_id = self.bound_sequence()
        self.assertEqual(self.vendor.sequence_media(seq_id), ["101", "102", "103", "201"])
        self.assertEqual(self.vendor.sequences[seq_id]["name"], sequence_name("L1"))
        self.assertEqual(self.host.bindings["L1"].sequence_id, seq_id)
        self.assertIn("create-sequence", result.plan)
        self.assertIn("seed-baseline", actions(result))
        self.assertEqual(result.refresh_method, PUSH)
        self.assertIsNotNone(result.proof)
        self.assertEqual(actions(result).count("poll"), 2)
        self.assertEqual(result.before.source_kind, SourceKind.LAYOUT)
        self.assertTrue(result.after.is_bound_to(seq_id))

    async def test_second_run_makes_no_writes(self):
        self.host.set_ads("L1", ["201"])
        await self.service.reconcile("L1")
        self.vendor.calls.clear()

        result = await self.service.reconcile("L1")

        self.assertEqual(result.outcome, ReconcileState.CONVERGED)
        self.assertEqual(result.plan, [])
        self.assertEqual(self.writes(), [])
        self.assertEqual(result.refresh_method, SKIPPED)
        self.assertFalse(result.proof.changed)

    async def test_refresh_forced_when_configured(self):
        await self.service.reconcile("L1")
        settings.REFRESH_WHEN_UNCHANGED = True
        self.vendor.calls.clear()
        result = await self.service.reconcile("L1")
        self.assertEqual(self.writes(), ["push_screen:D1"])
        self.assertEqual(result.refresh_method, PUSH)

    async def test_empty_bound_sequence_is_seeded(self):
        seq_id = self.vendor.add_sequence(sequence_name("L1"), [])
        self.host.link("L1", "D1", seq_id)
        self.vendor.add_screen("D1", screen_payload("playlist", int(seq_id)))

        result = await self.service.reconcile("L1")

        self.assertEqual(result.outcome, ReconcileState.CONVERGED)
        self.assertEqual(result.plan, ["seed-baseline"])
        self.assertEqual(self.vendor.sequence_media(seq_id), ["101", "102", "103"])
        self.assertNotIn("patch_screen:D1", self.vendor.calls)

    async def test_drifted_items_are_replaced(self):
        self.host.set_ads("L1", ["201"])
        await self.service.reconcile("L1")
        seq_id = self.bound_sequence()
        self.vendor.sequences[seq_id]["items"] = [
            {"id": 201, "type": "media", "duration": 15, "priority": 1},
            {"id": 101, "type": "media", "duration": 8, "priority": 2},
        ]

        result = await self.service.reconcile("L1")

        self.assertEqual(result.outcome, ReconcileState.CONVERGED)
        self.assertEqual(result.plan, ["replace-items"])
        self.assertEqual(self.vendor.sequence_media(seq_id), ["101", "102", "103", "201"])

    async def test_deleted_bound_sequence_is_recreated(self):
        self.host.link("L1", "D1", "900")
        self.vendor.add_screen("D1", screen_payload("playlist", 900))

        first = await self.service.reconcile("L1")
        second = await self.service.reconcile("L1")

        self.assertEqual(first.outcome, ReconcileState.CONVERGED, first.error)
        self.assertEqual(first.plan, ["create-sequence", "replace-items", "rebind-device"])
        seq_id = self.bound_sequence()
        self.assertNotEqual(seq_id, "900")
        self.assertEqual(self.host.bindings["L1"].sequence_id, seq_id)
        self.assertEqual(self.vendor.sequence_media(seq_id), ["101", "102", "103"])
        self.assertNotIn("set_items:900", self.vendor.calls)
        self.assertEqual(second.outcome, ReconcileState.CONVERGED)
        self.assertEqual(second.plan, [])

    async def test_out_of_band_source_change_is_rebound(self):
        await self.service.reconcile("L1")
        seq_id = self.bound_sequence()
        self.vendor.screens["D1"]["screen_content"] = {"source_type": "schedule", "source_id": 31}
        self.vendor.calls.clear()

        result = await self.service.reconcile("L1")

        self.assertEqual(result.outcome, ReconcileState.CONVERGED)
        self.assertEqual(result.plan, ["rebind-device"])
        self.assertEqual(result.before.source_kind, SourceKind.SCHEDULE)
        self.assertEqual(self.bound_sequence(), seq_id)
        self.assertNotIn("create_sequence", self.vendor.calls)
        self.assertNotIn(f"set_items:{seq_id}", self.vendor.calls)

    async def test_existing_sequence_found_by_name(self):
        seq_id = self.vendor.add_sequence(sequence_name("L1"), ["101", "102", "103"])

        result = await self.service.reconcile("L1")

        self.assertEqual(result.outcome, ReconcileState.CONVERGED)
        self.assertEqual(self.bound_sequence(), seq_id)
        self.assertNotIn("create_sequence", self.vendor.calls)
        self.assertNotIn(f"set_items:{seq_id}", self.vendor.calls)

    async def test_push_failure_falls_back_to_nudge(self):
        self.vendor.push_fails = True
        result = await self.service.reconcile("L1")
        self.assertEqual(result.outcome, ReconcileState.CONVERGED)
        self.assertEqual(result.refresh_method, TOGGLE_NUDGE)
        refresh_step = next(s for s in result.steps if s.action == "refresh")
        self.assertIn("405", refresh_step.raw)

class TestDegraded(EngineTestCase):
    async def test_unlinked_location_makes_no_calls(self):
        result = await self.service.reconcile("L404")
        self.assertEqual(result.outcome, ReconcileState.DEGRADED)
        self.assertEqual(result.reason, "NotLinked")
        self.assertEqual(result.error.kind, "NotLinked")
        self.assertFalse(result.error.retryable)
        self.assertEqual(self.vendor.calls, [])
        self.assertIsNone(self.service.state.peek_snapshot("L404"))

    async def test_location_without_device(self):
        self.host.link("L2", None)
        result = await self.service.reconcile("L2")
        self.assertEqual(result.reason, "NotLinked")
        self.assertEqual(self.vendor.calls, [])

    async def test_placeholder_screenshot(self):
        self.vendor.shots["D1"] = [PLACEHOLDER_SHOT]
        result = await self.service.reconcile("L1")
        self.assertEqual(result.outcome, ReconcileState.DEGRADED)
        self.assertEqual(result.reason, "no-content-detected")
        self.assertEqual(result.error.kind, "NoContentDetected")
        self.assertTrue(result.error.retryable)
        self.assertEqual(actions(result).count("poll"), len(settings.PROOF_POLL_DELAYS_SECONDS) + 1)

    async def test_no_screenshot_is_proof_timeout(self):
        self.vendor.shots["D1"] = []
        result = await self.service.reconcile("L1")
        self.assertEqual(result.reason, "no-screenshot")
        self.assertEqual(result.error.kind, "ProofTimeout")

    async def test_device_ignores_bind(self):
        self.vendor.ignore_all_binds = True
        result = await self.service.reconcile("L1")
        self.assertEqual(result.outcome, ReconcileState.DEGRADED)
        self.assertEqual(result.reason, "BindMismatch")
        self.assertIsNotNone(result.error.raw)
        failed = [s for s in result.steps if s.action == "failed"]
        self.assertEqual(failed[0].state, ReconcileState.APPLYING)

    async def test_offline_device_skips_polling(self):
        self.vendor.add_screen("D1", screen_payload("layout", 77, online=False))
        result = await self.service.reconcile("L1")
        self.assertEqual(result.reason, DEVICE_OFFLINE)
        self.assertNotIn("get_screenshot:D1", self.vendor.calls)
        # Content is still applied for when it comes back
        self.assertEqual(self.vendor.sequence_media(self.bound_sequence()), ["101", "102", "103"])

    async def test_empty_baseline_writes_nothing(self):
        self.host.baseline = []
        self.host.set_ads("L1", ["201"])
        result = await self.service.reconcile("L1")
        self.assertEqual(result.reason, "NoBaselineContent")
        self.assertEqual(self.writes(), [])

    async def test_rejected_item_write_carries_raw(self):
        self.vendor.fail_item_writes = True
        result = await self.service.reconcile("L1")
        self.assertEqual(result.reason, "VendorRejected")
        self.assertIn("invalid media id", result.error.raw)

    async def test_failures_are_counted(self):
        self.vendor.shots["D1"] = [PLACEHOLDER_SHOT]
        await self.service.reconcile("L1")
        await self.service.reconcile("L1")
        snap = self.service.state.peek_snapshot("L1")
        self.assertEqual(snap.consecutive_failures, 2)
        self.assertEqual(snap.last_outcome, ReconcileState.DEGRADED)

class TestConcurrency(EngineTestCase):
    async def test_same_location_attempts_are_serialized(self):
        self.vendor.write_delay = 0.01
        self.host.set_ads("L1", ["201"], ["202"])

        results = await asyncio.gather(self.service.reconcile("L1"), self.service.reconcile("L1"))

        first, second = sorted(results, key=lambda r: r.started_at)
        self.assertLessEqual(first.finished_at, second.started_at)
        self.assertTrue(first.converged and second.converged)
        seq_id = self.bound_sequence()
        self.assertEqual(self.vendor.sequence_media(seq_id), second.desired.media_ids())
        self.assertEqual(self.vendor.calls.count("create_sequence"), 1)

    async def test_lock_wait_timeout(self):
        settings.LOCK_WAIT_TIMEOUT_SECONDS = 0.05
        async with self.service.locks.hold("L1"):
            result = await self.service.reconcile("L1")
        self.assertEqual(result.outcome, ReconcileState.DEGRADED)
        self.assertEqual(result.reason, "ConcurrentModification")
        self.assertEqual(self.vendor.calls, [])

    async def test_sweep_summary(self):
        self.host.link("L2", None)
        summary = await self.service.sweep()
        self.assertEqual(summary["locations"], 2)
        self.assertEqual(summary["converged"], 1)
        self.assertEqual(summary["reasons"], {"NotLinked": 1})
        self.assertGreater(self.service.state.state.last_successful_sweep, 0)

class TestForceReset(EngineTestCase):
    async def test_reset_then_full_content(self):
        self.host.set_ads("L1", ["201"])

        result = await self.service.force_reset("L1")

        self.assertEqual(result.outcome, ReconcileState.CONVERGED)
        reset_steps = [s for s in result.steps if s.state == ReconcileState.RESETTING]
        set_items = next(s for s in reset_steps if s.action == "set-items")
        self.assertEqual(set_items.after, ["101", "102", "103"])
        self.assertEqual(self.vendor.sequence_media(self.bound_sequence()), ["101", "102", "103", "201"])

    async def test_reset_from_foreign_sequence(self):
        foreign = self.vendor.add_sequence("Someone else's playlist", ["999"])
        self.vendor.add_screen("D1", screen_payload("playlist", int(foreign)))

        result = await self.service.force_reset("L1")

        self.assertEqual(result.outcome, ReconcileState.CONVERGED)
        self.assertNotEqual(self.bound_sequence(), foreign)
        self.assertEqual(self.vendor.sequence_media(foreign), ["999"])

class TestAppliedConfigChecks(unittest.TestCase):
    def test_drift_after_write(self):
        config = RemoteDeviceConfig(
            device_id="D1", source_kind=SourceKind.SEQUENCE, source_id="5", item_count=1,
            items=[ContentItem(media_id="999", duration_seconds=10, position=0)],
        )
        reason, error = check_applied_config(config, "5", ["101"])
        self.assertEqual(reason, SEQUENCE_DRIFTED)
        self.assertEqual(error.kind, "ConcurrentModification")

    def test_clean_config(self):
        config = RemoteDeviceConfig(
            device_id="D1", source_kind=SourceKind.SEQUENCE, source_id="5", item_count=1,
            items=[ContentItem(media_id="101", duration_seconds=10, position=0)],
        )
        self.assertIsNone(check_applied_config(config, "5", ["101"]))

if __name__ == '__main__':
    unittest.main()
