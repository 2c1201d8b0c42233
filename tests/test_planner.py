import unittest

from fakes import fast_settings
from screensync.composer import build_desired_state
from screensync.models import ApprovedAd, BaselineItem, ContentItem, ContentSequence, RemoteDeviceConfig, SourceKind
from screensync.planner import CREATE_SEQUENCE, REBIND_DEVICE, REPLACE_ITEMS, SEED_BASELINE, plan_actions

def sequence(seq_id, media_ids, duration=10):
    return ContentSequence(
        sequence_id=seq_id,
        items=[ContentItem(media_id=m, duration_seconds=duration, position=i) for i, m in enumerate(media_ids)],
    )

class TestPlanner(unittest.TestCase):
    def setUp(self):
        fast_settings()
        self.desired = build_desired_state(
            "L1", [BaselineItem(media_id="101"), BaselineItem(media_id="102")], [ApprovedAd(media_id="201")]
        )
        self.bound = RemoteDeviceConfig(device_id="D1", source_kind=SourceKind.SEQUENCE, source_id="500")
        self.on_layout = RemoteDeviceConfig(device_id="D1", source_kind=SourceKind.LAYOUT, source_id="77")

    def test_no_sequence(self):
        plan = plan_actions(self.desired, self.on_layout, None)
        self.assertEqual(plan.actions(), [CREATE_SEQUENCE, REPLACE_ITEMS, REBIND_DEVICE])

    def test_empty_sequence_is_seeded(self):
        plan = plan_actions(self.desired, self.bound, sequence("500", []))
        self.assertEqual(plan.actions(), [SEED_BASELINE])
        self.assertTrue(plan.writes_items)

    def test_canonical_is_noop(self):
        plan = plan_actions(self.desired, self.bound, sequence("500", ["101", "102", "201"]))
        self.assertTrue(plan.is_noop)

    def test_durations_are_not_compared(self):
        plan = plan_actions(self.desired, self.bound, sequence("500", ["101", "102", "201"], duration=30))
        self.assertTrue(plan.is_noop)

    def test_order_matters(self):
        plan = plan_actions(self.desired, self.bound, sequence("500", ["102", "101", "201"]))
        self.assertEqual(plan.actions(), [REPLACE_ITEMS])

    def test_layout_needs_rebind_only(self):
        plan = plan_actions(self.desired, self.on_layout, sequence("500", ["101", "102", "201"]))
        self.assertEqual(plan.actions(), [REBIND_DEVICE])
        self.assertTrue(any("layout" in r for r in plan.reasons))

    def test_bound_to_other_sequence(self):
        other = RemoteDeviceConfig(device_id="D1", source_kind=SourceKind.SEQUENCE, source_id="499")
        plan = plan_actions(self.desired, other, sequence("500", ["101"]))
        self.assertEqual(plan.actions(), [REPLACE_ITEMS, REBIND_DEVICE])

if __name__ == '__main__':
    unittest.main()
