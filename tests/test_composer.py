import unittest

from fakes import FakeHost, FakeVendor, fast_settings
from screensync.composer import DesiredStateComposer, TemplateBaselineProvider, build_desired_state
from screensync.config import settings
from screensync.errors import NoBaselineContent
from screensync.models import ApprovedAd, BaselineItem, ItemTag
from screensync.reader import RemoteStateReader

class TestBuildDesiredState(unittest.TestCase):
    def setUp(self):
        fast_settings()

    def test_baseline_first_and_duplicates_dropped(self):
        baseline = [BaselineItem(media_id="101"), BaselineItem(media_id="102")]
        ads = [ApprovedAd(media_id="102"), ApprovedAd(media_id="201"), ApprovedAd(media_id="201"), ApprovedAd(media_id="202")]

        desired = build_desired_state("L1", baseline, ads)

        self.assertEqual(desired.media_ids(), ["101", "102", "201", "202"])
        self.assertEqual(desired.baseline_count, 2)
        self.assertEqual(desired.ads_count, 2)
        self.assertEqual(desired.ads_dropped, 2)
        self.assertEqual(desired.items[1].tag, ItemTag.BASELINE)
        self.assertEqual(desired.items[2].tag, ItemTag.AD)
        self.assertEqual([i.position for i in desired.items], [0, 1, 2, 3])

    def test_invalid_durations_get_default(self):
        desired = build_desired_state("L1", [BaselineItem(media_id="1", duration_seconds=0)],
                                      [ApprovedAd(media_id="2", duration_seconds=None)])
        self.assertEqual([i.duration_seconds for i in desired.items], [10, 10])

class TestComposer(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        fast_settings()
        self.host = FakeHost(baseline=["101", "102", "103"])
        self.composer = DesiredStateComposer(self.host, self.host)

    async def test_inactive_ads_skipped_and_capped_by_slots(self):
        self.host.ads["L1"] = [[
            ApprovedAd(media_id="201"),
            ApprovedAd(media_id="202", active=False),
            ApprovedAd(media_id="203"),
            ApprovedAd(media_id="204"),
        ]]
        self.host.slots["L1"] = 2

        desired = await self.composer.compose("L1")

        self.assertEqual(desired.media_ids(), ["101", "102", "103", "201", "203"])

    async def test_global_ad_cap_without_contract(self):
        settings.MAX_ADS_PER_SCREEN = 1
        self.host.set_ads("L1", ["201", "202"])
        desired = await self.composer.compose("L1")
        self.assertEqual(desired.ads_count, 1)

    async def test_baseline_cap(self):
        settings.BASELINE_MAX_ITEMS = 2
        desired = await self.composer.compose("L1")
        self.assertEqual(desired.media_ids(), ["101", "102"])

    async def test_empty_baseline_raises(self):
        self.host.baseline = []
        self.host.set_ads("L1", ["201"])
        with self.assertRaises(NoBaselineContent):
            await self.composer.compose("L1")

    async def test_empty_baseline_uses_fallback(self):
        self.host.baseline = []
        settings.BASELINE_FALLBACK_MEDIA_IDS = ["900"]
        desired = await self.composer.compose("L1")
        self.assertEqual(desired.media_ids(), ["900"])
        self.assertEqual(desired.baseline_count, 1)

class TestTemplateBaseline(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        fast_settings()
        self.vendor = FakeVendor()
        self.reader = RemoteStateReader(self.vendor)

    async def test_reads_template_sequence(self):
        template_id = self.vendor.add_sequence("Baseline template", ["11", "12"])
        provider = TemplateBaselineProvider(self.reader, template_id)
        items = await provider.get_baseline_items()
        self.assertEqual([i.media_id for i in items], ["11", "12"])
        self.assertEqual(items[0].duration_seconds, 10)

    async def test_missing_template_is_empty(self):
        provider = TemplateBaselineProvider(self.reader, "999")
        self.assertEqual(await provider.get_baseline_items(), [])

if __name__ == '__main__':
    unittest.main()
