import logging
from typing import List, Optional

from .config import settings
from .errors import NoBaselineContent
from .models import ApprovedAd, BaselineItem, ContentItem, DesiredState, ItemTag
from .reader import RemoteStateReader

logger = logging.getLogger(__name__)

def _duration(value: Optional[int]) -> int:
    try:
        d = int(value)
    except (TypeError, ValueError):
        return settings.DEFAULT_ITEM_DURATION_SECONDS
    return d if d > 0 else settings.DEFAULT_ITEM_DURATION_SECONDS

class TemplateBaselineProvider:
    """Baseline items read from a shared template sequence on the vendor side."""

    def __init__(self, reader: RemoteStateReader, template_sequence_id: Optional[str] = None):
        self.reader = reader
        self.template_sequence_id = template_sequence_id

    async def get_baseline_items(self) -> List[BaselineItem]:
        template_id = self.template_sequence_id or settings.BASELINE_TEMPLATE_SEQUENCE_ID
        if not template_id:
            logger.warning("No baseline template sequence configured")
            return []
        seq = await self.reader.read_sequence(template_id)
        if seq is None:
            logger.error(f"Baseline template sequence {template_id} not found")
            return []
        return [BaselineItem(media_id=i.media_id, duration_seconds=i.duration_seconds) for i in seq.items]

class DesiredStateComposer:
    def __init__(self, baseline_provider, ads_provider):
        self.baseline_provider = baseline_provider
        self.ads_provider = ads_provider

    async def baseline(self) -> List[BaselineItem]:
        items = await self.baseline_provider.get_baseline_items()
        if not items and settings.BASELINE_FALLBACK_MEDIA_IDS:
            logger.warning("Baseline template is empty, using configured fallback media")
            items = [BaselineItem(media_id=m) for m in settings.BASELINE_FALLBACK_MEDIA_IDS]
        return items[:settings.BASELINE_MAX_ITEMS]

    async def approved_ads(self, location_id: str) -> List[ApprovedAd]:
        ads = [a for a in await self.ads_provider.get_approved_ads(location_id) if a.active]
        slots = await self.ads_provider.get_ad_slot_count(location_id)
        limit = slots if slots is not None else settings.MAX_ADS_PER_SCREEN
        if len(ads) > limit:
            logger.info(f"Location {location_id}: {len(ads)} approved ads, capping to {limit} slots")
        return ads[:max(0, limit)]

    async def compose(self, location_id: str) -> DesiredState:
        baseline = await self.baseline()
        if not baseline:
            raise NoBaselineContent("No baseline items available; a sequence would be empty")
        ads = await self.approved_ads(location_id)
        return build_desired_state(location_id, baseline, ads)

def build_desired_state(location_id: str, baseline: List[BaselineItem], ads: List[ApprovedAd]) -> DesiredState:
    """Baseline first, then ads; duplicate media ids keep their first position."""
    seen = set()
    items: List[ContentItem] = []
    baseline_count = ads_count = dropped = 0

    for b in baseline:
        if b.media_id in seen:
            continue
        seen.add(b.media_id)
        items.append(ContentItem(media_id=b.media_id, duration_seconds=_duration(b.duration_seconds),
                                 position=len(items), tag=ItemTag.BASELINE))
        baseline_count += 1

    for a in ads:
        if a.media_id in seen:
            dropped += 1
            continue
        seen.add(a.media_id)
        items.append(ContentItem(media_id=a.media_id, duration_seconds=_duration(a.duration_seconds),
                                 position=len(items), tag=ItemTag.AD))
        ads_count += 1

    return DesiredState(
        location_id=location_id,
        items=items,
        baseline_count=baseline_count,
        ads_count=ads_count,
        ads_dropped=dropped,
    )
