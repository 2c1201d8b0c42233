import asyncio
import logging
from typing import List, Optional

from .config import settings
from .errors import ReconcileError
from .writer import ContentSequenceWriter

logger = logging.getLogger(__name__)

PUSH = "push"
TOGGLE_NUDGE = "toggle-nudge"
SKIPPED = "skipped"
FAILED = "failed"

class RefreshOutcome:
    def __init__(self, method: str, errors: Optional[List[ReconcileError]] = None):
        self.method = method
        self.errors = errors or []

    @property
    def ok(self) -> bool:
        return self.method in (PUSH, TOGGLE_NUDGE, SKIPPED)

class DeviceRefreshTrigger:
    def __init__(self, vendor, writer: ContentSequenceWriter):
        self.vendor = vendor
        self.writer = writer

    async def trigger(self, device_id: str, sequence_id: str) -> RefreshOutcome:
        errors = []
        try:
            await self.vendor.push_screen(device_id)
            logger.info(f"Device {device_id}: push accepted")
            return RefreshOutcome(PUSH)
        except ReconcileError as e:
            logger.warning(f"Device {device_id}: push failed ({e}), falling back to toggle nudge")
            errors.append(e)

        try:
            await self.writer.rewrite_binding(device_id, sequence_id)
        except ReconcileError as e:
            logger.error(f"Device {device_id}: toggle nudge failed: {e}")
            errors.append(e)
            return RefreshOutcome(FAILED, errors)

        if settings.REFRESH_SETTLE_SECONDS > 0:
            await asyncio.sleep(settings.REFRESH_SETTLE_SECONDS)
        logger.info(f"Device {device_id}: toggle nudge issued")
        return RefreshOutcome(TOGGLE_NUDGE, errors)
