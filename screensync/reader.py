import logging
from typing import Optional

from .models import ContentSequence, RemoteDeviceConfig, RemoteSnapshot, SourceKind
from .normalize import extract_screenshot_url, normalize_screen, normalize_sequence

logger = logging.getLogger(__name__)

class RemoteStateReader:
    """Fetches device state from the vendor and hands back normalized models only."""

    def __init__(self, vendor):
        self.vendor = vendor

    async def read_config(self, device_id: str) -> RemoteDeviceConfig:
        raw = await self.vendor.get_screen(device_id)
        config = normalize_screen(device_id, raw)
        if config.source_kind == SourceKind.SEQUENCE and config.source_id:
            seq = await self.read_sequence(config.source_id)
            if seq is None:
                config.warnings.append(f"Bound sequence {config.source_id} does not exist")
                config.item_count = 0
            else:
                config.items = seq.items
                config.item_count = len(seq.items)
        for w in config.warnings:
            logger.debug(f"Device {device_id}: {w}")
        return config

    async def read_sequence(self, sequence_id: str) -> Optional[ContentSequence]:
        raw = await self.vendor.get_sequence(sequence_id)
        if raw is None:
            return None
        return normalize_sequence(sequence_id, raw)

    async def read(self, device_id: str, sequence_id: Optional[str]) -> RemoteSnapshot:
        config = await self.read_config(device_id)
        sequence = None
        if sequence_id:
            # A bound but deleted sequence reads back as item_count 0 with no items
            if config.is_bound_to(sequence_id) and config.items:
                sequence = ContentSequence(sequence_id=sequence_id, items=config.items)
            else:
                sequence = await self.read_sequence(sequence_id)
                if sequence is None:
                    logger.warning(f"Known sequence {sequence_id} for device {device_id} is gone remotely")
        return RemoteSnapshot(config=config, sequence=sequence)

    async def read_screenshot_url(self, device_id: str, config: Optional[RemoteDeviceConfig] = None) -> Optional[str]:
        raw = await self.vendor.get_screenshot(device_id)
        url = extract_screenshot_url(raw) if raw is not None else None
        if url is None and config is not None:
            url = config.screenshot_url
        return url
