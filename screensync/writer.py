import asyncio
import logging
from typing import Dict, List, Tuple

from .config import settings
from .errors import BindMismatch, VendorRejected
from .models import ContentItem, ContentSequence, RemoteDeviceConfig
from .normalize import extract_id, normalize_sequence
from .reader import RemoteStateReader

logger = logging.getLogger(__name__)

def sequence_name(location_id: str) -> str:
    """Stable key for a location's sequence; create() is idempotent on it."""
    return f"{settings.SEQUENCE_NAME_PREFIX} | {location_id}"

def _wire_id(value: str):
    return int(value) if value.isdigit() else value

def items_payload(items: List[ContentItem]) -> List[Dict]:
    return [
        {
            "id": _wire_id(item.media_id),
            "type": "media",
            "duration": item.duration_seconds,
            "priority": pos + 1,
        }
        for pos, item in enumerate(items)
    ]

def bind_payload(sequence_id: str) -> Dict:
    return {"screen_content": {"source_type": "playlist", "source_id": _wire_id(sequence_id)}}

def legacy_bind_payload(sequence_id: str) -> Dict:
    # Older firmware/API versions only honour the top-level default playlist fields
    return {"default_playlist_type": "playlist", "default_playlist": _wire_id(sequence_id)}

class ContentSequenceWriter:
    def __init__(self, vendor, reader: RemoteStateReader, directory):
        self.vendor = vendor
        self.reader = reader
        self.directory = directory

    async def create(self, location_id: str) -> Tuple[ContentSequence, bool]:
        """Create-or-return the location's sequence. Returns (sequence, created)."""
        name = sequence_name(location_id)
        existing = await self.vendor.find_sequences_by_name(name)
        if existing:
            if len(existing) > 1:
                ids = [extract_id(e.get("id")) for e in existing]
                logger.warning(f"Found {len(existing)} sequences named '{name}': {ids}, using the lowest id")
                existing.sort(key=lambda e: (len(str(e.get("id"))), str(e.get("id"))))
            seq_id = extract_id(existing[0].get("id"))
            # Search results may omit items; fetch the full sequence
            seq = await self.reader.read_sequence(seq_id)
            if seq is None:
                seq = normalize_sequence(seq_id, existing[0])
            created = False
        else:
            raw = await self.vendor.create_sequence(name)
            seq_id = extract_id(raw.get("id"))
            seq = normalize_sequence(seq_id, raw)
            created = True
            logger.info(f"Created sequence {seq_id} '{name}' for location {location_id}")
        seq.name = name

        await self.directory.set_sequence_id(location_id, seq.sequence_id)
        return seq, created

    async def set_items(self, sequence_id: str, items: List[ContentItem]):
        """Full replace of the sequence contents."""
        if not items:
            raise VendorRejected(f"Refusing to write an empty item list to sequence {sequence_id}")
        await self.vendor.set_sequence_items(sequence_id, items_payload(items))
        logger.info(f"Sequence {sequence_id}: wrote {len(items)} items")

    async def _write_and_confirm(self, device_id: str, sequence_id: str, payload: Dict) -> RemoteDeviceConfig:
        await self.vendor.patch_screen(device_id, payload)
        if settings.BIND_READBACK_DELAY_SECONDS > 0:
            await asyncio.sleep(settings.BIND_READBACK_DELAY_SECONDS)
        return await self.reader.read_config(device_id)

    async def bind_device(self, device_id: str, sequence_id: str) -> Tuple[RemoteDeviceConfig, int]:
        """
        Point the device's content source at the sequence and confirm by
        read-back; the vendor accepts some malformed payloads with a 200 and
        ignores them. Returns (confirmed config, attempts used).
        """
        config = await self._write_and_confirm(device_id, sequence_id, bind_payload(sequence_id))
        if config.is_bound_to(sequence_id):
            return config, 1

        logger.warning(
            f"Device {device_id} ignored bind to {sequence_id} "
            f"(reads back {config.source_kind.value}:{config.source_id}), retrying with legacy payload"
        )
        config = await self._write_and_confirm(device_id, sequence_id, legacy_bind_payload(sequence_id))
        if config.is_bound_to(sequence_id):
            return config, 2

        raise BindMismatch(
            f"Device {device_id} still reports {config.source_kind.value}:{config.source_id} "
            f"after binding to sequence {sequence_id}",
            raw=str(config.summary()),
        )

    async def rewrite_binding(self, device_id: str, sequence_id: str):
        """Unconfirmed re-issue of the current bind, used to nudge a re-pull."""
        await self.vendor.patch_screen(device_id, bind_payload(sequence_id))
