import logging
import time
from typing import Dict, List, Optional, Tuple

from .config import settings
from .errors import NotLinked, ReconcileError
from .models import (
    DeviceIdentity, DeviceStatus, HealthStatus, ItemTag, LocationSnapshot,
    ProofOfPlay, ReconcileState, RemoteDeviceConfig, SourceKind,
)
from .reader import RemoteStateReader
from .resolver import IdentityResolver
from .state import StateManager

logger = logging.getLogger(__name__)

def _device_status(online: Optional[bool]) -> DeviceStatus:
    if online is None:
        return DeviceStatus.UNKNOWN
    return DeviceStatus.ONLINE if online else DeviceStatus.OFFLINE

def count_tags(config: RemoteDeviceConfig, item_tags: Dict[str, ItemTag]) -> Tuple[int, int]:
    """(baseline, ads) among the items the device is bound to."""
    baseline = ads = 0
    for item in config.items:
        tag = item_tags.get(item.media_id, ItemTag.UNKNOWN)
        if tag == ItemTag.BASELINE:
            baseline += 1
        elif tag == ItemTag.AD:
            ads += 1
    return baseline, ads

def build_hints(status: HealthStatus, config: Optional[RemoteDeviceConfig]) -> List[str]:
    hints = []
    if not status.linked:
        return ["Location is not linked to a device; link it before reconciling"]
    if status.status == DeviceStatus.OFFLINE:
        hints.append("Device is offline; check power and network at the location")
    if config is None:
        hints.append("No device state recorded yet; run a reconcile")
        return hints
    if status.sequence_id is None:
        hints.append("Location has no content sequence yet; run a reconcile")
    elif not config.is_bound_to(status.sequence_id):
        if config.source_kind != SourceKind.SEQUENCE:
            hints.append(f"Device plays a {config.source_kind.value} instead of its sequence; reconcile to restore")
        else:
            hints.append(f"Device bound to sequence {config.source_id} instead of {status.sequence_id}; reconcile to restore")
    elif status.item_count == 0:
        hints.append("Content sequence is empty; reconcile to seed baseline content")
    if status.canonical_mode and status.item_count > 0 and status.ads_count == 0:
        hints.append("No approved ads for this location")
    if config.vendor_reports_empty:
        hints.append("Device reports it has no content to play")
    if status.last_proof and status.last_proof.no_content:
        hints.append("Last screenshot looks empty (placeholder-sized image)")
    if status.last_outcome == ReconcileState.DEGRADED and status.last_reason:
        hints.append(f"Last reconcile degraded: {status.last_reason}")
    return hints

class HealthReporter:
    """Read-only status for dashboards. Never writes to the vendor."""

    def __init__(self, resolver: IdentityResolver, reader: RemoteStateReader, state: StateManager):
        self.resolver = resolver
        self.reader = reader
        self.state = state
        self._cache: Dict[str, Tuple[float, RemoteDeviceConfig]] = {}

    def invalidate(self, location_id: Optional[str] = None):
        if location_id:
            self._cache.pop(location_id, None)
        else:
            self._cache.clear()

    async def _live_config(self, identity: DeviceIdentity) -> Tuple[Optional[RemoteDeviceConfig], str]:
        cached = self._cache.get(identity.location_id)
        if cached and cached[0] > time.time():
            return cached[1], "cache"
        try:
            config = await self.reader.read_config(identity.device_id)
        except ReconcileError as e:
            logger.warning(f"Live status read for location {identity.location_id} failed: {e}")
            return None, "state"
        self._cache[identity.location_id] = (time.time() + settings.STATUS_CACHE_TTL_SECONDS, config)
        return config, "live"

    async def get_canonical_status(self, location_id: str, live: bool = False) -> HealthStatus:
        snap: Optional[LocationSnapshot] = self.state.peek_snapshot(location_id)
        directory_error: Optional[ReconcileError] = None
        try:
            identity = await self.resolver.resolve(location_id)
        except NotLinked:
            status = HealthStatus(location_id=location_id, linked=False, status=DeviceStatus.UNLINKED, source="unlinked")
            status.hints = build_hints(status, None)
            return status
        except ReconcileError as e:
            logger.warning(f"Directory lookup for location {location_id} failed: {e}")
            if snap is None or snap.device is None or not snap.device.device_id:
                return HealthStatus(
                    location_id=location_id,
                    linked=False,
                    hints=[f"Location directory unavailable ({e.kind}); status unknown"],
                )
            directory_error = e
            identity = DeviceIdentity(location_id=location_id, device_id=snap.device.device_id,
                                      sequence_id=snap.sequence_id)

        config = snap.last_config if snap else None
        source = "state"
        if live and directory_error is None:
            live_config, source = await self._live_config(identity)
            if live_config is not None:
                config = live_config
            else:
                source = "state"

        sequence_id = identity.sequence_id or (snap.sequence_id if snap else None)
        proof: Optional[ProofOfPlay] = None
        if snap and snap.device:
            proof = snap.device.last_screenshot

        status = HealthStatus(
            location_id=location_id,
            linked=True,
            device_id=identity.device_id,
            sequence_id=sequence_id,
            last_proof=proof,
            source=source,
        )
        if snap:
            status.last_outcome = snap.last_outcome
            status.last_reason = snap.last_reason
            status.last_reconciled_at = snap.last_attempt_at or None

        if config is not None:
            status.status = _device_status(config.online)
            status.source_kind = config.source_kind
            status.canonical_mode = config.is_bound_to(sequence_id) and bool(config.item_count)
            status.item_count = config.item_count or 0
            if config.is_bound_to(sequence_id):
                tags = snap.item_tags if snap else {}
                status.baseline_count, status.ads_count = count_tags(config, tags)

        status.hints = build_hints(status, config)
        if directory_error is not None:
            status.hints.append(f"Location directory unavailable ({directory_error.kind}); showing last recorded state")
        return status
