import json
import logging
import os
import time
import fcntl
from pathlib import Path
from typing import Optional
from .models import (
    DesiredState, LocationSnapshot, ProofOfPlay, ReconcileState,
    ReconciliationResult, RemoteDeviceConfig, ScreenDevice, SyncState,
)
from .config import settings

logger = logging.getLogger(__name__)

class StateManager:
    def __init__(self, path: str):
        self.path = Path(path)
        self.state = SyncState()
        self.read_only = False
        self._load()

    def _load(self):
        if not settings.PERSIST_ENABLED:
            return
        if not self.path.exists():
            logger.info(f"No state file found at {self.path}, creating new.")
            return

        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
                self.state = SyncState(**data)
        except Exception as e:
            logger.error(f"Failed to load state: {e}. Starting fresh.", exc_info=True)

    def save(self):
        if not settings.PERSIST_ENABLED or self.read_only:
            return

        tmp_path = self.path.with_suffix('.tmp')
        try:
            # Atomic write pattern with locking
            with open(tmp_path, 'w') as f:
                try:
                    fcntl.flock(f, fcntl.LOCK_EX | fcntl.LOCK_NB)
                except BlockingIOError:
                    logger.warning("Could not acquire lock for state save. Skipping save cycle.")
                    return

                try:
                    json.dump(self.state.model_dump(mode="json"), f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                finally:
                    fcntl.flock(f, fcntl.LOCK_UN)

            os.rename(tmp_path, self.path)

        except OSError as e:
            logger.error(f"Failed to save state to {self.path}: {e}")
            # If we can't write, switch to read-only to be safe for this run
            self.read_only = True

    def get_snapshot(self, location_id: str) -> LocationSnapshot:
        if location_id not in self.state.locations:
            self.state.locations[location_id] = LocationSnapshot(location_id=location_id)
        return self.state.locations[location_id]

    def peek_snapshot(self, location_id: str) -> Optional[LocationSnapshot]:
        """Read-only lookup; never creates an entry."""
        return self.state.locations.get(location_id)

    def previous_screenshot_hash(self, location_id: str) -> Optional[str]:
        snap = self.peek_snapshot(location_id)
        if snap and snap.device and snap.device.last_screenshot:
            return snap.device.last_screenshot.hash
        return None

    def record_desired(self, location_id: str, desired: DesiredState):
        snap = self.get_snapshot(location_id)
        snap.item_tags = {i.media_id: i.tag for i in desired.items}

    def record_config(self, location_id: str, device_id: str, config: RemoteDeviceConfig):
        snap = self.get_snapshot(location_id)
        snap.last_config = config
        if snap.device is None or snap.device.device_id != device_id:
            snap.device = ScreenDevice(location_id=location_id, device_id=device_id)
        snap.device.online = config.online
        if config.last_seen_at:
            snap.device.last_seen_at = config.last_seen_at

    def record_proof(self, location_id: str, proof: ProofOfPlay):
        snap = self.get_snapshot(location_id)
        if snap.device is None:
            snap.device = ScreenDevice(location_id=location_id)
        snap.device.last_screenshot = proof

    def record_result(self, result: ReconciliationResult, sequence_id: Optional[str] = None):
        snap = self.get_snapshot(result.location_id)
        now = time.time()
        snap.last_outcome = result.outcome
        snap.last_reason = result.reason
        snap.last_attempt_at = now
        if sequence_id:
            snap.sequence_id = sequence_id
        if result.outcome == ReconcileState.CONVERGED:
            snap.last_converged_at = now
            snap.consecutive_failures = 0
        else:
            snap.consecutive_failures += 1
