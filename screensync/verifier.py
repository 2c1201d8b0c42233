import asyncio
import hashlib
import logging
import time
from typing import List, Optional

from .config import settings
from .errors import ReconcileError
from .models import ProofOfPlay, RemoteDeviceConfig
from .reader import RemoteStateReader
from .retry import BackoffSchedule, backoff_attempts

logger = logging.getLogger(__name__)

NO_SCREENSHOT = "no-screenshot"
NO_CONTENT = "no-content-detected"
PROOF_TIMEOUT = "proof-timeout"

def is_placeholder(data: bytes, digest: str) -> bool:
    """Best-effort: tiny images and known sentinel images mean 'nothing playing'."""
    if len(data) < settings.PLACEHOLDER_MAX_BYTES:
        return True
    return digest in set(h.lower() for h in settings.PLACEHOLDER_HASHES)

def build_proof(url: str, data: bytes, previous_hash: Optional[str]) -> ProofOfPlay:
    digest = hashlib.sha256(data).hexdigest()
    return ProofOfPlay(
        url=url,
        hash=digest,
        byte_size=len(data),
        captured_at=time.time(),
        no_content=is_placeholder(data, digest),
        changed=None if previous_hash is None else digest != previous_hash,
    )

class Observation:
    def __init__(self, poll: int, reason: Optional[str], proof: Optional[ProofOfPlay] = None, detail: Optional[str] = None):
        self.poll = poll
        self.reason = reason
        self.proof = proof
        self.detail = detail

    def as_dict(self):
        d = {"poll": self.poll, "reason": self.reason or "ok"}
        if self.proof:
            d.update(byte_size=self.proof.byte_size, hash=self.proof.hash, changed=self.proof.changed)
        if self.detail:
            d["detail"] = self.detail
        return d

class VerificationOutcome:
    def __init__(self, converged: bool, reason: Optional[str], proof: Optional[ProofOfPlay], observations: List[Observation]):
        self.converged = converged
        self.reason = reason
        self.proof = proof
        self.observations = observations

    @property
    def polls(self) -> int:
        return len(self.observations)

class ProofVerifier:
    def __init__(self, vendor, reader: RemoteStateReader):
        self.vendor = vendor
        self.reader = reader

    def schedule(self) -> BackoffSchedule:
        return BackoffSchedule(settings.PROOF_POLL_DELAYS_SECONDS, settings.PROOF_DEADLINE_SECONDS)

    async def capture(self, device_id: str, previous_hash: Optional[str], config: Optional[RemoteDeviceConfig] = None) -> Optional[ProofOfPlay]:
        url = await self.reader.read_screenshot_url(device_id, config)
        if not url:
            return None
        data = await self.vendor.fetch_image(url)
        return build_proof(url, data, previous_hash)

    async def _poll_once(self, number: int, device_id: str, previous_hash: Optional[str],
                         config: Optional[RemoteDeviceConfig], remaining: Optional[float]) -> Observation:
        try:
            proof = await asyncio.wait_for(self.capture(device_id, previous_hash, config), remaining)
        except asyncio.TimeoutError:
            return Observation(number, PROOF_TIMEOUT, detail="poll exceeded the proof deadline")
        except ReconcileError as e:
            return Observation(number, NO_SCREENSHOT, detail=f"{e.kind}: {e.message}")
        if proof is None:
            return Observation(number, NO_SCREENSHOT, detail="device exposes no screenshot url")
        if proof.no_content:
            return Observation(number, NO_CONTENT, proof, detail=f"{proof.byte_size} bytes looks like a placeholder")
        return Observation(number, None, proof)

    async def verify(self, device_id: str, previous_hash: Optional[str] = None,
                     config: Optional[RemoteDeviceConfig] = None) -> VerificationOutcome:
        """
        Poll for a plausible screenshot until the schedule or deadline runs
        out. An unchanged hash still counts as converged; it is just weaker
        evidence than a changed one.
        """
        observations: List[Observation] = []
        last_proof: Optional[ProofOfPlay] = None
        async for attempt in backoff_attempts(self.schedule()):
            obs = await self._poll_once(attempt.number + 1, device_id, previous_hash, config, attempt.remaining)
            observations.append(obs)
            if obs.proof is not None:
                last_proof = obs.proof
            if obs.reason is None:
                evidence = "changed" if obs.proof.changed else ("unchanged" if obs.proof.changed is False else "first capture")
                logger.info(f"Device {device_id}: proof on poll {obs.poll} ({obs.proof.byte_size} bytes, {evidence})")
                return VerificationOutcome(True, None, obs.proof, observations)
            logger.info(f"Device {device_id}: poll {obs.poll} inconclusive: {obs.reason} ({obs.detail})")

        reason = observations[-1].reason if observations else PROOF_TIMEOUT
        return VerificationOutcome(False, reason, last_proof, observations)
