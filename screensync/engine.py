import asyncio
import logging
import time
import uuid
from typing import Any, Dict, List, Optional, Tuple

from .composer import DesiredStateComposer, TemplateBaselineProvider, build_desired_state
from .config import settings
from .errors import (
    BindMismatch, ConcurrentModification, NoBaselineContent, NoContentDetected,
    ProofTimeout, ReconcileError,
)
from .health import HealthReporter
from .locks import LocationLocks
from .models import (
    DeviceIdentity, ErrorInfo, HealthStatus, ReconcileState, ReconciliationResult,
    RemoteDeviceConfig,
)
from .planner import SEED_BASELINE, REPLACE_ITEMS, items_differ, plan_actions
from .reader import RemoteStateReader
from .refresh import SKIPPED, DeviceRefreshTrigger
from .resolver import IdentityResolver
from .state import StateManager
from .verifier import NO_CONTENT, ProofVerifier
from .writer import ContentSequenceWriter

logger = logging.getLogger(__name__)

SOURCE_NOT_SEQUENCE = "source-not-sequence"
SEQUENCE_EMPTY = "sequence-empty"
SEQUENCE_DRIFTED = "sequence-drifted"
VENDOR_EMPTY = "vendor-reports-empty-content"
DEVICE_OFFLINE = "device-offline"

def new_attempt_id() -> str:
    return f"rc-{uuid.uuid4().hex[:10]}"

def _trace_field(config: RemoteDeviceConfig, name: str) -> Optional[str]:
    trace = config.traces.get(name)
    return trace.raw_field if trace else None

def check_applied_config(config: RemoteDeviceConfig, sequence_id: str,
                         desired_ids: List[str]) -> Optional[Tuple[str, ReconcileError]]:
    """Post-apply checks that make screenshot polling pointless when they fail. Returns (reason, error)."""
    if not config.is_bound_to(sequence_id):
        return SOURCE_NOT_SEQUENCE, BindMismatch(
            f"Device reads back {config.source_kind.value}:{config.source_id}, expected sequence {sequence_id}",
            raw=str(config.summary()),
        )
    if not config.item_count:
        return SEQUENCE_EMPTY, NoContentDetected(
            f"Sequence {sequence_id} is empty on the device side", raw=str(config.summary())
        )
    remote_ids = [i.media_id for i in config.items]
    if remote_ids != desired_ids:
        return SEQUENCE_DRIFTED, ConcurrentModification(
            f"Sequence {sequence_id} items changed after write "
            f"(remote {len(remote_ids)}, desired {len(desired_ids)})",
            raw=str(remote_ids),
        )
    if config.vendor_reports_empty:
        return VENDOR_EMPTY, NoContentDetected(
            "Vendor reports the device has no content", raw=_trace_field(config, "vendor_reports_empty")
        )
    return None

class Attempt:
    def __init__(self, location_id: str):
        self.result = ReconciliationResult(attempt_id=new_attempt_id(), location_id=location_id)
        self.component = "resolver"
        self.identity: Optional[DeviceIdentity] = None

    @property
    def prefix(self) -> str:
        return f"[{self.result.attempt_id}]"

    def enter(self, state: ReconcileState, component: str):
        before = self.result.state
        self.result.state = state
        self.component = component
        self.result.log("reconciler", "transition", before=before.value, after=state.value)

    def log(self, action: str, before: Any = None, after: Any = None, raw: Optional[str] = None):
        self.result.log(self.component, action, before=before, after=after, raw=raw)

    def finish(self, outcome: ReconcileState, reason: Optional[str] = None, error: Optional[ReconcileError] = None):
        result = self.result
        if result.state != outcome:
            self.enter(outcome, "reconciler")
        result.outcome = outcome
        result.reason = reason
        if error is not None:
            result.error = ErrorInfo(kind=error.kind, message=error.message, retryable=error.retryable, raw=error.raw)
        result.finished_at = time.time()

class Reconciler:
    """
    One reconciliation attempt: INSPECTING -> PLAN -> APPLYING -> REFRESHING
    -> VERIFYING -> CONVERGED | DEGRADED. Each attempt starts from a fresh
    read, so a half-finished earlier attempt is simply re-planned.
    """
    def __init__(self, resolver: IdentityResolver, composer: DesiredStateComposer, reader: RemoteStateReader,
                 writer: ContentSequenceWriter, refresher: DeviceRefreshTrigger, verifier: ProofVerifier,
                 state: StateManager):
        self.resolver = resolver
        self.composer = composer
        self.reader = reader
        self.writer = writer
        self.refresher = refresher
        self.verifier = verifier
        self.state = state

    async def run(self, location_id: str, reset: bool = False) -> ReconciliationResult:
        attempt = Attempt(location_id)
        logger.info(f"{attempt.prefix} Reconciling location {location_id}{' with reset' if reset else ''}")
        try:
            await self._run(attempt, reset)
        except ReconcileError as e:
            logger.warning(f"{attempt.prefix} {attempt.component} failed: {e.kind}: {e.message}")
            attempt.log("failed", after=e.kind, raw=e.raw)
            attempt.finish(ReconcileState.DEGRADED, reason=e.kind, error=e)
        except Exception as e:
            logger.error(f"{attempt.prefix} Unexpected error in {attempt.component}: {e}", exc_info=True)
            attempt.log("failed", after="InternalError", raw=repr(e))
            attempt.finish(ReconcileState.DEGRADED, reason="internal-error")
            attempt.result.error = ErrorInfo(kind="InternalError", message=str(e), retryable=True)

        result = attempt.result
        if attempt.identity is not None:
            self.state.record_result(result, attempt.identity.sequence_id)
            self.state.save()
        logger.info(
            f"{attempt.prefix} Location {location_id}: {result.outcome.value}"
            + (f" ({result.reason})" if result.reason else "")
            + f" in {len(result.steps)} steps"
        )
        return result

    async def _run(self, attempt: Attempt, reset: bool):
        result = attempt.result
        location_id = result.location_id

        attempt.enter(ReconcileState.INSPECTING, "resolver")
        identity = await self.resolver.resolve(location_id)
        attempt.identity = identity
        attempt.log("resolve", after={"device_id": identity.device_id, "sequence_id": identity.sequence_id})

        if reset:
            await self._reset(attempt)
            attempt.enter(ReconcileState.INSPECTING, "composer")

        # 1. Inspect
        attempt.component = "composer"
        desired = await self.composer.compose(location_id)
        result.desired = desired
        self.state.record_desired(location_id, desired)
        attempt.log("compose", after={
            "baseline": desired.baseline_count, "ads": desired.ads_count,
            "dropped_duplicates": desired.ads_dropped, "items": desired.media_ids(),
        })

        attempt.component = "reader"
        snapshot = await self.reader.read(identity.device_id, identity.sequence_id)
        result.before = snapshot.config
        attempt.log("read", after={
            **snapshot.config.summary(),
            "sequence": snapshot.sequence.media_ids() if snapshot.sequence else None,
            "warnings": snapshot.config.warnings,
        })

        # 2. Plan
        attempt.enter(ReconcileState.PLAN, "planner")
        plan = plan_actions(desired, snapshot.config, snapshot.sequence)
        result.plan = plan.actions()
        attempt.log("plan", after={"actions": result.plan, "reasons": plan.reasons})
        if plan.is_noop:
            logger.info(f"{attempt.prefix} Device already matches desired state, verifying only")

        # 3. Apply
        attempt.enter(ReconcileState.APPLYING, "writer")
        sequence = snapshot.sequence
        wrote = False
        write_items = plan.writes_items
        if plan.create_sequence:
            sequence, created = await self.writer.create(location_id)
            identity.sequence_id = sequence.sequence_id
            attempt.log("create", after={"sequence_id": sequence.sequence_id, "created": created,
                                         "existing_items": sequence.media_ids()})
            wrote = wrote or created
            if not created and not items_differ(desired, sequence):
                write_items = False
                attempt.log("set-items", after="existing sequence already matches, skipped")

        if write_items:
            seeding = plan.seed_baseline or (sequence is not None and not sequence.items)
            action = SEED_BASELINE if seeding else REPLACE_ITEMS
            before_ids = sequence.media_ids() if sequence else []
            await self.writer.set_items(identity.sequence_id, desired.items)
            attempt.log(action, before=before_ids, after=desired.media_ids())
            wrote = True

        needs_bind = plan.rebind and not snapshot.config.is_bound_to(identity.sequence_id)
        if needs_bind:
            confirmed, tries = await self.writer.bind_device(identity.device_id, identity.sequence_id)
            attempt.log("bind", before=snapshot.config.summary(), after={**confirmed.summary(), "attempts": tries})
            wrote = True

        # 4. Refresh
        attempt.enter(ReconcileState.REFRESHING, "refresh")
        if wrote or settings.REFRESH_WHEN_UNCHANGED:
            refresh = await self.refresher.trigger(identity.device_id, identity.sequence_id)
            result.refresh_method = refresh.method
            attempt.log("refresh", after=refresh.method,
                        raw="; ".join(f"{e.kind}: {e.raw or e.message}" for e in refresh.errors) or None)
            if not refresh.ok:
                logger.warning(f"{attempt.prefix} Refresh failed, verifying anyway")
        else:
            result.refresh_method = SKIPPED
            attempt.log("refresh", after="skipped, nothing written")

        # 5. Verify
        attempt.enter(ReconcileState.VERIFYING, "reader")
        after = await self.reader.read_config(identity.device_id)
        result.after = after
        self.state.record_config(location_id, identity.device_id, after)
        attempt.log("read-back", before=snapshot.config.summary(), after=after.summary())

        problem = check_applied_config(after, identity.sequence_id, desired.media_ids())
        if problem is not None:
            reason, error = problem
            attempt.log("check", after=reason, raw=error.raw)
            attempt.finish(ReconcileState.DEGRADED, reason=reason, error=error)
            return
        if after.online is False:
            attempt.log("check", after=DEVICE_OFFLINE, raw=_trace_field(after, "online"))
            attempt.finish(ReconcileState.DEGRADED, reason=DEVICE_OFFLINE)
            return

        attempt.component = "verifier"
        previous_hash = self.state.previous_screenshot_hash(location_id)
        verification = await self.verifier.verify(identity.device_id, previous_hash, after)
        for obs in verification.observations:
            attempt.log("poll", after=obs.as_dict())
        if verification.proof is not None:
            result.proof = verification.proof
            self.state.record_proof(location_id, verification.proof)

        if verification.converged:
            attempt.finish(ReconcileState.CONVERGED)
            return

        if verification.reason == NO_CONTENT:
            error = NoContentDetected(f"Screenshot stayed placeholder-sized for {verification.polls} polls")
        else:
            error = ProofTimeout(f"No usable screenshot after {verification.polls} polls ({verification.reason})")
        attempt.finish(ReconcileState.DEGRADED, reason=verification.reason, error=error)

    async def _reset(self, attempt: Attempt):
        """Point the device at a baseline-only sequence before the normal flow runs."""
        identity = attempt.identity
        attempt.enter(ReconcileState.RESETTING, "composer")
        baseline = await self.composer.baseline()
        if not baseline:
            raise NoBaselineContent("Cannot reset without baseline items")
        minimal = build_desired_state(identity.location_id, baseline, []).items

        attempt.component = "writer"
        sequence, created = await self.writer.create(identity.location_id)
        identity.sequence_id = sequence.sequence_id
        attempt.log("create", after={"sequence_id": sequence.sequence_id, "created": created})
        await self.writer.set_items(sequence.sequence_id, minimal)
        attempt.log("set-items", before=sequence.media_ids(), after=[i.media_id for i in minimal])
        confirmed, tries = await self.writer.bind_device(identity.device_id, sequence.sequence_id)
        attempt.log("bind", after={**confirmed.summary(), "attempts": tries})

class ReconciliationService:
    """
    Entry point for operators, dashboards and the periodic sweep. Serializes
    attempts per location and bounds how many run at once.
    """
    def __init__(self, vendor, state_manager: StateManager, directory, ads_provider, baseline_provider=None):
        self.vendor = vendor
        self.state = state_manager
        self.directory = directory
        self.reader = RemoteStateReader(vendor)
        if baseline_provider is None:
            if settings.BASELINE_SOURCE == "template":
                baseline_provider = TemplateBaselineProvider(self.reader)
            else:
                baseline_provider = directory
        self.resolver = IdentityResolver(directory)
        self.composer = DesiredStateComposer(baseline_provider, ads_provider)
        self.writer = ContentSequenceWriter(vendor, self.reader, directory)
        self.refresher = DeviceRefreshTrigger(vendor, self.writer)
        self.verifier = ProofVerifier(vendor, self.reader)
        self.reconciler = Reconciler(self.resolver, self.composer, self.reader, self.writer,
                                     self.refresher, self.verifier, state_manager)
        self.health = HealthReporter(self.resolver, self.reader, state_manager)
        self.locks = LocationLocks()
        self.pool = asyncio.Semaphore(settings.MAX_CONCURRENT_RECONCILES)

    async def _attempt(self, location_id: str, reset: bool) -> ReconciliationResult:
        try:
            async with self.locks.hold(location_id, timeout=settings.LOCK_WAIT_TIMEOUT_SECONDS):
                async with self.pool:
                    return await self.reconciler.run(location_id, reset=reset)
        except ConcurrentModification as e:
            logger.warning(f"Location {location_id}: {e}")
            attempt = Attempt(location_id)
            attempt.component = "locks"
            attempt.log("acquire", after="timeout")
            attempt.finish(ReconcileState.DEGRADED, reason=e.kind, error=e)
            return attempt.result
        finally:
            self.health.invalidate(location_id)

    async def reconcile(self, location_id: str) -> ReconciliationResult:
        return await self._attempt(location_id, reset=False)

    async def force_reset(self, location_id: str) -> ReconciliationResult:
        return await self._attempt(location_id, reset=True)

    async def get_canonical_status(self, location_id: str, live: bool = False) -> HealthStatus:
        return await self.health.get_canonical_status(location_id, live=live)

    async def sweep(self) -> Dict[str, Any]:
        self.state.state.last_sweep_started = time.time()
        try:
            location_ids = await self.directory.list_location_ids()
        except ReconcileError as e:
            logger.error(f"Sweep could not list locations: {e}")
            return {"error": e.kind, "message": e.message}

        logger.info(f"Sweep over {len(location_ids)} locations")
        results = await asyncio.gather(*(self.reconcile(lid) for lid in location_ids))
        summary: Dict[str, Any] = {"locations": len(results), "converged": 0, "degraded": 0, "reasons": {}}
        for r in results:
            if r.converged:
                summary["converged"] += 1
            else:
                summary["degraded"] += 1
                summary["reasons"][r.reason] = summary["reasons"].get(r.reason, 0) + 1

        self.state.state.last_successful_sweep = time.time()
        self.state.save()
        logger.info(f"Sweep done: {summary['converged']} converged, {summary['degraded']} degraded")
        return summary
