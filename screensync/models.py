import time
from enum import Enum
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional

class ItemTag(str, Enum):
    BASELINE = "baseline"
    AD = "ad"
    UNKNOWN = "unknown"

class SourceKind(str, Enum):
    SEQUENCE = "sequence"
    LAYOUT = "layout"
    SCHEDULE = "schedule"
    NONE = "none"
    OTHER = "other"
    UNKNOWN = "unknown"

class ReconcileState(str, Enum):
    RESETTING = "RESETTING"
    INSPECTING = "INSPECTING"
    PLAN = "PLAN"
    APPLYING = "APPLYING"
    REFRESHING = "REFRESHING"
    VERIFYING = "VERIFYING"
    CONVERGED = "CONVERGED"
    DEGRADED = "DEGRADED"

class DeviceStatus(str, Enum):
    ONLINE = "ONLINE"
    OFFLINE = "OFFLINE"
    UNKNOWN = "UNKNOWN"
    UNLINKED = "UNLINKED"

# Collaborator payloads

class DeviceBinding(BaseModel):
    location_id: str
    device_id: Optional[str] = None
    sequence_id: Optional[str] = None

class ApprovedAd(BaseModel):
    media_id: str
    duration_seconds: Optional[int] = None
    active: bool = True

class BaselineItem(BaseModel):
    media_id: str
    duration_seconds: Optional[int] = None

# Core entities

class DeviceIdentity(BaseModel):
    location_id: str
    device_id: str
    sequence_id: Optional[str] = None

class ContentItem(BaseModel):
    media_id: str
    duration_seconds: int
    position: int
    tag: ItemTag = ItemTag.UNKNOWN

class ContentSequence(BaseModel):
    sequence_id: str
    name: Optional[str] = None
    items: List[ContentItem] = Field(default_factory=list)

    def media_ids(self) -> List[str]:
        return [i.media_id for i in self.items]

class DesiredState(BaseModel):
    location_id: str
    items: List[ContentItem]
    baseline_count: int = 0
    ads_count: int = 0
    ads_dropped: int = 0

    def media_ids(self) -> List[str]:
        return [i.media_id for i in self.items]

class FieldTrace(BaseModel):
    raw_field: Optional[str] = None
    raw_value: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)

class RemoteDeviceConfig(BaseModel):
    device_id: str
    name: Optional[str] = None
    online: Optional[bool] = None
    last_seen_at: Optional[str] = None
    source_kind: SourceKind = SourceKind.UNKNOWN
    source_id: Optional[str] = None
    item_count: Optional[int] = None
    items: List[ContentItem] = Field(default_factory=list)
    screenshot_url: Optional[str] = None
    vendor_reports_empty: Optional[bool] = None
    traces: Dict[str, FieldTrace] = Field(default_factory=dict)
    warnings: List[str] = Field(default_factory=list)
    fetched_at: float = Field(default_factory=time.time)

    def is_bound_to(self, sequence_id: Optional[str]) -> bool:
        return (
            sequence_id is not None
            and self.source_kind == SourceKind.SEQUENCE
            and self.source_id == sequence_id
        )

    def summary(self) -> Dict[str, Any]:
        return {
            "online": self.online,
            "source_kind": self.source_kind.value,
            "source_id": self.source_id,
            "item_count": self.item_count,
        }

class RemoteSnapshot(BaseModel):
    """Device config plus the location's own sequence (None when absent remotely)."""
    config: RemoteDeviceConfig
    sequence: Optional[ContentSequence] = None

class ProofOfPlay(BaseModel):
    url: Optional[str] = None
    hash: Optional[str] = None
    byte_size: int = 0
    captured_at: float = Field(default_factory=time.time)
    no_content: bool = False
    changed: Optional[bool] = None

class ScreenDevice(BaseModel):
    location_id: str
    device_id: Optional[str] = None
    online: Optional[bool] = None
    last_seen_at: Optional[str] = None
    last_screenshot: Optional[ProofOfPlay] = None

# Attempt results

class StepLog(BaseModel):
    state: ReconcileState
    component: str
    action: str
    before: Optional[Any] = None
    after: Optional[Any] = None
    raw: Optional[str] = None
    at: float = Field(default_factory=time.time)

class ErrorInfo(BaseModel):
    kind: str
    message: str
    retryable: bool = False
    raw: Optional[str] = None

class ReconciliationResult(BaseModel):
    attempt_id: str
    location_id: str
    state: ReconcileState = ReconcileState.INSPECTING
    outcome: Optional[ReconcileState] = None
    reason: Optional[str] = None
    error: Optional[ErrorInfo] = None
    steps: List[StepLog] = Field(default_factory=list)
    before: Optional[RemoteDeviceConfig] = None
    after: Optional[RemoteDeviceConfig] = None
    desired: Optional[DesiredState] = None
    plan: List[str] = Field(default_factory=list)
    refresh_method: Optional[str] = None
    proof: Optional[ProofOfPlay] = None
    started_at: float = Field(default_factory=time.time)
    finished_at: Optional[float] = None

    @property
    def converged(self) -> bool:
        return self.outcome == ReconcileState.CONVERGED

    def log(self, component: str, action: str, before: Any = None, after: Any = None, raw: Optional[str] = None):
        self.steps.append(StepLog(
            state=self.state, component=component, action=action,
            before=before, after=after, raw=raw
        ))

class HealthStatus(BaseModel):
    location_id: str
    linked: bool
    device_id: Optional[str] = None
    status: DeviceStatus = DeviceStatus.UNKNOWN
    canonical_mode: bool = False
    source_kind: SourceKind = SourceKind.UNKNOWN
    sequence_id: Optional[str] = None
    item_count: int = 0
    ads_count: int = 0
    baseline_count: int = 0
    last_outcome: Optional[ReconcileState] = None
    last_reason: Optional[str] = None
    last_reconciled_at: Optional[float] = None
    last_proof: Optional[ProofOfPlay] = None
    source: str = "state"  # state, live, cache, unlinked
    hints: List[str] = Field(default_factory=list)

# Persisted state

class LocationSnapshot(BaseModel):
    location_id: str
    device: Optional[ScreenDevice] = None
    sequence_id: Optional[str] = None
    last_config: Optional[RemoteDeviceConfig] = None
    item_tags: Dict[str, ItemTag] = Field(default_factory=dict)
    last_outcome: Optional[ReconcileState] = None
    last_reason: Optional[str] = None
    last_attempt_at: float = 0.0
    last_converged_at: float = 0.0
    consecutive_failures: int = 0

class SyncState(BaseModel):
    locations: Dict[str, LocationSnapshot] = Field(default_factory=dict)
    last_sweep_started: float = 0.0
    last_successful_sweep: float = 0.0
