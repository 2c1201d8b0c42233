from typing import List, Optional
from pydantic import BaseModel, Field

from .models import ContentSequence, DesiredState, RemoteDeviceConfig, SourceKind

CREATE_SEQUENCE = "create-sequence"
SEED_BASELINE = "seed-baseline"
REPLACE_ITEMS = "replace-items"
REBIND_DEVICE = "rebind-device"

class Plan(BaseModel):
    create_sequence: bool = False
    seed_baseline: bool = False
    replace_items: bool = False
    rebind: bool = False
    reasons: List[str] = Field(default_factory=list)

    def actions(self) -> List[str]:
        out = []
        if self.create_sequence:
            out.append(CREATE_SEQUENCE)
        if self.seed_baseline:
            out.append(SEED_BASELINE)
        if self.replace_items:
            out.append(REPLACE_ITEMS)
        if self.rebind:
            out.append(REBIND_DEVICE)
        return out

    @property
    def writes_items(self) -> bool:
        return self.seed_baseline or self.replace_items

    @property
    def is_noop(self) -> bool:
        return not self.actions()

def items_differ(desired: DesiredState, sequence: Optional[ContentSequence]) -> bool:
    """Identity and order only; durations are not compared."""
    if sequence is None:
        return True
    return sequence.media_ids() != desired.media_ids()

def plan_actions(desired: DesiredState, config: RemoteDeviceConfig, sequence: Optional[ContentSequence]) -> Plan:
    """
    Decide the writes that bring the device to its canonical state: bound to
    the location's own sequence, holding exactly the desired items in order.
    `sequence` is None when the location has no sequence yet (or it was
    deleted on the vendor side).
    """
    plan = Plan()

    if sequence is None:
        plan.create_sequence = True
        plan.reasons.append("location has no content sequence")
        # Contents of a create-or-return are unknown until the create runs
        plan.replace_items = True
        plan.reasons.append("new sequence must be filled")
    elif not sequence.items:
        plan.seed_baseline = True
        plan.reasons.append(f"sequence {sequence.sequence_id} is empty")
    elif items_differ(desired, sequence):
        plan.replace_items = True
        plan.reasons.append(
            f"sequence items differ (remote {len(sequence.items)}, desired {len(desired.items)})"
        )

    if sequence is None:
        plan.rebind = True
        plan.reasons.append("device must be bound to the new sequence")
    elif config.source_kind != SourceKind.SEQUENCE:
        plan.rebind = True
        plan.reasons.append(f"device content source is {config.source_kind.value}, not sequence")
    elif config.source_id != sequence.sequence_id:
        plan.rebind = True
        plan.reasons.append(f"device bound to sequence {config.source_id}, expected {sequence.sequence_id}")

    return plan
