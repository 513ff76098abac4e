"""
Reconciliation report models for PenBridge.

A pass never answers with a bare success flag: partial success is the common
case, so callers get per-line outcomes, per-category counts and a list of
consistency warnings they may want to show to a human.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Set

from pydantic import BaseModel, Field

from .transcript import RecognitionResult


class PassPhase(str, Enum):
    """Per-page state of a reconciliation pass."""

    IDLE = "idle"
    PARTITIONING = "partitioning"
    AWAITING_RECOGNITION = "awaiting_recognition"
    MATCHING = "matching"
    MATERIALIZING = "materializing"
    PERSISTING = "persisting"


class LineStatus(str, Enum):
    CREATED = "created"
    PRESERVED = "preserved"
    ERRORED = "errored"
    SKIPPED = "skipped"


class LineOutcome(BaseModel):
    """What happened to one recognized line during materialization."""

    line_index: int
    text: str
    indent_level: int = 0
    status: LineStatus
    block_uuid: Optional[str] = None
    parent_uuid: Optional[str] = None
    error: Optional[str] = None


class ConsistencyWarning(BaseModel):
    """
    A condition surfaced to the caller and never resolved automatically.

    Kinds:
        unmatched-stroke: a transcribed stroke overlapped no line, or a stroke had no dots
        orphaned-block: a block whose strokes no longer exist
        unexpected-stroke: the recognizer reported a stroke it was never sent
        rejected-stroke: an already-associated stroke reached the matcher
    """

    kind: str
    subject_id: str
    message: str


class PassState(BaseModel):
    """
    Explicit state handed to one reconciliation pass.

    Replaces process-wide flags: the caller states which strokes to delete,
    may supply a recognition result obtained earlier, and may request an abort
    that takes effect between block creations.
    """

    deleted_stroke_ids: Set[str] = Field(default_factory=set)
    pending_recognition: Optional[RecognitionResult] = None
    abort_requested: bool = False

    def request_abort(self) -> None:
        self.abort_requested = True


class ReconciliationReport(BaseModel):
    """Result of a reconciliation pass for one page."""

    page_key: str
    phase: PassPhase = PassPhase.IDLE
    started_at: datetime = Field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None
    outcomes: List[LineOutcome] = Field(default_factory=list)
    preserved: int = Field(
        default=0,
        description="Existing blocks left untouched by this pass"
    )
    warnings: List[ConsistencyWarning] = Field(default_factory=list)
    removed_stroke_ids: List[str] = Field(default_factory=list)
    stroke_assignments: Dict[str, str] = Field(
        default_factory=dict,
        description="Stroke id -> block uuid written back during this pass"
    )
    persisted: bool = False
    aborted: bool = False
    error: Optional[str] = None

    @property
    def created(self) -> int:
        return sum(1 for o in self.outcomes if o.status == LineStatus.CREATED)

    @property
    def errors(self) -> int:
        count = sum(1 for o in self.outcomes if o.status == LineStatus.ERRORED)
        return count + (1 if self.error else 0)

    @property
    def created_block_uuids(self) -> List[str]:
        return [o.block_uuid for o in self.outcomes if o.status == LineStatus.CREATED and o.block_uuid]

    def warnings_of(self, kind: str) -> List[ConsistencyWarning]:
        return [w for w in self.warnings if w.kind == kind]

    def add_warning(self, kind: str, subject_id: str, message: str) -> None:
        self.warnings.append(ConsistencyWarning(kind=kind, subject_id=subject_id, message=message))

    def stats(self) -> Dict[str, int]:
        return {
            "created": self.created,
            "preserved": self.preserved,
            "errors": self.errors,
            "warnings": len(self.warnings),
            "removed_strokes": len(self.removed_stroke_ids),
        }
