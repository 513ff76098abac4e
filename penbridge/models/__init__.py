"""Data models for PenBridge."""

from .strokes import Dot, PageInfo, StorageStroke, Stroke, generate_stroke_id
from .transcript import Line, RecognitionResult, YBounds
from .blocks import Block, CANONICAL_TRANSCRIPT, STROKE_Y_BOUNDS, find_block
from .report import (
    ConsistencyWarning,
    LineOutcome,
    LineStatus,
    PassPhase,
    PassState,
    ReconciliationReport,
)

__all__ = [
    "Dot",
    "PageInfo",
    "StorageStroke",
    "Stroke",
    "generate_stroke_id",
    "Line",
    "RecognitionResult",
    "YBounds",
    "Block",
    "CANONICAL_TRANSCRIPT",
    "STROKE_Y_BOUNDS",
    "find_block",
    "ConsistencyWarning",
    "LineOutcome",
    "LineStatus",
    "PassPhase",
    "PassState",
    "ReconciliationReport",
]
