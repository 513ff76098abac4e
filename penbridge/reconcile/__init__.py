"""Reconciliation engine components."""

from .partition import partition, apply_explicit_deletions
from .matcher import match_strokes_to_lines
from .hierarchy import HierarchyBuilder
from .orchestrator import ReconciliationOrchestrator

__all__ = [
    "partition",
    "apply_explicit_deletions",
    "match_strokes_to_lines",
    "HierarchyBuilder",
    "ReconciliationOrchestrator"
]
