"""
Error taxonomy for PenBridge.

Transport problems are retried at the adapter boundary before they surface here.
Consistency problems are never raised; they travel in the reconciliation report
as ConsistencyWarning records (see penbridge.models.report).
"""

from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .models.report import ReconciliationReport


class PenBridgeError(Exception):
    """Base class for all PenBridge errors."""


class TransportError(PenBridgeError):
    """
    The tree store or recognition service could not be reached, timed out,
    or answered with a server error after all retry attempts.
    """

    def __init__(self, message: str, attempts: int = 1):
        super().__init__(message)
        self.attempts = attempts
        # Filled in by the orchestrator so callers keep the blocks created so far
        self.partial_report: Optional["ReconciliationReport"] = None


class TreeStoreError(PenBridgeError):
    """The tree store rejected a request."""


class RecognitionPayloadError(PenBridgeError):
    """The recognition service returned a payload that failed validation."""


class PartialCreationError(PenBridgeError):
    """Block creation failed for a single line during a pass."""

    def __init__(self, line_index: int, message: str):
        super().__init__(f"Line {line_index}: {message}")
        self.line_index = line_index


class InvariantViolation(PenBridgeError):
    """
    A logic defect: an associated stroke reached the matcher, a stroke's block
    association was about to change, or an immutable bounds property was about
    to be rewritten. Only the offending operation is aborted.
    """
