"""
Line-to-stroke matching.

Assigns each unassociated stroke to at most one recognized line by vertical
overlap. The recognizer does not say which strokes make up a line, so this
spatial estimate is what ties ink to blocks.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from ..models import Line, Stroke, YBounds

DEFAULT_TOLERANCE = 5.0


@dataclass
class MatchResult:
    """
    Outcome of matching one pass's strokes against its lines.

    Attributes:
        assignments: stroke id -> index of the line it was assigned to
        line_strokes: line index -> ids of the strokes assigned to it
        unmatched: ids of strokes that overlapped no line
        rejected: ids of strokes refused because they were already associated
    """
    assignments: Dict[str, int] = field(default_factory=dict)
    line_strokes: Dict[int, Set[str]] = field(default_factory=dict)
    unmatched: List[str] = field(default_factory=list)
    rejected: List[str] = field(default_factory=list)


def overlap_length(span: Tuple[float, float], bounds: YBounds, tolerance: float) -> Optional[float]:
    """
    Length of the overlap between a stroke span and tolerance-expanded bounds.

    Returns None when the intervals do not intersect. A zero-height stroke
    lying inside the bounds intersects with length 0.
    """
    low, high = bounds.expanded(tolerance)
    overlap = min(span[1], high) - max(span[0], low)
    if overlap < 0:
        return None
    return overlap


def match_strokes_to_lines(
    lines: List[Line],
    strokes: List[Stroke],
    tolerance: float = DEFAULT_TOLERANCE,
) -> MatchResult:
    """
    Assign every stroke to the line it overlaps most.

    Lines without ``y_bounds`` take no part. On equal overlap the first line
    in document order keeps the stroke; this tie is deliberately left
    unresolved.
    """
    result = MatchResult()
    for index in range(len(lines)):
        result.line_strokes[index] = set()

    for stroke in strokes:
        if stroke.block_uuid is not None:
            logging.error(
                f"Matcher received stroke {stroke.id} already associated with block "
                f"{stroke.block_uuid}; skipping it"
            )
            result.rejected.append(stroke.id)
            continue

        span = stroke.y_span()
        if span is None:
            result.unmatched.append(stroke.id)
            continue

        best_index = None
        best_overlap = -1.0
        for index, line in enumerate(lines):
            if line.y_bounds is None:
                continue
            overlap = overlap_length(span, line.y_bounds, tolerance)
            if overlap is not None and overlap > best_overlap:
                best_index = index
                best_overlap = overlap

        if best_index is None:
            result.unmatched.append(stroke.id)
            continue
        result.assignments[stroke.id] = best_index
        result.line_strokes[best_index].add(stroke.id)

    if result.unmatched:
        logging.warning(f"{len(result.unmatched)} strokes matched no recognized line")
    return result


def bounds_overlap(first: YBounds, second: YBounds) -> bool:
    """True if the two extents share at least one point."""
    return first.min_y <= second.max_y and second.min_y <= first.max_y


def bounds_from_strokes(stroke_ids: Set[str], strokes_by_id: Dict[str, Stroke]) -> Optional[YBounds]:
    """Union of the vertical spans of the given strokes, or None if none have dots."""
    low: Optional[float] = None
    high: Optional[float] = None
    for stroke_id in stroke_ids:
        stroke = strokes_by_id.get(stroke_id)
        if stroke is None:
            continue
        span = stroke.y_span()
        if span is None:
            continue
        low = span[0] if low is None else min(low, span[0])
        high = span[1] if high is None else max(high, span[1])
    if low is None or high is None:
        return None
    return YBounds(min_y=low, max_y=high)
