"""
Recognition result models for PenBridge.

These models are the validated boundary between the handwriting recognition
service and the reconciliation engine. Lines are ephemeral: they live for one
reconciliation pass and are persisted only as blocks.
"""

import re
from typing import List, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..text import canonicalize


_BOUNDS_RE = re.compile(r"^\s*(-?\d+(?:\.\d+)?)\s*-\s*(-?\d+(?:\.\d+)?)\s*$")


class YBounds(BaseModel):
    """Vertical extent in page-local units."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    min_y: float = Field(..., alias="minY")
    max_y: float = Field(..., alias="maxY")

    @model_validator(mode="after")
    def _check_order(self) -> "YBounds":
        if self.min_y > self.max_y:
            raise ValueError(f"minY ({self.min_y}) is greater than maxY ({self.max_y})")
        return self

    def expanded(self, tolerance: float) -> Tuple[float, float]:
        return self.min_y - tolerance, self.max_y + tolerance

    def to_property(self) -> str:
        """Format as the ``stroke-y-bounds`` block property."""
        return f"{self.min_y:.2f}-{self.max_y:.2f}"

    @classmethod
    def from_property(cls, value: Optional[str]) -> Optional["YBounds"]:
        """Parse a ``stroke-y-bounds`` property; None if absent or malformed."""
        if not value or not isinstance(value, str):
            return None
        match = _BOUNDS_RE.match(value)
        if not match:
            return None
        low, high = float(match.group(1)), float(match.group(2))
        if low > high:
            return None
        return cls(min_y=low, max_y=high)

    @classmethod
    def empty(cls) -> "YBounds":
        return cls(min_y=0.0, max_y=0.0)


class Line(BaseModel):
    """
    One recognized text line.

    ``stroke_ids`` is filled by the matcher, never by the recognizer.
    """

    model_config = ConfigDict(populate_by_name=True)

    text: str = Field(..., description="Recognized text")
    canonical: str = Field(
        default="",
        description="Whitespace/checkbox-normalized text for change detection"
    )
    y_bounds: Optional[YBounds] = Field(default=None, alias="yBounds")
    indent_level: int = Field(default=0, alias="indentLevel", ge=0)
    stroke_ids: Set[str] = Field(default_factory=set, alias="strokeIds")

    @field_validator("indent_level", mode="before")
    @classmethod
    def _default_indent(cls, value):
        # Recognizers omit or null the indent for top-level lines
        return 0 if value is None else value

    @model_validator(mode="after")
    def _fill_canonical(self) -> "Line":
        if not self.canonical:
            self.canonical = canonicalize(self.text)
        return self


class RecognitionResult(BaseModel):
    """
    Output of one recognition call.

    ``transcribed_stroke_ids`` is the authoritative set of stroke ids the
    service actually consumed.
    """

    model_config = ConfigDict(populate_by_name=True)

    lines: List[Line] = Field(default_factory=list)
    transcribed_stroke_ids: List[str] = Field(
        default_factory=list,
        alias="transcribedStrokeIds"
    )
    text: str = Field(default="", description="Full recognized label")
