"""
Stroke data models for PenBridge.

A Stroke is one pen-down to pen-up gesture captured on a smartpen page. Its id
is derived from the start timestamp so it stays stable across sessions, and
its block association is write-once.
"""

import logging
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from ..errors import InvariantViolation


def generate_stroke_id(start_time: int) -> str:
    """Deterministic stroke id, e.g. ``s1765313505107``."""
    return f"s{start_time}"


class PageInfo(BaseModel):
    """
    Address of a physical notebook page as reported by the pen.
    """

    section: int = Field(default=0, description="Ncode section")
    owner: int = Field(default=0, description="Ncode owner")
    book: int = Field(..., description="Notebook (book) id")
    page: int = Field(..., description="Page number within the book")

    @property
    def key(self) -> str:
        """Unique key used to serialize passes per page."""
        return f"S{self.section}/O{self.owner}/B{self.book}/P{self.page}"


class Dot(BaseModel):
    """
    A single pen sample in page-local (Ncode) units.

    Pressure and tilt are captured by the pen but dropped when strokes are
    written to storage.
    """

    x: float
    y: float
    timestamp: int
    force: Optional[float] = Field(default=None, description="Pen pressure")
    tilt_x: Optional[float] = None
    tilt_y: Optional[float] = None


class Stroke(BaseModel):
    """
    One continuous pen gesture.

    ``block_uuid`` may be set exactly once, when a line derived from this
    stroke is first materialized into a block.
    """

    start_time: int = Field(..., description="Pen-down timestamp")
    end_time: int = Field(..., description="Pen-up timestamp")
    dots: List[Dot] = Field(default_factory=list, description="Ordered samples")
    page_info: Optional[PageInfo] = None
    block_uuid: Optional[str] = Field(
        default=None,
        description="Block this stroke was materialized into (write-once)"
    )
    deleted: bool = Field(
        default=False,
        description="Caller-supplied deletion mark; deleted strokes skip every pass"
    )

    @property
    def id(self) -> str:
        return generate_stroke_id(self.start_time)

    @property
    def is_associated(self) -> bool:
        return self.block_uuid is not None

    def y_span(self) -> Optional[Tuple[float, float]]:
        """Vertical extent of the stroke, or None when it has no dots."""
        if not self.dots:
            return None
        ys = [dot.y for dot in self.dots]
        return min(ys), max(ys)

    def assign_block(self, block_uuid: str) -> None:
        """
        Associate the stroke with a block.

        Raises:
            InvariantViolation: if the stroke is already associated with a
                different block
        """
        if self.block_uuid is None:
            self.block_uuid = block_uuid
            return
        if self.block_uuid != block_uuid:
            logging.error(
                f"Refusing to move stroke {self.id} from block {self.block_uuid} to {block_uuid}"
            )
            raise InvariantViolation(
                f"Stroke {self.id} is already associated with block {self.block_uuid}"
            )


class StorageStroke(BaseModel):
    """
    Compact stroke record as written to the tree store.

    Only ``[x, y, t]`` per point is kept; pressure and tilt are dropped to keep
    chunk payloads small.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str
    start_time: int = Field(..., alias="startTime")
    end_time: int = Field(..., alias="endTime")
    block_uuid: Optional[str] = Field(default=None, alias="blockUuid")
    points: List[Tuple[float, float, int]] = Field(default_factory=list)

    def to_json_dict(self) -> dict:
        return self.model_dump(by_alias=True)
