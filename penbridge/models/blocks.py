"""
Block data model for PenBridge.

A Block is a node of the Logseq document tree. It is the durable unit a
recognized line is materialized into.
"""

from typing import Any, Callable, Dict, Iterator, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .transcript import YBounds

STROKE_Y_BOUNDS = "stroke-y-bounds"
CANONICAL_TRANSCRIPT = "canonical-transcript"


class Block(BaseModel):
    """
    A hierarchical content block as returned by the tree store.

    ``properties["stroke-y-bounds"]`` is written once at creation and acts as
    the block's spatial anchor on the page.
    """

    model_config = ConfigDict(populate_by_name=True)

    uuid: str = Field(
        ...,
        description="Persistent identifier assigned by (or supplied to) the tree store"
    )

    content: str = Field(
        default="",
        description="The text content of the block"
    )

    parent_uuid: Optional[str] = Field(
        default=None,
        alias="parentUuid",
        description="UUID of the parent block, None for page-level blocks"
    )

    properties: Dict[str, Any] = Field(
        default_factory=dict,
        description="Block properties (key:: value pairs in Logseq)"
    )

    children: List['Block'] = Field(
        default_factory=list,
        description="A nested list of child blocks"
    )

    @property
    def y_bounds(self) -> Optional[YBounds]:
        return YBounds.from_property(self.properties.get(STROKE_Y_BOUNDS))

    @property
    def first_line(self) -> str:
        return self.content.split("\n", 1)[0] if self.content else ""

    def walk(self) -> Iterator["Block"]:
        """Yield this block and all descendants, depth-first in document order."""
        yield self
        for child in self.children:
            yield from child.walk()


def find_block(blocks: List[Block], predicate: Callable[[Block], bool]) -> Optional[Block]:
    """Depth-first search of a block forest."""
    for block in blocks:
        for candidate in block.walk():
            if predicate(candidate):
                return candidate
    return None


# Enable forward references for self-referencing model
Block.model_rebuild()
