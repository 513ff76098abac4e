"""
Hierarchy builder.

Materializes recognized lines as Logseq blocks. The store only accepts a
child once its parent exists, and a line's parent is a block created earlier
in the same pass, so creations run strictly one after another, level by level.
"""

import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

from ..adapters.base import TreeStore
from ..errors import PartialCreationError, PenBridgeError, TransportError
from ..models import (
    CANONICAL_TRANSCRIPT,
    STROKE_Y_BOUNDS,
    Line,
    LineOutcome,
    LineStatus,
    PassState,
    YBounds,
)
from ..text import format_block_content

# Reserved prefix of the last UUID segment, marking blocks created by PenBridge
BRIDGE_ID_MARKER = "b12d"

AnchorResolver = Callable[[], Awaitable[str]]


def generate_block_id() -> str:
    """Random UUID whose last segment starts with the bridge marker."""
    parts = str(uuid.uuid4()).split("-")
    parts[4] = BRIDGE_ID_MARKER + parts[4][len(BRIDGE_ID_MARKER):]
    return "-".join(parts)


def is_bridge_id(block_id: Optional[str]) -> bool:
    if not block_id or not isinstance(block_id, str):
        return False
    parts = block_id.split("-")
    return len(parts) == 5 and parts[4].startswith(BRIDGE_ID_MARKER)


def find_parent_index(index: int, lines: List[Line], line_to_block: Dict[int, str]) -> Optional[int]:
    """
    Nearest preceding materialized line with a smaller indent.

    Scans backwards by original index, whatever level those lines were
    created at. Quadratic in the worst case, which is fine for pages of a few
    hundred lines.
    """
    depth = lines[index].indent_level
    for candidate in range(index - 1, -1, -1):
        if candidate in line_to_block and lines[candidate].indent_level < depth:
            return candidate
    return None


@dataclass
class HierarchyResult:
    line_to_block: Dict[int, str] = field(default_factory=dict)
    outcomes_by_index: Dict[int, LineOutcome] = field(default_factory=dict)
    creation_order: List[int] = field(default_factory=list)
    aborted: bool = False

    @property
    def outcomes(self) -> List[LineOutcome]:
        """Outcomes in document order."""
        return [self.outcomes_by_index[index] for index in sorted(self.outcomes_by_index)]


class HierarchyBuilder:
    """
    Creates one block per line, parents strictly before children.
    """

    def __init__(self, store: TreeStore, anchor_resolver: AnchorResolver,
                 id_factory: Callable[[], str] = generate_block_id,
                 pass_state: Optional[PassState] = None):
        """
        Initialize the builder.

        Args:
            store: Tree store to create blocks in
            anchor_resolver: Coroutine returning the uuid of the page's
                top-level anchor block, creating it if absent
            id_factory: Supplies block ids so rapid creations cannot collide
            pass_state: Optional pass state checked for abort requests
        """
        self.store = store
        self.anchor_resolver = anchor_resolver
        self.id_factory = id_factory
        self.pass_state = pass_state
        self._anchor_uuid: Optional[str] = None

    async def _anchor(self) -> str:
        if self._anchor_uuid is None:
            self._anchor_uuid = await self.anchor_resolver()
        return self._anchor_uuid

    async def materialize(self, lines: List[Line],
                          result: Optional[HierarchyResult] = None) -> HierarchyResult:
        """
        Create blocks for ``lines``.

        Levels are processed in increasing indent order and lines within a
        level in document order. A failed creation is recorded for that line
        only; an abort request stops before the next creation and leaves
        already-created blocks in place.

        A ``TransportError`` is not recorded per line: it propagates, and the
        caller-supplied ``result`` keeps whatever was created before it.

        Lines that already have an outcome in ``result`` are left alone. If
        such a line also appears in ``result.line_to_block``, its block serves
        as parent for deeper lines.
        """
        if result is None:
            result = HierarchyResult()
        outcomes = result.outcomes_by_index

        by_level: Dict[int, List[int]] = defaultdict(list)
        for index, line in enumerate(lines):
            if index in outcomes:
                continue
            by_level[line.indent_level].append(index)
        max_level = max(by_level) if by_level else -1

        for level in range(max_level + 1):
            for index in by_level.get(level, []):
                line = lines[index]
                if self.pass_state is not None and self.pass_state.abort_requested:
                    result.aborted = True
                    outcomes[index] = LineOutcome(
                        line_index=index,
                        text=line.text,
                        indent_level=line.indent_level,
                        status=LineStatus.SKIPPED,
                        error="Pass aborted before this line was created",
                    )
                    continue
                outcomes[index] = await self._create_line(index, lines, result)

        if result.aborted:
            logging.warning(f"Pass aborted after creating {len(result.creation_order)} blocks")
        return result

    async def _create_line(self, index: int, lines: List[Line], result: HierarchyResult) -> LineOutcome:
        line = lines[index]
        parent_uuid = None
        try:
            if line.indent_level > 0:
                parent_index = find_parent_index(index, lines, result.line_to_block)
                if parent_index is not None:
                    parent_uuid = result.line_to_block[parent_index]
                else:
                    logging.info(f"No parent line for indented line {index}; using anchor block")
            if parent_uuid is None:
                parent_uuid = await self._anchor()

            bounds = line.y_bounds or YBounds.empty()
            block = await self.store.create_block(
                parent_uuid,
                format_block_content(line.text),
                properties={
                    STROKE_Y_BOUNDS: bounds.to_property(),
                    CANONICAL_TRANSCRIPT: line.canonical,
                },
                custom_id=self.id_factory(),
            )
        except TransportError:
            raise
        except PenBridgeError as e:
            failure = PartialCreationError(index, str(e))
            logging.error(f"Block creation failed: {failure}")
            return LineOutcome(
                line_index=index,
                text=line.text,
                indent_level=line.indent_level,
                status=LineStatus.ERRORED,
                parent_uuid=parent_uuid,
                error=str(failure),
            )

        result.line_to_block[index] = block.uuid
        result.creation_order.append(index)
        return LineOutcome(
            line_index=index,
            text=line.text,
            indent_level=line.indent_level,
            status=LineStatus.CREATED,
            block_uuid=block.uuid,
            parent_uuid=parent_uuid,
        )
