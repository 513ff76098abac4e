"""
Reconciliation orchestrator for PenBridge.

Runs one reconciliation pass for one smartpen page: new ink is recognized,
each recognized line that new ink landed on becomes a Logseq block (or reuses
the block it was materialized as before), the strokes behind it are tied to
that block, and the page's stroke collection is persisted. Existing blocks and
existing associations are never touched by a pass.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set, Tuple

from ..adapters.base import RecognitionService, TreeStore
from ..database.manager import DatabaseManager
from ..errors import (
    InvariantViolation,
    PenBridgeError,
    RecognitionPayloadError,
    TransportError,
    TreeStoreError,
)
from ..models import (
    CANONICAL_TRANSCRIPT,
    STROKE_Y_BOUNDS,
    Block,
    Line,
    LineOutcome,
    LineStatus,
    PageInfo,
    PassPhase,
    PassState,
    ReconciliationReport,
    RecognitionResult,
    Stroke,
    YBounds,
    find_block,
)
from ..storage.codec import DEFAULT_CHUNK_SIZE, format_page_name
from ..storage.repository import StrokeRepository
from ..text import canonicalize, merge_preserving_marker
from .hierarchy import HierarchyBuilder, HierarchyResult, generate_block_id
from .matcher import DEFAULT_TOLERANCE, bounds_from_strokes, bounds_overlap, match_strokes_to_lines
from .partition import apply_explicit_deletions, partition

UNMATCHED_STROKE = "unmatched-stroke"
ORPHANED_BLOCK = "orphaned-block"
UNEXPECTED_STROKE = "unexpected-stroke"
REJECTED_STROKE = "rejected-stroke"


class ReconciliationOrchestrator:
    """
    Coordinates reconciliation passes.

    Passes for the same page are serialized; passes for different pages may
    run concurrently.
    """

    def __init__(
        self,
        store: TreeStore,
        recognizer: RecognitionService,
        repository: Optional[StrokeRepository] = None,
        tolerance: float = DEFAULT_TOLERANCE,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        chunk_write_delay: float = 0.0,
        database_manager: Optional[DatabaseManager] = None,
        id_factory=generate_block_id,
    ):
        """
        Initialize the orchestrator.

        Args:
            store: Tree store holding pages and blocks
            recognizer: Handwriting recognition service
            repository: Stroke repository (built on ``store`` if omitted)
            tolerance: Vertical matching tolerance in page units
            chunk_size: Strokes per storage block
            chunk_write_delay: Pause between storage block writes, in seconds
            database_manager: Optional connected ledger for pass history
            id_factory: Supplies custom ids for new blocks
        """
        self.store = store
        self.recognizer = recognizer
        self.repository = repository or StrokeRepository(
            store, chunk_size=chunk_size, chunk_write_delay=chunk_write_delay
        )
        self.tolerance = tolerance
        self.db = database_manager
        self.id_factory = id_factory
        # page key -> (lock, number of holders and waiters)
        self._page_locks: Dict[str, Tuple[asyncio.Lock, int]] = {}
        # Only pages with a pass in flight; anything absent is idle
        self._phases: Dict[str, PassPhase] = {}

    @asynccontextmanager
    async def _page_lock(self, page_key: str):
        """Serialize work on one page; the lock is dropped once nobody uses it."""
        lock, users = self._page_locks.get(page_key, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._page_locks[page_key] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._page_locks[page_key]
            if users <= 1:
                del self._page_locks[page_key]
            else:
                self._page_locks[page_key] = (lock, users - 1)

    def phase_of(self, page_info: PageInfo) -> PassPhase:
        """Current pass phase of a page."""
        return self._phases.get(page_info.key, PassPhase.IDLE)

    def _enter(self, report: ReconciliationReport, phase: PassPhase) -> None:
        report.phase = phase
        if phase == PassPhase.IDLE:
            self._phases.pop(report.page_key, None)
        else:
            self._phases[report.page_key] = phase
        logging.debug(f"{report.page_key}: {phase.value}")

    async def reconcile_page(
        self,
        page_info: PageInfo,
        strokes: List[Stroke],
        pass_state: Optional[PassState] = None,
    ) -> ReconciliationReport:
        """
        Run one reconciliation pass.

        ``strokes`` is the page's full stroke collection. Newly matched strokes
        get their ``block_uuid`` set in place.

        Args:
            page_info: The page being reconciled
            strokes: All strokes of the page
            pass_state: Deletions, a pending recognition result and the abort flag

        Returns:
            The pass report

        Raises:
            TransportError: store or recognizer unreachable after retries; the
                report built so far is attached as ``partial_report``
        """
        pass_state = pass_state or PassState()
        async with self._page_lock(page_info.key):
            report = ReconciliationReport(page_key=page_info.key)
            try:
                await self._run_pass(page_info, strokes, pass_state, report)
            except TransportError as e:
                report.error = str(e)
                e.partial_report = report
                logging.error(
                    f"Pass for {page_info.key} stopped in phase {report.phase.value}: {e} "
                    f"({report.created} blocks created before the failure)"
                )
                raise
            except RecognitionPayloadError as e:
                # Nothing was created yet; the stroke collection is left as it was
                report.error = str(e)
                logging.error(f"Rejected recognition result for {page_info.key}: {e}")
            finally:
                report.finished_at = datetime.now()
                if report.error is None:
                    self._enter(report, PassPhase.IDLE)
                else:
                    # A failed report keeps the phase it stopped in
                    self._phases.pop(report.page_key, None)
                self._log_pass(report)
            return report

    async def _run_pass(
        self,
        page_info: PageInfo,
        strokes: List[Stroke],
        pass_state: PassState,
        report: ReconciliationReport,
    ) -> None:
        self._enter(report, PassPhase.PARTITIONING)
        deleted_ids = set(pass_state.deleted_stroke_ids)
        deleted_ids.update(s.id for s in strokes if s.deleted)
        deletion = apply_explicit_deletions(strokes, deleted_ids)
        report.removed_stroke_ids = deletion.removed_ids
        survivors = deletion.survivors

        split = partition(survivors)
        associated_blocks = {s.block_uuid for s in split.associated}
        report.preserved = len(associated_blocks)

        pending = []
        for stroke in split.unassociated:
            if stroke.dots:
                pending.append(stroke)
            else:
                report.add_warning(
                    UNMATCHED_STROKE, stroke.id,
                    f"Stroke {stroke.id} has no dots and cannot be recognized"
                )

        if not pending and pass_state.pending_recognition is None and not deletion.removed_ids:
            logging.info(f"Nothing to reconcile on {page_info.key}")
            return

        # Snapshot before materializing so orphan detection only sees older blocks
        existing_blocks = await self.repository.load_transcript_blocks(page_info)

        if pending or pass_state.pending_recognition is not None:
            self._enter(report, PassPhase.AWAITING_RECOGNITION)
            recognition = await self._recognize(pending, pass_state)

            self._enter(report, PassPhase.MATCHING)
            lines = self._match(recognition, pending, report)
            hierarchy = HierarchyResult()
            self._settle_lines(lines, existing_blocks, hierarchy)
            seen_again = {
                o.block_uuid for o in hierarchy.outcomes if o.status == LineStatus.PRESERVED
            }
            report.preserved = len(associated_blocks | seen_again)

            self._enter(report, PassPhase.MATERIALIZING)
            builder = HierarchyBuilder(
                self.store,
                anchor_resolver=lambda: self.repository.get_or_create_transcript_anchor(page_info),
                id_factory=self.id_factory,
                pass_state=pass_state,
            )
            try:
                await builder.materialize(lines, hierarchy)
            finally:
                # Blocks created before a transport failure still get their strokes
                report.outcomes = hierarchy.outcomes
                self._write_back(lines, hierarchy, pending, report)
            report.aborted = hierarchy.aborted

        self._detect_orphans(existing_blocks, survivors, report)

        self._enter(report, PassPhase.PERSISTING)
        await self.repository.save_strokes(page_info, survivors)
        report.persisted = True
        stats = report.stats()
        logging.info(
            f"Reconciled {page_info.key}: {stats['created']} created, "
            f"{stats['preserved']} preserved, {stats['errors']} errors, "
            f"{stats['warnings']} warnings"
        )

    async def _recognize(self, unassociated: List[Stroke], pass_state: PassState) -> RecognitionResult:
        if pass_state.pending_recognition is not None:
            logging.info("Using recognition result supplied with the pass state")
            return pass_state.pending_recognition
        logging.info(f"Sending {len(unassociated)} strokes for recognition")
        return await self.recognizer.recognize(unassociated)

    def _match(
        self,
        recognition: RecognitionResult,
        unassociated: List[Stroke],
        report: ReconciliationReport,
    ) -> List[Line]:
        """Filter to transcribed strokes, match them and settle line bounds."""
        sent = {s.id: s for s in unassociated}
        transcribed: Set[str] = set()
        for stroke_id in recognition.transcribed_stroke_ids:
            if stroke_id in sent:
                transcribed.add(stroke_id)
            else:
                report.add_warning(
                    UNEXPECTED_STROKE, stroke_id,
                    f"Recognizer reported stroke {stroke_id} which was not sent as unassociated ink"
                )
        untouched = len(sent) - len(transcribed)
        if untouched:
            logging.info(f"{untouched} strokes were not consumed by the recognizer and stay unassociated")

        lines = [line.model_copy(deep=True) for line in recognition.lines]
        candidates = [sent[stroke_id] for stroke_id in sent if stroke_id in transcribed]
        match = match_strokes_to_lines(lines, candidates, self.tolerance)

        for stroke_id in match.unmatched:
            report.add_warning(
                UNMATCHED_STROKE, stroke_id,
                f"Stroke {stroke_id} overlaps no recognized line"
            )
        for stroke_id in match.rejected:
            report.add_warning(
                REJECTED_STROKE, stroke_id,
                f"Stroke {stroke_id} was already associated and was not rematched"
            )

        for index, line in enumerate(lines):
            line.stroke_ids = set(match.line_strokes.get(index, set()))
            if line.y_bounds is None:
                line.y_bounds = bounds_from_strokes(line.stroke_ids, sent) or YBounds.empty()
        return lines

    def _settle_lines(
        self,
        lines: List[Line],
        existing_blocks: Iterable[Block],
        hierarchy: HierarchyResult,
    ) -> None:
        """
        Decide which lines get no new block.

        A line no transcribed stroke landed on is skipped; the ink it stands
        for is either already materialized or still unmatched. A line whose
        bounds overlap an existing block's ``stroke-y-bounds`` and whose text
        is canonically the same is that block recognized again: its strokes
        are tied to the existing block and nothing is created.
        """
        anchored = []
        for block in existing_blocks:
            bounds = YBounds.from_property(block.properties.get(STROKE_Y_BOUNDS))
            if bounds is not None:
                anchored.append((block, bounds))

        claimed: Set[str] = set()
        for index, line in enumerate(lines):
            if not line.stroke_ids:
                hierarchy.outcomes_by_index[index] = LineOutcome(
                    line_index=index,
                    text=line.text,
                    indent_level=line.indent_level,
                    status=LineStatus.SKIPPED,
                    error="No transcribed stroke matched this line",
                )
                continue

            canonical = line.canonical or canonicalize(line.text)
            for block, bounds in anchored:
                if block.uuid in claimed or line.y_bounds is None:
                    continue
                if not bounds_overlap(line.y_bounds, bounds):
                    continue
                if canonicalize(str(block.properties.get(CANONICAL_TRANSCRIPT, ""))) != canonical:
                    continue
                claimed.add(block.uuid)
                hierarchy.line_to_block[index] = block.uuid
                hierarchy.outcomes_by_index[index] = LineOutcome(
                    line_index=index,
                    text=line.text,
                    indent_level=line.indent_level,
                    status=LineStatus.PRESERVED,
                    block_uuid=block.uuid,
                    parent_uuid=block.parent_uuid,
                )
                logging.info(f"Line {index} matches existing block {block.uuid}; not creating a duplicate")
                break

    def _write_back(
        self,
        lines: List[Line],
        hierarchy: HierarchyResult,
        unassociated: List[Stroke],
        report: ReconciliationReport,
    ) -> None:
        """Tie matched strokes to the blocks created for their lines."""
        by_id = {s.id: s for s in unassociated}
        for index, block_uuid in hierarchy.line_to_block.items():
            for stroke_id in sorted(lines[index].stroke_ids):
                stroke = by_id.get(stroke_id)
                if stroke is None:
                    continue
                try:
                    stroke.assign_block(block_uuid)
                except InvariantViolation as e:
                    report.add_warning(REJECTED_STROKE, stroke_id, str(e))
                    continue
                report.stroke_assignments[stroke_id] = block_uuid

    def _detect_orphans(
        self,
        existing_blocks: Iterable[Block],
        survivors: List[Stroke],
        report: ReconciliationReport,
    ) -> None:
        """Report pre-existing bounded blocks no surviving stroke points to."""
        referenced = {s.block_uuid for s in survivors if s.block_uuid}
        for block in existing_blocks:
            if STROKE_Y_BOUNDS not in block.properties:
                continue
            if block.uuid in referenced:
                continue
            report.add_warning(
                ORPHANED_BLOCK, block.uuid,
                f"Block '{block.first_line}' has no remaining strokes; remove it explicitly if unwanted"
            )

    def _log_pass(self, report: ReconciliationReport) -> None:
        if not self.db:
            return
        try:
            self.db.log_pass(report)
        except Exception as e:
            logging.warning(f"Failed to log reconciliation pass: {e}")

    async def refresh_block(self, page_info: PageInfo, block_uuid: str, line: Line) -> bool:
        """
        Update an existing block's text from a fresh recognition of its line.

        A task marker the user set on the block is kept. The store may strip
        properties on update, so the stored ``stroke-y-bounds`` value is
        re-applied verbatim; it is never recomputed.

        Returns:
            True if the block was updated, False if its canonical text was unchanged

        Raises:
            TreeStoreError: the block does not exist on the page
        """
        async with self._page_lock(page_info.key):
            page_name = format_page_name(page_info.book, page_info.page)
            tree = await self.store.get_page_tree(page_name)
            block = find_block(tree, lambda b: b.uuid == block_uuid)
            if block is None:
                raise TreeStoreError(f"Block {block_uuid} not found on {page_name}")

            canonical = line.canonical or canonicalize(line.text)
            stored_canonical = block.properties.get(CANONICAL_TRANSCRIPT)
            if stored_canonical is not None and canonicalize(str(stored_canonical)) == canonical:
                logging.info(f"Block {block_uuid} unchanged, skipping update")
                return False

            stored_bounds = block.properties.get(STROKE_Y_BOUNDS)
            if (stored_bounds is not None and line.y_bounds is not None
                    and line.y_bounds.to_property() != str(stored_bounds)):
                logging.error(
                    f"{InvariantViolation.__name__}: refusing to change stroke-y-bounds of "
                    f"{block_uuid} from {stored_bounds} to {line.y_bounds.to_property()}"
                )

            await self.store.update_block_content(block_uuid, merge_preserving_marker(block.content, line.text))
            await self.store.set_block_property(block_uuid, CANONICAL_TRANSCRIPT, canonical)
            if stored_bounds is not None:
                await self.store.set_block_property(block_uuid, STROKE_Y_BOUNDS, stored_bounds)
            logging.info(f"Refreshed block {block_uuid}")
            return True

    async def remove_blocks(self, page_info: PageInfo, block_uuids: Iterable[str]) -> List[str]:
        """
        Remove exactly the named blocks, on explicit caller request.

        Returns:
            The uuids that were removed

        Raises:
            TransportError, TreeStoreError: a removal failed; the uuids removed
                before it are attached as ``removed_block_uuids``
        """
        removed: List[str] = []
        async with self._page_lock(page_info.key):
            for block_uuid in block_uuids:
                try:
                    await self.store.remove_block(block_uuid)
                except PenBridgeError as e:
                    e.removed_block_uuids = list(removed)
                    logging.error(
                        f"Removing {block_uuid} from {page_info.key} failed after "
                        f"{len(removed)} removals: {e}"
                    )
                    raise
                removed.append(block_uuid)
        logging.info(f"Removed {len(removed)} blocks from {page_info.key} on request")
        return removed

    async def ingest_strokes(self, page_info: PageInfo, incoming: List[Stroke]) -> List[Stroke]:
        """
        Merge freshly captured strokes into the stored collection of a page.

        Incoming strokes whose id is already stored are dropped; stored
        strokes keep their block association.
        """
        async with self._page_lock(page_info.key):
            for stroke in incoming:
                if stroke.page_info is None:
                    stroke.page_info = page_info
            return await self.repository.merge_incoming(page_info, incoming)
