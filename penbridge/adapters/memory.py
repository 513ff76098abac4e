"""
In-memory collaborators for PenBridge.

Provides a tree store and a recognizer that run without Logseq or MyScript,
for tests and ``--dry-run`` sessions. The store mimics the behaviours the
engine has to cope with in Logseq: child insertion, property stripping on
content update, and optional injected failures.
"""

import uuid
from typing import Any, Callable, Dict, List, Optional, Set

from ..errors import TransportError, TreeStoreError
from ..models import Block, RecognitionResult, Stroke
from .base import RecognitionService, TreeStore


class InMemoryTreeStore(TreeStore):
    """
    Tree store backed by Python dictionaries.

    Every mutating call is appended to ``operations`` so tests can assert on
    ordering (e.g. parent-before-child creation).
    """

    def __init__(self, strip_properties_on_update: bool = True):
        """
        Initialize an empty store.

        Args:
            strip_properties_on_update: drop all block properties when content
                is updated, as Logseq does
        """
        self.strip_properties_on_update = strip_properties_on_update
        self.pages: Dict[str, Dict[str, Any]] = {}
        self._page_roots: Dict[str, List[str]] = {}
        self._blocks: Dict[str, Block] = {}
        self._block_page: Dict[str, str] = {}
        self.operations: List[tuple] = []
        # Content strings whose creation should fail, and how
        self.fail_on_content: Set[str] = set()
        self.fail_with: Callable[[str], Exception] = lambda msg: TreeStoreError(msg)
        self.unreachable = False

    def _check_reachable(self) -> None:
        if self.unreachable:
            raise TransportError("In-memory store marked unreachable")

    def _snapshot(self, block_id: str) -> Block:
        block = self._blocks[block_id]
        return Block(
            uuid=block.uuid,
            content=block.content,
            parent_uuid=block.parent_uuid,
            properties=dict(block.properties),
            children=[self._snapshot(child.uuid) for child in block.children],
        )

    def get_block(self, block_id: str) -> Optional[Block]:
        """Synchronous lookup helper for tests."""
        if block_id not in self._blocks:
            return None
        return self._snapshot(block_id)

    def all_blocks(self) -> List[Block]:
        return [self._snapshot(block_id) for block_id in self._blocks]

    async def get_page_tree(self, page_name: str) -> List[Block]:
        self._check_reachable()
        return [self._snapshot(block_id) for block_id in self._page_roots.get(page_name, [])]

    async def create_block(
        self,
        parent_id: str,
        content: str,
        properties: Optional[Dict[str, Any]] = None,
        custom_id: Optional[str] = None,
    ) -> Block:
        self._check_reachable()
        if content in self.fail_on_content:
            raise self.fail_with(f"Injected failure creating block '{content}'")
        parent = self._blocks.get(parent_id)
        if parent is None:
            raise TreeStoreError(f"Parent block {parent_id} does not exist")
        block_id = custom_id or str(uuid.uuid4())
        if block_id in self._blocks:
            raise TreeStoreError(f"Block id collision: {block_id}")

        block = Block(
            uuid=block_id,
            content=content,
            parent_uuid=parent_id,
            properties=dict(properties or {}),
        )
        self._blocks[block_id] = block
        self._block_page[block_id] = self._block_page[parent_id]
        parent.children.append(block)
        self.operations.append(("create", block_id, parent_id))
        return self._snapshot(block_id)

    async def update_block_content(self, block_id: str, content: str) -> None:
        self._check_reachable()
        block = self._require(block_id)
        block.content = content
        if self.strip_properties_on_update:
            block.properties = {}
        self.operations.append(("update", block_id))

    async def set_block_property(self, block_id: str, key: str, value: Any) -> None:
        self._check_reachable()
        self._require(block_id).properties[key] = value
        self.operations.append(("set_property", block_id, key))

    async def remove_block(self, block_id: str) -> None:
        self._check_reachable()
        block = self._require(block_id)
        for descendant in list(block.walk()):
            self._blocks.pop(descendant.uuid, None)
            self._block_page.pop(descendant.uuid, None)
        if block.parent_uuid and block.parent_uuid in self._blocks:
            parent = self._blocks[block.parent_uuid]
            parent.children = [c for c in parent.children if c.uuid != block_id]
        for roots in self._page_roots.values():
            if block_id in roots:
                roots.remove(block_id)
        self.operations.append(("remove", block_id))

    async def get_or_create_page(
        self,
        page_name: str,
        properties: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        self._check_reachable()
        if page_name not in self.pages:
            self.pages[page_name] = {"name": page_name, "properties": dict(properties or {})}
            self._page_roots[page_name] = []
            self.operations.append(("create_page", page_name))
        return self.pages[page_name]

    async def append_block_in_page(
        self,
        page_name: str,
        content: str,
        properties: Optional[Dict[str, Any]] = None,
    ) -> Block:
        await self.get_or_create_page(page_name)
        block_id = str(uuid.uuid4())
        block = Block(uuid=block_id, content=content, properties=dict(properties or {}))
        self._blocks[block_id] = block
        self._block_page[block_id] = page_name
        self._page_roots[page_name].append(block_id)
        self.operations.append(("append", block_id, page_name))
        return self._snapshot(block_id)

    def _require(self, block_id: str) -> Block:
        block = self._blocks.get(block_id)
        if block is None:
            raise TreeStoreError(f"Block {block_id} does not exist")
        return block


class StaticRecognizer(RecognitionService):
    """
    Recognizer returning a preconfigured result.

    If ``transcribed_stroke_ids`` is left empty in the configured result, the
    ids of the strokes actually passed in are reported as consumed.
    """

    def __init__(self, result: Optional[RecognitionResult] = None):
        self.result = result or RecognitionResult()
        self.calls: List[List[str]] = []

    async def recognize(self, strokes: List[Stroke]) -> RecognitionResult:
        self.calls.append([stroke.id for stroke in strokes])
        result = self.result.model_copy(deep=True)
        if not result.transcribed_stroke_ids:
            result.transcribed_stroke_ids = [stroke.id for stroke in strokes]
        return result
