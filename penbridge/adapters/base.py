"""
Collaborator interfaces for PenBridge.

The reconciliation engine talks to the document tree and to the handwriting
recognizer only through these narrow interfaces, so both can be swapped for
in-memory fakes in tests and dry runs.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ..models import Block, RecognitionResult, Stroke


class TreeStore(ABC):
    """
    Abstract base class for hierarchical block stores.

    All operations are network-bound in real stores and therefore async.
    """

    @abstractmethod
    async def get_page_tree(self, page_name: str) -> List[Block]:
        """
        Retrieve the full block tree of a page.

        Returns:
            Top-level blocks with their children nested
        """
        pass

    @abstractmethod
    async def create_block(
        self,
        parent_id: str,
        content: str,
        properties: Optional[Dict[str, Any]] = None,
        custom_id: Optional[str] = None,
    ) -> Block:
        """
        Insert a new block as the last child of ``parent_id`` (never a sibling).

        Returns:
            The created block
        """
        pass

    @abstractmethod
    async def update_block_content(self, block_id: str, content: str) -> None:
        """
        Replace a block's content.

        Stores may drop existing properties on update; callers re-apply what
        they need with set_block_property.
        """
        pass

    @abstractmethod
    async def set_block_property(self, block_id: str, key: str, value: Any) -> None:
        pass

    @abstractmethod
    async def remove_block(self, block_id: str) -> None:
        """Remove a block. Only ever called on explicit caller instruction."""
        pass

    @abstractmethod
    async def get_or_create_page(
        self,
        page_name: str,
        properties: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def append_block_in_page(
        self,
        page_name: str,
        content: str,
        properties: Optional[Dict[str, Any]] = None,
    ) -> Block:
        """Append a top-level block at the end of a page."""
        pass


class RecognitionService(ABC):
    """Abstract base class for handwriting recognizers."""

    @abstractmethod
    async def recognize(self, strokes: List[Stroke]) -> RecognitionResult:
        """
        Convert a batch of strokes into recognized lines.

        Returns:
            Lines plus the ids of the strokes the service actually consumed
        """
        pass
