"""
Logseq tree store for PenBridge.

This module talks to Logseq's HTTP API server (Settings > Features > HTTP APIs
server). Every call is a POST to ``{host}/api`` with ``{"method", "args"}``.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from ..config import config
from ..errors import TreeStoreError
from ..models import Block
from .base import TreeStore
from .transport import with_retries


class LogseqTreeStore(TreeStore):
    """
    Manages communication with a running Logseq instance.
    """

    def __init__(self, host: Optional[str] = None, token: Optional[str] = None,
                 timeout: Optional[float] = None, max_retries: Optional[int] = None,
                 backoff_base: Optional[float] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Initialize the Logseq client.

        Args:
            host: The Logseq API server URL (defaults to config value)
            token: Optional authorization token (defaults to config value)
            timeout: Request timeout in seconds
            max_retries: Retries for transport failures
            backoff_base: First retry delay in seconds
            transport: Optional httpx transport, used by tests
        """
        self.host = (host or config.logseq_host).rstrip("/")
        self.token = token if token is not None else config.logseq_token
        self.max_retries = max_retries if max_retries is not None else config.max_retries
        self.backoff_base = backoff_base if backoff_base is not None else config.backoff_base

        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        self.client = httpx.AsyncClient(
            timeout=timeout or config.logseq_timeout,
            headers=headers,
            transport=transport,
        )

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.client.aclose()

    async def request(self, method: str, args: Optional[List[Any]] = None) -> Any:
        """
        Call a Logseq API method.

        Raises:
            TransportError: Logseq unreachable after all retries
            TreeStoreError: Logseq rejected the call
        """
        payload = {"method": method, "args": args or []}

        async def send() -> Any:
            response = await self.client.post(f"{self.host}/api", json=payload)
            response.raise_for_status()
            if not response.content:
                return None
            return response.json()

        try:
            result = await with_retries(
                send,
                f"Logseq {method}",
                max_retries=self.max_retries,
                backoff_base=self.backoff_base,
            )
        except httpx.HTTPStatusError as e:
            raise TreeStoreError(f"Logseq request {method} failed: {e}") from e
        except ValueError as e:
            raise TreeStoreError(f"Logseq returned invalid JSON for {method}: {e}") from e

        if isinstance(result, dict) and result.get("error"):
            raise TreeStoreError(f"Logseq request {method} failed: {result['error']}")
        return result

    async def test_connection(self) -> Optional[str]:
        """Return the current graph name, or None if no graph is open."""
        graph = await self.request("logseq.App.getCurrentGraph")
        if not graph:
            return None
        return graph.get("name", "Connected")

    async def get_page_tree(self, page_name: str) -> List[Block]:
        raw_blocks = await self.request("logseq.Editor.getPageBlocksTree", [page_name])
        if not raw_blocks:
            return []
        return [self._to_block(raw, None) for raw in raw_blocks if isinstance(raw, dict)]

    async def create_block(
        self,
        parent_id: str,
        content: str,
        properties: Optional[Dict[str, Any]] = None,
        custom_id: Optional[str] = None,
    ) -> Block:
        options: Dict[str, Any] = {"sibling": False}
        if properties:
            options["properties"] = properties
        if custom_id:
            options["customUUID"] = custom_id
        raw = await self.request("logseq.Editor.insertBlock", [parent_id, content, options])
        if not raw or not isinstance(raw, dict) or "uuid" not in raw:
            raise TreeStoreError(f"Logseq did not return a block when inserting under {parent_id}")
        block = self._to_block(raw, parent_id)
        if properties and not block.properties:
            block.properties = dict(properties)
        return block

    async def update_block_content(self, block_id: str, content: str) -> None:
        await self.request("logseq.Editor.updateBlock", [block_id, content])

    async def set_block_property(self, block_id: str, key: str, value: Any) -> None:
        await self.request("logseq.Editor.upsertBlockProperty", [block_id, key, value])

    async def remove_block(self, block_id: str) -> None:
        logging.info(f"Removing Logseq block {block_id}")
        await self.request("logseq.Editor.removeBlock", [block_id])

    async def get_or_create_page(
        self,
        page_name: str,
        properties: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        page = await self.request("logseq.Editor.getPage", [page_name])
        if page:
            return page
        logging.info(f"Creating Logseq page: {page_name}")
        page = await self.request("logseq.Editor.createPage", [
            page_name,
            properties or {},
            {"redirect": False, "createFirstBlock": False},
        ])
        if not page:
            raise TreeStoreError(f"Logseq did not create page {page_name}")
        return page

    async def append_block_in_page(
        self,
        page_name: str,
        content: str,
        properties: Optional[Dict[str, Any]] = None,
    ) -> Block:
        raw = await self.request("logseq.Editor.appendBlockInPage", [
            page_name,
            content,
            {"properties": properties or {}},
        ])
        if not raw or not isinstance(raw, dict) or "uuid" not in raw:
            raise TreeStoreError(f"Logseq did not append a block to {page_name}")
        return self._to_block(raw, None)

    def _to_block(self, raw: Dict[str, Any], parent_uuid: Optional[str]) -> Block:
        """
        Convert a Logseq block entity into a Block.

        Collapsed children may come back as ``["uuid", "..."]`` references
        instead of entities; those are skipped.
        """
        block_uuid = str(raw.get("uuid"))
        children = []
        for child in raw.get("children") or []:
            if isinstance(child, dict):
                children.append(self._to_block(child, block_uuid))
        properties = raw.get("properties") or {}
        return Block(
            uuid=block_uuid,
            content=raw.get("content") or "",
            parent_uuid=parent_uuid,
            properties={self._property_key(k): v for k, v in properties.items()},
            children=children,
        )

    @staticmethod
    def _property_key(key: str) -> str:
        """
        Logseq camelCases property keys in API responses
        (``strokeYBounds`` for ``stroke-y-bounds``).
        """
        out = []
        for i, ch in enumerate(key):
            if ch.isupper() and i > 0:
                out.append("-")
                out.append(ch.lower())
            else:
                out.append(ch)
        return "".join(out)
