"""
Page-level stroke persistence.

A smartpen page maps to one Logseq page with two top-level sections: the
transcript anchor every recognized line hangs from, and the raw stroke data
section holding the chunked stroke storage blocks.
"""

import asyncio
import logging
from typing import List, Optional

from ..adapters.base import TreeStore
from ..models import Block, PageInfo, Stroke
from .codec import (
    DEFAULT_CHUNK_SIZE,
    build_chunks,
    dedupe,
    format_json_block,
    format_page_name,
    from_storage_stroke,
    is_chunked_metadata,
    page_properties,
    parse_chunks,
    parse_json_block,
    parse_legacy_object,
    to_storage_stroke,
)

TRANSCRIPT_SECTION = "## Transcribed Content #Display_No_Properties"
TRANSCRIPT_MARKER = "## Transcribed Content"
STROKE_SECTION = "## Raw Stroke Data"


class StrokeRepository:
    """
    Reads and writes a page's strokes through a tree store.
    """

    def __init__(self, store: TreeStore, chunk_size: int = DEFAULT_CHUNK_SIZE,
                 chunk_write_delay: float = 0.0):
        """
        Initialize the repository.

        Args:
            store: Tree store holding the pages
            chunk_size: Maximum strokes per storage block
            chunk_write_delay: Pause between chunk writes, in seconds
        """
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        self.store = store
        self.chunk_size = chunk_size
        self.chunk_write_delay = chunk_write_delay

    async def ensure_page(self, page_info: PageInfo) -> str:
        """Create the Logseq page for ``page_info`` if needed and return its name."""
        page_name = format_page_name(page_info.book, page_info.page)
        await self.store.get_or_create_page(page_name, page_properties(page_info))
        return page_name

    async def find_section(self, page_name: str, marker: str) -> Optional[Block]:
        """First top-level block whose content contains ``marker``."""
        for block in await self.store.get_page_tree(page_name):
            if marker in (block.content or ""):
                return block
        return None

    async def get_or_create_section(self, page_name: str, content: str, marker: str) -> Block:
        section = await self.find_section(page_name, marker)
        if section is not None:
            return section
        logging.info(f"Creating section '{content}' on {page_name}")
        return await self.store.append_block_in_page(page_name, content)

    async def get_or_create_transcript_anchor(self, page_info: PageInfo) -> str:
        page_name = await self.ensure_page(page_info)
        section = await self.get_or_create_section(page_name, TRANSCRIPT_SECTION, TRANSCRIPT_MARKER)
        return section.uuid

    async def load_transcript_blocks(self, page_info: PageInfo) -> List[Block]:
        """All blocks below the transcript anchor, in document order."""
        page_name = format_page_name(page_info.book, page_info.page)
        section = await self.find_section(page_name, TRANSCRIPT_MARKER)
        if section is None:
            return []
        return [block for child in section.children for block in child.walk()]

    async def load_strokes(self, page_info: PageInfo) -> List[Stroke]:
        """
        Read the stored strokes of a page.

        Handles both the chunked format and the older single-block format.
        Strokes come back in storage order.
        """
        page_name = format_page_name(page_info.book, page_info.page)
        section = await self.find_section(page_name, STROKE_SECTION)
        if section is None or not section.children:
            return []

        first = parse_json_block(section.children[0].content)
        if is_chunked_metadata(first):
            chunks = []
            for child in section.children[1:]:
                data = parse_json_block(child.content)
                if isinstance(data, dict):
                    chunks.append(data)
                else:
                    logging.warning(f"Skipping unreadable stroke chunk block {child.uuid}")
            records, metadata = parse_chunks(first, chunks)
            logging.info(
                f"Read {len(records)} strokes from {metadata['metadata'].get('chunks')} chunks on {page_name}"
            )
        elif isinstance(first, dict) and "strokes" in first:
            logging.info(f"Reading legacy single-block stroke data on {page_name}")
            records = parse_legacy_object(first)
        else:
            logging.warning(f"No readable stroke data on {page_name}")
            return []

        return [from_storage_stroke(record, page_info) for record in records]

    async def merge_incoming(self, page_info: PageInfo, incoming: List[Stroke]) -> List[Stroke]:
        """
        Stored strokes plus the incoming ones not already stored (by id).
        """
        stored = await self.load_strokes(page_info)
        fresh = dedupe(stored, incoming)
        if len(fresh) < len(incoming):
            logging.info(f"Skipped {len(incoming) - len(fresh)} already stored strokes")
        return stored + fresh

    async def save_strokes(self, page_info: PageInfo, strokes: List[Stroke]) -> int:
        """
        Write the full stroke collection of a page.

        Storage blocks are rewritten in place, extra chunks appended and
        surplus chunk blocks removed. Writes are sequential with a pause
        between them so a rate-sensitive store is not flooded.

        Returns:
            Number of chunk blocks written
        """
        records = [to_storage_stroke(s) for s in sorted(strokes, key=lambda s: s.start_time)]
        chunked = build_chunks(records, page_info, self.chunk_size)
        contents = [format_json_block(chunked.metadata)]
        contents.extend(format_json_block(chunk) for chunk in chunked.chunks)

        page_name = await self.ensure_page(page_info)
        section = await self.get_or_create_section(page_name, STROKE_SECTION, STROKE_SECTION)
        existing = list(section.children)

        for position, content in enumerate(contents):
            if position < len(existing):
                await self.store.update_block_content(existing[position].uuid, content)
            else:
                await self.store.create_block(section.uuid, content)
            if self.chunk_write_delay > 0 and position + 1 < len(contents):
                await asyncio.sleep(self.chunk_write_delay)

        for surplus in existing[len(contents):]:
            await self.store.remove_block(surplus.uuid)

        logging.info(
            f"Saved {len(records)} strokes in {len(chunked.chunks)} chunks to {page_name}"
        )
        return len(chunked.chunks)
