"""
Stroke identity and chunked storage codec.

Strokes are persisted into the Logseq tree as fenced JSON blocks: one metadata
block followed by chunk blocks of at most ``chunk_size`` strokes each, so no
single block exceeds the store's payload ceiling.
"""

import json
import logging
import re
import time
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from ..models import Dot, PageInfo, StorageStroke, Stroke, generate_stroke_id

STORAGE_VERSION = "1.0"
DEFAULT_CHUNK_SIZE = 200

_JSON_FENCE_RE = re.compile(r"```json\s*\n([\s\S]*?)\n```")
_PLAIN_FENCE_RE = re.compile(r"```\s*\n([\s\S]*?)\n```")


class ChunkedStrokes(BaseModel):
    """Serialized form of a page's strokes: metadata record plus chunk records."""

    metadata: Dict[str, Any]
    chunks: List[Dict[str, Any]] = Field(default_factory=list)


def to_storage_stroke(stroke: Stroke) -> StorageStroke:
    """
    Convert a captured stroke into its storage record.

    Pressure and tilt are dropped on purpose; they make up most of the payload
    and nothing downstream reads them.
    """
    return StorageStroke(
        id=stroke.id,
        start_time=stroke.start_time,
        end_time=stroke.end_time,
        block_uuid=stroke.block_uuid,
        points=[(dot.x, dot.y, dot.timestamp) for dot in stroke.dots],
    )


def from_storage_stroke(record: Any, page_info: Optional[PageInfo] = None) -> Stroke:
    """Restore a stroke from a storage record (model or raw dict)."""
    if not isinstance(record, StorageStroke):
        record = StorageStroke.model_validate(record)
    if record.id != generate_stroke_id(record.start_time):
        logging.warning(
            f"Stored stroke id {record.id} does not match its start time {record.start_time}"
        )
    return Stroke(
        start_time=record.start_time,
        end_time=record.end_time,
        dots=[Dot(x=x, y=y, timestamp=t) for x, y, t in record.points],
        page_info=page_info,
        block_uuid=record.block_uuid or None,
    )


def calculate_bounds(records: List[StorageStroke]) -> Dict[str, float]:
    """Bounding box over all stored points; zeros when there are none."""
    xs: List[float] = []
    ys: List[float] = []
    for record in records:
        for x, y, _ in record.points:
            xs.append(x)
            ys.append(y)
    if not xs:
        return {"minX": 0, "maxX": 0, "minY": 0, "maxY": 0}
    return {"minX": min(xs), "maxX": max(xs), "minY": min(ys), "maxY": max(ys)}


def dedupe(existing: List[Any], incoming: List[Any]) -> List[Any]:
    """
    Return the incoming strokes whose id is not already stored.

    Exact id equality only; near-duplicates with different ids are kept.
    """
    existing_ids = {item.id for item in existing}
    return [item for item in incoming if item.id not in existing_ids]


def build_chunks(
    records: List[StorageStroke],
    page_info: PageInfo,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> ChunkedStrokes:
    """
    Split storage records into fixed-size chunks.

    Records are chunked in the order given; callers sort by start time first.
    """
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")

    chunks = []
    for chunk_index, offset in enumerate(range(0, len(records), chunk_size)):
        window = records[offset:offset + chunk_size]
        chunks.append({
            "chunkIndex": chunk_index,
            "strokeCount": len(window),
            "strokes": [record.to_json_dict() for record in window],
        })

    metadata = {
        "version": STORAGE_VERSION,
        "pageInfo": {
            "section": page_info.section,
            "owner": page_info.owner,
            "book": page_info.book,
            "page": page_info.page,
        },
        "metadata": {
            "lastUpdated": int(time.time() * 1000),
            "totalStrokes": len(records),
            "bounds": calculate_bounds(records),
            "chunks": len(chunks),
            "chunkSize": chunk_size,
        },
    }
    return ChunkedStrokes(metadata=metadata, chunks=chunks)


def parse_chunks(
    metadata: Dict[str, Any],
    chunks: List[Dict[str, Any]],
) -> Tuple[List[StorageStroke], Dict[str, Any]]:
    """
    Concatenate chunk contents in the order given.

    Chunk order comes from sibling order in the tree; nothing is re-sorted.
    """
    records: List[StorageStroke] = []
    for chunk in chunks:
        for raw in chunk.get("strokes", []):
            records.append(StorageStroke.model_validate(raw))

    expected = (metadata.get("metadata") or {}).get("totalStrokes")
    if expected is not None and expected != len(records):
        logging.warning(
            f"Chunked stroke data declares {expected} strokes but {len(records)} were read"
        )
    return records, metadata


def is_chunked_metadata(data: Optional[Dict[str, Any]]) -> bool:
    """True if a parsed block is the metadata record of the chunked format."""
    return bool(data) and isinstance(data.get("metadata"), dict) and "chunks" in data["metadata"]


def parse_legacy_object(data: Dict[str, Any]) -> List[StorageStroke]:
    """Read strokes from the older single-block storage object."""
    return [StorageStroke.model_validate(raw) for raw in data.get("strokes", [])]


def format_json_block(data: Any) -> str:
    """Wrap an object as fenced JSON block content."""
    return "```json\n" + json.dumps(data, indent=2) + "\n```"


def parse_json_block(content: str) -> Optional[Any]:
    """Extract fenced JSON from block content; None if absent or invalid."""
    if not content:
        return None
    match = _JSON_FENCE_RE.search(content) or _PLAIN_FENCE_RE.search(content)
    if not match:
        return None
    try:
        return json.loads(match.group(1))
    except json.JSONDecodeError as e:
        logging.warning(f"Failed to parse JSON block: {e}")
        return None


def format_page_name(book: int, page: int) -> str:
    """Logseq page name for a notebook page, e.g. ``Smartpen Data/B3017/P42``."""
    return f"Smartpen Data/B{book}/P{page}"


def page_properties(page_info: PageInfo) -> Dict[str, str]:
    """Page-level properties written when the Logseq page is created."""
    return {"Book": str(page_info.book), "Page": str(page_info.page)}
