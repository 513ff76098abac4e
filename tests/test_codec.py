"""
Tests for stroke identity and the chunked storage codec.
"""

import unittest

import pytest

from penbridge.models import Dot, PageInfo, StorageStroke, Stroke
from penbridge.storage.codec import (
    build_chunks,
    calculate_bounds,
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

PAGE = PageInfo(section=3, owner=27, book=3017, page=42)


def make_record(start_time: int, y: float = 10.0, block_uuid=None) -> StorageStroke:
    return StorageStroke(
        id=f"s{start_time}",
        start_time=start_time,
        end_time=start_time + 50,
        block_uuid=block_uuid,
        points=[(1.0, y, start_time), (2.0, y + 1, start_time + 10)],
    )


class TestStorageConversion(unittest.TestCase):
    """Test conversion between captured strokes and storage records."""

    def test_pressure_and_tilt_are_dropped(self):
        stroke = Stroke(
            start_time=100,
            end_time=150,
            dots=[Dot(x=1.5, y=2.5, timestamp=100, force=0.8, tilt_x=10, tilt_y=20)],
            block_uuid="abc",
        )
        record = to_storage_stroke(stroke)
        self.assertEqual(record.id, "s100")
        self.assertEqual(record.points, [(1.5, 2.5, 100)])
        self.assertEqual(record.block_uuid, "abc")

        data = record.to_json_dict()
        self.assertEqual(set(data), {"id", "startTime", "endTime", "blockUuid", "points"})

    def test_block_uuid_restored_verbatim(self):
        stroke = from_storage_stroke(
            {"id": "s5", "startTime": 5, "endTime": 9, "blockUuid": "64f0-b12d", "points": [[1, 2, 5]]},
            PAGE,
        )
        self.assertEqual(stroke.block_uuid, "64f0-b12d")
        self.assertEqual(stroke.page_info, PAGE)
        self.assertEqual(stroke.dots[0].y, 2)
        self.assertIsNone(stroke.dots[0].force)

    def test_missing_block_uuid_becomes_none(self):
        stroke = from_storage_stroke({"id": "s5", "startTime": 5, "endTime": 9, "points": []})
        self.assertIsNone(stroke.block_uuid)
        empty = from_storage_stroke({"id": "s6", "startTime": 6, "endTime": 9, "blockUuid": "", "points": []})
        self.assertIsNone(empty.block_uuid)

    def test_calculate_bounds(self):
        bounds = calculate_bounds([make_record(1, y=10), make_record(2, y=30)])
        self.assertEqual(bounds, {"minX": 1.0, "maxX": 2.0, "minY": 10.0, "maxY": 31.0})
        self.assertEqual(calculate_bounds([]), {"minX": 0, "maxX": 0, "minY": 0, "maxY": 0})


class TestChunking(unittest.TestCase):
    """Test splitting records into storage chunks."""

    def test_exactly_one_chunk_for_chunk_size_records(self):
        records = [make_record(i) for i in range(200)]
        chunked = build_chunks(records, PAGE, chunk_size=200)

        self.assertEqual(len(chunked.chunks), 1)
        self.assertEqual(chunked.chunks[0]["strokeCount"], 200)
        self.assertEqual(chunked.metadata["metadata"]["chunks"], 1)
        self.assertEqual(chunked.metadata["metadata"]["totalStrokes"], 200)

    def test_one_extra_record_adds_a_chunk(self):
        records = [make_record(i) for i in range(201)]
        chunked = build_chunks(records, PAGE, chunk_size=200)

        self.assertEqual(len(chunked.chunks), 2)
        self.assertEqual([c["chunkIndex"] for c in chunked.chunks], [0, 1])
        self.assertEqual(chunked.chunks[1]["strokeCount"], 1)

    def test_metadata_layout(self):
        chunked = build_chunks([make_record(1)], PAGE, chunk_size=10)
        self.assertEqual(chunked.metadata["version"], "1.0")
        self.assertEqual(chunked.metadata["pageInfo"], {"section": 3, "owner": 27, "book": 3017, "page": 42})
        self.assertEqual(chunked.metadata["metadata"]["chunkSize"], 10)
        self.assertIn("lastUpdated", chunked.metadata["metadata"])
        self.assertTrue(is_chunked_metadata(chunked.metadata))

    def test_invalid_chunk_size(self):
        with self.assertRaises(ValueError):
            build_chunks([make_record(1)], PAGE, chunk_size=0)

    def test_empty_collection(self):
        chunked = build_chunks([], PAGE)
        self.assertEqual(chunked.chunks, [])
        records, _ = parse_chunks(chunked.metadata, chunked.chunks)
        self.assertEqual(records, [])

    def test_parse_keeps_node_order(self):
        records = [make_record(i) for i in (5, 1, 3)]
        chunked = build_chunks(records, PAGE, chunk_size=2)
        parsed, metadata = parse_chunks(chunked.metadata, chunked.chunks)
        self.assertEqual([r.id for r in parsed], ["s5", "s1", "s3"])
        self.assertIs(metadata, chunked.metadata)

    def test_legacy_object(self):
        legacy = {
            "version": "1.0",
            "pageInfo": {"book": 3017, "page": 42},
            "strokes": [make_record(1).to_json_dict(), make_record(2).to_json_dict()],
            "metadata": {"strokeCount": 2},
        }
        self.assertFalse(is_chunked_metadata(legacy))
        self.assertEqual([r.id for r in parse_legacy_object(legacy)], ["s1", "s2"])


@pytest.mark.parametrize("count,chunk_size", [(1, 1), (7, 3), (200, 200), (450, 200), (12, 50)])
def test_round_trip_reconstructs_the_same_set(count, chunk_size):
    records = [make_record(1000 + i, y=float(i), block_uuid="b" if i % 2 else None) for i in range(count)]
    chunked = build_chunks(records, PAGE, chunk_size=chunk_size)

    # Chunks travel through the tree as fenced JSON blocks
    metadata = parse_json_block(format_json_block(chunked.metadata))
    chunks = [parse_json_block(format_json_block(c)) for c in chunked.chunks]
    parsed, _ = parse_chunks(metadata, chunks)

    assert {r.id for r in parsed} == {r.id for r in records}
    assert {(r.id, r.block_uuid) for r in parsed} == {(r.id, r.block_uuid) for r in records}


def test_dedupe_by_id_only():
    existing = [Stroke(start_time=1, end_time=2), Stroke(start_time=3, end_time=4)]
    incoming = [
        Stroke(start_time=3, end_time=99),
        Stroke(start_time=5, end_time=6),
        # Same geometry as an existing stroke but a different id: kept
        Stroke(start_time=2, end_time=2),
    ]
    fresh = dedupe(existing, incoming)
    assert [s.id for s in fresh] == ["s5", "s2"]


def test_json_block_parsing():
    assert parse_json_block("```json\n{\"a\": 1}\n```") == {"a": 1}
    assert parse_json_block("```\n[1, 2]\n```") == [1, 2]
    assert parse_json_block("no fence here") is None
    assert parse_json_block("```json\n{broken\n```") is None
    assert parse_json_block("") is None


def test_page_naming():
    assert format_page_name(3017, 42) == "Smartpen Data/B3017/P42"
    assert page_properties(PAGE) == {"Book": "3017", "Page": "42"}
