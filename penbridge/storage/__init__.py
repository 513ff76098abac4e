"""Stroke storage: codec and page-level repository."""

from .codec import ChunkedStrokes, build_chunks, parse_chunks, dedupe
from .repository import StrokeRepository

__all__ = ["ChunkedStrokes", "build_chunks", "parse_chunks", "dedupe", "StrokeRepository"]
