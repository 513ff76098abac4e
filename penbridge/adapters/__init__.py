"""
Adapters for the external collaborators: the tree store and the
handwriting recognition service.
"""

from .base import TreeStore, RecognitionService
from .logseq import LogseqTreeStore
from .myscript import MyScriptRecognizer
from .memory import InMemoryTreeStore, StaticRecognizer

__all__ = [
    "TreeStore",
    "RecognitionService",
    "LogseqTreeStore",
    "MyScriptRecognizer",
    "InMemoryTreeStore",
    "StaticRecognizer"
]
