"""
PenBridge: keeps smartpen ink and Logseq notes in step.

Recognizes handwritten strokes, materializes each recognized line as a Logseq
block and ties the strokes behind it to that block, without ever rewriting
what earlier passes produced.
"""

__version__ = "0.1.0"
__author__ = "PenBridge Project"

# Import main components
from .database.manager import DatabaseManager
from .models import PageInfo, PassState, ReconciliationReport, Stroke
from .reconcile import ReconciliationOrchestrator
from .storage import StrokeRepository
from .adapters import InMemoryTreeStore, LogseqTreeStore, MyScriptRecognizer, StaticRecognizer

__all__ = [
    "DatabaseManager",
    "PageInfo",
    "PassState",
    "ReconciliationReport",
    "Stroke",
    "ReconciliationOrchestrator",
    "StrokeRepository",
    "InMemoryTreeStore",
    "LogseqTreeStore",
    "MyScriptRecognizer",
    "StaticRecognizer"
]
