"""Run history ledger for PenBridge."""

from .manager import DatabaseManager

__all__ = ["DatabaseManager"]
