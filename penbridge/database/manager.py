"""
Database manager for PenBridge.

This module keeps a local DuckDB ledger of reconciliation passes and
recognition calls, so a pass can be inspected after the fact.
"""

import duckdb
import json
import logging
from typing import List, Optional, Dict

from ..models import ReconciliationReport


class DatabaseManager:
    """
    Manages the DuckDB database holding the run history.
    """

    def __init__(self, db_path: str = "penbridge.db"):
        """
        Initialize the database manager.

        Args:
            db_path: Path to the DuckDB database file (":memory:" for tests)
        """
        self.db_path = db_path
        self.connection = None

    def connect(self):
        """Establish connection to the database."""
        self.connection = duckdb.connect(self.db_path)

    def disconnect(self):
        """Close the database connection."""
        if self.connection:
            self.connection.close()
            self.connection = None

    def __enter__(self):
        """Context manager entry."""
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()

    def initialize_database(self):
        """
        Create all necessary tables if they don't exist.
        """
        if not self.connection:
            raise RuntimeError("Database connection not established")

        self.connection.execute("CREATE SEQUENCE IF NOT EXISTS pass_id_seq;")
        self.connection.execute("""
            CREATE TABLE IF NOT EXISTS reconciliation_passes (
                pass_id BIGINT PRIMARY KEY DEFAULT nextval('pass_id_seq'),
                page_key VARCHAR NOT NULL,
                created INTEGER NOT NULL,
                preserved INTEGER NOT NULL,
                errors INTEGER NOT NULL,
                warnings TEXT,
                removed_strokes INTEGER NOT NULL,
                persisted BOOLEAN NOT NULL,
                aborted BOOLEAN NOT NULL,
                error_message TEXT,
                started_at TIMESTAMP,
                finished_at TIMESTAMP,
                logged_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        self.connection.execute("CREATE SEQUENCE IF NOT EXISTS call_id_seq;")
        self.connection.execute("""
            CREATE TABLE IF NOT EXISTS recognition_calls (
                call_id BIGINT PRIMARY KEY DEFAULT nextval('call_id_seq'),
                page_key VARCHAR,
                stroke_count INTEGER NOT NULL,
                line_count INTEGER,
                success BOOLEAN NOT NULL,
                error_message TEXT,
                execution_time_ms INTEGER,
                called_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

    def log_pass(self, report: ReconciliationReport) -> Optional[int]:
        """
        Record a finished reconciliation pass.

        Args:
            report: The pass report

        Returns:
            The new pass id
        """
        if not self.connection:
            raise RuntimeError("Database connection not established")

        warnings = json.dumps([w.model_dump() for w in report.warnings])
        result = self.connection.execute("""
            INSERT INTO reconciliation_passes (
                page_key, created, preserved, errors, warnings, removed_strokes,
                persisted, aborted, error_message, started_at, finished_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING pass_id
        """, [
            report.page_key, report.created, report.preserved, report.errors,
            warnings, len(report.removed_stroke_ids), report.persisted,
            report.aborted, report.error, report.started_at, report.finished_at
        ]).fetchone()
        return result[0] if result else None

    def get_passes(self, page_key: Optional[str] = None, limit: Optional[int] = None) -> List[Dict]:
        """
        Retrieve logged passes, newest first.

        Args:
            page_key: Filter by page key (optional)
            limit: Limit number of results

        Returns:
            List of pass records
        """
        if not self.connection:
            raise RuntimeError("Database connection not established")

        query = """
            SELECT pass_id, page_key, created, preserved, errors, warnings,
                   removed_strokes, persisted, aborted, error_message,
                   started_at, finished_at
            FROM reconciliation_passes
            WHERE 1=1
        """
        params = []

        if page_key:
            query += " AND page_key = ?"
            params.append(page_key)

        query += " ORDER BY pass_id DESC"

        if limit:
            query += f" LIMIT {int(limit)}"

        results = self.connection.execute(query, params).fetchall()

        return [
            {
                "pass_id": row[0],
                "page_key": row[1],
                "created": row[2],
                "preserved": row[3],
                "errors": row[4],
                "warnings": json.loads(row[5]) if row[5] else [],
                "removed_strokes": row[6],
                "persisted": row[7],
                "aborted": row[8],
                "error_message": row[9],
                "started_at": row[10],
                "finished_at": row[11]
            }
            for row in results
        ]

    def log_recognition_call(
        self,
        page_key: Optional[str],
        stroke_count: int,
        line_count: Optional[int] = None,
        success: bool = True,
        error_message: Optional[str] = None,
        execution_time_ms: Optional[int] = None
    ) -> Optional[int]:
        """
        Log a recognition service call.
        """
        if not self.connection:
            raise RuntimeError("Database connection not established")

        result = self.connection.execute("""
            INSERT INTO recognition_calls (
                page_key, stroke_count, line_count, success, error_message,
                execution_time_ms
            ) VALUES (?, ?, ?, ?, ?, ?)
            RETURNING call_id
        """, [
            page_key, stroke_count, line_count, success, error_message,
            execution_time_ms
        ]).fetchone()
        return result[0] if result else None

    def get_recognition_calls(
        self,
        page_key: Optional[str] = None,
        success_only: bool = False,
        limit: Optional[int] = None
    ) -> List[Dict]:
        """
        Retrieve recognition calls from the database.

        Args:
            page_key: Filter by page key (optional)
            success_only: Only return successful calls
            limit: Limit number of results

        Returns:
            List of recognition call records
        """
        if not self.connection:
            raise RuntimeError("Database connection not established")

        query = """
            SELECT call_id, page_key, stroke_count, line_count, success,
                   error_message, execution_time_ms, called_at
            FROM recognition_calls
            WHERE 1=1
        """
        params = []

        if page_key:
            query += " AND page_key = ?"
            params.append(page_key)

        if success_only:
            query += " AND success = true"

        query += " ORDER BY call_id DESC"

        if limit:
            query += f" LIMIT {int(limit)}"

        results = self.connection.execute(query, params).fetchall()
        if results:
            logging.debug(f"Fetched {len(results)} recognition calls")

        return [
            {
                "call_id": row[0],
                "page_key": row[1],
                "stroke_count": row[2],
                "line_count": row[3],
                "success": row[4],
                "error_message": row[5],
                "execution_time_ms": row[6],
                "called_at": row[7]
            }
            for row in results
        ]
