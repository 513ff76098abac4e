#!/usr/bin/env python3
"""
PenBridge - Smartpen to Logseq reconciliation

Main entry point for PenBridge. Merges captured strokes into a page's stored
stroke collection, runs a reconciliation pass and prints the pass report.
"""

import asyncio
import json
import logging
import sys
import argparse
from pathlib import Path
from typing import List, Optional

from penbridge.adapters import InMemoryTreeStore, LogseqTreeStore, MyScriptRecognizer, StaticRecognizer
from penbridge.config import config
from penbridge.database import DatabaseManager
from penbridge.errors import PenBridgeError, TransportError
from penbridge.models import PageInfo, PassState, RecognitionResult, ReconciliationReport, Stroke
from penbridge.reconcile import ReconciliationOrchestrator
from penbridge.storage.codec import from_storage_stroke


def setup_logging():
    """Configure logging for the application."""
    level = getattr(logging, config.get("logging.level", "INFO").upper())
    format_str = config.get("logging.format", "%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    log_file = config.log_filename

    logging.basicConfig(
        level=level,
        format=format_str,
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(log_file)
        ]
    )


def load_strokes_file(path: str, page_info: PageInfo) -> List[Stroke]:
    """
    Read strokes from a JSON file.

    Accepts a list of full strokes (with ``dots``) or of storage records
    (with ``points``), or an object holding such a list under ``strokes``.
    """
    with open(path, 'r', encoding='utf-8') as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("strokes", [])

    strokes = []
    for record in data:
        if "points" in record:
            strokes.append(from_storage_stroke(record, page_info))
        else:
            stroke = Stroke.model_validate(record)
            stroke.page_info = stroke.page_info or page_info
            strokes.append(stroke)
    logging.info(f"Loaded {len(strokes)} strokes from {path}")
    return strokes


def load_recognition_file(path: Optional[str]) -> Optional[RecognitionResult]:
    """Read a previously obtained recognition result, if a file was given."""
    if not path:
        return None
    return RecognitionResult.model_validate_json(Path(path).read_text(encoding='utf-8'))


def print_report(report: ReconciliationReport):
    """Print a short human-readable pass summary."""
    stats = report.stats()
    print("\n" + "="*60)
    print(f"Reconciliation of {report.page_key}")
    print("="*60)
    print(f"- Blocks created:   {stats['created']}")
    print(f"- Blocks preserved: {stats['preserved']}")
    print(f"- Errors:           {stats['errors']}")
    print(f"- Strokes removed:  {stats['removed_strokes']}")
    if report.aborted:
        print("- Pass was aborted before all lines were created")
    for outcome in report.outcomes:
        if outcome.error:
            print(f"  line {outcome.line_index} ({outcome.status.value}): {outcome.error}")
    if report.warnings:
        print("\nWarnings (not resolved automatically):")
        for warning in report.warnings:
            print(f"  [{warning.kind}] {warning.message}")


def print_history(db: DatabaseManager, page_key: Optional[str], limit: int):
    passes = db.get_passes(page_key=page_key, limit=limit)
    if not passes:
        print("No reconciliation passes recorded.")
        return
    for record in passes:
        status = "ok" if not record["error_message"] else f"failed: {record['error_message']}"
        print(
            f"#{record['pass_id']} {record['page_key']} {record['finished_at']} "
            f"created={record['created']} preserved={record['preserved']} "
            f"errors={record['errors']} warnings={len(record['warnings'])} {status}"
        )


async def reconcile(orchestrator: ReconciliationOrchestrator, page_info: PageInfo,
                    incoming: List[Stroke], pass_state: PassState) -> ReconciliationReport:
    strokes = await orchestrator.ingest_strokes(page_info, incoming)
    return await orchestrator.reconcile_page(page_info, strokes, pass_state)


async def run_pipeline(args, db: DatabaseManager) -> ReconciliationReport:
    """
    Execute one reconciliation pass for the requested page.
    """
    page_info = PageInfo(section=args.section, owner=args.owner, book=args.book, page=args.page)
    incoming = load_strokes_file(args.strokes, page_info) if args.strokes else []
    pass_state = PassState(
        deleted_stroke_ids=set(args.delete or []),
        pending_recognition=load_recognition_file(args.recognition),
    )

    if args.dry_run:
        logging.info("Dry run: using in-memory store, nothing is written to Logseq")
        store = InMemoryTreeStore()
        recognizer = StaticRecognizer()
        orchestrator = ReconciliationOrchestrator(
            store, recognizer,
            tolerance=config.tolerance,
            chunk_size=config.chunk_size,
            database_manager=db,
        )
        return await reconcile(orchestrator, page_info, incoming, pass_state)

    async with LogseqTreeStore() as store, MyScriptRecognizer(database_manager=db) as recognizer:
        graph = await store.test_connection()
        if graph is None:
            raise PenBridgeError("Logseq has no graph open")
        logging.info(f"Connected to Logseq graph: {graph}")

        orchestrator = ReconciliationOrchestrator(
            store, recognizer,
            tolerance=config.tolerance,
            chunk_size=config.chunk_size,
            chunk_write_delay=config.chunk_write_delay,
            database_manager=db,
        )
        return await reconcile(orchestrator, page_info, incoming, pass_state)


def parse_arguments():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="PenBridge - Smartpen to Logseq reconciliation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py --book 3017 --page 42 --strokes capture.json    # Reconcile new ink
  python main.py --book 3017 --page 42 --delete s1700000000123  # Remove one stroke
  python main.py --book 3017 --page 42 --strokes capture.json --dry-run
  python main.py --history                                        # Show recent passes
        """
    )

    parser.add_argument("--book", type=int, help="Notebook number")
    parser.add_argument("--page", type=int, help="Page number")
    parser.add_argument("--section", type=int, default=0, help="Ncode section (default: 0)")
    parser.add_argument("--owner", type=int, default=0, help="Ncode owner (default: 0)")

    parser.add_argument(
        "--strokes",
        type=str,
        help="JSON file with newly captured strokes"
    )

    parser.add_argument(
        "--recognition",
        type=str,
        help="JSON file with a recognition result to use instead of calling MyScript"
    )

    parser.add_argument(
        "--delete",
        nargs="+",
        metavar="STROKE_ID",
        help="Stroke ids to remove from the page"
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Run against an in-memory store instead of Logseq"
    )

    parser.add_argument(
        "--history",
        action="store_true",
        help="Show recorded reconciliation passes and exit"
    )

    parser.add_argument(
        "--limit",
        type=int,
        default=20,
        help="Number of passes shown with --history (default: 20)"
    )

    parser.add_argument(
        "--version",
        action="version",
        version="PenBridge 0.1.0"
    )

    args = parser.parse_args()
    if not args.history and (args.book is None or args.page is None):
        parser.error("--book and --page are required unless --history is given")
    return args


def main():
    """Main entry point."""
    args = parse_arguments()
    setup_logging()

    logging.info("PenBridge - Smartpen to Logseq reconciliation")

    with DatabaseManager(config.database_filename) as db:
        db.initialize_database()

        if args.history:
            page_key = None
            if args.book is not None and args.page is not None:
                page_key = PageInfo(section=args.section, owner=args.owner, book=args.book, page=args.page).key
            print_history(db, page_key, args.limit)
            return

        try:
            report = asyncio.run(run_pipeline(args, db))
            print_report(report)

        except KeyboardInterrupt:
            logging.info("Reconciliation interrupted by user")
            print("\nReconciliation interrupted.")

        except TransportError as e:
            logging.error(f"Reconciliation failed: {e}")
            if e.partial_report is not None:
                print_report(e.partial_report)
            print(f"\nReconciliation failed: {e}")
            sys.exit(1)

        except (PenBridgeError, OSError, ValueError) as e:
            logging.error(f"Reconciliation failed: {e}")
            print(f"\nReconciliation failed: {e}")
            sys.exit(1)


if __name__ == "__main__":
    main()
