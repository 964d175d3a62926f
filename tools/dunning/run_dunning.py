#!/usr/bin/env python3
"""Dunning Runner.

Command-line entry point for the scheduler: runs the daily dunning pass for
all schools or a single one. Supports dry-run mode and date override.
"""

import argparse
import json
import logging
import os
import sys
from datetime import date
from pathlib import Path

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", ".."))

from sqlalchemy import create_engine

from agents.dunning import DunningEngine, StepCatalog
from agents.dunning.store import SqlDunningStore
from agents.dunning.templates import FileTemplateRepository
from backend.core.config import settings
from backend.core.observability import init_observability
from backend.core.observability.metrics import get_metrics


def parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"Invalid date (expected YYYY-MM-DD): {value}") from e


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Dunning Runner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Daily run for every school
  python tools/dunning/run_dunning.py

  # Preview one school for a given day
  python tools/dunning/run_dunning.py --school <uuid> --date 2024-01-10 --dry-run
        """,
    )
    parser.add_argument("--school", help="Process only this school (default: all schools)")
    parser.add_argument("--date", type=parse_date, help="Reference date YYYY-MM-DD (default: today per school)")
    parser.add_argument("--dry-run", action="store_true", help="Render only: nothing is sent, logged or counted")
    parser.add_argument("--database-url", help="Database URL (default: DATABASE_URL setting)")
    parser.add_argument("--templates", help="YAML template library instead of the database table")
    parser.add_argument(
        "--ensure-defaults",
        action="store_true",
        help="Seed the default ruler for --school when it has no steps",
    )
    parser.add_argument("--report-path", help="Also write the JSON summary to this file")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    init_observability(enable_metrics=settings.enable_metrics, log_level="DEBUG" if args.verbose else None)
    logger = logging.getLogger(__name__)

    try:
        engine = create_engine(args.database_url or settings.database_url, future=True)
        store = SqlDunningStore(engine)
        templates = FileTemplateRepository(args.templates) if args.templates else None
        dunning = DunningEngine.from_store(store, templates=templates)

        if args.ensure_defaults:
            if not args.school:
                logger.error("--ensure-defaults requires --school")
                return 2
            StepCatalog(store).ensure_defaults(args.school)

        if args.school:
            result = dunning.run_for_school(args.school, args.date, dry_run=args.dry_run)
            report = result.to_dict()
            ok = result.success
        else:
            summary = dunning.run_daily(args.date, dry_run=args.dry_run)
            report = summary.to_dict()
            ok = not summary.failed_schools
    except Exception as e:
        logger.error("Dunning run failed", extra={"error": str(e)})
        return 1

    report["metrics"] = get_metrics()
    output = json.dumps(report, indent=2, ensure_ascii=False, default=str)
    print(output)

    if args.report_path:
        path = Path(args.report_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(output, encoding="utf-8")

    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
