"""
Parse a local export.zip without touching the database.

Usage:
    python -m scripts.process_archive path/to/export.zip
    python -m scripts.process_archive path/to/export.zip --json --all-days
"""

import argparse
import json
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.exceptions import ETLException
from core.logging import setup_logging
from ingestion.extractors.export_parser import format_summary_for_log
from ingestion.runner import parse_archive
from ingestion.transformers.sleep_aggregator import SleepWindowPolicy

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Extract metric rows from an Apple Health export.zip")
    parser.add_argument("zip_path", help="Path to export.zip")
    parser.add_argument("--json", action="store_true", help="Print the summary and rows as JSON")
    parser.add_argument("--all-days", action="store_true", help="Emit one sleep row per day with data")
    parser.add_argument("--window-days", type=int, default=settings.SLEEP_WINDOW_DAYS)
    parser.add_argument("--log-level", default=settings.LOG_LEVEL)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)

    policy = SleepWindowPolicy(
        window_days=args.window_days,
        min_days=settings.SLEEP_MIN_DAYS,
        emit_all_days=args.all_days or settings.SLEEP_EMIT_ALL_DAYS,
    )

    try:
        result = parse_archive(args.zip_path, policy)
    except ETLException as e:
        logger.error(str(e))
        return 1

    if args.json:
        print(json.dumps({
            "summary": format_summary_for_log(result.summary),
            "rows": [row.model_dump(mode="json") for row in result.rows],
        }, indent=2))
        return 0

    counts = {}
    for row in result.rows:
        counts[row.metric_code] = counts.get(row.metric_code, 0) + 1

    print(f"Scanned {result.summary.total_scanned} records, matched {result.summary.total_matched}")
    print(f"Metric rows: {len(result.rows)}")
    for code in sorted(counts):
        print(f"  {code:<22} {counts[code]}")
    if result.summary.errors:
        print(f"Errors: {len(result.summary.errors) + result.summary.errors_dropped} (first: {result.summary.errors[0]})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
