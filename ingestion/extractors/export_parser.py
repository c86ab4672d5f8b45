"""
Streaming extractor for Apple Health export.xml

The export document routinely runs to hundreds of megabytes, so it is never
loaded as a tree. lxml's iterparse walks it incrementally:

- Record attributes are read on the start event and the element is never
  looked at again
- Every completed child of the root is cleared and detached from the root,
  so memory stays bounded by the buffered records, not by the document
- Markup damage (truncated files, stray bytes) is recovered by the parser
  and logged; a single malformed Record is counted and skipped

Matched records travel through one of three lanes (see
ingestion.transformers.mapping): direct records become metric rows on the
spot, interval and paired records are buffered and handed to the
aggregation engine once the document ends.
"""

from collections import defaultdict
from datetime import datetime, timezone
from typing import IO, Any, Dict, List, Optional
import logging
import math
import time

from lxml import etree

from core.exceptions import ParseError
from schemas.metrics import (
    RawRecord,
    MetricRow,
    KindStats,
    ParseSummary,
    ParseResult,
)
from ingestion.transformers.mapping import (
    Lane,
    KindMapping,
    KIND_MAPPINGS,
    ASLEEP_CATEGORIES,
    NON_SLEEP_CATEGORIES,
)
from ingestion.transformers.sleep_aggregator import SleepWindowPolicy, aggregate_sleep
from ingestion.transformers.pairing import pair_records

logger = logging.getLogger(__name__)

APPLE_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S %z"

MAX_SAMPLE_VALUES = 5
MAX_ERRORS = 100
PROGRESS_EVERY_RECORDS = 100_000
PROGRESS_EVERY_SECONDS = 30.0


def parse_timestamp(raw: str) -> datetime:
    """
    Parse an export timestamp into an aware UTC datetime.

    Apple writes "2024-01-15 07:12:03 -0500"; ISO-8601 is accepted as well.
    Values without an offset are taken as UTC.

    Raises:
        ValueError: if the value is empty or matches neither format
    """
    if not raw:
        raise ValueError("empty timestamp")

    raw = raw.strip()
    try:
        parsed = datetime.strptime(raw, APPLE_TIMESTAMP_FORMAT)
    except ValueError:
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            raise ValueError(f"unrecognized timestamp {raw!r}")

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class ExportParser:
    """
    One pass over one export document.

    Usage:
        parser = ExportParser(sleep_policy=SleepWindowPolicy())
        result = parser.parse(stream)

    Not reusable: counters and buffers belong to a single document.
    """

    def __init__(self, sleep_policy: Optional[SleepWindowPolicy] = None):
        self.sleep_policy = sleep_policy or SleepWindowPolicy()
        self.summary = ParseSummary()

        self.direct_rows: List[MetricRow] = []
        self.interval_buffer: List[RawRecord] = []
        self.paired_buffer: Dict[str, List[RawRecord]] = defaultdict(list)

        self._started = 0.0
        self._last_progress = 0.0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def parse(self, stream: IO[bytes]) -> ParseResult:
        """
        Stream the document and return the summary plus metric rows.

        Rows are ordered direct, interval (day buckets), paired.

        Raises:
            ParseError: if the stream holds no parsable XML at all
        """
        self._started = self._last_progress = time.monotonic()

        context = etree.iterparse(
            stream,
            events=("start", "end"),
            recover=True,
            huge_tree=True,
        )

        depth = 0
        elements = 0
        try:
            for event, elem in context:
                if event == "start":
                    depth += 1
                    elements += 1
                    if elem.tag == "Record":
                        self._handle_record(elem.attrib)
                    continue

                # Completed child of the root: drop it and everything before it
                if depth == 2:
                    elem.clear(keep_tail=True)
                    parent = elem.getparent()
                    if parent is not None:
                        while elem.getprevious() is not None:
                            del parent[0]
                depth -= 1
        except etree.XMLSyntaxError as e:
            if elements == 0:
                raise ParseError(
                    "export.xml could not be parsed",
                    context={"error": str(e)},
                    original_exception=e
                )
            self._error(f"XML stream ended early: {e}")
            logger.warning(f"XML stream ended early after {self.summary.total_scanned} records: {e}")

        if elements == 0:
            raise ParseError("export.xml is empty or contains no XML elements")

        for entry in context.error_log:
            self._error(f"XML recovered at line {entry.line}: {entry.message}")

        return self._finish()

    # ------------------------------------------------------------------
    # Record handling
    # ------------------------------------------------------------------

    def _handle_record(self, attrs) -> None:
        self.summary.total_scanned += 1
        self._maybe_log_progress()

        kind = attrs.get("type")
        mapping = KIND_MAPPINGS.get(kind)
        if mapping is None:
            return

        self.summary.total_matched += 1

        value = attrs.get("value")
        unit = attrs.get("unit")
        start_raw = attrs.get("startDate")
        end_raw = attrs.get("endDate")

        stats = self.summary.by_kind.get(kind)
        if stats is None:
            stats = self.summary.by_kind[kind] = KindStats(metric_code=mapping.metric_code)
        stats.count += 1
        if value and len(stats.sample_values) < MAX_SAMPLE_VALUES:
            stats.sample_values.append(f"{value} {unit or ''}".strip())

        try:
            start = parse_timestamp(start_raw) if start_raw else None
            end = parse_timestamp(end_raw) if end_raw else None
        except ValueError as e:
            self._error(f"{kind}: {e}")
            return

        if start is None and end is None:
            self._error(f"{kind}: missing startDate and endDate")
            return

        self._track_range(stats, end or start)

        if mapping.lane == Lane.DIRECT:
            self._direct(kind, mapping, value, unit, start, end)
        elif mapping.lane == Lane.INTERVAL:
            self._interval(kind, value, unit, start, end)
        elif mapping.lane == Lane.PAIRED:
            self._paired(kind, mapping, value, unit, start, end)

    def _direct(self, kind: str, mapping: KindMapping, value, unit, start, end) -> None:
        numeric = self._numeric(kind, value)
        if numeric is None:
            return

        self.direct_rows.append(MetricRow(
            metric_code=mapping.metric_code,
            value=numeric,
            unit=mapping.unit or unit or "",
            measured_at=end or start,
        ))
        self.summary.direct_rows += 1

    def _interval(self, kind: str, value, unit, start, end) -> None:
        if not value:
            self._error(f"{kind}: missing category value")
            return
        if start is None or end is None:
            self._error(f"{kind}: interval needs both startDate and endDate")
            return

        categories = self.summary.sleep_categories
        categories[value] = categories.get(value, 0) + 1

        self.interval_buffer.append(RawRecord(kind=kind, value=value, unit=unit, start=start, end=end))
        self.summary.interval_records += 1

    def _paired(self, kind: str, mapping: KindMapping, value, unit, start, end) -> None:
        if self._numeric(kind, value) is None:
            return

        counts = self.summary.paired_counts
        counts[mapping.sub_kind] = counts.get(mapping.sub_kind, 0) + 1

        self.paired_buffer[mapping.sub_kind].append(RawRecord(
            kind=kind,
            value=value,
            unit=unit,
            start=start or end,
            end=end or start,
        ))
        self.summary.paired_records += 1

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _numeric(self, kind: str, value: Optional[str]) -> Optional[float]:
        try:
            numeric = float(value)
        except (TypeError, ValueError):
            numeric = None
        if numeric is None or not math.isfinite(numeric):
            self._error(f"{kind}: non-numeric value {value!r}")
            return None
        return numeric

    @staticmethod
    def _track_range(stats: KindStats, ts: datetime) -> None:
        if stats.oldest is None or ts < stats.oldest:
            stats.oldest = ts
        if stats.newest is None or ts > stats.newest:
            stats.newest = ts

    def _error(self, message: str) -> None:
        if len(self.summary.errors) < MAX_ERRORS:
            self.summary.errors.append(message)
        else:
            self.summary.errors_dropped += 1

    def _maybe_log_progress(self) -> None:
        scanned = self.summary.total_scanned
        now = time.monotonic()
        if scanned % PROGRESS_EVERY_RECORDS != 0 and now - self._last_progress < PROGRESS_EVERY_SECONDS:
            return

        elapsed = max(now - self._started, 1e-6)
        logger.info(
            f"Parse progress: {scanned} records scanned, "
            f"{self.summary.total_matched} matched, "
            f"{int(scanned / elapsed)} records/s"
        )
        self._last_progress = now

    def _finish(self) -> ParseResult:
        unknown_sleep = {
            category: count
            for category, count in self.summary.sleep_categories.items()
            if category not in ASLEEP_CATEGORIES and category not in NON_SLEEP_CATEGORIES
        }
        if unknown_sleep:
            logger.warning(f"Unknown sleep categories ignored: {unknown_sleep}")

        interval_rows = aggregate_sleep(self.interval_buffer, self.sleep_policy)
        paired_rows = pair_records(self.paired_buffer)

        self.summary.parse_seconds = round(time.monotonic() - self._started, 3)

        logger.info(
            f"Parse complete: {self.summary.total_scanned} scanned, "
            f"{self.summary.total_matched} matched, "
            f"{len(self.direct_rows)} direct + {len(interval_rows)} sleep + "
            f"{len(paired_rows)} paired rows in {self.summary.parse_seconds:.1f}s"
        )

        return ParseResult(
            summary=self.summary,
            rows=self.direct_rows + interval_rows + paired_rows,
        )


def parse_export(stream: IO[bytes], sleep_policy: Optional[SleepWindowPolicy] = None) -> ParseResult:
    """Convenience wrapper: parse one export stream with a fresh parser"""
    return ExportParser(sleep_policy=sleep_policy).parse(stream)


def format_summary_for_log(summary: ParseSummary) -> Dict[str, Any]:
    """
    Compact, JSON-friendly view of a parse summary for the final log line.
    """
    metrics = {}
    for kind, stats in sorted(summary.by_kind.items(), key=lambda item: item[1].metric_code):
        metrics[stats.metric_code] = {
            "count": stats.count,
            "oldest": stats.oldest.isoformat() if stats.oldest else None,
            "newest": stats.newest.isoformat() if stats.newest else None,
            "samples": stats.sample_values,
        }

    asleep = sum(c for k, c in summary.sleep_categories.items() if k in ASLEEP_CATEGORIES)
    ignored = sum(c for k, c in summary.sleep_categories.items() if k in NON_SLEEP_CATEGORIES)
    unknown = sum(summary.sleep_categories.values()) - asleep - ignored

    formatted = {
        "total_scanned": summary.total_scanned,
        "total_matched": summary.total_matched,
        "metrics": metrics,
        "sleep": {"asleep": asleep, "ignored": ignored, "unknown": unknown},
        "blood_pressure": dict(summary.paired_counts),
        "parse_seconds": summary.parse_seconds,
        "error_count": len(summary.errors) + summary.errors_dropped,
    }
    if summary.errors:
        formatted["errors"] = summary.errors[:5]
    return formatted
