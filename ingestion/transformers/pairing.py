"""
Temporal pairing of blood pressure readings.

Systolic and diastolic readings are exported as independent records. A
reading is only meaningful as a pair, so records are grouped on their end
timestamp floored to the minute and a group is emitted only when it holds
exactly one record of each sub-kind. Partial or ambiguous groups are
discarded. Both emitted rows carry the systolic record's own timestamp so
the pair shares one authoritative time.
"""

from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Sequence
import logging

from schemas.metrics import RawRecord, MetricRow
from ingestion.transformers.mapping import BP_SUB_KINDS, BP_METRIC_CODES, BP_UNIT

logger = logging.getLogger(__name__)


def minute_key(ts: datetime) -> datetime:
    return ts.replace(second=0, microsecond=0)


def pair_records(
    buffers: Dict[str, List[RawRecord]],
    sub_kinds: Sequence[str] = BP_SUB_KINDS,
    metric_codes: Dict[str, str] = None,
    unit: str = BP_UNIT
) -> List[MetricRow]:
    """
    Pair buffered records keyed by sub-kind.

    Args:
        buffers: sub-kind -> records, e.g. {"systolic": [...], "diastolic": [...]}
        sub_kinds: required sub-kinds; the first is canonical
        metric_codes: sub-kind -> metric code of the emitted row
        unit: unit of the emitted rows

    Returns:
        One row per sub-kind for every complete group, ordered by time
    """
    metric_codes = metric_codes or BP_METRIC_CODES
    canonical = sub_kinds[0]

    groups: Dict[datetime, Dict[str, List[RawRecord]]] = defaultdict(lambda: defaultdict(list))
    total_records = 0
    for sub_kind in sub_kinds:
        for record in buffers.get(sub_kind, []):
            groups[minute_key(record.end)][sub_kind].append(record)
            total_records += 1

    if total_records == 0:
        logger.info("No blood pressure records to pair")
        return []

    rows: List[MetricRow] = []
    pairs_found = 0
    discarded = 0

    for key in sorted(groups):
        group = groups[key]
        if all(len(group.get(sub_kind, [])) == 1 for sub_kind in sub_kinds):
            measured_at = group[canonical][0].end
            for sub_kind in sub_kinds:
                rows.append(MetricRow(
                    metric_code=metric_codes[sub_kind],
                    value=float(group[sub_kind][0].value),
                    unit=unit,
                    measured_at=measured_at,
                ))
            pairs_found += 1
        else:
            discarded += sum(len(records) for records in group.values())

    if pairs_found:
        newest = rows[-len(sub_kinds):]
        logger.info(
            f"Blood pressure pairing complete: {pairs_found} pairs found, "
            f"{discarded} of {total_records} records discarded, "
            f"newest {'/'.join(f'{r.value:g}' for r in newest)} at {newest[0].measured_at.isoformat()}"
        )
    else:
        logger.info(f"No complete blood pressure pairs among {total_records} records")

    return rows
