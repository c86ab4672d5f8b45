"""
Day-bucket aggregation of sleep intervals
"""

from typing import List, Iterable
import logging

import pandas as pd
from pydantic import BaseModel, Field

from schemas.metrics import RawRecord, MetricRow
from ingestion.transformers.mapping import ASLEEP_CATEGORIES, SLEEP_METRIC_CODE, SLEEP_UNIT

logger = logging.getLogger(__name__)

MAX_INTERVAL_HOURS = 24.0


class SleepWindowPolicy(BaseModel):
    """
    How daily sleep totals become metric rows.

    window_days: trailing window ending at the target day
    min_days: days with data required inside the window to emit a value
    emit_all_days: one row per day with data instead of only the newest day
    """
    window_days: int = Field(default=7, ge=1)
    min_days: int = Field(default=1, ge=1)
    emit_all_days: bool = False

    @classmethod
    def from_settings(cls, settings) -> "SleepWindowPolicy":
        return cls(
            window_days=settings.SLEEP_WINDOW_DAYS,
            min_days=settings.SLEEP_MIN_DAYS,
            emit_all_days=settings.SLEEP_EMIT_ALL_DAYS,
        )


def daily_sleep_totals(records: Iterable[RawRecord]) -> pd.DataFrame:
    """
    Sum asleep time per UTC calendar day of the interval end.

    Returns a frame indexed by day (UTC midnight) with columns:
        hours: total hours asleep that day
        last_end: most recent contributing end timestamp
    Intervals of zero, negative or more than 24 hours are discarded.
    """
    asleep = [(r.start, r.end) for r in records if r.value in ASLEEP_CATEGORIES]
    if not asleep:
        return pd.DataFrame(columns=["hours", "last_end"])

    frame = pd.DataFrame(asleep, columns=["start", "end"])
    frame["start"] = pd.to_datetime(frame["start"], utc=True)
    frame["end"] = pd.to_datetime(frame["end"], utc=True)
    frame["hours"] = (frame["end"] - frame["start"]).dt.total_seconds() / 3600.0

    valid = frame[(frame["hours"] > 0) & (frame["hours"] <= MAX_INTERVAL_HOURS)]
    discarded = len(frame) - len(valid)
    if discarded:
        logger.info(f"Discarded {discarded} sleep intervals outside (0, {MAX_INTERVAL_HOURS:g}] hours")

    if valid.empty:
        return pd.DataFrame(columns=["hours", "last_end"])

    return (
        valid.assign(day=valid["end"].dt.floor("D"))
        .groupby("day")
        .agg(hours=("hours", "sum"), last_end=("end", "max"))
        .sort_index()
    )


def aggregate_sleep(
    records: List[RawRecord],
    policy: SleepWindowPolicy = None
) -> List[MetricRow]:
    """
    Turn buffered sleep records into "sleep" metric rows (hours).

    The value for a target day is the mean of the daily totals of the days
    with data in the trailing window ending on that day, rounded to 0.1 h.
    By default only the newest day is emitted, stamped with its most recent
    contributing end timestamp.
    """
    policy = policy or SleepWindowPolicy()
    daily = daily_sleep_totals(records)

    if daily.empty:
        logger.info(f"No asleep intervals among {len(records)} sleep records")
        return []

    targets = list(daily.index) if policy.emit_all_days else [daily.index[-1]]
    span = pd.Timedelta(days=policy.window_days - 1)

    rows = []
    for day in targets:
        window = daily.loc[day - span:day]
        if len(window) < policy.min_days:
            logger.debug(
                f"Skipping sleep for {day.date()}: {len(window)} days in window, "
                f"{policy.min_days} required"
            )
            continue

        rows.append(MetricRow(
            metric_code=SLEEP_METRIC_CODE,
            value=round(float(window["hours"].mean()), 1),
            unit=SLEEP_UNIT,
            measured_at=daily.at[day, "last_end"].to_pydatetime(),
        ))

    logger.info(
        f"Sleep aggregation: {len(daily)} days with data, {len(rows)} rows "
        f"(window={policy.window_days}d, emit_all_days={policy.emit_all_days})"
    )
    return rows
