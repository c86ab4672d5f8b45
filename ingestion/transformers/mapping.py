"""
Allow-list of HealthKit record kinds and the lane each one travels through
"""

from enum import Enum
from typing import Dict, NamedTuple, Optional


class Lane(str, Enum):
    DIRECT = "direct"      # One record -> one metric row
    INTERVAL = "interval"  # Buffered, summed into day buckets
    PAIRED = "paired"      # Buffered, emitted only as a complete pair


class KindMapping(NamedTuple):
    lane: Lane
    metric_code: str
    unit: Optional[str] = None   # None keeps the unit found in the export
    sub_kind: Optional[str] = None


SLEEP_ANALYSIS = "HKCategoryTypeIdentifierSleepAnalysis"
BP_SYSTOLIC = "HKQuantityTypeIdentifierBloodPressureSystolic"
BP_DIASTOLIC = "HKQuantityTypeIdentifierBloodPressureDiastolic"

SYSTOLIC = "systolic"
DIASTOLIC = "diastolic"

KIND_MAPPINGS: Dict[str, KindMapping] = {
    # Direct
    "HKQuantityTypeIdentifierVO2Max": KindMapping(Lane.DIRECT, "vo2max"),
    "HKQuantityTypeIdentifierRestingHeartRate": KindMapping(Lane.DIRECT, "resting_hr"),
    "HKQuantityTypeIdentifierHeartRateVariabilitySDNN": KindMapping(Lane.DIRECT, "hrv"),
    "HKQuantityTypeIdentifierBodyMass": KindMapping(Lane.DIRECT, "body_mass"),
    "HKQuantityTypeIdentifierBodyFatPercentage": KindMapping(Lane.DIRECT, "body_fat_percentage"),
    "HKQuantityTypeIdentifierLeanBodyMass": KindMapping(Lane.DIRECT, "lean_body_mass"),

    # Interval
    SLEEP_ANALYSIS: KindMapping(Lane.INTERVAL, "sleep", unit="hr"),

    # Paired
    BP_SYSTOLIC: KindMapping(Lane.PAIRED, "bp_systolic", unit="mmHg", sub_kind=SYSTOLIC),
    BP_DIASTOLIC: KindMapping(Lane.PAIRED, "bp_diastolic", unit="mmHg", sub_kind=DIASTOLIC),
}

# Pair definition: required sub-kinds, the first one is canonical and owns the timestamp
BP_SUB_KINDS = (SYSTOLIC, DIASTOLIC)
BP_METRIC_CODES = {
    SYSTOLIC: KIND_MAPPINGS[BP_SYSTOLIC].metric_code,
    DIASTOLIC: KIND_MAPPINGS[BP_DIASTOLIC].metric_code,
}
BP_UNIT = "mmHg"

SLEEP_METRIC_CODE = KIND_MAPPINGS[SLEEP_ANALYSIS].metric_code
SLEEP_UNIT = "hr"

# Sleep categories that count as time asleep
ASLEEP_CATEGORIES = frozenset({
    "HKCategoryValueSleepAnalysisAsleepUnspecified",
    "HKCategoryValueSleepAnalysisAsleepCore",
    "HKCategoryValueSleepAnalysisAsleepDeep",
    "HKCategoryValueSleepAnalysisAsleepREM",
    "HKCategoryValueSleepAnalysisAsleep",  # Pre-iOS 16
})

# Recognized but never summed
NON_SLEEP_CATEGORIES = frozenset({
    "HKCategoryValueSleepAnalysisInBed",
    "HKCategoryValueSleepAnalysisAwake",
})


def lookup(kind: str) -> Optional[KindMapping]:
    """Mapping for an allow-listed kind, None for everything else"""
    return KIND_MAPPINGS.get(kind)


def metric_codes() -> set:
    """Every metric code the pipeline can emit"""
    return {m.metric_code for m in KIND_MAPPINGS.values()}
