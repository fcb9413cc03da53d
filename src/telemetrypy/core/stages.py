"""Transform stages of the query pipeline.

Each stage is a pure function from a sample sequence to a new list of
samples. The compiler decides which stages run and in which order.
"""

from collections.abc import Iterable, Sequence
from dataclasses import replace
from datetime import tzinfo
from statistics import fmean, pstdev

import numpy as np

from telemetrypy.core.models import (
    FetchFragment,
    OutlierMethod,
    ReferenceValue,
    ResampleConfig,
    Sample,
    SamplingMethod,
    TimeWindow,
    to_datetime,
)

IQR_FACTOR = 1.5
ZSCORE_LIMIT = 3.0


def filter_base(samples: Iterable[Sample], fragment: FetchFragment) -> list[Sample]:
    """Keep samples admitted by the base filter, ordered by timestamp."""
    kept = [s for s in samples if fragment.admits(s)]
    kept.sort(key=lambda s: s.timestamp)
    return kept


def iqr_bounds(values: Sequence[float]) -> tuple[float, float]:
    """Return the inclusive [Q1 - 1.5 IQR, Q3 + 1.5 IQR] bounds.

    Quartiles use linear interpolation between closest ranks.
    """
    q1, q3 = (float(q) for q in np.percentile(values, [25, 75]))
    spread = q3 - q1
    return q1 - IQR_FACTOR * spread, q3 + IQR_FACTOR * spread


def remove_outliers(samples: Sequence[Sample], method: OutlierMethod) -> list[Sample]:
    """Drop samples outside the outlier bounds of the whole population."""
    if not samples:
        return []
    values = [s.value for s in samples]

    if method is OutlierMethod.ZSCORE:
        mean = fmean(values)
        std = pstdev(values, mean)
        if std == 0:
            return list(samples)
        return [s for s in samples if abs(s.value - mean) / std <= ZSCORE_LIMIT]

    lower, upper = iqr_bounds(values)
    return [s for s in samples if lower <= s.value <= upper]


def subtract_references(
    samples: Sequence[Sample], references: Iterable[ReferenceValue]
) -> list[Sample]:
    """Subtract the configured reference value from matching series."""
    by_series = {(r.target, r.metric): r.value for r in references}
    if not by_series:
        return list(samples)
    result = []
    for sample in samples:
        reference = by_series.get(sample.series)
        if reference is None:
            result.append(sample)
        else:
            result.append(replace(sample, value=sample.value - reference))
    return result


def minute_of_day(timestamp: int, tz: tzinfo) -> int:
    local = to_datetime(timestamp).astimezone(tz)
    return local.hour * 60 + local.minute


def filter_time_of_day(
    samples: Sequence[Sample], windows: Sequence[TimeWindow], tz: tzinfo
) -> list[Sample]:
    """Keep samples whose local time of day falls in any window."""
    if not windows:
        return list(samples)
    return [
        s
        for s in samples
        if any(w.contains(minute_of_day(s.timestamp, tz)) for w in windows)
    ]


def bucket_start(timestamp: int, interval_ms: int) -> int:
    return (timestamp // interval_ms) * interval_ms


def _aggregate(bucket: list[Sample], method: SamplingMethod) -> float:
    match method:
        case SamplingMethod.FIRST:
            return bucket[0].value
        case SamplingMethod.LAST:
            return bucket[-1].value
        case SamplingMethod.AVG:
            return fmean(s.value for s in bucket)
        case SamplingMethod.MAX:
            return max(s.value for s in bucket)
        case SamplingMethod.MIN:
            return min(s.value for s in bucket)


def resample(samples: Sequence[Sample], config: ResampleConfig) -> list[Sample]:
    """Aggregate samples into fixed-width buckets per (target, metric).

    Each bucket is reported at its lower bound. Asset and device are taken
    from the earliest sample in the bucket. Empty buckets are not emitted.
    """
    buckets: dict[tuple[str, str, int], list[Sample]] = {}
    for sample in sorted(samples, key=lambda s: s.timestamp):
        start = bucket_start(sample.timestamp, config.interval_ms)
        key = (sample.target, sample.metric, start)
        buckets.setdefault(key, []).append(sample)

    result = [
        replace(
            bucket[0],
            timestamp=start,
            value=_aggregate(bucket, config.method),
        )
        for (_, _, start), bucket in buckets.items()
    ]
    result.sort(key=lambda s: (s.timestamp, s.target, s.metric))
    return result


def cap(samples: Sequence[Sample], limit: int) -> list[Sample]:
    """Keep at most ``limit`` samples."""
    return list(samples[:limit])
