"""Core domain models for telemetry queries, corrections and anomalies.

Timestamps are Unix epoch milliseconds (UTC) throughout, matching the
resolution of the sample store.
"""

import time
from dataclasses import dataclass, field
from datetime import UTC, datetime, tzinfo
from enum import Enum

from telemetrypy.core.exceptions import InvalidSpec

MINUTES_PER_DAY = 24 * 60


def now_ms() -> int:
    """Return the current time as Unix epoch milliseconds."""
    return int(time.time() * 1000)


def to_datetime(timestamp_ms: int) -> datetime:
    """Convert Unix epoch milliseconds to an aware UTC datetime."""
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=UTC)


def from_datetime(value: datetime) -> int:
    """Convert a datetime to Unix epoch milliseconds (naive values are UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return int(value.timestamp() * 1000)


class OutlierMethod(str, Enum):
    """Outlier rejection method."""

    IQR = "iqr"
    ZSCORE = "zscore"

    @classmethod
    def parse(cls, tag: "str | OutlierMethod | None") -> "OutlierMethod":
        """Parse a method tag, falling back to IQR for anything unrecognized."""
        if isinstance(tag, OutlierMethod):
            return tag
        normalized = (tag or "").strip().lower().replace("-", "").replace("_", "")
        if normalized == "zscore":
            return cls.ZSCORE
        return cls.IQR


class SamplingMethod(str, Enum):
    """Aggregation applied to each resampling bucket."""

    FIRST = "first"
    LAST = "last"
    AVG = "avg"
    MAX = "max"
    MIN = "min"

    @classmethod
    def parse(cls, tag: "str | SamplingMethod") -> "SamplingMethod":
        """Parse a sampling tag.

        Raises:
            InvalidSpec: If the tag names no known method.
        """
        if isinstance(tag, SamplingMethod):
            return tag
        try:
            return cls(tag.strip().lower())
        except (AttributeError, ValueError):
            raise InvalidSpec(f"Unknown sampling method: {tag!r}") from None


class OperationType(str, Enum):
    """Arithmetic operation of a correction rule."""

    ADD = "add"
    SUBTRACT = "subtract"
    MULTIPLY = "multiply"
    DIVIDE = "divide"

    @classmethod
    def parse(cls, tag: "str | OperationType") -> "OperationType":
        """Parse an operation tag.

        Raises:
            InvalidSpec: If the tag names no known operation.
        """
        if isinstance(tag, OperationType):
            return tag
        try:
            return cls(tag.strip().lower())
        except (AttributeError, ValueError):
            raise InvalidSpec(f"Unknown operation type: {tag!r}") from None


class AnomalyKind(str, Enum):
    """Kind of deviation reported by the anomaly detector."""

    SUDDEN_JUMP = "SuddenJump"
    PERSISTENT_OFFSET = "PersistentOffset"
    INCREASED_NOISE = "IncreasedNoise"
    DATA_GAP = "DataGap"


@dataclass(frozen=True)
class Sample:
    """A single telemetry reading.

    Attributes:
        timestamp: Unix timestamp in milliseconds.
        asset: Asset (site) identifier.
        device: Measuring device identifier.
        target: Observed target identifier.
        metric: Metric name (e.g., disp_x).
        value: The measured value.
    """

    timestamp: int
    asset: str
    device: str
    target: str
    metric: str
    value: float

    @property
    def time(self) -> datetime:
        return to_datetime(self.timestamp)

    @property
    def series(self) -> tuple[str, str]:
        """The (target, metric) pair this sample belongs to."""
        return (self.target, self.metric)


@dataclass(frozen=True)
class TimeWindow:
    """A daily time-of-day window, inclusive on both ends.

    A window whose start lies after its end wraps past midnight.
    """

    start_hour: int
    start_minute: int
    end_hour: int
    end_minute: int

    @classmethod
    def parse(cls, start: str, end: str) -> "TimeWindow":
        """Build a window from two "HH:MM" strings.

        Raises:
            InvalidSpec: If either string is malformed or out of range.
        """
        start_hour, start_minute = _parse_clock(start)
        end_hour, end_minute = _parse_clock(end)
        return cls(start_hour, start_minute, end_hour, end_minute)

    @property
    def start_minutes(self) -> int:
        return self.start_hour * 60 + self.start_minute

    @property
    def end_minutes(self) -> int:
        return self.end_hour * 60 + self.end_minute

    def is_valid(self) -> bool:
        return all(0 <= h <= 23 for h in (self.start_hour, self.end_hour)) and all(
            0 <= m <= 59 for m in (self.start_minute, self.end_minute)
        )

    def contains(self, minute_of_day: int) -> bool:
        """Return True if the minute of day falls inside this window."""
        start, end = self.start_minutes, self.end_minutes
        if start <= end:
            return start <= minute_of_day <= end
        return minute_of_day >= start or minute_of_day <= end


def _parse_clock(text: str) -> tuple[int, int]:
    parts = text.strip().split(":")
    if len(parts) != 2:
        raise InvalidSpec(f"Invalid time of day: {text!r}")
    try:
        hour, minute = int(parts[0]), int(parts[1])
    except ValueError:
        raise InvalidSpec(f"Invalid time of day: {text!r}") from None
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise InvalidSpec(f"Time of day out of range: {text!r}")
    return hour, minute


@dataclass(frozen=True)
class ResampleConfig:
    """Time-bucket resampling configuration.

    Attributes:
        interval_ms: Bucket width in milliseconds, must be positive.
        method: Aggregation applied within each bucket.
    """

    interval_ms: int
    method: SamplingMethod = SamplingMethod.FIRST

    def __post_init__(self) -> None:
        object.__setattr__(self, "method", SamplingMethod.parse(self.method))


@dataclass(frozen=True)
class ValueFilter:
    """Value range and exclusion filter, applied with the base filter."""

    min_value: float | None = None
    max_value: float | None = None
    exclude_values: frozenset[float] = frozenset()

    def __post_init__(self) -> None:
        object.__setattr__(self, "exclude_values", frozenset(self.exclude_values))

    def admits(self, value: float) -> bool:
        if self.min_value is not None and value < self.min_value:
            return False
        if self.max_value is not None and value > self.max_value:
            return False
        return value not in self.exclude_values


@dataclass(frozen=True)
class ReferenceValue:
    """Reference value subtracted from one (target, metric) series."""

    target: str
    metric: str
    value: float


@dataclass(frozen=True)
class FetchFragment:
    """The base filter of a query, as handed to the sample source."""

    asset: str | None = None
    device: str | None = None
    targets: frozenset[str] = frozenset()
    metrics: frozenset[str] = frozenset()
    start: int | None = None
    end: int | None = None
    value_filter: ValueFilter | None = None

    def admits(self, sample: Sample) -> bool:
        """Return True if the sample passes every base condition."""
        if self.asset is not None and sample.asset != self.asset:
            return False
        if self.device is not None and sample.device != self.device:
            return False
        if self.targets and sample.target not in self.targets:
            return False
        if self.metrics and sample.metric not in self.metrics:
            return False
        if self.start is not None and sample.timestamp < self.start:
            return False
        if self.end is not None and sample.timestamp > self.end:
            return False
        if self.value_filter is not None:
            return self.value_filter.admits(sample.value)
        return True


@dataclass(frozen=True)
class QuerySpec:
    """Fully resolved description of a telemetry slice and its transforms.

    Empty ``targets`` or ``metrics`` sets mean no restriction. ``start`` and
    ``end`` are inclusive. Time-of-day windows are evaluated in ``tz``.
    """

    asset: str | None = None
    device: str | None = None
    targets: frozenset[str] = frozenset()
    metrics: frozenset[str] = frozenset()
    start: int | None = None
    end: int | None = None
    remove_outliers: bool = False
    outlier_method: OutlierMethod = OutlierMethod.IQR
    value_filter: ValueFilter | None = None
    limit: int | None = None
    resample: ResampleConfig | None = None
    reference_values: tuple[ReferenceValue, ...] = ()
    time_windows: tuple[TimeWindow, ...] = ()
    tz: tzinfo = UTC

    def __post_init__(self) -> None:
        object.__setattr__(self, "targets", frozenset(self.targets))
        object.__setattr__(self, "metrics", frozenset(self.metrics))
        object.__setattr__(
            self, "outlier_method", OutlierMethod.parse(self.outlier_method)
        )
        object.__setattr__(self, "reference_values", tuple(self.reference_values))
        object.__setattr__(self, "time_windows", tuple(self.time_windows))

    def fragment(self) -> FetchFragment:
        """Return the base filter to push down to the sample source."""
        return FetchFragment(
            asset=self.asset,
            device=self.device,
            targets=self.targets,
            metrics=self.metrics,
            start=self.start,
            end=self.end,
            value_filter=self.value_filter,
        )


@dataclass(frozen=True)
class CorrectionRule:
    """A time-scoped arithmetic adjustment of one (target, metric) series.

    Attributes:
        target: Target the rule applies to.
        metric: Metric the rule applies to.
        operation: Arithmetic operation.
        operand: Constant operand of the operation.
        id: Store identifier, None until persisted.
        name: Optional display name.
        description: Optional free text.
        start: Start of validity (inclusive), None for unbounded.
        end: End of validity (inclusive), None for unbounded.
        active: Only active rules are applied to query results.
        created_at: Creation time in milliseconds.
        updated_at: Last update time in milliseconds.
    """

    target: str
    metric: str
    operation: OperationType
    operand: float
    id: int | None = None
    name: str | None = None
    description: str | None = None
    start: int | None = None
    end: int | None = None
    active: bool = True
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)

    def __post_init__(self) -> None:
        object.__setattr__(self, "operation", OperationType.parse(self.operation))

    def covers(self, timestamp: int) -> bool:
        """Return True if the timestamp lies inside the validity interval."""
        if self.start is not None and timestamp < self.start:
            return False
        return self.end is None or timestamp <= self.end

    def matches(self, sample: Sample) -> bool:
        return (
            sample.target == self.target
            and sample.metric == self.metric
            and self.covers(sample.timestamp)
        )


@dataclass(frozen=True)
class DataStats:
    """Metadata describing a query result."""

    total_points: int
    target_count: int
    time_range: tuple[int, int] | None = None
    outliers_removed: int | None = None
    outlier_method: OutlierMethod | None = None


@dataclass(frozen=True)
class QueryResult:
    """Samples returned by a query together with their statistics."""

    samples: list[Sample]
    stats: DataStats


@dataclass(frozen=True)
class FilterOptions:
    """Distinct identifiers known to the sample source."""

    assets: list[str] = field(default_factory=list)
    devices: list[str] = field(default_factory=list)
    targets: list[str] = field(default_factory=list)
    metrics: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class DetectedAnomaly:
    """A deviation found in one (target, metric) series.

    Attributes:
        jump_magnitude: Absolute z-score for jumps, 0 for gaps.
        confidence: Confidence in [0, 1].
    """

    target: str
    metric: str
    kind: AnomalyKind
    start: int
    end: int | None
    baseline: float
    observed: float
    jump_magnitude: float
    confidence: float
    suggested_correction: CorrectionRule | None = None


@dataclass(frozen=True)
class DetectionSummary:
    total_anomalies: int
    targets_affected: int
    time_range_analyzed: tuple[int, int]
    confidence_distribution: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class DetectionResult:
    anomalies: list[DetectedAnomaly]
    suggested_rules: list[CorrectionRule]
    summary: DetectionSummary
