"""Tests for the anomaly detector."""

import math
import threading
import time

import pytest

from telemetrypy.adapters.storage.in_memory import InMemorySampleStorage
from telemetrypy.core.anomaly import (
    GAP_THRESHOLD_MS,
    AnomalyDetector,
    DetectorConfig,
    confidence_level,
    group_series,
)
from telemetrypy.core.exceptions import UpstreamFetchFailure
from telemetrypy.core.models import AnomalyKind, OperationType

MINUTE_MS = 60_000
HOUR_MS = 3_600_000


def noisy_window(make_sample, size: int, start: int = 0, **kwargs) -> list:
    """A series alternating between 9.9 and 10.1 (mean 10, stddev 0.1)."""
    return [
        make_sample(start + i * MINUTE_MS, 10.0 + (0.1 if i % 2 else -0.1), **kwargs)
        for i in range(size)
    ]


class TestConfidenceLevel:
    @pytest.mark.core
    @pytest.mark.tier(0)
    @pytest.mark.parametrize(
        ("confidence", "level"),
        [(0.0, "low"), (0.5, "low"), (0.51, "mid"), (0.8, "mid"), (0.81, "high")],
    )
    def test_buckets(self, confidence: float, level: str) -> None:
        """Confidence maps onto low, medium and high levels."""
        assert confidence_level(confidence) == level


class TestGroupSeries:
    @pytest.mark.core
    @pytest.mark.tier(0)
    def test_groups_and_sorts(self, make_sample) -> None:
        """Samples group per series and sort by timestamp."""
        samples = [
            make_sample(2, 1.0),
            make_sample(1, 1.0, metric="disp_y"),
            make_sample(1, 1.0),
        ]

        series = group_series(samples)

        assert set(series) == {("T1", "disp_x"), ("T1", "disp_y")}
        assert [s.timestamp for s in series[("T1", "disp_x")]] == [1, 2]


class TestSuddenJumps:
    @pytest.mark.core
    @pytest.mark.tier(0)
    def test_spike_after_noisy_window(self, make_sample) -> None:
        """A spike after a noisy window is reported as a jump."""
        detector = AnomalyDetector(DetectorConfig(min_window_size=10))
        series = noisy_window(make_sample, 10)
        series.append(make_sample(10 * MINUTE_MS, 20.0))

        anomalies = detector.detect_sudden_jumps(series)

        assert len(anomalies) == 1
        anomaly = anomalies[0]
        assert anomaly.kind is AnomalyKind.SUDDEN_JUMP
        assert anomaly.start == 10 * MINUTE_MS
        assert anomaly.end is None
        assert anomaly.baseline == pytest.approx(10.0)
        assert anomaly.observed == 20.0
        assert anomaly.jump_magnitude == pytest.approx(100.0)
        assert anomaly.confidence == 1.0

    @pytest.mark.core
    @pytest.mark.tier(0)
    def test_reported_jump_has_full_confidence(self, make_sample) -> None:
        """A jump above the threshold has full confidence."""
        detector = AnomalyDetector(
            DetectorConfig(min_window_size=10, max_jump_threshold=5.0)
        )
        series = noisy_window(make_sample, 10)
        # z = 0.6 / 0.1 = 6, just above the threshold
        series.append(make_sample(10 * MINUTE_MS, 10.6))

        anomalies = detector.detect_sudden_jumps(series)

        assert anomalies[0].jump_magnitude == pytest.approx(6.0)
        assert anomalies[0].confidence == 1.0

    @pytest.mark.core
    @pytest.mark.tier(0)
    def test_point_within_threshold_is_not_reported(self, make_sample) -> None:
        """A point within the threshold is not reported."""
        detector = AnomalyDetector(DetectorConfig(min_window_size=10))
        series = noisy_window(make_sample, 10)
        series.append(make_sample(10 * MINUTE_MS, 10.3))

        assert detector.detect_sudden_jumps(series) == []

    @pytest.mark.core
    @pytest.mark.tier(0)
    def test_constant_window_emits_nothing(self, make_sample) -> None:
        """A constant preceding window never yields a jump."""
        detector = AnomalyDetector(DetectorConfig(min_window_size=10))
        series = [make_sample(i * MINUTE_MS, 10.0) for i in range(10)]
        series.append(make_sample(10 * MINUTE_MS, 1000.0))

        assert detector.detect_sudden_jumps(series) == []

    @pytest.mark.core
    @pytest.mark.tier(0)
    def test_short_series_is_skipped(self, make_sample) -> None:
        """Series shorter than the window are not scanned."""
        detector = AnomalyDetector(DetectorConfig(min_window_size=50))
        series = noisy_window(make_sample, 10)
        series.append(make_sample(10 * MINUTE_MS, 1000.0))

        assert detector.detect_series(series) == []

    @pytest.mark.core
    @pytest.mark.tier(1)
    def test_large_series_is_scanned_quickly(self, make_sample) -> None:
        """A 100k-point series with one spike is scanned well under a second."""
        series = [
            make_sample(i * 1000, math.sin(2 * math.pi * i / 1000))
            for i in range(100_000)
        ]
        series[60_050] = make_sample(60_050 * 1000, 10.0)
        detector = AnomalyDetector()

        started = time.perf_counter()
        anomalies = detector.detect_sudden_jumps(series)
        elapsed = time.perf_counter() - started

        assert [a.start for a in anomalies] == [60_050 * 1000]
        assert elapsed < 2.0

    @pytest.mark.core
    @pytest.mark.tier(0)
    def test_statistics_match_trailing_window(self, make_sample) -> None:
        """Baseline and magnitude come from the window right before the point."""
        values = [1.0, 3.0, 1.0, 3.0, 100.0, 2.0, 4.0, 2.0, 4.0, 50.0]
        series = [make_sample(i, v) for i, v in enumerate(values)]
        detector = AnomalyDetector(
            DetectorConfig(min_window_size=4, max_jump_threshold=5.0)
        )

        anomalies = detector.detect_sudden_jumps(series)

        # windows [1, 3, 1, 3] and [2, 4, 2, 4] both have stddev 1
        assert [(a.start, a.baseline, a.jump_magnitude) for a in anomalies] == [
            (4, pytest.approx(2.0), pytest.approx(98.0)),
            (9, pytest.approx(3.0), pytest.approx(47.0)),
        ]


class TestDataGaps:
    @pytest.mark.core
    @pytest.mark.tier(0)
    def test_two_hour_gap(self, make_sample) -> None:
        """A two-hour silence is reported as a gap."""
        detector = AnomalyDetector()
        series = [make_sample(0, 1.0), make_sample(2 * HOUR_MS, 2.0)]

        anomalies = detector.detect_data_gaps(series)

        assert len(anomalies) == 1
        gap = anomalies[0]
        assert gap.kind is AnomalyKind.DATA_GAP
        assert gap.confidence == 1.0
        assert (gap.start, gap.end) == (0, 2 * HOUR_MS)
        assert (gap.baseline, gap.observed) == (1.0, 2.0)

    @pytest.mark.core
    @pytest.mark.tier(0)
    def test_ten_minutes_is_not_a_gap(self, make_sample) -> None:
        """A ten-minute silence is not a gap."""
        detector = AnomalyDetector()
        series = [make_sample(0, 1.0), make_sample(10 * MINUTE_MS, 2.0)]

        assert detector.detect_data_gaps(series) == []

    @pytest.mark.core
    @pytest.mark.tier(0)
    def test_exactly_one_hour_is_not_a_gap(self, make_sample) -> None:
        """A silence of exactly one hour is not a gap."""
        detector = AnomalyDetector()
        series = [make_sample(0, 1.0), make_sample(GAP_THRESHOLD_MS, 2.0)]

        assert detector.detect_data_gaps(series) == []


class TestSuggestions:
    @pytest.mark.core
    @pytest.mark.tier(0)
    def test_no_suggestion_without_auto_correction(self, make_sample) -> None:
        """No rule is suggested unless auto correction is on."""
        detector = AnomalyDetector(DetectorConfig(min_window_size=10))
        series = noisy_window(make_sample, 10)
        series.append(make_sample(10 * MINUTE_MS, 20.0))

        result = detector.analyze(series)

        assert result.suggested_rules == []
        assert result.anomalies[0].suggested_correction is None

    @pytest.mark.core
    @pytest.mark.tier(0)
    def test_jump_yields_inactive_add_rule(self, make_sample) -> None:
        """A jump suggests an inactive add rule that undoes it."""
        detector = AnomalyDetector(
            DetectorConfig(min_window_size=10, auto_correction=True)
        )
        series = noisy_window(make_sample, 10)
        series.append(make_sample(10 * MINUTE_MS, 20.0))

        result = detector.analyze(series)

        assert len(result.suggested_rules) == 1
        rule = result.suggested_rules[0]
        assert rule.operation is OperationType.ADD
        assert rule.operand == pytest.approx(-10.0)
        assert rule.active is False
        assert (rule.target, rule.metric) == ("T1", "disp_x")
        assert rule.start == 10 * MINUTE_MS
        assert result.anomalies[0].suggested_correction == rule

    @pytest.mark.core
    @pytest.mark.tier(0)
    def test_gaps_get_no_suggestion(self, make_sample) -> None:
        """Data gaps never get a suggested rule."""
        detector = AnomalyDetector(
            DetectorConfig(min_window_size=2, auto_correction=True)
        )
        series = [make_sample(0, 1.0), make_sample(2 * HOUR_MS, 1.0)]

        result = detector.analyze(series)

        assert [a.kind for a in result.anomalies] == [AnomalyKind.DATA_GAP]
        assert result.suggested_rules == []


class TestSummary:
    @pytest.mark.core
    @pytest.mark.tier(0)
    def test_summary_counts(self, make_sample) -> None:
        """The summary counts anomalies by kind and series."""
        detector = AnomalyDetector(DetectorConfig(min_window_size=2))
        samples = [
            make_sample(0, 1.0),
            make_sample(2 * HOUR_MS, 1.0),
            make_sample(0, 1.0, target="T2"),
            make_sample(3 * HOUR_MS, 1.0, target="T2"),
            make_sample(0, 1.0, target="T3"),
            make_sample(1, 1.0, target="T3"),
        ]

        result = detector.analyze(samples, start=0, end=4 * HOUR_MS)

        assert result.summary.total_anomalies == 2
        assert result.summary.targets_affected == 2
        assert result.summary.time_range_analyzed == (0, 4 * HOUR_MS)
        assert result.summary.confidence_distribution == {"high": 2}

    @pytest.mark.core
    @pytest.mark.tier(0)
    def test_open_range_defaults_to_now(self) -> None:
        """An open range is reported as ending now."""
        summary = AnomalyDetector().summarize([], start=None, end=None)
        start, end = summary.time_range_analyzed
        assert start == end
        assert start > 0


class FailingSeriesSource(InMemorySampleStorage):
    async def fetch_batch(self, fragment, offset, batch_size):
        raise ConnectionError("database unavailable")


class ThreadRecordingDetector(AnomalyDetector):
    """Detector that records which thread ran the analysis."""

    def __init__(self, config: DetectorConfig | None = None) -> None:
        super().__init__(config)
        self.threads: list[int] = []

    def analyze(self, samples, start=None, end=None):
        self.threads.append(threading.get_ident())
        return super().analyze(samples, start, end)


class TestDetectFromSource:
    @pytest.mark.core
    @pytest.mark.tier(1)
    async def test_detect_all_reads_raw_series(self, make_sample) -> None:
        """Detection reads every raw series from the source."""
        samples = noisy_window(make_sample, 10) + [
            make_sample(10 * MINUTE_MS, 20.0)
        ]
        samples += noisy_window(make_sample, 11, target="T2")
        source = InMemorySampleStorage(samples)
        detector = AnomalyDetector(DetectorConfig(min_window_size=10))

        result = await detector.detect_all(source)

        assert [(a.target, a.kind) for a in result.anomalies] == [
            ("T1", AnomalyKind.SUDDEN_JUMP)
        ]

    @pytest.mark.core
    @pytest.mark.tier(1)
    async def test_detect_all_honours_filters_and_range(self, make_sample) -> None:
        """Detection honours the fragment filters and time range."""
        samples = [make_sample(0, 1.0), make_sample(2 * HOUR_MS, 1.0)]
        samples += [
            make_sample(0, 1.0, target="T2"),
            make_sample(2 * HOUR_MS, 1.0, target="T2"),
        ]
        source = InMemorySampleStorage(samples)
        detector = AnomalyDetector(DetectorConfig(min_window_size=2))

        by_target = await detector.detect_all(source, targets=["T2"])
        by_range = await detector.detect_all(source, start=HOUR_MS)

        assert [a.target for a in by_target.anomalies] == ["T2"]
        assert by_range.anomalies == []

    @pytest.mark.core
    @pytest.mark.tier(1)
    async def test_detect_single_series(self, make_sample) -> None:
        """A single series can be analysed by target and metric."""
        source = InMemorySampleStorage(
            [make_sample(0, 1.0), make_sample(2 * HOUR_MS, 1.0, metric="disp_y")]
        )
        detector = AnomalyDetector(DetectorConfig(min_window_size=1))

        result = await detector.detect(source, "T1", "disp_x")

        assert result.anomalies == []

    @pytest.mark.core
    @pytest.mark.tier(1)
    async def test_source_failure_is_wrapped(self, make_sample) -> None:
        """Source errors surface as UpstreamFetchFailure."""
        source = FailingSeriesSource([make_sample(0, 1.0)])

        with pytest.raises(UpstreamFetchFailure) as excinfo:
            await AnomalyDetector().detect_all(source)

        assert isinstance(excinfo.value.__cause__, ConnectionError)

    @pytest.mark.core
    @pytest.mark.tier(1)
    async def test_analysis_runs_off_the_event_loop(self, make_sample) -> None:
        """detect and detect_all hand the analysis to a worker thread."""
        source = InMemorySampleStorage([make_sample(0, 1.0)])
        detector = ThreadRecordingDetector()

        await detector.detect_all(source)
        await detector.detect(source, "T1", "disp_x")

        loop_thread = threading.get_ident()
        assert len(detector.threads) == 2
        assert loop_thread not in detector.threads
