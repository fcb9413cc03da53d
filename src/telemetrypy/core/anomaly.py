"""Statistical anomaly detection over raw telemetry series.

The detector is stateless. Each (target, metric) series is scanned for sudden
jumps against a trailing window and for gaps between consecutive samples.
With auto-correction enabled, sudden jumps yield inactive correction rules
that bring the observed value back to the window baseline.
"""

import asyncio
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

from telemetrypy.core.exceptions import TelemetryError, UpstreamFetchFailure
from telemetrypy.core.models import (
    AnomalyKind,
    CorrectionRule,
    DetectedAnomaly,
    DetectionResult,
    DetectionSummary,
    FetchFragment,
    OperationType,
    Sample,
    now_ms,
)
from telemetrypy.core.ports import SampleSourcePort

logger = logging.getLogger(__name__)

GAP_THRESHOLD_MS = 3_600_000


@dataclass(frozen=True)
class DetectorConfig:
    """Anomaly detector settings.

    Attributes:
        sensitivity: Standard deviation multiple for the offset and noise
            detectors.
        min_window_size: Points in the trailing baseline window; shorter
            series are not analyzed.
        max_jump_threshold: Absolute z-score above which a point is a jump.
        consecutive_anomaly_threshold: Consecutive points required by the
            offset detector.
        auto_correction: Generate suggested correction rules for jumps.
        fetch_limit: Maximum number of samples read per series.
    """

    sensitivity: float = 3.0
    min_window_size: int = 50
    max_jump_threshold: float = 5.0
    consecutive_anomaly_threshold: int = 3
    auto_correction: bool = False
    fetch_limit: int = 100_000


def confidence_level(confidence: float) -> str:
    """Bucket a confidence into "low" (<= 0.5), "mid" (<= 0.8) or "high"."""
    if confidence > 0.8:
        return "high"
    if confidence > 0.5:
        return "mid"
    return "low"


def group_series(samples: Iterable[Sample]) -> dict[tuple[str, str], list[Sample]]:
    """Split samples by (target, metric), each series sorted by timestamp."""
    series: dict[tuple[str, str], list[Sample]] = {}
    for sample in samples:
        series.setdefault(sample.series, []).append(sample)
    for points in series.values():
        points.sort(key=lambda s: s.timestamp)
    return series


class AnomalyDetector:
    """Detects sudden jumps and data gaps and proposes corrections."""

    def __init__(self, config: DetectorConfig | None = None) -> None:
        self.config = config or DetectorConfig()

    def detect_sudden_jumps(self, series: Sequence[Sample]) -> list[DetectedAnomaly]:
        """Flag points far outside the distribution of the preceding window.

        A window without variance carries no signal, so no anomaly is
        reported for the point following it. Window statistics are computed
        for all positions at once over a strided view of the values.
        """
        window_size = self.config.min_window_size
        threshold = self.config.max_jump_threshold
        if window_size <= 0 or len(series) <= window_size:
            return []

        values = np.fromiter((s.value for s in series), dtype=float, count=len(series))
        # Row k is the window preceding values[window_size + k].
        windows = sliding_window_view(values, window_size)[:-1]
        means = windows.mean(axis=1)
        stds = windows.std(axis=1)
        flat = windows.max(axis=1) == windows.min(axis=1)
        observed = values[window_size:]

        z_scores = np.zeros_like(observed)
        varying = ~flat & (stds > 0)
        z_scores[varying] = np.abs(observed[varying] - means[varying]) / stds[varying]

        anomalies = []
        for k in np.flatnonzero(z_scores > threshold):
            sample = series[window_size + k]
            z_score = float(z_scores[k])
            anomalies.append(
                DetectedAnomaly(
                    target=sample.target,
                    metric=sample.metric,
                    kind=AnomalyKind.SUDDEN_JUMP,
                    start=sample.timestamp,
                    end=None,
                    baseline=float(means[k]),
                    observed=sample.value,
                    jump_magnitude=z_score,
                    confidence=min(z_score / threshold, 1.0),
                )
            )
        return anomalies

    def detect_persistent_offsets(
        self, series: Sequence[Sample]
    ) -> list[DetectedAnomaly]:
        """Extension point for change-point detection. Reports nothing."""
        return []

    def detect_increased_noise(self, series: Sequence[Sample]) -> list[DetectedAnomaly]:
        """Extension point for variance comparison. Reports nothing."""
        return []

    def detect_data_gaps(self, series: Sequence[Sample]) -> list[DetectedAnomaly]:
        """Flag consecutive samples more than one hour apart."""
        anomalies = []
        for previous, current in zip(series, series[1:]):
            if current.timestamp - previous.timestamp > GAP_THRESHOLD_MS:
                anomalies.append(
                    DetectedAnomaly(
                        target=current.target,
                        metric=current.metric,
                        kind=AnomalyKind.DATA_GAP,
                        start=previous.timestamp,
                        end=current.timestamp,
                        baseline=previous.value,
                        observed=current.value,
                        jump_magnitude=0.0,
                        confidence=1.0,
                    )
                )
        return anomalies

    def detect_series(self, series: Sequence[Sample]) -> list[DetectedAnomaly]:
        """Run every detector over one series ordered by timestamp.

        Series shorter than ``min_window_size`` are not analyzed.
        """
        if len(series) < self.config.min_window_size:
            return []
        return [
            *self.detect_sudden_jumps(series),
            *self.detect_persistent_offsets(series),
            *self.detect_increased_noise(series),
            *self.detect_data_gaps(series),
        ]

    def suggest_correction(self, anomaly: DetectedAnomaly) -> CorrectionRule | None:
        """Propose an inactive rule for a sudden jump.

        Returns None unless auto-correction is enabled and the anomaly is a
        sudden jump. The rule adds ``baseline - observed``, restoring the
        baseline, from the anomaly start to its end.
        """
        if not self.config.auto_correction:
            return None
        if anomaly.kind is not AnomalyKind.SUDDEN_JUMP:
            return None
        operand = anomaly.baseline - anomaly.observed
        return CorrectionRule(
            target=anomaly.target,
            metric=anomaly.metric,
            operation=OperationType.ADD,
            operand=operand,
            name=f"Auto-correct jump {anomaly.target}/{anomaly.metric}",
            description=(
                f"Jump from {anomaly.baseline:.3f} to {anomaly.observed:.3f} "
                f"detected, suggested correction {operand:.3f}"
            ),
            start=anomaly.start,
            end=anomaly.end,
            active=False,
        )

    def analyze(
        self,
        samples: Iterable[Sample],
        start: int | None = None,
        end: int | None = None,
    ) -> DetectionResult:
        """Detect anomalies in already fetched raw samples.

        Args:
            samples: Raw samples, any number of series, any order.
            start: Start of the analyzed range, reported in the summary.
            end: End of the analyzed range, reported in the summary.
        """
        anomalies: list[DetectedAnomaly] = []
        suggested: list[CorrectionRule] = []
        for (target, metric), series in group_series(samples).items():
            found = self.detect_series(series)
            logger.debug(
                "Series %s/%s: %d points, %d anomalies",
                target,
                metric,
                len(series),
                len(found),
            )
            for anomaly in found:
                rule = self.suggest_correction(anomaly)
                if rule is not None:
                    suggested.append(rule)
                    anomaly = replace(anomaly, suggested_correction=rule)
                anomalies.append(anomaly)
        return DetectionResult(
            anomalies=anomalies,
            suggested_rules=suggested,
            summary=self.summarize(anomalies, start, end),
        )

    def summarize(
        self,
        anomalies: Sequence[DetectedAnomaly],
        start: int | None = None,
        end: int | None = None,
    ) -> DetectionSummary:
        """Aggregate a detection run. Missing range ends default to now."""
        distribution: dict[str, int] = {}
        for anomaly in anomalies:
            level = confidence_level(anomaly.confidence)
            distribution[level] = distribution.get(level, 0) + 1
        now = now_ms()
        return DetectionSummary(
            total_anomalies=len(anomalies),
            targets_affected=len({a.target for a in anomalies}),
            time_range_analyzed=(
                start if start is not None else now,
                end if end is not None else now,
            ),
            confidence_distribution=distribution,
        )

    async def _fetch_series(
        self,
        source: SampleSourcePort,
        target: str,
        metric: str,
        start: int | None,
        end: int | None,
    ) -> list[Sample]:
        fragment = FetchFragment(
            targets=frozenset({target}),
            metrics=frozenset({metric}),
            start=start,
            end=end,
        )
        try:
            return await source.fetch_batch(fragment, 0, self.config.fetch_limit)
        except TelemetryError:
            raise
        except Exception as exc:
            raise UpstreamFetchFailure(
                f"Fetching {target}/{metric} for detection failed: {exc}"
            ) from exc

    async def detect(
        self,
        source: SampleSourcePort,
        target: str,
        metric: str,
        start: int | None = None,
        end: int | None = None,
    ) -> DetectionResult:
        """Fetch one raw series and analyze it.

        Raises:
            UpstreamFetchFailure: If the source fails.
        """
        series = await self._fetch_series(source, target, metric, start, end)
        return await asyncio.to_thread(self.analyze, series, start, end)

    async def detect_all(
        self,
        source: SampleSourcePort,
        start: int | None = None,
        end: int | None = None,
        targets: Iterable[str] = (),
        metrics: Iterable[str] = (),
    ) -> DetectionResult:
        """Analyze every series known to the source.

        Args:
            source: Sample source providing raw, uncorrected samples.
            start: Inclusive start of the analyzed range.
            end: Inclusive end of the analyzed range.
            targets: Restrict to these targets (empty means all).
            metrics: Restrict to these metrics (empty means all).

        Series are fetched on the event loop. The analysis itself runs in a
        worker thread.

        Raises:
            UpstreamFetchFailure: If the source fails.
        """
        wanted_targets = set(targets)
        wanted_metrics = set(metrics)
        try:
            pairs = await source.list_series()
        except Exception as exc:
            raise UpstreamFetchFailure(f"Listing series failed: {exc}") from exc

        samples: list[Sample] = []
        for target, metric in pairs:
            if wanted_targets and target not in wanted_targets:
                continue
            if wanted_metrics and metric not in wanted_metrics:
                continue
            samples.extend(
                await self._fetch_series(source, target, metric, start, end)
            )
        result = await asyncio.to_thread(self.analyze, samples, start, end)
        logger.info(
            "Detection over %d series found %d anomalies",
            len(pairs),
            result.summary.total_anomalies,
        )
        return result
