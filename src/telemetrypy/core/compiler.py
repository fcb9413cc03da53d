"""Compile a QuerySpec into an ordered sequence of transform stages.

Stage order is fixed: base filter, outlier removal, reference normalization,
time-of-day windowing, resampling, cap. Outlier bounds are therefore computed
over the base-filtered population, aggregates see reference-corrected values,
excluded hours never reach a bucket, and the cap bounds the final result.
"""

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from functools import partial

from telemetrypy.core import stages
from telemetrypy.core.exceptions import InvalidSpec
from telemetrypy.core.models import QuerySpec, Sample

logger = logging.getLogger(__name__)

StageFunc = Callable[[Sequence[Sample]], list[Sample]]

BASE_FILTER = "base_filter"
OUTLIER_FILTER = "outlier_filter"
REFERENCE_NORMALIZER = "reference_normalizer"
TIME_OF_DAY_FILTER = "time_of_day_filter"
RESAMPLER = "resampler"
LIMITER = "limiter"

# Stages that need the whole population rather than one sample at a time.
POPULATION_STAGES = frozenset({OUTLIER_FILTER, RESAMPLER})


@dataclass(frozen=True)
class Stage:
    """A named transform stage."""

    name: str
    func: StageFunc

    def __call__(self, samples: Sequence[Sample]) -> list[Sample]:
        return self.func(samples)


@dataclass(frozen=True)
class PipelineOutput:
    """Result of running a compiled pipeline.

    Attributes:
        samples: The transformed samples.
        base_count: Number of samples that passed the base filter, i.e. the
            population seen by outlier removal.
    """

    samples: list[Sample]
    base_count: int


@dataclass(frozen=True)
class CompiledPipeline:
    """Ordered stages built from a validated QuerySpec."""

    spec: QuerySpec
    stages: tuple[Stage, ...]

    @property
    def stage_names(self) -> list[str]:
        return [stage.name for stage in self.stages]

    def run(self, samples: Sequence[Sample]) -> PipelineOutput:
        """Run every stage in order over the fetched samples."""
        current = list(samples)
        base_count = len(current)
        for stage in self.stages:
            current = stage(current)
            if stage.name == BASE_FILTER:
                base_count = len(current)
            logger.debug("Stage %s produced %d samples", stage.name, len(current))
        return PipelineOutput(samples=current, base_count=base_count)


def validate_spec(spec: QuerySpec) -> None:
    """Check a QuerySpec for values the pipeline cannot honour.

    Raises:
        InvalidSpec: On empty identifiers, a negative limit, a non-positive
            resampling interval, an out-of-range time window, or a reference
            value for a series the target/metric filter excludes.
    """
    for name in (*spec.targets, *spec.metrics):
        if not isinstance(name, str) or not name:
            raise InvalidSpec("Target and metric names must be non-empty strings")
    if spec.start is not None and spec.end is not None and spec.start > spec.end:
        raise InvalidSpec("Query start lies after its end")
    if spec.limit is not None and spec.limit < 0:
        raise InvalidSpec(f"Limit must not be negative, got {spec.limit}")
    if spec.resample is not None and spec.resample.interval_ms <= 0:
        raise InvalidSpec(
            f"Resampling interval must be positive, got {spec.resample.interval_ms}"
        )
    for window in spec.time_windows:
        if not window.is_valid():
            raise InvalidSpec(f"Time-of-day window out of range: {window}")
    for reference in spec.reference_values:
        if spec.targets and reference.target not in spec.targets:
            raise InvalidSpec(
                f"Reference value for target {reference.target!r} "
                "outside the target filter"
            )
        if spec.metrics and reference.metric not in spec.metrics:
            raise InvalidSpec(
                f"Reference value for metric {reference.metric!r} "
                "outside the metric filter"
            )


def compile_pipeline(spec: QuerySpec) -> CompiledPipeline:
    """Validate a QuerySpec and build its ordered stages.

    Raises:
        InvalidSpec: If the QuerySpec fails validation. Nothing has been fetched
            at that point.
    """
    validate_spec(spec)

    built = [Stage(BASE_FILTER, partial(stages.filter_base, fragment=spec.fragment()))]
    if spec.remove_outliers:
        built.append(
            Stage(
                OUTLIER_FILTER,
                partial(stages.remove_outliers, method=spec.outlier_method),
            )
        )
    if spec.reference_values:
        built.append(
            Stage(
                REFERENCE_NORMALIZER,
                partial(stages.subtract_references, references=spec.reference_values),
            )
        )
    if spec.time_windows:
        built.append(
            Stage(
                TIME_OF_DAY_FILTER,
                partial(
                    stages.filter_time_of_day, windows=spec.time_windows, tz=spec.tz
                ),
            )
        )
    if spec.resample is not None:
        built.append(Stage(RESAMPLER, partial(stages.resample, config=spec.resample)))
    if spec.limit is not None:
        built.append(Stage(LIMITER, partial(stages.cap, limit=spec.limit)))

    return CompiledPipeline(spec=spec, stages=tuple(built))
