"""Query service: fetch, transform, correct and summarize telemetry.

``run_query`` returns a complete result. ``QueryStream`` delivers the result
as a bounded, resumable sequence of batches that the consumer may cancel.
"""

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, replace

from telemetrypy.core.compiler import (
    POPULATION_STAGES,
    CompiledPipeline,
    compile_pipeline,
)
from telemetrypy.core.corrections import apply_corrections
from telemetrypy.core.exceptions import (
    InvalidSpec,
    TelemetryError,
    UpstreamFetchFailure,
)
from telemetrypy.core.models import CorrectionRule, QueryResult, QuerySpec, Sample
from telemetrypy.core.ports import CorrectionStorePort, SampleSourcePort
from telemetrypy.core.stats import summarize

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 1000


async def _fetch_all(source: SampleSourcePort, spec: QuerySpec) -> list[Sample]:
    try:
        return [sample async for sample in source.fetch(spec.fragment())]
    except TelemetryError:
        raise
    except Exception as exc:
        raise UpstreamFetchFailure(f"Sample fetch failed: {exc}") from exc


async def _load_rules(
    corrections: CorrectionStorePort, spec: QuerySpec
) -> list[CorrectionRule]:
    try:
        return await corrections.list_active(spec.targets, spec.metrics)
    except TelemetryError:
        raise
    except Exception as exc:
        raise UpstreamFetchFailure(f"Correction lookup failed: {exc}") from exc


async def run_query(
    spec: QuerySpec,
    source: SampleSourcePort,
    corrections: CorrectionStorePort,
) -> QueryResult:
    """Run a query end to end.

    Args:
        spec: The query description.
        source: Sample source the base filter is pushed down to.
        corrections: Store providing the active correction rules.

    Returns:
        QueryResult with the corrected samples and their statistics.

    Raises:
        InvalidSpec: If the QuerySpec is rejected. Nothing is fetched.
        UpstreamFetchFailure: If the source or the store fails.
    """
    pipeline = compile_pipeline(spec)
    samples = await _fetch_all(source, spec)
    output = pipeline.run(samples)
    rules = await _load_rules(corrections, spec)
    corrected = apply_corrections(output.samples, rules)
    stats = summarize(corrected, spec, output.base_count)
    logger.debug(
        "Query returned %d of %d fetched samples (%d rules)",
        stats.total_points,
        len(samples),
        len(rules),
    )
    return QueryResult(samples=corrected, stats=stats)


@dataclass(frozen=True)
class Batch:
    """One page of stream output.

    Attributes:
        offset: Source offset this batch was fetched from.
        next_offset: Offset to resume the stream from.
        samples: Transformed and corrected samples of this page.
    """

    offset: int
    next_offset: int
    samples: list[Sample]


@dataclass(frozen=True)
class StreamCompleted:
    """Terminal event: the stream delivered everything it was asked for."""

    total_samples: int
    batches: int


@dataclass(frozen=True)
class StreamFailed:
    """Terminal event: the source or the store failed mid-stream."""

    error: UpstreamFetchFailure
    total_samples: int


StreamEvent = Batch | StreamCompleted | StreamFailed


class QueryStream:
    """Cancellable async sequence of query batches.

    Only per-sample stages run on a stream: base filter, reference
    normalization, time-of-day windowing, cap and correction overlay. Specs
    that request outlier removal or resampling are rejected.

    Example:
        ```python
        stream = QueryStream(spec, source, corrections, batch_size=500)
        async for event in stream:
            if isinstance(event, Batch):
                send(event.samples)
        ```
    """

    def __init__(
        self,
        spec: QuerySpec,
        source: SampleSourcePort,
        corrections: CorrectionStorePort,
        batch_size: int = DEFAULT_BATCH_SIZE,
        start_offset: int = 0,
    ) -> None:
        """Validate the QuerySpec and prepare the stream.

        Raises:
            InvalidSpec: If the QuerySpec is invalid, asks for population stages,
                or the batch parameters are out of range.
        """
        if batch_size <= 0:
            raise InvalidSpec(f"Batch size must be positive, got {batch_size}")
        if start_offset < 0:
            raise InvalidSpec(f"Offset must not be negative, got {start_offset}")
        if spec.limit is not None and spec.limit < 0:
            raise InvalidSpec(f"Limit must not be negative, got {spec.limit}")
        # The cap is applied across batches, not per batch.
        self._pipeline: CompiledPipeline = compile_pipeline(replace(spec, limit=None))
        unsupported = sorted(POPULATION_STAGES.intersection(self._pipeline.stage_names))
        if unsupported:
            raise InvalidSpec(
                f"Stages not supported when streaming: {', '.join(unsupported)}"
            )
        self._spec = spec
        self._source = source
        self._corrections = corrections
        self._batch_size = batch_size
        self._start_offset = start_offset
        self._cancelled = False
        self._completed = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def completed(self) -> bool:
        """True once the terminal StreamCompleted event has been produced."""
        return self._completed

    def cancel(self) -> None:
        """Stop the stream. No further batches are fetched or emitted."""
        self._cancelled = True

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self._events()

    async def _events(self) -> AsyncIterator[StreamEvent]:
        fragment = self._spec.fragment()
        limit = self._spec.limit
        offset = self._start_offset
        emitted = 0
        batches = 0

        while not self._cancelled:
            if limit is not None and emitted >= limit:
                break
            rules: list[CorrectionRule] = []
            try:
                raw = await self._source.fetch_batch(fragment, offset, self._batch_size)
                if raw:
                    rules = await self._corrections.list_active(
                        self._spec.targets, self._spec.metrics
                    )
            except Exception as exc:
                logger.warning("Stream aborted at offset %d: %s", offset, exc)
                error = UpstreamFetchFailure(f"Batch fetch failed at offset {offset}")
                error.__cause__ = exc
                yield StreamFailed(error=error, total_samples=emitted)
                return
            if self._cancelled:
                return
            if not raw:
                break

            next_offset = offset + len(raw)
            samples = apply_corrections(self._pipeline.run(raw).samples, rules)
            if limit is not None:
                samples = samples[: limit - emitted]
            if samples:
                emitted += len(samples)
                batches += 1
                yield Batch(offset=offset, next_offset=next_offset, samples=samples)
            offset = next_offset

        if self._cancelled:
            return
        self._completed = True
        yield StreamCompleted(total_samples=emitted, batches=batches)


def stream_query(
    spec: QuerySpec,
    source: SampleSourcePort,
    corrections: CorrectionStorePort,
    batch_size: int = DEFAULT_BATCH_SIZE,
    start_offset: int = 0,
) -> QueryStream:
    """Create a QueryStream. See QueryStream for the delivered events."""
    return QueryStream(spec, source, corrections, batch_size, start_offset)
