"""BDD step definitions for telemetry query and correction features."""

import asyncio
from dataclasses import dataclass, field
from typing import Any

import pytest
from pytest_bdd import given, parsers, then, when

from telemetrypy.adapters.storage.in_memory import (
    InMemoryCorrectionStore,
    InMemorySampleStorage,
)
from telemetrypy.core.models import (
    CorrectionRule,
    OperationType,
    OutlierMethod,
    QueryResult,
    QuerySpec,
    ReferenceValue,
    ResampleConfig,
    Sample,
    SamplingMethod,
    TimeWindow,
)
from telemetrypy.core.query import run_query


@dataclass
class TelemetryScenarioContext:
    """Shared state between steps of one scenario."""

    source: InMemorySampleStorage = field(default_factory=InMemorySampleStorage)
    corrections: InMemoryCorrectionStore = field(
        default_factory=InMemoryCorrectionStore
    )
    rule_ids: list[int] = field(default_factory=list)
    result: QueryResult | None = None


@pytest.fixture
def ctx() -> TelemetryScenarioContext:
    """Fresh scenario context for each test."""
    return TelemetryScenarioContext()


def run_async(coro: Any) -> Any:
    """Run a coroutine synchronously."""
    return asyncio.run(coro)


def _sample(series: str, timestamp: int, value: float) -> Sample:
    target, metric = series.split("/")
    return Sample(timestamp, "A1", "D1", target, metric, value)


def _query(ctx: TelemetryScenarioContext, series: str, **kwargs: Any) -> None:
    target, metric = series.split("/")
    spec = QuerySpec(targets={target}, metrics={metric}, **kwargs)
    ctx.result = run_async(run_query(spec, ctx.source, ctx.corrections))


def _values(text: str) -> list[float]:
    return [float(v) for v in text.split(",")]


# === Background Steps ===
@given("an empty telemetry store")
def step_empty_store(ctx: TelemetryScenarioContext) -> None:
    ctx.source = InMemorySampleStorage()
    ctx.corrections = InMemoryCorrectionStore()


@given(parsers.parse("a sample of {series} with value {value:g} at {ts:d} ms"))
def step_sample(
    ctx: TelemetryScenarioContext, series: str, value: float, ts: int
) -> None:
    run_async(ctx.source.write(_sample(series, ts, value)))


@given(parsers.parse("{series} values {values} one second apart"))
def step_series(ctx: TelemetryScenarioContext, series: str, values: str) -> None:
    samples = [_sample(series, i * 1000, v) for i, v in enumerate(_values(values))]
    run_async(ctx.source.write_many(samples))


@given(
    parsers.re(
        r'an? "(?P<operation>\w+)" rule for (?P<series>\S+) '
        r"by (?P<operand>[-\d.]+) created at (?P<created>\d+)"
    )
)
def step_rule(
    ctx: TelemetryScenarioContext,
    operation: str,
    series: str,
    operand: str,
    created: str,
) -> None:
    target, metric = series.split("/")
    rule = CorrectionRule(
        target,
        metric,
        OperationType.parse(operation),
        float(operand),
        created_at=int(created),
    )
    ctx.rule_ids.append(run_async(ctx.corrections.create(rule)))


# === Action Steps ===
@when("the rule is toggled")
def step_toggle(ctx: TelemetryScenarioContext) -> None:
    run_async(ctx.corrections.toggle(ctx.rule_ids[-1]))


@when(parsers.re(r"I query (?P<series>\S+)"))
def step_query(ctx: TelemetryScenarioContext, series: str) -> None:
    _query(ctx, series)


@when(
    parsers.parse(
        "I query {series} with reference {reference:g} averaged over "
        "{interval:d} ms buckets"
    )
)
def step_query_reference(
    ctx: TelemetryScenarioContext, series: str, reference: float, interval: int
) -> None:
    target, metric = series.split("/")
    _query(
        ctx,
        series,
        reference_values=(ReferenceValue(target, metric, reference),),
        resample=ResampleConfig(interval, SamplingMethod.AVG),
    )


@when(parsers.parse('I query {series} removing "{method}" outliers'))
def step_query_outliers(
    ctx: TelemetryScenarioContext, series: str, method: str
) -> None:
    _query(
        ctx,
        series,
        remove_outliers=True,
        outlier_method=OutlierMethod.parse(method),
    )


@when(parsers.parse('I query {series} between "{start}" and "{end}"'))
def step_query_window(
    ctx: TelemetryScenarioContext, series: str, start: str, end: str
) -> None:
    _query(ctx, series, time_windows=(TimeWindow.parse(start, end),))


@when(
    parsers.parse(
        "I query {series} with the first value per {interval:d} ms bucket "
        "capped at {limit:d}"
    )
)
def step_query_capped(
    ctx: TelemetryScenarioContext, series: str, interval: int, limit: int
) -> None:
    _query(ctx, series, resample=ResampleConfig(interval), limit=limit)


# === Assertion Steps ===
@then(parsers.parse("the result has {count:d} sample"))
@then(parsers.parse("the result has {count:d} samples"))
def step_result_count(ctx: TelemetryScenarioContext, count: int) -> None:
    assert ctx.result is not None
    assert len(ctx.result.samples) == count
    assert ctx.result.stats.total_points == count


@then(parsers.parse("sample {index:d} is at {ts:d} ms with value {value:g}"))
def step_sample_at(
    ctx: TelemetryScenarioContext, index: int, ts: int, value: float
) -> None:
    assert ctx.result is not None
    sample = ctx.result.samples[index - 1]
    assert (sample.timestamp, sample.value) == (ts, pytest.approx(value))


@then(parsers.parse("the statistics report {count:d} removed outlier"))
def step_outliers_removed(ctx: TelemetryScenarioContext, count: int) -> None:
    assert ctx.result is not None
    assert ctx.result.stats.outliers_removed == count


@then(parsers.parse("the result values are {values}"))
def step_result_values(ctx: TelemetryScenarioContext, values: str) -> None:
    assert ctx.result is not None
    assert [s.value for s in ctx.result.samples] == pytest.approx(_values(values))
