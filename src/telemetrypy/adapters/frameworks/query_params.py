"""Shared query parameter parsing utilities for framework adapters.

Request parameters arrive as strings. These helpers turn them into the core
query types and raise InvalidSpec for anything that cannot be interpreted.
"""

import json
from datetime import datetime
from typing import Any

from telemetrypy.core.exceptions import InvalidSpec
from telemetrypy.core.models import (
    OutlierMethod,
    QuerySpec,
    ReferenceValue,
    ResampleConfig,
    SamplingMethod,
    TimeWindow,
    ValueFilter,
    from_datetime,
)


def parse_csv(text: str | None) -> frozenset[str]:
    """Split a comma separated list, ignoring blank entries."""
    if not text:
        return frozenset()
    return frozenset(part.strip() for part in text.split(",") if part.strip())


def parse_time(text: str | None, name: str) -> int | None:
    """Parse an RFC 3339 timestamp into Unix epoch milliseconds.

    Args:
        text: The parameter value, or None when absent.
        name: Parameter name used in the error message.

    Raises:
        InvalidSpec: If the value is not a valid timestamp.
    """
    if text is None or not text.strip():
        return None
    try:
        return from_datetime(datetime.fromisoformat(text.strip()))
    except ValueError:
        raise InvalidSpec(f"Invalid {name} format") from None


def parse_exclude_values(text: str | None) -> frozenset[float]:
    """Parse comma separated floats. Unparsable entries are skipped."""
    values = set()
    for part in (text or "").split(","):
        try:
            values.add(float(part.strip()))
        except ValueError:
            continue
    return frozenset(values)


def _load_json_list(text: str, name: str) -> list[Any]:
    try:
        loaded = json.loads(text)
    except json.JSONDecodeError as exc:
        raise InvalidSpec(f"Invalid {name} format: {exc.msg}") from None
    if not isinstance(loaded, list):
        raise InvalidSpec(f"Invalid {name} format: expected a list")
    return loaded


def parse_reference_values(text: str | None) -> tuple[ReferenceValue, ...]:
    """Parse a JSON list of {target_name, key_name, reference_value} objects.

    Raises:
        InvalidSpec: If the JSON is malformed or an entry misses a field.
    """
    if not text:
        return ()
    references = []
    for entry in _load_json_list(text, "reference_values"):
        try:
            references.append(
                ReferenceValue(
                    target=str(entry["target_name"]),
                    metric=str(entry["key_name"]),
                    value=float(entry["reference_value"]),
                )
            )
        except (KeyError, TypeError, ValueError):
            raise InvalidSpec("Invalid reference_values format") from None
    return tuple(references)


def parse_time_ranges(text: str | None) -> tuple[TimeWindow, ...]:
    """Parse a JSON list of {"start": "HH:MM", "end": "HH:MM"} objects.

    Raises:
        InvalidSpec: If the JSON is malformed or a time is out of range.
    """
    if not text:
        return ()
    windows = []
    for entry in _load_json_list(text, "time_ranges"):
        try:
            start, end = entry["start"], entry["end"]
        except (KeyError, TypeError):
            raise InvalidSpec("Invalid time_ranges format") from None
        if not isinstance(start, str) or not isinstance(end, str):
            raise InvalidSpec("Invalid time_ranges format")
        windows.append(TimeWindow.parse(start, end))
    return tuple(windows)


def resolve_limit(limit: int | None, default: int, maximum: int) -> int:
    """Apply the default cap and clamp a requested cap to the maximum."""
    if limit is None:
        return min(default, maximum)
    if limit < 0:
        raise InvalidSpec(f"Limit must not be negative, got {limit}")
    return min(limit, maximum)


def build_query_spec(
    *,
    asset_name: str | None = None,
    device_name: str | None = None,
    target_names: str | None = None,
    key_names: str | None = None,
    start_time: str | None = None,
    end_time: str | None = None,
    remove_outliers: bool = False,
    outlier_method: str | None = None,
    min_value: float | None = None,
    max_value: float | None = None,
    exclude_values: str | None = None,
    limit: int | None = None,
    sampling_interval: int | None = None,
    sampling_method: str | None = None,
    reference_values: str | None = None,
    time_ranges: str | None = None,
) -> QuerySpec:
    """Build a QuerySpec from raw request parameters.

    A value filter is attached only when one of min_value, max_value or
    exclude_values is given. Resampling is enabled by sampling_interval and
    uses the first value of each bucket unless sampling_method says otherwise.

    Raises:
        InvalidSpec: If any parameter cannot be interpreted.
    """
    value_filter = None
    if min_value is not None or max_value is not None or exclude_values is not None:
        value_filter = ValueFilter(
            min_value=min_value,
            max_value=max_value,
            exclude_values=parse_exclude_values(exclude_values),
        )

    resample = None
    if sampling_interval is not None:
        resample = ResampleConfig(
            interval_ms=sampling_interval,
            method=SamplingMethod.parse(sampling_method or SamplingMethod.FIRST),
        )

    return QuerySpec(
        asset=asset_name or None,
        device=device_name or None,
        targets=parse_csv(target_names),
        metrics=parse_csv(key_names),
        start=parse_time(start_time, "start_time"),
        end=parse_time(end_time, "end_time"),
        remove_outliers=remove_outliers,
        outlier_method=OutlierMethod.parse(outlier_method),
        value_filter=value_filter,
        limit=limit,
        resample=resample,
        reference_values=parse_reference_values(reference_values),
        time_windows=parse_time_ranges(time_ranges),
    )
