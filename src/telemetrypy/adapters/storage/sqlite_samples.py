"""SQLite storage adapter for telemetry samples."""

from collections.abc import AsyncIterable, Iterable
from typing import Any

from telemetrypy.adapters.storage.sqlite_base import SQLiteStorageBase
from telemetrypy.core.models import FetchFragment, FilterOptions, Sample

_TELEMETRY_SCHEMA = """
CREATE TABLE IF NOT EXISTS telemetry (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    ts INTEGER NOT NULL,
    asset_name TEXT NOT NULL,
    device_name TEXT NOT NULL,
    target_name TEXT NOT NULL,
    key_name TEXT NOT NULL,
    value REAL
);
CREATE INDEX IF NOT EXISTS idx_telemetry_ts ON telemetry(ts);
CREATE INDEX IF NOT EXISTS idx_telemetry_series ON telemetry(target_name, key_name, ts);
"""

_INSERT_SAMPLE = """
INSERT INTO telemetry (ts, asset_name, device_name, target_name, key_name, value)
VALUES (?, ?, ?, ?, ?, ?)
"""

_SELECT_SAMPLES = """
SELECT ts, asset_name, device_name, target_name, key_name, value
FROM telemetry
WHERE {where}
ORDER BY ts ASC, id ASC
"""

_SELECT_SERIES = """
SELECT DISTINCT target_name, key_name FROM telemetry
WHERE value IS NOT NULL
ORDER BY target_name, key_name
"""

_SELECT_DISTINCT = "SELECT DISTINCT {column} FROM telemetry ORDER BY {column}"

_SELECT_DEVICES = """
SELECT DISTINCT device_name FROM telemetry WHERE asset_name = ? ORDER BY device_name
"""

_SELECT_TARGETS = """
SELECT DISTINCT target_name FROM telemetry
WHERE asset_name = ? AND device_name = ?
ORDER BY target_name
"""

_COUNT_SAMPLES = "SELECT COUNT(*) FROM telemetry"


def _placeholders(values: Iterable[Any]) -> str:
    return ", ".join("?" for _ in values)


def build_where(fragment: FetchFragment) -> tuple[str, list[Any]]:
    """Translate a base filter into a WHERE clause with bound parameters.

    Rows with a NULL value never match.
    """
    conditions = ["value IS NOT NULL"]
    params: list[Any] = []
    if fragment.asset is not None:
        conditions.append("asset_name = ?")
        params.append(fragment.asset)
    if fragment.device is not None:
        conditions.append("device_name = ?")
        params.append(fragment.device)
    if fragment.targets:
        targets = sorted(fragment.targets)
        conditions.append(f"target_name IN ({_placeholders(targets)})")
        params.extend(targets)
    if fragment.metrics:
        metrics = sorted(fragment.metrics)
        conditions.append(f"key_name IN ({_placeholders(metrics)})")
        params.extend(metrics)
    if fragment.start is not None:
        conditions.append("ts >= ?")
        params.append(fragment.start)
    if fragment.end is not None:
        conditions.append("ts <= ?")
        params.append(fragment.end)

    value_filter = fragment.value_filter
    if value_filter is not None:
        if value_filter.min_value is not None:
            conditions.append("value >= ?")
            params.append(value_filter.min_value)
        if value_filter.max_value is not None:
            conditions.append("value <= ?")
            params.append(value_filter.max_value)
        if value_filter.exclude_values:
            excluded = sorted(value_filter.exclude_values)
            conditions.append(f"value NOT IN ({_placeholders(excluded)})")
            params.extend(excluded)

    return " AND ".join(conditions), params


def _from_row(row: Any) -> Sample:
    return Sample(
        timestamp=row[0],
        asset=row[1],
        device=row[2],
        target=row[3],
        metric=row[4],
        value=row[5],
    )


def _to_row(sample: Sample) -> tuple[Any, ...]:
    return (
        sample.timestamp,
        sample.asset,
        sample.device,
        sample.target,
        sample.metric,
        sample.value,
    )


class SQLiteSampleStorage(SQLiteStorageBase):
    """SQLite implementation of SampleSourcePort.

    The base filter is pushed down into the query. Rows whose value is NULL
    are stored but never returned.
    """

    def __init__(self, db_path: str) -> None:
        super().__init__(db_path, _TELEMETRY_SCHEMA)

    async def write(self, sample: Sample) -> None:
        """Write a sample to storage."""
        await self._execute(_INSERT_SAMPLE, _to_row(sample))

    async def write_many(self, samples: Iterable[Sample]) -> None:
        await self._execute_many(_INSERT_SAMPLE, (_to_row(s) for s in samples))

    async def fetch(self, fragment: FetchFragment) -> AsyncIterable[Sample]:
        """Fetch samples admitted by the base filter, ordered by timestamp."""
        where, params = build_where(fragment)
        async with self.async_connection() as db:
            query = _SELECT_SAMPLES.format(where=where)
            async with db.execute(query, params) as cursor:
                async for row in cursor:
                    yield _from_row(row)

    async def fetch_batch(
        self, fragment: FetchFragment, offset: int, batch_size: int
    ) -> list[Sample]:
        """Fetch one page of samples admitted by the base filter."""
        where, params = build_where(fragment)
        query = _SELECT_SAMPLES.format(where=where) + " LIMIT ? OFFSET ?"
        rows = await self._select(query, [*params, batch_size, offset])
        return [_from_row(row) for row in rows]

    async def list_series(self) -> list[tuple[str, str]]:
        rows = await self._select(_SELECT_SERIES)
        return [(row[0], row[1]) for row in rows]

    async def filter_options(self) -> FilterOptions:
        async def distinct(column: str) -> list[str]:
            rows = await self._select(_SELECT_DISTINCT.format(column=column))
            return [row[0] for row in rows]

        return FilterOptions(
            assets=await distinct("asset_name"),
            devices=await distinct("device_name"),
            targets=await distinct("target_name"),
            metrics=await distinct("key_name"),
        )

    async def devices_for_asset(self, asset: str) -> list[str]:
        rows = await self._select(_SELECT_DEVICES, (asset,))
        return [row[0] for row in rows]

    async def targets_for_device(self, asset: str, device: str) -> list[str]:
        rows = await self._select(_SELECT_TARGETS, (asset, device))
        return [row[0] for row in rows]

    async def count(self) -> int:
        """Return total number of stored rows, NULL values included."""
        rows = await self._select(_COUNT_SAMPLES)
        return rows[0][0] if rows else 0
