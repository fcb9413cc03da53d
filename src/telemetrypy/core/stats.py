"""Summary statistics for query results."""

from collections.abc import Sequence

from telemetrypy.core.models import DataStats, QuerySpec, Sample


def summarize(samples: Sequence[Sample], spec: QuerySpec, base_count: int) -> DataStats:
    """Compute result metadata.

    Args:
        samples: Final query output.
        spec: The query that produced the output.
        base_count: Size of the population before outlier removal.

    Returns:
        DataStats. Outlier fields are only set when removal was requested.
    """
    time_range = None
    if samples:
        timestamps = [s.timestamp for s in samples]
        time_range = (min(timestamps), max(timestamps))

    outliers_removed = None
    outlier_method = None
    if spec.remove_outliers:
        outliers_removed = max(base_count - len(samples), 0)
        outlier_method = spec.outlier_method

    return DataStats(
        total_points=len(samples),
        target_count=len({s.target for s in samples}),
        time_range=time_range,
        outliers_removed=outliers_removed,
        outlier_method=outlier_method,
    )
