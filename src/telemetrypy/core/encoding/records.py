"""Convert domain models to JSON-compatible dictionaries.

Timestamps are rendered as RFC 3339 strings in UTC.
"""

from typing import Any

from telemetrypy.core.models import (
    CorrectionRule,
    DataStats,
    DetectedAnomaly,
    DetectionResult,
    DetectionSummary,
    FilterOptions,
    QueryResult,
    Sample,
    to_datetime,
)


def format_time(timestamp_ms: int | None) -> str | None:
    if timestamp_ms is None:
        return None
    return to_datetime(timestamp_ms).isoformat(timespec="milliseconds")


def sample_to_dict(sample: Sample) -> dict[str, Any]:
    return {
        "timestamp": format_time(sample.timestamp),
        "asset_name": sample.asset,
        "device_name": sample.device,
        "target_name": sample.target,
        "key_name": sample.metric,
        "value": sample.value,
    }


def stats_to_dict(stats: DataStats) -> dict[str, Any]:
    time_range = None
    if stats.time_range is not None:
        first, last = stats.time_range
        time_range = [format_time(first), format_time(last)]
    return {
        "total_points": stats.total_points,
        "target_count": stats.target_count,
        "time_range": time_range,
        "outliers_removed": stats.outliers_removed,
        "outlier_method": stats.outlier_method.value if stats.outlier_method else None,
    }


def query_result_to_dict(result: QueryResult) -> dict[str, Any]:
    return {
        "data": [sample_to_dict(s) for s in result.samples],
        "stats": stats_to_dict(result.stats),
    }


def rule_to_dict(rule: CorrectionRule) -> dict[str, Any]:
    return {
        "id": rule.id,
        "name": rule.name,
        "description": rule.description,
        "target_name": rule.target,
        "key_name": rule.metric,
        "operation_type": rule.operation.value,
        "value": rule.operand,
        "start_time": format_time(rule.start),
        "end_time": format_time(rule.end),
        "is_active": rule.active,
        "created_at": format_time(rule.created_at),
        "updated_at": format_time(rule.updated_at),
    }


def anomaly_to_dict(anomaly: DetectedAnomaly) -> dict[str, Any]:
    suggested = anomaly.suggested_correction
    return {
        "target_name": anomaly.target,
        "key_name": anomaly.metric,
        "anomaly_type": anomaly.kind.value,
        "start_time": format_time(anomaly.start),
        "end_time": format_time(anomaly.end),
        "baseline_value": anomaly.baseline,
        "anomaly_value": anomaly.observed,
        "jump_magnitude": anomaly.jump_magnitude,
        "confidence": anomaly.confidence,
        "suggested_correction": rule_to_dict(suggested) if suggested else None,
    }


def summary_to_dict(summary: DetectionSummary) -> dict[str, Any]:
    start, end = summary.time_range_analyzed
    return {
        "total_anomalies": summary.total_anomalies,
        "targets_affected": summary.targets_affected,
        "time_range_analyzed": [format_time(start), format_time(end)],
        "confidence_distribution": dict(summary.confidence_distribution),
    }


def detection_result_to_dict(result: DetectionResult) -> dict[str, Any]:
    return {
        "anomalies": [anomaly_to_dict(a) for a in result.anomalies],
        "suggested_operations": [rule_to_dict(r) for r in result.suggested_rules],
        "summary": summary_to_dict(result.summary),
    }


def filter_options_to_dict(options: FilterOptions) -> dict[str, Any]:
    return {
        "assets": list(options.assets),
        "devices": list(options.devices),
        "targets": list(options.targets),
        "key_names": list(options.metrics),
    }
