"""Encoders for query results, detection results and stream events."""

from telemetrypy.core.encoding.ndjson import encode_event, encode_events, encode_stream
from telemetrypy.core.encoding.records import (
    detection_result_to_dict,
    filter_options_to_dict,
    query_result_to_dict,
    rule_to_dict,
)

__all__ = [
    "detection_result_to_dict",
    "encode_event",
    "encode_events",
    "encode_stream",
    "filter_options_to_dict",
    "query_result_to_dict",
    "rule_to_dict",
]
