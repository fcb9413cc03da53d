"""NDJSON encoder for query stream events."""

import json
from collections.abc import AsyncIterable, AsyncIterator, Iterable
from typing import Any

from telemetrypy.core.encoding.records import sample_to_dict
from telemetrypy.core.query import Batch, StreamCompleted, StreamEvent, StreamFailed


def event_to_dict(event: StreamEvent) -> dict[str, Any]:
    match event:
        case Batch():
            return {
                "type": "batch",
                "offset": event.offset,
                "next_offset": event.next_offset,
                "data": [sample_to_dict(s) for s in event.samples],
            }
        case StreamCompleted():
            return {
                "type": "completed",
                "total_samples": event.total_samples,
                "batches": event.batches,
            }
        case StreamFailed():
            return {
                "type": "error",
                "error": str(event.error),
                "total_samples": event.total_samples,
            }
    raise TypeError(f"Unknown stream event: {event!r}")


def encode_event(event: StreamEvent) -> str:
    """Encode one stream event as a single NDJSON line (with newline)."""
    return json.dumps(event_to_dict(event)) + "\n"


def encode_events(events: Iterable[StreamEvent]) -> str:
    """Encode stream events to newline-delimited JSON.

    Returns:
        NDJSON string with one JSON object per line.
        Empty string if no events.
    """
    return "".join(encode_event(event) for event in events)


async def encode_stream(events: AsyncIterable[StreamEvent]) -> AsyncIterator[str]:
    """Lazily encode a stream, one NDJSON line per event."""
    async for event in events:
        yield encode_event(event)
