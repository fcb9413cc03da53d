"""Storage adapters implementing the sample source and correction store ports."""

from telemetrypy.adapters.storage.in_memory import (
    InMemoryCorrectionStore,
    InMemorySampleStorage,
)
from telemetrypy.adapters.storage.sqlite_corrections import SQLiteCorrectionStore
from telemetrypy.adapters.storage.sqlite_samples import SQLiteSampleStorage

__all__ = [
    "InMemoryCorrectionStore",
    "InMemorySampleStorage",
    "SQLiteCorrectionStore",
    "SQLiteSampleStorage",
]
