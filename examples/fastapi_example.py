"""Example FastAPI application serving synthetic telemetry.

Run with:
    uvicorn examples.fastapi_example:app --reload

Endpoints:
    /api/filters                         - Distinct assets, devices, targets, metrics
    /api/telemetry?target_names=T1       - Corrected telemetry with statistics
    /api/telemetry?sampling_interval=60000&sampling_method=avg
                                         - One averaged point per minute
    /api/telemetry/stream?batch_size=100 - NDJSON batch stream
    /api/anomalies?auto_correction=true  - Jumps and gaps with suggested rules
    /api/corrections                     - Correction rule CRUD

The in-memory stores are seeded with two targets sampled every ten seconds
for a day. T2 carries an offset after noon and a two hour outage.
"""

import math

from fastapi import FastAPI

from telemetrypy.adapters.frameworks.fastapi import (
    add_error_handlers,
    create_telemetry_router,
)
from telemetrypy.adapters.storage.in_memory import (
    InMemoryCorrectionStore,
    InMemorySampleStorage,
)
from telemetrypy.config import configure_logging
from telemetrypy.core.models import Sample

DAY_MS = 24 * 3_600_000
STEP_MS = 10_000


def synthetic_samples() -> list[Sample]:
    samples = []
    for ts in range(0, DAY_MS, STEP_MS):
        wave = math.sin(ts / 3_600_000)
        samples.append(Sample(ts, "bridge", "station-1", "T1", "disp_x", 10 + wave))
        if 14 * 3_600_000 <= ts < 16 * 3_600_000:
            continue
        offset = 25.0 if ts >= 12 * 3_600_000 else 0.0
        samples.append(
            Sample(ts, "bridge", "station-1", "T2", "disp_x", 5 + wave + offset)
        )
    return samples


configure_logging("DEBUG")

app = FastAPI(title="Telemetry Example")
add_error_handlers(app)
app.include_router(
    create_telemetry_router(
        InMemorySampleStorage(synthetic_samples()), InMemoryCorrectionStore()
    )
)
