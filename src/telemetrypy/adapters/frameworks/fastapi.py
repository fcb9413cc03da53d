"""FastAPI adapter for the telemetry query, anomaly and correction endpoints."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse

from telemetrypy.adapters.frameworks.query_params import (
    build_query_spec,
    parse_csv,
    parse_time,
    resolve_limit,
)
from telemetrypy.adapters.frameworks.schemas import CorrectionPayload
from telemetrypy.adapters.storage.sqlite_corrections import SQLiteCorrectionStore
from telemetrypy.adapters.storage.sqlite_samples import SQLiteSampleStorage
from telemetrypy.config import Settings, configure_logging, load_settings
from telemetrypy.core.anomaly import AnomalyDetector
from telemetrypy.core.encoding import (
    detection_result_to_dict,
    encode_stream,
    filter_options_to_dict,
    query_result_to_dict,
    rule_to_dict,
)
from telemetrypy.core.exceptions import InvalidSpec, RuleNotFound, UpstreamFetchFailure
from telemetrypy.core.ports import CorrectionStorePort, SampleSourcePort
from telemetrypy.core.query import QueryStream, run_query

logger = logging.getLogger(__name__)

NDJSON_MEDIA_TYPE = "application/x-ndjson"


def _ok(data: Any) -> dict[str, Any]:
    return {"success": True, "data": data, "error": None}


def _failed(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "data": None, "error": message},
    )


def _error_response(exc: Exception) -> JSONResponse:
    """Map an exception raised while serving a request to an error envelope.

    Must be called from within an except block so unexpected errors are
    logged with their traceback.
    """
    match exc:
        case InvalidSpec():
            return _failed(400, str(exc))
        case RuleNotFound():
            return _failed(404, str(exc))
        case UpstreamFetchFailure():
            logger.warning("Upstream failure: %s", exc)
            return _failed(502, str(exc))
    logger.exception("Unhandled error while serving request")
    return _failed(500, "Internal server error")


async def _validation_error(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = exc.errors()
    if not errors:
        return _failed(400, "Invalid request")
    first = errors[0]
    field = ".".join(str(part) for part in first.get("loc", ())[1:]) or "request"
    return _failed(400, f"Invalid {field}: {first.get('msg', 'validation failed')}")


def add_error_handlers(app: FastAPI) -> None:
    """Answer unparsable parameters and bodies with a 400 error envelope.

    Without this, FastAPI replies 422 with its own body shape.
    """
    app.add_exception_handler(RequestValidationError, _validation_error)


def _telemetry_params(
    asset_name: str | None = Query(default=None),
    device_name: str | None = Query(default=None),
    target_names: str | None = Query(default=None),
    key_names: str | None = Query(default=None),
    start_time: str | None = Query(default=None),
    end_time: str | None = Query(default=None),
    remove_outliers: bool = Query(default=False),
    outlier_method: str | None = Query(default=None),
    min_value: float | None = Query(default=None),
    max_value: float | None = Query(default=None),
    exclude_values: str | None = Query(default=None),
    limit: int | None = Query(default=None),
    sampling_interval: int | None = Query(default=None),
    sampling_method: str | None = Query(default=None),
    reference_values: str | None = Query(default=None),
    time_ranges: str | None = Query(default=None),
) -> dict[str, Any]:
    """Collect the raw telemetry query parameters.

    Interpretation is deferred to build_query_spec so that malformed values
    surface as error envelopes.
    """
    return {
        "asset_name": asset_name,
        "device_name": device_name,
        "target_names": target_names,
        "key_names": key_names,
        "start_time": start_time,
        "end_time": end_time,
        "remove_outliers": remove_outliers,
        "outlier_method": outlier_method,
        "min_value": min_value,
        "max_value": max_value,
        "exclude_values": exclude_values,
        "limit": limit,
        "sampling_interval": sampling_interval,
        "sampling_method": sampling_method,
        "reference_values": reference_values,
        "time_ranges": time_ranges,
    }


def create_telemetry_router(
    source: SampleSourcePort,
    corrections: CorrectionStorePort,
    settings: Settings | None = None,
) -> APIRouter:
    """Create a FastAPI router with the telemetry endpoints.

    Args:
        source: Sample source implementing SampleSourcePort.
        corrections: Correction store implementing CorrectionStorePort.
        settings: Limits and batch sizes. Defaults to Settings().

    Returns:
        APIRouter with the /api endpoints configured. Every JSON response
        uses the envelope {"success", "data", "error"}.
    """
    settings = settings or Settings()
    router = APIRouter(prefix="/api")

    @router.get("/filters")
    async def get_filters() -> Any:
        """Return the distinct assets, devices, targets and metrics."""
        try:
            options = await source.filter_options()
        except Exception as exc:
            return _error_response(exc)
        return _ok(filter_options_to_dict(options))

    @router.get("/devices")
    async def get_devices(asset_name: str | None = Query(default=None)) -> Any:
        if not asset_name:
            return _failed(400, "asset_name parameter is required")
        try:
            return _ok(await source.devices_for_asset(asset_name))
        except Exception as exc:
            return _error_response(exc)

    @router.get("/targets")
    async def get_targets(
        asset_name: str | None = Query(default=None),
        device_name: str | None = Query(default=None),
    ) -> Any:
        if not asset_name:
            return _failed(400, "asset_name parameter is required")
        if not device_name:
            return _failed(400, "device_name parameter is required")
        try:
            return _ok(await source.targets_for_device(asset_name, device_name))
        except Exception as exc:
            return _error_response(exc)

    @router.get("/telemetry")
    async def get_telemetry(
        params: dict[str, Any] = Depends(_telemetry_params),
    ) -> Any:
        """Return corrected telemetry with result statistics.

        The result cap defaults to the configured default limit and never
        exceeds the configured maximum.
        """
        try:
            limit = resolve_limit(
                params.pop("limit"), settings.default_limit, settings.max_limit
            )
            spec = build_query_spec(limit=limit, **params)
            result = await run_query(spec, source, corrections)
        except Exception as exc:
            return _error_response(exc)
        return _ok(query_result_to_dict(result))

    @router.get("/telemetry/stream")
    async def stream_telemetry(
        params: dict[str, Any] = Depends(_telemetry_params),
        offset: int = Query(default=0),
        batch_size: int | None = Query(default=None),
    ) -> Any:
        """Stream corrected telemetry as NDJSON batch events.

        Each line is a batch, completed or error event. Resume an interrupted
        stream by passing the last next_offset as offset.
        """
        try:
            spec = build_query_spec(**params)
            stream = QueryStream(
                spec,
                source,
                corrections,
                batch_size=batch_size or settings.stream_batch_size,
                start_offset=offset,
            )
        except Exception as exc:
            return _error_response(exc)

        async def lines() -> AsyncIterator[str]:
            try:
                async for line in encode_stream(stream):
                    yield line
            finally:
                stream.cancel()

        return StreamingResponse(lines(), media_type=NDJSON_MEDIA_TYPE)

    @router.get("/anomalies")
    async def get_anomalies(
        start_time: str | None = Query(default=None),
        end_time: str | None = Query(default=None),
        target_names: str | None = Query(default=None),
        key_names: str | None = Query(default=None),
        auto_correction: bool = Query(default=False),
    ) -> Any:
        """Scan raw telemetry for jumps and gaps.

        With auto_correction, sudden jumps carry inactive suggested rules.
        Suggestions are not persisted.
        """
        try:
            detector = AnomalyDetector(settings.detector_config(auto_correction))
            result = await detector.detect_all(
                source,
                start=parse_time(start_time, "start_time"),
                end=parse_time(end_time, "end_time"),
                targets=parse_csv(target_names),
                metrics=parse_csv(key_names),
            )
        except Exception as exc:
            return _error_response(exc)
        return _ok(detection_result_to_dict(result))

    @router.get("/corrections")
    async def list_corrections(active_only: bool = Query(default=False)) -> Any:
        try:
            rules = await corrections.list_all(active_only=active_only)
        except Exception as exc:
            return _error_response(exc)
        return _ok([rule_to_dict(rule) for rule in rules])

    @router.post("/corrections")
    async def create_correction(payload: CorrectionPayload) -> Any:
        try:
            rule_id = await corrections.create(payload.to_rule())
            rule = await corrections.get(rule_id)
        except Exception as exc:
            return _error_response(exc)
        return _ok(rule_to_dict(rule))

    @router.put("/corrections/{rule_id}")
    async def update_correction(rule_id: int, payload: CorrectionPayload) -> Any:
        try:
            await corrections.update(payload.to_rule(rule_id))
            rule = await corrections.get(rule_id)
        except Exception as exc:
            return _error_response(exc)
        return _ok(rule_to_dict(rule))

    @router.delete("/corrections/{rule_id}")
    async def delete_correction(rule_id: int) -> Any:
        try:
            await corrections.delete(rule_id)
        except Exception as exc:
            return _error_response(exc)
        return _ok({"id": rule_id})

    @router.post("/corrections/{rule_id}/toggle")
    async def toggle_correction(rule_id: int) -> Any:
        try:
            rule = await corrections.toggle(rule_id)
        except Exception as exc:
            return _error_response(exc)
        return _ok(rule_to_dict(rule))

    return router


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create the service application backed by SQLite storage.

    Args:
        settings: Service settings. Loaded from the environment when omitted.
    """
    settings = settings or load_settings()
    configure_logging(settings.log_level)
    source = SQLiteSampleStorage(settings.db_path)
    corrections = SQLiteCorrectionStore(settings.db_path)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("Serving telemetry from %s", settings.db_path)
        yield
        await source.close()
        await corrections.close()

    app = FastAPI(title="telemetrypy", lifespan=lifespan)
    add_error_handlers(app)
    app.include_router(create_telemetry_router(source, corrections, settings))
    app.state.source = source
    app.state.corrections = corrections
    return app
