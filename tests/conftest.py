"""Shared test fixtures for all test modules."""

from collections.abc import Callable
from pathlib import Path

import httpx
import pytest

from telemetrypy.adapters.storage.in_memory import (
    InMemoryCorrectionStore,
    InMemorySampleStorage,
)
from telemetrypy.core.models import Sample

SampleFactory = Callable[..., Sample]


def _make_sample(
    timestamp: int,
    value: float,
    target: str = "T1",
    metric: str = "disp_x",
    asset: str = "A1",
    device: str = "D1",
) -> Sample:
    return Sample(
        timestamp=timestamp,
        asset=asset,
        device=device,
        target=target,
        metric=metric,
        value=value,
    )


@pytest.fixture
def make_sample() -> SampleFactory:
    """Factory fixture for samples with sensible identifier defaults.

    Usage:
        def test_something(make_sample):
            sample = make_sample(0, 10.0, target="T2")
    """
    return _make_sample


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    """Provide a temporary database path for SQLite storage tests."""
    return str(tmp_path / "telemetry.db")


@pytest.fixture
def sample_storage() -> InMemorySampleStorage:
    return InMemorySampleStorage()


@pytest.fixture
def correction_store() -> InMemoryCorrectionStore:
    return InMemoryCorrectionStore()


@pytest.fixture
def asgi_test_client():
    """Factory fixture that creates an httpx.AsyncClient for ASGI testing.

    Usage:
        async def test_something(asgi_test_client):
            async with asgi_test_client(app) as client:
                response = await client.get("/api/filters")
    """

    def _get_client(app):
        return httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://test"
        )

    return _get_client
