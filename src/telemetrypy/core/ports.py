"""Port interfaces for storage adapters.

These protocols define the contracts that storage adapters must implement.
The core domain depends only on these interfaces, not concrete implementations.
"""

from collections.abc import AsyncIterable, Iterable
from typing import Protocol, runtime_checkable

from telemetrypy.core.models import (
    CorrectionRule,
    FetchFragment,
    FilterOptions,
    Sample,
)


@runtime_checkable
class SampleSourcePort(Protocol):
    """Port for reading raw telemetry samples.

    Adapters implementing this protocol apply the base filter only. Outlier
    bounds, resampling and corrections are computed by the core.
    Examples: InMemorySampleStorage, SQLiteSampleStorage.
    """

    def fetch(self, fragment: FetchFragment) -> AsyncIterable[Sample]:
        """Fetch every sample admitted by the base filter.

        Returns:
            Iterable of Sample objects, ordered by timestamp ascending.
            Samples with a missing value are never returned.
        """
        ...

    async def fetch_batch(
        self, fragment: FetchFragment, offset: int, batch_size: int
    ) -> list[Sample]:
        """Fetch one page of samples admitted by the base filter.

        Args:
            fragment: The base filter.
            offset: Number of samples to skip.
            batch_size: Maximum number of samples to return.

        Returns:
            Up to batch_size samples ordered by timestamp ascending.
            An empty list signals the end of the data.
        """
        ...

    async def list_series(self) -> list[tuple[str, str]]:
        """Return every distinct (target, metric) pair in the source."""
        ...

    async def filter_options(self) -> FilterOptions:
        """Return the distinct assets, devices, targets and metrics."""
        ...

    async def devices_for_asset(self, asset: str) -> list[str]:
        """Return the distinct devices recorded for one asset."""
        ...

    async def targets_for_device(self, asset: str, device: str) -> list[str]:
        """Return the distinct targets recorded by one device of an asset."""
        ...


@runtime_checkable
class CorrectionStorePort(Protocol):
    """Port for correction rule persistence.

    Adapters implementing this protocol own the rule records; the query
    pipeline only reads active rules through list_active.
    Examples: InMemoryCorrectionStore, SQLiteCorrectionStore.
    """

    async def list_active(
        self, targets: Iterable[str] = (), metrics: Iterable[str] = ()
    ) -> list[CorrectionRule]:
        """Return active rules for the given targets and metrics.

        Empty filters mean all targets or all metrics. The returned order
        is the order in which the rules are applied.
        """
        ...

    async def list_all(self, active_only: bool = False) -> list[CorrectionRule]:
        """Return every stored rule, newest first."""
        ...

    async def get(self, rule_id: int) -> CorrectionRule:
        """Return one rule. Raises RuleNotFound for unknown ids."""
        ...

    async def create(self, rule: CorrectionRule) -> int:
        """Persist a new rule and return its id."""
        ...

    async def update(self, rule: CorrectionRule) -> None:
        """Replace a stored rule. The rule id is required."""
        ...

    async def delete(self, rule_id: int) -> None:
        """Delete a rule. Raises RuleNotFound for unknown ids."""
        ...

    async def toggle(self, rule_id: int) -> CorrectionRule:
        """Flip the active flag of a rule and return the updated rule."""
        ...
