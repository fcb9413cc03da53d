"""In-memory storage adapters for samples and correction rules."""

import logging
from collections.abc import AsyncIterable, Iterable
from dataclasses import replace

from telemetrypy.core.exceptions import InvalidSpec, RuleNotFound
from telemetrypy.core.models import (
    CorrectionRule,
    FetchFragment,
    FilterOptions,
    Sample,
    now_ms,
)

logger = logging.getLogger(__name__)


class InMemorySampleStorage:
    """In-memory implementation of SampleSourcePort.

    Stores samples in a list. Suitable for testing and
    low-volume applications where persistence is not required.
    """

    def __init__(self, samples: Iterable[Sample] = ()) -> None:
        self._samples: list[Sample] = list(samples)

    async def write(self, sample: Sample) -> None:
        """Write a sample to storage."""
        self._samples.append(sample)

    async def write_many(self, samples: Iterable[Sample]) -> None:
        self._samples.extend(samples)

    def _matching(self, fragment: FetchFragment) -> list[Sample]:
        return sorted(
            (s for s in self._samples if fragment.admits(s)),
            key=lambda s: s.timestamp,
        )

    async def fetch(self, fragment: FetchFragment) -> AsyncIterable[Sample]:
        """Fetch samples admitted by the base filter, ordered by timestamp."""
        for sample in self._matching(fragment):
            yield sample

    async def fetch_batch(
        self, fragment: FetchFragment, offset: int, batch_size: int
    ) -> list[Sample]:
        """Fetch one page of samples admitted by the base filter."""
        return self._matching(fragment)[offset : offset + batch_size]

    async def list_series(self) -> list[tuple[str, str]]:
        return sorted({s.series for s in self._samples})

    async def filter_options(self) -> FilterOptions:
        return FilterOptions(
            assets=sorted({s.asset for s in self._samples}),
            devices=sorted({s.device for s in self._samples}),
            targets=sorted({s.target for s in self._samples}),
            metrics=sorted({s.metric for s in self._samples}),
        )

    async def devices_for_asset(self, asset: str) -> list[str]:
        return sorted({s.device for s in self._samples if s.asset == asset})

    async def targets_for_device(self, asset: str, device: str) -> list[str]:
        return sorted(
            {
                s.target
                for s in self._samples
                if s.asset == asset and s.device == device
            }
        )

    async def count(self) -> int:
        """Return total number of samples in storage."""
        return len(self._samples)


def _newest_first(rules: Iterable[CorrectionRule]) -> list[CorrectionRule]:
    return sorted(rules, key=lambda r: (r.created_at, r.id or 0), reverse=True)


class InMemoryCorrectionStore:
    """In-memory implementation of CorrectionStorePort.

    Rules are listed newest first, which is also the order in which the
    correction overlay applies them.
    """

    def __init__(self) -> None:
        self._rules: dict[int, CorrectionRule] = {}
        self._next_id = 1

    async def list_active(
        self, targets: Iterable[str] = (), metrics: Iterable[str] = ()
    ) -> list[CorrectionRule]:
        """Return active rules for the given targets and metrics."""
        wanted_targets = set(targets)
        wanted_metrics = set(metrics)
        return _newest_first(
            rule
            for rule in self._rules.values()
            if rule.active
            and (not wanted_targets or rule.target in wanted_targets)
            and (not wanted_metrics or rule.metric in wanted_metrics)
        )

    async def list_all(self, active_only: bool = False) -> list[CorrectionRule]:
        return _newest_first(
            r for r in self._rules.values() if r.active or not active_only
        )

    async def get(self, rule_id: int) -> CorrectionRule:
        try:
            return self._rules[rule_id]
        except KeyError:
            raise RuleNotFound(rule_id) from None

    async def create(self, rule: CorrectionRule) -> int:
        """Store a new rule under a fresh id and return the id."""
        rule_id = self._next_id
        self._next_id += 1
        self._rules[rule_id] = replace(rule, id=rule_id)
        logger.info(
            "Created correction rule %d for %s/%s", rule_id, rule.target, rule.metric
        )
        return rule_id

    async def update(self, rule: CorrectionRule) -> None:
        """Replace a stored rule and refresh its update time."""
        if rule.id is None:
            raise InvalidSpec("Rule id is required for update")
        existing = await self.get(rule.id)
        self._rules[rule.id] = replace(
            rule, created_at=existing.created_at, updated_at=now_ms()
        )
        logger.info("Updated correction rule %d", rule.id)

    async def delete(self, rule_id: int) -> None:
        await self.get(rule_id)
        del self._rules[rule_id]
        logger.info("Deleted correction rule %d", rule_id)

    async def toggle(self, rule_id: int) -> CorrectionRule:
        """Flip the active flag of a rule and return the updated rule."""
        rule = await self.get(rule_id)
        toggled = replace(rule, active=not rule.active, updated_at=now_ms())
        self._rules[rule_id] = toggled
        logger.info("Correction rule %d active=%s", rule_id, toggled.active)
        return toggled
