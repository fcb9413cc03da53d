"""SQLite storage adapter for correction rules."""

import logging
from collections.abc import Iterable
from typing import Any

from telemetrypy.adapters.storage.sqlite_base import SQLiteStorageBase
from telemetrypy.core.exceptions import InvalidSpec, RuleNotFound
from telemetrypy.core.models import CorrectionRule, now_ms

logger = logging.getLogger(__name__)

_CORRECTIONS_SCHEMA = """
CREATE TABLE IF NOT EXISTS corrections (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT,
    description TEXT,
    target_name TEXT NOT NULL,
    key_name TEXT NOT NULL,
    operation_type TEXT NOT NULL,
    value REAL NOT NULL,
    start_time INTEGER,
    end_time INTEGER,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_corrections_active ON corrections(is_active);
"""

_COLUMNS = """id, name, description, target_name, key_name, operation_type, value,
start_time, end_time, is_active, created_at, updated_at"""

_INSERT_RULE = """
INSERT INTO corrections
(name, description, target_name, key_name, operation_type, value,
 start_time, end_time, is_active, created_at, updated_at)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

_UPDATE_RULE = """
UPDATE corrections SET
name = ?, description = ?, target_name = ?, key_name = ?, operation_type = ?,
value = ?, start_time = ?, end_time = ?, is_active = ?, updated_at = ?
WHERE id = ?
"""

_TOGGLE_RULE = """
UPDATE corrections SET is_active = NOT is_active, updated_at = ? WHERE id = ?
"""

_DELETE_RULE = "DELETE FROM corrections WHERE id = ?"

_ORDER = " ORDER BY created_at DESC, id DESC"


def _from_row(row: Any) -> CorrectionRule:
    return CorrectionRule(
        id=row[0],
        name=row[1],
        description=row[2],
        target=row[3],
        metric=row[4],
        operation=row[5],
        operand=row[6],
        start=row[7],
        end=row[8],
        active=bool(row[9]),
        created_at=row[10],
        updated_at=row[11],
    )


class SQLiteCorrectionStore(SQLiteStorageBase):
    """SQLite implementation of CorrectionStorePort.

    Rules are listed newest first, which is also the order in which the
    correction overlay applies them.
    """

    def __init__(self, db_path: str) -> None:
        super().__init__(db_path, _CORRECTIONS_SCHEMA)

    async def list_active(
        self, targets: Iterable[str] = (), metrics: Iterable[str] = ()
    ) -> list[CorrectionRule]:
        """Return active rules for the given targets and metrics."""
        conditions = ["is_active = 1"]
        params: list[Any] = []
        for column, names in (("target_name", targets), ("key_name", metrics)):
            wanted = sorted(set(names))
            if wanted:
                conditions.append(f"{column} IN ({', '.join('?' for _ in wanted)})")
                params.extend(wanted)
        query = (
            f"SELECT {_COLUMNS} FROM corrections WHERE {' AND '.join(conditions)}"
            + _ORDER
        )
        return [_from_row(row) for row in await self._select(query, params)]

    async def list_all(self, active_only: bool = False) -> list[CorrectionRule]:
        where = " WHERE is_active = 1" if active_only else ""
        query = f"SELECT {_COLUMNS} FROM corrections{where}" + _ORDER
        return [_from_row(row) for row in await self._select(query)]

    async def get(self, rule_id: int) -> CorrectionRule:
        rows = await self._select(
            f"SELECT {_COLUMNS} FROM corrections WHERE id = ?", (rule_id,)
        )
        if not rows:
            raise RuleNotFound(rule_id)
        return _from_row(rows[0])

    async def create(self, rule: CorrectionRule) -> int:
        """Persist a new rule and return its id."""
        _, rule_id = await self._execute(
            _INSERT_RULE,
            (
                rule.name,
                rule.description,
                rule.target,
                rule.metric,
                rule.operation.value,
                rule.operand,
                rule.start,
                rule.end,
                int(rule.active),
                rule.created_at,
                rule.updated_at,
            ),
        )
        if rule_id is None:
            raise RuntimeError("Insert did not return a row id")
        logger.info(
            "Created correction rule %d for %s/%s", rule_id, rule.target, rule.metric
        )
        return rule_id

    async def update(self, rule: CorrectionRule) -> None:
        """Replace a stored rule and refresh its update time."""
        if rule.id is None:
            raise InvalidSpec("Rule id is required for update")
        updated, _ = await self._execute(
            _UPDATE_RULE,
            (
                rule.name,
                rule.description,
                rule.target,
                rule.metric,
                rule.operation.value,
                rule.operand,
                rule.start,
                rule.end,
                int(rule.active),
                now_ms(),
                rule.id,
            ),
        )
        if updated == 0:
            raise RuleNotFound(rule.id)
        logger.info("Updated correction rule %d", rule.id)

    async def delete(self, rule_id: int) -> None:
        deleted, _ = await self._execute(_DELETE_RULE, (rule_id,))
        if deleted == 0:
            raise RuleNotFound(rule_id)
        logger.info("Deleted correction rule %d", rule_id)

    async def toggle(self, rule_id: int) -> CorrectionRule:
        """Flip the active flag of a rule and return the updated rule."""
        toggled, _ = await self._execute(_TOGGLE_RULE, (now_ms(), rule_id))
        if toggled == 0:
            raise RuleNotFound(rule_id)
        rule = await self.get(rule_id)
        logger.info("Correction rule %d active=%s", rule_id, rule.active)
        return rule
