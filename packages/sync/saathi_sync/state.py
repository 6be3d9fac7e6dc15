"""
SQLite persistence for generated insights.

Stores:
- ai_insights: the latest generated tips per owner and dashboard section,
  with their creation time for minimum-refresh-interval checks
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from datetime import datetime, timezone

import aiosqlite

_SCHEMA = """
CREATE TABLE IF NOT EXISTS ai_insights (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id    TEXT NOT NULL,
    section     TEXT NOT NULL,
    insights    TEXT NOT NULL,
    created_at  TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_insights_owner_section
    ON ai_insights(owner_id, section, created_at);
"""


@dataclass
class InsightRecord:
    owner_id: str
    section: str
    insights: list[str]
    created_at: datetime

    def age_seconds(self, now: datetime) -> float:
        return (now - self.created_at).total_seconds()


class InsightState:
    """Async SQLite store for generated insights."""

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def open(self) -> None:
        os.makedirs(os.path.dirname(self._db_path) or ".", exist_ok=True)
        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(_SCHEMA)
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    async def latest(self, owner_id: str, section: str) -> InsightRecord | None:
        assert self._db
        cursor = await self._db.execute(
            """SELECT owner_id, section, insights, created_at FROM ai_insights
               WHERE owner_id = ? AND section = ?
               ORDER BY created_at DESC, id DESC LIMIT 1""",
            (owner_id, section),
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return InsightRecord(
            owner_id=row["owner_id"],
            section=row["section"],
            insights=json.loads(row["insights"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    async def save(
        self,
        owner_id: str,
        section: str,
        insights: list[str],
        created_at: datetime | None = None,
    ) -> InsightRecord:
        assert self._db
        created_at = created_at or datetime.now(timezone.utc)
        await self._db.execute(
            """INSERT INTO ai_insights (owner_id, section, insights, created_at)
               VALUES (?, ?, ?, ?)""",
            (owner_id, section, json.dumps(insights), created_at.isoformat()),
        )
        await self._db.commit()
        return InsightRecord(owner_id, section, insights, created_at)

    async def prune(self, owner_id: str, section: str, keep: int = 5) -> int:
        """Drop all but the newest `keep` records for a section. Returns rows deleted."""
        assert self._db
        cursor = await self._db.execute(
            """DELETE FROM ai_insights WHERE owner_id = ? AND section = ? AND id NOT IN (
                   SELECT id FROM ai_insights WHERE owner_id = ? AND section = ?
                   ORDER BY created_at DESC, id DESC LIMIT ?
               )""",
            (owner_id, section, owner_id, section, keep),
        )
        await self._db.commit()
        return cursor.rowcount
