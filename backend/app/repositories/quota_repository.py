from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date
from typing import Any, cast

from backend.app.repositories.common import utc_now_iso
from backend.app.repositories.database import Database


@dataclass(frozen=True)
class QuotaLogEntry:
    entry_id: int
    date: str
    units_used: int
    operation: str
    details: dict[str, Any] | None
    created_at: str


class QuotaLogRepository:
    """Append-only audit trail of metered API spend, partitioned by calendar day."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def append(
        self,
        *,
        day: date,
        units_used: int,
        operation: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        details_json = (
            json.dumps(details, sort_keys=True, default=str) if details is not None else None
        )
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO quota_log (date, units_used, operation, details_json, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (day.isoformat(), max(0, units_used), operation, details_json, utc_now_iso()),
            )

    def sum_units(self, *, day: date) -> int:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT COALESCE(SUM(units_used), 0) AS units
                FROM quota_log
                WHERE date = ?
                """,
                (day.isoformat(),),
            ).fetchone()
        return int(row["units"]) if row is not None else 0

    def list_entries(self, *, day: date, limit: int = 20) -> list[QuotaLogEntry]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT id, date, units_used, operation, details_json, created_at
                FROM quota_log
                WHERE date = ?
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (day.isoformat(), max(1, limit)),
            ).fetchall()

        return [
            QuotaLogEntry(
                entry_id=int(row["id"]),
                date=str(row["date"]),
                units_used=int(row["units_used"]),
                operation=str(row["operation"]),
                details=_load_details(row["details_json"]),
                created_at=str(row["created_at"]),
            )
            for row in rows
        ]


def _load_details(raw: object) -> dict[str, Any] | None:
    if not isinstance(raw, str):
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if isinstance(parsed, dict):
        return cast(dict[str, Any], parsed)
    return None
