from __future__ import annotations

import sqlite3
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import cast

from backend.app.models.guide_contracts import (
    EVENT_STATUS_COMPLETED,
    EVENT_STATUS_LIVE,
    EVENT_STATUS_UPCOMING,
    TERMINAL_EVENT_STATUSES,
    EventStatus,
    EventType,
)
from backend.app.repositories.common import (
    parse_utc_iso,
    parse_utc_iso_or_none,
    to_utc_iso,
    to_utc_iso_or_none,
    utc_now_iso,
)
from backend.app.repositories.database import Database

_EVENT_COLUMNS = """
    id, channel_id, title, description, thumbnail_url, scheduled_start_time,
    scheduled_end_time, actual_start_time, event_type, status
"""

_STATUS_RANK: dict[str, int] = {
    EVENT_STATUS_UPCOMING: 0,
    EVENT_STATUS_LIVE: 1,
    EVENT_STATUS_COMPLETED: 2,
}


@dataclass(frozen=True)
class ScheduledEvent:
    event_id: str
    channel_id: str
    title: str
    scheduled_start_time: datetime
    event_type: EventType
    status: EventStatus
    description: str | None = None
    thumbnail_url: str | None = None
    scheduled_end_time: datetime | None = None
    actual_start_time: datetime | None = None


def advance_status(current: EventStatus, observed: EventStatus) -> EventStatus:
    """Resolve a stored status against a newly observed one.

    Terminal statuses are absorbing and the UPCOMING -> LIVE -> COMPLETED
    chain only moves forward. CANCELLED may replace any non-terminal status.
    """
    if current in TERMINAL_EVENT_STATUSES:
        return current
    if observed in TERMINAL_EVENT_STATUSES:
        return observed
    if _STATUS_RANK[observed] >= _STATUS_RANK[current]:
        return observed
    return current


class EventRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def get_event(self, event_id: str) -> ScheduledEvent | None:
        with self._db.connection() as conn:
            row = conn.execute(
                f"SELECT {_EVENT_COLUMNS} FROM scheduled_events WHERE id = ?",
                (event_id,),
            ).fetchone()
        return _row_to_event(row) if row is not None else None

    def upsert_event(self, event: ScheduledEvent) -> bool:
        """Create or refresh an event. Returns True when the row was created.

        ``event_type`` and ``channel_id`` are written on create only; an
        existing event keeps its first observed type.
        """
        now_iso = utc_now_iso()
        with self._db.connection() as conn:
            existing = conn.execute(
                "SELECT status FROM scheduled_events WHERE id = ?",
                (event.event_id,),
            ).fetchone()

            if existing is None:
                conn.execute(
                    """
                    INSERT INTO scheduled_events (
                        id, channel_id, title, description, thumbnail_url,
                        scheduled_start_time, scheduled_end_time, actual_start_time,
                        event_type, status, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        event.event_id,
                        event.channel_id,
                        event.title,
                        event.description,
                        event.thumbnail_url,
                        to_utc_iso(event.scheduled_start_time),
                        to_utc_iso_or_none(event.scheduled_end_time),
                        to_utc_iso_or_none(event.actual_start_time),
                        event.event_type,
                        event.status,
                        now_iso,
                        now_iso,
                    ),
                )
                return True

            status = advance_status(cast(EventStatus, str(existing["status"])), event.status)
            conn.execute(
                """
                UPDATE scheduled_events
                SET title = ?,
                    description = ?,
                    thumbnail_url = ?,
                    scheduled_start_time = ?,
                    scheduled_end_time = ?,
                    actual_start_time = ?,
                    status = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    event.title,
                    event.description,
                    event.thumbnail_url,
                    to_utc_iso(event.scheduled_start_time),
                    to_utc_iso_or_none(event.scheduled_end_time),
                    to_utc_iso_or_none(event.actual_start_time),
                    status,
                    now_iso,
                    event.event_id,
                ),
            )
            return False

    def update_status_only(
        self,
        event_id: str,
        *,
        status: EventStatus,
        actual_start_time: datetime | None,
    ) -> bool:
        with self._db.connection() as conn:
            existing = conn.execute(
                "SELECT status FROM scheduled_events WHERE id = ?",
                (event_id,),
            ).fetchone()
            if existing is None:
                return False

            resolved = advance_status(cast(EventStatus, str(existing["status"])), status)
            conn.execute(
                """
                UPDATE scheduled_events
                SET status = ?,
                    actual_start_time = COALESCE(?, actual_start_time),
                    updated_at = ?
                WHERE id = ?
                """,
                (resolved, to_utc_iso_or_none(actual_start_time), utc_now_iso(), event_id),
            )
        return True

    def find_ids_by_status_and_window(
        self,
        *,
        statuses: Sequence[EventStatus],
        min_start_time: datetime,
    ) -> list[str]:
        if not statuses:
            return []
        placeholders = ", ".join("?" for _ in statuses)
        with self._db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT id
                FROM scheduled_events
                WHERE status IN ({placeholders}) AND scheduled_start_time >= ?
                ORDER BY scheduled_start_time ASC, id ASC
                """,
                (*statuses, to_utc_iso(min_start_time)),
            ).fetchall()
        return [str(row["id"]) for row in rows]

    def delete_where(
        self,
        *,
        status_in: Sequence[EventStatus],
        scheduled_start_before: datetime,
    ) -> int:
        if not status_in:
            return 0
        placeholders = ", ".join("?" for _ in status_in)
        with self._db.connection() as conn:
            cursor = conn.execute(
                f"""
                DELETE FROM scheduled_events
                WHERE status IN ({placeholders}) AND scheduled_start_time < ?
                """,
                (*status_in, to_utc_iso(scheduled_start_before)),
            )
        return int(cursor.rowcount)

    def update_where(
        self,
        *,
        status_equals: EventStatus,
        scheduled_start_before: datetime,
        new_status: EventStatus,
    ) -> int:
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE scheduled_events
                SET status = ?, updated_at = ?
                WHERE status = ? AND scheduled_start_time < ?
                """,
                (new_status, utc_now_iso(), status_equals, to_utc_iso(scheduled_start_before)),
            )
        return int(cursor.rowcount)

    def list_events(
        self,
        *,
        start: datetime,
        end: datetime,
        statuses: Sequence[EventStatus],
        channel_ids: Sequence[str] = (),
    ) -> list[ScheduledEvent]:
        clauses = ["scheduled_start_time >= ?", "scheduled_start_time <= ?"]
        params: list[object] = [to_utc_iso(start), to_utc_iso(end)]
        if statuses:
            clauses.append(f"status IN ({', '.join('?' for _ in statuses)})")
            params.extend(statuses)
        if channel_ids:
            clauses.append(f"channel_id IN ({', '.join('?' for _ in channel_ids)})")
            params.extend(channel_ids)

        with self._db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_EVENT_COLUMNS}
                FROM scheduled_events
                WHERE {' AND '.join(clauses)}
                ORDER BY scheduled_start_time ASC, id ASC
                """,
                tuple(params),
            ).fetchall()
        return [_row_to_event(row) for row in rows]


def _row_to_event(row: sqlite3.Row) -> ScheduledEvent:
    return ScheduledEvent(
        event_id=str(row["id"]),
        channel_id=str(row["channel_id"]),
        title=str(row["title"]),
        description=row["description"] if isinstance(row["description"], str) else None,
        thumbnail_url=row["thumbnail_url"] if isinstance(row["thumbnail_url"], str) else None,
        scheduled_start_time=parse_utc_iso(str(row["scheduled_start_time"])),
        scheduled_end_time=parse_utc_iso_or_none(row["scheduled_end_time"]),
        actual_start_time=parse_utc_iso_or_none(row["actual_start_time"]),
        event_type=cast(EventType, str(row["event_type"])),
        status=cast(EventStatus, str(row["status"])),
    )
