from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import datetime

from backend.app.repositories.common import (
    parse_utc_iso_or_none,
    to_utc_iso,
    to_utc_iso_or_none,
    utc_now_iso,
)
from backend.app.repositories.database import Database

_CHANNEL_COLUMNS = """
    id, title, handle, thumbnail_url, subscriber_count, last_fetched_at,
    fetch_priority, is_active
"""

# Never-fetched channels first, then the oldest refresh.
_STALENESS_ORDER = "(last_fetched_at IS NULL) DESC, last_fetched_at ASC"


@dataclass(frozen=True)
class Channel:
    channel_id: str
    title: str
    handle: str | None = None
    thumbnail_url: str | None = None
    subscriber_count: int | None = None
    last_fetched_at: datetime | None = None
    fetch_priority: int = 1
    is_active: bool = True


class ChannelRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def find_by_id(self, channel_id: str) -> Channel | None:
        with self._db.connection() as conn:
            row = conn.execute(
                f"SELECT {_CHANNEL_COLUMNS} FROM channels WHERE id = ?",
                (channel_id,),
            ).fetchone()
        return _row_to_channel(row) if row is not None else None

    def find_by_ids(self, channel_ids: list[str]) -> list[Channel]:
        if not channel_ids:
            return []
        placeholders = ", ".join("?" for _ in channel_ids)
        with self._db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_CHANNEL_COLUMNS}
                FROM channels
                WHERE id IN ({placeholders})
                ORDER BY fetch_priority DESC, id ASC
                """,
                tuple(channel_ids),
            ).fetchall()
        return [_row_to_channel(row) for row in rows]

    def find_active(self, *, limit: int | None = None) -> list[Channel]:
        query = f"""
            SELECT {_CHANNEL_COLUMNS}
            FROM channels
            WHERE is_active = 1
            ORDER BY fetch_priority DESC, {_STALENESS_ORDER}, id ASC
        """
        params: tuple[object, ...] = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (max(0, limit),)
        with self._db.connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_channel(row) for row in rows]

    def find_stale(
        self,
        *,
        threshold: datetime,
        limit: int,
        order_by_priority_desc: bool = True,
    ) -> list[Channel]:
        """Active channels never fetched or last fetched before ``threshold``."""
        ordering = (
            f"fetch_priority DESC, {_STALENESS_ORDER}"
            if order_by_priority_desc
            else _STALENESS_ORDER
        )
        with self._db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_CHANNEL_COLUMNS}
                FROM channels
                WHERE is_active = 1
                  AND (last_fetched_at IS NULL OR last_fetched_at < ?)
                ORDER BY {ordering}, id ASC
                LIMIT ?
                """,
                (to_utc_iso(threshold), max(0, limit)),
            ).fetchall()
        return [_row_to_channel(row) for row in rows]

    def search_cached(self, query: str, *, limit: int = 10) -> list[Channel]:
        pattern = f"%{query.strip().lower()}%"
        with self._db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_CHANNEL_COLUMNS}
                FROM channels
                WHERE LOWER(title) LIKE ? OR LOWER(COALESCE(handle, '')) LIKE ?
                ORDER BY fetch_priority DESC, title ASC
                LIMIT ?
                """,
                (pattern, pattern, max(1, limit)),
            ).fetchall()
        return [_row_to_channel(row) for row in rows]

    def upsert(self, channel: Channel) -> None:
        now_iso = utc_now_iso()
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO channels (
                    id, title, handle, thumbnail_url, subscriber_count, last_fetched_at,
                    fetch_priority, is_active, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    title = excluded.title,
                    handle = excluded.handle,
                    thumbnail_url = excluded.thumbnail_url,
                    subscriber_count = excluded.subscriber_count,
                    last_fetched_at = excluded.last_fetched_at,
                    fetch_priority = excluded.fetch_priority,
                    is_active = excluded.is_active,
                    updated_at = excluded.updated_at
                """,
                (
                    channel.channel_id,
                    channel.title,
                    channel.handle,
                    channel.thumbnail_url,
                    channel.subscriber_count,
                    to_utc_iso_or_none(channel.last_fetched_at),
                    channel.fetch_priority,
                    1 if channel.is_active else 0,
                    now_iso,
                    now_iso,
                ),
            )

    def reactivate_and_bump_priority(self, channel_id: str) -> Channel | None:
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE channels
                SET fetch_priority = fetch_priority + 1, is_active = 1, updated_at = ?
                WHERE id = ?
                """,
                (utc_now_iso(), channel_id),
            )
        return self.find_by_id(channel_id)

    def mark_fetched(self, channel_id: str, *, fetched_at: datetime) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE channels
                SET last_fetched_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (to_utc_iso(fetched_at), utc_now_iso(), channel_id),
            )

    def deactivate(self, channel_id: str) -> bool:
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE channels
                SET is_active = 0, updated_at = ?
                WHERE id = ?
                """,
                (utc_now_iso(), channel_id),
            )
        return cursor.rowcount > 0


def _row_to_channel(row: sqlite3.Row) -> Channel:
    subscriber_count = row["subscriber_count"]
    return Channel(
        channel_id=str(row["id"]),
        title=str(row["title"]),
        handle=_none_if_empty(row["handle"]),
        thumbnail_url=_none_if_empty(row["thumbnail_url"]),
        subscriber_count=int(subscriber_count) if subscriber_count is not None else None,
        last_fetched_at=parse_utc_iso_or_none(row["last_fetched_at"]),
        fetch_priority=int(row["fetch_priority"]),
        is_active=bool(row["is_active"]),
    )


def _none_if_empty(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text if text else None
