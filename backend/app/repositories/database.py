from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS channels (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    handle TEXT NULL,
    thumbnail_url TEXT NULL,
    subscriber_count INTEGER NULL,
    last_fetched_at TEXT NULL,
    fetch_priority INTEGER NOT NULL DEFAULT 1,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_channels_active_priority
ON channels(is_active, fetch_priority DESC);

CREATE INDEX IF NOT EXISTS idx_channels_active_last_fetched
ON channels(is_active, last_fetched_at);

CREATE TABLE IF NOT EXISTS scheduled_events (
    id TEXT PRIMARY KEY,
    channel_id TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT NULL,
    thumbnail_url TEXT NULL,
    scheduled_start_time TEXT NOT NULL,
    scheduled_end_time TEXT NULL,
    actual_start_time TEXT NULL,
    event_type TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY(channel_id) REFERENCES channels(id)
);

CREATE INDEX IF NOT EXISTS idx_scheduled_events_status_start
ON scheduled_events(status, scheduled_start_time);

CREATE INDEX IF NOT EXISTS idx_scheduled_events_channel_start
ON scheduled_events(channel_id, scheduled_start_time);

CREATE TABLE IF NOT EXISTS quota_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    date TEXT NOT NULL,
    units_used INTEGER NOT NULL,
    operation TEXT NOT NULL,
    details_json TEXT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_quota_log_date ON quota_log(date);
"""


class Database:
    def __init__(self, path: Path) -> None:
        self._path = path

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def initialize(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self.connection() as conn:
            conn.executescript(SCHEMA_SQL)
