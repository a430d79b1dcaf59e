from __future__ import annotations

from datetime import UTC, datetime


def utc_now_iso() -> str:
    return to_utc_iso(datetime.now(UTC))


def to_utc_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def to_utc_iso_or_none(value: datetime | None) -> str | None:
    if value is None:
        return None
    return to_utc_iso(value)


def parse_utc_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def parse_utc_iso_or_none(value: object) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return parse_utc_iso(value.strip())
    except ValueError:
        return None
