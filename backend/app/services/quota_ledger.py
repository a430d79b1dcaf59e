from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any
from zoneinfo import ZoneInfo

from backend.app.repositories.quota_repository import QuotaLogEntry, QuotaLogRepository

LOGGER = logging.getLogger("stream_guide.quota")

DEFAULT_DAILY_QUOTA_LIMIT = 10_000


class QuotaCosts:
    """YouTube Data API v3 unit costs for the endpoints this service calls."""

    SEARCH = 100
    VIDEOS_LIST = 1
    CHANNELS_LIST = 1


@dataclass(frozen=True)
class QuotaStatus:
    has_quota: bool
    remaining: int
    used: int


@dataclass(frozen=True)
class QuotaSnapshot:
    date: str
    used: int
    remaining: int
    limit: int
    has_quota: bool


class QuotaLedger:
    """Daily budget for metered calls.

    Usage is the sum of today's log entries, where "today" is the calendar
    day in ``timezone``. Units are never returned once logged.
    """

    def __init__(
        self,
        repository: QuotaLogRepository,
        *,
        daily_limit: int = DEFAULT_DAILY_QUOTA_LIMIT,
        timezone: str = "UTC",
        clock: Callable[[ZoneInfo], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._daily_limit = max(0, daily_limit)
        self._zone = ZoneInfo(timezone)
        self._clock = clock if clock is not None else datetime.now

    @property
    def daily_limit(self) -> int:
        return self._daily_limit

    def today(self) -> date:
        return self._clock(self._zone).date()

    def usage_today(self) -> int:
        return self._repository.sum_units(day=self.today())

    def check_quota(self, required: int) -> QuotaStatus:
        used = self.usage_today()
        remaining = self._daily_limit - used
        return QuotaStatus(has_quota=remaining >= required, remaining=remaining, used=used)

    def log_usage(
        self,
        operation: str,
        units: int,
        details: dict[str, Any] | None = None,
    ) -> None:
        try:
            self._repository.append(
                day=self.today(),
                units_used=units,
                operation=operation,
                details=details,
            )
        except Exception:
            # The metered call already happened; never fail the caller here.
            LOGGER.warning(
                "quota usage logging failed operation=%s units=%s",
                operation,
                units,
                exc_info=True,
            )
            return
        LOGGER.debug("quota usage logged operation=%s units=%s", operation, units)

    def recent_entries(self, *, limit: int = 20) -> list[QuotaLogEntry]:
        return self._repository.list_entries(day=self.today(), limit=limit)

    def snapshot(self, *, required: int = QuotaCosts.SEARCH) -> QuotaSnapshot:
        status = self.check_quota(required)
        return QuotaSnapshot(
            date=self.today().isoformat(),
            used=status.used,
            remaining=status.remaining,
            limit=self._daily_limit,
            has_quota=status.has_quota,
        )
