from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from backend.app.models.guide_contracts import (
    ACTIVE_EVENT_STATUSES,
    EVENT_STATUS_COMPLETED,
    EVENT_STATUS_LIVE,
    TERMINAL_EVENT_STATUSES,
)
from backend.app.repositories.event_repository import EventRepository
from backend.app.services.event_classifier import ClassifiedEvent, classify_status
from backend.app.services.youtube_service import RawLiveVideo

LOGGER = logging.getLogger("stream_guide.reconciliation")

LIVE_EXPIRY_AGE = timedelta(hours=12)
RETENTION_AGE = timedelta(days=7)


@dataclass(frozen=True)
class ReconcileCounts:
    created: int
    updated: int

    @property
    def upserted(self) -> int:
        return self.created + self.updated


class ReconciliationService:
    """Merges observed events into the event store and retires old ones.

    Each write commits on its own, so a failure part-way through leaves the
    events already written in place.
    """

    def __init__(self, event_repository: EventRepository) -> None:
        self._event_repository = event_repository

    def reconcile(self, events: Iterable[ClassifiedEvent]) -> ReconcileCounts:
        created = 0
        updated = 0
        for event in events:
            if self._event_repository.upsert_event(event.to_scheduled_event()):
                created += 1
            else:
                updated += 1
        return ReconcileCounts(created=created, updated=updated)

    def refresh_statuses(self, videos: Iterable[RawLiveVideo]) -> int:
        refreshed = 0
        for video in videos:
            if self._event_repository.update_status_only(
                video.video_id,
                status=classify_status(video),
                actual_start_time=video.actual_start_time,
            ):
                refreshed += 1
        return refreshed

    def active_event_ids(self, *, since: datetime) -> list[str]:
        return self._event_repository.find_ids_by_status_and_window(
            statuses=ACTIVE_EVENT_STATUSES,
            min_start_time=since,
        )

    def expire_stale_live(self, *, now: datetime | None = None) -> int:
        reference = now if now is not None else datetime.now(UTC)
        expired = self._event_repository.update_where(
            status_equals=EVENT_STATUS_LIVE,
            scheduled_start_before=reference - LIVE_EXPIRY_AGE,
            new_status=EVENT_STATUS_COMPLETED,
        )
        if expired:
            LOGGER.info("expired stale live events count=%s", expired)
        return expired

    def purge_retired(self, *, now: datetime | None = None) -> int:
        reference = now if now is not None else datetime.now(UTC)
        deleted = self._event_repository.delete_where(
            status_in=TERMINAL_EVENT_STATUSES,
            scheduled_start_before=reference - RETENTION_AGE,
        )
        if deleted:
            LOGGER.info("purged retired events count=%s", deleted)
        return deleted
