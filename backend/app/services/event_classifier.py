from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from backend.app.models.guide_contracts import (
    EVENT_STATUS_CANCELLED,
    EVENT_STATUS_COMPLETED,
    EVENT_STATUS_LIVE,
    EVENT_STATUS_UPCOMING,
    EVENT_TYPE_LIVE_STREAM,
    EVENT_TYPE_PREMIERE,
    EventStatus,
    EventType,
)
from backend.app.repositories.event_repository import ScheduledEvent
from backend.app.services.youtube_service import RawLiveVideo

# The Data API does not distinguish premieres from live streams. Short
# scheduled windows are treated as premieres.
PREMIERE_MAX_SCHEDULED_DURATION = timedelta(hours=4)


@dataclass(frozen=True)
class ClassifiedEvent:
    raw: RawLiveVideo
    status: EventStatus
    event_type: EventType

    def to_scheduled_event(self) -> ScheduledEvent:
        return ScheduledEvent(
            event_id=self.raw.video_id,
            channel_id=self.raw.channel_id,
            title=self.raw.title,
            description=self.raw.description,
            thumbnail_url=self.raw.thumbnail_url,
            scheduled_start_time=self.raw.scheduled_start_time,
            scheduled_end_time=self.raw.scheduled_end_time,
            actual_start_time=self.raw.actual_start_time,
            event_type=self.event_type,
            status=self.status,
        )


def classify_status(video: RawLiveVideo) -> EventStatus:
    if video.actual_end_time is not None:
        return EVENT_STATUS_COMPLETED
    if video.cancelled:
        return EVENT_STATUS_CANCELLED
    if video.actual_start_time is not None:
        return EVENT_STATUS_LIVE
    return EVENT_STATUS_UPCOMING


def classify_event_type(
    scheduled_start_time: datetime | None,
    scheduled_end_time: datetime | None,
) -> EventType:
    if scheduled_start_time is not None and scheduled_end_time is not None:
        if scheduled_end_time - scheduled_start_time < PREMIERE_MAX_SCHEDULED_DURATION:
            return EVENT_TYPE_PREMIERE
    return EVENT_TYPE_LIVE_STREAM


def classify(video: RawLiveVideo) -> ClassifiedEvent:
    return ClassifiedEvent(
        raw=video,
        status=classify_status(video),
        event_type=classify_event_type(video.scheduled_start_time, video.scheduled_end_time),
    )
