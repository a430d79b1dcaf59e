from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

EventStatus = Literal["UPCOMING", "LIVE", "COMPLETED", "CANCELLED"]
EventType = Literal["LIVE_STREAM", "PREMIERE"]
RefreshStrategyName = Literal["rss", "search"]

EVENT_STATUS_UPCOMING: EventStatus = "UPCOMING"
EVENT_STATUS_LIVE: EventStatus = "LIVE"
EVENT_STATUS_COMPLETED: EventStatus = "COMPLETED"
EVENT_STATUS_CANCELLED: EventStatus = "CANCELLED"

EVENT_TYPE_LIVE_STREAM: EventType = "LIVE_STREAM"
EVENT_TYPE_PREMIERE: EventType = "PREMIERE"

ALL_EVENT_STATUSES: tuple[EventStatus, ...] = (
    EVENT_STATUS_UPCOMING,
    EVENT_STATUS_LIVE,
    EVENT_STATUS_COMPLETED,
    EVENT_STATUS_CANCELLED,
)
ACTIVE_EVENT_STATUSES: tuple[EventStatus, ...] = (EVENT_STATUS_UPCOMING, EVENT_STATUS_LIVE)
TERMINAL_EVENT_STATUSES: tuple[EventStatus, ...] = (
    EVENT_STATUS_COMPLETED,
    EVENT_STATUS_CANCELLED,
)


class ChannelOut(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    title: str
    handle: str | None = None
    thumbnail_url: str | None = None
    subscriber_count: int | None = None
    last_fetched_at: datetime | None = None
    fetch_priority: int = 1
    is_active: bool = True


class ChannelListResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    channels: list[ChannelOut]


class AddChannelRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    channel_id: str | None = None
    channel_url: str | None = None


class AddChannelResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    channel: ChannelOut
    created: bool
    message: str | None = None


class ChannelSummaryOut(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    title: str
    handle: str | None = None
    thumbnail_url: str | None = None
    subscriber_count: int | None = None


class ChannelSearchResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    channels: list[ChannelSummaryOut]
    source: Literal["youtube", "cache"]
    quota_warning: bool = False


class EventOut(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    channel_id: str
    channel: ChannelSummaryOut | None = None
    title: str
    description: str | None = None
    thumbnail_url: str | None = None
    scheduled_start_time: datetime
    scheduled_end_time: datetime | None = None
    actual_start_time: datetime | None = None
    event_type: EventType
    status: EventStatus


class EventsResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    events: list[EventOut]


class QuotaLogEntryOut(BaseModel):
    model_config = ConfigDict(extra="forbid")

    date: str
    units_used: int
    operation: str
    details: dict[str, Any] | None = None
    created_at: str


class QuotaResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    used: int
    remaining: int
    limit: int
    has_quota: bool
    logs: list[QuotaLogEntryOut] = Field(default_factory=list)


class RefreshResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    success: bool
    strategy: RefreshStrategyName
    forced: bool
    aborted: bool
    channels_fetched: int
    videos_checked: int
    events_found: int
    events_updated: int
    events_refreshed: int
    events_expired: int
    quota_used: int
    quota_by_category: dict[str, int]
    errors: list[str]
    events_deleted: int | None = None
