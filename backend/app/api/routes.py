from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Annotated, Any, cast

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.app.dependencies import (
    get_channel_repository,
    get_channel_service,
    get_event_repository,
    get_quota_ledger,
    get_refresh_service,
)
from backend.app.models.guide_contracts import (
    ACTIVE_EVENT_STATUSES,
    ALL_EVENT_STATUSES,
    AddChannelRequest,
    AddChannelResponse,
    ChannelListResponse,
    ChannelOut,
    ChannelSearchResponse,
    ChannelSummaryOut,
    EventOut,
    EventsResponse,
    EventStatus,
    QuotaLogEntryOut,
    QuotaResponse,
    RefreshResponse,
)
from backend.app.repositories.channel_repository import Channel, ChannelRepository
from backend.app.repositories.event_repository import EventRepository
from backend.app.services.channel_service import (
    ChannelNotFoundError,
    ChannelResolutionError,
    ChannelService,
)
from backend.app.services.quota_ledger import QuotaCosts, QuotaLedger
from backend.app.services.refresh_service import RefreshResult, RefreshService
from backend.app.services.youtube_service import YouTubeServiceError

LOGGER = logging.getLogger("stream_guide.api")

router = APIRouter()

DEFAULT_EVENTS_WINDOW = timedelta(hours=24)
QUOTA_LOG_LIMIT = 20


def _split_csv(raw_value: str | None) -> list[str]:
    if raw_value is None:
        return []
    return [item.strip() for item in raw_value.split(",") if item.strip()]


def _refresh_response(result: RefreshResult) -> RefreshResponse:
    return RefreshResponse(success=True, **result.to_dict())


def _refresh_failure(exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=500,
        content={"error": "Refresh failed", "details": str(exc) or type(exc).__name__},
    )


def _channel_out(channel: Channel) -> ChannelOut:
    return ChannelOut(
        id=channel.channel_id,
        title=channel.title,
        handle=channel.handle,
        thumbnail_url=channel.thumbnail_url,
        subscriber_count=channel.subscriber_count,
        last_fetched_at=channel.last_fetched_at,
        fetch_priority=channel.fetch_priority,
        is_active=channel.is_active,
    )


def _run_refresh(
    refresh_service: RefreshService,
    *,
    trigger: str,
    force: bool,
    with_retention: bool,
) -> RefreshResponse | JSONResponse:
    context_tokens = bind_contextvars(refresh_trigger=trigger)
    try:
        if with_retention:
            result = refresh_service.run_scheduled_refresh(trigger=trigger)
        else:
            result = refresh_service.run_cycle(force=force, trigger=trigger)
    except Exception as exc:
        LOGGER.exception("refresh request failed trigger=%s", trigger)
        return _refresh_failure(exc)
    finally:
        reset_contextvars(**context_tokens)
    return _refresh_response(result)


@router.api_route(
    "/cron/refresh",
    methods=["GET", "POST"],
    response_model=RefreshResponse,
    tags=["refresh"],
    operation_id="cron_refresh",
)
def cron_refresh(
    refresh_service: Annotated[RefreshService, Depends(get_refresh_service)],
) -> Any:
    return _run_refresh(refresh_service, trigger="cron", force=False, with_retention=True)


@router.post(
    "/sync",
    response_model=RefreshResponse,
    tags=["refresh"],
    operation_id="manual_sync",
)
def manual_sync(
    refresh_service: Annotated[RefreshService, Depends(get_refresh_service)],
) -> Any:
    return _run_refresh(refresh_service, trigger="manual", force=True, with_retention=False)


@router.get(
    "/channels",
    response_model=ChannelListResponse,
    tags=["channels"],
    operation_id="list_channels",
)
def list_channels(
    channel_service: Annotated[ChannelService, Depends(get_channel_service)],
    ids: Annotated[str | None, Query()] = None,
) -> ChannelListResponse:
    channels = channel_service.list_channels(_split_csv(ids) or None)
    return ChannelListResponse(channels=[_channel_out(channel) for channel in channels])


@router.post(
    "/channels",
    response_model=AddChannelResponse,
    tags=["channels"],
    operation_id="add_channel",
)
def add_channel(
    request: AddChannelRequest,
    channel_service: Annotated[ChannelService, Depends(get_channel_service)],
) -> Any:
    try:
        result = channel_service.add_channel(
            channel_id=request.channel_id,
            channel_url=request.channel_url,
        )
    except ChannelResolutionError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ChannelNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except YouTubeServiceError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc

    response = AddChannelResponse(
        channel=_channel_out(result.channel),
        created=result.created,
        message=None if result.created else "Channel already tracked",
    )
    return JSONResponse(
        status_code=201 if result.created else 200,
        content=response.model_dump(mode="json"),
    )


@router.get(
    "/channels/search",
    response_model=ChannelSearchResponse,
    tags=["channels"],
    operation_id="search_channels",
)
def search_channels(
    channel_service: Annotated[ChannelService, Depends(get_channel_service)],
    q: Annotated[str, Query()] = "",
) -> ChannelSearchResponse:
    try:
        result = channel_service.search_channels(q)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    return ChannelSearchResponse(
        channels=[
            ChannelSummaryOut(
                id=channel.channel_id,
                title=channel.title,
                handle=channel.handle,
                thumbnail_url=channel.thumbnail_url,
                subscriber_count=channel.subscriber_count,
            )
            for channel in result.channels
        ],
        source=result.source,
        quota_warning=result.quota_warning,
    )


@router.delete(
    "/channels/{channel_id}",
    tags=["channels"],
    operation_id="deactivate_channel",
)
def deactivate_channel(
    channel_id: str,
    channel_service: Annotated[ChannelService, Depends(get_channel_service)],
) -> dict[str, bool]:
    if not channel_service.deactivate_channel(channel_id):
        raise HTTPException(status_code=404, detail=f"Channel not tracked: {channel_id}")
    return {"success": True}


@router.get(
    "/events",
    response_model=EventsResponse,
    tags=["events"],
    operation_id="list_events",
)
def list_events(
    event_repository: Annotated[EventRepository, Depends(get_event_repository)],
    channel_repository: Annotated[ChannelRepository, Depends(get_channel_repository)],
    channels: Annotated[str | None, Query()] = None,
    start: Annotated[datetime | None, Query()] = None,
    end: Annotated[datetime | None, Query()] = None,
    status: Annotated[str | None, Query()] = None,
) -> EventsResponse:
    window_start = start if start is not None else datetime.now(UTC)
    window_end = end if end is not None else window_start + DEFAULT_EVENTS_WINDOW

    requested_statuses = [value.upper() for value in _split_csv(status)]
    unknown = [value for value in requested_statuses if value not in ALL_EVENT_STATUSES]
    if unknown:
        raise HTTPException(
            status_code=400,
            detail=f"Unknown event status: {', '.join(unknown)}",
        )
    statuses = (
        tuple(cast(list[EventStatus], requested_statuses))
        if requested_statuses
        else ACTIVE_EVENT_STATUSES
    )

    events = event_repository.list_events(
        start=window_start,
        end=window_end,
        statuses=statuses,
        channel_ids=tuple(_split_csv(channels)),
    )
    channels_by_id = {
        channel.channel_id: channel
        for channel in channel_repository.find_by_ids(
            list(dict.fromkeys(event.channel_id for event in events))
        )
    }

    items: list[EventOut] = []
    for event in events:
        channel = channels_by_id.get(event.channel_id)
        items.append(
            EventOut(
                id=event.event_id,
                channel_id=event.channel_id,
                channel=(
                    ChannelSummaryOut(
                        id=channel.channel_id,
                        title=channel.title,
                        handle=channel.handle,
                        thumbnail_url=channel.thumbnail_url,
                        subscriber_count=channel.subscriber_count,
                    )
                    if channel is not None
                    else None
                ),
                title=event.title,
                description=event.description,
                thumbnail_url=event.thumbnail_url,
                scheduled_start_time=event.scheduled_start_time,
                scheduled_end_time=event.scheduled_end_time,
                actual_start_time=event.actual_start_time,
                event_type=event.event_type,
                status=event.status,
            )
        )
    return EventsResponse(events=items)


@router.get(
    "/quota",
    response_model=QuotaResponse,
    tags=["quota"],
    operation_id="quota_status",
)
def quota_status(
    quota_ledger: Annotated[QuotaLedger, Depends(get_quota_ledger)],
) -> QuotaResponse:
    snapshot = quota_ledger.snapshot(required=QuotaCosts.SEARCH)
    entries = quota_ledger.recent_entries(limit=QUOTA_LOG_LIMIT)
    return QuotaResponse(
        used=snapshot.used,
        remaining=snapshot.remaining,
        limit=snapshot.limit,
        has_quota=snapshot.has_quota,
        logs=[
            QuotaLogEntryOut(
                date=entry.date,
                units_used=entry.units_used,
                operation=entry.operation,
                details=entry.details,
                created_at=entry.created_at,
            )
            for entry in entries
        ],
    )
