from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from importlib import import_module
from typing import Any, cast

from backend.app.repositories.common import parse_utc_iso_or_none
from backend.app.services.quota_ledger import QuotaCosts, QuotaLedger

LOGGER = logging.getLogger("stream_guide.youtube")

VIDEO_DETAILS_BATCH_SIZE = 50
UPCOMING_SEARCH_MAX_RESULTS = 25
CHANNEL_SEARCH_MAX_RESULTS = 10


@dataclass(frozen=True)
class RawLiveVideo:
    video_id: str
    channel_id: str
    title: str
    scheduled_start_time: datetime
    description: str | None = None
    thumbnail_url: str | None = None
    scheduled_end_time: datetime | None = None
    actual_start_time: datetime | None = None
    actual_end_time: datetime | None = None
    # Explicit upstream cancellation signal. The Data API has no such field
    # today, so nothing sets it yet.
    cancelled: bool = False


@dataclass(frozen=True)
class ChannelSummary:
    channel_id: str
    title: str
    handle: str | None = None
    thumbnail_url: str | None = None
    subscriber_count: int | None = None


@dataclass(frozen=True)
class VideoDetailsFetch:
    videos: list[RawLiveVideo]
    estimated_api_units: int


@dataclass(frozen=True)
class UpcomingSearchFetch:
    videos: list[RawLiveVideo]
    search_units: int
    detail_units: int

    @property
    def estimated_api_units(self) -> int:
        return self.search_units + self.detail_units


class YouTubeServiceError(Exception):
    """A metered call failed.

    ``videos`` holds whatever was parsed from batches that succeeded (and were
    charged) before the failure.
    """

    def __init__(
        self,
        message: str,
        *,
        estimated_api_units: int = 0,
        videos: list[RawLiveVideo] | None = None,
    ) -> None:
        super().__init__(message)
        self.estimated_api_units = max(0, estimated_api_units)
        self.videos = list(videos) if videos else []


class YouTubeQuotaExceededError(YouTubeServiceError):
    pass


class YouTubeService:
    """Metered YouTube Data API v3 source.

    Every call is checked against the quota ledger before it is made and
    logged to the ledger once the provider has charged it.
    """

    def __init__(
        self,
        *,
        quota_ledger: QuotaLedger,
        api_key: str | None = None,
        client: Any | None = None,
        client_factory: Callable[[str], Any] | None = None,
    ) -> None:
        self._quota_ledger = quota_ledger
        self._api_key = api_key.strip() if isinstance(api_key, str) and api_key.strip() else None
        self._client = client
        self._client_factory = client_factory if client_factory is not None else _build_youtube_client

    @property
    def configured(self) -> bool:
        return self._client is not None or self._api_key is not None

    def _get_client(self) -> Any:
        if self._client is not None:
            return self._client
        if self._api_key is None:
            raise YouTubeServiceError("YouTube API key is not configured.")
        self._client = self._client_factory(self._api_key)
        return self._client

    def search_channel_upcoming(self, channel_id: str) -> UpcomingSearchFetch:
        response = self._execute(
            operation="search_upcoming",
            cost=QuotaCosts.SEARCH,
            details={"channel_id": channel_id},
            request=lambda client: client.search().list(
                part="snippet",
                channelId=channel_id,
                type="video",
                eventType="upcoming",
                maxResults=UPCOMING_SEARCH_MAX_RESULTS,
                order="date",
            ),
        )

        video_ids: list[str] = []
        for item in _as_list(response.get("items")):
            raw_video_id = _as_dict(_as_dict(item).get("id")).get("videoId")
            if isinstance(raw_video_id, str) and raw_video_id.strip():
                video_ids.append(raw_video_id.strip())

        if not video_ids:
            return UpcomingSearchFetch(videos=[], search_units=QuotaCosts.SEARCH, detail_units=0)

        try:
            details = self.get_video_details(video_ids)
        except YouTubeServiceError as exc:
            raise type(exc)(
                str(exc),
                estimated_api_units=QuotaCosts.SEARCH + exc.estimated_api_units,
                videos=exc.videos,
            ) from exc

        return UpcomingSearchFetch(
            videos=details.videos,
            search_units=QuotaCosts.SEARCH,
            detail_units=details.estimated_api_units,
        )

    def get_video_details(self, video_ids: list[str]) -> VideoDetailsFetch:
        """Fetch live metadata in batches of 50 ids, one list unit per batch.

        Videos without a scheduled start are ordinary uploads and are dropped.
        """
        videos: list[RawLiveVideo] = []
        units_spent = 0

        for index in range(0, len(video_ids), VIDEO_DETAILS_BATCH_SIZE):
            batch = video_ids[index : index + VIDEO_DETAILS_BATCH_SIZE]
            try:
                response = self._execute(
                    operation="videos_list",
                    cost=QuotaCosts.VIDEOS_LIST,
                    details={"count": len(batch)},
                    request=lambda client, ids=batch: client.videos().list(
                        part="snippet,liveStreamingDetails",
                        id=",".join(ids),
                        maxResults=len(ids),
                    ),
                )
            except YouTubeServiceError as exc:
                raise type(exc)(
                    str(exc),
                    estimated_api_units=units_spent + exc.estimated_api_units,
                    videos=videos,
                ) from exc
            units_spent += QuotaCosts.VIDEOS_LIST

            for item in _as_list(response.get("items")):
                video = _parse_live_video(_as_dict(item))
                if video is not None:
                    videos.append(video)

        return VideoDetailsFetch(videos=videos, estimated_api_units=units_spent)

    def search_channels(self, query: str) -> list[ChannelSummary]:
        response = self._execute(
            operation="search_channels",
            cost=QuotaCosts.SEARCH,
            details={"query": query},
            request=lambda client: client.search().list(
                part="snippet",
                q=query,
                type="channel",
                maxResults=CHANNEL_SEARCH_MAX_RESULTS,
            ),
        )

        channels: list[ChannelSummary] = []
        for item in _as_list(response.get("items")):
            item_dict = _as_dict(item)
            snippet = _as_dict(item_dict.get("snippet"))
            channel_id = _coerce_nonempty_string(snippet.get("channelId")) or _coerce_nonempty_string(
                _as_dict(item_dict.get("id")).get("channelId")
            )
            if channel_id is None:
                continue
            channels.append(
                ChannelSummary(
                    channel_id=channel_id,
                    title=_coerce_nonempty_string(snippet.get("title")) or "",
                    handle=None,
                    thumbnail_url=_thumbnail_url(snippet, ("default",)),
                    subscriber_count=None,
                )
            )
        return channels

    def get_channel(self, channel_id: str) -> ChannelSummary | None:
        response = self._execute(
            operation="channels_list",
            cost=QuotaCosts.CHANNELS_LIST,
            details={"channel_id": channel_id},
            request=lambda client: client.channels().list(
                part="snippet,statistics",
                id=channel_id,
            ),
        )

        items = _as_list(response.get("items"))
        if not items:
            return None

        item = _as_dict(items[0])
        snippet = _as_dict(item.get("snippet"))
        statistics = _as_dict(item.get("statistics"))
        subscriber_count = _coerce_int(statistics.get("subscriberCount"))
        return ChannelSummary(
            channel_id=_coerce_nonempty_string(item.get("id")) or channel_id,
            title=_coerce_nonempty_string(snippet.get("title")) or "",
            handle=_coerce_nonempty_string(snippet.get("customUrl")),
            thumbnail_url=_thumbnail_url(snippet, ("default",)),
            subscriber_count=subscriber_count if subscriber_count else None,
        )

    def _execute(
        self,
        *,
        operation: str,
        cost: int,
        details: dict[str, Any],
        request: Callable[[Any], Any],
    ) -> dict[str, Any]:
        quota = self._quota_ledger.check_quota(cost)
        if not quota.has_quota:
            raise YouTubeQuotaExceededError(
                f"Daily quota exhausted: {operation} needs {cost} units, "
                f"{quota.remaining} remaining."
            )

        client = self._get_client()
        try:
            response = request(client).execute()
        except Exception as exc:
            if _is_youtube_data_api_quota_error(exc):
                LOGGER.warning("youtube quota rejected operation=%s", operation)
                raise YouTubeQuotaExceededError(
                    f"YouTube API quota exceeded during {operation}: "
                    f"{_summarize_exception_message(exc)}"
                ) from exc
            # Failed requests are still charged by the provider.
            self._quota_ledger.log_usage(operation, cost, {**details, "failed": True})
            raise YouTubeServiceError(
                f"YouTube API {operation} failed: {_summarize_exception_message(exc)}",
                estimated_api_units=cost,
            ) from exc

        self._quota_ledger.log_usage(operation, cost, details)
        return _as_dict(response)


def _parse_live_video(item: dict[str, Any]) -> RawLiveVideo | None:
    video_id = _coerce_nonempty_string(item.get("id"))
    live_details = _as_dict(item.get("liveStreamingDetails"))
    scheduled_start = parse_utc_iso_or_none(live_details.get("scheduledStartTime"))
    if video_id is None or scheduled_start is None:
        return None

    snippet = _as_dict(item.get("snippet"))
    return RawLiveVideo(
        video_id=video_id,
        channel_id=_coerce_nonempty_string(snippet.get("channelId")) or "",
        title=_coerce_nonempty_string(snippet.get("title")) or "",
        description=_coerce_nonempty_string(snippet.get("description")),
        thumbnail_url=_thumbnail_url(snippet, ("medium", "default")),
        scheduled_start_time=scheduled_start,
        scheduled_end_time=parse_utc_iso_or_none(live_details.get("scheduledEndTime")),
        actual_start_time=parse_utc_iso_or_none(live_details.get("actualStartTime")),
        actual_end_time=parse_utc_iso_or_none(live_details.get("actualEndTime")),
    )


def _build_youtube_client(api_key: str) -> Any:
    try:
        discovery_module = import_module("googleapiclient.discovery")
    except ImportError as exc:  # pragma: no cover - dependency controlled at runtime
        raise YouTubeServiceError(
            "Metered YouTube calls require the google-api-python-client dependency"
        ) from exc

    build_fn: Any = discovery_module.build
    return build_fn("youtube", "v3", developerKey=api_key, cache_discovery=False)


def _is_youtube_data_api_quota_error(exc: Exception) -> bool:
    class_name = exc.__class__.__name__.lower()
    message = str(exc).lower()
    if "quota" in class_name:
        return True

    markers = (
        "quotaexceeded",
        "dailylimitexceeded",
        "ratelimitexceeded",
        "userratelimitexceeded",
        "youtube.quota",
        "exceeded your quota",
        "quota exceeded",
        "rate limit exceeded",
        "too many requests",
        "http error 429",
        "status code 429",
    )
    return any(marker in message for marker in markers)


def _summarize_exception_message(exc: Exception, *, max_length: int = 400) -> str:
    raw = str(exc).strip()
    if not raw:
        raw = repr(exc)
    if len(raw) <= max_length:
        return raw
    return f"{raw[: max_length - 3]}..."


def _thumbnail_url(snippet: dict[str, Any], qualities: tuple[str, ...]) -> str | None:
    thumbnails = _as_dict(snippet.get("thumbnails"))
    for quality in qualities:
        url_value = _as_dict(thumbnails.get(quality)).get("url")
        if isinstance(url_value, str) and url_value.strip():
            return url_value
    return None


def _coerce_nonempty_string(raw_value: object) -> str | None:
    if isinstance(raw_value, str) and raw_value.strip():
        return raw_value
    return None


def _coerce_int(raw_value: object) -> int | None:
    if isinstance(raw_value, bool):
        return int(raw_value)
    if isinstance(raw_value, int):
        return raw_value
    if isinstance(raw_value, float):
        return int(raw_value)
    if isinstance(raw_value, str):
        try:
            return int(raw_value)
        except ValueError:
            return None
    return None


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        raw_dict = cast(dict[object, object], value)
        converted: dict[str, Any] = {}
        for key, item in raw_dict.items():
            if isinstance(key, str):
                converted[key] = item
        return converted
    return {}


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        raw_list = cast(list[Any], value)
        return list(raw_list)
    return []
