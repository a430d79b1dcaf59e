from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import asdict, dataclass, field, replace
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol
from uuid import uuid4

from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.app.models.guide_contracts import RefreshStrategyName
from backend.app.repositories.channel_repository import Channel, ChannelRepository
from backend.app.services.event_classifier import classify
from backend.app.services.feed_source import FeedSource, FeedSourceError
from backend.app.services.quota_ledger import QuotaCosts, QuotaLedger
from backend.app.services.reconciliation_service import ReconciliationService
from backend.app.services.youtube_service import (
    RawLiveVideo,
    YouTubeQuotaExceededError,
    YouTubeService,
    YouTubeServiceError,
)
from backend.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("stream_guide.refresh")

FEED_VIDEOS_PER_CHANNEL = 15
SEARCH_CHANNELS_PER_CYCLE = 20
SEARCH_STALENESS = timedelta(hours=6)
STATUS_REFRESH_LOOKBACK = timedelta(hours=2)
SEARCH_PRECHECK_MULTIPLIER = 2

QUOTA_CATEGORY_VIDEOS_LIST = "videos_list"
QUOTA_CATEGORY_SEARCH = "search"


@dataclass
class RefreshResult:
    strategy: RefreshStrategyName
    forced: bool = False
    aborted: bool = False
    channels_fetched: int = 0
    videos_checked: int = 0
    events_found: int = 0
    events_updated: int = 0
    events_refreshed: int = 0
    events_expired: int = 0
    quota_by_category: dict[str, int] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    events_deleted: int | None = None

    @property
    def quota_used(self) -> int:
        return sum(self.quota_by_category.values())

    def add_quota(self, category: str, units: int) -> None:
        if units <= 0:
            return
        self.quota_by_category[category] = self.quota_by_category.get(category, 0) + units

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["quota_used"] = self.quota_used
        return payload


class RefreshStrategy(Protocol):
    name: RefreshStrategyName

    def run(self, *, force: bool, now: datetime) -> RefreshResult:
        ...


class RssRefreshStrategy:
    """Pull every active channel's free feed, then confirm live metadata in batches.

    Costs one list unit per 50 distinct videos; never spends search units.
    """

    name: RefreshStrategyName = "rss"

    def __init__(
        self,
        *,
        channel_repository: ChannelRepository,
        feed_source: FeedSource,
        youtube_service: YouTubeService,
        reconciliation: ReconciliationService,
        quota_ledger: QuotaLedger,
    ) -> None:
        self._channel_repository = channel_repository
        self._feed_source = feed_source
        self._youtube_service = youtube_service
        self._reconciliation = reconciliation
        self._quota_ledger = quota_ledger

    def run(self, *, force: bool, now: datetime) -> RefreshResult:
        result = RefreshResult(strategy=self.name, forced=force)

        owner_by_video_id: dict[str, str] = {}
        for channel in self._channel_repository.find_active():
            try:
                feed_videos = self._feed_source.fetch_recent(channel.channel_id)
            except FeedSourceError as exc:
                LOGGER.warning(
                    "channel feed fetch failed channel_id=%s",
                    channel.channel_id,
                    exc_info=True,
                )
                result.errors.append(f"RSS fetch failed for {channel.title}: {exc}")
                continue

            result.channels_fetched += 1
            for video in feed_videos[:FEED_VIDEOS_PER_CHANNEL]:
                owner_by_video_id.setdefault(video.video_id, channel.channel_id)
            self._channel_repository.mark_fetched(channel.channel_id, fetched_at=now)

        unique_video_ids = list(owner_by_video_id)
        result.videos_checked = len(unique_video_ids)

        if unique_video_ids:
            try:
                details = self._youtube_service.get_video_details(unique_video_ids)
            except YouTubeQuotaExceededError as exc:
                result.add_quota(QUOTA_CATEGORY_VIDEOS_LIST, exc.estimated_api_units)
                self._reconcile_details(exc.videos, owner_by_video_id, result)
                LOGGER.warning("video details deferred by quota: %s", exc)
                result.errors.append(
                    "YouTube API quota exhausted - RSS fetch succeeded, but cannot check "
                    "live status until quota resets"
                )
            except YouTubeServiceError as exc:
                result.add_quota(QUOTA_CATEGORY_VIDEOS_LIST, exc.estimated_api_units)
                self._reconcile_details(exc.videos, owner_by_video_id, result)
                LOGGER.warning("video details fetch failed", exc_info=True)
                result.errors.append(f"Video details fetch failed: {exc}")
            else:
                result.add_quota(QUOTA_CATEGORY_VIDEOS_LIST, details.estimated_api_units)
                self._reconcile_details(details.videos, owner_by_video_id, result)

        result.events_expired = self._reconciliation.expire_stale_live(now=now)
        self._quota_ledger.log_usage(
            "sync_rss",
            0,
            {
                "quota_used": result.quota_used,
                "channels_fetched": result.channels_fetched,
                "videos_checked": result.videos_checked,
                "events_found": result.events_found,
            },
        )
        return result

    def _reconcile_details(
        self,
        videos: list[RawLiveVideo],
        owner_by_video_id: dict[str, str],
        result: RefreshResult,
    ) -> None:
        if not videos:
            return
        classified = [classify(_attribute_channel(video, owner_by_video_id)) for video in videos]
        counts = self._reconciliation.reconcile(classified)
        result.events_found += len(classified)
        result.events_updated += counts.upserted


class SearchRefreshStrategy:
    """Search stale channels directly for upcoming events, highest priority first.

    Stops before any channel whose search plus first detail batch the budget
    cannot cover, then refreshes statuses of known events.
    """

    name: RefreshStrategyName = "search"

    def __init__(
        self,
        *,
        channel_repository: ChannelRepository,
        youtube_service: YouTubeService,
        reconciliation: ReconciliationService,
        quota_ledger: QuotaLedger,
        channels_per_cycle: int = SEARCH_CHANNELS_PER_CYCLE,
        staleness: timedelta = SEARCH_STALENESS,
    ) -> None:
        self._channel_repository = channel_repository
        self._youtube_service = youtube_service
        self._reconciliation = reconciliation
        self._quota_ledger = quota_ledger
        self._channels_per_cycle = max(1, channels_per_cycle)
        self._staleness = staleness

    def run(self, *, force: bool, now: datetime) -> RefreshResult:
        result = RefreshResult(strategy=self.name, forced=force)

        required = SEARCH_PRECHECK_MULTIPLIER * QuotaCosts.SEARCH
        precheck = self._quota_ledger.check_quota(required)
        if not precheck.has_quota:
            result.aborted = True
            result.errors.append(
                f"Insufficient quota: {precheck.remaining} units remaining, "
                f"{required} required to start a search refresh"
            )
            LOGGER.info(
                "search refresh aborted remaining=%s required=%s",
                precheck.remaining,
                required,
            )
            return result

        channels = self._select_channels(force=force, now=now)
        self._search_channels(channels, result=result, now=now)
        self._refresh_known_statuses(result=result, now=now)

        result.events_expired = self._reconciliation.expire_stale_live(now=now)
        self._quota_ledger.log_usage(
            "sync_search",
            0,
            {
                "quota_used": result.quota_used,
                "search_units": result.quota_by_category.get(QUOTA_CATEGORY_SEARCH, 0),
                "detail_units": result.quota_by_category.get(QUOTA_CATEGORY_VIDEOS_LIST, 0),
                "channels_searched": result.channels_fetched,
                "events_found": result.events_found,
                "events_refreshed": result.events_refreshed,
            },
        )
        return result

    def _select_channels(self, *, force: bool, now: datetime) -> list[Channel]:
        if force:
            return self._channel_repository.find_active(limit=self._channels_per_cycle)
        return self._channel_repository.find_stale(
            threshold=now - self._staleness,
            limit=self._channels_per_cycle,
            order_by_priority_desc=True,
        )

    def _search_channels(
        self,
        channels: list[Channel],
        *,
        result: RefreshResult,
        now: datetime,
    ) -> None:
        # Covers the search plus at least one detail batch.
        per_channel_cost = QuotaCosts.SEARCH + QuotaCosts.VIDEOS_LIST
        for position, channel in enumerate(channels):
            quota = self._quota_ledger.check_quota(per_channel_cost)
            if not quota.has_quota:
                result.errors.append(_exhausted_message(position, len(channels)))
                return

            try:
                fetch = self._youtube_service.search_channel_upcoming(channel.channel_id)
            except YouTubeQuotaExceededError as exc:
                _add_partial_search_units(result, exc.estimated_api_units)
                self._reconcile_channel(channel, exc.videos, result)
                LOGGER.warning("channel search stopped by quota: %s", exc)
                result.errors.append(_exhausted_message(position, len(channels)))
                return
            except YouTubeServiceError as exc:
                _add_partial_search_units(result, exc.estimated_api_units)
                self._reconcile_channel(channel, exc.videos, result)
                LOGGER.warning(
                    "channel search failed channel_id=%s",
                    channel.channel_id,
                    exc_info=True,
                )
                result.errors.append(f"Search failed for {channel.title}: {exc}")
                continue

            result.add_quota(QUOTA_CATEGORY_SEARCH, fetch.search_units)
            result.add_quota(QUOTA_CATEGORY_VIDEOS_LIST, fetch.detail_units)
            self._reconcile_channel(channel, fetch.videos, result)
            result.channels_fetched += 1
            self._channel_repository.mark_fetched(channel.channel_id, fetched_at=now)

    def _reconcile_channel(
        self,
        channel: Channel,
        videos: list[RawLiveVideo],
        result: RefreshResult,
    ) -> None:
        if not videos:
            return
        classified = [
            classify(_attribute_channel(video, {video.video_id: channel.channel_id}))
            for video in videos
        ]
        counts = self._reconciliation.reconcile(classified)
        result.events_found += len(classified)
        result.events_updated += counts.upserted

    def _refresh_known_statuses(self, *, result: RefreshResult, now: datetime) -> None:
        event_ids = self._reconciliation.active_event_ids(since=now - STATUS_REFRESH_LOOKBACK)
        if not event_ids:
            return

        try:
            details = self._youtube_service.get_video_details(event_ids)
        except YouTubeQuotaExceededError as exc:
            result.add_quota(QUOTA_CATEGORY_VIDEOS_LIST, exc.estimated_api_units)
            result.events_refreshed = self._reconciliation.refresh_statuses(exc.videos)
            LOGGER.warning("status refresh deferred by quota: %s", exc)
            result.errors.append(
                "YouTube API quota exhausted - channel search succeeded, but cannot refresh "
                "live status of known events until quota resets"
            )
            return
        except YouTubeServiceError as exc:
            result.add_quota(QUOTA_CATEGORY_VIDEOS_LIST, exc.estimated_api_units)
            result.events_refreshed = self._reconciliation.refresh_statuses(exc.videos)
            LOGGER.warning("status refresh failed", exc_info=True)
            result.errors.append(f"Status refresh failed: {exc}")
            return

        result.add_quota(QUOTA_CATEGORY_VIDEOS_LIST, details.estimated_api_units)
        result.events_refreshed = self._reconciliation.refresh_statuses(details.videos)


def _attribute_channel(video: RawLiveVideo, owners: dict[str, str]) -> RawLiveVideo:
    if video.channel_id:
        return video
    owner = owners.get(video.video_id)
    return replace(video, channel_id=owner) if owner else video


def _exhausted_message(searched: int, total: int) -> str:
    return (
        f"YouTube API quota exhausted after searching {searched} of {total} channels - "
        "remaining channels deferred until quota resets"
    )


def _add_partial_search_units(result: RefreshResult, units: int) -> None:
    # Search always precedes the detail lookup.
    search_units = min(units, QuotaCosts.SEARCH)
    result.add_quota(QUOTA_CATEGORY_SEARCH, search_units)
    result.add_quota(QUOTA_CATEGORY_VIDEOS_LIST, units - search_units)


class RefreshService:
    """Runs refresh cycles one at a time with the configured strategy."""

    def __init__(
        self,
        *,
        strategy: RefreshStrategy,
        reconciliation: ReconciliationService,
        telemetry: TelemetryClient | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._strategy = strategy
        self._reconciliation = reconciliation
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._clock = clock if clock is not None else _utc_now
        self._cycle_lock = threading.Lock()

    @property
    def strategy_name(self) -> RefreshStrategyName:
        return self._strategy.name

    def run_cycle(self, *, force: bool = False, trigger: str = "scheduled") -> RefreshResult:
        with self._cycle_lock:
            cycle_id = uuid4().hex
            context_tokens = bind_contextvars(
                refresh_cycle_id=cycle_id,
                refresh_strategy=self._strategy.name,
            )
            try:
                with self._telemetry.span(
                    "refresh.cycle",
                    cycle_id=cycle_id,
                    strategy=self._strategy.name,
                    trigger=trigger,
                    forced=force,
                ) as outcome:
                    try:
                        result = self._strategy.run(force=force, now=self._clock())
                    except Exception:
                        LOGGER.exception("refresh cycle failed trigger=%s", trigger)
                        raise
                    outcome.update(
                        channels_fetched=result.channels_fetched,
                        events_found=result.events_found,
                        quota_used=result.quota_used,
                        error_count=len(result.errors),
                        aborted=result.aborted,
                    )
                LOGGER.info(
                    (
                        "refresh cycle finished trigger=%s channels=%s videos=%s "
                        "events_found=%s events_updated=%s events_refreshed=%s "
                        "quota_used=%s errors=%s"
                    ),
                    trigger,
                    result.channels_fetched,
                    result.videos_checked,
                    result.events_found,
                    result.events_updated,
                    result.events_refreshed,
                    result.quota_used,
                    len(result.errors),
                )
            finally:
                reset_contextvars(**context_tokens)
            return result

    def run_scheduled_refresh(self, *, trigger: str = "scheduled") -> RefreshResult:
        """One cycle followed by the retention sweep."""
        result = self.run_cycle(force=False, trigger=trigger)
        result.events_deleted = self._reconciliation.purge_retired(now=self._clock())
        return result


def _utc_now() -> datetime:
    return datetime.now(UTC)
