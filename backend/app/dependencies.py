from __future__ import annotations

from functools import lru_cache

from backend.app.config import AppSettings, load_settings
from backend.app.repositories.channel_repository import ChannelRepository
from backend.app.repositories.database import Database
from backend.app.repositories.event_repository import EventRepository
from backend.app.repositories.quota_repository import QuotaLogRepository
from backend.app.services.channel_service import ChannelService
from backend.app.services.feed_source import FeedSource
from backend.app.services.quota_ledger import QuotaLedger
from backend.app.services.reconciliation_service import ReconciliationService
from backend.app.services.refresh_service import (
    RefreshService,
    RefreshStrategy,
    RssRefreshStrategy,
    SearchRefreshStrategy,
)
from backend.app.services.youtube_service import YouTubeService
from backend.app.telemetry import TelemetryClient, build_telemetry_client


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_database() -> Database:
    database = Database(get_settings().db_path)
    database.initialize()
    return database


@lru_cache(maxsize=1)
def get_channel_repository() -> ChannelRepository:
    return ChannelRepository(get_database())


@lru_cache(maxsize=1)
def get_event_repository() -> EventRepository:
    return EventRepository(get_database())


@lru_cache(maxsize=1)
def get_quota_ledger() -> QuotaLedger:
    settings = get_settings()
    return QuotaLedger(
        QuotaLogRepository(get_database()),
        daily_limit=settings.youtube_daily_quota_limit,
        timezone=settings.default_timezone,
    )


@lru_cache(maxsize=1)
def get_youtube_service() -> YouTubeService:
    return YouTubeService(
        quota_ledger=get_quota_ledger(),
        api_key=get_settings().youtube_api_key,
    )


@lru_cache(maxsize=1)
def get_feed_source() -> FeedSource:
    return FeedSource(http_timeout_seconds=get_settings().feed_http_timeout_seconds)


@lru_cache(maxsize=1)
def get_reconciliation_service() -> ReconciliationService:
    return ReconciliationService(get_event_repository())


@lru_cache(maxsize=1)
def get_refresh_service() -> RefreshService:
    settings = get_settings()
    strategy: RefreshStrategy
    if settings.refresh_strategy == "search":
        strategy = SearchRefreshStrategy(
            channel_repository=get_channel_repository(),
            youtube_service=get_youtube_service(),
            reconciliation=get_reconciliation_service(),
            quota_ledger=get_quota_ledger(),
        )
    else:
        strategy = RssRefreshStrategy(
            channel_repository=get_channel_repository(),
            feed_source=get_feed_source(),
            youtube_service=get_youtube_service(),
            reconciliation=get_reconciliation_service(),
            quota_ledger=get_quota_ledger(),
        )
    return RefreshService(
        strategy=strategy,
        reconciliation=get_reconciliation_service(),
        telemetry=get_telemetry(),
    )


@lru_cache(maxsize=1)
def get_channel_service() -> ChannelService:
    return ChannelService(
        channel_repository=get_channel_repository(),
        youtube_service=get_youtube_service(),
        quota_ledger=get_quota_ledger(),
    )


@lru_cache(maxsize=1)
def get_telemetry() -> TelemetryClient:
    settings = get_settings()
    return build_telemetry_client(
        enabled=settings.telemetry_enabled,
        sink=settings.telemetry_sink,
    )


def reset_cached_dependencies() -> None:
    get_channel_service.cache_clear()
    get_refresh_service.cache_clear()
    get_reconciliation_service.cache_clear()
    get_feed_source.cache_clear()
    get_youtube_service.cache_clear()
    get_quota_ledger.cache_clear()
    get_event_repository.cache_clear()
    get_channel_repository.cache_clear()
    get_database.cache_clear()
    get_telemetry.cache_clear()
    get_settings.cache_clear()
