from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import datetime
from pathlib import Path
from zoneinfo import ZoneInfo

import pytest
from fastapi.testclient import TestClient

from backend.app.dependencies import reset_cached_dependencies
from backend.app.main import create_app
from backend.app.repositories.channel_repository import Channel, ChannelRepository
from backend.app.repositories.database import Database
from backend.app.repositories.event_repository import EventRepository
from backend.app.repositories.quota_repository import QuotaLogRepository
from backend.app.services.quota_ledger import QuotaLedger
from backend.app.services.reconciliation_service import ReconciliationService
from backend.app.services.youtube_service import YouTubeService
from tests.fakes import FIXED_NOW, FakeFeedFetcher, FakeYouTubeClient


@pytest.fixture
def now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "state.db")
    db.initialize()
    return db


@pytest.fixture
def channel_repository(database: Database) -> ChannelRepository:
    return ChannelRepository(database)


@pytest.fixture
def event_repository(database: Database) -> EventRepository:
    return EventRepository(database)


@pytest.fixture
def quota_repository(database: Database) -> QuotaLogRepository:
    return QuotaLogRepository(database)


@pytest.fixture
def quota_ledger(quota_repository: QuotaLogRepository, now: datetime) -> QuotaLedger:
    def _clock(zone: ZoneInfo) -> datetime:
        return now.astimezone(zone)

    return QuotaLedger(quota_repository, daily_limit=10_000, timezone="UTC", clock=_clock)


@pytest.fixture
def reconciliation(event_repository: EventRepository) -> ReconciliationService:
    return ReconciliationService(event_repository)


@pytest.fixture
def fake_youtube_client() -> FakeYouTubeClient:
    return FakeYouTubeClient()


@pytest.fixture
def youtube_service(
    quota_ledger: QuotaLedger,
    fake_youtube_client: FakeYouTubeClient,
) -> YouTubeService:
    return YouTubeService(quota_ledger=quota_ledger, client=fake_youtube_client)


@pytest.fixture
def fake_feed_fetcher() -> FakeFeedFetcher:
    return FakeFeedFetcher()


@pytest.fixture
def add_channel(channel_repository: ChannelRepository) -> Callable[..., Channel]:
    def _add(
        channel_id: str,
        *,
        title: str | None = None,
        last_fetched_at: datetime | None = None,
        fetch_priority: int = 1,
        is_active: bool = True,
        handle: str | None = None,
    ) -> Channel:
        channel = Channel(
            channel_id=channel_id,
            title=title or f"Channel {channel_id[-4:]}",
            handle=handle,
            last_fetched_at=last_fetched_at,
            fetch_priority=fetch_priority,
            is_active=is_active,
        )
        channel_repository.upsert(channel)
        return channel

    return _add


@pytest.fixture
def client(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    fake_youtube_client: FakeYouTubeClient,
    fake_feed_fetcher: FakeFeedFetcher,
) -> Iterator[TestClient]:
    data_dir = tmp_path / "runtime-data"
    data_dir.mkdir(parents=True, exist_ok=True)

    monkeypatch.setenv("STREAM_GUIDE_DATA_DIR", str(data_dir))
    monkeypatch.setenv("STREAM_GUIDE_ENABLE_SCHEDULER", "0")
    monkeypatch.setenv("STREAM_GUIDE_YOUTUBE_API_KEY", "test-api-key")
    monkeypatch.setenv("STREAM_GUIDE_REFRESH_STRATEGY", "rss")
    monkeypatch.setattr(
        "backend.app.services.youtube_service._build_youtube_client",
        lambda _api_key: fake_youtube_client,
    )
    monkeypatch.setattr(
        "backend.app.services.feed_source._fetch_feed_text",
        fake_feed_fetcher,
    )
    reset_cached_dependencies()

    app = create_app()
    with TestClient(app) as test_client:
        yield test_client

    reset_cached_dependencies()
