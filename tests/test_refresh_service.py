from __future__ import annotations

import threading
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from typing import Any

import pytest

from backend.app.repositories.channel_repository import Channel, ChannelRepository
from backend.app.repositories.event_repository import EventRepository, ScheduledEvent
from backend.app.services.feed_source import FeedSource, FeedSourceError
from backend.app.services.quota_ledger import QuotaLedger
from backend.app.services.reconciliation_service import ReconciliationService
from backend.app.services.refresh_service import (
    RefreshResult,
    RefreshService,
    RssRefreshStrategy,
    SearchRefreshStrategy,
)
from backend.app.services.youtube_service import YouTubeService
from backend.app.telemetry import TelemetryClient
from tests.fakes import (
    CHANNEL_A,
    CHANNEL_B,
    CHANNEL_C,
    CHANNEL_D,
    FakeFeedFetcher,
    FakeYouTubeClient,
    channel_feed_xml,
    live_video_item,
    upload_item,
)


class _CaptureSink:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        self.events.append((event_name, dict(attributes)))


@pytest.fixture
def rss_strategy(
    channel_repository: ChannelRepository,
    fake_feed_fetcher: FakeFeedFetcher,
    youtube_service: YouTubeService,
    reconciliation: ReconciliationService,
    quota_ledger: QuotaLedger,
) -> RssRefreshStrategy:
    return RssRefreshStrategy(
        channel_repository=channel_repository,
        feed_source=FeedSource(fetcher=fake_feed_fetcher),
        youtube_service=youtube_service,
        reconciliation=reconciliation,
        quota_ledger=quota_ledger,
    )


@pytest.fixture
def search_strategy(
    channel_repository: ChannelRepository,
    youtube_service: YouTubeService,
    reconciliation: ReconciliationService,
    quota_ledger: QuotaLedger,
) -> SearchRefreshStrategy:
    return SearchRefreshStrategy(
        channel_repository=channel_repository,
        youtube_service=youtube_service,
        reconciliation=reconciliation,
        quota_ledger=quota_ledger,
    )


def test_rss_cycle_checks_feed_videos_and_stores_live_events(
    rss_strategy: RssRefreshStrategy,
    fake_feed_fetcher: FakeFeedFetcher,
    fake_youtube_client: FakeYouTubeClient,
    channel_repository: ChannelRepository,
    event_repository: EventRepository,
    quota_ledger: QuotaLedger,
    add_channel: Callable[..., Channel],
    now: datetime,
) -> None:
    add_channel(CHANNEL_A)
    add_channel(CHANNEL_B)
    fake_feed_fetcher.feeds[CHANNEL_A] = channel_feed_xml(CHANNEL_A, ["a_live", "a_upload"])
    fake_feed_fetcher.feeds[CHANNEL_B] = channel_feed_xml(CHANNEL_B, ["b_soon"])
    fake_youtube_client.add_video(
        live_video_item(
            "a_live",
            CHANNEL_A,
            scheduled_start=now - timedelta(minutes=30),
            actual_start=now - timedelta(minutes=25),
        )
    )
    fake_youtube_client.add_video(upload_item("a_upload", CHANNEL_A))
    fake_youtube_client.add_video(
        live_video_item("b_soon", CHANNEL_B, scheduled_start=now + timedelta(hours=3))
    )

    result = rss_strategy.run(force=False, now=now)

    assert result.errors == []
    assert result.channels_fetched == 2
    assert result.videos_checked == 3
    assert result.events_found == 2
    assert result.events_updated == 2
    assert result.quota_used == 1
    assert result.quota_by_category == {"videos_list": 1}
    assert fake_youtube_client.calls_for("search") == []

    live = event_repository.get_event("a_live")
    soon = event_repository.get_event("b_soon")
    assert live is not None and live.status == "LIVE"
    assert soon is not None and soon.status == "UPCOMING"
    assert event_repository.get_event("a_upload") is None

    for channel_id in (CHANNEL_A, CHANNEL_B):
        channel = channel_repository.find_by_id(channel_id)
        assert channel is not None
        assert channel.last_fetched_at == now

    assert quota_ledger.usage_today() == 1
    summary = quota_ledger.recent_entries(limit=1)[0]
    assert summary.operation == "sync_rss"
    assert summary.units_used == 0
    assert summary.details is not None and summary.details["quota_used"] == 1


def test_rss_cycle_dedupes_and_caps_videos_per_channel(
    rss_strategy: RssRefreshStrategy,
    fake_feed_fetcher: FakeFeedFetcher,
    fake_youtube_client: FakeYouTubeClient,
    add_channel: Callable[..., Channel],
    now: datetime,
) -> None:
    add_channel(CHANNEL_A)
    add_channel(CHANNEL_B)
    a_ids = [f"a{index:02d}" for index in range(20)]
    fake_feed_fetcher.feeds[CHANNEL_A] = channel_feed_xml(CHANNEL_A, a_ids)
    fake_feed_fetcher.feeds[CHANNEL_B] = channel_feed_xml(CHANNEL_B, ["a00", "b00"])

    result = rss_strategy.run(force=False, now=now)

    assert result.videos_checked == 16
    requested = str(fake_youtube_client.calls_for("videos")[0]["id"]).split(",")
    assert requested == [*a_ids[:15], "b00"]


def test_rss_cycle_records_feed_failure_and_continues(
    rss_strategy: RssRefreshStrategy,
    fake_feed_fetcher: FakeFeedFetcher,
    fake_youtube_client: FakeYouTubeClient,
    channel_repository: ChannelRepository,
    add_channel: Callable[..., Channel],
    now: datetime,
) -> None:
    add_channel(CHANNEL_A, title="Broken Feed", fetch_priority=5)
    add_channel(CHANNEL_B)
    fake_feed_fetcher.failures_by_channel[CHANNEL_A] = FeedSourceError("connection reset")
    fake_feed_fetcher.feeds[CHANNEL_B] = channel_feed_xml(CHANNEL_B, ["b_soon"])
    fake_youtube_client.add_video(
        live_video_item("b_soon", CHANNEL_B, scheduled_start=now + timedelta(hours=1))
    )

    result = rss_strategy.run(force=False, now=now)

    assert result.errors == ["RSS fetch failed for Broken Feed: connection reset"]
    assert result.channels_fetched == 1
    assert result.events_found == 1
    broken = channel_repository.find_by_id(CHANNEL_A)
    assert broken is not None and broken.last_fetched_at is None


def test_rss_cycle_without_quota_keeps_feed_progress(
    rss_strategy: RssRefreshStrategy,
    fake_feed_fetcher: FakeFeedFetcher,
    fake_youtube_client: FakeYouTubeClient,
    channel_repository: ChannelRepository,
    event_repository: EventRepository,
    quota_ledger: QuotaLedger,
    add_channel: Callable[..., Channel],
    now: datetime,
) -> None:
    add_channel(CHANNEL_A)
    fake_feed_fetcher.feeds[CHANNEL_A] = channel_feed_xml(CHANNEL_A, ["a_soon"])
    fake_youtube_client.add_video(
        live_video_item("a_soon", CHANNEL_A, scheduled_start=now + timedelta(hours=1))
    )
    quota_ledger.log_usage("search_upcoming", 10_000)

    result = rss_strategy.run(force=False, now=now)

    assert result.errors == [
        "YouTube API quota exhausted - RSS fetch succeeded, but cannot check "
        "live status until quota resets"
    ]
    assert result.quota_used == 0
    assert fake_youtube_client.calls == []
    assert event_repository.get_event("a_soon") is None
    channel = channel_repository.find_by_id(CHANNEL_A)
    assert channel is not None and channel.last_fetched_at == now


def test_rss_cycle_keeps_detail_batches_charged_before_quota_ran_out(
    rss_strategy: RssRefreshStrategy,
    fake_feed_fetcher: FakeFeedFetcher,
    fake_youtube_client: FakeYouTubeClient,
    event_repository: EventRepository,
    quota_ledger: QuotaLedger,
    add_channel: Callable[..., Channel],
    now: datetime,
) -> None:
    for channel_id in (CHANNEL_A, CHANNEL_B, CHANNEL_C, CHANNEL_D):
        add_channel(channel_id)
        prefix = channel_id[2]
        video_ids = [f"{prefix}{index:02d}" for index in range(15)]
        fake_feed_fetcher.feeds[channel_id] = channel_feed_xml(channel_id, video_ids)
        for video_id in video_ids:
            fake_youtube_client.add_video(
                live_video_item(video_id, channel_id, scheduled_start=now + timedelta(hours=1))
            )
    quota_ledger.log_usage("search_upcoming", 9_999)

    result = rss_strategy.run(force=False, now=now)

    assert result.videos_checked == 60
    assert len(fake_youtube_client.calls_for("videos")) == 1
    assert result.events_found == 50
    assert result.events_updated == 50
    assert result.quota_by_category == {"videos_list": 1}
    assert result.errors == [
        "YouTube API quota exhausted - RSS fetch succeeded, but cannot check "
        "live status until quota resets"
    ]
    assert quota_ledger.usage_today() == 10_000
    assert event_repository.get_event("a00") is not None
    assert event_repository.get_event("d04") is not None
    assert event_repository.get_event("d05") is None
    assert event_repository.get_event("d14") is None


def test_rss_cycle_runs_expiry_sweep(
    rss_strategy: RssRefreshStrategy,
    event_repository: EventRepository,
    add_channel: Callable[..., Channel],
    now: datetime,
) -> None:
    add_channel(CHANNEL_A)
    event_repository.upsert_event(
        ScheduledEvent(
            event_id="old_live",
            channel_id=CHANNEL_A,
            title="Forgotten stream",
            scheduled_start_time=now - timedelta(hours=13),
            event_type="LIVE_STREAM",
            status="LIVE",
        )
    )

    result = rss_strategy.run(force=False, now=now)

    assert result.events_expired == 1
    stored = event_repository.get_event("old_live")
    assert stored is not None and stored.status == "COMPLETED"


def test_search_cycle_aborts_without_effect_when_quota_is_short(
    search_strategy: SearchRefreshStrategy,
    fake_youtube_client: FakeYouTubeClient,
    channel_repository: ChannelRepository,
    quota_ledger: QuotaLedger,
    add_channel: Callable[..., Channel],
    now: datetime,
) -> None:
    add_channel(CHANNEL_A)
    quota_ledger.log_usage("search_upcoming", 9_850)

    result = search_strategy.run(force=False, now=now)

    assert result.aborted is True
    assert len(result.errors) == 1
    assert result.errors[0].startswith("Insufficient quota: 150 units remaining")
    assert result.quota_used == 0
    assert fake_youtube_client.calls == []
    assert quota_ledger.usage_today() == 9_850
    assert len(quota_ledger.recent_entries()) == 1
    channel = channel_repository.find_by_id(CHANNEL_A)
    assert channel is not None and channel.last_fetched_at is None


def test_search_cycle_searches_stale_channels_by_priority(
    search_strategy: SearchRefreshStrategy,
    fake_youtube_client: FakeYouTubeClient,
    channel_repository: ChannelRepository,
    event_repository: EventRepository,
    quota_ledger: QuotaLedger,
    add_channel: Callable[..., Channel],
    now: datetime,
) -> None:
    add_channel(CHANNEL_C, fetch_priority=3, last_fetched_at=None)
    add_channel(CHANNEL_D, fetch_priority=5, last_fetched_at=now - timedelta(hours=1))
    fake_youtube_client.upcoming_by_channel[CHANNEL_C] = ["c_soon"]
    fake_youtube_client.add_video(
        live_video_item(
            "c_soon",
            CHANNEL_C,
            scheduled_start=now + timedelta(hours=5),
            scheduled_end=now + timedelta(hours=6),
        )
    )

    result = search_strategy.run(force=False, now=now)

    assert result.errors == []
    searched = [kwargs["channelId"] for kwargs in fake_youtube_client.calls_for("search")]
    assert searched == [CHANNEL_C]
    assert result.channels_fetched == 1
    assert result.events_found == 1
    assert result.quota_by_category == {"search": 100, "videos_list": 2}
    assert result.quota_used == 102
    assert quota_ledger.usage_today() == 102

    stored = event_repository.get_event("c_soon")
    assert stored is not None
    assert stored.event_type == "PREMIERE"
    fetched = channel_repository.find_by_id(CHANNEL_C)
    assert fetched is not None and fetched.last_fetched_at == now


def test_search_cycle_force_ignores_staleness(
    search_strategy: SearchRefreshStrategy,
    fake_youtube_client: FakeYouTubeClient,
    add_channel: Callable[..., Channel],
    now: datetime,
) -> None:
    add_channel(CHANNEL_C, fetch_priority=3, last_fetched_at=None)
    add_channel(CHANNEL_D, fetch_priority=5, last_fetched_at=now - timedelta(hours=1))

    result = search_strategy.run(force=True, now=now)

    searched = [kwargs["channelId"] for kwargs in fake_youtube_client.calls_for("search")]
    assert searched == [CHANNEL_D, CHANNEL_C]
    assert result.forced is True
    assert result.quota_by_category == {"search": 200}


def test_search_cycle_caps_channels_per_cycle(
    channel_repository: ChannelRepository,
    youtube_service: YouTubeService,
    reconciliation: ReconciliationService,
    quota_ledger: QuotaLedger,
    fake_youtube_client: FakeYouTubeClient,
    add_channel: Callable[..., Channel],
    now: datetime,
) -> None:
    for index in range(25):
        add_channel(f"UC{index:022d}")
    strategy = SearchRefreshStrategy(
        channel_repository=channel_repository,
        youtube_service=youtube_service,
        reconciliation=reconciliation,
        quota_ledger=quota_ledger,
    )

    result = strategy.run(force=True, now=now)

    assert len(fake_youtube_client.calls_for("search")) == 20
    assert result.channels_fetched == 20


def test_search_cycle_stops_when_budget_runs_out_mid_cycle(
    search_strategy: SearchRefreshStrategy,
    fake_youtube_client: FakeYouTubeClient,
    channel_repository: ChannelRepository,
    quota_ledger: QuotaLedger,
    add_channel: Callable[..., Channel],
    now: datetime,
) -> None:
    add_channel(CHANNEL_A, fetch_priority=3)
    add_channel(CHANNEL_B, fetch_priority=2)
    add_channel(CHANNEL_C, fetch_priority=1)
    quota_ledger.log_usage("search_upcoming", 9_750)

    result = search_strategy.run(force=False, now=now)

    searched = [kwargs["channelId"] for kwargs in fake_youtube_client.calls_for("search")]
    assert searched == [CHANNEL_A, CHANNEL_B]
    assert result.channels_fetched == 2
    assert result.errors == [
        "YouTube API quota exhausted after searching 2 of 3 channels - "
        "remaining channels deferred until quota resets"
    ]
    assert quota_ledger.usage_today() == 9_950
    skipped = channel_repository.find_by_id(CHANNEL_C)
    assert skipped is not None and skipped.last_fetched_at is None


def test_search_cycle_continues_after_channel_failure(
    search_strategy: SearchRefreshStrategy,
    fake_youtube_client: FakeYouTubeClient,
    channel_repository: ChannelRepository,
    add_channel: Callable[..., Channel],
    now: datetime,
) -> None:
    add_channel(CHANNEL_A, title="Flaky", fetch_priority=2)
    add_channel(CHANNEL_B, fetch_priority=1)
    fake_youtube_client.search_failures_by_channel[CHANNEL_A] = RuntimeError("backend error")

    result = search_strategy.run(force=False, now=now)

    assert len(result.errors) == 1
    assert result.errors[0].startswith("Search failed for Flaky:")
    assert result.channels_fetched == 1
    assert result.quota_by_category == {"search": 200}
    flaky = channel_repository.find_by_id(CHANNEL_A)
    assert flaky is not None and flaky.last_fetched_at is None


def test_search_cycle_refreshes_recent_known_events(
    search_strategy: SearchRefreshStrategy,
    fake_youtube_client: FakeYouTubeClient,
    event_repository: EventRepository,
    add_channel: Callable[..., Channel],
    now: datetime,
) -> None:
    add_channel(CHANNEL_A, last_fetched_at=now - timedelta(hours=1))
    start = now - timedelta(minutes=20)
    event_repository.upsert_event(
        ScheduledEvent(
            event_id="known",
            channel_id=CHANNEL_A,
            title="Original title",
            scheduled_start_time=start,
            event_type="LIVE_STREAM",
            status="UPCOMING",
        )
    )
    fake_youtube_client.add_video(
        live_video_item(
            "known",
            CHANNEL_A,
            scheduled_start=start,
            actual_start=start + timedelta(minutes=2),
            title="Changed title",
        )
    )

    result = search_strategy.run(force=False, now=now)

    assert fake_youtube_client.calls_for("search") == []
    assert result.events_refreshed == 1
    assert result.quota_by_category == {"videos_list": 1}
    stored = event_repository.get_event("known")
    assert stored is not None
    assert stored.status == "LIVE"
    assert stored.title == "Original title"
    assert stored.actual_start_time == start + timedelta(minutes=2)


def test_search_cycle_refreshes_statuses_from_batches_before_quota_ran_out(
    search_strategy: SearchRefreshStrategy,
    fake_youtube_client: FakeYouTubeClient,
    event_repository: EventRepository,
    quota_ledger: QuotaLedger,
    add_channel: Callable[..., Channel],
    now: datetime,
) -> None:
    add_channel(CHANNEL_A, last_fetched_at=now - timedelta(hours=1))
    add_channel(CHANNEL_B)
    add_channel(CHANNEL_C)
    start = now + timedelta(hours=1)
    known_ids = [f"known{index:02d}" for index in range(51)]
    for event_id in known_ids:
        event_repository.upsert_event(
            ScheduledEvent(
                event_id=event_id,
                channel_id=CHANNEL_A,
                title=f"Stream {event_id}",
                scheduled_start_time=start,
                event_type="LIVE_STREAM",
                status="UPCOMING",
            )
        )
        fake_youtube_client.add_video(
            live_video_item(
                event_id,
                CHANNEL_A,
                scheduled_start=start,
                actual_start=now - timedelta(minutes=5),
            )
        )
    quota_ledger.log_usage("search_upcoming", 9_799)

    result = search_strategy.run(force=False, now=now)

    searched = {kwargs["channelId"] for kwargs in fake_youtube_client.calls_for("search")}
    assert searched == {CHANNEL_B, CHANNEL_C}
    assert len(fake_youtube_client.calls_for("videos")) == 1
    assert result.events_refreshed == 50
    assert result.quota_by_category == {"search": 200, "videos_list": 1}
    assert result.errors == [
        "YouTube API quota exhausted - channel search succeeded, but cannot refresh "
        "live status of known events until quota resets"
    ]
    statuses = [event_repository.get_event(event_id) for event_id in known_ids]
    assert sum(1 for event in statuses if event is not None and event.status == "LIVE") == 50
    assert sum(1 for event in statuses if event is not None and event.status == "UPCOMING") == 1


def test_search_cycle_requires_room_for_a_detail_batch_per_channel(
    search_strategy: SearchRefreshStrategy,
    fake_youtube_client: FakeYouTubeClient,
    channel_repository: ChannelRepository,
    quota_ledger: QuotaLedger,
    add_channel: Callable[..., Channel],
    now: datetime,
) -> None:
    add_channel(CHANNEL_A, fetch_priority=2)
    add_channel(CHANNEL_B, fetch_priority=1)
    quota_ledger.log_usage("search_upcoming", 9_800)

    result = search_strategy.run(force=False, now=now)

    searched = [kwargs["channelId"] for kwargs in fake_youtube_client.calls_for("search")]
    assert searched == [CHANNEL_A]
    assert result.errors == [
        "YouTube API quota exhausted after searching 1 of 2 channels - "
        "remaining channels deferred until quota resets"
    ]
    assert quota_ledger.usage_today() == 9_900
    deferred = channel_repository.find_by_id(CHANNEL_B)
    assert deferred is not None and deferred.last_fetched_at is None


class _StaticStrategy:
    name = "rss"

    def __init__(self) -> None:
        self.calls: list[tuple[bool, datetime]] = []
        self.active = 0
        self.max_active = 0
        self._guard = threading.Lock()

    def run(self, *, force: bool, now: datetime) -> RefreshResult:
        with self._guard:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        self.calls.append((force, now))
        threading.Event().wait(0.05)
        with self._guard:
            self.active -= 1
        return RefreshResult(strategy="rss", forced=force)


class _ExplodingStrategy:
    name = "search"

    def run(self, *, force: bool, now: datetime) -> RefreshResult:
        _ = (force, now)
        raise RuntimeError("database is locked")


def test_refresh_service_serializes_cycles(
    reconciliation: ReconciliationService,
    now: datetime,
) -> None:
    strategy = _StaticStrategy()
    service = RefreshService(strategy=strategy, reconciliation=reconciliation, clock=lambda: now)

    threads = [threading.Thread(target=service.run_cycle) for _ in range(3)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(strategy.calls) == 3
    assert strategy.max_active == 1


def test_refresh_service_scheduled_refresh_runs_retention(
    reconciliation: ReconciliationService,
    event_repository: EventRepository,
    add_channel: Callable[..., Channel],
    now: datetime,
) -> None:
    add_channel(CHANNEL_A)
    event_repository.upsert_event(
        ScheduledEvent(
            event_id="ancient",
            channel_id=CHANNEL_A,
            title="Ancient",
            scheduled_start_time=now - timedelta(days=10),
            event_type="LIVE_STREAM",
            status="COMPLETED",
        )
    )
    strategy = _StaticStrategy()
    service = RefreshService(strategy=strategy, reconciliation=reconciliation, clock=lambda: now)

    manual = service.run_cycle(force=True, trigger="manual")
    assert manual.events_deleted is None
    assert event_repository.get_event("ancient") is not None

    scheduled = service.run_scheduled_refresh()
    assert scheduled.events_deleted == 1
    assert strategy.calls == [(True, now), (False, now)]
    assert event_repository.get_event("ancient") is None


def test_refresh_service_emits_telemetry_and_propagates_failures(
    reconciliation: ReconciliationService,
) -> None:
    sink = _CaptureSink()
    service = RefreshService(
        strategy=_ExplodingStrategy(),
        reconciliation=reconciliation,
        telemetry=TelemetryClient(enabled=True, sink=sink),
    )

    with pytest.raises(RuntimeError, match="database is locked"):
        service.run_cycle()

    assert [name for name, _ in sink.events] == ["refresh.cycle.start", "refresh.cycle.error"]
    assert sink.events[1][1]["error_type"] == "RuntimeError"


def test_refresh_result_to_dict_includes_total() -> None:
    result = RefreshResult(strategy="search")
    result.add_quota("search", 100)
    result.add_quota("videos_list", 2)
    result.add_quota("videos_list", 0)

    payload = result.to_dict()
    assert payload["quota_used"] == 102
    assert payload["quota_by_category"] == {"search": 100, "videos_list": 2}
