from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Literal

from backend.app.repositories.channel_repository import Channel, ChannelRepository
from backend.app.services.quota_ledger import QuotaCosts, QuotaLedger
from backend.app.services.youtube_service import (
    ChannelSummary,
    YouTubeService,
    YouTubeServiceError,
)

LOGGER = logging.getLogger("stream_guide.channels")

MIN_SEARCH_QUERY_LENGTH = 2
CACHED_SEARCH_LIMIT = 10

_CHANNEL_URL_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"youtube\.com/channel/(UC[a-zA-Z0-9_-]{22})"),
    re.compile(r"youtube\.com/@([a-zA-Z0-9_.-]+)"),
    re.compile(r"youtube\.com/c/([a-zA-Z0-9_-]+)"),
    re.compile(r"youtube\.com/user/([a-zA-Z0-9_-]+)"),
)


class ChannelNotFoundError(Exception):
    pass


class ChannelResolutionError(ValueError):
    pass


@dataclass(frozen=True)
class AddChannelResult:
    channel: Channel
    created: bool


@dataclass(frozen=True)
class ChannelSearchResult:
    channels: list[ChannelSummary]
    source: Literal["youtube", "cache"]
    quota_warning: bool = False


def is_channel_id(identifier: str) -> bool:
    return identifier.startswith("UC") and len(identifier) == 24


class ChannelService:
    """Tracks which channels the refresh cycle watches."""

    def __init__(
        self,
        *,
        channel_repository: ChannelRepository,
        youtube_service: YouTubeService,
        quota_ledger: QuotaLedger,
    ) -> None:
        self._channel_repository = channel_repository
        self._youtube_service = youtube_service
        self._quota_ledger = quota_ledger

    def list_channels(self, channel_ids: list[str] | None = None) -> list[Channel]:
        if channel_ids:
            return self._channel_repository.find_by_ids(channel_ids)
        return self._channel_repository.find_active()

    def add_channel(
        self,
        *,
        channel_id: str | None = None,
        channel_url: str | None = None,
    ) -> AddChannelResult:
        """Track a channel by id or URL.

        A channel that is already known is reactivated and its fetch priority
        bumped, since another follower asked for it. An unknown channel is
        looked up once (one list unit) and stored with priority 1.
        """
        resolved_id = (channel_id or "").strip() or None
        if resolved_id is None and channel_url:
            resolved_id = self.resolve_channel_url(channel_url)
            if resolved_id is None:
                raise ChannelResolutionError("Could not resolve channel from URL")
        if resolved_id is None:
            raise ChannelResolutionError("channel_id or channel_url required")

        existing = self._channel_repository.reactivate_and_bump_priority(resolved_id)
        if existing is not None:
            LOGGER.info(
                "channel already tracked channel_id=%s priority=%s",
                existing.channel_id,
                existing.fetch_priority,
            )
            return AddChannelResult(channel=existing, created=False)

        summary = self._youtube_service.get_channel(resolved_id)
        if summary is None:
            raise ChannelNotFoundError(f"Channel not found on YouTube: {resolved_id}")

        channel = Channel(
            channel_id=summary.channel_id,
            title=summary.title,
            handle=summary.handle,
            thumbnail_url=summary.thumbnail_url,
            subscriber_count=summary.subscriber_count,
            fetch_priority=1,
        )
        self._channel_repository.upsert(channel)
        LOGGER.info("channel added channel_id=%s", channel.channel_id)
        return AddChannelResult(channel=channel, created=True)

    def resolve_channel_url(self, channel_url: str) -> str | None:
        for pattern in _CHANNEL_URL_PATTERNS:
            match = pattern.search(channel_url)
            if match is None:
                continue
            identifier = match.group(1)
            if is_channel_id(identifier):
                return identifier
            # Handles and legacy names cost a search to resolve.
            candidates = self._youtube_service.search_channels(identifier)
            if candidates:
                return candidates[0].channel_id
        return None

    def search_channels(self, query: str) -> ChannelSearchResult:
        normalized = query.strip()
        if len(normalized) < MIN_SEARCH_QUERY_LENGTH:
            raise ValueError(
                f"Query must be at least {MIN_SEARCH_QUERY_LENGTH} characters"
            )

        if not self._quota_ledger.check_quota(QuotaCosts.SEARCH).has_quota:
            return self._search_cache(normalized)

        try:
            channels = self._youtube_service.search_channels(normalized)
        except YouTubeServiceError:
            LOGGER.warning("channel search failed; falling back to cache", exc_info=True)
            return self._search_cache(normalized)
        return ChannelSearchResult(channels=channels, source="youtube")

    def deactivate_channel(self, channel_id: str) -> bool:
        deactivated = self._channel_repository.deactivate(channel_id)
        if deactivated:
            LOGGER.info("channel deactivated channel_id=%s", channel_id)
        return deactivated

    def _search_cache(self, query: str) -> ChannelSearchResult:
        cached = self._channel_repository.search_cached(query, limit=CACHED_SEARCH_LIMIT)
        return ChannelSearchResult(
            channels=[
                ChannelSummary(
                    channel_id=channel.channel_id,
                    title=channel.title,
                    handle=channel.handle,
                    thumbnail_url=channel.thumbnail_url,
                    subscriber_count=channel.subscriber_count,
                )
                for channel in cached
            ],
            source="cache",
            quota_warning=True,
        )
