from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, cast
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

import feedparser

from backend.app.repositories.common import parse_utc_iso_or_none

LOGGER = logging.getLogger("stream_guide.feed")

CHANNEL_FEED_URL = "https://www.youtube.com/feeds/videos.xml"
_VIDEO_ID_PREFIX = "yt:video:"


@dataclass(frozen=True)
class FeedVideo:
    video_id: str
    title: str
    channel_id: str
    published: datetime
    thumbnail_url: str


class FeedSourceError(Exception):
    pass


FeedFetcher = Callable[[str, float], tuple[int, str]]


class FeedSource:
    """Free, unauthenticated channel upload feed. Costs no quota units.

    The feed carries no live or scheduling metadata, only the most recent
    uploads of a channel, newest first.
    """

    def __init__(
        self,
        *,
        http_timeout_seconds: float = 15.0,
        fetcher: FeedFetcher | None = None,
    ) -> None:
        self._http_timeout_seconds = max(1.0, http_timeout_seconds)
        self._fetcher = fetcher if fetcher is not None else _fetch_feed_text

    def fetch_recent(self, channel_id: str) -> list[FeedVideo]:
        url = f"{CHANNEL_FEED_URL}?{urlencode({'channel_id': channel_id})}"
        status_code, body = self._fetcher(url, self._http_timeout_seconds)
        if status_code < 200 or status_code >= 300:
            LOGGER.warning(
                "channel feed fetch returned non-ok status channel_id=%s status=%s",
                channel_id,
                status_code,
            )
            return []
        return parse_channel_feed(body, channel_id=channel_id)


def parse_channel_feed(xml_text: str, *, channel_id: str) -> list[FeedVideo]:
    parsed = feedparser.parse(xml_text)
    videos: list[FeedVideo] = []
    for entry in cast(list[Any], parsed.entries):
        video_id = _entry_video_id(entry)
        if video_id is None:
            continue

        raw_title = entry.get("title")
        title = raw_title.strip() if isinstance(raw_title, str) else ""
        published = parse_utc_iso_or_none(entry.get("published")) or datetime.now(UTC)

        videos.append(
            FeedVideo(
                video_id=video_id,
                title=title,
                channel_id=channel_id,
                published=published,
                thumbnail_url=_entry_thumbnail_url(entry, video_id),
            )
        )
    return videos


def _entry_video_id(entry: Any) -> str | None:
    raw_video_id = entry.get("yt_videoid")
    if isinstance(raw_video_id, str) and raw_video_id.strip():
        return raw_video_id.strip()

    raw_id = entry.get("id")
    if isinstance(raw_id, str) and raw_id.startswith(_VIDEO_ID_PREFIX):
        candidate = raw_id[len(_VIDEO_ID_PREFIX) :].strip()
        return candidate or None
    return None


def _entry_thumbnail_url(entry: Any, video_id: str) -> str:
    thumbnails = entry.get("media_thumbnail")
    if isinstance(thumbnails, list):
        for thumbnail in cast(list[Any], thumbnails):
            if isinstance(thumbnail, dict):
                url = cast(dict[str, Any], thumbnail).get("url")
                if isinstance(url, str) and url.strip():
                    return url
    return f"https://i.ytimg.com/vi/{video_id}/mqdefault.jpg"


def _fetch_feed_text(url: str, timeout_seconds: float) -> tuple[int, str]:
    request = Request(
        url,
        headers={
            "accept": "application/atom+xml, application/xml;q=0.9, */*;q=0.1",
            "user-agent": "stream-guide/1.0",
        },
        method="GET",
    )
    try:
        with urlopen(request, timeout=timeout_seconds) as response:
            status_code = int(response.getcode() or 0)
            body = response.read().decode("utf-8", errors="replace")
    except HTTPError as exc:
        return int(exc.code), ""
    except (URLError, TimeoutError, OSError) as exc:
        raise FeedSourceError(f"channel feed request failed: {exc}") from exc
    return status_code, body
