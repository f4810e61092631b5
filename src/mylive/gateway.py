"""Typed access to broadcast status on top of the raw YouTube helpers.

Every call returns an outcome object instead of raising: transport and parse
failures degrade to :attr:`BroadcastState.UNKNOWN` (or ``None`` owners), and
API errors reported while searching are returned as a failed
:class:`BroadcastLookup` so callers never mistake them for "no broadcast".
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from .keywords import admits
from .models import DEFAULT_CHANNEL_NAME, BroadcastState
from .youtube import (
    SEARCH_MAX_RESULTS,
    YouTubeApiError,
    YouTubeTransportError,
    fetch_youtube_channels,
    fetch_youtube_videos,
    search_channel_broadcasts,
)

__all__ = [
    "BroadcastLookup",
    "Classification",
    "MissingCredentialError",
    "RemoteStatusGateway",
    "VideoChannelCache",
    "classify_video_item",
]


logger = logging.getLogger(__name__)


class MissingCredentialError(RuntimeError):
    """Raised when a remote call is attempted without an API key."""


@dataclass(frozen=True)
class BroadcastLookup:
    """Result of searching a channel for a live or upcoming broadcast."""

    video_id: str | None = None
    state: BroadcastState | None = None
    title: str | None = None
    error: str | None = None

    @property
    def found(self) -> bool:
        return self.error is None and self.video_id is not None and self.state is not None

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass(frozen=True)
class Classification:
    """Current broadcast classification of a single video."""

    state: BroadcastState
    title: str = ""
    channel_id: str | None = None


UNKNOWN = Classification(BroadcastState.UNKNOWN)


class VideoChannelCache:
    """Append-only memo of video ID -> owning channel ID (or ``None``).

    A video with an entry is never looked up again, even when the entry is
    ``None``.
    """

    def __init__(self, entries: Mapping[str, str | None] | None = None):
        self._entries: dict[str, str | None] = dict(entries or {})

    def __contains__(self, video_id: object) -> bool:
        return video_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def get(self, video_id: str) -> str | None:
        return self._entries.get(video_id)

    def record(self, video_id: str, channel_id: str | None) -> None:
        """Store an owner unless the video already has an entry."""

        if video_id and video_id not in self._entries:
            self._entries[video_id] = channel_id or None

    def missing(self, video_ids: Iterable[str]) -> list[str]:
        pending: list[str] = []
        for video_id in video_ids:
            if video_id and video_id not in self._entries and video_id not in pending:
                pending.append(video_id)
        return pending


def classify_video_item(item: Mapping[str, Any] | None) -> Classification:
    """Derive the broadcast state of a ``videos`` resource.

    ``live`` and ``upcoming`` flags map directly. A ``none`` flag only counts
    as ended when the stream reports an actual end time; without it the state
    is ``unknown``. Any other flag value is treated as ended, and a missing
    item is ``unknown``.
    """

    if not isinstance(item, Mapping):
        return UNKNOWN
    snippet = item.get("snippet")
    if not isinstance(snippet, Mapping):
        snippet = {}
    title = str(snippet.get("title") or "")
    channel_id = snippet.get("channelId") if isinstance(snippet.get("channelId"), str) else None
    flag = snippet.get("liveBroadcastContent")
    details = item.get("liveStreamingDetails")
    has_end_time = isinstance(details, Mapping) and bool(details.get("actualEndTime"))

    if flag == "live":
        state = BroadcastState.LIVE
    elif flag == "upcoming":
        state = BroadcastState.UPCOMING
    elif flag == "none":
        state = BroadcastState.ENDED if has_end_time else BroadcastState.UNKNOWN
    else:
        state = BroadcastState.ENDED
    return Classification(state=state, title=title, channel_id=channel_id)


def _search_candidates(data: Mapping[str, Any]) -> Iterator[tuple[str, str | None, str]]:
    for item in data.get("items") or []:
        if not isinstance(item, Mapping):
            continue
        identifier = item.get("id")
        video_id = identifier.get("videoId") if isinstance(identifier, Mapping) else None
        if not isinstance(video_id, str) or not video_id:
            continue
        snippet = item.get("snippet")
        if not isinstance(snippet, Mapping):
            snippet = {}
        owner = snippet.get("channelId")
        yield video_id, owner if isinstance(owner, str) else None, str(snippet.get("title") or "")


class RemoteStatusGateway:
    """Adapter exposing the four broadcast status operations."""

    def __init__(self, api_key: str | None = None, *, max_results: int = SEARCH_MAX_RESULTS):
        self.api_key = api_key
        self.max_results = max_results

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _require_key(self) -> str:
        if not self.api_key:
            raise MissingCredentialError("YouTube API key is not configured")
        return self.api_key

    async def find_active_or_upcoming_broadcast(
        self, channel_id: str, keywords: Sequence[str] = ()
    ) -> BroadcastLookup:
        """Return the first live, else the next upcoming, admitted broadcast."""

        api_key = self._require_key()
        for state in (BroadcastState.LIVE, BroadcastState.UPCOMING):
            try:
                _, data = await search_channel_broadcasts(
                    channel_id, state.value, api_key, max_results=self.max_results
                )
            except YouTubeApiError as exc:
                logger.warning("Search for %s broadcasts of %s failed: %s", state.value, channel_id, exc)
                return BroadcastLookup(error=exc.message)
            except YouTubeTransportError as exc:
                logger.warning("Search for %s broadcasts of %s failed: %s", state.value, channel_id, exc)
                return BroadcastLookup(error=str(exc))

            for video_id, owner, title in _search_candidates(data):
                if owner != channel_id:
                    continue
                if not admits(title, keywords):
                    logger.debug("Skipping %s for %s: title %r not admitted", video_id, channel_id, title)
                    continue
                return BroadcastLookup(video_id=video_id, state=state, title=title)
        return BroadcastLookup()

    async def fetch_display_name(self, channel_id: str) -> str:
        """Return the channel title, or a placeholder when unavailable."""

        try:
            api_key = self._require_key()
            _, data = await fetch_youtube_channels(channel_id, api_key)
        except (MissingCredentialError, YouTubeApiError, YouTubeTransportError) as exc:
            logger.warning("Unable to fetch the name of channel %s: %s", channel_id, exc)
            return DEFAULT_CHANNEL_NAME

        for item in data.get("items") or []:
            if not isinstance(item, Mapping):
                continue
            snippet = item.get("snippet")
            if isinstance(snippet, Mapping):
                title = str(snippet.get("title") or "").strip()
                if title:
                    return title
        return DEFAULT_CHANNEL_NAME

    async def classify_videos(self, video_ids: Iterable[str]) -> dict[str, Classification]:
        """Classify several videos, batching requests by fifty."""

        ids = [video_id for video_id in dict.fromkeys(video_ids) if video_id]
        if not ids:
            return {}
        api_key = self._require_key()
        try:
            items = await fetch_youtube_videos(ids, api_key)
        except (YouTubeApiError, YouTubeTransportError) as exc:
            logger.warning("Unable to classify %s video(s): %s", len(ids), exc)
            return {video_id: UNKNOWN for video_id in ids}

        by_id = {item.get("id"): item for item in items if isinstance(item, Mapping)}
        return {video_id: classify_video_item(by_id.get(video_id)) for video_id in ids}

    async def classify_video(self, video_id: str) -> Classification:
        results = await self.classify_videos([video_id])
        return results.get(video_id, UNKNOWN)

    async def resolve_owning_channels(
        self, video_ids: Iterable[str], cache: VideoChannelCache
    ) -> dict[str, str | None]:
        """Resolve owners for *video_ids*, memoizing them into *cache*.

        Videos missing from a successful response are recorded as ``None``.
        Failed requests record nothing so the lookup can be retried.
        """

        ids = [video_id for video_id in dict.fromkeys(video_ids) if video_id]
        pending = cache.missing(ids)
        if pending:
            api_key = self._require_key()
            try:
                items = await fetch_youtube_videos(pending, api_key)
            except (YouTubeApiError, YouTubeTransportError) as exc:
                logger.warning("Unable to resolve owners of %s video(s): %s", len(pending), exc)
            else:
                owners: dict[str, str | None] = {}
                for item in items:
                    if not isinstance(item, Mapping):
                        continue
                    classification = classify_video_item(item)
                    video_id = item.get("id")
                    if isinstance(video_id, str):
                        owners[video_id] = classification.channel_id
                for video_id in pending:
                    cache.record(video_id, owners.get(video_id))
        return {video_id: cache.get(video_id) for video_id in ids}

    async def resolve_owning_channel(
        self, video_id: str, cache: VideoChannelCache
    ) -> str | None:
        results = await self.resolve_owning_channels([video_id], cache)
        return results.get(video_id)
