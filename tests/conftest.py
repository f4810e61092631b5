from __future__ import annotations

import sys
from collections.abc import Iterable, Sequence
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from mylive.gateway import BroadcastLookup, Classification, VideoChannelCache  # noqa: E402
from mylive.models import DEFAULT_CHANNEL_NAME, BroadcastState  # noqa: E402


class FakeGateway:
    """In-memory stand-in for :class:`mylive.gateway.RemoteStatusGateway`."""

    def __init__(self, api_key: str | None = "test-key"):
        self.api_key = api_key
        self.broadcasts: dict[str, BroadcastLookup] = {}
        self.classifications: dict[str, Classification] = {}
        self.owners: dict[str, str | None] = {}
        self.names: dict[str, str] = {}
        self.calls: list[tuple] = []

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def set_live(self, channel_id: str, video_id: str, title: str = "") -> None:
        self.broadcasts[channel_id] = BroadcastLookup(video_id, BroadcastState.LIVE, title)
        self.classifications[video_id] = Classification(BroadcastState.LIVE, title, channel_id)
        self.owners[video_id] = channel_id

    def set_upcoming(self, channel_id: str, video_id: str, title: str = "") -> None:
        self.broadcasts[channel_id] = BroadcastLookup(video_id, BroadcastState.UPCOMING, title)
        self.classifications[video_id] = Classification(BroadcastState.UPCOMING, title, channel_id)
        self.owners[video_id] = channel_id

    def set_offline(self, channel_id: str) -> None:
        self.broadcasts.pop(channel_id, None)

    def set_error(self, channel_id: str, message: str = "quotaExceeded") -> None:
        self.broadcasts[channel_id] = BroadcastLookup(error=message)

    def classify(self, video_id: str, state: BroadcastState, channel_id: str | None = None) -> None:
        self.classifications[video_id] = Classification(state, f"Video {video_id}", channel_id)

    async def find_active_or_upcoming_broadcast(
        self, channel_id: str, keywords: Sequence[str] = ()
    ) -> BroadcastLookup:
        self.calls.append(("search", channel_id, tuple(keywords)))
        return self.broadcasts.get(channel_id, BroadcastLookup())

    async def fetch_display_name(self, channel_id: str) -> str:
        self.calls.append(("name", channel_id))
        return self.names.get(channel_id, DEFAULT_CHANNEL_NAME)

    async def classify_videos(self, video_ids: Iterable[str]) -> dict[str, Classification]:
        ids = list(dict.fromkeys(video_ids))
        self.calls.append(("classify", tuple(ids)))
        return {
            video_id: self.classifications.get(video_id, Classification(BroadcastState.UNKNOWN))
            for video_id in ids
        }

    async def classify_video(self, video_id: str) -> Classification:
        results = await self.classify_videos([video_id])
        return results[video_id]

    async def resolve_owning_channels(
        self, video_ids: Iterable[str], cache: VideoChannelCache
    ) -> dict[str, str | None]:
        ids = list(dict.fromkeys(video_ids))
        pending = cache.missing(ids)
        if pending:
            self.calls.append(("owners", tuple(pending)))
            for video_id in pending:
                cache.record(video_id, self.owners.get(video_id))
        return {video_id: cache.get(video_id) for video_id in ids}

    async def resolve_owning_channel(self, video_id: str, cache: VideoChannelCache) -> str | None:
        results = await self.resolve_owning_channels([video_id], cache)
        return results[video_id]


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def engine(gateway: FakeGateway):
    from mylive.engine import ReconciliationEngine

    return ReconciliationEngine(gateway)
