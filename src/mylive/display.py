"""Presentation helpers: embed URLs, status badges and player diffs."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote, urlencode

from .engine import DisplayEntry, DisplayList
from .models import BroadcastState, Preferences

__all__ = ["DisplayDiff", "diff_display", "embed_url", "serialize_display", "status_badge"]


EMBED_BASE_URL = "https://www.youtube.com/embed/"

STATUS_BADGES = {
    BroadcastState.LIVE: {"css_class": "status-live", "label": "LIVE"},
    BroadcastState.UPCOMING: {"css_class": "status-upcoming", "label": "UPCOMING"},
}


@dataclass
class DisplayDiff:
    """Players to create and destroy to move from one render to the next."""

    create: list[str] = field(default_factory=list)
    destroy: list[str] = field(default_factory=list)
    order: list[str] = field(default_factory=list)

    @property
    def unchanged(self) -> bool:
        return not self.create and not self.destroy


def embed_url(video_id: str, preferences: Preferences) -> str:
    """Return the iframe URL honouring the autoplay and auto-mute settings."""

    params = {
        "enablejsapi": "1",
        "autoplay": "1" if preferences.autoplay else "0",
        "mute": "1" if preferences.autoplay and preferences.auto_mute else "0",
    }
    return f"{EMBED_BASE_URL}{quote(video_id, safe='')}?{urlencode(params)}"


def status_badge(state: BroadcastState, preferences: Preferences) -> dict[str, str] | None:
    if not preferences.show_status_badge:
        return None
    badge = STATUS_BADGES.get(state)
    return dict(badge) if badge else None


def diff_display(previous: Iterable[str], entries: Sequence[DisplayEntry] | DisplayList) -> DisplayDiff:
    """Compare the rendered video IDs with a new display list.

    Players whose video is no longer listed are destroyed and new videos get a
    player; the remaining players are kept.
    """

    previous_ids = list(dict.fromkeys(previous))
    order = [entry.video_id for entry in entries]
    current = set(order)
    seen = set(previous_ids)
    return DisplayDiff(
        create=[video_id for video_id in order if video_id not in seen],
        destroy=[video_id for video_id in previous_ids if video_id not in current],
        order=order,
    )


def serialize_display(display: DisplayList, preferences: Preferences) -> dict[str, Any]:
    """Return the JSON document consumed by the home page."""

    return {
        "tracked": display.tracked,
        "has_channels": display.has_channels,
        "layout": preferences.layout,
        "columns": preferences.columns,
        "entries": [
            {
                "video_id": entry.video_id,
                "state": entry.state.value,
                "title": entry.title or entry.video_id,
                "channel_id": entry.channel_id,
                "embed_url": embed_url(entry.video_id, preferences),
                "badge": status_badge(entry.state, preferences),
            }
            for entry in display.entries
        ],
    }
