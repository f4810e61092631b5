"""Domain records shared by the engine, the snapshot store and the web layer."""

from __future__ import annotations

import enum
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .keywords import normalize_keywords

__all__ = [
    "BroadcastState",
    "Channel",
    "DEFAULT_CHANNEL_NAME",
    "EXPORT_VERSION",
    "LAYOUTS",
    "Preferences",
    "Snapshot",
    "build_export",
    "parse_export",
]


DEFAULT_CHANNEL_NAME = "Channel"
EXPORT_VERSION = "1.0"
LAYOUTS = ("grid", "list", "pip")
MIN_POLL_INTERVAL_MINUTES = 1
MIN_COLUMNS = 1
MAX_COLUMNS = 4

_TRUE_VALUES = {"true", "1", "yes", "on"}
_FALSE_VALUES = {"false", "0", "no", "off", ""}


class BroadcastState(str, enum.Enum):
    """Classification of a broadcast."""

    NONE = "none"
    LIVE = "live"
    UPCOMING = "upcoming"
    ENDED = "ended"
    UNKNOWN = "unknown"

    @classmethod
    def coerce(cls, value: Any, default: "BroadcastState | None" = None) -> "BroadcastState":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return default if default is not None else cls.NONE

    @property
    def displayable(self) -> bool:
        return self in (BroadcastState.LIVE, BroadcastState.UPCOMING)


@dataclass
class Channel:
    """A tracked channel and the broadcast currently bound to it."""

    channel_id: str
    display_name: str = DEFAULT_CHANNEL_NAME
    bound_video_id: str | None = None
    broadcast_state: BroadcastState = BroadcastState.NONE
    keyword_filter: list[str] = field(default_factory=list)

    def unbind(self) -> str | None:
        previous, self.bound_video_id = self.bound_video_id, None
        self.broadcast_state = BroadcastState.NONE
        return previous

    def to_dict(self) -> dict[str, Any]:
        return {
            "channelId": self.channel_id,
            "displayName": self.display_name,
            "boundVideoId": self.bound_video_id,
            "broadcastState": self.broadcast_state.value,
            "keywordFilter": list(self.keyword_filter),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Channel | None":
        """Build a channel from stored data, accepting the legacy field names."""

        channel_id = _coerce_str(payload.get("channelId") or payload.get("channel_id"))
        if not channel_id:
            return None
        display_name = _coerce_str(
            payload.get("displayName") or payload.get("display_name") or payload.get("name")
        )
        bound = _coerce_str(
            payload.get("boundVideoId")
            or payload.get("bound_video_id")
            or payload.get("videoId")
        )
        state = BroadcastState.coerce(
            payload.get("broadcastState")
            or payload.get("broadcast_state")
            or payload.get("status")
        )
        if not bound:
            bound = None
            state = BroadcastState.NONE
        return cls(
            channel_id=channel_id,
            display_name=display_name or DEFAULT_CHANNEL_NAME,
            bound_video_id=bound,
            broadcast_state=state,
            keyword_filter=normalize_keywords(
                payload.get("keywordFilter") or payload.get("keyword_filter")
            ),
        )


@dataclass
class Preferences:
    """User preferences controlling polling and display."""

    poll_interval_minutes: int = 5
    autoplay: bool = True
    auto_mute: bool = True
    show_status_badge: bool = True
    restrict_to_tracked_channels: bool = False
    auto_remove_ended: bool = True
    layout: str = "grid"
    columns: int = 2

    # Mapping of snapshot key -> attribute name.
    FIELDS = {
        "pollIntervalMinutes": "poll_interval_minutes",
        "autoplay": "autoplay",
        "autoMute": "auto_mute",
        "showStatusBadge": "show_status_badge",
        "restrictToTrackedChannels": "restrict_to_tracked_channels",
        "autoRemoveEnded": "auto_remove_ended",
        "layout": "layout",
        "columns": "columns",
    }

    def to_dict(self) -> dict[str, Any]:
        return {key: getattr(self, attr) for key, attr in self.FIELDS.items()}

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any] | None) -> "Preferences":
        """Return preferences from *payload*, defaulting each field independently.

        Both the camelCase snapshot keys and the snake_case attribute names are
        accepted, and values may be strings as submitted by HTML forms.
        """

        prefs = cls()
        if not payload:
            return prefs
        return prefs.updated(payload)

    def updated(self, payload: Mapping[str, Any]) -> "Preferences":
        """Return a copy with the recognised keys of *payload* applied."""

        values = self.to_dict()
        for key, attr in self.FIELDS.items():
            if key in payload:
                raw = payload[key]
            elif attr in payload:
                raw = payload[attr]
            else:
                continue
            values[key] = raw

        defaults = type(self)()
        return type(self)(
            poll_interval_minutes=_coerce_int(
                values["pollIntervalMinutes"],
                defaults.poll_interval_minutes,
                minimum=MIN_POLL_INTERVAL_MINUTES,
            ),
            autoplay=_coerce_bool(values["autoplay"], defaults.autoplay),
            auto_mute=_coerce_bool(values["autoMute"], defaults.auto_mute),
            show_status_badge=_coerce_bool(values["showStatusBadge"], defaults.show_status_badge),
            restrict_to_tracked_channels=_coerce_bool(
                values["restrictToTrackedChannels"], defaults.restrict_to_tracked_channels
            ),
            auto_remove_ended=_coerce_bool(values["autoRemoveEnded"], defaults.auto_remove_ended),
            layout=values["layout"] if values["layout"] in LAYOUTS else defaults.layout,
            columns=_coerce_int(
                values["columns"], defaults.columns, minimum=MIN_COLUMNS, maximum=MAX_COLUMNS
            ),
        )


@dataclass
class Snapshot:
    """Persisted engine state; the credential is stored separately."""

    videos: list[str] = field(default_factory=list)
    channels: list[Channel] = field(default_factory=list)
    preferences: Preferences = field(default_factory=Preferences)

    def to_dict(self) -> dict[str, Any]:
        return {
            "videos": list(self.videos),
            "channels": [channel.to_dict() for channel in self.channels],
            "preferences": self.preferences.to_dict(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> "Snapshot":
        if not isinstance(payload, Mapping):
            return cls()

        videos: list[str] = []
        raw_videos = payload.get("videos")
        if isinstance(raw_videos, (list, tuple)):
            videos = [value for value in (_coerce_str(item) for item in raw_videos) if value]

        channels: list[Channel] = []
        raw_channels = payload.get("channels")
        if isinstance(raw_channels, (list, tuple)):
            for item in raw_channels:
                if not isinstance(item, Mapping):
                    continue
                channel = Channel.from_dict(item)
                if channel is not None:
                    channels.append(channel)

        raw_preferences = payload.get("preferences")
        preferences = Preferences.from_mapping(
            raw_preferences if isinstance(raw_preferences, Mapping) else None
        )
        return cls(videos=videos, channels=channels, preferences=preferences)


def build_export(channels: list[Channel], *, exported_at: datetime | None = None) -> dict[str, Any]:
    """Return the channel export document."""

    return {
        "version": EXPORT_VERSION,
        "exportDate": (exported_at or datetime.now(timezone.utc)).isoformat(),
        "channels": [
            {
                "channelId": channel.channel_id,
                "name": channel.display_name,
                "keywordFilter": list(channel.keyword_filter),
            }
            for channel in channels
        ],
    }


def parse_export(payload: Any) -> list[dict[str, Any]]:
    """Return the channel entries of an export document.

    Raises
    ------
    ValueError
        If *payload* is not an export document.
    """

    if not isinstance(payload, Mapping):
        raise ValueError("Import data must be a JSON object")
    raw_channels = payload.get("channels")
    if not isinstance(raw_channels, list):
        raise ValueError("Import data is missing a 'channels' list")

    entries: list[dict[str, Any]] = []
    for item in raw_channels:
        if not isinstance(item, Mapping):
            continue
        channel_id = _coerce_str(item.get("channelId"))
        if not channel_id:
            continue
        entries.append(
            {
                "channel_id": channel_id,
                "name": _coerce_str(item.get("name")) or None,
                "keywords": normalize_keywords(item.get("keywordFilter")),
            }
        )
    return entries


def _coerce_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _coerce_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in _TRUE_VALUES:
            return True
        if normalized in _FALSE_VALUES:
            return False
    return default


def _coerce_int(
    value: Any, default: int, *, minimum: int | None = None, maximum: int | None = None
) -> int:
    if isinstance(value, bool):
        return default
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        return default
    if minimum is not None and number < minimum:
        return default
    if maximum is not None and number > maximum:
        return default
    return number
