"""Reconciliation of tracked channels against polled broadcast state.

The engine owns the canonical collections (channels, the tracked video list
and the video -> channel cache). Every structural mutation goes through one of
its methods and finishes with :meth:`ReconciliationEngine.dedup`, which
restores the uniqueness invariants:

* the tracked video list holds each identifier once, in first-seen order;
* no two channels are bound to the same video.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from starlette.concurrency import run_in_threadpool

from .gateway import (
    UNKNOWN,
    Classification,
    MissingCredentialError,
    RemoteStatusGateway,
    VideoChannelCache,
)
from .identifiers import extract_video_id
from .keywords import normalize_keywords
from .models import (
    DEFAULT_CHANNEL_NAME,
    BroadcastState,
    Channel,
    Preferences,
    Snapshot,
    build_export,
    parse_export,
)

__all__ = [
    "DedupReport",
    "DisplayEntry",
    "DisplayList",
    "DuplicateError",
    "EngineError",
    "ImportResult",
    "InvalidInputError",
    "PollReport",
    "PreconditionError",
    "ReconciliationEngine",
    "RemoteApiError",
    "UnknownChannelError",
]


logger = logging.getLogger(__name__)


class EngineError(RuntimeError):
    """Base class for errors reported to the user by the engine."""


class InvalidInputError(EngineError):
    """Raised when user input cannot be used."""


class DuplicateError(InvalidInputError):
    """Raised when the channel or video is already tracked."""


class PreconditionError(EngineError):
    """Raised when an operation cannot start (no API key, no channels...)."""


class UnknownChannelError(PreconditionError):
    """Raised when a channel ID is not tracked."""


class RemoteApiError(EngineError):
    """Raised when the YouTube API reports an error for a user action."""


@dataclass
class DedupReport:
    collapsed: int = 0
    orphaned: list[str] = field(default_factory=list)
    dropped: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.collapsed or self.orphaned or self.dropped)


@dataclass
class PollReport:
    """Summary of a poll cycle (or of a single channel refresh)."""

    checked: int = 0
    changed: bool = False
    removed: list[str] = field(default_factory=list)
    skipped_unknown: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    interrupted: bool = False


@dataclass(frozen=True)
class DisplayEntry:
    video_id: str
    state: BroadcastState
    title: str = ""
    channel_id: str | None = None


@dataclass
class DisplayList:
    """Ordered videos to display.

    ``tracked`` is ``False`` when nothing is tracked at all, which is distinct
    from a tracked set with nothing live or upcoming.
    """

    entries: list[DisplayEntry] = field(default_factory=list)
    tracked: bool = False
    has_channels: bool = False

    def __iter__(self):
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def video_ids(self) -> list[str]:
        return [entry.video_id for entry in self.entries]


@dataclass
class ImportResult:
    added: int = 0
    skipped: int = 0


class ReconciliationEngine:
    """Own the tracked collections and reconcile them with remote state."""

    def __init__(
        self,
        gateway: RemoteStatusGateway,
        *,
        preferences: Preferences | None = None,
        on_change: Callable[[Snapshot], Any] | None = None,
    ):
        self.gateway = gateway
        self.preferences = preferences or Preferences()
        self.owner_cache = VideoChannelCache()
        self._on_change = on_change
        self._channels: list[Channel] = []
        self._videos: list[str] = []
        self._poll_in_flight = False

    # ------------------------------------------------------------------
    # Read-only views

    @property
    def channels(self) -> list[Channel]:
        return [_copy_channel(channel) for channel in self._channels]

    @property
    def videos(self) -> list[str]:
        return list(self._videos)

    @property
    def has_credential(self) -> bool:
        return self.gateway.configured

    @property
    def poll_in_flight(self) -> bool:
        return self._poll_in_flight

    @property
    def should_poll(self) -> bool:
        """Polling is only useful with a credential and at least one channel."""

        return bool(self._channels) and self.has_credential

    def get_channel(self, channel_id: str) -> Channel | None:
        channel = self._find_channel(channel_id)
        if channel is None:
            return None
        return _copy_channel(channel)

    # ------------------------------------------------------------------
    # Snapshot handling

    def snapshot(self) -> Snapshot:
        return Snapshot(
            videos=list(self._videos),
            channels=self.channels,
            preferences=dataclasses.replace(self.preferences),
        )

    def restore(self, snapshot: Snapshot) -> DedupReport:
        """Replace the engine state with *snapshot* and restore invariants."""

        channels: list[Channel] = []
        seen: set[str] = set()
        for channel in snapshot.channels:
            if channel.channel_id in seen:
                logger.info("Dropping duplicate channel entry %s from snapshot", channel.channel_id)
                continue
            seen.add(channel.channel_id)
            channels.append(_copy_channel(channel))

        self._channels = channels
        self._videos = list(snapshot.videos)
        self.preferences = dataclasses.replace(snapshot.preferences)
        # Owners are only learned from the API; a stored binding may be stale.
        return self.dedup()

    async def _persist(self) -> None:
        if self._on_change is None:
            return
        await run_in_threadpool(self._on_change, self.snapshot())

    # ------------------------------------------------------------------
    # Invariants

    def dedup(self) -> DedupReport:
        """Restore uniqueness of tracked videos and channel bindings.

        Channels are walked in order; a later channel bound to a video already
        claimed by an earlier one loses its binding. Safe to call repeatedly.
        """

        report = DedupReport()
        unique = list(dict.fromkeys(self._videos))
        report.collapsed = len(self._videos) - len(unique)
        self._videos = unique

        claimed: set[str] = set()
        for channel in self._channels:
            video_id = channel.bound_video_id
            if not video_id:
                continue
            if video_id in claimed:
                logger.info(
                    "Unbinding %s from channel %s: already bound to an earlier channel",
                    video_id,
                    channel.channel_id,
                )
                channel.unbind()
                report.orphaned.append(video_id)
                continue
            claimed.add(video_id)

        orphaned = set(report.orphaned)
        report.dropped = [
            video_id for video_id in self._videos if video_id in orphaned and video_id not in claimed
        ]
        if report.dropped:
            dropped = set(report.dropped)
            self._videos = [video_id for video_id in self._videos if video_id not in dropped]

        self._videos = list(dict.fromkeys(self._videos))
        if report.collapsed:
            logger.info("Removed %s duplicate video(s)", report.collapsed)
        return report

    # ------------------------------------------------------------------
    # Internal helpers

    def _find_channel(self, channel_id: str) -> Channel | None:
        for channel in self._channels:
            if channel.channel_id == channel_id:
                return channel
        return None

    def _is_tracked(self, channel: Channel) -> bool:
        return any(candidate is channel for candidate in self._channels)

    def _channel_bound_to(self, video_id: str, *, exclude: Channel | None = None) -> Channel | None:
        for channel in self._channels:
            if channel is exclude:
                continue
            if channel.bound_video_id == video_id:
                return channel
        return None

    def _release(self, video_id: str | None, *, exclude: Channel | None = None) -> bool:
        """Drop *video_id* from the tracked list unless another channel claims it."""

        if not video_id or self._channel_bound_to(video_id, exclude=exclude) is not None:
            return False
        if video_id not in self._videos:
            return False
        self._videos = [candidate for candidate in self._videos if candidate != video_id]
        return True

    def _bind(self, channel: Channel, video_id: str, state: BroadcastState) -> None:
        channel.bound_video_id = video_id
        channel.broadcast_state = state
        if video_id not in self._videos:
            self._videos.append(video_id)
        self.owner_cache.record(video_id, channel.channel_id)

    def _require_credential(self) -> None:
        if not self.has_credential:
            raise PreconditionError("Save a YouTube Data API key first.")

    # ------------------------------------------------------------------
    # Polling

    async def run_poll_cycle(self) -> PollReport | None:
        """Refresh every channel in order.

        Returns ``None`` without doing anything if a cycle is already running.
        """

        if self._poll_in_flight:
            logger.warning("Poll cycle already in progress; skipping this tick")
            return None

        report = PollReport()
        if not self.should_poll:
            return report

        self._poll_in_flight = True
        try:
            await self._refresh_all(report)
        except MissingCredentialError:
            report.interrupted = True
        finally:
            self.dedup()
            self._poll_in_flight = False

        if report.interrupted:
            logger.warning("YouTube API key was removed during the poll cycle; stopped early")

        if report.errors:
            logger.warning(
                "Poll cycle finished with errors for %s channel(s): %s",
                len(report.errors),
                ", ".join(sorted(report.errors)),
            )
        await self._persist()
        return report

    async def _refresh_all(self, report: PollReport) -> None:
        for channel in list(self._channels):
            if not self.has_credential:
                raise MissingCredentialError("YouTube API key is not configured")
            if not self._is_tracked(channel):
                continue
            await self._refresh_channel(channel, report)
            self.dedup()

        if self.preferences.auto_remove_ended:
            if not self.has_credential:
                raise MissingCredentialError("YouTube API key is not configured")
            await self._sweep_ended(report)

    async def _refresh_channel(self, channel: Channel, report: PollReport) -> None:
        lookup = await self.gateway.find_active_or_upcoming_broadcast(
            channel.channel_id, list(channel.keyword_filter)
        )
        if not self._is_tracked(channel):
            return
        report.checked += 1

        if lookup.failed:
            report.errors[channel.channel_id] = lookup.error or "Unknown error"
            return

        if lookup.found:
            new_id = lookup.video_id
            if new_id != channel.bound_video_id:
                previous = channel.bound_video_id
                self._bind(channel, new_id, lookup.state)
                self._release(previous)
                logger.info(
                    "Channel %s is now bound to %s (%s)",
                    channel.channel_id,
                    new_id,
                    lookup.state.value,
                )
                report.changed = True
            elif channel.broadcast_state != lookup.state:
                logger.info(
                    "Broadcast %s changed from %s to %s",
                    new_id,
                    channel.broadcast_state.value,
                    lookup.state.value,
                )
                channel.broadcast_state = lookup.state
                report.changed = True
            return

        bound = channel.bound_video_id
        if not bound:
            return

        classification = await self.gateway.classify_video(bound)
        if not self._is_tracked(channel) or channel.bound_video_id != bound:
            return
        if classification.channel_id:
            self.owner_cache.record(bound, classification.channel_id)

        if classification.state is BroadcastState.ENDED:
            if self.preferences.auto_remove_ended:
                channel.unbind()
                self._release(bound)
                report.removed.append(bound)
                logger.info("Removed ended broadcast %s of channel %s", bound, channel.channel_id)
            elif channel.broadcast_state is not BroadcastState.ENDED:
                channel.broadcast_state = BroadcastState.ENDED
            report.changed = True
        elif classification.state is BroadcastState.UNKNOWN:
            logger.info(
                "Skipped %s of channel %s: classification unknown, keeping binding",
                bound,
                channel.channel_id,
            )
            report.skipped_unknown.append(bound)
        elif channel.broadcast_state != classification.state:
            channel.broadcast_state = classification.state
            report.changed = True

    async def _sweep_ended(self, report: PollReport) -> None:
        targets = [video_id for video_id in self._videos if self._channel_bound_to(video_id)]
        if not targets:
            return

        results = await self.gateway.classify_videos(targets)
        for video_id in targets:
            classification = results.get(video_id, UNKNOWN)
            channel = self._channel_bound_to(video_id)
            if channel is None:
                continue
            if classification.state is BroadcastState.ENDED:
                channel.unbind()
                self._videos = [candidate for candidate in self._videos if candidate != video_id]
                if video_id not in report.removed:
                    report.removed.append(video_id)
                report.changed = True
                logger.info("Removed ended broadcast %s - %s", video_id, classification.title)
            elif classification.state is BroadcastState.UNKNOWN:
                if video_id not in report.skipped_unknown:
                    report.skipped_unknown.append(video_id)
                logger.info("Skipped removal check for %s: classification unknown", video_id)
            elif channel.broadcast_state != classification.state:
                channel.broadcast_state = classification.state
                report.changed = True

    # ------------------------------------------------------------------
    # Display

    async def compute_display(self) -> DisplayList:
        """Return the videos to display: live first, then upcoming.

        Owners learned from the classification response are memoized and
        take effect on the next call.
        """

        result = DisplayList(tracked=bool(self._videos), has_channels=bool(self._channels))
        bindings = {
            channel.bound_video_id: channel.channel_id
            for channel in self._channels
            if channel.bound_video_id
        }

        candidates: list[str] = []
        if self.preferences.restrict_to_tracked_channels:
            for video_id in self._videos:
                bound_channel = bindings.get(video_id)
                if bound_channel is None:
                    continue
                if video_id in self.owner_cache and self.owner_cache.get(video_id) != bound_channel:
                    logger.debug(
                        "Excluding %s: owned by %s but bound to %s",
                        video_id,
                        self.owner_cache.get(video_id),
                        bound_channel,
                    )
                    continue
                candidates.append(video_id)
        else:
            candidates = list(self._videos)

        if not candidates:
            return result

        classifications: Mapping[str, Classification] = {}
        if self.has_credential:
            classifications = await self.gateway.classify_videos(candidates)
        else:
            logger.warning("No YouTube API key configured; nothing can be classified")

        live: list[DisplayEntry] = []
        upcoming: list[DisplayEntry] = []
        for video_id in candidates:
            classification = classifications.get(video_id, UNKNOWN)
            if classification.channel_id:
                self.owner_cache.record(video_id, classification.channel_id)
            entry = DisplayEntry(
                video_id=video_id,
                state=classification.state,
                title=classification.title,
                channel_id=bindings.get(video_id) or classification.channel_id,
            )
            if classification.state is BroadcastState.LIVE:
                live.append(entry)
            elif classification.state is BroadcastState.UPCOMING:
                upcoming.append(entry)

        result.entries = live + upcoming
        return result

    # ------------------------------------------------------------------
    # User operations

    async def add_channel(self, channel_id: str, keywords: str | Iterable[str] | None = None) -> Channel:
        """Track a channel, binding its current broadcast when there is one."""

        normalized_id = (channel_id or "").strip()
        if not normalized_id:
            raise InvalidInputError("Channel ID is required.")
        self._require_credential()
        if self._find_channel(normalized_id) is not None:
            raise DuplicateError("This channel is already tracked.")

        channel = await self._register_channel(
            normalized_id, normalize_keywords(keywords), best_effort=False
        )
        await self._persist()
        return _copy_channel(channel)

    async def _register_channel(
        self,
        channel_id: str,
        keywords: list[str],
        *,
        name: str | None = None,
        best_effort: bool,
    ) -> Channel:
        channel = Channel(
            channel_id=channel_id,
            display_name=name or DEFAULT_CHANNEL_NAME,
            keyword_filter=list(keywords),
        )

        if self.has_credential:
            lookup = await self.gateway.find_active_or_upcoming_broadcast(channel_id, keywords)
            if lookup.failed:
                if not best_effort:
                    raise RemoteApiError(f"YouTube API error: {lookup.error}")
                logger.warning("Live lookup for imported channel %s failed: %s", channel_id, lookup.error)
                lookup = None
            fetched_name = await self.gateway.fetch_display_name(channel_id)
            if fetched_name != DEFAULT_CHANNEL_NAME or not name:
                channel.display_name = fetched_name

            if self._find_channel(channel_id) is not None:
                raise DuplicateError("This channel is already tracked.")

            if lookup is not None and lookup.found:
                if self._channel_bound_to(lookup.video_id) is not None:
                    logger.info(
                        "Broadcast %s is already bound to another channel; %s stays unbound",
                        lookup.video_id,
                        channel_id,
                    )
                else:
                    self._bind(channel, lookup.video_id, lookup.state)
            elif lookup is not None:
                logger.info("Channel %s has no live or upcoming broadcast; will keep checking", channel_id)

        self._channels.append(channel)
        self.dedup()
        return channel

    async def remove_channel(self, channel_id: str) -> None:
        channel = self._find_channel(channel_id)
        if channel is None:
            raise UnknownChannelError(f"Channel {channel_id} is not tracked.")
        self._channels = [candidate for candidate in self._channels if candidate is not channel]
        self._release(channel.bound_video_id)
        self.dedup()
        await self._persist()

    async def update_channel_keywords(self, channel_id: str, keywords: str | Iterable[str] | None) -> PollReport:
        """Replace a channel's keyword filter and refresh that channel."""

        channel = self._find_channel(channel_id)
        if channel is None:
            raise UnknownChannelError(f"Channel {channel_id} is not tracked.")
        channel.keyword_filter = normalize_keywords(keywords)

        report = PollReport()
        if self.has_credential:
            try:
                await self._refresh_channel(channel, report)
            except MissingCredentialError:
                report.interrupted = True
                logger.warning("YouTube API key was removed while refreshing %s", channel_id)
            self.dedup()
        await self._persist()
        return report

    async def add_video(self, raw_input: str) -> str:
        """Track a video entered by the user after validating its owner."""

        video_id = extract_video_id(raw_input)
        if not video_id:
            raise InvalidInputError("Enter a valid YouTube URL or video ID.")
        self._require_credential()
        if not self._channels:
            raise PreconditionError("Add a channel before adding videos.")

        owner = await self.gateway.resolve_owning_channel(video_id, self.owner_cache)
        if owner is None:
            raise InvalidInputError("Could not determine which channel published this video.")
        if self._find_channel(owner) is None:
            raise InvalidInputError("This video does not belong to a tracked channel.")
        if video_id in self._videos:
            raise DuplicateError("This video is already tracked.")

        self._videos.append(video_id)
        self.dedup()
        await self._persist()
        return video_id

    async def remove_video(self, video_id: str) -> list[str]:
        """Stop tracking *video_id*; channels bound to it are removed as well.

        Returns the identifiers of the removed channels.
        """

        bound_channels = [channel for channel in self._channels if channel.bound_video_id == video_id]
        if video_id not in self._videos and not bound_channels:
            raise InvalidInputError("This video is not tracked.")

        self._videos = [candidate for candidate in self._videos if candidate != video_id]
        self._channels = [channel for channel in self._channels if channel.bound_video_id != video_id]
        self.dedup()
        await self._persist()
        return [channel.channel_id for channel in bound_channels]

    async def clear_all(self) -> None:
        self._channels = []
        self._videos = []
        await self._persist()

    async def update_preferences(self, values: Mapping[str, Any]) -> Preferences:
        """Apply a settings form; returns the previous preferences."""

        previous = self.preferences
        self.preferences = previous.updated(values)
        await self._persist()
        return previous

    def set_credential(self, api_key: str | None) -> bool:
        """Replace the API key; returns whether it changed."""

        normalized = (api_key or "").strip() or None
        if normalized == self.gateway.api_key:
            return False
        self.gateway.api_key = normalized
        return True

    # ------------------------------------------------------------------
    # Import / export

    def export_channels(self) -> dict[str, Any]:
        return build_export(self._channels)

    async def import_channels(self, payload: Any) -> ImportResult:
        """Add the channels of an export document that are not yet tracked."""

        try:
            entries = parse_export(payload)
        except ValueError as exc:
            raise InvalidInputError(str(exc)) from exc

        result = ImportResult()
        for entry in entries:
            if self._find_channel(entry["channel_id"]) is not None:
                result.skipped += 1
                continue
            try:
                await self._register_channel(
                    entry["channel_id"],
                    entry["keywords"],
                    name=entry["name"],
                    best_effort=True,
                )
            except DuplicateError:
                result.skipped += 1
                continue
            result.added += 1

        if result.added:
            await self._persist()
        logger.info("Imported %s channel(s), skipped %s", result.added, result.skipped)
        return result


def _copy_channel(channel: Channel) -> Channel:
    return dataclasses.replace(channel, keyword_filter=list(channel.keyword_filter))
