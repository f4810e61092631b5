"""Tests for the user-facing engine operations."""

from __future__ import annotations

import pytest

from mylive.engine import (
    DuplicateError,
    InvalidInputError,
    PreconditionError,
    ReconciliationEngine,
    RemoteApiError,
    UnknownChannelError,
)
from mylive.gateway import BroadcastLookup
from mylive.models import BroadcastState, Channel, Preferences, Snapshot

from conftest import FakeGateway


VIDEO = "dQw4w9WgXcQ"


def _bound(channel_id: str, video_id: str) -> Channel:
    return Channel(channel_id, bound_video_id=video_id, broadcast_state=BroadcastState.LIVE)


# add_channel


@pytest.mark.asyncio
async def test_add_channel_binds_current_broadcast(engine, gateway) -> None:
    gateway.names["UC1"] = "Example"
    gateway.set_live("UC1", "live0000001", "ASMR stream")

    channel = await engine.add_channel(" UC1 ", "ASMR, 歌")

    assert channel.channel_id == "UC1"
    assert channel.display_name == "Example"
    assert channel.keyword_filter == ["asmr", "歌"]
    assert channel.bound_video_id == "live0000001"
    assert engine.videos == ["live0000001"]
    assert ("search", "UC1", ("asmr", "歌")) in gateway.calls


@pytest.mark.asyncio
async def test_add_channel_without_broadcast_stays_unbound(engine) -> None:
    channel = await engine.add_channel("UC1")

    assert channel.bound_video_id is None
    assert channel.broadcast_state is BroadcastState.NONE
    assert channel.display_name == "Channel"
    assert engine.should_poll


@pytest.mark.asyncio
async def test_add_channel_validation_order() -> None:
    engine = ReconciliationEngine(FakeGateway(api_key=None))

    with pytest.raises(InvalidInputError):
        await engine.add_channel("   ")
    with pytest.raises(PreconditionError):
        await engine.add_channel("UC1")


@pytest.mark.asyncio
async def test_add_channel_rejects_duplicates(engine) -> None:
    await engine.add_channel("UC1")

    with pytest.raises(DuplicateError):
        await engine.add_channel("UC1")


@pytest.mark.asyncio
async def test_add_channel_reports_api_errors(engine, gateway) -> None:
    gateway.set_error("UC1", "API key not valid")

    with pytest.raises(RemoteApiError, match="API key not valid"):
        await engine.add_channel("UC1")
    assert engine.channels == []


@pytest.mark.asyncio
async def test_add_channel_does_not_steal_bound_broadcast(engine, gateway) -> None:
    engine.restore(Snapshot(videos=["collab00001"], channels=[_bound("UC1", "collab00001")]))
    gateway.broadcasts["UC2"] = BroadcastLookup("collab00001", BroadcastState.LIVE, "Collab")

    channel = await engine.add_channel("UC2")

    assert channel.bound_video_id is None
    assert engine.get_channel("UC1").bound_video_id == "collab00001"


# add_video / remove_video


@pytest.mark.asyncio
async def test_add_video_checks_input_before_preconditions() -> None:
    engine = ReconciliationEngine(FakeGateway(api_key=None))

    with pytest.raises(InvalidInputError):
        await engine.add_video("not a url")
    with pytest.raises(PreconditionError):
        await engine.add_video(VIDEO)


@pytest.mark.asyncio
async def test_add_video_requires_a_channel(engine) -> None:
    with pytest.raises(PreconditionError):
        await engine.add_video(VIDEO)


@pytest.mark.asyncio
async def test_add_video_accepts_video_of_tracked_channel(engine, gateway) -> None:
    engine.restore(Snapshot(channels=[Channel("UC1")]))
    gateway.owners[VIDEO] = "UC1"

    video_id = await engine.add_video(f"https://youtu.be/{VIDEO}")

    assert video_id == VIDEO
    assert engine.videos == [VIDEO]
    with pytest.raises(DuplicateError):
        await engine.add_video(VIDEO)


@pytest.mark.asyncio
async def test_add_video_rejects_untracked_owner(engine, gateway) -> None:
    engine.restore(Snapshot(channels=[Channel("UC1")]))
    gateway.owners[VIDEO] = "UCstranger"

    with pytest.raises(InvalidInputError, match="tracked channel"):
        await engine.add_video(VIDEO)
    assert engine.videos == []


@pytest.mark.asyncio
async def test_add_video_rejects_unresolvable_owner(engine, gateway) -> None:
    engine.restore(Snapshot(channels=[Channel("UC1")]))

    with pytest.raises(InvalidInputError):
        await engine.add_video(VIDEO)
    assert engine.owner_cache.get(VIDEO) is None
    assert VIDEO in engine.owner_cache


@pytest.mark.asyncio
async def test_remove_video_drops_bound_channels(engine) -> None:
    engine.restore(
        Snapshot(videos=["a", "b"], channels=[_bound("UC1", "a"), Channel("UC2")])
    )

    removed = await engine.remove_video("a")

    assert removed == ["UC1"]
    assert engine.videos == ["b"]
    assert [channel.channel_id for channel in engine.channels] == ["UC2"]


@pytest.mark.asyncio
async def test_remove_untracked_video_fails(engine) -> None:
    with pytest.raises(InvalidInputError):
        await engine.remove_video("missing")


# remove_channel / keywords


@pytest.mark.asyncio
async def test_remove_channel_releases_bound_video(engine) -> None:
    engine.restore(Snapshot(videos=["a", "b"], channels=[_bound("UC1", "a")]))

    await engine.remove_channel("UC1")

    assert engine.channels == []
    assert engine.videos == ["b"]
    with pytest.raises(UnknownChannelError):
        await engine.remove_channel("UC1")


@pytest.mark.asyncio
async def test_update_keywords_refreshes_only_that_channel(engine, gateway) -> None:
    engine.restore(Snapshot(channels=[Channel("UC1"), Channel("UC2")]))
    gateway.set_live("UC1", "live0000001")

    report = await engine.update_channel_keywords("UC1", "Karaoke  歌枠")

    channel = engine.get_channel("UC1")
    assert channel.keyword_filter == ["karaoke", "歌枠"]
    assert channel.bound_video_id == "live0000001"
    assert report.checked == 1
    assert [call for call in gateway.calls if call[0] == "search"] == [
        ("search", "UC1", ("karaoke", "歌枠"))
    ]


@pytest.mark.asyncio
async def test_update_keywords_of_unknown_channel(engine) -> None:
    with pytest.raises(UnknownChannelError):
        await engine.update_channel_keywords("UC404", "x")


# settings / clear


@pytest.mark.asyncio
async def test_update_preferences_returns_previous(engine) -> None:
    previous = await engine.update_preferences({"poll_interval_minutes": "10", "layout": "pip"})

    assert previous == Preferences()
    assert engine.preferences.poll_interval_minutes == 10
    assert engine.preferences.layout == "pip"


def test_set_credential_reports_change(engine, gateway) -> None:
    assert not engine.set_credential("test-key")
    assert engine.set_credential(" other ")
    assert gateway.api_key == "other"
    assert engine.set_credential("")
    assert not engine.has_credential


@pytest.mark.asyncio
async def test_clear_all_persists_empty_state(gateway) -> None:
    saved: list[Snapshot] = []
    engine = ReconciliationEngine(gateway, on_change=saved.append)
    engine.restore(Snapshot(videos=["a"], channels=[_bound("UC1", "a")]))

    await engine.clear_all()

    assert engine.videos == []
    assert engine.channels == []
    assert saved[-1].videos == []
    assert saved[-1].channels == []


# import / export


def test_export_lists_channels(engine) -> None:
    engine.restore(Snapshot(channels=[Channel("UC1", "One", keyword_filter=["asmr"])]))

    document = engine.export_channels()

    assert document["version"] == "1.0"
    assert "exportDate" in document
    assert document["channels"] == [{"channelId": "UC1", "name": "One", "keywordFilter": ["asmr"]}]


@pytest.mark.asyncio
async def test_import_adds_new_channels_and_skips_existing(engine, gateway) -> None:
    engine.restore(Snapshot(channels=[Channel("UC1", "One")]))
    gateway.set_error("UC3")
    gateway.set_live("UC2", "live0000002")

    result = await engine.import_channels(
        {
            "version": "1.0",
            "channels": [
                {"channelId": "UC1", "name": "One"},
                {"channelId": "UC2", "name": "Two", "keywordFilter": ["Live"]},
                {"channelId": "UC3", "name": "Three"},
                {"name": "No id"},
            ],
        }
    )

    assert (result.added, result.skipped) == (2, 1)
    assert [channel.channel_id for channel in engine.channels] == ["UC1", "UC2", "UC3"]
    two = engine.get_channel("UC2")
    assert two.display_name == "Two"
    assert two.keyword_filter == ["live"]
    assert two.bound_video_id == "live0000002"
    assert engine.get_channel("UC3").bound_video_id is None


@pytest.mark.asyncio
async def test_import_rejects_invalid_document(engine) -> None:
    with pytest.raises(InvalidInputError):
        await engine.import_channels({"channels": "nope"})
    with pytest.raises(InvalidInputError):
        await engine.import_channels(["UC1"])
