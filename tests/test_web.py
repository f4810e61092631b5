from __future__ import annotations

import json

import pytest

pytest.importorskip("sqlalchemy")
pytest.importorskip("sqlmodel")
pytest.importorskip("httpx")

from fastapi.testclient import TestClient

from mylive import db, web
from mylive.models import BroadcastState, Channel, Preferences, Snapshot

from conftest import FakeGateway


@pytest.fixture(autouse=True)
def isolate_database(tmp_path, monkeypatch):
    monkeypatch.setattr(db, "DB_PATH", tmp_path / "mylive.db")
    monkeypatch.setattr(web, "load_youtube_api_key", lambda: None)
    db._engine = None
    db.initialize_database()
    db.save_credential("test-key")
    yield
    db._engine = None


@pytest.fixture
def client(gateway: FakeGateway):
    app = web.create_app(gateway=gateway, poll_interval_seconds=3600)
    with TestClient(app) as test_client:
        yield test_client


def test_home_shows_empty_state(client: TestClient) -> None:
    response = client.get("/")

    assert response.status_code == 200
    assert "No videos yet" in response.text
    assert "MyLive Wall" in response.text


def test_startup_restores_stored_state(gateway: FakeGateway) -> None:
    db.save_snapshot(
        Snapshot(
            videos=["live0000001", "live0000001"],
            channels=[
                Channel("UC1", "One", "live0000001", BroadcastState.LIVE),
            ],
            preferences=Preferences(layout="list"),
        )
    )
    gateway.classify("live0000001", BroadcastState.LIVE, "UC1")
    app = web.create_app(gateway=gateway, poll_interval_seconds=3600)

    with TestClient(app) as test_client:
        state = test_client.get("/api/state").json()
        display = test_client.get("/api/display").json()
        page = test_client.get("/")

    assert state["videos"] == ["live0000001"]
    assert state["channels"][0]["name"] == "One"
    assert state["polling"] is True
    assert display["layout"] == "list"
    assert [entry["video_id"] for entry in display["entries"]] == ["live0000001"]
    assert "youtube.com/embed/live0000001" in page.text
    assert 'class="video-status status-live"' in page.text


def test_add_channel_and_video(client: TestClient, gateway: FakeGateway) -> None:
    gateway.names["UC1"] = "Example"
    gateway.set_upcoming("UC1", "next0000001", "Soon")
    gateway.owners["dQw4w9WgXcQ"] = "UC1"

    response = client.post("/api/channels", json={"channel_id": "UC1", "keywords": "Soon"})
    assert response.status_code == 200
    assert response.json()["channel"]["name"] == "Example"
    assert response.json()["channel"]["bound_video_id"] == "next0000001"

    response = client.post("/api/videos", data={"input": "https://youtu.be/dQw4w9WgXcQ"})
    assert response.status_code == 200
    assert response.json()["video_id"] == "dQw4w9WgXcQ"

    state = client.get("/api/state").json()
    assert state["videos"] == ["next0000001", "dQw4w9WgXcQ"]
    assert state["polling"] is True
    assert db.load_snapshot().videos == ["next0000001", "dQw4w9WgXcQ"]


def test_error_status_codes(client: TestClient, gateway: FakeGateway) -> None:
    assert client.post("/api/channels", json={}).status_code == 400
    assert client.post("/api/videos", data={"input": "not a url"}).status_code == 400
    assert client.post("/api/videos", data={"input": "dQw4w9WgXcQ"}).status_code == 412
    assert client.post("/api/channels/UC404/remove").status_code == 404
    assert client.post("/api/videos/missing0001/remove").status_code == 400

    gateway.set_error("UCbad", "API key not valid")
    response = client.post("/api/channels", json={"channel_id": "UCbad"})
    assert response.status_code == 502
    assert "API key not valid" in response.json()["detail"]

    assert client.post("/api/channels", json={"channel_id": "UC1"}).status_code == 200
    assert client.post("/api/channels", json={"channel_id": "UC1"}).status_code == 409

    response = client.post(
        "/api/channels", content="{not json", headers={"content-type": "application/json"}
    )
    assert response.status_code == 400


def test_remove_video_removes_bound_channel(client: TestClient, gateway: FakeGateway) -> None:
    gateway.set_live("UC1", "live0000001")
    client.post("/api/channels", json={"channel_id": "UC1"})

    response = client.post("/api/videos/live0000001/remove")

    assert response.json() == {"status": "ok", "removed_channels": ["UC1"]}
    state = client.get("/api/state").json()
    assert state["channels"] == []
    assert state["polling"] is False


def test_refresh_and_clear(client: TestClient, gateway: FakeGateway) -> None:
    client.post("/api/channels", json={"channel_id": "UC1"})
    gateway.set_live("UC1", "live0000001")

    response = client.post("/api/refresh")
    assert response.json()["status"] == "ok"
    assert response.json()["checked"] == 1
    assert response.json()["interrupted"] is False
    assert client.get("/api/display").json()["entries"][0]["badge"]["label"] == "LIVE"

    assert client.post("/api/clear").json() == {"status": "ok"}
    state = client.get("/api/state").json()
    assert state["videos"] == []
    assert state["channels"] == []
    assert state["polling"] is False


def test_update_channel_keywords(client: TestClient, gateway: FakeGateway) -> None:
    client.post("/api/channels", json={"channel_id": "UC1"})
    gateway.set_live("UC1", "live0000001", "歌枠")

    response = client.post("/api/channels/UC1/keywords", data={"keywords": "歌、karaoke"})

    channel = response.json()["channel"]
    assert channel["keywords"] == ["歌", "karaoke"]
    assert channel["keywords_text"] == "歌, karaoke"
    assert channel["bound_video_id"] == "live0000001"


def test_settings_form_treats_missing_checkboxes_as_false(client: TestClient) -> None:
    response = client.post(
        "/api/settings",
        data={"poll_interval_minutes": "15", "autoplay": "true", "layout": "pip", "api_key": ""},
    )

    settings = response.json()["settings"]
    assert settings["poll_interval_minutes"] == 15
    assert settings["autoplay"] is True
    assert settings["auto_mute"] is False
    assert settings["show_status_badge"] is False
    assert settings["layout"] == "pip"
    assert settings["has_api_key"] is True
    assert settings["api_key_masked"] == "****-key"
    assert db.fetch_settings(["poll_interval_minutes"]) == {"poll_interval_minutes": "15"}


def test_settings_json_updates_credential(client: TestClient) -> None:
    response = client.post("/api/settings", json={"api_key": "new-secret", "columns": 3})

    settings = response.json()["settings"]
    assert settings["columns"] == 3
    assert settings["autoplay"] is True
    assert settings["api_key_masked"].endswith("cret")
    assert db.load_credential() == "new-secret"

    client.post("/api/settings", json={"api_key": ""})
    assert client.post("/api/refresh").status_code == 412
    assert db.load_credential() is None


def test_export_and_import(client: TestClient, gateway: FakeGateway) -> None:
    gateway.names["UC1"] = "One"
    client.post("/api/channels", json={"channel_id": "UC1", "keywords": "asmr"})

    response = client.get("/api/export")
    assert response.status_code == 200
    assert "attachment" in response.headers["content-disposition"]
    document = response.json()
    assert document["channels"] == [{"channelId": "UC1", "name": "One", "keywordFilter": ["asmr"]}]

    document["channels"].append({"channelId": "UC2", "name": "Two", "keywordFilter": []})
    response = client.post(
        "/api/import",
        files={"file": ("channels.json", json.dumps(document).encode("utf-8"), "application/json")},
    )
    assert response.json() == {"status": "ok", "added": 1, "skipped": 1}

    response = client.post("/api/import", json={"channels": [{"channelId": "UC3"}]})
    assert response.json()["added"] == 1

    response = client.post(
        "/api/import",
        files={"file": ("channels.json", b"not json", "application/json")},
    )
    assert response.status_code == 400
