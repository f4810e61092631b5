"""SQLite helpers for persisting the tracked channels, videos and settings."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Iterable

from sqlalchemy import CheckConstraint, Column, Text, delete
from sqlalchemy.engine import Engine
from sqlmodel import Field, Session, SQLModel, create_engine, select

from .models import BroadcastState, Preferences, Snapshot

DB_PATH = Path.cwd() / "data" / "mylive.db"

CREDENTIAL_KEY = "youtube_api_key"
PREFERENCE_KEYS = tuple(Preferences.FIELDS.values())

_engine: Engine | None = None


def _get_engine() -> Engine:
    """Create (or reuse) the SQLite engine."""

    global _engine
    if _engine is None:
        DB_PATH.parent.mkdir(parents=True, exist_ok=True)
        _engine = create_engine(
            f"sqlite:///{DB_PATH}",
            echo=False,
            connect_args={"check_same_thread": False},
        )
    return _engine


class TrackedVideo(SQLModel, table=True):
    """A video identifier in the tracked set."""

    __tablename__ = "tracked_videos"

    video_id: str = Field(primary_key=True)
    position: int = Field(nullable=False, index=True)


class TrackedChannel(SQLModel, table=True):
    """SQLModel representation of a tracked channel."""

    __tablename__ = "channels"
    __table_args__ = (
        CheckConstraint(
            "broadcast_state IN ('none', 'live', 'upcoming', 'ended', 'unknown')",
            name="ck_channels_broadcast_state",
        ),
    )

    channel_id: str = Field(primary_key=True)
    position: int = Field(nullable=False, index=True)
    display_name: str | None = None
    bound_video_id: str | None = Field(default=None, index=True)
    broadcast_state: str = Field(default=BroadcastState.NONE.value, nullable=False)
    keyword_filter: str = Field(
        default="[]",
        sa_column=Column("keyword_filter", Text, nullable=False),
    )


class Setting(SQLModel, table=True):
    """Application-level key/value setting."""

    __tablename__ = "settings"

    key: str = Field(primary_key=True)
    value: str = Field(sa_column=Column("value", Text, nullable=False))


def initialize_database() -> None:
    """Ensure the channel, video and settings tables exist."""

    engine = _get_engine()
    SQLModel.metadata.create_all(engine)


def fetch_settings(keys: Iterable[str] | None = None) -> dict[str, str]:
    """Retrieve stored application settings as a mapping of key to value."""

    engine = _get_engine()
    with Session(engine) as session:
        statement = select(Setting)
        key_list: list[str] | None = None
        if keys is not None:
            key_list = []
            for key in keys:
                if not isinstance(key, str):
                    key = str(key)
                normalized_key = key.strip()
                if normalized_key:
                    key_list.append(normalized_key)
            if not key_list:
                return {}
            statement = statement.where(Setting.key.in_(key_list))

        results = session.exec(statement)
        return {setting.key: setting.value for setting in results}


def store_settings(settings: dict[str, Any]) -> None:
    """Persist the provided settings to the database."""

    if not settings:
        return

    engine = _get_engine()
    with Session(engine) as session:
        _write_settings(session, settings)
        session.commit()


def _write_settings(session: Session, settings: dict[str, Any]) -> None:
    for key, value in settings.items():
        normalized_key = str(key).strip()
        if not normalized_key:
            continue

        if value is None:
            value_str = ""
        elif isinstance(value, bool):
            value_str = "true" if value else "false"
        else:
            value_str = str(value).strip()

        existing = session.get(Setting, normalized_key)
        if existing:
            existing.value = value_str
        else:
            session.add(Setting(key=normalized_key, value=value_str))


def load_credential() -> str | None:
    """Return the stored YouTube API key, if any."""

    value = fetch_settings([CREDENTIAL_KEY]).get(CREDENTIAL_KEY, "").strip()
    return value or None


def save_credential(api_key: str | None) -> None:
    """Store (or clear, when empty) the YouTube API key."""

    store_settings({CREDENTIAL_KEY: api_key or ""})


def save_snapshot(snapshot: Snapshot) -> None:
    """Replace the stored channels, videos and preferences with *snapshot*."""

    video_rows = [
        TrackedVideo(video_id=video_id, position=index)
        for index, video_id in enumerate(dict.fromkeys(snapshot.videos))
    ]
    channel_rows: list[TrackedChannel] = []
    seen_channels: set[str] = set()
    for channel in snapshot.channels:
        if channel.channel_id in seen_channels:
            continue
        seen_channels.add(channel.channel_id)
        channel_rows.append(
            TrackedChannel(
                channel_id=channel.channel_id,
                position=len(channel_rows),
                display_name=channel.display_name,
                bound_video_id=channel.bound_video_id,
                broadcast_state=channel.broadcast_state.value,
                keyword_filter=json.dumps(list(channel.keyword_filter), ensure_ascii=False),
            )
        )
    preferences = snapshot.preferences.to_dict()
    preference_settings = {
        attr: preferences[key] for key, attr in Preferences.FIELDS.items()
    }

    engine = _get_engine()
    with Session(engine) as session:
        session.exec(delete(TrackedVideo))
        session.exec(delete(TrackedChannel))
        if video_rows:
            session.add_all(video_rows)
        if channel_rows:
            session.add_all(channel_rows)
        _write_settings(session, preference_settings)
        session.commit()


def load_snapshot() -> Snapshot:
    """Return the stored snapshot; missing parts fall back to defaults."""

    engine = _get_engine()
    with Session(engine) as session:
        videos = session.exec(select(TrackedVideo).order_by(TrackedVideo.position)).all()
        channels = session.exec(select(TrackedChannel).order_by(TrackedChannel.position)).all()
        settings = session.exec(select(Setting).where(Setting.key.in_(PREFERENCE_KEYS))).all()

        payload: dict[str, Any] = {
            "videos": [row.video_id for row in videos],
            "channels": [
                {
                    "channelId": row.channel_id,
                    "displayName": row.display_name,
                    "boundVideoId": row.bound_video_id,
                    "broadcastState": row.broadcast_state,
                    "keywordFilter": _load_keyword_list(row.keyword_filter),
                }
                for row in channels
            ],
            "preferences": {setting.key: setting.value for setting in settings},
        }
    return Snapshot.from_dict(payload)


def _load_keyword_list(value: str | None) -> list[str]:
    if not value:
        return []
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        return []
    if isinstance(parsed, list):
        return [str(item) for item in parsed if item]
    return []
