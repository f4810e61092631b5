"""FastAPI application serving the live stream wall."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping

from fastapi import FastAPI, HTTPException, Request
from fastapi.templating import Jinja2Templates
from starlette.concurrency import run_in_threadpool
from starlette.responses import HTMLResponse, JSONResponse, Response

from .db import (
    initialize_database,
    load_credential,
    load_snapshot,
    save_credential,
    save_snapshot,
)
from .display import serialize_display
from .engine import (
    DuplicateError,
    EngineError,
    InvalidInputError,
    PreconditionError,
    ReconciliationEngine,
    RemoteApiError,
    UnknownChannelError,
)
from .gateway import RemoteStatusGateway
from .keywords import format_keywords
from .models import LAYOUTS, Channel, Preferences
from .scheduler import PollScheduler
from .youtube import load_youtube_api_key

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent
templates = Jinja2Templates(directory=str(BASE_DIR / "templates"))

PAGE_TITLE = "MyLive Wall"
BOOLEAN_PREFERENCES = (
    "autoplay",
    "auto_mute",
    "show_status_badge",
    "restrict_to_tracked_channels",
    "auto_remove_ended",
)
STATE_LABELS = {
    "none": "Waiting",
    "live": "Live",
    "upcoming": "Upcoming",
    "ended": "Ended",
    "unknown": "Unknown",
}


def _http_error(exc: EngineError) -> HTTPException:
    if isinstance(exc, DuplicateError):
        status_code = 409
    elif isinstance(exc, UnknownChannelError):
        status_code = 404
    elif isinstance(exc, InvalidInputError):
        status_code = 400
    elif isinstance(exc, PreconditionError):
        status_code = 412
    elif isinstance(exc, RemoteApiError):
        status_code = 502
    else:  # pragma: no cover
        status_code = 500
    return HTTPException(status_code=status_code, detail=str(exc))


def _mask_credential(api_key: str | None) -> str:
    if not api_key:
        return ""
    if len(api_key) <= 4:
        return "*" * len(api_key)
    return "*" * (len(api_key) - 4) + api_key[-4:]


def _channel_content(channel: Channel) -> dict[str, Any]:
    state = channel.broadcast_state.value
    if channel.bound_video_id:
        status_text = f"Current broadcast: {channel.bound_video_id}"
    else:
        status_text = STATE_LABELS["none"]
    return {
        "channel_id": channel.channel_id,
        "name": channel.display_name,
        "bound_video_id": channel.bound_video_id,
        "state": state,
        "state_label": STATE_LABELS.get(state, state),
        "status_text": status_text,
        "keywords": list(channel.keyword_filter),
        "keywords_text": format_keywords(channel.keyword_filter),
    }


def _settings_content(preferences: Preferences, api_key: str | None) -> dict[str, Any]:
    return {
        **{attr: getattr(preferences, attr) for attr in Preferences.FIELDS.values()},
        "has_api_key": bool(api_key),
        "api_key_masked": _mask_credential(api_key),
        "layouts": list(LAYOUTS),
    }


def _form_preferences(values: Mapping[str, Any]) -> dict[str, Any]:
    """Treat unchecked checkboxes (absent from the form) as ``False``."""

    payload = dict(values)
    for key in BOOLEAN_PREFERENCES:
        payload.setdefault(key, "false")
    return payload


async def _read_payload(request: Request) -> tuple[dict[str, Any], bool]:
    """Return the request body as a mapping and whether it was a form."""

    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            payload = await request.json()
        except json.JSONDecodeError as exc:
            raise HTTPException(status_code=400, detail="Invalid JSON payload.") from exc
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="JSON payload must be an object.")
        return payload, False

    form_data = await request.form()
    values: dict[str, Any] = {}
    for key, value in form_data.multi_items():
        if hasattr(value, "filename") and hasattr(value, "file"):
            values[str(key)] = value
        elif isinstance(value, str) or value is None:
            values[str(key)] = value
        else:
            values[str(key)] = str(value)
    return values, True


def _string_field(payload: Mapping[str, Any], name: str) -> str:
    value = payload.get(name)
    if value is None:
        return ""
    return str(value).strip()


def create_app(
    *,
    gateway: RemoteStatusGateway | None = None,
    poll_interval_seconds: float | None = None,
) -> FastAPI:
    """Create a configured FastAPI application instance."""

    initialize_database()
    app = FastAPI(title=PAGE_TITLE)

    engine = ReconciliationEngine(gateway or RemoteStatusGateway(), on_change=save_snapshot)
    scheduler = PollScheduler(engine, interval_seconds=poll_interval_seconds)
    app.state.engine = engine
    app.state.scheduler = scheduler

    @app.on_event("startup")
    async def startup_engine() -> None:
        snapshot = await run_in_threadpool(load_snapshot)
        credential = await run_in_threadpool(load_credential)
        if not credential:
            credential = load_youtube_api_key()
        engine.set_credential(credential)
        report = engine.restore(snapshot)
        if report.changed:
            logger.info(
                "Restored snapshot after removing %s duplicate video(s) and %s duplicate binding(s)",
                report.collapsed,
                len(report.orphaned),
            )
        scheduler.sync()

    @app.on_event("shutdown")
    async def shutdown_engine() -> None:
        await scheduler.stop()
        await scheduler.wait_idle()
        await run_in_threadpool(save_snapshot, engine.snapshot())

    @app.get("/", response_class=HTMLResponse, name="home")
    async def home(request: Request) -> HTMLResponse:
        display = await engine.compute_display()
        return templates.TemplateResponse(
            request,
            "home.html",
            {
                "page_title": PAGE_TITLE,
                "display": serialize_display(display, engine.preferences),
                "channels": [_channel_content(channel) for channel in engine.channels],
                "settings": _settings_content(engine.preferences, engine.gateway.api_key),
            },
        )

    @app.get("/api/display", name="get_display")
    async def get_display() -> dict[str, Any]:
        display = await engine.compute_display()
        return serialize_display(display, engine.preferences)

    @app.get("/api/state", name="get_state")
    async def get_state() -> dict[str, Any]:
        return {
            "channels": [_channel_content(channel) for channel in engine.channels],
            "videos": engine.videos,
            "settings": _settings_content(engine.preferences, engine.gateway.api_key),
            "polling": scheduler.running,
        }

    @app.post("/api/videos", name="add_video")
    async def add_video(request: Request) -> dict[str, Any]:
        payload, _ = await _read_payload(request)
        raw_input = _string_field(payload, "input") or _string_field(payload, "video_id")
        if not raw_input:
            raise HTTPException(status_code=400, detail="Video URL or ID is required.")
        try:
            video_id = await engine.add_video(raw_input)
        except EngineError as exc:
            raise _http_error(exc) from exc
        return {"status": "ok", "video_id": video_id}

    @app.post("/api/videos/{video_id}/remove", name="remove_video")
    async def remove_video(video_id: str) -> dict[str, Any]:
        try:
            removed_channels = await engine.remove_video(video_id.strip())
        except EngineError as exc:
            raise _http_error(exc) from exc
        scheduler.sync()
        return {"status": "ok", "removed_channels": removed_channels}

    @app.post("/api/channels", name="add_channel")
    async def add_channel(request: Request) -> dict[str, Any]:
        payload, _ = await _read_payload(request)
        channel_id = _string_field(payload, "channel_id")
        if not channel_id:
            raise HTTPException(status_code=400, detail="Channel ID is required.")
        try:
            channel = await engine.add_channel(channel_id, _string_field(payload, "keywords"))
        except EngineError as exc:
            raise _http_error(exc) from exc
        scheduler.sync()
        return {"status": "ok", "channel": _channel_content(channel)}

    @app.post("/api/channels/{channel_id}/remove", name="remove_channel")
    async def remove_channel(channel_id: str) -> dict[str, str]:
        try:
            await engine.remove_channel(channel_id)
        except EngineError as exc:
            raise _http_error(exc) from exc
        scheduler.sync()
        return {"status": "ok"}

    @app.post("/api/channels/{channel_id}/keywords", name="update_channel_keywords")
    async def update_channel_keywords(channel_id: str, request: Request) -> dict[str, Any]:
        payload, _ = await _read_payload(request)
        try:
            report = await engine.update_channel_keywords(
                channel_id, _string_field(payload, "keywords")
            )
        except EngineError as exc:
            raise _http_error(exc) from exc
        channel = engine.get_channel(channel_id)
        return {
            "status": "ok",
            "channel": _channel_content(channel) if channel else None,
            "errors": report.errors,
        }

    @app.post("/api/refresh", name="refresh")
    async def refresh() -> dict[str, Any]:
        if not engine.has_credential:
            raise HTTPException(status_code=412, detail="Save a YouTube Data API key first.")
        report = await engine.run_poll_cycle()
        if report is None:
            return {"status": "skipped"}
        return {
            "status": "ok",
            "checked": report.checked,
            "removed": report.removed,
            "skipped_unknown": report.skipped_unknown,
            "errors": report.errors,
            "interrupted": report.interrupted,
        }

    @app.post("/api/clear", name="clear_all")
    async def clear_all() -> dict[str, str]:
        await engine.clear_all()
        await scheduler.stop()
        return {"status": "ok"}

    @app.get("/api/settings", name="get_settings")
    async def get_settings() -> dict[str, Any]:
        return _settings_content(engine.preferences, engine.gateway.api_key)

    @app.post("/api/settings", name="save_settings")
    async def save_settings(request: Request) -> dict[str, Any]:
        payload, is_form = await _read_payload(request)
        api_key = payload.pop("api_key", None)
        if is_form:
            payload = _form_preferences(payload)
            # An empty password field keeps the stored key.
            if api_key is not None and not str(api_key).strip():
                api_key = None

        previous = await engine.update_preferences(payload)
        credential_changed = False
        if api_key is not None:
            credential_changed = engine.set_credential(str(api_key))
            if credential_changed:
                await run_in_threadpool(save_credential, engine.gateway.api_key)

        interval_changed = previous.poll_interval_minutes != engine.preferences.poll_interval_minutes
        if interval_changed and scheduler.running:
            scheduler.start()
        scheduler.sync()
        if credential_changed and engine.should_poll:
            scheduler.trigger()

        return {
            "status": "ok",
            "settings": _settings_content(engine.preferences, engine.gateway.api_key),
        }

    @app.get("/api/export", name="export_channels")
    async def export_channels() -> Response:
        document = engine.export_channels()
        filename = f"mylive-channels-{datetime.now(timezone.utc):%Y-%m-%d}.json"
        return JSONResponse(
            document,
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @app.post("/api/import", name="import_channels")
    async def import_channels(request: Request) -> dict[str, Any]:
        payload, is_form = await _read_payload(request)
        document: Any = payload
        if is_form:
            upload = payload.get("file")
            if upload is None or not hasattr(upload, "read"):
                raise HTTPException(status_code=400, detail="Choose an export file to import.")
            raw = await upload.read()
            try:
                document = json.loads(raw.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError) as exc:
                raise HTTPException(status_code=400, detail="The file is not valid JSON.") from exc

        try:
            result = await engine.import_channels(document)
        except EngineError as exc:
            raise _http_error(exc) from exc
        scheduler.sync()
        return {"status": "ok", "added": result.added, "skipped": result.skipped}

    return app
