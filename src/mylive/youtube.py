"""Helpers for interacting with the YouTube Data API."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterable
from pathlib import Path
from typing import Any
import urllib.error
import urllib.parse
import urllib.request

from starlette.concurrency import run_in_threadpool


logger = logging.getLogger(__name__)

API_BASE_URL = "https://www.googleapis.com/youtube/v3"
SEARCH_MAX_RESULTS = 10
VIDEOS_BATCH_SIZE = 50  # Maximum number of video IDs per API call
REQUEST_TIMEOUT = 15


class YouTubeApiError(RuntimeError):
    """Raised when the YouTube API answers with an error response."""

    def __init__(self, status_code: int, message: str, *, reason: str | None = None):
        super().__init__(f"YouTube API error ({status_code}): {message}")
        self.status_code = status_code
        self.message = message
        self.reason = reason


class YouTubeTransportError(RuntimeError):
    """Raised when the YouTube API cannot be reached or returns garbage."""


def load_youtube_api_key() -> str | None:
    """Load the YouTube API key from the environment or helper file."""

    key = os.environ.get("YOUTUBE_API_KEY")
    if key:
        stripped = key.strip()
        if stripped:
            return stripped

    key_path = Path.cwd() / ".youtube-apikey"
    if key_path.exists():
        file_key = key_path.read_text(encoding="utf-8").strip()
        if file_key:
            return file_key

    return None


def _parse_api_error(status_code: int, body: str, fallback: str) -> YouTubeApiError:
    message = fallback
    reason: str | None = None
    try:
        payload = json.loads(body) if body else None
    except json.JSONDecodeError:
        payload = None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            message = str(error.get("message") or message)
            errors = error.get("errors")
            if isinstance(errors, list) and errors and isinstance(errors[0], dict):
                reason = errors[0].get("reason")
    return YouTubeApiError(status_code, message, reason=reason)


def _youtube_api_request(endpoint: str, params: dict[str, str]) -> tuple[str, dict[str, Any]]:
    query = urllib.parse.urlencode(params)
    url = f"{API_BASE_URL}/{endpoint}?{query}"
    try:
        with urllib.request.urlopen(url, timeout=REQUEST_TIMEOUT) as response:
            charset = response.headers.get_content_charset("utf-8")
            payload = response.read().decode(charset)
    except urllib.error.HTTPError as exc:  # pragma: no cover - network response paths
        try:
            error_body = exc.read().decode("utf-8", "ignore")
        except Exception:  # pragma: no cover
            error_body = ""
        raise _parse_api_error(exc.code, error_body, str(exc.reason)) from exc
    except (urllib.error.URLError, TimeoutError, OSError) as exc:  # pragma: no cover - network
        reason = getattr(exc, "reason", exc)
        raise YouTubeTransportError(f"Failed to contact YouTube API: {reason}") from exc

    try:
        data = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise YouTubeTransportError("Invalid response from YouTube API") from exc
    if not isinstance(data, dict):
        raise YouTubeTransportError("Unexpected response shape from YouTube API")

    # Some proxies return 200 with an error body.
    error = data.get("error")
    if isinstance(error, dict):
        raise _parse_api_error(int(error.get("code") or 400), payload, "Unknown error")
    return url, data


async def search_channel_broadcasts(
    channel_id: str,
    event_type: str,
    api_key: str,
    *,
    max_results: int = SEARCH_MAX_RESULTS,
) -> tuple[str, dict[str, Any]]:
    """Search a channel for ``live`` or ``upcoming`` broadcasts."""

    params = {
        "part": "snippet",
        "channelId": channel_id,
        "eventType": event_type,
        "type": "video",
        "maxResults": str(max_results),
        "key": api_key,
    }
    if event_type == "upcoming":
        params["order"] = "date"
    return await run_in_threadpool(_youtube_api_request, "search", params)


async def fetch_youtube_channels(
    channel_id: str, api_key: str
) -> tuple[str, dict[str, Any]]:
    """Fetch the snippet of a YouTube channel."""

    params = {
        "part": "snippet",
        "id": channel_id,
        "key": api_key,
    }
    return await run_in_threadpool(_youtube_api_request, "channels", params)


async def fetch_youtube_videos(
    video_ids: Iterable[str], api_key: str
) -> list[dict[str, Any]]:
    """Fetch snippet and live streaming details for multiple videos."""

    ids: list[str] = []
    for video_id in video_ids:
        if video_id and video_id not in ids:
            ids.append(video_id)
    if not ids:
        return []

    items: list[dict[str, Any]] = []
    for index in range(0, len(ids), VIDEOS_BATCH_SIZE):
        chunk = ids[index : index + VIDEOS_BATCH_SIZE]
        params = {
            "part": "snippet,liveStreamingDetails",
            "id": ",".join(chunk),
            "key": api_key,
        }
        _, data = await run_in_threadpool(_youtube_api_request, "videos", params)
        items.extend(item for item in data.get("items") or [] if isinstance(item, dict))
    return items


__all__ = [
    "YouTubeApiError",
    "YouTubeTransportError",
    "fetch_youtube_channels",
    "fetch_youtube_videos",
    "load_youtube_api_key",
    "search_channel_broadcasts",
]
