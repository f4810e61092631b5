"""Parse user-supplied YouTube URLs or identifiers into video IDs."""

from __future__ import annotations

import re

__all__ = ["VIDEO_ID_LENGTH", "extract_video_id", "is_video_id"]


VIDEO_ID_LENGTH = 11

_VIDEO_ID_RE = re.compile(r"^[A-Za-z0-9_-]{%d}$" % VIDEO_ID_LENGTH)
# Share links (youtu.be/), legacy /v/ and /u/x/ paths, embed links and watch?v= queries.
_URL_RE = re.compile(
    r"^.*((youtu\.be/)|(v/)|(/u/\w/)|(embed/)|(watch\?))\??v?=?([^#&?]*).*"
)
_LIVE_RE = re.compile(r"youtube\.com/live/([A-Za-z0-9_-]{%d})" % VIDEO_ID_LENGTH)


def is_video_id(value: str) -> bool:
    """Return ``True`` when *value* has the shape of a YouTube video ID."""

    return bool(_VIDEO_ID_RE.match(value))


def extract_video_id(value: str | None) -> str | None:
    """Return the video ID contained in *value*, or ``None`` if there is none.

    Accepts a bare identifier, a share/embed/watch URL or a ``/live/`` URL.
    """

    if value is None:
        return None
    candidate = str(value).strip()
    if not candidate:
        return None

    if is_video_id(candidate):
        return candidate

    match = _URL_RE.match(candidate)
    if match:
        captured = match.group(7)
        if is_video_id(captured):
            return captured

    live_match = _LIVE_RE.search(candidate)
    if live_match:
        return live_match.group(1)

    return None
