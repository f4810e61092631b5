"""Keyword admission filter applied to broadcast titles."""

from __future__ import annotations

import re
from collections.abc import Iterable

__all__ = ["admits", "format_keywords", "normalize_keywords"]


# Commas, the Japanese comma and any whitespace separate tokens.
_SEPARATORS_RE = re.compile(r"[,、，\s]+")


def normalize_keywords(text: str | Iterable[str] | None) -> list[str]:
    """Split *text* into lowercase tokens, dropping empties and duplicates."""

    if text is None:
        return []
    if isinstance(text, str):
        raw_tokens: Iterable[str] = _SEPARATORS_RE.split(text)
    else:
        raw_tokens = (
            piece
            for item in text
            if item is not None
            for piece in _SEPARATORS_RE.split(str(item))
        )

    tokens: list[str] = []
    seen: set[str] = set()
    for raw in raw_tokens:
        token = raw.strip().lower()
        if not token or token in seen:
            continue
        seen.add(token)
        tokens.append(token)
    return tokens


def admits(title: str | None, tokens: Iterable[str]) -> bool:
    """Return whether *title* passes the keyword filter.

    An empty filter admits everything; otherwise at least one token must
    appear in the title (case-insensitive substring match).
    """

    token_list = [token.lower() for token in tokens if token]
    if not token_list:
        return True
    lowered = (title or "").lower()
    return any(token in lowered for token in token_list)


def format_keywords(tokens: Iterable[str]) -> str:
    """Render tokens back into the comma separated form used by forms."""

    return ", ".join(token for token in tokens if token)
