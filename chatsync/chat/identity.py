"""Conversation id resolution from navigation URLs and payload fields."""

from __future__ import annotations

import re
from collections.abc import Mapping
from functools import lru_cache
from typing import Any
from urllib.parse import urlparse

DEFAULT_PATH_PREFIX = "/c/"


@lru_cache(maxsize=8)
def _path_pattern(prefix: str) -> re.Pattern[str]:
    return re.compile(re.escape(prefix) + r"([a-fA-F0-9-]+)")


def resolve_url(url: str, prefix: str = DEFAULT_PATH_PREFIX) -> str | None:
    """Return the conversation id in *url*'s path, or None.

    Accepts absolute URLs as well as bare paths (``/c/abc123``).
    """
    if not isinstance(url, str) or not url:
        return None
    path = urlparse(url).path or url
    match = _path_pattern(prefix).search(path)
    if match is None:
        return None
    return match.group(1)


def resolve_payload(payload: Mapping[str, Any] | None) -> str | None:
    """Return the explicit ``conversation_id`` of a request/response body."""
    if not isinstance(payload, Mapping):
        return None
    value = payload.get("conversation_id")
    if isinstance(value, str) and value:
        return value
    return None


def resolve(source: str | Mapping[str, Any] | None, prefix: str = DEFAULT_PATH_PREFIX) -> str | None:
    """Resolve a conversation id from a URL string or a payload mapping."""
    if isinstance(source, str):
        return resolve_url(source, prefix)
    return resolve_payload(source)
