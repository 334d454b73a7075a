"""Shared helpers for storage backends."""

from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone

_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


def dt_to_str(dt: datetime) -> str:
    return dt.isoformat()


def str_to_dt(s: str) -> datetime:
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def safe_filename(conversation_id: str) -> str:
    """Filesystem-safe stem for a conversation id."""
    stem = _UNSAFE_FILENAME_CHARS.sub("_", conversation_id).strip(".")
    return stem or "_"


def conversation_stem(conversation_id: str) -> str:
    """Unique filename stem: the sanitized id plus a short digest of the raw id.

    Ids that sanitize to the same text (``chat/1`` and ``chat_1``) still get
    distinct files.
    """
    digest = hashlib.sha1(conversation_id.encode("utf-8")).hexdigest()[:10]
    return f"{safe_filename(conversation_id)[:80]}-{digest}"
