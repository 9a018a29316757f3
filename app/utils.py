"""Utility helpers for the NeedleDrop service."""

from __future__ import annotations

import base64
import math
import re
from datetime import datetime, timezone
from typing import Any


DISAMBIGUATION_RE = re.compile(r"\s+\(\d+\)$")


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime, as stored by the DB."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def b64url_encode(data: bytes) -> str:
    """Encode bytes as unpadded base64url text."""

    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(value: str) -> bytes:
    """Decode unpadded base64url text, raising ``ValueError`` on bad input."""

    padding = "=" * (-len(value) % 4)
    try:
        return base64.urlsafe_b64decode((value + padding).encode("ascii"))
    except (UnicodeEncodeError, ValueError) as exc:
        raise ValueError("Invalid base64url payload") from exc


def coerce_count(value: Any, *, minimum: int = 0, maximum: int = 9_999) -> int:
    """Floor ``value`` to an int within ``[minimum, maximum]``; junk becomes 0."""

    if isinstance(value, bool):
        number = 0.0
    elif isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            number = 0.0
    else:
        number = 0.0
    if not math.isfinite(number):
        number = 0.0
    return max(minimum, min(maximum, math.floor(number)))


def strip_disambiguation(name: str) -> str:
    """Remove the ``" (2)"`` suffix Discogs appends to duplicate artist names."""

    return DISAMBIGUATION_RE.sub("", name).strip()


def parse_duration(duration: str | None) -> int:
    """Convert ``m:ss`` or ``h:mm:ss`` into seconds; unparseable parts count as 0."""

    if not duration:
        return 0
    parts: list[int] = []
    for part in duration.split(":"):
        try:
            parts.append(int(part))
        except ValueError:
            parts.append(0)
    if len(parts) == 2:
        return parts[0] * 60 + parts[1]
    if len(parts) == 3:
        return parts[0] * 3600 + parts[1] * 60 + parts[2]
    return 0


def format_runtime(total_seconds: int) -> str:
    """Render seconds as ``m:ss`` or an empty string for zero."""

    if total_seconds <= 0:
        return ""
    minutes, seconds = divmod(total_seconds, 60)
    return f"{minutes}:{seconds:02d}"
