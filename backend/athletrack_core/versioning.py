"""Cache-busting ``?v=`` stamps for signed avatar URLs."""

from __future__ import annotations

import datetime as dt
import math
import re
from typing import Optional, Union

Timestamp = Union[str, int, float]

# Epoch values above this are milliseconds (2e9 seconds is in 2033).
_MILLISECONDS_THRESHOLD = 2_000_000_000

# PostgREST renders timestamptz as "2024-05-01 12:34:56.78901+00": any number of
# fraction digits and an hour-only offset, neither of which fromisoformat reads
# before Python 3.11.
_ISO_PARTS = re.compile(
    r"^(?P<head>\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}(?::\d{2})?)"
    r"(?:\.(?P<fraction>\d+))?"
    r"(?P<offset>[+-]\d{2}(?::?\d{2})?)?$"
)


def _normalize_iso(text: str) -> str:
    match = _ISO_PARTS.match(text)
    if not match:
        return text
    normalized = match.group("head").replace(" ", "T", 1)
    fraction = match.group("fraction")
    if fraction:
        normalized += "." + fraction[:6].ljust(6, "0")
    offset = match.group("offset")
    if offset:
        digits = offset[1:].replace(":", "")
        normalized += f"{offset[0]}{digits[:2]}:{digits[2:] or '00'}"
    return normalized


def epoch_seconds(value: Optional[Timestamp]) -> Optional[int]:
    """Convert an ISO-8601 string or epoch number to whole epoch seconds."""
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        if value > _MILLISECONDS_THRESHOLD:
            return math.floor(value / 1000)
        return math.floor(value)

    text = value.strip()
    if not text:
        return None
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = dt.datetime.fromisoformat(_normalize_iso(text))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return math.floor(parsed.timestamp())


def with_version(url: str, updated_at: Optional[Timestamp] = None) -> str:
    """Append ``v=<epoch seconds>`` to *url*; unchanged when no usable timestamp."""
    if not updated_at:
        return url
    epoch = epoch_seconds(updated_at)
    if not epoch:
        return url
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}v={epoch}"
