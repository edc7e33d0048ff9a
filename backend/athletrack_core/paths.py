"""Avatar storage key helpers."""

from __future__ import annotations

from typing import Optional

_BUCKET_PREFIXES = ("avatar/", "avatars/")


def normalize_avatar_path(path: Optional[str]) -> Optional[str]:
    """Return the storage key for *path* with any bucket-name prefix removed.

    Storage expects ``"<uid>/file.jpg"`` with the bucket passed separately, but
    profile rows written by older clients sometimes carry ``avatar/`` or
    ``avatars/`` in front. Only one prefix is stripped.
    """
    if not path:
        return None
    for prefix in _BUCKET_PREFIXES:
        if path.startswith(prefix):
            return path[len(prefix):]
    return path
