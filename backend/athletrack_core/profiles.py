from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Sequence, Union

from .supabase_rest import SupabaseRequestError, SupabaseRest, in_filter


logger = logging.getLogger(__name__)

AVATAR_COLUMNS = "id,avatar_url,avatar_updated_at"


@dataclass(frozen=True)
class ProfileAvatarRef:
    user_id: str
    avatar_path: Optional[str] = None
    avatar_updated_at: Optional[Union[str, int, float]] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any], id_field: str = "id") -> Optional["ProfileAvatarRef"]:
        user_id = str(row.get(id_field) or "").strip()
        if not user_id:
            return None
        path = row.get("avatar_url")
        updated_at = row.get("avatar_updated_at")
        if isinstance(updated_at, bool) or not isinstance(updated_at, (str, int, float)):
            updated_at = None
        return cls(
            user_id=user_id,
            avatar_path=path if isinstance(path, str) and path else None,
            avatar_updated_at=updated_at,
        )


def _refs(rows: Sequence[Mapping[str, Any]], id_field: str = "id") -> List[ProfileAvatarRef]:
    refs: List[ProfileAvatarRef] = []
    for row in rows:
        ref = ProfileAvatarRef.from_row(row, id_field)
        if ref is not None:
            refs.append(ref)
    return refs


class ProfileDirectory:
    """Permission-scoped reads of avatar columns from the profiles table.

    Row-level security applies, so ``by_ids`` can return fewer rows than asked for.
    """

    def __init__(self, rest: SupabaseRest, table: str = "profiles") -> None:
        self.rest = rest
        self.table = table

    def for_token(self, access_token: str) -> "ProfileDirectory":
        return ProfileDirectory(self.rest.for_token(access_token), self.table)

    async def by_ids(self, user_ids: Sequence[str]) -> List[ProfileAvatarRef]:
        if not user_ids:
            return []
        rows = await self.rest.select(self.table, AVATAR_COLUMNS, filters={"id": in_filter(user_ids)})
        return _refs(rows)

    async def by_id(self, user_id: str) -> Optional[ProfileAvatarRef]:
        rows = await self.rest.select(
            self.table, AVATAR_COLUMNS, filters={"id": f"eq.{user_id}"}, limit=1
        )
        refs = _refs(rows)
        return refs[0] if refs else None

    async def role_of(self, user_id: str) -> Optional[str]:
        rows = await self.rest.select(self.table, "id,role", filters={"id": f"eq.{user_id}"}, limit=1)
        for row in rows:
            role = row.get("role")
            if isinstance(role, str) and role.strip():
                return role.strip().lower()
        return None

    async def page(self, offset: int, limit: int) -> List[ProfileAvatarRef]:
        rows = await self.rest.select(
            self.table,
            AVATAR_COLUMNS,
            filters={"order": "id.asc"},
            offset=offset,
            limit=limit,
        )
        return _refs(rows)


class PrivilegedAvatarLookup:
    """Avatar references through a SECURITY DEFINER RPC that bypasses row-level security."""

    def __init__(self, rest: SupabaseRest, function_name: str = "admin_get_avatars") -> None:
        self.rest = rest
        self.function_name = function_name

    async def fetch(self, user_ids: Sequence[str]) -> List[ProfileAvatarRef]:
        payload = await self.rest.rpc(self.function_name, {"_user_ids": list(user_ids)})
        if not isinstance(payload, list):
            raise SupabaseRequestError(
                f"RPC {self.function_name} returned unexpected payload: {type(payload).__name__}"
            )
        return _refs([row for row in payload if isinstance(row, dict)], id_field="user_id")


class CapabilityProbe:
    """Remembers whether an optional backend capability works.

    ``available`` is ``None`` until the first attempt. Once marked unavailable it
    stays that way for the lifetime of the probe.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self.available: bool | None = None

    @property
    def should_attempt(self) -> bool:
        return self.available is not False

    def mark_available(self) -> None:
        self.available = True

    def mark_unavailable(self) -> None:
        if self.available is not False:
            logger.info("Disabling %s for this process", self.name)
        self.available = False


def avatar_change_from_payload(payload: Mapping[str, Any]) -> Optional[ProfileAvatarRef]:
    """Return the new avatar reference if a profile UPDATE changed the avatar.

    Accepts both realtime ``postgres_changes`` payloads (``new``/``old``) and
    database webhook payloads (``record``/``old_record``).
    """
    new_row = payload.get("new") or payload.get("record")
    old_row = payload.get("old") or payload.get("old_record") or {}
    if not isinstance(new_row, Mapping):
        return None
    if not isinstance(old_row, Mapping):
        old_row = {}

    new_ref = ProfileAvatarRef.from_row(new_row)
    if new_ref is None:
        return None

    old_path = old_row.get("avatar_url")
    old_version = old_row.get("avatar_updated_at")
    if old_path == new_row.get("avatar_url") and old_version == new_row.get("avatar_updated_at"):
        return None
    return new_ref


def old_avatar_path(payload: Mapping[str, Any]) -> Optional[str]:
    old_row = payload.get("old") or payload.get("old_record") or {}
    if not isinstance(old_row, Mapping):
        return None
    path = old_row.get("avatar_url")
    return path if isinstance(path, str) and path else None
