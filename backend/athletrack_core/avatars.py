"""Signed avatar URL resolution for profile pictures in the private avatar bucket.

Everything here is best-effort: a missing or unsignable avatar resolves to an
empty result and the caller renders its placeholder.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .cache import SignedUrlCache
from .paths import normalize_avatar_path
from .profiles import (
    CapabilityProbe,
    PrivilegedAvatarLookup,
    ProfileAvatarRef,
    ProfileDirectory,
    avatar_change_from_payload,
    old_avatar_path,
)
from .settings import DEFAULT_TTL_SECONDS, AvatarSettings
from .storage import AvatarSigner, build_signer
from .supabase_rest import SignedObject, SupabaseRequestError, SupabaseRest
from .versioning import Timestamp, with_version


logger = logging.getLogger(__name__)


class ResolutionStatus(str, Enum):
    RESOLVED = "resolved"
    NOT_FOUND = "not_found"
    UNAVAILABLE = "unavailable"


class LookupSource(str, Enum):
    PRIVILEGED = "privileged"
    DIRECT = "direct"
    NONE = "none"


@dataclass(frozen=True)
class SignResult:
    status: ResolutionStatus
    url: str = ""
    cached: bool = False

    @property
    def resolved(self) -> bool:
        return self.status is ResolutionStatus.RESOLVED


@dataclass
class AvatarBatch:
    urls: Dict[str, str] = field(default_factory=dict)
    source: LookupSource = LookupSource.NONE


@dataclass(frozen=True)
class _PendingAvatar:
    user_id: str
    path: str
    version: Optional[Timestamp]


class AvatarService:
    """Resolves avatar storage paths and user ids to signed, version-stamped URLs.

    One instance per process owns the signed-URL cache and the privileged
    lookup probe; tests build their own instances with fake collaborators.
    Requests made for a signed-in user go through ``for_caller``, which shares
    the cache and probe but reads and signs with that user's token.
    """

    def __init__(
        self,
        signer: AvatarSigner,
        directory: ProfileDirectory,
        privileged: PrivilegedAvatarLookup | None,
        *,
        cache: SignedUrlCache | None = None,
        probe: CapabilityProbe | None = None,
        cache_scope: Optional[str] = None,
        sign_chunk_size: int = 200,
        page_size: int = 1000,
        default_ttl: int = DEFAULT_TTL_SECONDS,
    ) -> None:
        self.signer = signer
        self.directory = directory
        self.privileged = privileged
        self.cache = cache if cache is not None else SignedUrlCache()
        self.probe = probe if probe is not None else CapabilityProbe("privileged avatar lookup")
        self.cache_scope = cache_scope
        self.sign_chunk_size = sign_chunk_size
        self.page_size = page_size
        self.default_ttl = default_ttl

    @classmethod
    def from_settings(cls, settings: AvatarSettings) -> "AvatarService":
        rest = SupabaseRest(settings)
        return cls(
            build_signer(rest, settings),
            ProfileDirectory(rest, settings.profiles_table),
            PrivilegedAvatarLookup(rest, settings.admin_rpc),
            cache=SignedUrlCache(settings.cache_size),
            probe=CapabilityProbe(f"RPC {settings.admin_rpc}"),
            sign_chunk_size=settings.sign_chunk_size,
            page_size=settings.page_size,
            default_ttl=settings.default_ttl,
        )

    def for_caller(self, access_token: str, user_id: str, *, allow_privileged: bool = False) -> "AvatarService":
        """View of this service that reads rows and signs paths as one user.

        Cached URLs are keyed by *user_id* so a URL signed for one user is never
        served to another. The privileged lookup stays on the service key and is
        only offered when *allow_privileged* is set.
        """
        return AvatarService(
            self.signer.for_token(access_token),
            self.directory.for_token(access_token),
            self.privileged if allow_privileged else None,
            cache=self.cache,
            probe=self.probe,
            cache_scope=user_id,
            sign_chunk_size=self.sign_chunk_size,
            page_size=self.page_size,
            default_ttl=self.default_ttl,
        )

    async def caller_has_role(self, user_id: str, roles: Sequence[str]) -> bool:
        try:
            role = await self.directory.role_of(user_id)
        except SupabaseRequestError as exc:
            logger.warning("Supabase role lookup for %s failed (%s)", user_id, exc)
            return False
        return role is not None and role in roles

    def _ttl(self, ttl: Optional[int]) -> int:
        return self.default_ttl if ttl is None else ttl

    def _cache_key(self, path: str, ttl: int) -> str:
        return SignedUrlCache.key(path, ttl, self.cache_scope)

    # ------------------------------------------------------------------
    # Single path

    async def resolve_signed_avatar(self, path: Optional[str], ttl: Optional[int] = None) -> SignResult:
        """Sign one avatar path, serving repeat requests from the cache.

        The returned URL carries no ``v=`` stamp.
        """
        ttl = self._ttl(ttl)
        normalized = normalize_avatar_path(path)
        if not normalized:
            return SignResult(ResolutionStatus.NOT_FOUND)

        cache_key = self._cache_key(normalized, ttl)
        hit = self.cache.get(cache_key)
        if hit:
            return SignResult(ResolutionStatus.RESOLVED, hit, cached=True)

        try:
            url = await self.signer.sign(normalized, ttl)
        except SupabaseRequestError as exc:
            logger.warning("Supabase avatar signing failed for %s (%s)", normalized, exc)
            return SignResult(ResolutionStatus.UNAVAILABLE)
        if not url:
            return SignResult(ResolutionStatus.UNAVAILABLE)

        self.cache.set(cache_key, url)
        return SignResult(ResolutionStatus.RESOLVED, url)

    async def get_signed_avatar(self, path: Optional[str], ttl: Optional[int] = None) -> str:
        """Signed URL for *path*, or ``""`` when there is no avatar to show."""
        result = await self.resolve_signed_avatar(path, ttl)
        return result.url

    async def get_versioned_avatar_src(
        self,
        path: Optional[str],
        updated_at: Optional[Timestamp] = None,
        ttl: Optional[int] = None,
    ) -> Optional[str]:
        """Signed URL stamped with ``updated_at`` for use as an ``<img src>``."""
        result = await self.resolve_signed_avatar(path, ttl)
        if not result.url:
            return None
        return with_version(result.url, updated_at)

    def invalidate_avatar(self, path: Optional[str]) -> None:
        self.cache.invalidate(path)

    # ------------------------------------------------------------------
    # Bulk

    async def bulk_sign_from_profiles(
        self, rows: Sequence[ProfileAvatarRef], ttl: Optional[int] = None
    ) -> Dict[str, str]:
        """Map user id to a stamped signed URL for every row with a usable path."""
        ttl = self._ttl(ttl)
        pending: List[_PendingAvatar] = []
        for row in rows:
            normalized = normalize_avatar_path(row.avatar_path)
            if normalized:
                pending.append(_PendingAvatar(row.user_id, normalized, row.avatar_updated_at))
        if not pending:
            return {}

        if self.signer.supports_bulk:
            return await self._bulk_sign_chunked(pending, ttl)

        results = await asyncio.gather(
            *(self.resolve_signed_avatar(item.path, ttl) for item in pending)
        )
        out: Dict[str, str] = {}
        for item, result in zip(pending, results):
            if result.url:
                out[item.user_id] = with_version(result.url, item.version)
        return out

    async def _bulk_sign_chunked(self, pending: List[_PendingAvatar], ttl: int) -> Dict[str, str]:
        out: Dict[str, str] = {}
        chunk_size = max(1, self.sign_chunk_size)
        for offset in range(0, len(pending), chunk_size):
            chunk = pending[offset:offset + chunk_size]
            try:
                signed = await self.signer.sign_many([item.path for item in chunk], ttl)  # type: ignore[attr-defined]
            except SupabaseRequestError as exc:
                logger.warning(
                    "Supabase bulk signing failed for %s path(s) at offset %s (%s)",
                    len(chunk),
                    offset,
                    exc,
                )
                continue

            for item, entry in _match_signed(chunk, signed):
                if entry is None or not entry.url:
                    continue
                self.cache.set(self._cache_key(item.path, ttl), entry.url)
                out[item.user_id] = with_version(entry.url, item.version)
        return out

    async def resolve_by_user_ids(
        self, user_ids: Sequence[str], ttl: Optional[int] = None
    ) -> AvatarBatch:
        """Resolve avatars for *user_ids*, reporting which lookup produced the rows."""
        ids = [str(user_id) for user_id in user_ids if user_id]
        if not ids:
            return AvatarBatch()

        if self.privileged is not None and self.probe.should_attempt:
            try:
                rows = await self.privileged.fetch(ids)
            except SupabaseRequestError as exc:
                logger.warning("Supabase privileged avatar lookup failed (%s)", exc)
                self.probe.mark_unavailable()
            else:
                self.probe.mark_available()
                urls = await self.bulk_sign_from_profiles(rows, ttl)
                return AvatarBatch(urls, LookupSource.PRIVILEGED)

        try:
            rows = await self.directory.by_ids(ids)
        except SupabaseRequestError as exc:
            logger.warning("Supabase profiles avatar query failed (%s)", exc)
            return AvatarBatch()
        urls = await self.bulk_sign_from_profiles(rows, ttl)
        return AvatarBatch(urls, LookupSource.DIRECT)

    async def bulk_signed_by_user_ids(
        self, user_ids: Sequence[str], ttl: Optional[int] = None
    ) -> Dict[str, str]:
        batch = await self.resolve_by_user_ids(user_ids, ttl)
        return batch.urls

    async def fetch_all_profiles(self) -> List[ProfileAvatarRef]:
        rows: List[ProfileAvatarRef] = []
        offset = 0
        while True:
            try:
                page = await self.directory.page(offset, self.page_size)
            except SupabaseRequestError as exc:
                logger.warning("Supabase profiles page at offset %s failed (%s)", offset, exc)
                break
            if not page:
                break
            rows.extend(page)
            if len(page) < self.page_size:
                break
            offset += self.page_size
        return rows

    async def bulk_signed_all_users(self, ttl: Optional[int] = None) -> Dict[str, str]:
        rows = await self.fetch_all_profiles()
        if not rows:
            return {}
        return await self.bulk_sign_from_profiles(rows, ttl)

    # ------------------------------------------------------------------
    # Per-user and change notifications

    async def avatar_src_for_user(self, user_id: str, ttl: Optional[int] = None) -> Optional[str]:
        if not user_id:
            return None
        try:
            ref = await self.directory.by_id(user_id)
        except SupabaseRequestError as exc:
            logger.warning("Supabase profile lookup for %s failed (%s)", user_id, exc)
            return None
        if ref is None:
            return None
        return await self.get_versioned_avatar_src(ref.avatar_path, ref.avatar_updated_at, ttl)

    async def apply_profile_change(
        self, payload: Mapping[str, Any], ttl: Optional[int] = None
    ) -> Optional[Tuple[ProfileAvatarRef, Optional[str]]]:
        """Purge cached URLs for a replaced avatar and return the fresh source.

        Returns ``None`` when the payload does not change the avatar.
        """
        ref = avatar_change_from_payload(payload)
        if ref is None:
            return None
        self.invalidate_avatar(old_avatar_path(payload))
        self.invalidate_avatar(ref.avatar_path)
        src = await self.get_versioned_avatar_src(ref.avatar_path, ref.avatar_updated_at, ttl)
        return ref, src


def _match_signed(
    chunk: Sequence[_PendingAvatar], signed: Sequence[SignedObject]
) -> List[Tuple[_PendingAvatar, Optional[SignedObject]]]:
    """Pair each requested avatar with its bulk-sign response entry.

    Entries are matched by position, except when the response names a different
    path at that position; then the entry carrying the requested path is used.
    """
    by_path: Dict[str, SignedObject] = {}
    for entry in signed:
        if entry.path and entry.path not in by_path:
            by_path[entry.path] = entry

    pairs: List[Tuple[_PendingAvatar, Optional[SignedObject]]] = []
    reordered = False
    for index, item in enumerate(chunk):
        entry = signed[index] if index < len(signed) else None
        if entry is not None and entry.path and entry.path != item.path:
            entry = by_path.get(item.path)
            reordered = True
        elif entry is None and item.path in by_path:
            entry = by_path[item.path]
        pairs.append((item, entry))

    if reordered or len(signed) != len(chunk):
        logger.warning(
            "Bulk sign response did not line up with request (%s requested, %s returned)",
            len(chunk),
            len(signed),
        )
    return pairs
