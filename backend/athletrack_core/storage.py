"""Avatar bucket signers.

Whether bulk signing is used is fixed when the signer is built, from
``AvatarSettings.bulk_sign``; callers branch on ``supports_bulk``.
"""

from __future__ import annotations

from typing import List, Sequence

from .settings import AvatarSettings
from .supabase_rest import SignedObject, SupabaseRest


class AvatarSigner:
    """Signs one storage key at a time."""

    supports_bulk = False

    def __init__(self, rest: SupabaseRest, bucket: str) -> None:
        self.rest = rest
        self.bucket = bucket

    def for_token(self, access_token: str) -> "AvatarSigner":
        """Same signer, signing as the user that owns *access_token*."""
        return type(self)(self.rest.for_token(access_token), self.bucket)

    async def sign(self, path: str, ttl: int) -> str:
        return await self.rest.sign_object(self.bucket, path, ttl)


class BulkAvatarSigner(AvatarSigner):
    """Signer for storage backends that accept many keys per request."""

    supports_bulk = True

    async def sign_many(self, paths: Sequence[str], ttl: int) -> List[SignedObject]:
        return await self.rest.sign_objects(self.bucket, paths, ttl)


def build_signer(rest: SupabaseRest, settings: AvatarSettings) -> AvatarSigner:
    if settings.bulk_sign:
        return BulkAvatarSigner(rest, settings.bucket)
    return AvatarSigner(rest, settings.bucket)
