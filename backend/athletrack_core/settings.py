from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Tuple


logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 86400

_FALSE_VALUES = {"0", "false", "no", "off"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %s", name, raw, default)
        return default
    if value < 1:
        logger.warning("Ignoring non-positive %s=%r, using %s", name, raw, default)
        return default
    return value


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %s", name, raw, default)
        return default


@dataclass(frozen=True)
class AvatarSettings:
    """Supabase connection details and avatar tuning knobs.

    ``service_key`` is only sent for process-level calls (the privileged avatar
    RPC, webhooks, operator scripts). Requests made on behalf of a signed-in
    user carry ``anon_key`` as ``apikey`` and the user's own access token.
    """

    supabase_url: str = ""
    service_key: str = ""
    anon_key: str = ""
    schema: str = "public"
    profiles_table: str = "profiles"
    bucket: str = "avatar"
    admin_rpc: str = "admin_get_avatars"
    admin_roles: Tuple[str, ...] = ("admin",)
    webhook_secret: str = ""
    bulk_sign: bool = True
    cache_size: int = 500
    sign_chunk_size: int = 200
    page_size: int = 1000
    default_ttl: int = DEFAULT_TTL_SECONDS
    timeout: float = 10.0

    @property
    def supabase_key(self) -> str:
        return self.service_key or self.anon_key

    @property
    def configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    @classmethod
    def from_env(cls) -> "AvatarSettings":
        service_key = os.getenv("SUPABASE_SERVICE_ROLE_KEY") or os.getenv("SUPABASE_SERVICE_KEY") or ""
        roles = tuple(
            role.strip().lower()
            for role in os.getenv("AVATAR_ADMIN_ROLES", "admin").split(",")
            if role.strip()
        )
        bulk_raw = os.getenv("AVATAR_BULK_SIGN", "").strip().lower()
        return cls(
            supabase_url=os.getenv("SUPABASE_URL", "").strip().rstrip("/"),
            service_key=service_key.strip(),
            anon_key=os.getenv("SUPABASE_ANON_KEY", "").strip(),
            schema=os.getenv("SUPABASE_SCHEMA", "public"),
            profiles_table=os.getenv("SUPABASE_PROFILES_TABLE", "profiles"),
            bucket=os.getenv("SUPABASE_AVATAR_BUCKET", "avatar"),
            admin_rpc=os.getenv("SUPABASE_AVATAR_RPC", "admin_get_avatars"),
            admin_roles=roles or ("admin",),
            webhook_secret=os.getenv("AVATAR_WEBHOOK_SECRET", "").strip(),
            bulk_sign=bulk_raw not in _FALSE_VALUES,
            cache_size=_env_int("AVATAR_CACHE_SIZE", 500),
            sign_chunk_size=_env_int("AVATAR_SIGN_CHUNK", 200),
            page_size=_env_int("AVATAR_PAGE_SIZE", 1000),
            default_ttl=_env_int("AVATAR_TTL_SECONDS", DEFAULT_TTL_SECONDS),
            timeout=_env_float("SUPABASE_TIMEOUT", 10.0),
        )
