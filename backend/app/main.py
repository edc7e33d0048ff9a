from __future__ import annotations

import hmac
import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, List, Optional, Union

import httpx
from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from athletrack_core import AvatarService, AvatarSettings, ResolutionStatus, with_version

from .logging_config import request_id_var, setup_logging


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    setup_logging()
    yield


app = FastAPI(title="AthleTrack Avatar API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
    context_token = request_id_var.set(request_id)
    started = time.perf_counter()
    fields: Dict[str, Any] = {"method": request.method, "path": request.url.path}
    try:
        response = await call_next(request)
    except Exception:
        fields["durationMs"] = round((time.perf_counter() - started) * 1000, 1)
        logger.exception("Request failed", extra=fields)
        raise
    else:
        fields["status"] = response.status_code
        fields["durationMs"] = round((time.perf_counter() - started) * 1000, 1)
        logger.info("%s %s %s", request.method, request.url.path, response.status_code, extra=fields)
        response.headers["X-Request-ID"] = request_id
        return response
    finally:
        request_id_var.reset(context_token)


class SignedAvatarResponse(BaseModel):
    url: Optional[str] = None
    status: ResolutionStatus


class BulkAvatarRequest(BaseModel):
    user_ids: List[str] = Field(default_factory=list, alias="userIds")
    ttl: Optional[int] = Field(default=None, ge=1)

    model_config = ConfigDict(populate_by_name=True)


class BulkAvatarResponse(BaseModel):
    urls: Dict[str, str]
    source: Optional[str] = None


class UserAvatarResponse(BaseModel):
    user_id: str = Field(alias="userId")
    url: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class ProfileChangeResponse(BaseModel):
    changed: bool
    user_id: Optional[str] = Field(default=None, alias="userId")
    url: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


@lru_cache(maxsize=1)
def settings() -> AvatarSettings:
    return AvatarSettings.from_env()


@lru_cache(maxsize=1)
def service() -> AvatarService:
    return AvatarService.from_settings(settings())


@dataclass(frozen=True)
class CallerContext:
    """A signed-in user, with the access token their Supabase calls are made with."""

    user_id: str
    token: str
    user: Dict[str, Any] = field(default_factory=dict, compare=False)


async def authenticate(
    authorization: str = Header(default=""),
    config: AvatarSettings = Depends(settings),
) -> Optional[CallerContext]:
    """Verify the bearer token against Supabase Auth; ``None`` when none was sent."""
    if not authorization:
        return None
    if not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Authorization token is required")

    token = authorization.split(" ", 1)[1].strip()
    if not token:
        raise HTTPException(status_code=401, detail="Authorization token is required")

    apikey = config.anon_key or config.supabase_key
    if not config.supabase_url or not apikey:
        raise HTTPException(status_code=500, detail="Supabase configuration is incomplete")

    endpoint = f"{config.supabase_url.rstrip('/')}/auth/v1/user"
    headers = {
        "Authorization": f"Bearer {token}",
        "apikey": apikey,
    }

    try:
        async with httpx.AsyncClient(timeout=config.timeout) as client:
            response = await client.get(endpoint, headers=headers)
            response.raise_for_status()
            payload = response.json()
    except httpx.HTTPStatusError as exc:
        status = exc.response.status_code if exc.response is not None else 502
        if status in (401, 403):
            raise HTTPException(status_code=401, detail="Invalid authentication token") from exc
        raise HTTPException(status_code=502, detail="Failed to verify authentication token") from exc
    except (httpx.HTTPError, ValueError) as exc:
        raise HTTPException(status_code=502, detail="Failed to verify authentication token") from exc

    user_id = str(payload.get("id") or "").strip() if isinstance(payload, dict) else ""
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid authentication token")
    return CallerContext(user_id=user_id, token=token, user=payload)


def require_user(caller: Optional[CallerContext] = Depends(authenticate)) -> CallerContext:
    if caller is None:
        raise HTTPException(status_code=401, detail="Authorization token is required")
    return caller


async def is_admin(caller: CallerContext, avatars: AvatarService, config: AvatarSettings) -> bool:
    scoped = avatars.for_caller(caller.token, caller.user_id)
    return await scoped.caller_has_role(caller.user_id, config.admin_roles)


async def require_admin(
    caller: CallerContext = Depends(require_user),
    avatars: AvatarService = Depends(service),
    config: AvatarSettings = Depends(settings),
) -> CallerContext:
    if not await is_admin(caller, avatars, config):
        logger.warning("Refused admin-only avatar request from %s", caller.user_id)
        raise HTTPException(status_code=403, detail="Admin role required")
    return caller


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/avatars/signed", response_model=SignedAvatarResponse)
async def signed_avatar(
    path: str = Query(default=""),
    ttl: Optional[int] = Query(default=None, ge=1),
    updated_at: Optional[str] = Query(default=None, alias="updatedAt"),
    avatars: AvatarService = Depends(service),
    caller: CallerContext = Depends(require_user),
):
    scoped = avatars.for_caller(caller.token, caller.user_id)
    result = await scoped.resolve_signed_avatar(path, ttl)
    if not result.url:
        return SignedAvatarResponse(url=None, status=result.status)

    version: Optional[Union[str, int]] = updated_at
    if updated_at and updated_at.isdigit():
        version = int(updated_at)
    return SignedAvatarResponse(url=with_version(result.url, version), status=result.status)


@app.post("/avatars/bulk", response_model=BulkAvatarResponse)
async def bulk_avatars(
    payload: BulkAvatarRequest,
    avatars: AvatarService = Depends(service),
    config: AvatarSettings = Depends(settings),
    caller: CallerContext = Depends(require_user),
):
    allow_privileged = bool(payload.user_ids) and await is_admin(caller, avatars, config)
    scoped = avatars.for_caller(caller.token, caller.user_id, allow_privileged=allow_privileged)
    batch = await scoped.resolve_by_user_ids(payload.user_ids, payload.ttl)
    return BulkAvatarResponse(urls=batch.urls, source=batch.source.value)


@app.get("/avatars/all", response_model=BulkAvatarResponse)
async def all_avatars(
    ttl: Optional[int] = Query(default=None, ge=1),
    avatars: AvatarService = Depends(service),
    caller: CallerContext = Depends(require_admin),
):
    scoped = avatars.for_caller(caller.token, caller.user_id)
    urls = await scoped.bulk_signed_all_users(ttl)
    return BulkAvatarResponse(urls=urls)


@app.get("/avatars/users/{user_id}", response_model=UserAvatarResponse)
async def user_avatar(
    user_id: str,
    ttl: Optional[int] = Query(default=None, ge=1),
    avatars: AvatarService = Depends(service),
    caller: CallerContext = Depends(require_user),
):
    scoped = avatars.for_caller(caller.token, caller.user_id)
    url = await scoped.avatar_src_for_user(user_id, ttl)
    return UserAvatarResponse(userId=user_id, url=url)


@app.delete("/avatars/cache", status_code=204)
async def invalidate_avatar_cache(
    path: str = Query(min_length=1),
    avatars: AvatarService = Depends(service),
    _: CallerContext = Depends(require_user),
):
    avatars.invalidate_avatar(path)
    return Response(status_code=204)


def _valid_webhook_secret(presented: str, config: AvatarSettings) -> bool:
    if not config.webhook_secret or not presented:
        return False
    return hmac.compare_digest(presented.encode(), config.webhook_secret.encode())


@app.post("/avatars/profile-changes", response_model=ProfileChangeResponse)
async def profile_changes(
    payload: Dict[str, Any] = Body(...),
    webhook_secret: str = Header(default="", alias="X-Webhook-Secret"),
    avatars: AvatarService = Depends(service),
    config: AvatarSettings = Depends(settings),
    caller: Optional[CallerContext] = Depends(authenticate),
):
    """Database webhook target; also callable by admins."""
    if _valid_webhook_secret(webhook_secret, config):
        handler = avatars
    elif caller is None:
        raise HTTPException(status_code=401, detail="Authorization token is required")
    elif await is_admin(caller, avatars, config):
        handler = avatars.for_caller(caller.token, caller.user_id)
    else:
        logger.warning("Refused profile change from %s", caller.user_id)
        raise HTTPException(status_code=403, detail="Admin role or webhook secret required")

    outcome = await handler.apply_profile_change(payload)
    if outcome is None:
        return ProfileChangeResponse(changed=False)
    ref, url = outcome
    logger.info("Avatar changed for %s", ref.user_id, extra={"userId": ref.user_id})
    return ProfileChangeResponse(changed=True, userId=ref.user_id, url=url)
