from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import quote

import httpx

from .settings import AvatarSettings


logger = logging.getLogger(__name__)


class SupabaseRequestError(RuntimeError):
    """A Supabase REST or Storage call failed or returned an unusable payload."""


@dataclass(frozen=True)
class SignedObject:
    path: Optional[str]
    url: Optional[str]


class SupabaseRest:
    """Async access to the PostgREST and Storage endpoints of one Supabase project.

    Without ``access_token`` requests authenticate with the configured key. With
    one they run as that user, so row-level security and storage policies apply.
    """

    def __init__(self, settings: AvatarSettings, access_token: Optional[str] = None) -> None:
        self.settings = settings
        self.access_token = access_token
        self.base_url = settings.supabase_url.rstrip("/")

    def for_token(self, access_token: str) -> "SupabaseRest":
        return SupabaseRest(self.settings, access_token=access_token)

    def _headers(self, *, json_body: bool = False) -> Dict[str, str]:
        if self.access_token:
            apikey = self.settings.anon_key or self.settings.supabase_key
            bearer = self.access_token
        else:
            apikey = bearer = self.settings.supabase_key
        headers = {
            "apikey": apikey,
            "Authorization": f"Bearer {bearer}",
            "Accept": "application/json",
        }
        if json_body:
            headers["Content-Type"] = "application/json"
            if self.settings.schema and self.settings.schema != "public":
                headers["Content-Profile"] = self.settings.schema
        if self.settings.schema and self.settings.schema != "public":
            headers["Accept-Profile"] = self.settings.schema
        return headers

    def _require_configuration(self) -> None:
        if not self.settings.configured:
            raise SupabaseRequestError("Supabase configuration is incomplete")

    async def _request(
        self,
        method: str,
        endpoint: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
    ) -> Any:
        self._require_configuration()
        headers = self._headers(json_body=json is not None)
        try:
            async with httpx.AsyncClient(timeout=self.settings.timeout) as client:
                if method == "GET":
                    response = await client.get(endpoint, params=params, headers=headers)
                else:
                    response = await client.post(endpoint, params=params, json=json, headers=headers)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code if exc.response is not None else "?"
            raise SupabaseRequestError(f"{method} {endpoint} returned {status}") from exc
        except httpx.HTTPError as exc:
            raise SupabaseRequestError(f"{method} {endpoint} failed: {exc}") from exc
        except ValueError as exc:
            raise SupabaseRequestError(f"{method} {endpoint} returned invalid JSON") from exc

    # ------------------------------------------------------------------
    # PostgREST

    async def select(
        self,
        table: str,
        columns: str,
        *,
        filters: Optional[Dict[str, str]] = None,
        offset: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        endpoint = f"{self.base_url}/rest/v1/{table}"
        params: Dict[str, Any] = {"select": columns}
        if filters:
            params.update(filters)
        if offset is not None:
            params["offset"] = offset
        if limit is not None:
            params["limit"] = limit

        rows = await self._request("GET", endpoint, params=params)
        if not isinstance(rows, list):
            raise SupabaseRequestError(f"Unexpected payload from {table}: {type(rows).__name__}")
        return [row for row in rows if isinstance(row, dict)]

    async def rpc(self, name: str, payload: Dict[str, Any]) -> Any:
        endpoint = f"{self.base_url}/rest/v1/rpc/{name}"
        return await self._request("POST", endpoint, json=payload)

    # ------------------------------------------------------------------
    # Storage

    def _absolute_signed_url(self, signed: Any) -> Optional[str]:
        if not isinstance(signed, str) or not signed:
            return None
        if signed.startswith(("http://", "https://")):
            return signed
        return f"{self.base_url}/storage/v1{signed}"

    async def sign_object(self, bucket: str, path: str, ttl: int) -> str:
        endpoint = f"{self.base_url}/storage/v1/object/sign/{bucket}/{quote(path)}"
        payload = await self._request("POST", endpoint, json={"expiresIn": ttl})
        signed = None
        if isinstance(payload, dict):
            signed = payload.get("signedURL") or payload.get("signedUrl")
        url = self._absolute_signed_url(signed)
        if not url:
            raise SupabaseRequestError(f"Storage returned no signed URL for {bucket}/{path}")
        return url

    async def sign_objects(self, bucket: str, paths: Iterable[str], ttl: int) -> List[SignedObject]:
        requested = list(paths)
        endpoint = f"{self.base_url}/storage/v1/object/sign/{bucket}"
        payload = await self._request("POST", endpoint, json={"expiresIn": ttl, "paths": requested})
        if not isinstance(payload, list):
            raise SupabaseRequestError(f"Unexpected bulk sign payload: {type(payload).__name__}")

        results: List[SignedObject] = []
        for item in payload:
            if not isinstance(item, dict):
                results.append(SignedObject(path=None, url=None))
                continue
            if item.get("error"):
                logger.debug("Storage could not sign %s (%s)", item.get("path"), item.get("error"))
            signed = item.get("signedURL") or item.get("signedUrl")
            path = item.get("path")
            results.append(
                SignedObject(
                    path=path if isinstance(path, str) else None,
                    url=self._absolute_signed_url(signed),
                )
            )
        return results


def in_filter(values: Iterable[str]) -> str:
    """Render a PostgREST ``in`` filter, quoting values that need it."""
    rendered = []
    for value in values:
        text = str(value)
        if any(ch in text for ch in ',()"\\'):
            text = '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'
        rendered.append(text)
    return f"in.({','.join(rendered)})"
