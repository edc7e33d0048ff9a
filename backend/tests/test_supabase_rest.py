from __future__ import annotations

import asyncio
from typing import Any, Dict, List

import httpx
import pytest

from athletrack_core import AvatarSettings, SupabaseRequestError
from athletrack_core import supabase_rest as rest_module
from athletrack_core.profiles import PrivilegedAvatarLookup, ProfileAvatarRef, ProfileDirectory
from athletrack_core.storage import AvatarSigner, BulkAvatarSigner, build_signer
from athletrack_core.supabase_rest import SignedObject, SupabaseRest, in_filter

BASE_URL = "https://example.supabase.co"


class _Response:
    def __init__(self, payload: Any, status_code: int = 200) -> None:
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            request = httpx.Request("GET", BASE_URL)
            response = httpx.Response(self.status_code, request=request)
            raise httpx.HTTPStatusError("error", request=request, response=response)

    def json(self) -> Any:
        return self._payload


class _Recorder:
    def __init__(self) -> None:
        self.calls: List[Dict[str, Any]] = []
        self.responses: List[Any] = []

    def queue(self, payload: Any, status_code: int = 200) -> None:
        self.responses.append(_Response(payload, status_code))

    def next_response(self) -> Any:
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def recorder(monkeypatch: pytest.MonkeyPatch) -> _Recorder:
    recorder = _Recorder()

    class _DummyAsyncClient:
        def __init__(self, *args: Any, **kwargs: Any) -> None:
            recorder.calls.append({"client_kwargs": kwargs})

        async def __aenter__(self) -> "_DummyAsyncClient":
            return self

        async def __aexit__(self, exc_type, exc, tb) -> None:  # pragma: no cover - nothing to clean up
            return None

        async def get(self, endpoint: str, params: Dict[str, Any] | None = None, headers: Dict[str, str] | None = None):
            recorder.calls.append({"method": "GET", "endpoint": endpoint, "params": params, "headers": headers})
            return recorder.next_response()

        async def post(
            self,
            endpoint: str,
            params: Dict[str, Any] | None = None,
            json: Any = None,
            headers: Dict[str, str] | None = None,
        ):
            recorder.calls.append(
                {"method": "POST", "endpoint": endpoint, "params": params, "json": json, "headers": headers}
            )
            return recorder.next_response()

    class _DummyHTTPX:
        AsyncClient = _DummyAsyncClient
        HTTPError = httpx.HTTPError
        HTTPStatusError = httpx.HTTPStatusError

    monkeypatch.setattr(rest_module, "httpx", _DummyHTTPX)
    return recorder


def _rest(**overrides: Any) -> SupabaseRest:
    values = {"supabase_url": BASE_URL, "service_key": "service-key"}
    values.update(overrides)
    return SupabaseRest(AvatarSettings(**values))


def _requests(recorder: _Recorder) -> List[Dict[str, Any]]:
    return [call for call in recorder.calls if "method" in call]


def test_sign_object_returns_absolute_url(recorder: _Recorder) -> None:
    recorder.queue({"signedURL": "/object/sign/avatar/u1/pic.png?token=abc"})

    url = asyncio.run(_rest().sign_object("avatar", "u1/pic.png", 3600))

    assert url == f"{BASE_URL}/storage/v1/object/sign/avatar/u1/pic.png?token=abc"
    call = _requests(recorder)[0]
    assert call["method"] == "POST"
    assert call["endpoint"] == f"{BASE_URL}/storage/v1/object/sign/avatar/u1/pic.png"
    assert call["json"] == {"expiresIn": 3600}
    assert call["headers"]["apikey"] == "service-key"
    assert call["headers"]["Authorization"] == "Bearer service-key"
    assert recorder.calls[0]["client_kwargs"] == {"timeout": 10.0}


def test_sign_object_without_url_raises(recorder: _Recorder) -> None:
    recorder.queue({"error": "not found"})

    with pytest.raises(SupabaseRequestError, match="no signed URL"):
        asyncio.run(_rest().sign_object("avatar", "u1/pic.png", 3600))


def test_sign_objects_keeps_response_order(recorder: _Recorder) -> None:
    recorder.queue(
        [
            {"error": None, "path": "u1/pic.png", "signedURL": "/object/sign/avatar/u1/pic.png?token=1"},
            {"error": "Either the object does not exist or you do not have access to it", "path": "u2/pic.png", "signedURL": None},
        ]
    )

    signed = asyncio.run(_rest().sign_objects("avatar", ["u1/pic.png", "u2/pic.png"], 60))

    assert signed == [
        SignedObject(path="u1/pic.png", url=f"{BASE_URL}/storage/v1/object/sign/avatar/u1/pic.png?token=1"),
        SignedObject(path="u2/pic.png", url=None),
    ]
    call = _requests(recorder)[0]
    assert call["endpoint"] == f"{BASE_URL}/storage/v1/object/sign/avatar"
    assert call["json"] == {"expiresIn": 60, "paths": ["u1/pic.png", "u2/pic.png"]}


def test_sign_objects_rejects_non_list_payload(recorder: _Recorder) -> None:
    recorder.queue({"message": "bad request"})

    with pytest.raises(SupabaseRequestError):
        asyncio.run(_rest().sign_objects("avatar", ["u1/pic.png"], 60))


def test_http_error_status_is_wrapped(recorder: _Recorder) -> None:
    recorder.queue({"message": "missing"}, status_code=404)

    with pytest.raises(SupabaseRequestError, match="returned 404"):
        asyncio.run(_rest().rpc("admin_get_avatars", {"_user_ids": ["u1"]}))


def test_transport_error_is_wrapped(recorder: _Recorder) -> None:
    recorder.responses.append(httpx.ConnectError("connection refused"))

    with pytest.raises(SupabaseRequestError, match="failed"):
        asyncio.run(_rest().select("profiles", "id"))


def test_missing_configuration_raises_without_request(recorder: _Recorder) -> None:
    with pytest.raises(SupabaseRequestError, match="configuration is incomplete"):
        asyncio.run(_rest(service_key="").select("profiles", "id"))
    assert recorder.calls == []


def test_schema_headers_for_custom_schema(recorder: _Recorder) -> None:
    recorder.queue([])

    asyncio.run(_rest(schema="athletrack").select("profiles", "id"))

    assert _requests(recorder)[0]["headers"]["Accept-Profile"] == "athletrack"


def test_profile_directory_by_ids(recorder: _Recorder) -> None:
    recorder.queue(
        [
            {"id": "u1", "avatar_url": "avatar/u1/pic.png", "avatar_updated_at": "2024-01-01T00:00:00Z"},
            {"id": "", "avatar_url": "ghost.png"},
            "garbage",
        ]
    )

    refs = asyncio.run(ProfileDirectory(_rest()).by_ids(["u1", "u2"]))

    assert refs == [ProfileAvatarRef("u1", "avatar/u1/pic.png", "2024-01-01T00:00:00Z")]
    call = _requests(recorder)[0]
    assert call["endpoint"] == f"{BASE_URL}/rest/v1/profiles"
    assert call["params"] == {"select": "id,avatar_url,avatar_updated_at", "id": "in.(u1,u2)"}


def test_profile_directory_page_params(recorder: _Recorder) -> None:
    recorder.queue([{"id": "u1", "avatar_url": None, "avatar_updated_at": None}])

    refs = asyncio.run(ProfileDirectory(_rest(), "athletes").page(1000, 1000))

    assert refs == [ProfileAvatarRef("u1")]
    call = _requests(recorder)[0]
    assert call["endpoint"] == f"{BASE_URL}/rest/v1/athletes"
    assert call["params"]["offset"] == 1000
    assert call["params"]["limit"] == 1000
    assert call["params"]["order"] == "id.asc"


def test_privileged_lookup_maps_user_id_rows(recorder: _Recorder) -> None:
    recorder.queue([{"user_id": "u1", "avatar_url": "u1/pic.png", "avatar_updated_at": 1704067200}])

    refs = asyncio.run(PrivilegedAvatarLookup(_rest()).fetch(["u1"]))

    assert refs == [ProfileAvatarRef("u1", "u1/pic.png", 1704067200)]
    call = _requests(recorder)[0]
    assert call["endpoint"] == f"{BASE_URL}/rest/v1/rpc/admin_get_avatars"
    assert call["json"] == {"_user_ids": ["u1"]}


def test_privileged_lookup_rejects_non_list(recorder: _Recorder) -> None:
    recorder.queue({"code": "PGRST202", "message": "Could not find the function"})

    with pytest.raises(SupabaseRequestError):
        asyncio.run(PrivilegedAvatarLookup(_rest()).fetch(["u1"]))


def test_build_signer_follows_setting() -> None:
    rest = _rest()

    bulk = build_signer(rest, AvatarSettings(bulk_sign=True))
    single = build_signer(rest, AvatarSettings(bulk_sign=False))

    assert isinstance(bulk, BulkAvatarSigner) and bulk.supports_bulk
    assert type(single) is AvatarSigner and not single.supports_bulk


def test_in_filter_quotes_reserved_characters() -> None:
    assert in_filter(["u1", "u2"]) == "in.(u1,u2)"
    assert in_filter(["a,b"]) == 'in.("a,b")'
    assert in_filter(['a\\"b']) == 'in.("a\\\\\\"b")'
    assert in_filter(["back\\slash"]) == 'in.("back\\\\slash")'


def test_user_token_requests_use_anon_apikey(recorder: _Recorder) -> None:
    recorder.queue({"signedURL": "/object/sign/avatar/u1/pic.png?token=abc"})
    rest = _rest(anon_key="anon-key").for_token("user-jwt")

    asyncio.run(AvatarSigner(rest, "avatar").sign("u1/pic.png", 60))

    headers = _requests(recorder)[0]["headers"]
    assert headers["apikey"] == "anon-key"
    assert headers["Authorization"] == "Bearer user-jwt"


def test_profile_directory_for_token_reads_as_user(recorder: _Recorder) -> None:
    recorder.queue([{"id": "u1", "role": "Admin"}])

    role = asyncio.run(ProfileDirectory(_rest(anon_key="anon-key")).for_token("user-jwt").role_of("u1"))

    assert role == "admin"
    call = _requests(recorder)[0]
    assert call["params"] == {"select": "id,role", "id": "eq.u1", "limit": 1}
    assert call["headers"]["Authorization"] == "Bearer user-jwt"
