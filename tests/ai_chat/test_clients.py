"""Tests for the session, practice-details and cache collaborators."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Optional

import httpx
import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from services.ai_chat.clients import (  # noqa: E402
    PracticeDetailsCache,
    PracticeDetailsClient,
    PracticeSnapshot,
    SessionClient,
    extract_details_container,
)
from shared.http.errors import AuthenticationRequiredError  # noqa: E402


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class _DummyDetailsClient:
    def __init__(self, payload: Any) -> None:
        self.payload = payload
        self.calls: list[tuple[str, Optional[str]]] = []

    async def fetch(self, practice_id: str, practice_slug: Optional[str] = None) -> Any:
        self.calls.append((practice_id, practice_slug))
        return self.payload


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="http://backend.test"
    )


def test_details_container_unwrapping() -> None:
    assert extract_details_container({"details": {"name": "A"}}) == {"name": "A"}
    assert extract_details_container({"data": {"details": {"name": "B"}}}) == {"name": "B"}
    assert extract_details_container({"name": "C"}) == {"name": "C"}
    assert extract_details_container(["not", "a", "record"]) is None


def test_snapshot_reads_either_visibility_spelling() -> None:
    assert PracticeSnapshot.from_payload({"details": {"is_public": True}}).is_public is True
    assert PracticeSnapshot.from_payload({"isPublic": True}).is_public is True
    assert PracticeSnapshot.from_payload({"name": "Private"}).is_public is False
    assert PracticeSnapshot.from_payload(None) == PracticeSnapshot()


@pytest.mark.anyio
async def test_cache_serves_repeat_reads_until_ttl_expires() -> None:
    client = _DummyDetailsClient({"details": {"name": "Acme", "is_public": True}})
    clock = _Clock()
    cache = PracticeDetailsCache(client, ttl_seconds=600, clock=clock)

    first = await cache.get("practice-1", "acme")
    second = await cache.get("practice-1", "acme")
    clock.now += 601
    third = await cache.get("practice-1", "acme")

    assert first == second == third
    assert first.details == {"name": "Acme", "is_public": True}
    assert len(client.calls) == 2


@pytest.mark.anyio
async def test_bypass_always_fetches_and_never_fills() -> None:
    client = _DummyDetailsClient({"details": {"name": "Acme"}})
    cache = PracticeDetailsCache(client, clock=_Clock())

    await cache.get("practice-1", bypass_cache=True)
    await cache.get("practice-1", bypass_cache=True)
    await cache.get("practice-1")
    await cache.get("practice-1")

    assert len(client.calls) == 3


@pytest.mark.anyio
async def test_invalidate_forces_refetch() -> None:
    client = _DummyDetailsClient({"details": {"name": "Acme"}})
    cache = PracticeDetailsCache(client, clock=_Clock())

    await cache.get("practice-1")
    await cache.invalidate("practice-1")
    await cache.get("practice-1")

    assert len(client.calls) == 2
    assert cache.cache_key("practice-1") == "practice_details:practice-1"


@pytest.mark.anyio
async def test_missing_practice_is_not_cached() -> None:
    client = _DummyDetailsClient(None)
    cache = PracticeDetailsCache(client, clock=_Clock())

    assert (await cache.get("practice-1")).details is None
    await cache.get("practice-1")
    assert await cache.get(None) == PracticeSnapshot()

    assert len(client.calls) == 2


@pytest.mark.anyio
async def test_details_client_falls_back_from_slug_to_id() -> None:
    paths: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        if request.url.path.endswith("/acme"):
            return httpx.Response(404)
        return httpx.Response(200, json={"details": {"name": "Acme"}})

    async with _mock_client(handler) as http_client:
        payload = await PracticeDetailsClient(http_client).fetch("practice-1", "acme")

    assert payload == {"details": {"name": "Acme"}}
    assert paths == ["/api/practice/details/acme", "/api/practice/details/practice-1"]


@pytest.mark.anyio
async def test_details_client_returns_none_on_server_error() -> None:
    async with _mock_client(lambda request: httpx.Response(500)) as http_client:
        assert await PracticeDetailsClient(http_client).fetch("practice-1") is None


@pytest.mark.anyio
async def test_session_client_requires_credentials() -> None:
    async with _mock_client(lambda request: httpx.Response(200, json={})) as http_client:
        with pytest.raises(AuthenticationRequiredError):
            await SessionClient(http_client).authenticate({"accept": "*/*"})


@pytest.mark.anyio
async def test_session_client_forwards_credentials() -> None:
    seen: dict[str, str] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["cookie"] = request.headers.get("cookie", "")
        seen["path"] = request.url.path
        return httpx.Response(
            200, json={"user": {"id": "user-1", "email": "ada@example.com", "name": "Ada"}}
        )

    async with _mock_client(handler) as http_client:
        auth = await SessionClient(http_client).authenticate({"cookie": "session=abc"})

    assert auth.user_id == "user-1"
    assert auth.is_anonymous is False
    assert seen == {"cookie": "session=abc", "path": "/api/auth/get-session"}


@pytest.mark.anyio
async def test_session_client_flags_anonymous_users() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200, json={"user": {"id": "anon-1", "email": "anonymous-17@blawby.ai"}}
        )

    async with _mock_client(handler) as http_client:
        auth = await SessionClient(http_client).authenticate({"authorization": "Bearer t"})

    assert auth.is_anonymous is True


@pytest.mark.anyio
async def test_session_client_rejects_expired_session() -> None:
    async with _mock_client(lambda request: httpx.Response(401)) as http_client:
        with pytest.raises(AuthenticationRequiredError) as excinfo:
            await SessionClient(http_client).authenticate({"cookie": "session=old"})

    assert excinfo.value.status_code == 401
    assert excinfo.value.detail == "Invalid or expired session"
