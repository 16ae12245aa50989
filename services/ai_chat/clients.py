"""HTTP collaborators used by the AI chat orchestrator."""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional
from urllib.parse import quote

import httpx
from fastapi import status

from shared.http.errors import AuthenticationRequiredError
from shared.observability.logger import get_logger

__all__ = [
    "AuthContext",
    "PracticeDetailsCache",
    "PracticeDetailsClient",
    "PracticeSnapshot",
    "SessionClient",
    "extract_details_container",
]

logger = get_logger(__name__)

_FORWARDED_AUTH_HEADERS = ("authorization", "cookie")
_DEFAULT_MAX_ENTRIES = 512


def _strip_trailing_slash(url: str) -> str:
    return url[:-1] if url.endswith("/") else url


def create_http_client(base_url: str, timeout: float) -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url=_strip_trailing_slash(base_url), timeout=timeout)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class AuthContext:
    """Identity of the caller resolved from the session backend."""

    user_id: str
    is_anonymous: bool = False
    email: Optional[str] = None


def _looks_anonymous(user: Mapping[str, Any]) -> bool:
    email = user.get("email")
    name = user.get("name")
    if not isinstance(email, str) or not email.strip():
        return True
    if email.startswith("anonymous-"):
        return True
    return isinstance(name, str) and "anonymous" in name.lower()


class SessionClient:
    """Resolve the caller's session by forwarding their credentials."""

    def __init__(self, http_client: httpx.AsyncClient) -> None:
        self._http = http_client

    async def authenticate(self, headers: Mapping[str, str]) -> AuthContext:
        forwarded = {
            name: value
            for name, value in headers.items()
            if name.lower() in _FORWARDED_AUTH_HEADERS and value
        }
        if not forwarded:
            raise AuthenticationRequiredError("Authentication required")

        try:
            response = await self._http.get(
                "/api/auth/get-session",
                headers={**forwarded, "Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            logger.warning("session_lookup_failed", error=str(exc))
            raise AuthenticationRequiredError(
                "Failed to validate authentication credentials"
            ) from exc

        if response.status_code == status.HTTP_401_UNAUTHORIZED:
            raise AuthenticationRequiredError("Invalid or expired session")
        if response.is_error:
            raise AuthenticationRequiredError(
                f"Authentication failed: {response.status_code}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise AuthenticationRequiredError("Invalid session data") from exc
        user = payload.get("user") if isinstance(payload, dict) else None
        if not isinstance(user, dict) or not isinstance(user.get("id"), str):
            raise AuthenticationRequiredError("Invalid session data")

        email = user.get("email") if isinstance(user.get("email"), str) else None
        return AuthContext(
            user_id=user["id"],
            is_anonymous=_looks_anonymous(user),
            email=email,
        )


# ---------------------------------------------------------------------------
# Practice details
# ---------------------------------------------------------------------------


def extract_details_container(payload: Any) -> Optional[dict[str, Any]]:
    """Unwrap ``{details}`` and ``{data: {details}}`` envelopes."""

    if not isinstance(payload, dict):
        return None
    details = payload.get("details")
    if isinstance(details, dict):
        return details
    data = payload.get("data")
    if isinstance(data, dict) and isinstance(data.get("details"), dict):
        return data["details"]
    return payload


@dataclass(frozen=True, slots=True)
class PracticeSnapshot:
    """Practice details as seen by one request."""

    details: Optional[dict[str, Any]] = None
    is_public: bool = False

    @classmethod
    def from_payload(cls, payload: Any) -> "PracticeSnapshot":
        details = extract_details_container(payload)
        if details is None:
            return cls()
        flag = details.get("is_public")
        if flag is None:
            flag = details.get("isPublic")
        return cls(details=details, is_public=bool(flag))


class PracticeDetailsClient:
    """Fetch practice details from the backend by slug, falling back to id."""

    def __init__(self, http_client: httpx.AsyncClient) -> None:
        self._http = http_client

    async def _get(self, identifier: str) -> Optional[httpx.Response]:
        try:
            response = await self._http.get(
                f"/api/practice/details/{quote(identifier, safe='')}",
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            logger.warning(
                "practice_details_request_failed",
                identifier=identifier,
                error=str(exc),
            )
            return None
        return response

    async def fetch(self, practice_id: str, practice_slug: Optional[str] = None) -> Any:
        """Return the raw details payload, or ``None`` when unavailable."""

        identifier = (practice_slug or "").strip() or practice_id
        response = await self._get(identifier)
        if (response is None or response.is_error) and identifier != practice_id:
            response = await self._get(practice_id)
        if response is None or response.is_error:
            if response is not None and response.status_code != status.HTTP_404_NOT_FOUND:
                logger.warning(
                    "practice_details_unavailable",
                    practice_id=practice_id,
                    status_code=response.status_code,
                )
            return None
        try:
            return response.json()
        except ValueError:
            logger.warning("practice_details_malformed", practice_id=practice_id)
            return None


@dataclass
class _CacheEntry:
    payload: Any
    expires_at: float | None


class PracticeDetailsCache:
    """TTL cache in front of :class:`PracticeDetailsClient` keyed by practice id."""

    def __init__(
        self,
        client: PracticeDetailsClient,
        *,
        ttl_seconds: float | None = 600.0,
        max_entries: int = _DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, _CacheEntry] = OrderedDict()
        self._lock = asyncio.Lock()

    @staticmethod
    def cache_key(practice_id: str) -> str:
        return f"practice_details:{practice_id}"

    def _prune(self, now: float) -> None:
        expired = [
            key
            for key, entry in self._entries.items()
            if entry.expires_at is not None and entry.expires_at <= now
        ]
        for key in expired:
            self._entries.pop(key, None)

    async def _read(self, key: str) -> Any:
        async with self._lock:
            self._prune(self._clock())
            entry = self._entries.get(key)
            if entry is None:
                return None
            self._entries.move_to_end(key)
            return entry.payload

    async def _write(self, key: str, payload: Any) -> None:
        now = self._clock()
        if self._ttl is None:
            expires_at: float | None = None
        else:
            expires_at = now + max(self._ttl, 0.0)
        async with self._lock:
            self._prune(now)
            self._entries[key] = _CacheEntry(payload=payload, expires_at=expires_at)
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    async def get(
        self,
        practice_id: Optional[str],
        practice_slug: Optional[str] = None,
        *,
        bypass_cache: bool = False,
    ) -> PracticeSnapshot:
        """Return the practice snapshot, reading and filling the cache unless bypassed."""

        practice_id = (practice_id or "").strip()
        if not practice_id:
            return PracticeSnapshot()
        key = self.cache_key(practice_id)

        if not bypass_cache:
            cached = await self._read(key)
            if cached is not None:
                return PracticeSnapshot.from_payload(cached)

        payload = await self._client.fetch(practice_id, practice_slug)
        if payload is not None and not bypass_cache:
            await self._write(key, payload)
        return PracticeSnapshot.from_payload(payload)

    async def invalidate(self, practice_id: Optional[str]) -> None:
        practice_id = (practice_id or "").strip()
        if not practice_id:
            return
        async with self._lock:
            self._entries.pop(self.cache_key(practice_id), None)
