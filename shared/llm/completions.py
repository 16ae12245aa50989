"""Streaming client for OpenAI-compatible chat-completion APIs."""

from __future__ import annotations

from typing import Any, AsyncIterator, Mapping, Optional, Protocol

import httpx

from shared.config.settings import OpenAISettings
from shared.http.errors import ProviderUnavailableError
from shared.observability.logger import get_logger

__all__ = [
    "CompletionClient",
    "CompletionStream",
    "OpenAICompletionClient",
    "UpstreamCompletionError",
]

logger = get_logger(__name__)

_ERROR_PREVIEW_LIMIT = 500


class UpstreamCompletionError(RuntimeError):
    """Raised when the completion API answers with a non-success status."""

    def __init__(self, status_code: int, detail: str | None = None) -> None:
        message = f"Completion request failed with status {status_code}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.status_code = status_code


class CompletionStream(Protocol):
    """Open byte stream of a streaming completion response."""

    def aiter_bytes(self) -> AsyncIterator[bytes]:  # pragma: no cover - interface definition
        ...

    async def aclose(self) -> None:  # pragma: no cover - interface definition
        ...


class CompletionClient(Protocol):
    """Anything able to start a streaming chat completion."""

    async def open_stream(self, payload: Mapping[str, Any]) -> CompletionStream:  # pragma: no cover - interface definition
        ...


class _HttpxCompletionStream:
    def __init__(self, response: httpx.Response) -> None:
        self._response = response

    def aiter_bytes(self) -> AsyncIterator[bytes]:
        return self._response.aiter_bytes()

    async def aclose(self) -> None:
        await self._response.aclose()


class OpenAICompletionClient:
    """Issue ``stream: true`` requests against ``/chat/completions``."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        settings: OpenAISettings,
    ) -> None:
        self._http = http_client
        self._settings = settings

    def _headers(self) -> dict[str, str]:
        api_key = (self._settings.api_key or "").strip()
        if not api_key:
            raise ProviderUnavailableError(
                "openai",
                detail=(
                    "OpenAI API key is not configured. Set the OPENAI_API_KEY "
                    "environment variable to enable AI chat replies."
                ),
                reason="missing_api_key",
            )
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Accept": "text/event-stream",
        }
        if self._settings.organization:
            headers["OpenAI-Organization"] = self._settings.organization
        if self._settings.project:
            headers["OpenAI-Project"] = self._settings.project
        return headers

    async def open_stream(self, payload: Mapping[str, Any]) -> CompletionStream:
        """Send ``payload`` and return the response once headers have arrived."""

        body = dict(payload)
        body["stream"] = True
        request = self._http.build_request(
            "POST",
            "/chat/completions",
            json=body,
            headers=self._headers(),
        )
        response = await self._http.send(request, stream=True)
        if response.is_error:
            detail: Optional[str] = None
            try:
                raw = await response.aread()
                detail = raw.decode("utf-8", errors="replace")[:_ERROR_PREVIEW_LIMIT]
            finally:
                await response.aclose()
            logger.warning(
                "completion_request_rejected",
                status_code=response.status_code,
                model=body.get("model"),
            )
            raise UpstreamCompletionError(response.status_code, detail)
        return _HttpxCompletionStream(response)
