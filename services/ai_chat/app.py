"""FastAPI application exposing the AI chat orchestrator."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, FastAPI, Request
from starlette.responses import Response

from repositories.conversations import ConversationStore, InMemoryConversationStore
from shared.config.settings import AIChatSettings, Settings, get_settings
from shared.http.errors import RequestValidationProblem, register_exception_handlers
from shared.llm.completions import CompletionClient, OpenAICompletionClient
from shared.observability.audit import AuditRepository, get_audit_repository
from shared.observability.logger import configure_logging, get_logger
from shared.observability.middleware import (
    CorrelationIdMiddleware,
    RequestTimingMiddleware,
)

from .clients import (
    AuthContext,
    PracticeDetailsCache,
    PracticeDetailsClient,
    SessionClient,
    create_http_client,
)
from .constants import SERVICE_NAME
from .pipeline import ChatDependencies, handle_ai_chat
from .resolver import PracticeDetailsSource
from .streaming import BackgroundTaskSupervisor

configure_logging(service_name=SERVICE_NAME)

app = FastAPI(title="AI Chat Service")
router = APIRouter(prefix="/api/ai", tags=["ai"])

app.add_middleware(RequestTimingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
register_exception_handlers(app)

logger = get_logger(__name__)


@dataclass
class AIChatRuntime:
    """Process-wide collaborators, built once and closed on shutdown."""

    settings: Settings
    backend_http: httpx.AsyncClient
    completion_http: httpx.AsyncClient
    store: ConversationStore
    practice_cache: PracticeDetailsCache
    sessions: SessionClient
    completion_client: CompletionClient
    audit_repository: AuditRepository
    supervisor: BackgroundTaskSupervisor

    @classmethod
    def build(cls, settings: Settings) -> "AIChatRuntime":
        chat = settings.ai_chat
        backend_http = create_http_client(chat.backend_url, chat.http_timeout)
        # Stream reads are bounded by the stall timeout instead of httpx.
        completion_http = httpx.AsyncClient(
            base_url=settings.openai.base_url.rstrip("/"),
            timeout=httpx.Timeout(chat.http_timeout, read=None),
        )
        return cls(
            settings=settings,
            backend_http=backend_http,
            completion_http=completion_http,
            store=InMemoryConversationStore(),
            practice_cache=PracticeDetailsCache(
                PracticeDetailsClient(backend_http),
                ttl_seconds=chat.practice_cache_ttl,
            ),
            sessions=SessionClient(backend_http),
            completion_client=OpenAICompletionClient(completion_http, settings.openai),
            audit_repository=get_audit_repository(),
            supervisor=BackgroundTaskSupervisor(),
        )

    async def aclose(self) -> None:
        await self.supervisor.drain(timeout=self.settings.ai_chat.shutdown_grace)
        await self.backend_http.aclose()
        await self.completion_http.aclose()


def get_runtime(request: Request) -> AIChatRuntime:
    """Return the application's runtime, creating it on first use."""

    runtime: Optional[AIChatRuntime] = getattr(request.app.state, "ai_chat_runtime", None)
    if runtime is None:
        runtime = AIChatRuntime.build(get_settings())
        request.app.state.ai_chat_runtime = runtime
    return runtime


def get_service_settings() -> AIChatSettings:
    return get_settings().ai_chat


async def get_conversation_store(
    runtime: AIChatRuntime = Depends(get_runtime),
) -> ConversationStore:
    return runtime.store


async def get_practice_source(
    runtime: AIChatRuntime = Depends(get_runtime),
) -> PracticeDetailsSource:
    return runtime.practice_cache


async def get_completion_client(
    runtime: AIChatRuntime = Depends(get_runtime),
) -> CompletionClient:
    return runtime.completion_client


async def get_audit_repo(
    runtime: AIChatRuntime = Depends(get_runtime),
) -> AuditRepository:
    return runtime.audit_repository


async def get_task_supervisor(
    runtime: AIChatRuntime = Depends(get_runtime),
) -> Optional[BackgroundTaskSupervisor]:
    return runtime.supervisor


async def get_session_client(
    runtime: AIChatRuntime = Depends(get_runtime),
) -> SessionClient:
    return runtime.sessions


async def authenticate(
    request: Request,
    sessions: SessionClient = Depends(get_session_client),
) -> AuthContext:
    """Resolve the caller's identity or fail with 401."""

    return await sessions.authenticate(request.headers)


@app.on_event("shutdown")
async def shutdown_runtime() -> None:  # pragma: no cover - app lifecycle management
    runtime: Optional[AIChatRuntime] = getattr(app.state, "ai_chat_runtime", None)
    if runtime is not None:
        await runtime.aclose()
        app.state.ai_chat_runtime = None


@router.post("/chat")
async def ai_chat(
    request: Request,
    auth: AuthContext = Depends(authenticate),
    settings: AIChatSettings = Depends(get_service_settings),
    store: ConversationStore = Depends(get_conversation_store),
    practice_source: PracticeDetailsSource = Depends(get_practice_source),
    completion_client: CompletionClient = Depends(get_completion_client),
    audit_repository: AuditRepository = Depends(get_audit_repo),
    supervisor: Optional[BackgroundTaskSupervisor] = Depends(get_task_supervisor),
) -> Response:
    """Answer a chat turn with a JSON reply or a server-sent-event stream."""

    try:
        body = await request.json()
    except ValueError as exc:
        raise RequestValidationProblem("Request body must be valid JSON") from exc

    deps = ChatDependencies(
        settings=settings,
        store=store,
        practice_source=practice_source,
        completion_client=completion_client,
        audit_repository=audit_repository,
        supervisor=supervisor,
    )
    return await handle_ai_chat(body, auth, deps)


@app.get("/health", tags=["health"])
async def health() -> dict[str, str]:
    """Return a basic health response."""

    return {"status": "ok", "service": SERVICE_NAME}


app.include_router(router)


def get_app() -> FastAPI:
    """Return the configured FastAPI application."""

    return app


__all__ = [
    "AIChatRuntime",
    "ai_chat",
    "app",
    "authenticate",
    "get_app",
    "get_audit_repo",
    "get_completion_client",
    "get_conversation_store",
    "get_practice_source",
    "get_runtime",
    "get_service_settings",
    "get_session_client",
    "get_task_supervisor",
    "health",
]
