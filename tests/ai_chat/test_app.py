"""End-to-end tests for ``POST /api/ai/chat`` through the FastAPI app."""

from __future__ import annotations

import asyncio
import importlib
import json
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Optional

import pytest
from fastapi import Request
from httpx import ASGITransport, AsyncClient, Response

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

chat_app = importlib.import_module("services.ai_chat.app")

from repositories.conversations import InMemoryConversationStore  # noqa: E402
from services.ai_chat.clients import AuthContext, PracticeSnapshot  # noqa: E402
from services.ai_chat.streaming import BackgroundTaskSupervisor  # noqa: E402
from services.ai_chat.constants import (  # noqa: E402
    EMPTY_REPLY_FALLBACK,
    HOURS_PREFIX,
    INTAKE_DISCLAIMER_FALLBACK,
    NO_ACCESS_REPLY,
    SUBMIT_CONFIRMATION_REPLY,
)
from shared.config.settings import AIChatSettings  # noqa: E402
from shared.http.errors import AuthenticationRequiredError  # noqa: E402
from shared.models.chat import Conversation  # noqa: E402
from shared.observability.audit import InMemoryAuditRepository  # noqa: E402

PRACTICE = {
    "name": "Acme Law",
    "is_public": True,
    "business_phone": "555-0100",
    "services": [{"name": "Personal Injury", "key": "PI"}, {"name": "Family Law"}],
    "consultation_fee": 15000,
}

READY_STATE = {
    "practiceArea": "PI",
    "caseStrength": "strong",
    "description": "Rear-ended at a stop light last week",
    "city": "Austin",
    "state": "TX",
    "opposingParty": "Other driver",
    "desiredOutcome": "Medical bills covered",
}


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def _event(content: Optional[str] = None, *, name: Optional[str] = None, arguments: Optional[str] = None) -> bytes:
    delta: dict[str, Any] = {}
    if content is not None:
        delta["content"] = content
    if name is not None or arguments is not None:
        function = {key: value for key, value in (("name", name), ("arguments", arguments)) if value is not None}
        delta["tool_calls"] = [{"index": 0, "function": function}]
    return f"data: {json.dumps({'choices': [{'delta': delta}]})}\n\n".encode("utf-8")


class _ScriptedStream:
    def __init__(self, chunks: list[bytes], *, first_read_delay: float = 0.0) -> None:
        self._chunks = chunks
        self._first_read_delay = first_read_delay

    async def _iterate(self) -> AsyncIterator[bytes]:
        if self._first_read_delay:
            await asyncio.sleep(self._first_read_delay)
        for chunk in self._chunks:
            yield chunk

    def aiter_bytes(self) -> AsyncIterator[bytes]:
        return self._iterate()

    async def aclose(self) -> None:
        return None


class _ScriptedCompletionClient:
    def __init__(self) -> None:
        self.chunks: list[bytes] = [_event("Hello"), _event(" there."), b"data: [DONE]\n\n"]
        self.delay = 0.0
        self.first_read_delay = 0.0
        self.payloads: list[dict[str, Any]] = []

    async def open_stream(self, payload: dict[str, Any]) -> _ScriptedStream:
        self.payloads.append(dict(payload))
        if self.delay:
            await asyncio.sleep(self.delay)
        return _ScriptedStream(list(self.chunks), first_read_delay=self.first_read_delay)


class _StaticPracticeSource:
    def __init__(self, details: Optional[dict[str, Any]]) -> None:
        self.details = details
        self.calls: list[tuple[Optional[str], Optional[str], bool]] = []

    async def get(
        self,
        practice_id: Optional[str],
        practice_slug: Optional[str] = None,
        *,
        bypass_cache: bool = False,
    ) -> PracticeSnapshot:
        self.calls.append((practice_id, practice_slug, bypass_cache))
        return PracticeSnapshot.from_payload(self.details)


@dataclass
class _Harness:
    store: InMemoryConversationStore
    practices: _StaticPracticeSource
    completions: _ScriptedCompletionClient = field(default_factory=_ScriptedCompletionClient)
    audit: InMemoryAuditRepository = field(default_factory=InMemoryAuditRepository)
    settings: AIChatSettings = field(
        default_factory=lambda: AIChatSettings(
            upstream_timeout=0.5,
            stall_timeout=0.5,
            metadata_retry_wait=0.0,
            max_messages=5,
        )
    )

    def conversation(self, **user_info: Any) -> None:
        self.store.add(
            Conversation(
                id="conv-1",
                practice_id="practice-1",
                participants=["user-1"],
                user_info=user_info,
            )
        )


async def _authenticate(request: Request) -> AuthContext:
    user_id = request.headers.get("x-test-user")
    if not user_id:
        raise AuthenticationRequiredError("Authentication required")
    return AuthContext(user_id=user_id)


@pytest.fixture
def harness():
    state = _Harness(
        store=InMemoryConversationStore(),
        practices=_StaticPracticeSource(dict(PRACTICE)),
    )
    state.conversation()
    overrides = {
        chat_app.authenticate: _authenticate,
        chat_app.get_service_settings: lambda: state.settings,
        chat_app.get_conversation_store: lambda: state.store,
        chat_app.get_practice_source: lambda: state.practices,
        chat_app.get_completion_client: lambda: state.completions,
        chat_app.get_audit_repo: lambda: state.audit,
        chat_app.get_task_supervisor: lambda: None,
    }
    chat_app.app.dependency_overrides.update(overrides)
    try:
        yield state
    finally:
        chat_app.app.dependency_overrides.clear()


def _body(*turns: tuple[str, str], **extra: Any) -> dict[str, Any]:
    body: dict[str, Any] = {
        "conversationId": "conv-1",
        "messages": [{"role": role, "content": content} for role, content in turns],
    }
    body.update(extra)
    return body


async def _send(
    body: Any = None,
    *,
    user: Optional[str] = "user-1",
    method: str = "POST",
    content: Optional[bytes] = None,
) -> Response:
    transport = ASGITransport(app=chat_app.app)
    headers = {"x-test-user": user} if user else {}
    kwargs: dict[str, Any] = {"headers": headers}
    if content is not None:
        kwargs["content"] = content
        headers["content-type"] = "application/json"
    elif body is not None:
        kwargs["json"] = body
    try:
        async with AsyncClient(transport=transport, base_url="http://testserver") as client:
            return await client.request(method, "/api/ai/chat", **kwargs)
    finally:
        await transport.aclose()


def _events(response: Response) -> list[dict[str, Any]]:
    return [
        json.loads(frame[len("data: "):])
        for frame in response.text.split("\n\n")
        if frame.startswith("data: ")
    ]


def _tokens(events: list[dict[str, Any]]) -> str:
    return "".join(event["token"] for event in events if "token" in event)


def _single(events: list[dict[str, Any]], key: str) -> dict[str, Any]:
    matches = [event for event in events if key in event]
    assert len(matches) == 1, events
    return matches[0]


# ---------------------------------------------------------------------------
# Request rejection
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_missing_session_is_unauthorized(harness) -> None:
    response = await _send(["not", "an", "object"], user=None)

    assert response.status_code == 401
    assert response.headers["content-type"].startswith("application/json")
    assert harness.audit.events == []


@pytest.mark.anyio
async def test_wrong_method_is_not_allowed(harness) -> None:
    response = await _send(method="GET")

    assert response.status_code == 405
    assert response.json()["title"] == "Method Not Allowed"


@pytest.mark.anyio
async def test_invalid_json_body(harness) -> None:
    response = await _send(content=b"{not json")

    assert response.status_code == 400
    assert response.json()["detail"] == "Request body must be valid JSON"


@pytest.mark.anyio
async def test_message_limit_is_reported(harness) -> None:
    turns = [("user", f"message {index}") for index in range(6)]

    response = await _send(_body(*turns))

    assert response.status_code == 400
    assert response.json()["limit"] == "max_messages"
    assert harness.completions.payloads == []


@pytest.mark.anyio
async def test_unknown_conversation_is_not_found(harness) -> None:
    response = await _send(_body(("user", "Hi"), conversationId="conv-404"))

    assert response.status_code == 404
    assert response.json()["detail"] == "Conversation not found"


@pytest.mark.anyio
async def test_non_participant_is_forbidden(harness) -> None:
    response = await _send(_body(("user", "Hi")), user="user-2")

    assert response.status_code == 403
    assert harness.store.messages == []


# ---------------------------------------------------------------------------
# Short-circuit replies
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_hours_question_is_answered_without_the_model(harness) -> None:
    response = await _send(_body(("user", "What are your office hours?")))

    assert response.status_code == 200
    payload = response.json()
    assert payload["reply"].startswith(HOURS_PREFIX)
    assert "555-0100" in payload["reply"]
    assert payload["intakeFields"] is None
    assert payload["onboardingFields"] is None
    assert payload["onboardingProfile"] is None
    assert payload["message"]["content"] == payload["reply"]

    [stored] = harness.store.messages
    assert stored.id == payload["message"]["id"]
    assert stored.metadata == {"source": "ai", "model": harness.settings.model, "mode": "ASK_QUESTION"}
    assert harness.completions.payloads == []
    assert harness.audit.event_types() == ["ai_message_sent", "ai_message_received"]


@pytest.mark.anyio
async def test_private_practice_gets_no_access_reply(harness) -> None:
    harness.practices.details = {**PRACTICE, "is_public": False}

    response = await _send(_body(("user", "Tell me about the firm")))

    assert response.status_code == 200
    assert response.json()["reply"] == NO_ACCESS_REPLY


@pytest.mark.anyio
async def test_submit_affirmation_confirms_ready_intake(harness) -> None:
    harness.conversation(mode="REQUEST_CONSULTATION", intakeConversationState=READY_STATE)

    response = await _send(
        _body(
            ("user", "I was rear-ended"),
            ("assistant", "Here's what we have so far. Are you ready to submit?"),
            ("user", "yes"),
        )
    )

    assert response.json()["reply"] == SUBMIT_CONFIRMATION_REPLY
    assert harness.store.messages[0].metadata["intakeReadyCta"] is True


@pytest.mark.anyio
async def test_short_circuit_write_failure_is_service_unavailable(harness) -> None:
    harness.store.fail_message_writes = 1

    response = await _send(_body(("user", "What are your hours?")))

    assert response.status_code == 503
    assert response.json()["operation"] == "send_system_message"


# ---------------------------------------------------------------------------
# Streaming replies
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_general_question_streams_and_persists(harness) -> None:
    response = await _send(_body(("user", "Tell me about the firm")))

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    assert response.headers["x-accel-buffering"] == "no"

    events = _events(response)
    assert _tokens(events) == "Hello there."
    done = _single(events, "done")
    assert done == {"done": True, "intakeFields": None, "quickReplies": None}
    persisted = _single(events, "persisted")
    assert events[-1] == persisted

    [stored] = harness.store.messages
    assert persisted["messageId"] == stored.id
    assert stored.content == "Hello there."

    [payload] = harness.completions.payloads
    assert "tools" not in payload
    assert payload["messages"][-1] == {"role": "user", "content": "Tell me about the firm"}
    practice_context = payload["messages"][1]["content"]
    assert practice_context.startswith("PRACTICE_CONTEXT: ")
    assert json.loads(practice_context[len("PRACTICE_CONTEXT: "):])["consultation_fee"] == 150
    assert harness.audit.event_types() == ["ai_message_sent", "ai_message_received"]


@pytest.mark.anyio
async def test_multiple_questions_are_replaced_in_done_event(harness) -> None:
    harness.completions.chunks = [_event("Who are you?"), _event(" What do you need?")]

    events = _events(await _send(_body(("user", "Tell me about the firm"))))

    assert _tokens(events) == "Who are you? What do you need?"
    assert _single(events, "done")["reply"] == EMPTY_REPLY_FALLBACK
    assert harness.store.messages[0].content == EMPTY_REPLY_FALLBACK


@pytest.mark.anyio
async def test_intake_turn_extracts_fields_and_merges_state(harness) -> None:
    harness.conversation(intakeConversationState={"city": "Austin", "state": "TX"})
    arguments = json.dumps(
        {
            "practiceArea": "PI",
            "description": "Rear-ended at a light",
            "caseStrength": "needs_more_info",
            "quickReplies": ["Yes", "No"],
        }
    )
    harness.completions.chunks = [
        _event("Sorry to hear that. "),
        _event(name="update_intake_fields", arguments=arguments[:15]),
        _event(arguments=arguments[15:]),
        _event("Was anyone else involved?"),
    ]

    events = _events(
        await _send(_body(("user", "I was in a car crash"), mode="REQUEST_CONSULTATION"))
    )

    done = _single(events, "done")
    assert done["intakeFields"]["practiceAreaName"] == "Personal Injury"
    assert done["quickReplies"] == ["Yes", "No"]
    assert "reply" not in done
    assert "onboardingFields" not in done

    [payload] = harness.completions.payloads
    assert payload["tools"][0]["function"]["name"] == "update_intake_fields"

    [write] = harness.store.metadata_writes
    assert write["intakeConversationState"] == {
        "city": "Austin",
        "state": "TX",
        "practiceArea": "PI",
        "practiceAreaName": "Personal Injury",
        "description": "Rear-ended at a light",
        "caseStrength": "needs_more_info",
    }
    metadata = harness.store.messages[0].metadata
    assert metadata["mode"] == "REQUEST_CONSULTATION"
    assert metadata["quickReplies"] == ["Yes", "No"]
    assert "intakeReadyCta" not in metadata


@pytest.mark.anyio
async def test_legal_advice_without_disclaimer_is_never_streamed(harness) -> None:
    harness.completions.chunks = [_event("You should "), _event("definitely sue.")]

    events = _events(
        await _send(
            _body(("user", "Should I sue the other driver?"), mode="REQUEST_CONSULTATION")
        )
    )

    assert _tokens(events) == INTAKE_DISCLAIMER_FALLBACK
    assert "reply" not in _single(events, "done")
    metadata = harness.store.messages[0].metadata
    assert metadata["modeSelector"]["showRequestConsultation"] is True


@pytest.mark.anyio
async def test_upstream_timeout_falls_back_to_intake_question(harness) -> None:
    harness.settings = AIChatSettings(upstream_timeout=0.05, metadata_retry_wait=0.0)
    harness.completions.delay = 1.0

    events = _events(
        await _send(_body(("user", "I need help"), mode="REQUEST_CONSULTATION"))
    )

    assert _tokens(events).startswith("Thanks")
    assert _single(events, "done")["intakeFields"] is None
    assert "persisted" in events[-1]
    assert harness.store.metadata_writes == []


@pytest.mark.anyio
async def test_stall_before_first_token_streams_fallback(harness) -> None:
    harness.settings = AIChatSettings(
        upstream_timeout=0.5, stall_timeout=0.05, metadata_retry_wait=0.0
    )
    harness.completions.chunks = [_event("Too late.")]
    harness.completions.first_read_delay = 0.5

    events = _events(await _send(_body(("user", "Tell me about the firm"))))

    assert [event["token"] for event in events if "token" in event] == [EMPTY_REPLY_FALLBACK]
    assert _single(events, "done") == {"done": True, "intakeFields": None, "quickReplies": None}
    assert not any("error" in event for event in events)
    assert "persisted" in events[-1]
    assert harness.store.messages[0].content == EMPTY_REPLY_FALLBACK


@pytest.mark.anyio
async def test_whitespace_only_reply_streams_fallback_token(harness) -> None:
    harness.completions.chunks = [_event(" "), _event("\n")]

    events = _events(await _send(_body(("user", "Tell me about the firm"))))

    assert [event["token"] for event in events if "token" in event] == [EMPTY_REPLY_FALLBACK]
    assert "reply" not in _single(events, "done")
    assert harness.store.messages[0].content == EMPTY_REPLY_FALLBACK


@pytest.mark.anyio
async def test_detached_job_runs_under_supervisor(harness) -> None:
    supervisor = BackgroundTaskSupervisor()
    chat_app.app.dependency_overrides[chat_app.get_task_supervisor] = lambda: supervisor

    response = await _send(_body(("user", "Tell me about the firm")))
    await supervisor.drain(timeout=1.0)

    assert response.status_code == 200
    events = _events(response)
    assert [event["token"] for event in events if "token" in event] == ["Hello", " there."]
    assert _single(events, "done") == {"done": True, "intakeFields": None, "quickReplies": None}
    assert "persisted" in events[-1]
    assert supervisor.pending == 0
    assert harness.store.messages[0].content == "Hello there."
    assert harness.audit.event_types() == ["ai_message_sent", "ai_message_received"]


@pytest.mark.anyio
async def test_onboarding_turn_reports_profile(harness) -> None:
    harness.practices.details = {"name": "Acme Law", "is_public": False}
    harness.completions.chunks = [
        _event("Great description! "),
        _event(
            name="update_practice_fields",
            arguments=json.dumps(
                {"description": "Injury firm in Austin", "triggerEditModal": "basics"}
            ),
        ),
    ]

    events = _events(
        await _send(_body(("user", "We help injured people"), mode="PRACTICE_ONBOARDING"))
    )

    done = _single(events, "done")
    assert done["onboardingFields"] == {"description": "Injury firm in Austin"}
    assert done["onboardingProfile"]["completionScore"] == 25
    assert done["onboardingProfile"]["completedFields"] == ["name", "description"]
    assert done["triggerEditModal"] == "basics"
    assert harness.practices.calls == [("practice-1", None, True)]
    assert harness.store.messages[0].metadata["onboardingProfile"]["completionScore"] == 25


@pytest.mark.anyio
async def test_persist_failure_reports_error_event(harness) -> None:
    harness.store.fail_message_writes = 1

    events = _events(await _send(_body(("user", "Tell me about the firm"))))

    assert _single(events, "done")["done"] is True
    assert events[-1] == {"error": True, "message": EMPTY_REPLY_FALLBACK}
    assert not any("persisted" in event for event in events)
    assert harness.audit.event_types() == ["ai_message_sent"]
