"""Request pipeline for ``POST /api/ai/chat``.

Validation, authorization and mode resolution run inline. A short-circuit
match is answered with a plain JSON body; otherwise an SSE response is
returned immediately while a detached job streams the completion, enforces
the reply contract, emits ``done`` and persists the result exactly once.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from fastapi.responses import JSONResponse, StreamingResponse
from starlette.responses import Response

from repositories.conversations import ConversationStore
from shared.config.settings import AIChatSettings
from shared.http.errors import (
    ForbiddenError,
    RequestValidationProblem,
    ResourceNotFoundError,
)
from shared.llm.completions import CompletionClient
from shared.models.chat import AIChatRequest, Conversation
from shared.observability.audit import AuditActor, AuditRepository, record_session_audit
from shared.observability.logger import bind_conversation, get_logger

from .clients import AuthContext
from .constants import EMPTY_REPLY_FALLBACK
from .contract import enforce_reply_contract, has_legal_intent
from .persistence import (
    PersistenceCommitter,
    build_message_metadata,
    short_circuit_intake_cta,
    should_prompt_consultation,
    streaming_intake_cta,
)
from .prompts import build_completion_payload
from .reconciler import ReconciledFields, ToolCallBuffer, reconcile_tool_call
from .resolver import ChatContext, PracticeDetailsSource, resolve_chat_context
from .scoring import build_intake_fallback_reply, build_onboarding_profile, merge_intake_state
from .short_circuit import ShortCircuitReply, evaluate_short_circuit
from .streaming import (
    SSE_HEADERS,
    BackgroundTaskSupervisor,
    CompletionStreamer,
    SSEChannel,
    StreamState,
    TokenGate,
    spawn_detached,
)
from .validation import validate_chat_request

__all__ = ["ChatDependencies", "handle_ai_chat"]

logger = get_logger(__name__)


@dataclass
class ChatDependencies:
    """Collaborators for one request, resolved by the HTTP layer."""

    settings: AIChatSettings
    store: ConversationStore
    practice_source: PracticeDetailsSource
    completion_client: CompletionClient
    audit_repository: AuditRepository
    supervisor: Optional[BackgroundTaskSupervisor] = None

    def committer(self) -> PersistenceCommitter:
        return PersistenceCommitter(
            self.store,
            metadata_attempts=self.settings.metadata_write_attempts,
            retry_wait=self.settings.metadata_retry_wait,
        )


async def _load_conversation(
    request: AIChatRequest, auth: AuthContext, store: ConversationStore
) -> Conversation:
    conversation = await store.get_conversation(request.conversation_id)
    if conversation is None:
        raise ResourceNotFoundError(
            "conversation",
            request.conversation_id,
            detail="Conversation not found",
        )
    if auth.user_id not in conversation.participants:
        raise ForbiddenError("User is not a participant in this conversation")
    if not conversation.practice_id:
        raise RequestValidationProblem("Conversation is missing practice context")
    return conversation


async def _audit_received(conversation: Conversation, deps: ChatDependencies) -> None:
    await record_session_audit(
        "ai_message_received",
        conversation_id=conversation.id,
        practice_id=conversation.practice_id,
        actor_type=AuditActor.SYSTEM,
        repository=deps.audit_repository,
    )


async def _reply_short_circuit(
    match: ShortCircuitReply,
    request: AIChatRequest,
    context: ChatContext,
    conversation: Conversation,
    auth: AuthContext,
    deps: ChatDependencies,
) -> JSONResponse:
    legal_intent = has_legal_intent(request.messages)
    onboarding_profile = (
        build_onboarding_profile(context.details) if context.is_onboarding_mode else None
    )
    metadata = build_message_metadata(
        context,
        model=deps.settings.model,
        intake_ready_cta=short_circuit_intake_cta(
            context, confirmed=match.intake_ready_cta, reply=match.reply
        ),
        prompt_consultation=should_prompt_consultation(
            context, legal_intent=legal_intent, reply=match.reply
        ),
    )
    stored = await deps.committer().commit_message(
        conversation,
        content=match.reply,
        metadata=metadata,
        recipient_user_id=auth.user_id,
    )
    await _audit_received(conversation, deps)
    logger.info("ai_reply_short_circuited", rule=match.rule, message_id=stored.id)

    return JSONResponse(
        {
            "reply": match.reply,
            "message": stored.model_dump(mode="json", by_alias=True),
            "intakeFields": None,
            "onboardingFields": None,
            "onboardingProfile": (
                onboarding_profile.model_dump(mode="json", by_alias=True)
                if onboarding_profile is not None
                else None
            ),
        }
    )


def _fallback_reply(context: ChatContext, fields: ReconciledFields) -> str:
    if context.is_intake_mode:
        return build_intake_fallback_reply(fields.intake_fields)
    return EMPTY_REPLY_FALLBACK


async def _stream_and_persist(
    request: AIChatRequest,
    context: ChatContext,
    conversation: Conversation,
    auth: AuthContext,
    deps: ChatDependencies,
    channel: SSEChannel,
) -> None:
    conversation_id = conversation.id
    legal_intent = has_legal_intent(request.messages)
    gate = TokenGate(channel, hold_until_disclaimer=legal_intent)
    buffer = ToolCallBuffer()
    streamer = CompletionStreamer(
        deps.completion_client,
        upstream_timeout=deps.settings.upstream_timeout,
        stall_timeout=deps.settings.stall_timeout,
        conversation_id=conversation_id,
    )

    try:
        payload = build_completion_payload(
            request,
            context,
            model=deps.settings.model,
            temperature=deps.settings.temperature,
        )
        await streamer.run(payload, gate=gate, buffer=buffer)

        fields = (
            reconcile_tool_call(buffer, context, conversation_id=conversation_id)
            if streamer.produced_stream
            else ReconciledFields()
        )

        streamer.transition(StreamState.FINALIZING)
        raw_reply = gate.text
        reply = raw_reply if raw_reply.strip() else _fallback_reply(context, fields)
        reply = enforce_reply_contract(
            reply,
            legal_intent=legal_intent,
            is_intake_mode=context.is_intake_mode,
            conversation_id=conversation_id,
        ).reply
        if not gate.emitted_text.strip():
            gate.emit(reply)

        merged_state = (
            merge_intake_state(context.stored_intake_state, fields.intake_fields)
            if context.is_intake_mode
            else None
        )
        onboarding_profile = (
            build_onboarding_profile(context.details, fields.onboarding_fields)
            if context.is_onboarding_mode
            else None
        )

        done: dict[str, Any] = {
            "done": True,
            "intakeFields": fields.intake_fields,
            "quickReplies": fields.quick_replies,
        }
        if context.is_onboarding_mode:
            done["onboardingFields"] = fields.onboarding_fields
            done["onboardingProfile"] = (
                onboarding_profile.model_dump(mode="json", by_alias=True)
                if onboarding_profile is not None
                else None
            )
        if fields.trigger_edit_modal:
            done["triggerEditModal"] = fields.trigger_edit_modal
        if gate.emitted_text != reply:
            done["reply"] = reply
        channel.send(done)

        reported_strength = (fields.intake_fields or {}).get("caseStrength")
        metadata = build_message_metadata(
            context,
            model=deps.settings.model,
            intake_ready_cta=streaming_intake_cta(
                context,
                merged_state=merged_state,
                reported_strength=reported_strength,
                reply=reply,
            ),
            prompt_consultation=should_prompt_consultation(
                context, legal_intent=legal_intent, reply=reply
            ),
            intake_fields=fields.intake_fields,
            onboarding_fields=fields.onboarding_fields,
            onboarding_profile=onboarding_profile,
            quick_replies=fields.quick_replies,
            trigger_edit_modal=fields.trigger_edit_modal,
        )

        committer = deps.committer()
        stored = await committer.commit_message(
            conversation,
            content=reply,
            metadata=metadata,
            recipient_user_id=auth.user_id,
        )
        if context.is_intake_mode and merged_state:
            await committer.write_intake_state(conversation, merged_state)
        channel.send({"persisted": True, "messageId": stored.id})

        await _audit_received(conversation, deps)
        logger.info(
            "ai_reply_streamed",
            message_id=stored.id,
            stalled=streamer.stalled,
            substituted=gate.emitted_text != reply,
        )
    except Exception as exc:
        logger.exception(
            "ai_stream_job_failed",
            conversation_id=conversation_id,
            state=streamer.state.value,
            error=str(exc),
        )
        channel.send({"error": True, "message": EMPTY_REPLY_FALLBACK})
    finally:
        streamer.transition(StreamState.CLOSED)
        channel.close()


async def handle_ai_chat(
    body: Any,
    auth: AuthContext,
    deps: ChatDependencies,
) -> Response:
    """Answer one chat turn with either a JSON reply or an SSE stream."""

    request = validate_chat_request(body, deps.settings)
    conversation = await _load_conversation(request, auth, deps.store)

    await record_session_audit(
        "ai_message_sent",
        conversation_id=conversation.id,
        practice_id=conversation.practice_id,
        actor_type=AuditActor.USER,
        actor_id=auth.user_id,
        repository=deps.audit_repository,
    )

    context = await resolve_chat_context(request, conversation, deps.practice_source)

    with bind_conversation(conversation.id, mode=context.mode.value):
        logger.info(
            "ai_chat_request_resolved",
            intake=context.is_intake_mode,
            onboarding=context.is_onboarding_mode,
            practice_found=context.details is not None,
            turns=len(request.messages),
        )

        match = evaluate_short_circuit(request, context)
        if match is not None:
            return await _reply_short_circuit(match, request, context, conversation, auth, deps)

        channel = SSEChannel()
        await spawn_detached(
            _stream_and_persist(request, context, conversation, auth, deps, channel),
            deps.supervisor,
            name=f"ai-chat:{conversation.id}",
        )
        return StreamingResponse(
            channel.stream(),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )
