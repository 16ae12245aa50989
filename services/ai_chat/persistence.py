"""Durable writes of the final reply and the merged conversation state."""

from __future__ import annotations

from typing import Any, Mapping, Optional

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    stop_after_attempt,
    wait_fixed,
)

from repositories.conversations import ConversationStore
from shared.http.errors import PersistenceError
from shared.models.chat import CaseStrength, Conversation, OnboardingProfile, StoredMessage
from shared.observability.logger import get_logger

from .constants import MODE_SELECTOR
from .contract import invites_consultation, reads_as_submit_prompt
from .resolver import ChatContext
from .scoring import is_intake_ready

__all__ = [
    "PersistenceCommitter",
    "build_message_metadata",
    "should_prompt_consultation",
    "short_circuit_intake_cta",
    "streaming_intake_cta",
]

logger = get_logger(__name__)

_READY_STRENGTHS = (CaseStrength.DEVELOPING.value, CaseStrength.STRONG.value)


def should_prompt_consultation(context: ChatContext, *, legal_intent: bool, reply: str) -> bool:
    """Whether the client should surface the consultation mode selector."""

    if context.has_slim_contact_draft:
        return False
    return legal_intent or invites_consultation(reply)


def streaming_intake_cta(
    context: ChatContext,
    *,
    merged_state: Optional[Mapping[str, Any]],
    reported_strength: Optional[str],
    reply: str,
) -> bool:
    if not context.is_intake_mode:
        return False
    if is_intake_ready(merged_state):
        return True
    return reported_strength in _READY_STRENGTHS and reads_as_submit_prompt(reply)


def short_circuit_intake_cta(context: ChatContext, *, confirmed: bool, reply: str) -> bool:
    if not context.is_intake_mode:
        return False
    if confirmed:
        return True
    return is_intake_ready(context.stored_intake_state) and reads_as_submit_prompt(reply)


def build_message_metadata(
    context: ChatContext,
    *,
    model: str,
    intake_ready_cta: bool,
    prompt_consultation: bool,
    intake_fields: Optional[Mapping[str, Any]] = None,
    onboarding_fields: Optional[Mapping[str, Any]] = None,
    onboarding_profile: Optional[OnboardingProfile] = None,
    quick_replies: Optional[list[str]] = None,
    trigger_edit_modal: Optional[str] = None,
) -> dict[str, Any]:
    """Metadata bag stored with the reply; identical shape on both reply paths."""

    metadata: dict[str, Any] = {
        "source": "ai",
        "model": model,
        "mode": context.mode.value,
    }
    if intake_fields:
        metadata["intakeFields"] = dict(intake_fields)
    if onboarding_fields:
        metadata["onboardingFields"] = dict(onboarding_fields)
    if onboarding_profile is not None:
        metadata["onboardingProfile"] = onboarding_profile.model_dump(mode="json", by_alias=True)
    if quick_replies:
        metadata["quickReplies"] = list(quick_replies)
    if trigger_edit_modal:
        metadata["triggerEditModal"] = trigger_edit_modal
    if intake_ready_cta:
        metadata["intakeReadyCta"] = True
    if prompt_consultation:
        metadata["modeSelector"] = dict(MODE_SELECTOR)
    return metadata


class PersistenceCommitter:
    """Writes one reply per request and folds intake state into the conversation."""

    def __init__(
        self,
        store: ConversationStore,
        *,
        metadata_attempts: int = 2,
        retry_wait: float = 0.1,
    ) -> None:
        self._store = store
        self._metadata_attempts = max(1, metadata_attempts)
        self._retry_wait = retry_wait

    async def commit_message(
        self,
        conversation: Conversation,
        *,
        content: str,
        metadata: Mapping[str, Any],
        recipient_user_id: str,
    ) -> StoredMessage:
        """Persist the reply; failure is a request-level error."""

        try:
            return await self._store.send_system_message(
                conversation_id=conversation.id,
                practice_id=conversation.practice_id or "",
                content=content,
                metadata=metadata,
                recipient_user_id=recipient_user_id,
            )
        except Exception as exc:
            logger.error(
                "ai_message_persist_failed",
                conversation_id=conversation.id,
                error=str(exc),
            )
            raise PersistenceError("send_system_message") from exc

    def _log_retry(self, conversation_id: str, retry_state: RetryCallState) -> None:
        error = None
        if retry_state.outcome is not None and retry_state.outcome.failed:
            error = retry_state.outcome.exception()
        logger.warning(
            "intake_state_write_retry",
            conversation_id=conversation_id,
            attempt=retry_state.attempt_number,
            error=str(error) if error else None,
        )

    async def write_intake_state(
        self,
        conversation: Conversation,
        merged_state: Mapping[str, Any],
    ) -> bool:
        """Store ``merged_state`` on the conversation metadata.

        Retries re-read the latest metadata first. A final failure is logged
        and reported as ``False``; it never fails the request.
        """

        metadata = dict(conversation.user_info)
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._metadata_attempts),
                wait=wait_fixed(self._retry_wait),
                reraise=True,
                before_sleep=lambda state: self._log_retry(conversation.id, state),
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        latest = await self._store.get_conversation(conversation.id)
                        if latest is not None:
                            metadata = dict(latest.user_info)
                    await self._store.update_conversation_metadata(
                        conversation.id,
                        conversation.practice_id or "",
                        {**metadata, "intakeConversationState": dict(merged_state)},
                    )
        except Exception as exc:
            logger.warning(
                "intake_state_write_failed",
                conversation_id=conversation.id,
                attempts=self._metadata_attempts,
                error=str(exc),
            )
            return False
        return True
