"""Resolution of the conversation mode and practice context for a request."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Protocol

from shared.models.chat import AIChatRequest, Conversation, ConversationMode

from .clients import PracticeSnapshot

__all__ = [
    "ChatContext",
    "PracticeDetailsSource",
    "has_slim_contact_draft",
    "resolve_chat_context",
    "resolve_mode",
]

_SLIM_DRAFT_KEYS = ("name", "email", "phone")


class PracticeDetailsSource(Protocol):
    async def get(
        self,
        practice_id: Optional[str],
        practice_slug: Optional[str] = None,
        *,
        bypass_cache: bool = False,
    ) -> PracticeSnapshot:  # pragma: no cover - interface definition
        ...


@dataclass(frozen=True)
class ChatContext:
    """Per-request flags computed once and shared by every later stage."""

    mode: ConversationMode
    practice: PracticeSnapshot
    is_intake_mode: bool
    metadata: dict[str, Any] = field(default_factory=dict)
    stored_intake_state: Optional[dict[str, Any]] = None
    has_slim_contact_draft: bool = False
    intake_submitted: bool = False

    @property
    def is_onboarding_mode(self) -> bool:
        return self.mode is ConversationMode.PRACTICE_ONBOARDING

    @property
    def is_general_qa_mode(self) -> bool:
        return not (self.is_intake_mode or self.is_onboarding_mode)

    @property
    def details(self) -> Optional[dict[str, Any]]:
        return self.practice.details

    @property
    def has_practice_access(self) -> bool:
        """Whether practice details are usable for this conversation."""

        if self.practice.details is None:
            return False
        return self.practice.is_public or self.is_onboarding_mode


def _record(value: Any) -> Optional[dict[str, Any]]:
    return dict(value) if isinstance(value, Mapping) else None


def has_slim_contact_draft(metadata: Mapping[str, Any]) -> bool:
    draft = _record(metadata.get("intakeSlimContactDraft"))
    if not draft:
        return False
    return any(
        isinstance(draft.get(key), str) and draft[key].strip() for key in _SLIM_DRAFT_KEYS
    )


def resolve_mode(request: AIChatRequest, metadata: Mapping[str, Any]) -> ConversationMode:
    """Request override, else the mode stored on the conversation, else Q&A."""

    if request.mode is not None:
        return request.mode
    stored = ConversationMode.parse(metadata.get("mode"))
    return stored or ConversationMode.GENERAL_QA


async def resolve_chat_context(
    request: AIChatRequest,
    conversation: Conversation,
    practice_source: PracticeDetailsSource,
) -> ChatContext:
    metadata = dict(conversation.user_info)
    mode = resolve_mode(request, metadata)
    onboarding = mode is ConversationMode.PRACTICE_ONBOARDING

    # Onboarding edits the profile it reads, so cached details would be stale.
    practice = await practice_source.get(
        conversation.practice_id,
        request.practice_slug,
        bypass_cache=onboarding,
    )

    slim_draft = has_slim_contact_draft(metadata)
    brief_active = metadata.get("intakeAiBriefActive") is True
    intake_submitted = (
        request.intake_submitted is True or metadata.get("intakeSubmitted") is True
    )
    is_intake = (
        not onboarding
        and (mode is ConversationMode.REQUEST_CONSULTATION or slim_draft or brief_active)
        and not intake_submitted
        and practice.is_public
    )

    return ChatContext(
        mode=mode,
        practice=practice,
        is_intake_mode=is_intake,
        metadata=metadata,
        stored_intake_state=_record(metadata.get("intakeConversationState")),
        has_slim_contact_draft=slim_draft,
        intake_submitted=intake_submitted,
    )
