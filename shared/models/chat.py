"""Common chat-oriented data models for the AI chat services."""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
)


# ---------------------------------------------------------------------------
# Helper utilities
# ---------------------------------------------------------------------------


def to_camel(value: str) -> str:
    """Convert ``snake_case`` ``value`` into ``camelCase`` for JSON aliases."""

    components = value.split("_")
    if not components:
        return value
    first, *rest = components
    return first + "".join(token.capitalize() for token in rest)


def _clean_string(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def _clean_string_list(value: Any, *, limit: int | None = None) -> Optional[list[str]]:
    if not isinstance(value, list):
        return None
    items = [item.strip() for item in value if isinstance(item, str) and item.strip()]
    if limit is not None:
        items = items[:limit]
    return items or None


class CamelModel(BaseModel):
    """Base model applying camelCase aliases and ignoring unknown fields."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class LenientCamelModel(CamelModel):
    """Camel-cased record whose fields are each optional and checked in isolation.

    Values produced by the model are untrusted: a field with the wrong shape
    is dropped to ``None`` instead of invalidating the whole record.
    """

    @field_validator("*", mode="wrap")
    @classmethod
    def _drop_invalid(cls, value: Any, handler: Any) -> Any:
        try:
            return handler(value)
        except ValidationError:
            return None

    def present_fields(self) -> dict[str, Any]:
        """Return the camelCase payload restricted to non-null values."""

        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Inbound request
# ---------------------------------------------------------------------------


class ConversationMode(str, Enum):
    """Conversation modes understood by the orchestrator."""

    GENERAL_QA = "ASK_QUESTION"
    REQUEST_CONSULTATION = "REQUEST_CONSULTATION"
    PRACTICE_ONBOARDING = "PRACTICE_ONBOARDING"

    @classmethod
    def parse(cls, value: Any) -> Optional["ConversationMode"]:
        """Return the member matching ``value`` or ``None`` when unknown."""

        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        candidate = value.strip().upper()
        for member in cls:
            if candidate in (member.value, member.name):
                return member
        return None

    def __str__(self) -> str:  # pragma: no cover - trivial wrapper
        return self.value


class ChatTurn(CamelModel):
    """A single conversation turn as supplied by the client."""

    role: Literal["user", "assistant"]
    content: str

    model_config = ConfigDict(frozen=True, extra="ignore")


class AIChatRequest(CamelModel):
    """Validated body of ``POST /api/ai/chat``."""

    conversation_id: str = Field(..., min_length=1)
    practice_slug: Optional[str] = None
    mode: Optional[ConversationMode] = None
    intake_submitted: Optional[bool] = None
    messages: list[ChatTurn] = Field(default_factory=list)
    additional_context: Optional[str] = None

    @field_validator("mode", mode="before")
    @classmethod
    def _parse_mode(cls, value: Any) -> Optional[ConversationMode]:
        return ConversationMode.parse(value)

    @field_validator("practice_slug", "additional_context", mode="before")
    @classmethod
    def _strip_optional(cls, value: Any) -> Optional[str]:
        return _clean_string(value)

    def last_turn(self, role: str) -> Optional[ChatTurn]:
        """Return the most recent turn authored by ``role``."""

        for turn in reversed(self.messages):
            if turn.role == role:
                return turn
        return None


# ---------------------------------------------------------------------------
# Structured fields extracted by the model
# ---------------------------------------------------------------------------


class CaseStrength(str, Enum):
    NEEDS_MORE_INFO = "needs_more_info"
    DEVELOPING = "developing"
    STRONG = "strong"


class Urgency(str, Enum):
    ROUTINE = "routine"
    TIME_SENSITIVE = "time_sensitive"
    EMERGENCY = "emergency"


class IntakeFields(LenientCamelModel):
    """Legal intake fields reported through ``update_intake_fields``."""

    practice_area: Optional[str] = None
    practice_area_name: Optional[str] = None
    description: Optional[str] = None
    urgency: Optional[Urgency] = None
    opposing_party: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    address_line1: Optional[str] = Field(default=None, alias="addressLine1")
    address_line2: Optional[str] = Field(default=None, alias="addressLine2")
    desired_outcome: Optional[str] = None
    court_date: Optional[str] = None
    income: Optional[str] = None
    household_size: Optional[float] = None
    has_documents: Optional[bool] = None
    eligibility_signals: Optional[list[str]] = None
    case_strength: Optional[CaseStrength] = None
    missing_summary: Optional[str] = None

    @field_validator("has_documents", mode="before")
    @classmethod
    def _strict_bool(cls, value: Any) -> Optional[bool]:
        return value if isinstance(value, bool) else None

    @field_validator("eligibility_signals", mode="before")
    @classmethod
    def _signals(cls, value: Any) -> Optional[list[str]]:
        return _clean_string_list(value)


class OnboardingAddress(LenientCamelModel):
    address: Optional[str] = None
    apartment: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None


class OnboardingService(LenientCamelModel):
    name: Optional[str] = None
    key: Optional[str] = None
    description: Optional[str] = None


class OnboardingFields(LenientCamelModel):
    """Practice profile fields reported through ``update_practice_fields``."""

    name: Optional[str] = None
    description: Optional[str] = None
    website: Optional[str] = None
    contact_phone: Optional[str] = None
    business_email: Optional[str] = None
    address: Optional[OnboardingAddress] = None
    services: Optional[list[OnboardingService]] = None
    intro_message: Optional[str] = None
    accent_color: Optional[str] = None
    completion_score: Optional[float] = None
    missing_fields: Optional[list[str]] = None

    @field_validator("services", mode="before")
    @classmethod
    def _services(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return None
        entries = [
            {"name": item} if isinstance(item, str) else item
            for item in value
            if isinstance(item, (str, dict))
        ]
        return entries[:20] or None

    @field_validator("missing_fields", mode="before")
    @classmethod
    def _missing(cls, value: Any) -> Optional[list[str]]:
        return _clean_string_list(value)


# ---------------------------------------------------------------------------
# Derived onboarding profile
# ---------------------------------------------------------------------------


class SummaryField(CamelModel):
    label: str
    value: str


class OnboardingProfile(CamelModel):
    """Deterministic snapshot of how complete a practice profile is."""

    completion_score: int = Field(default=0, ge=0, le=100)
    completed_fields: list[str] = Field(default_factory=list)
    missing_fields: list[str] = Field(default_factory=list)
    summary_fields: list[SummaryField] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Conversation store records
# ---------------------------------------------------------------------------


class Conversation(CamelModel):
    """Conversation record as exposed by the conversation store."""

    id: str
    practice_id: Optional[str] = None
    participants: list[str] = Field(default_factory=list)
    user_info: dict[str, Any] = Field(default_factory=dict)

    @field_validator("user_info", mode="before")
    @classmethod
    def _metadata(cls, value: Any) -> dict[str, Any]:
        return dict(value) if isinstance(value, dict) else {}


class StoredMessage(CamelModel):
    """A persisted system turn."""

    id: str
    conversation_id: str
    practice_id: Optional[str] = None
    role: str = "system"
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    recipient_user_id: Optional[str] = None
    created_at: Optional[str] = None


# ---------------------------------------------------------------------------
# Upstream completion stream chunks
# ---------------------------------------------------------------------------


class FunctionDelta(BaseModel):
    name: Optional[str] = None
    arguments: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


class ToolCallDelta(BaseModel):
    index: Optional[int] = None
    function: Optional[FunctionDelta] = None

    model_config = ConfigDict(extra="ignore")


class ChunkDelta(BaseModel):
    content: Optional[str] = None
    tool_calls: Optional[list[ToolCallDelta]] = None

    model_config = ConfigDict(extra="ignore")


class ChunkChoice(BaseModel):
    delta: Optional[ChunkDelta] = None
    finish_reason: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


class CompletionChunk(BaseModel):
    """One ``data:`` payload of an OpenAI-style streaming completion."""

    choices: list[ChunkChoice] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")

    def first_delta(self) -> Optional[ChunkDelta]:
        if not self.choices:
            return None
        return self.choices[0].delta


__all__ = [
    "AIChatRequest",
    "CamelModel",
    "CaseStrength",
    "ChatTurn",
    "ChunkChoice",
    "ChunkDelta",
    "CompletionChunk",
    "Conversation",
    "ConversationMode",
    "FunctionDelta",
    "IntakeFields",
    "LenientCamelModel",
    "OnboardingAddress",
    "OnboardingFields",
    "OnboardingProfile",
    "OnboardingService",
    "StoredMessage",
    "SummaryField",
    "ToolCallDelta",
    "Urgency",
    "to_camel",
]
