"""Deterministic replies that answer common questions without a model call."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from shared.models.chat import AIChatRequest

from .constants import (
    HOURS_NO_CONTACT_REPLY,
    HOURS_PREFIX,
    HOURS_QUESTION_PATTERN,
    LEGAL_DISCLAIMER,
    LEGAL_INTENT_PATTERN,
    NO_ACCESS_REPLY,
    SERVICE_QUESTION_PATTERN,
    SUBMIT_AFFIRMATION_PATTERN,
    SUBMIT_CONFIRMATION_REPLY,
)
from .contract import reads_as_submit_prompt
from .prompts import extract_service_names
from .resolver import ChatContext
from .scoring import is_intake_ready

__all__ = [
    "ShortCircuitReply",
    "evaluate_short_circuit",
    "format_service_list",
    "normalize_text",
]

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True)
class ShortCircuitReply:
    rule: str
    reply: str
    intake_ready_cta: bool = False


def normalize_text(text: str) -> str:
    return _NON_ALNUM.sub(" ", text.lower()).strip()


def format_service_list(names: list[str]) -> str:
    """Human list of at most three names plus a remainder count."""

    if not names:
        return ""
    if len(names) == 1:
        return names[0]
    if len(names) == 2:
        return f"{names[0]} and {names[1]}"
    if len(names) == 3:
        return f"{names[0]}, {names[1]}, and {names[2]}"
    return f"{', '.join(names[:3])}, and {len(names) - 3} more"


def _contact_field(details: Mapping[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = details.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _hours_reply(details: Mapping[str, Any]) -> str:
    phone = _contact_field(details, "business_phone", "businessPhone")
    email = _contact_field(details, "business_email", "businessEmail")
    website = _contact_field(details, "website")
    parts = [
        f"{label}: {value}"
        for label, value in (("phone", phone), ("email", email), ("website", website))
        if value
    ]
    if not parts:
        return HOURS_NO_CONTACT_REPLY
    return f"{HOURS_PREFIX} You can contact them via {', '.join(parts)}."


def _service_reply(question: str, names: list[str]) -> str:
    normalized_question = normalize_text(question)
    for name in names:
        if normalize_text(name) in normalized_question:
            return f"Yes — we handle {name}. Would you like to request a consultation?"
    return (
        f"We currently handle {format_service_list(names)}. "
        "Would you like to request a consultation?"
    )


def evaluate_short_circuit(
    request: AIChatRequest, context: ChatContext
) -> Optional[ShortCircuitReply]:
    """Return the first matching rule's reply, or ``None`` to call the model."""

    if not context.has_practice_access:
        return ShortCircuitReply("no_access", NO_ACCESS_REPLY)

    details = context.details or {}
    last_user = request.last_turn("user")
    last_assistant = request.last_turn("assistant")
    question = last_user.content if last_user else None

    if (
        context.is_intake_mode
        and is_intake_ready(context.stored_intake_state)
        and question is not None
        and last_assistant is not None
        and SUBMIT_AFFIRMATION_PATTERN.search(question)
        and reads_as_submit_prompt(last_assistant.content)
    ):
        return ShortCircuitReply(
            "submit_affirmation", SUBMIT_CONFIRMATION_REPLY, intake_ready_cta=True
        )

    if question is None:
        return None

    if HOURS_QUESTION_PATTERN.search(question):
        return ShortCircuitReply("hours", _hours_reply(details))

    if not context.is_general_qa_mode:
        return None

    if LEGAL_INTENT_PATTERN.search(question):
        return ShortCircuitReply("legal_disclaimer", LEGAL_DISCLAIMER)

    names = extract_service_names(details)
    if names and SERVICE_QUESTION_PATTERN.search(question):
        return ShortCircuitReply("services", _service_reply(question, names))

    return None
