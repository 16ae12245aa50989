"""Rules every final reply must satisfy, with their canned substitutions."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Sequence

from shared.models.chat import ChatTurn
from shared.observability.logger import get_logger

from .constants import (
    CONSULTATION_CTA_PATTERN,
    EMPTY_REPLY_FALLBACK,
    INTAKE_DISCLAIMER_FALLBACK,
    LEGAL_DISCLAIMER,
    LEGAL_INTENT_PATTERN,
    READY_TO_SUBMIT_PATTERN,
    SUMMARY_MARKERS,
)

__all__ = [
    "ContractResult",
    "MISSING_DISCLAIMER",
    "TOO_MANY_QUESTIONS",
    "contains_disclaimer",
    "count_questions",
    "enforce_reply_contract",
    "has_legal_intent",
    "invites_consultation",
    "reads_as_submit_prompt",
]

MISSING_DISCLAIMER = "missing_disclaimer"
TOO_MANY_QUESTIONS = "too_many_questions"

logger = get_logger(__name__)


def _normalize_apostrophes(text: str) -> str:
    return text.replace("’", "'").replace("‘", "'")


_DISCLAIMER_NEEDLE = _normalize_apostrophes(LEGAL_DISCLAIMER).lower()


def has_legal_intent(messages: Sequence[ChatTurn]) -> bool:
    """Whether the latest user turn asks for something resembling legal advice."""

    for turn in reversed(messages):
        if turn.role == "user":
            return bool(LEGAL_INTENT_PATTERN.search(turn.content))
    return False


def contains_disclaimer(text: str) -> bool:
    return _DISCLAIMER_NEEDLE in _normalize_apostrophes(text).lower()


def count_questions(text: str) -> int:
    return text.count("?")


def invites_consultation(text: str) -> bool:
    return bool(CONSULTATION_CTA_PATTERN.search(text))


def reads_as_submit_prompt(text: str) -> bool:
    """Whether ``text`` summarizes the intake or asks the user to submit it."""

    lowered = text.lower()
    if any(marker in lowered for marker in SUMMARY_MARKERS):
        return True
    return bool(READY_TO_SUBMIT_PATTERN.search(text))


@dataclass(frozen=True)
class ContractResult:
    reply: str
    violations: tuple[str, ...] = field(default_factory=tuple)

    @property
    def substituted(self) -> bool:
        return bool(self.violations)


def enforce_reply_contract(
    reply: str,
    *,
    legal_intent: bool,
    is_intake_mode: bool,
    conversation_id: Optional[str] = None,
) -> ContractResult:
    """Check ``reply`` and return it, or its replacement when a rule is broken.

    The multi-question rule does not apply to intake conversations.
    """

    if reply == EMPTY_REPLY_FALLBACK:
        return ContractResult(reply)

    violations: list[str] = []
    if legal_intent and not contains_disclaimer(reply):
        violations.append(MISSING_DISCLAIMER)
    if not is_intake_mode and count_questions(reply) > 1:
        violations.append(TOO_MANY_QUESTIONS)
    if not violations:
        return ContractResult(reply)

    logger.warning(
        "ai_reply_contract_violated",
        conversation_id=conversation_id,
        violations=violations,
    )
    if MISSING_DISCLAIMER in violations and is_intake_mode:
        replacement = INTAKE_DISCLAIMER_FALLBACK
    else:
        replacement = EMPTY_REPLY_FALLBACK
    return ContractResult(replacement, tuple(violations))
