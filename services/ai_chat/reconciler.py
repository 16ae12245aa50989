"""Reassembly and parsing of streamed tool-call arguments."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Optional

from shared.models.chat import IntakeFields, OnboardingFields, ToolCallDelta
from shared.observability.logger import get_logger

from .constants import (
    EDIT_MODAL_TARGETS,
    INTAKE_TOOL_NAME,
    MAX_QUICK_REPLIES,
    ONBOARDING_TOOL_NAME,
)
from .prompts import normalize_services
from .resolver import ChatContext

__all__ = ["ReconciledFields", "ToolCallBuffer", "reconcile_tool_call"]

logger = get_logger(__name__)


@dataclass
class ToolCallBuffer:
    """Accumulates a function call streamed as name and argument fragments."""

    name: str = ""
    arguments: list[str] = field(default_factory=list)

    def add(self, tool_calls: Optional[list[ToolCallDelta]]) -> None:
        for call in tool_calls or ():
            function = call.function
            if function is None:
                continue
            if function.name:
                self.name = function.name
            if function.arguments:
                self.arguments.append(function.arguments)

    @property
    def arguments_json(self) -> str:
        return "".join(self.arguments)

    def __bool__(self) -> bool:
        return bool(self.name or self.arguments)


@dataclass(frozen=True)
class ReconciledFields:
    intake_fields: Optional[dict[str, Any]] = None
    onboarding_fields: Optional[dict[str, Any]] = None
    quick_replies: Optional[list[str]] = None
    trigger_edit_modal: Optional[str] = None


def _expected_tool(context: ChatContext) -> Optional[str]:
    if context.is_intake_mode:
        return INTAKE_TOOL_NAME
    if context.is_onboarding_mode:
        return ONBOARDING_TOOL_NAME
    return None


def _peel_quick_replies(arguments: dict[str, Any]) -> Optional[list[str]]:
    value = arguments.pop("quickReplies", None)
    if not isinstance(value, list):
        return None
    replies = [item.strip() for item in value if isinstance(item, str) and item.strip()]
    return replies[:MAX_QUICK_REPLIES] or None


def _peel_edit_modal(arguments: dict[str, Any]) -> Optional[str]:
    value = arguments.pop("triggerEditModal", None)
    if isinstance(value, str) and value.strip() in EDIT_MODAL_TARGETS:
        return value.strip()
    return None


def _parse_arguments(buffer: ToolCallBuffer, conversation_id: str) -> Optional[dict[str, Any]]:
    raw = buffer.arguments_json
    if not raw.strip():
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.warning(
            "ai_tool_arguments_malformed",
            conversation_id=conversation_id,
            tool=buffer.name,
            error=str(exc),
            length=len(raw),
        )
        return None
    if not isinstance(parsed, dict):
        logger.warning(
            "ai_tool_arguments_malformed",
            conversation_id=conversation_id,
            tool=buffer.name,
            error=f"expected object, got {type(parsed).__name__}",
        )
        return None
    return parsed


def reconcile_tool_call(
    buffer: ToolCallBuffer,
    context: ChatContext,
    *,
    conversation_id: str,
) -> ReconciledFields:
    """Parse the buffered call if it targets the active mode's tool."""

    expected = _expected_tool(context)
    if expected is None or buffer.name != expected:
        if buffer.name:
            logger.info(
                "ai_tool_call_ignored",
                conversation_id=conversation_id,
                tool=buffer.name,
                expected=expected,
            )
        return ReconciledFields()

    arguments = _parse_arguments(buffer, conversation_id)
    if arguments is None:
        return ReconciledFields()

    quick_replies = _peel_quick_replies(arguments)

    if context.is_onboarding_mode:
        trigger = _peel_edit_modal(arguments)
        onboarding = OnboardingFields.model_validate(arguments).present_fields()
        return ReconciledFields(
            onboarding_fields=onboarding,
            quick_replies=quick_replies,
            trigger_edit_modal=trigger,
        )

    intake = IntakeFields.model_validate(arguments).present_fields()
    practice_area = intake.get("practiceArea")
    if practice_area:
        for service in normalize_services(context.details):
            if service.key == practice_area:
                intake["practiceAreaName"] = service.name
                break
    return ReconciledFields(intake_fields=intake, quick_replies=quick_replies)
