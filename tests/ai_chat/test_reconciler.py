"""Tests for tool-call reassembly and field extraction."""

from __future__ import annotations

import json
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from services.ai_chat.clients import PracticeSnapshot  # noqa: E402
from services.ai_chat.reconciler import ToolCallBuffer, reconcile_tool_call  # noqa: E402
from services.ai_chat.resolver import ChatContext  # noqa: E402
from shared.models.chat import ConversationMode, ToolCallDelta  # noqa: E402

PRACTICE = {"services": [{"name": "Personal Injury", "key": "PI"}, {"name": "Family Law"}]}


def _context(mode: ConversationMode, *, intake: bool = False) -> ChatContext:
    return ChatContext(
        mode=mode,
        practice=PracticeSnapshot(details=PRACTICE, is_public=True),
        is_intake_mode=intake,
    )


def _buffer(name: str, arguments: str, *, pieces: int = 3) -> ToolCallBuffer:
    buffer = ToolCallBuffer()
    size = max(1, len(arguments) // pieces)
    fragments = [arguments[i:i + size] for i in range(0, len(arguments), size)]
    buffer.add([ToolCallDelta.model_validate({"index": 0, "function": {"name": name}})])
    for fragment in fragments:
        buffer.add(
            [ToolCallDelta.model_validate({"index": 0, "function": {"arguments": fragment}})]
        )
    return buffer


INTAKE = _context(ConversationMode.REQUEST_CONSULTATION, intake=True)
ONBOARDING = _context(ConversationMode.PRACTICE_ONBOARDING)


def test_buffer_joins_fragments_in_order() -> None:
    arguments = json.dumps({"city": "Austin", "state": "TX"})

    buffer = _buffer("update_intake_fields", arguments, pieces=5)

    assert buffer.name == "update_intake_fields"
    assert buffer.arguments_json == arguments
    assert bool(ToolCallBuffer()) is False


def test_intake_fields_drop_invalid_values_and_enrich_practice_area() -> None:
    arguments = json.dumps(
        {
            "practiceArea": "PI",
            "caseStrength": "certain",
            "urgency": "time_sensitive",
            "hasDocuments": "yes",
            "city": "Austin",
            "quickReplies": ["Yes", " ", "No", "Maybe", "Later"],
        }
    )

    result = reconcile_tool_call(
        _buffer("update_intake_fields", arguments), INTAKE, conversation_id="conv-1"
    )

    assert result.intake_fields == {
        "practiceArea": "PI",
        "practiceAreaName": "Personal Injury",
        "urgency": "time_sensitive",
        "city": "Austin",
    }
    assert result.quick_replies == ["Yes", "No", "Maybe"]
    assert result.onboarding_fields is None


def test_tool_for_another_mode_is_ignored() -> None:
    buffer = _buffer("update_practice_fields", json.dumps({"name": "Acme"}))

    result = reconcile_tool_call(buffer, INTAKE, conversation_id="conv-1")

    assert result.intake_fields is None
    assert result.onboarding_fields is None


def test_general_mode_ignores_tool_calls() -> None:
    buffer = _buffer("update_intake_fields", json.dumps({"city": "Austin"}))

    result = reconcile_tool_call(
        buffer, _context(ConversationMode.GENERAL_QA), conversation_id="conv-1"
    )

    assert result.intake_fields is None


def test_truncated_arguments_yield_no_fields() -> None:
    buffer = _buffer("update_intake_fields", '{"city": "Aus')

    result = reconcile_tool_call(buffer, INTAKE, conversation_id="conv-1")

    assert result.intake_fields is None
    assert result.quick_replies is None


def test_onboarding_fields_and_edit_modal() -> None:
    arguments = json.dumps(
        {
            "name": "Acme Law",
            "services": ["Family Law", {"name": "Wills", "key": "WILLS"}, 7],
            "triggerEditModal": "contact",
            "quickReplies": ["Looks good"],
        }
    )

    result = reconcile_tool_call(
        _buffer("update_practice_fields", arguments), ONBOARDING, conversation_id="conv-1"
    )

    assert result.onboarding_fields == {
        "name": "Acme Law",
        "services": [{"name": "Family Law"}, {"name": "Wills", "key": "WILLS"}],
    }
    assert result.trigger_edit_modal == "contact"
    assert result.quick_replies == ["Looks good"]


def test_unknown_edit_modal_target_is_dropped() -> None:
    arguments = json.dumps({"name": "Acme Law", "triggerEditModal": "billing"})

    result = reconcile_tool_call(
        _buffer("update_practice_fields", arguments), ONBOARDING, conversation_id="conv-1"
    )

    assert result.trigger_edit_modal is None
    assert result.onboarding_fields == {"name": "Acme Law"}
