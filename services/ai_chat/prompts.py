"""System prompts, tool schemas and upstream request construction."""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from shared.models.chat import AIChatRequest

from .constants import (
    EDIT_MODAL_TARGETS,
    INTAKE_TOOL_NAME,
    LEGAL_DISCLAIMER,
    MAX_ONBOARDING_SERVICES,
    MAX_QUICK_REPLIES,
    ONBOARDING_TOOL_NAME,
)
from .resolver import ChatContext

__all__ = [
    "INTAKE_TOOL",
    "ONBOARDING_TOOL",
    "ServiceEntry",
    "build_completion_payload",
    "build_general_qa_prompt",
    "build_intake_system_prompt",
    "build_onboarding_system_prompt",
    "extract_service_names",
    "normalize_practice_details_for_ai",
    "normalize_services",
]

_MONEY_FIELDS = (
    "consultation_fee",
    "consultationFee",
    "payment_link_prefill_amount",
    "paymentLinkPrefillAmount",
)
_KEY_SANITIZER = re.compile(r"[^A-Z0-9]+")


@dataclass(frozen=True)
class ServiceEntry:
    name: str
    key: str


def _service_list(details: Optional[Mapping[str, Any]]) -> list[Any]:
    if not details:
        return []
    services = details.get("services")
    return services if isinstance(services, list) else []


def extract_service_names(details: Optional[Mapping[str, Any]]) -> list[str]:
    """Names of the practice's services, in stored order."""

    names = []
    for service in _service_list(details):
        if isinstance(service, Mapping) and isinstance(service.get("name"), str):
            name = service["name"].strip()
            if name:
                names.append(name)
    return names


def normalize_services(details: Optional[Mapping[str, Any]]) -> list[ServiceEntry]:
    """Services with a display name and a stable key for the intake prompt."""

    entries: list[ServiceEntry] = []
    for service in _service_list(details):
        if not isinstance(service, Mapping):
            continue
        name = ""
        for field in ("name", "title"):
            if isinstance(service.get(field), str):
                name = service[field].strip()
                break
        if not name:
            continue
        key = ""
        for field in ("key", "service_key"):
            if isinstance(service.get(field), str):
                key = service[field].strip()
                break
        entries.append(ServiceEntry(name=name, key=key or _KEY_SANITIZER.sub("_", name.upper())))
    return entries


def normalize_practice_details_for_ai(
    details: Optional[Mapping[str, Any]],
) -> Optional[dict[str, Any]]:
    """Copy of ``details`` with money fields converted from cents to units."""

    if details is None:
        return None
    normalized = dict(details)
    for field in _MONEY_FIELDS:
        if field not in normalized:
            continue
        value = normalized[field]
        if value is None or isinstance(value, bool):
            continue
        if isinstance(value, (int, float)) and math.isfinite(value):
            normalized[field] = value / 100
    return normalized


# ---------------------------------------------------------------------------
# Tool schemas
# ---------------------------------------------------------------------------


def _quick_replies_schema() -> dict[str, Any]:
    return {
        "type": "array",
        "maxItems": MAX_QUICK_REPLIES,
        "items": {"type": "string"},
        "description": (
            "2-3 short suggested answers for predictable questions. "
            "Omit for open-ended questions."
        ),
    }


INTAKE_TOOL: dict[str, Any] = {
    "type": "function",
    "function": {
        "name": INTAKE_TOOL_NAME,
        "description": "Extract structured intake fields from the conversation so far",
        "parameters": {
            "type": "object",
            "properties": {
                "practiceArea": {
                    "type": "string",
                    "description": "The service key from the firm services list, e.g. FAMILY_LAW",
                },
                "description": {
                    "type": "string",
                    "description": "Plain-English summary of the case, max 300 chars",
                },
                "urgency": {
                    "type": "string",
                    "enum": ["routine", "time_sensitive", "emergency"],
                },
                "opposingParty": {
                    "type": "string",
                    "description": "Name or description of the opposing party if mentioned",
                },
                "city": {"type": "string"},
                "state": {"type": "string", "description": "2-letter US state code"},
                "postalCode": {"type": "string"},
                "country": {"type": "string"},
                "addressLine1": {"type": "string"},
                "addressLine2": {"type": "string"},
                "desiredOutcome": {
                    "type": "string",
                    "description": "What the user wants to achieve, max 150 chars",
                },
                "courtDate": {
                    "type": "string",
                    "description": "Any known court date or deadline in plain text",
                },
                "income": {
                    "type": "string",
                    "description": "Monthly or yearly income if mentioned",
                },
                "householdSize": {
                    "type": "number",
                    "description": "Number of people in the household",
                },
                "hasDocuments": {
                    "type": "boolean",
                    "description": "Whether the user has mentioned having relevant documents",
                },
                "eligibilitySignals": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Any income, household, or fee-related details mentioned",
                },
                "quickReplies": _quick_replies_schema(),
                "caseStrength": {
                    "type": "string",
                    "enum": ["needs_more_info", "developing", "strong"],
                },
                "missingSummary": {
                    "type": "string",
                    "description": (
                        "Plain English: what would most improve case strength. "
                        "Null if strong."
                    ),
                },
            },
            "required": ["caseStrength"],
        },
    },
}

ONBOARDING_TOOL: dict[str, Any] = {
    "type": "function",
    "function": {
        "name": ONBOARDING_TOOL_NAME,
        "description": "Extract practice profile fields the owner has provided so far",
        "parameters": {
            "type": "object",
            "properties": {
                "name": {"type": "string", "description": "Public name of the practice"},
                "description": {
                    "type": "string",
                    "description": "Short public description of the practice",
                },
                "website": {"type": "string"},
                "contactPhone": {"type": "string"},
                "businessEmail": {"type": "string"},
                "address": {
                    "type": "object",
                    "properties": {
                        "address": {"type": "string"},
                        "apartment": {"type": "string"},
                        "city": {"type": "string"},
                        "state": {"type": "string"},
                        "postalCode": {"type": "string"},
                        "country": {"type": "string"},
                    },
                },
                "services": {
                    "type": "array",
                    "maxItems": MAX_ONBOARDING_SERVICES,
                    "items": {
                        "type": "object",
                        "properties": {
                            "name": {"type": "string"},
                            "key": {"type": "string"},
                            "description": {"type": "string"},
                        },
                        "required": ["name"],
                    },
                },
                "introMessage": {
                    "type": "string",
                    "description": "Greeting shown to visitors when they open the chat",
                },
                "accentColor": {
                    "type": "string",
                    "description": "Brand color as a hex code, e.g. #D4AF37",
                },
                "completionScore": {"type": "number", "minimum": 0, "maximum": 100},
                "missingFields": {"type": "array", "items": {"type": "string"}},
                "quickReplies": _quick_replies_schema(),
                "triggerEditModal": {
                    "type": "string",
                    "enum": list(EDIT_MODAL_TARGETS),
                    "description": "Open the matching settings form when the owner asks to edit directly",
                },
            },
        },
    },
}


# ---------------------------------------------------------------------------
# System prompts
# ---------------------------------------------------------------------------


def build_intake_system_prompt(services: list[ServiceEntry]) -> str:
    if services:
        service_list = "\n".join(f"- {service.name} (key: {service.key})" for service in services)
    else:
        service_list = "- General intake (no service list provided)"

    return f"""You are a warm, helpful legal intake assistant for this law firm. Your job is to understand someone's legal situation so they can be connected with the right attorney.

This firm handles the following practice areas only:
{service_list}

Conversation style:
- Be warm, human, and concise, like a knowledgeable friend rather than a form
- Ask ONE focused question at a time
- Never give legal advice
- Never ask for personal contact info (name, email, phone); that is already collected
- Only identify practice areas from the list above

Your goal through the conversation is to naturally learn:
1. What is happening (in their words); ask this first, openly
2. Which practice area applies
3. Their city and state ("Just so we can match you with someone local, what city and state are you in?")
4. Whether there's an opposing party ("Is there another party involved, like a person, company, or employer?")
5. Any time pressure or deadlines
6. What outcome they're hoping for

Do NOT ask for all of this at once. Follow the natural thread of the conversation. Once you know what's happening, ask for one missing piece at a time.

After every user message, call {INTAKE_TOOL_NAME} with everything you've learned so far, your caseStrength assessment, and missingSummary.

caseStrength rules:
- needs_more_info: practice area unknown OR description is fewer than 10 words
- developing: practice area known + description has substance, but city/state OR opposing party are still unknown
- strong: practice area known + description 20+ words + city and state known + at least one of (opposing party OR desired outcome OR urgency) known

When caseStrength is "developing" or "strong", end your message with a brief summary of what you've collected and ask if they're ready to submit.

If the user says "yes", "sure", "go ahead", "ready", or similar in response to your ready-to-submit question, do NOT ask another intake question. Confirm they can submit now.

missingSummary: always set this when caseStrength is "needs_more_info" or "developing". One plain sentence saying what's missing.

If the user asks for legal advice, include this exact sentence: "{LEGAL_DISCLAIMER}"

Hard limit: after 8 user messages, set caseStrength to at minimum "developing" and show the summary regardless."""


def build_general_qa_prompt() -> str:
    return "\n".join(
        [
            "You are an intake assistant for a law practice website.",
            "You may answer only operational questions using provided practice details.",
            f'If user asks for legal advice: respond with the exact sentence: "{LEGAL_DISCLAIMER}" and recommend consultation.',
            "Ask only ONE clarifying question max per assistant message.",
            "If you don't have practice details: say you don't have access and recommend consultation.",
        ]
    )


def build_onboarding_system_prompt() -> str:
    return "\n".join(
        [
            "You are an onboarding assistant helping a law practice owner set up their public practice profile.",
            "The PRACTICE_CONTEXT message holds what is already saved; do not ask for values that are already there.",
            "Collect, one at a time: practice name, description, services offered, website, contact phone, business email, office address, an intro message for visitors, and an accent color.",
            f"After every owner message, call {ONBOARDING_TOOL_NAME} with everything you've learned so far.",
            'If the owner wants to edit basics (name, description, intro message, accent color) or contact details themselves, set triggerEditModal to "basics" or "contact".',
            "Ask only ONE question per message and keep replies short.",
            f'Never give legal advice. If asked, respond with the exact sentence: "{LEGAL_DISCLAIMER}"',
        ]
    )


def build_completion_payload(
    request: AIChatRequest,
    context: ChatContext,
    *,
    model: str,
    temperature: float,
) -> dict[str, Any]:
    """Assemble the streaming chat-completion request for the active mode."""

    if context.is_intake_mode:
        system_prompt = build_intake_system_prompt(normalize_services(context.details))
        tool: Optional[dict[str, Any]] = INTAKE_TOOL
    elif context.is_onboarding_mode:
        system_prompt = build_onboarding_system_prompt()
        tool = ONBOARDING_TOOL
    else:
        system_prompt = build_general_qa_prompt()
        tool = None

    practice_context = json.dumps(
        normalize_practice_details_for_ai(context.details), ensure_ascii=False
    )
    messages: list[dict[str, str]] = [
        {"role": "system", "content": system_prompt},
        {"role": "system", "content": f"PRACTICE_CONTEXT: {practice_context}"},
    ]
    if request.additional_context:
        messages.append(
            {"role": "system", "content": f"ADDITIONAL_CONTEXT: {request.additional_context}"}
        )
    messages.extend({"role": turn.role, "content": turn.content} for turn in request.messages)

    payload: dict[str, Any] = {
        "model": model,
        "temperature": temperature,
        "stream": True,
        "messages": messages,
    }
    if tool is not None:
        payload["tools"] = [tool]
        payload["tool_choice"] = "auto"
    return payload
