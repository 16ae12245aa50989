"""Fixed replies and intent patterns used by the AI chat service."""

from __future__ import annotations

import re

SERVICE_NAME = "ai_chat"

LEGAL_DISCLAIMER = (
    "I'm not a lawyer and can't provide legal advice, but I can help you "
    "request a consultation with this practice."
)
EMPTY_REPLY_FALLBACK = (
    "I wasn't able to generate a response. Please try again or click "
    '"Request consultation" to connect with the practice.'
)
INTAKE_DISCLAIMER_FALLBACK = (
    "I cannot provide legal advice, but I can help you submit a consultation "
    "request. Please describe your situation so I can gather the necessary "
    "details for the firm."
)
NO_ACCESS_REPLY = (
    "I don't have access to this practice's details right now. Please click "
    '"Request consultation" to connect with the practice.'
)
SUBMIT_CONFIRMATION_REPLY = (
    "Great. You can submit your request now, or build a stronger brief first "
    "before we send it to the practice."
)
HOURS_PREFIX = "The practice has not published specific office hours here yet."
HOURS_NO_CONTACT_REPLY = (
    f'{HOURS_PREFIX} Please click "Request consultation" to connect with the practice.'
)

INTAKE_TOOL_NAME = "update_intake_fields"
ONBOARDING_TOOL_NAME = "update_practice_fields"

MAX_QUICK_REPLIES = 3
MAX_ONBOARDING_SERVICES = 20
EDIT_MODAL_TARGETS = ("basics", "contact")

CONSULTATION_CTA_PATTERN = re.compile(
    r"\b(request(?:ing)?|schedule|book)\s+(a\s+)?consultation\b", re.IGNORECASE
)
SERVICE_QUESTION_PATTERN = re.compile(
    r"(?:\b(?:do you|are you|can you|what|which)\b.*"
    r"\b(services?|practice (?:area|areas)|specializ(?:e|es) in|personal injury)\b"
    r"|\b(services?|practice (?:area|areas)|specializ(?:e|es) in|personal injury)\b.*\?)",
    re.IGNORECASE,
)
HOURS_QUESTION_PATTERN = re.compile(
    r"\b(hours?|opening hours|business hours|office hours|when are you open)\b",
    re.IGNORECASE,
)
LEGAL_INTENT_PATTERN = re.compile(
    r"\b(?:legal advice|what are my rights|is it legal|do i need (?:a )?lawyer"
    r"|(?:should|can|could|would)\s+i\b.*\b(?:sue|lawsuit|liable|liability"
    r"|contract dispute|charged|settlement|custody|divorce|immigration|criminal)\b)",
    re.IGNORECASE,
)
SUBMIT_AFFIRMATION_PATTERN = re.compile(
    r"^\s*(?:yes|yeah|yep|sure|ok|okay|go ahead|submit|do it|lets go|let's go|ready)"
    r"\s*[.!]?\s*$",
    re.IGNORECASE,
)
READY_TO_SUBMIT_PATTERN = re.compile(
    r"(are you ready to submit|ready to submit|submit your request|submit this"
    r"|submit this information|submit your consultation"
    r"|connect you with the right attorney|would you like to submit"
    r"|would you like to continue now)",
    re.IGNORECASE,
)
SUMMARY_MARKERS = (
    "here's what we have so far",
    "here is what we have so far",
    "summary",
    "summarize",
)

MODE_SELECTOR = {
    "showAskQuestion": False,
    "showRequestConsultation": True,
    "source": "ai",
}
