"""Intake state merging, readiness checks and onboarding profile scoring."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Sequence

from shared.models.chat import CaseStrength, OnboardingProfile, SummaryField

__all__ = [
    "ONBOARDING_CHECKLIST",
    "build_intake_fallback_reply",
    "build_onboarding_profile",
    "is_intake_ready",
    "merge_intake_state",
]


def _text(record: Optional[Mapping[str, Any]], *keys: str) -> Optional[str]:
    if not record:
        return None
    for key in keys:
        value = record.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


# ---------------------------------------------------------------------------
# Intake
# ---------------------------------------------------------------------------


def merge_intake_state(
    base: Optional[Mapping[str, Any]],
    patch: Optional[Mapping[str, Any]],
) -> Optional[dict[str, Any]]:
    """Shallow-merge ``patch`` over ``base``; ``None`` values never overwrite."""

    if base is None and patch is None:
        return None
    merged = dict(base or {})
    for key, value in (patch or {}).items():
        if value is not None:
            merged[key] = value
    return merged


def is_intake_ready(state: Optional[Mapping[str, Any]]) -> bool:
    """Code-owned readiness gate for the ready-to-submit call to action.

    Deliberately independent from the model's own ``caseStrength`` claim,
    which only has to be at least ``developing`` here.
    """

    if not state:
        return False
    if state.get("caseStrength") not in (
        CaseStrength.DEVELOPING.value,
        CaseStrength.STRONG.value,
    ):
        return False
    return all(
        _text(state, key)
        for key in ("description", "city", "state", "opposingParty", "desiredOutcome")
    )


_FALLBACK_LADDER: Sequence[tuple[Callable[[Mapping[str, Any]], bool], str]] = (
    (lambda f: not _text(f, "practiceArea"), "Which practice area best fits your situation?"),
    (lambda f: not _text(f, "description"), "Can you describe what happened in your own words?"),
    (
        lambda f: not f.get("urgency") and not f.get("courtDate"),
        "Are there any upcoming deadlines or court dates?",
    ),
    (lambda f: not _text(f, "opposingParty"), "Is there an opposing party involved?"),
    (lambda f: not _text(f, "desiredOutcome"), "What outcome are you hoping for?"),
    (
        lambda f: not (_text(f, "city") and _text(f, "state")),
        "What city and state are you in?",
    ),
    (
        lambda f: not isinstance(f.get("hasDocuments"), bool),
        "Do you have any documents related to this situation?",
    ),
)


def build_intake_fallback_reply(fields: Optional[Mapping[str, Any]]) -> str:
    """Ask for the first missing intake item when the model produced no text."""

    if fields is None:
        return "Thanks — can you share a bit more about what happened?"
    for is_missing, question in _FALLBACK_LADDER:
        if is_missing(fields):
            return question
    return (
        "Would you like to continue now, or build a stronger brief first so we "
        "can match you with the right attorney?"
    )


# ---------------------------------------------------------------------------
# Onboarding
# ---------------------------------------------------------------------------


def _services(record: Optional[Mapping[str, Any]]) -> Optional[str]:
    if not record:
        return None
    entries = record.get("services")
    if not isinstance(entries, list):
        return None
    names = []
    for entry in entries:
        if isinstance(entry, str) and entry.strip():
            names.append(entry.strip())
        elif isinstance(entry, Mapping):
            name = _text(entry, "name", "title")
            if name:
                names.append(name)
    return ", ".join(names) or None


def _address(record: Optional[Mapping[str, Any]]) -> Optional[str]:
    if not record:
        return None
    nested = record.get("address")
    if isinstance(nested, str) and nested.strip():
        return nested.strip()
    source: Mapping[str, Any] = nested if isinstance(nested, Mapping) else record
    parts = [
        _text(source, "address", "address_line_1", "addressLine1"),
        _text(source, "apartment", "address_line_2", "addressLine2"),
        _text(source, "city"),
        _text(source, "state"),
        _text(source, "postal_code", "postalCode"),
        _text(source, "country"),
    ]
    present = [part for part in parts if part]
    return ", ".join(present) or None


@dataclass(frozen=True)
class ChecklistItem:
    """One weighted onboarding requirement and how to read it."""

    key: str
    label: str
    weight: int
    read: Callable[[Optional[Mapping[str, Any]]], Optional[str]]


def _reader(*keys: str) -> Callable[[Optional[Mapping[str, Any]]], Optional[str]]:
    return lambda record: _text(record, *keys)


ONBOARDING_CHECKLIST: tuple[ChecklistItem, ...] = (
    ChecklistItem("name", "Practice name", 10, _reader("name")),
    ChecklistItem("description", "Description", 15, _reader("description")),
    ChecklistItem("services", "Services", 20, _services),
    ChecklistItem("website", "Website", 5, _reader("website")),
    ChecklistItem(
        "phone",
        "Phone",
        10,
        _reader("business_phone", "businessPhone", "contactPhone", "contact_phone"),
    ),
    ChecklistItem(
        "email",
        "Email",
        10,
        _reader("business_email", "businessEmail"),
    ),
    ChecklistItem("address", "Address", 15, _address),
    ChecklistItem("introMessage", "Intro message", 15, _reader("intro_message", "introMessage")),
    ChecklistItem("accentColor", "Accent color", 10, _reader("accent_color", "accentColor")),
)


def build_onboarding_profile(
    details: Optional[Mapping[str, Any]],
    fields: Optional[Mapping[str, Any]] = None,
) -> OnboardingProfile:
    """Recompute the profile snapshot from saved details plus newly supplied fields.

    Pure in its inputs: no prior conversation state is consulted.
    """

    score = 0
    completed: list[str] = []
    missing: list[str] = []
    summary: list[SummaryField] = []

    for item in ONBOARDING_CHECKLIST:
        saved = item.read(details)
        supplied = item.read(fields)
        if saved or supplied:
            score += item.weight
            completed.append(item.key)
        else:
            missing.append(item.key)
        if saved:
            summary.append(SummaryField(label=item.label, value=saved))

    return OnboardingProfile(
        completion_score=min(score, 100),
        completed_fields=completed,
        missing_fields=missing,
        summary_fields=summary,
    )
