"""Parsing and bounds-checking of inbound chat turn payloads."""

from __future__ import annotations

from typing import Any

from pydantic import ValidationError

from shared.config.settings import AIChatSettings
from shared.http.errors import RequestValidationProblem
from shared.models.chat import AIChatRequest

__all__ = ["validate_chat_request"]


def _check_shape(body: Any) -> list[Any]:
    if not isinstance(body, dict):
        raise RequestValidationProblem("Request body must be a JSON object")
    conversation_id = body.get("conversationId")
    if not isinstance(conversation_id, str) or not conversation_id.strip():
        raise RequestValidationProblem("conversationId is required")
    messages = body.get("messages")
    if not isinstance(messages, list):
        raise RequestValidationProblem("messages must be an array")
    for message in messages:
        if (
            not isinstance(message, dict)
            or message.get("role") not in ("user", "assistant")
            or not isinstance(message.get("content"), str)
        ):
            raise RequestValidationProblem("messages must include role and content")
    return messages


def _check_limits(messages: list[Any], settings: AIChatSettings) -> None:
    if len(messages) > settings.max_messages:
        raise RequestValidationProblem(
            f"messages exceeds limit of {settings.max_messages}",
            limit="max_messages",
        )
    total_length = sum(len(message["content"]) for message in messages)
    if total_length > settings.max_total_length:
        raise RequestValidationProblem(
            f"messages total length exceeds {settings.max_total_length} characters",
            limit="max_total_length",
        )
    if any(len(message["content"]) > settings.max_message_length for message in messages):
        raise RequestValidationProblem(
            f"message content exceeds {settings.max_message_length} characters",
            limit="max_message_length",
        )


def validate_chat_request(body: Any, settings: AIChatSettings) -> AIChatRequest:
    """Return the validated request or raise a 400 problem naming the violation."""

    messages = _check_shape(body)
    _check_limits(messages, settings)
    try:
        return AIChatRequest.model_validate(body)
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        detail = first.get("msg", "invalid request body")
        raise RequestValidationProblem(
            f"{location}: {detail}" if location else detail
        ) from exc
