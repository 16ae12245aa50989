"""Server-sent-event framing helpers for both directions of a chat stream."""

from __future__ import annotations

import codecs
import json
from typing import Any, Mapping, Optional

from shared.observability.logger import get_logger

__all__ = [
    "DONE_SENTINEL",
    "SSELineDecoder",
    "format_sse_event",
    "parse_data_line",
]

DONE_SENTINEL = "[DONE]"

logger = get_logger(__name__)


def format_sse_event(payload: Mapping[str, Any]) -> str:
    """Encode ``payload`` as a single ``data:`` frame.

    Each frame carries one JSON document so clients can parse it with a single
    ``JSON.parse`` call without tracking event names.
    """

    return f"data: {json.dumps(payload, ensure_ascii=False, separators=(',', ':'))}\n\n"


class SSELineDecoder:
    """Incrementally split an upstream byte stream into complete text lines.

    Multi-byte characters and lines may straddle chunk boundaries; the
    incomplete tail is held back until the next :meth:`feed` or :meth:`flush`.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, chunk: bytes) -> list[str]:
        """Return every line completed by ``chunk``."""

        self._buffer += self._decoder.decode(chunk)
        *lines, self._buffer = self._buffer.split("\n")
        return lines

    def flush(self) -> str:
        """Return and clear whatever partial line remains buffered."""

        residual = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        return residual


def parse_data_line(line: str) -> Optional[dict[str, Any]]:
    """Return the JSON object carried by a ``data:`` line.

    Blank lines, comments, non-data fields and the ``[DONE]`` sentinel yield
    ``None``. Malformed JSON is logged and skipped.
    """

    stripped = line.strip()
    if not stripped.startswith("data:"):
        return None
    body = stripped[len("data:"):].strip()
    if not body or body == DONE_SENTINEL:
        return None
    try:
        payload = json.loads(body)
    except json.JSONDecodeError as exc:
        logger.warning("sse_malformed_line", error=str(exc), length=len(body))
        return None
    if not isinstance(payload, dict):
        logger.warning("sse_unexpected_payload", payload_type=type(payload).__name__)
        return None
    return payload
