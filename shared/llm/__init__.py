"""Upstream language-model streaming helpers."""

from .completions import (
    CompletionClient,
    CompletionStream,
    OpenAICompletionClient,
    UpstreamCompletionError,
)
from .sse import DONE_SENTINEL, SSELineDecoder, format_sse_event, parse_data_line

__all__ = [
    "CompletionClient",
    "CompletionStream",
    "DONE_SENTINEL",
    "OpenAICompletionClient",
    "SSELineDecoder",
    "UpstreamCompletionError",
    "format_sse_event",
    "parse_data_line",
]
