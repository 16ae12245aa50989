"""SSE transport to the caller and the upstream completion stream state machine."""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Mapping, Optional

from pydantic import ValidationError

from shared.llm.completions import CompletionClient, CompletionStream
from shared.llm.sse import SSELineDecoder, format_sse_event, parse_data_line
from shared.models.chat import CompletionChunk
from shared.observability.logger import get_logger

from .contract import contains_disclaimer
from .reconciler import ToolCallBuffer

__all__ = [
    "SSE_HEADERS",
    "BackgroundTaskSupervisor",
    "CompletionStreamer",
    "SSEChannel",
    "StreamState",
    "TokenGate",
    "spawn_detached",
]

logger = get_logger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class SSEChannel:
    """Queue of outbound SSE frames drained by the HTTP response.

    Writes never block and never raise: once the client is gone or the channel
    is closed, further events are dropped.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self._closed = False
        self._dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, payload: Mapping[str, Any]) -> bool:
        if self._closed:
            self._dropped += 1
            if self._dropped == 1:
                logger.warning("sse_client_gone", event_keys=sorted(payload))
            return False
        self._queue.put_nowait(format_sse_event(payload))
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    async def stream(self) -> AsyncIterator[str]:
        try:
            while True:
                frame = await self._queue.get()
                if frame is None:
                    break
                yield frame
        finally:
            self._closed = True


class BackgroundTaskSupervisor:
    """Keeps detached request jobs alive until they settle.

    Holds strong references so jobs are not garbage collected mid-flight, logs
    failures, and is drained when the application shuts down.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def wait_until(self, job: Awaitable[Any], *, name: Optional[str] = None) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(job)
        if name:
            task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("background_task_cancelled", task=task.get_name())
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "background_task_failed",
                task=task.get_name(),
                error=str(error),
                exc_info=error,
            )

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for outstanding jobs, cancelling whatever outlives ``timeout``."""

        if not self._tasks:
            return
        _, still_running = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)


async def spawn_detached(
    job: Awaitable[Any],
    supervisor: Optional[BackgroundTaskSupervisor],
    *,
    name: Optional[str] = None,
) -> None:
    """Register ``job`` with ``supervisor``, or run it to completion inline."""

    if supervisor is None:
        await job
        return
    supervisor.wait_until(job, name=name)


class TokenGate:
    """Forwards text tokens to the client, optionally holding them back.

    When the reply must carry the legal disclaimer, tokens are held until the
    accumulated text contains it so a later substitution never contradicts
    text the client already rendered. Leading whitespace-only tokens are held
    too, so a blank reply can still be replaced by a fallback token.
    """

    def __init__(self, channel: SSEChannel, *, hold_until_disclaimer: bool = False) -> None:
        self._channel = channel
        self._holding = hold_until_disclaimer
        self._parts: list[str] = []
        self._held: list[str] = []
        self._emitted: list[str] = []

    @property
    def text(self) -> str:
        return "".join(self._parts)

    @property
    def emitted_text(self) -> str:
        return "".join(self._emitted)

    def push(self, token: str) -> None:
        self._parts.append(token)
        self._held.append(token)
        if self._holding:
            if not contains_disclaimer(self.text):
                return
            self._holding = False
        if not self.text.strip():
            return
        held, self._held = self._held, []
        for item in held:
            self.emit(item)

    def emit(self, token: str) -> None:
        self._emitted.append(token)
        self._channel.send({"token": token})


class StreamState(str, Enum):
    OPENED = "opened"
    UPSTREAM_CALLED = "upstream_called"
    STREAMING = "streaming"
    TIMED_OUT = "timed_out"
    FAILED = "failed"
    FLUSHING = "flushing"
    FINALIZING = "finalizing"
    CLOSED = "closed"


class CompletionStreamer:
    """Drive one upstream completion from request to flushed buffers."""

    def __init__(
        self,
        client: CompletionClient,
        *,
        upstream_timeout: float,
        stall_timeout: float,
        conversation_id: str,
    ) -> None:
        self._client = client
        self._upstream_timeout = upstream_timeout
        self._stall_timeout = stall_timeout
        self._conversation_id = conversation_id
        self.state = StreamState.OPENED
        self.stalled = False

    def transition(self, state: StreamState) -> None:
        logger.debug(
            "ai_stream_state",
            conversation_id=self._conversation_id,
            previous=self.state.value,
            state=state.value,
        )
        self.state = state

    @property
    def produced_stream(self) -> bool:
        """Whether the upstream call got as far as delivering a stream."""

        return self.state not in (StreamState.TIMED_OUT, StreamState.FAILED)

    async def _open(self, payload: Mapping[str, Any]) -> Optional[CompletionStream]:
        self.transition(StreamState.UPSTREAM_CALLED)
        try:
            return await asyncio.wait_for(
                self._client.open_stream(payload), timeout=self._upstream_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                "ai_upstream_timeout",
                conversation_id=self._conversation_id,
                timeout=self._upstream_timeout,
            )
            self.transition(StreamState.TIMED_OUT)
        except Exception as exc:
            logger.warning(
                "ai_upstream_failed",
                conversation_id=self._conversation_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            self.transition(StreamState.FAILED)
        return None

    def _apply_line(self, line: str, gate: TokenGate, buffer: ToolCallBuffer) -> None:
        payload = parse_data_line(line)
        if payload is None:
            return
        try:
            chunk = CompletionChunk.model_validate(payload)
        except ValidationError as exc:
            logger.warning(
                "ai_stream_chunk_malformed",
                conversation_id=self._conversation_id,
                error=str(exc),
            )
            return
        delta = chunk.first_delta()
        if delta is None:
            return
        if delta.content:
            gate.push(delta.content)
        buffer.add(delta.tool_calls)

    async def _consume(
        self, stream: CompletionStream, decoder: SSELineDecoder, gate: TokenGate, buffer: ToolCallBuffer
    ) -> None:
        iterator = stream.aiter_bytes()
        while True:
            try:
                chunk = await asyncio.wait_for(anext(iterator), timeout=self._stall_timeout)
            except StopAsyncIteration:
                return
            except asyncio.TimeoutError:
                self.stalled = True
                logger.warning(
                    "ai_upstream_stalled",
                    conversation_id=self._conversation_id,
                    timeout=self._stall_timeout,
                    received_chars=len(gate.text),
                )
                return
            for line in decoder.feed(chunk):
                self._apply_line(line, gate, buffer)

    async def run(
        self,
        payload: Mapping[str, Any],
        *,
        gate: TokenGate,
        buffer: ToolCallBuffer,
    ) -> StreamState:
        """Stream the completion into ``gate`` and ``buffer``.

        Returns the state reached before finalization: ``FLUSHING`` when a
        stream was read (fully or up to a stall), otherwise ``TIMED_OUT`` or
        ``FAILED``.
        """

        stream = await self._open(payload)
        if stream is None:
            return self.state

        self.transition(StreamState.STREAMING)
        decoder = SSELineDecoder()
        try:
            await self._consume(stream, decoder, gate, buffer)
        except Exception as exc:
            logger.warning(
                "ai_upstream_read_failed",
                conversation_id=self._conversation_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
        finally:
            try:
                await stream.aclose()
            except Exception as exc:
                logger.warning(
                    "ai_upstream_close_failed",
                    conversation_id=self._conversation_id,
                    error=str(exc),
                )

        self.transition(StreamState.FLUSHING)
        residual = decoder.flush()
        if residual.strip():
            self._apply_line(residual, gate, buffer)
        return self.state
