"""Logging helpers integrating structlog and loguru with request context."""

from __future__ import annotations

import logging
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from types import FrameType
from typing import Any, Iterator, Mapping

import structlog
from loguru import logger as loguru_logger

__all__ = [
    "bind_conversation",
    "configure_logging",
    "generate_request_id",
    "get_logger",
    "get_request_id",
    "request_context",
]

_REQUEST_ID: ContextVar[str | None] = ContextVar("request_id", default=None)
_CONFIGURED: bool = False
_SERVICE_NAME: str | None = None


def _format_record(record: Mapping[str, Any]) -> str:
    """Return the loguru line format used for every service."""

    timestamp = record["time"].isoformat()
    level = record["level"].name
    extra = record.get("extra") or {}
    service = extra.get("service", "-")
    request_id = extra.get("request_id") or "-"
    conversation_id = extra.get("conversation_id") or "-"
    message = str(record.get("message", ""))
    # Rendered JSON payloads contain braces that loguru would treat as
    # ``str.format`` placeholders.
    message = message.replace("{", "{{").replace("}", "}}")
    return (
        f"{timestamp} | {level:<8} | {service} | {request_id} | "
        f"{conversation_id} | {message}\n"
    )


def _coerce_level(level: str | int) -> tuple[int, str]:
    if isinstance(level, int):
        numeric = level
    else:
        resolved = logging.getLevelName(level.upper())
        if not isinstance(resolved, int):
            raise ValueError(f"Unknown log level: {level}")
        numeric = resolved
    name = logging.getLevelName(numeric)
    return numeric, name if isinstance(name, str) else "INFO"


def get_request_id() -> str | None:
    """Return the request identifier bound to the current context, if any."""

    return _REQUEST_ID.get()


def generate_request_id() -> str:
    """Return a new opaque request identifier."""

    return uuid.uuid4().hex


class LoguruInterceptHandler(logging.Handler):
    """Forward standard ``logging`` records (uvicorn, httpx) into loguru."""

    def emit(self, record: logging.LogRecord) -> None:  # pragma: no cover - thin wrapper
        level: str | int
        try:
            level = loguru_logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame: FrameType | None = logging.currentframe()
        depth = 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        bound = loguru_logger.bind(logger=record.name)
        request_id = get_request_id()
        if request_id:
            bound = bound.bind(request_id=request_id)
        bound.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def _configure_structlog() -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def configure_logging(
    *, service_name: str | None = None, level: str | int = "INFO"
) -> None:
    """Route stdlib logging and structlog through a single loguru sink.

    Safe to call repeatedly; only the first call installs handlers.
    ``service_name`` is attached to every structured entry.
    """

    global _CONFIGURED, _SERVICE_NAME

    numeric_level, level_name = _coerce_level(level)

    if not _CONFIGURED:
        loguru_logger.remove()
        loguru_logger.add(
            sys.stdout,
            level=level_name,
            enqueue=True,
            backtrace=False,
            diagnose=False,
            format=_format_record,
        )
        logging.basicConfig(
            handlers=[LoguruInterceptHandler()],
            level=numeric_level,
            force=True,
        )
        logging.captureWarnings(True)
        _configure_structlog()
        _CONFIGURED = True

    if service_name:
        _SERVICE_NAME = service_name
        loguru_logger.configure(extra={"service": service_name})
        structlog.contextvars.bind_contextvars(service=service_name)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog bound logger with the given ``name``."""

    if name is None:
        return structlog.get_logger()
    return structlog.get_logger(name)


def _restore_context(keys: list[str], previous: Mapping[str, Any]) -> None:
    structlog.contextvars.unbind_contextvars(*keys)
    restore = {key: previous[key] for key in keys if key in previous}
    if restore:
        structlog.contextvars.bind_contextvars(**restore)


@contextmanager
def request_context(request_id: str | None = None, **extra: Any) -> Iterator[str]:
    """Bind ``request_id`` and extra context for the lifetime of the block."""

    extra.pop("request_id", None)
    rid = request_id or generate_request_id()
    token = _REQUEST_ID.set(rid)
    values = dict(extra)
    if _SERVICE_NAME and "service" not in values:
        values["service"] = _SERVICE_NAME
    values.setdefault("correlation_id", rid)

    previous = structlog.contextvars.get_contextvars()
    structlog.contextvars.bind_contextvars(request_id=rid, **values)
    keys = ["request_id", *values.keys()]

    with loguru_logger.contextualize(request_id=rid, **extra):
        try:
            yield rid
        finally:
            _restore_context(keys, previous)
            _REQUEST_ID.reset(token)


@contextmanager
def bind_conversation(conversation_id: str, **extra: Any) -> Iterator[None]:
    """Attach ``conversation_id`` to every log entry emitted inside the block.

    Detached streaming jobs copy the context at spawn time, so binding before
    the job is scheduled keeps the identifiers on its log lines as well.
    """

    previous = structlog.contextvars.get_contextvars()
    values = {"conversation_id": conversation_id, **extra}
    structlog.contextvars.bind_contextvars(**values)
    with loguru_logger.contextualize(conversation_id=conversation_id):
        try:
            yield
        finally:
            _restore_context(list(values.keys()), previous)
