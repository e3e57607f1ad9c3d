"""structlog setup for camera preview sessions.

Every record carries the session context bound with ``bind_session`` (a
session id, the runtime environment and the target frame rate), so lines
from concurrent camera callbacks can be grouped per preview session.
"""
import logging
import sys
import uuid
from typing import IO, Any

import structlog

_SESSION_KEYS = ("session_id", "environment", "target_fps")


def _pre_chain() -> list:
    """Processors applied to both structlog and foreign stdlib records."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]


def _renderer(log_format: str, stream: IO[str]) -> list:
    if log_format == "json":
        # Tracebacks from frame errors become structured fields, not text blobs
        return [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]
    colors = hasattr(stream, "isatty") and stream.isatty()
    return [structlog.dev.ConsoleRenderer(colors=colors)]


def configure_logging(
    log_format: str = "console",
    log_level: str = "INFO",
    stream: IO[str] | None = None,
) -> None:
    """Route structlog and stdlib logging through one handler.

    Args:
        log_format: "console" for human-readable output, "json" for one JSON object per line.
        log_level: Standard level name; unknown names fall back to INFO.
        stream: Destination stream, stdout by default.
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    stream = stream or sys.stdout
    pre_chain = _pre_chain()

    structlog.configure(
        processors=pre_chain + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(stream)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta]
            + _renderer(log_format, stream),
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)


def bind_session(session_id: str | None = None, **context: Any) -> str:
    """Start a preview session's log context and return its id.

    Replaces any context left over from a previous session.
    """
    session_id = session_id or uuid.uuid4().hex[:12]
    structlog.contextvars.unbind_contextvars(*_SESSION_KEYS)
    structlog.contextvars.bind_contextvars(session_id=session_id, **context)
    return session_id


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)
