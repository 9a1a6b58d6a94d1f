from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Run identifier shared by every log entry emitted during one test run
run_id_var: ContextVar[Optional[str]] = ContextVar("run_id", default=None)

# Longest session id rendered verbatim in log messages
MAX_DISPLAY_ID_LENGTH = 50


def get_run_id() -> Optional[str]:
    """Get the current run ID for log correlation."""
    return run_id_var.get()


def set_run_id(run_id: Optional[str] = None) -> str:
    """Set or generate a run ID for the current run context."""
    rid = run_id or str(uuid.uuid4())
    run_id_var.set(rid)
    return rid


def _add_run_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to add run_id to all log entries."""
    rid = get_run_id()
    if rid:
        event_dict["run_id"] = rid
    return event_dict


_SECRET_KEYS = {"password", "secret", "token", "api_key", "authorization"}
_CAPTURED_STATE_KEYS = {"cookies", "local_storage", "session_storage", "captured_state"}


def _redact_captured_state(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to keep browser credentials out of the log stream.

    Captured browser state is replaced by a size hint; secret-looking string
    values keep their first/last 2 chars for debugging.
    """
    for key in list(event_dict.keys()):
        lower_key = key.lower()
        value = event_dict[key]
        if lower_key in _CAPTURED_STATE_KEYS:
            size = len(value) if hasattr(value, "__len__") else 0
            event_dict[key] = f"[redacted:{size}]"
        elif any(secret in lower_key for secret in _SECRET_KEYS):
            if isinstance(value, str) and len(value) > 4:
                event_dict[key] = value[:2] + "***" + value[-2:]
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog with the shared processor chain.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_run_id,
        _redact_captured_state,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Initialize logging on module import
_log_level = os.getenv("LOG_LEVEL", "INFO").upper()
_json_output = os.getenv("LOG_JSON", "true").lower() in {"1", "true", "yes", "on"}
_dev_mode = os.getenv("LOG_DEV_MODE", "false").lower() in {"1", "true", "yes", "on"}

_configure_structlog(
    log_level=_log_level,
    json_output=_json_output,
    development_mode=_dev_mode,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger with run ID support."""
    return structlog.get_logger(name)


def display_session_id(session_id: str) -> str:
    """Shorten long (often serialized) session ids for log messages."""
    if len(session_id) > MAX_DISPLAY_ID_LENGTH:
        return f"{session_id[:MAX_DISPLAY_ID_LENGTH - 3]}..."
    return session_id


def log_session_trace(trace: list, logger: Optional[Any] = None) -> None:
    """Log the state transitions a session workflow went through."""
    log = logger or get_logger("sessions")
    log.info("session_trace", trace=trace)
