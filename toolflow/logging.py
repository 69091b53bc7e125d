from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Context variable for correlation ID (per-request or per-execution tracking)
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to add correlation_id to all log entries."""
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to redact credentials and PII-named fields from log entries."""
    pii_keys = {"password", "secret", "token", "api_key", "authorization", "email", "ssn"}
    for key in list(event_dict.keys()):
        lower_key = key.lower()
        # token counters are safe to log
        if lower_key.endswith("_tokens"):
            continue
        if any(pii in lower_key for pii in pii_keys):
            if isinstance(event_dict[key], str) and len(event_dict[key]) > 4:
                # Redact but preserve first/last 2 chars for debugging
                event_dict[key] = event_dict[key][:2] + "***" + event_dict[key][-2:]
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog processors.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
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
    """Get a configured logger with correlation ID support."""
    return structlog.get_logger(name)


def log_workflow_trace(trace: list, logger: Optional[Any] = None, **fields: Any) -> None:
    """Log the progress events of a finished execution."""
    log = logger or get_logger("workflow")
    log.info("workflow_trace", trace=sanitize_workflow_trace(trace), **fields)


# Patterns that indicate sensitive information in error messages
_SENSITIVE_ERROR_PATTERNS = [
    r'(?i)connection\s+.*\s+(failed|refused|timeout)',
    # Path/file related
    r'(?i)/(?:home|var|etc|usr|opt|tmp)/[^\s]+',
    r'(?i)[a-z]:\\[^\s]+',
    # Credential patterns
    r'(?i)(password|secret|token|key|credential|api.?key)\s*[:=]\s*[^\s]+',
    r'(?i)sk-[a-z0-9_-]{8,}',
    # Stack traces
    r'(?i)traceback\s*\(most recent call last\)',
    r'(?i)at\s+\S+\.\S+\(\S+:\d+\)',
]

_SENSITIVE_PATTERNS_COMPILED = [re.compile(p) for p in _SENSITIVE_ERROR_PATTERNS]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Sanitize an error message before it leaves the process.

    Removes file paths, credentials, API keys and stack traces, and limits
    the length to 500 characters.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _SENSITIVE_PATTERNS_COMPILED:
        result = pattern.sub(replacement, result)

    if len(result) > 500:
        result = result[:497] + "..."

    return result


def sanitize_workflow_trace(trace: list) -> list:
    """Reduce progress events to the fields that are safe to log.

    Tool parameters, final text and tool outputs are dropped; error messages
    are sanitized.
    """
    sanitized = []
    for entry in trace:
        if not isinstance(entry, dict):
            continue

        safe_entry = {
            "type": entry.get("type"),
            "iteration": entry.get("iteration"),
        }
        if entry.get("toolName"):
            safe_entry["toolName"] = entry["toolName"]
        if "success" in entry:
            safe_entry["success"] = entry["success"]
        if "error" in entry:
            safe_entry["error"] = sanitize_error_message(str(entry.get("error", "")))

        sanitized.append(safe_entry)

    return sanitized
