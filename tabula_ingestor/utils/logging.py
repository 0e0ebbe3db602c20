"""Logging configuration for Tabula_Ingestor."""

from __future__ import annotations

import logging
import sys
from threading import Lock
from typing import Any, Final

from .config import get_settings

# Pipe-delimited format carrying the structured ingestion context.
LOG_FORMAT: Final[str] = (
    "%(asctime)s | %(levelname)s | %(name)s | "
    "file_id=%(file_id)s | source_id=%(source_id)s | batch=%(batch)s | "
    "status=%(status)s | duration_ms=%(duration_ms)s | %(message)s"
)

DEFAULT_CONTEXT: Final[dict[str, str]] = {
    "file_id": "-",
    "source_id": "-",
    "batch": "-",
    "status": "-",
    "duration_ms": "-",
}

_LOG_CONFIGURED = False
_CONFIG_LOCK: Final = Lock()


class ContextualFormatter(logging.Formatter):
    """Formatter that injects default structured context fields when absent."""

    def __init__(self, fmt: str, defaults: dict[str, str] | None = None) -> None:
        super().__init__(fmt)
        self._defaults = defaults or {}

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        for key, value in self._defaults.items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return super().format(record)


def _configure_root_logger() -> None:
    """Configure the root logger exactly once based on global settings."""

    global _LOG_CONFIGURED
    with _CONFIG_LOCK:
        if _LOG_CONFIGURED:
            return

        settings = get_settings()
        resolved_level = getattr(logging, settings.log_level.upper(), logging.INFO)

        root_logger = logging.getLogger()
        root_logger.setLevel(resolved_level)

        formatter = ContextualFormatter(LOG_FORMAT, DEFAULT_CONTEXT)

        if not root_logger.handlers:
            handler = logging.StreamHandler(sys.stdout)
            handler.setLevel(resolved_level)
            handler.setFormatter(formatter)
            root_logger.addHandler(handler)
        else:
            for handler in root_logger.handlers:
                handler.setFormatter(formatter)

        _LOG_CONFIGURED = True


class StructuredLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that lets per-call extras override defaults."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:  # type: ignore[override]
        extra = dict(self.extra or {})
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs

    def bind(self, **context: Any) -> "StructuredLoggerAdapter":
        """Return a sibling adapter with additional default context."""

        merged = dict(self.extra or {})
        merged.update(context)
        return StructuredLoggerAdapter(self.logger, merged)


def setup_logger(
    name: str,
    *,
    level: str | None = None,
    context: dict[str, Any] | None = None,
) -> StructuredLoggerAdapter:
    """Return a logger configured with the global logging defaults.

    Args:
        name: Logger name to retrieve.
        level: Optional log level override (primarily for tests).
        context: Optional default structured context to include with every entry.

    Returns:
        LoggerAdapter injecting structured defaults for consistent formatting.
    """

    _configure_root_logger()
    logger = logging.getLogger(name)

    if level is not None:
        logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    adapter_context: dict[str, Any] = dict(DEFAULT_CONTEXT)
    if context:
        adapter_context.update(context)

    return StructuredLoggerAdapter(logger, adapter_context)


def log_batch_outcome(
    logger: logging.Logger | logging.LoggerAdapter,
    file_id: str,
    batch: int | str,
    duration_ms: int,
    status: str,
    **extra_context: Any,
) -> None:
    """
    Log the terminal outcome of one batch with structured context.

    Args:
        logger: Logger instance
        file_id: Identifier of the file the batch belongs to
        batch: Batch sequence number
        duration_ms: Processing duration in milliseconds
        status: Status (success, partial, error)
        **extra_context: Additional context appended to the message
    """
    structured_context: dict[str, Any] = {
        "file_id": file_id,
        "batch": batch,
        "duration_ms": duration_ms,
        "status": status,
    }
    message_suffix = ""
    if extra_context:
        rendered = ", ".join(f"{key}={value}" for key, value in sorted(extra_context.items()))
        message_suffix = f" | {rendered}"

    status_value = (status or "unknown").lower()
    if status_value == "success":
        log_method = logger.info
    elif status_value == "partial":
        log_method = logger.warning
    else:
        log_method = logger.error
    log_method(f"Batch {status_value}{message_suffix}", extra=structured_context)
