"""
Structured logging helpers shared by ingestion, adapters and the index.

Every component logs through :func:`get_logger`, which wraps the stdlib logger
in a :class:`StructuredLogger` so contextual fields (``isrc``, ``run_id``,
``service``) travel with each record under the ``extra_fields`` key. The
:class:`JSONFormatter` renders those records as one JSON object per line and
masks credential-looking keys before they reach any handler.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

__all__ = [
    "JSONFormatter",
    "StructuredLogger",
    "configure_logging",
    "get_logger",
    "log_event",
    "mask_sensitive_data",
]

_SENSITIVE_KEYS = ("api_key", "apikey", "authorization", "x-api-key", "token", "secret")
_ROOT_LOGGER_NAME = "TrackSearch"


def mask_sensitive_data(payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Return a copy of ``payload`` with credential values replaced by ``***``."""

    masked: Dict[str, Any] = {}
    for key, value in payload.items():
        lowered = str(key).lower()
        if any(marker in lowered for marker in _SENSITIVE_KEYS) and value:
            masked[key] = "***masked***"
        elif isinstance(value, Mapping):
            masked[key] = mask_sensitive_data(value)
        else:
            masked[key] = value
    return masked


class JSONFormatter(logging.Formatter):
    """Formatter emitting masked JSON log entries."""

    def format(self, record: logging.LogRecord) -> str:
        """Render ``record`` as a JSON string carrying its structured fields."""

        now = datetime.now(timezone.utc)
        payload: Dict[str, Any] = {
            "timestamp": now.isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if hasattr(record, "extra_fields") and isinstance(record.extra_fields, dict):
            payload.update(record.extra_fields)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(mask_sensitive_data(payload), default=str)


class _ConsoleFormatter(logging.Formatter):
    """Human-readable formatter that appends structured fields as ``key=value``."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)-7s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = getattr(record, "extra_fields", None)
        if isinstance(fields, dict) and fields:
            rendered = " ".join(
                f"{key}={value}" for key, value in mask_sensitive_data(fields).items()
            )
            line = f"{line} {rendered}"
        return line


class StructuredLogger(logging.LoggerAdapter):
    """Logger adapter that enriches structured logs with shared context."""

    def __init__(
        self, logger: logging.Logger, base_fields: Optional[Dict[str, Any]] = None
    ) -> None:
        """Store underlying logger and initial structured ``base_fields``."""

        super().__init__(logger, {})
        self.base_fields: Dict[str, Any] = dict(base_fields or {})

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple[str, Dict[str, Any]]:
        """Merge adapter context into ``extra`` metadata for structured output."""

        extra = kwargs.setdefault("extra", {})
        fields = dict(self.base_fields)
        extra_fields = extra.get("extra_fields")
        if isinstance(extra_fields, dict):
            fields.update(extra_fields)
        extra["extra_fields"] = fields
        kwargs["extra"] = extra
        return msg, kwargs

    def bind(self, **fields: object) -> "StructuredLogger":
        """Attach additional persistent fields to the adapter and return ``self``."""

        self.base_fields.update({k: v for k, v in fields.items() if v is not None})
        return self

    def child(self, **fields: object) -> "StructuredLogger":
        """Create a new adapter inheriting context with optional overrides."""

        merged = dict(self.base_fields)
        merged.update({k: v for k, v in fields.items() if v is not None})
        return StructuredLogger(self.logger, merged)


def get_logger(name: str, *, base_fields: Optional[Dict[str, Any]] = None) -> StructuredLogger:
    """Return a :class:`StructuredLogger` for ``name``.

    Handlers are not attached here; records propagate to the ``TrackSearch``
    root logger configured by :func:`configure_logging` (or to whatever the
    host application installed).
    """

    return StructuredLogger(logging.getLogger(name), base_fields)


def configure_logging(level: str = "INFO", fmt: str = "console") -> logging.Logger:
    """Install a single stderr handler on the package root logger.

    Args:
        level: Logging level name (``DEBUG``, ``INFO``...).
        fmt: ``"json"`` for one JSON object per line, ``"console"`` otherwise.

    Returns:
        The configured package root logger. Calling this again replaces the
        previously installed handler instead of stacking a second one.
    """

    root = logging.getLogger(_ROOT_LOGGER_NAME)
    for handler in list(root.handlers):
        if getattr(handler, "_tracksearch_handler", False):
            root.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if fmt == "json" else _ConsoleFormatter())
    setattr(handler, "_tracksearch_handler", True)
    root.addHandler(handler)
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    root.propagate = False
    return root


def log_event(logger: logging.Logger | logging.LoggerAdapter, level: str, message: str, **fields: object) -> None:
    """Emit a structured log record using the ``extra_fields`` convention.

    ``message`` doubles as the event name (``ingestion_step_completed``) and is
    copied into the ``event`` field so JSON consumers can filter on it.
    """

    normalised_level = str(level).lower()
    fields.setdefault("event", message)
    if normalised_level in {"warning", "error"} and "error_kind" not in fields:
        fields["error_kind"] = None
    emitter = getattr(logger, normalised_level, None)
    if not callable(emitter):
        raise AttributeError(f"Logger has no level '{level}'")
    emitter(message, extra={"extra_fields": fields})
