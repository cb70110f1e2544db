"""Error taxonomy shared by ingestion, adapters and the hybrid index.

Responsibilities
----------------
- Define the exception hierarchy every component raises: ``ValidationError``
  (fatal input problems), ``AdapterError`` (external service failures that
  carry their own retry classification), ``RateLimitExceeded`` (always
  retryable) and ``IndexWriteError`` (retryable unless the store reports a
  schema mismatch).
- Provide :func:`is_retryable` and :func:`error_kind` so the orchestrator can
  decide between backoff and terminal failure and label failure events without
  inspecting exception internals.

Design Notes
------------
- The module has no third-party imports so it can be used from error paths
  and retry hooks without risk of further exceptions.
"""

from __future__ import annotations

from typing import Any

__all__ = (
    "TrackSearchError",
    "ValidationError",
    "InvalidIdentifier",
    "DocumentValidationError",
    "AdapterError",
    "RateLimitExceeded",
    "IndexWriteError",
    "is_retryable",
    "error_kind",
)

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class TrackSearchError(Exception):
    """Base class for all errors raised by TrackSearch components."""


class ValidationError(TrackSearchError):
    """Raised for malformed input; never retried."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details = details or {}


class InvalidIdentifier(ValidationError):
    """Raised when a value is not a 12-character alphanumeric ISRC."""

    def __init__(self, value: object) -> None:
        super().__init__(
            f"Invalid ISRC format: {value!r}. Expected 12 alphanumeric characters.",
            details={"value": repr(value)},
        )
        self.value = value


class DocumentValidationError(ValidationError):
    """Raised when assembled track data cannot form a valid index document."""


class AdapterError(TrackSearchError):
    """Failure reported by an external service adapter.

    Attributes:
        service: Name of the external service (e.g. ``"TEI"``)
        status_code: HTTP status (or synthetic status for transport failures)
        retryable: Whether the orchestrator should back off and retry
        retry_after: Optional server-provided delay in seconds
    """

    def __init__(
        self,
        message: str,
        *,
        service: str,
        status_code: int,
        retryable: bool,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.service = service
        self.status_code = status_code
        self.retryable = retryable
        self.retry_after = retry_after

    @classmethod
    def from_status(cls, status_code: int, service: str, message: str) -> "AdapterError":
        """Build an error whose retryability follows the shared status table."""

        if status_code == 429:
            return RateLimitExceeded(message, service=service)
        return cls(
            message,
            service=service,
            status_code=status_code,
            retryable=status_code in RETRYABLE_STATUS_CODES or status_code >= 500,
        )

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(service={self.service!r}, "
            f"status_code={self.status_code}, retryable={self.retryable})"
        )


class RateLimitExceeded(AdapterError):
    """Raised when a service (or the local limiter) refuses for rate reasons."""

    def __init__(
        self,
        message: str,
        *,
        service: str,
        retry_after: float | None = None,
        waited_ms: int | None = None,
    ) -> None:
        super().__init__(
            message,
            service=service,
            status_code=429,
            retryable=True,
            retry_after=retry_after,
        )
        self.waited_ms = waited_ms


class IndexWriteError(TrackSearchError):
    """Raised when the vector store rejects or fails an upsert."""

    def __init__(self, message: str, *, schema_mismatch: bool = False) -> None:
        super().__init__(message)
        self.schema_mismatch = schema_mismatch

    @property
    def retryable(self) -> bool:
        return not self.schema_mismatch


def is_retryable(exc: BaseException) -> bool:
    """Return ``True`` when ``exc`` should trigger another attempt."""

    if isinstance(exc, ValidationError):
        return False
    if isinstance(exc, (AdapterError, IndexWriteError)):
        return exc.retryable
    return False


def error_kind(exc: BaseException) -> str:
    """Map ``exc`` onto the stable error kind reported in failure events."""

    if isinstance(exc, ValidationError):
        return "validation_error"
    if isinstance(exc, RateLimitExceeded):
        return "rate_limit_exceeded"
    if isinstance(exc, AdapterError):
        return "adapter_error"
    if isinstance(exc, IndexWriteError):
        return "index_write_error"
    return "internal_error"
