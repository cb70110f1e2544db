# === NAVMAP v1 ===
# {
#   "module": "TrackSearch.Adapters.base",
#   "purpose": "Tagged results, failure classification and rate-limited HTTP plumbing for adapters",
#   "sections": [
#     {"id": "ok", "name": "Ok", "anchor": "class-ok", "kind": "class"},
#     {"id": "err", "name": "Err", "anchor": "class-err", "kind": "class"},
#     {"id": "parse-retry-after", "name": "parse_retry_after", "anchor": "function-parse-retry-after", "kind": "function"},
#     {"id": "classify-response", "name": "classify_response", "anchor": "function-classify-response", "kind": "function"},
#     {"id": "classify-transport-error", "name": "classify_transport_error", "anchor": "function-classify-transport-error", "kind": "function"},
#     {"id": "serviceratelimiter", "name": "ServiceRateLimiter", "anchor": "class-serviceratelimiter", "kind": "class"},
#     {"id": "httpadapter", "name": "HttpAdapter", "anchor": "class-httpadapter", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Shared plumbing for external service adapters.

Provides:
- ``Ok``/``Err`` tagged results returned by every adapter call
- One classification table for HTTP statuses and transport failures
- Retry-After parsing (delta-seconds or HTTP-date)
- ``ServiceRateLimiter``: per-service pyrate-limiter buckets with bounded wait
- ``HttpAdapter``: base class that rate-limits, sends and classifies requests

Adapters never retry on their own. They classify a failure once and return it;
the ingestion orchestrator owns the retry schedule.
"""

from __future__ import annotations

import asyncio
import email.utils
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, ClassVar, Generic, Mapping, Optional, TypeVar, Union

import httpx
from pyrate_limiter import Limiter, Rate

from ..errors import RETRYABLE_STATUS_CODES, AdapterError, RateLimitExceeded
from ..logging import get_logger, log_event

__all__ = [
    "Ok",
    "Err",
    "AdapterResult",
    "SCHEMA_ERROR_STATUS",
    "parse_retry_after",
    "classify_response",
    "classify_transport_error",
    "schema_error",
    "ServiceRateLimiter",
    "HttpAdapter",
]

LOGGER = get_logger(__name__, base_fields={"component": "adapters"})

T = TypeVar("T")

# Synthetic status attached to responses that fail schema validation.
SCHEMA_ERROR_STATUS = 422


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful adapter call."""

    value: T
    ok: ClassVar[bool] = True

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Err:
    """Failed adapter call carrying its classified error."""

    error: AdapterError
    ok: ClassVar[bool] = False

    def unwrap(self) -> Any:
        raise self.error


AdapterResult = Union[Ok[T], Err]


def parse_retry_after(value: Optional[str], *, now: Optional[datetime] = None) -> Optional[float]:
    """Return the delay in seconds encoded by a ``Retry-After`` header value.

    Both forms from RFC 7231 are accepted. Unparseable or negative values give
    ``None``.

    Examples:
        >>> parse_retry_after("120")
        120.0
        >>> parse_retry_after("soon") is None
        True
    """

    if not value:
        return None
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        try:
            when = email.utils.parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        seconds = (when - (now or datetime.now(timezone.utc))).total_seconds()
    if seconds < 0:
        return None
    return seconds


def classify_response(response: httpx.Response, service: str) -> AdapterError:
    """Build the error for a non-success HTTP ``response``.

    429 becomes :class:`RateLimitExceeded` carrying the parsed Retry-After;
    408 and 5xx are retryable; every other status is terminal.
    """

    status = response.status_code
    message = f"{service} returned HTTP {status}"
    retry_after = parse_retry_after(response.headers.get("Retry-After"))
    if status == 429:
        return RateLimitExceeded(message, service=service, retry_after=retry_after)
    retryable = status in RETRYABLE_STATUS_CODES or status >= 500
    return AdapterError(
        message,
        service=service,
        status_code=status,
        retryable=retryable,
        retry_after=retry_after if retryable else None,
    )


def classify_transport_error(exc: httpx.HTTPError, service: str) -> AdapterError:
    """Map connection, read and timeout failures onto retryable errors."""

    if isinstance(exc, httpx.TimeoutException):
        return AdapterError(
            f"{service} timed out: {type(exc).__name__}",
            service=service,
            status_code=408,
            retryable=True,
        )
    if isinstance(exc, httpx.LocalProtocolError):
        return AdapterError(
            f"{service} request could not be sent: {exc}",
            service=service,
            status_code=400,
            retryable=False,
        )
    return AdapterError(
        f"{service} unreachable: {type(exc).__name__}: {exc}",
        service=service,
        status_code=503,
        retryable=True,
    )


def schema_error(service: str, detail: str) -> AdapterError:
    """Terminal error for a response whose body does not match the contract."""

    return AdapterError(
        f"{service} response failed validation: {detail}",
        service=service,
        status_code=SCHEMA_ERROR_STATUS,
        retryable=False,
    )


_UNIT_MS = {"second": 1000, "minute": 60_000, "hour": 3_600_000, "day": 86_400_000}


class ServiceRateLimiter:
    """Client-side request rates per external service.

    Each service gets its own in-memory pyrate-limiter bucket. ``acquire``
    polls the bucket until a slot frees up or ``max_wait_s`` elapses, in which
    case :class:`RateLimitExceeded` is raised so the caller backs off instead
    of blocking indefinitely.

    Args:
        rates: Mapping of service name to ``"N/unit"`` (``second``, ``minute``,
            ``hour``, ``day``). Services without an entry are not limited.
        max_wait_s: Longest time a single acquisition may wait.
        poll_interval_s: Sleep between acquisition attempts.
        clock: Monotonic clock, injectable for tests.
        sleep: Async sleep, injectable for tests.
    """

    def __init__(
        self,
        rates: Mapping[str, str],
        *,
        max_wait_s: float = 5.0,
        poll_interval_s: float = 0.025,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._max_wait_s = max_wait_s
        self._poll_interval_s = poll_interval_s
        self._clock = clock
        self._sleep = sleep
        self._limiters: dict[str, Limiter] = {
            service: Limiter(self.parse_rate(rate), raise_when_fail=False, max_delay=None)
            for service, rate in rates.items()
        }

    @staticmethod
    def parse_rate(rate: str) -> Rate:
        """Parse ``"10/second"`` into a pyrate-limiter :class:`Rate`."""
        limit_part, _, unit_part = rate.partition("/")
        unit = unit_part.strip().lower()
        if unit not in _UNIT_MS:
            raise ValueError(f"Unsupported rate unit in {rate!r}")
        limit = int(limit_part.strip())
        if limit < 1:
            raise ValueError(f"Rate limit must be positive in {rate!r}")
        return Rate(limit, _UNIT_MS[unit])

    def limits(self, service: str) -> bool:
        return service in self._limiters

    async def acquire(self, service: str) -> float:
        """Wait for a request slot for ``service``.

        Returns:
            Seconds spent waiting.

        Raises:
            RateLimitExceeded: If no slot frees up within ``max_wait_s``.
        """
        limiter = self._limiters.get(service)
        if limiter is None:
            return 0.0
        start = self._clock()
        while not limiter.try_acquire(service, weight=1):
            waited = self._clock() - start
            if waited >= self._max_wait_s:
                log_event(
                    LOGGER,
                    "warning",
                    "adapter_rate_limit_blocked",
                    service=service,
                    waited_ms=int(waited * 1000),
                    error_kind="rate_limit_exceeded",
                )
                raise RateLimitExceeded(
                    f"Local rate limit for {service} not available within {self._max_wait_s}s",
                    service=service,
                    waited_ms=int(waited * 1000),
                )
            await self._sleep(min(self._poll_interval_s, self._max_wait_s - waited))
        return self._clock() - start


class HttpAdapter:
    """Base class for adapters speaking JSON over a shared ``httpx.AsyncClient``.

    Subclasses set ``service`` and build their calls on :meth:`_send`, which
    returns only successful responses and raises classified
    :class:`AdapterError` otherwise. Public adapter methods wrap their work in
    :meth:`_guard` to turn those errors into :class:`Err` values.
    """

    service: ClassVar[str] = "http"

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        base_url: str,
        limiter: Optional[ServiceRateLimiter] = None,
        timeout_s: float = 30.0,
        headers: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._limiter = limiter
        self._timeout = httpx.Timeout(timeout_s)
        self._headers = dict(headers or {})

    def _url(self, path: str) -> str:
        return f"{self._base_url}/{path.lstrip('/')}"

    async def _send(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        json: Any = None,
        ok_statuses: tuple[int, ...] = (),
    ) -> httpx.Response:
        """Send one request after acquiring a rate slot.

        Args:
            method: HTTP method.
            path: Path relative to the adapter base URL.
            params: Query parameters.
            json: JSON request body.
            ok_statuses: Non-2xx statuses the caller interprets itself
                (e.g. 404 meaning "no data").

        Raises:
            AdapterError: For transport failures and unexpected statuses.
        """
        if self._limiter is not None:
            await self._limiter.acquire(self.service)
        started = time.perf_counter()
        try:
            response = await self._client.request(
                method,
                self._url(path),
                params=params,
                json=json,
                headers=self._headers,
                timeout=self._timeout,
            )
        except httpx.HTTPError as exc:
            raise classify_transport_error(exc, self.service) from exc
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        log_event(
            LOGGER,
            "debug",
            "adapter_request_completed",
            service=self.service,
            method=method,
            path=path,
            status=response.status_code,
            elapsed_ms=elapsed_ms,
        )
        if response.is_success or response.status_code in ok_statuses:
            return response
        raise classify_response(response, self.service)

    def _json(self, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise schema_error(self.service, "body is not JSON") from exc

    async def _guard(self, work: Awaitable[T], **fields: object) -> "AdapterResult[T]":
        """Await ``work`` and wrap the outcome as :class:`Ok` or :class:`Err`."""
        try:
            return Ok(await work)
        except AdapterError as exc:
            log_event(
                LOGGER,
                "warning",
                "adapter_request_failed",
                service=exc.service,
                status_code=exc.status_code,
                retryable=exc.retryable,
                error_kind="rate_limit_exceeded" if isinstance(exc, RateLimitExceeded) else "adapter_error",
                error=str(exc),
                **fields,
            )
            return Err(exc)
