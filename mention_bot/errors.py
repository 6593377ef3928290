"""
Error taxonomy for Mention Bot.

Every external failure is translated into one of these exceptions at the
client boundary, so the retry engine and the scheduler can decide what to do
without knowing anything about HTTP.

Hierarchy:
    MentionBotError
    ├── RateLimited            retry after the server reset, never counted
    ├── AuthenticationFailed   not retried, client marked unusable
    ├── QuotaExceeded          not retried within the current window
    ├── ApiError               retried with exponential backoff
    ├── NetworkError           retried with exponential backoff
    ├── ValidationError        malformed local data, item skipped
    └── RetryExhausted         retries used up, carries every attempt's error

Usage:
    try:
        await poster.post_reply(mention.id, text)
    except RateLimited as e:
        await asyncio.sleep(e.seconds_until_reset())
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


class MentionBotError(Exception):
    """Base class for all pipeline errors."""

    retryable = False

    def __init__(self, message: str, service: str = "unknown") -> None:
        self.service = service
        self.message = message
        super().__init__(message)


class RateLimited(MentionBotError):
    """Raised when a remote API or local budget refuses a call until reset_at."""

    retryable = True

    def __init__(
        self,
        resource: str,
        reset_at: datetime,
        service: str = "unknown",
        message: Optional[str] = None,
    ) -> None:
        self.resource = resource
        self.reset_at = reset_at
        super().__init__(
            message or f"Rate limited on {resource} until {reset_at.isoformat()}",
            service=service,
        )

    def seconds_until_reset(self, now: Optional[datetime] = None) -> float:
        """Seconds left before reset_at (never negative)."""
        now = now or datetime.now(timezone.utc)
        return max(0.0, (self.reset_at - now).total_seconds())


class AuthenticationFailed(MentionBotError):
    """Raised on HTTP 401. Credentials must be reloaded before retrying."""


class QuotaExceeded(MentionBotError):
    """Raised on HTTP 403 carrying a quota/usage-cap payload."""


class ApiError(MentionBotError):
    """Any other 4xx/5xx response."""

    retryable = True

    def __init__(self, message: str, status_code: int, service: str = "unknown") -> None:
        self.status_code = status_code
        super().__init__(f"HTTP {status_code}: {message}", service=service)


class NetworkError(MentionBotError):
    """No response was received (connect error, timeout, reset)."""

    retryable = True


class ValidationError(MentionBotError):
    """Malformed local or upstream data, e.g. a mention missing its id."""


class RetryExhausted(MentionBotError):
    """Raised by the retry engine once max_retries failed attempts are spent."""

    def __init__(
        self,
        label: str,
        attempts: int,
        errors: list[BaseException],
    ) -> None:
        self.label = label
        self.attempts = attempts
        self.errors = errors
        self.last_error = errors[-1] if errors else None
        last_service = getattr(self.last_error, "service", "unknown")
        super().__init__(
            f"{label} failed after {attempts} attempt(s): {self.last_error}",
            service=last_service,
        )


# =============================================================================
# HTTP translation
# =============================================================================

QUOTA_ERROR_CODES = {"quota_exceeded", "insufficient_quota"}
QUOTA_ERROR_TITLES = {"UsageCapExceeded", "Usage cap exceeded"}


def _payload(response: httpx.Response) -> dict:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _extract_message(data: dict, response: httpx.Response) -> str:
    """Pick the most useful upstream message from the common error shapes."""
    errors = data.get("errors")
    if isinstance(errors, list) and errors and isinstance(errors[0], dict):
        message = errors[0].get("message") or errors[0].get("detail")
        if message:
            return str(message)

    error = data.get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if isinstance(error, str):
        return error

    for key in ("detail", "title", "message"):
        if data.get(key):
            return str(data[key])

    return response.reason_phrase or f"HTTP {response.status_code}"


def _is_quota_payload(data: dict) -> bool:
    error = data.get("error")
    if isinstance(error, dict) and error.get("code") in QUOTA_ERROR_CODES:
        return True
    return data.get("title") in QUOTA_ERROR_TITLES


def reset_time_from_headers(
    headers: httpx.Headers,
    now: Optional[datetime] = None,
    default_seconds: int = 60,
) -> datetime:
    """
    Work out when a 429 lifts.

    Prefers the X API's `x-rate-limit-reset` (epoch seconds), then
    `retry-after` (seconds), then falls back to default_seconds from now.
    """
    now = now or datetime.now(timezone.utc)

    reset = headers.get("x-rate-limit-reset")
    if reset:
        try:
            return datetime.fromtimestamp(int(reset), tz=timezone.utc)
        except ValueError:
            logger.warning(f"Ignoring unparseable x-rate-limit-reset header: {reset}")

    retry_after = headers.get("retry-after")
    if retry_after:
        try:
            return now + timedelta(seconds=float(retry_after))
        except ValueError:
            logger.warning(f"Ignoring unparseable retry-after header: {retry_after}")

    return now + timedelta(seconds=default_seconds)


def error_from_response(
    response: httpx.Response,
    service: str,
    resource: str,
) -> MentionBotError:
    """
    Translate a failed HTTP response into the pipeline taxonomy.

    Args:
        response: The non-2xx response.
        service: Human-readable service name for logs ("x-api", "ai").
        resource: Budget resource the call was charged to.

    Returns:
        The matching exception instance (not raised).
    """
    data = _payload(response)
    message = _extract_message(data, response)
    status = response.status_code

    if status == 429:
        return RateLimited(
            resource=resource,
            reset_at=reset_time_from_headers(response.headers),
            service=service,
            message=f"{service} rate limited: {message}",
        )
    if status == 401:
        return AuthenticationFailed(f"{service} authentication failed: {message}", service=service)
    if status == 403 and _is_quota_payload(data):
        return QuotaExceeded(f"{service} quota exceeded: {message}", service=service)

    return ApiError(message, status_code=status, service=service)


def error_from_transport(exc: httpx.TransportError, service: str) -> NetworkError:
    """Wrap an httpx transport failure (no response received)."""
    return NetworkError(f"{service} unreachable: {exc.__class__.__name__}: {exc}", service=service)
