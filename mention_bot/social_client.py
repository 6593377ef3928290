"""
X API v2 transport shared by the mention source and the reply poster.

One canonical client per external API: authentication header, quota-header
feedback and error translation live here so the read and write paths cannot
drift apart.

Quota feedback:
    Every response's `x-rate-limit-remaining` / `x-rate-limit-reset` headers
    are written to the StateStore and fed to the BudgetTracker, so the next
    can_proceed() / try_acquire() reflects what the server actually reports.

Authentication:
    A 401 flips is_authenticated to False. Callers check the flag instead of
    hitting the API again with credentials known to be bad; after a
    credentials reload, call reset_authentication().
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from mention_bot.errors import (
    ApiError,
    AuthenticationFailed,
    RateLimited,
    error_from_response,
    error_from_transport,
)
from mention_bot.rate_limiter import BudgetTracker
from mention_bot.state_store import StateStore

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30


class SocialApiClient:
    """Thin async HTTP wrapper around the X API v2."""

    SERVICE = "x-api"

    def __init__(
        self,
        base_url: str,
        bearer_token: str,
        state: StateStore,
        budgets: BudgetTracker,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            base_url: API root, e.g. https://api.twitter.com/2.
            bearer_token: OAuth 2.0 bearer token.
            state: Durable store receiving server-reported quota.
            budgets: Budget tracker receiving server-reported quota.
            timeout: Per-request timeout in seconds.
            transport: Optional httpx transport (tests use httpx.MockTransport).
        """
        self.base_url = base_url.rstrip("/")
        self.bearer_token = bearer_token
        self.state = state
        self.budgets = budgets
        self.timeout = timeout
        self._transport = transport
        self._authenticated = True

    @property
    def is_authenticated(self) -> bool:
        return self._authenticated

    def reset_authentication(self) -> None:
        """Clear the unauthenticated flag after credentials were reloaded."""
        self._authenticated = True
        logger.info("X API authentication flag reset")

    async def request(
        self,
        method: str,
        path: str,
        resource: str,
        params: Optional[dict[str, Any]] = None,
        json: Optional[dict[str, Any]] = None,
    ) -> dict:
        """
        Issue one API call and return the decoded JSON body.

        Budget checks are the caller's job; this method only records the
        quota the server reports back.

        Raises:
            AuthenticationFailed: On 401, or immediately if already unauthenticated.
            RateLimited: On 429, carrying the reset time.
            QuotaExceeded: On 403 with a usage-cap payload.
            ApiError: Any other error status, or an undecodable body.
            NetworkError: No response received.
        """
        if not self._authenticated:
            raise AuthenticationFailed("X API credentials were rejected earlier", service=self.SERVICE)

        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
        ) as client:
            try:
                response = await client.request(
                    method,
                    path,
                    params=params,
                    json=json,
                    headers={
                        "Authorization": f"Bearer {self.bearer_token}",
                        "User-Agent": "mention-bot",
                    },
                )
            except httpx.TransportError as e:
                raise error_from_transport(e, self.SERVICE) from e

        self._record_quota(resource, response.headers)

        if response.is_error:
            error = error_from_response(response, self.SERVICE, resource)
            if isinstance(error, AuthenticationFailed):
                self._authenticated = False
                logger.error(f"X API rejected credentials on {method} {path}; marking unauthenticated")
            elif isinstance(error, RateLimited):
                # Nothing more until the window resets, whatever local accounting says
                self.state.update_remaining(resource, 0)
                self.state.update_reset_at(resource, error.reset_at)
                self.budgets.observe(resource, 0, error.reset_at)
            raise error

        try:
            return response.json()
        except ValueError as e:
            raise ApiError(f"Undecodable response body: {e}", status_code=response.status_code, service=self.SERVICE) from e

    def _record_quota(self, resource: str, headers: httpx.Headers) -> None:
        remaining = headers.get("x-rate-limit-remaining")
        reset = headers.get("x-rate-limit-reset")
        if remaining is None:
            return

        try:
            remaining_count = int(remaining)
            reset_at = datetime.fromtimestamp(int(reset), tz=timezone.utc) if reset else None
        except ValueError:
            logger.warning(f"Ignoring malformed rate-limit headers: remaining={remaining} reset={reset}")
            return

        self.state.update_remaining(resource, remaining_count)
        if reset_at is not None:
            self.state.update_reset_at(resource, reset_at)
        self.budgets.observe(resource, remaining_count, reset_at)
        logger.debug(f"{resource} quota from server: {remaining_count} remaining, reset {reset_at}")
