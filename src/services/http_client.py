"""Bounded-timeout HTTP client with optional retries.

Every collaborator that talks HTTP (messaging transport, calendar provider,
webhook actions) goes through :class:`HttpClient` so that each outbound call
carries a bounded timeout. Errors always propagate as ``httpx`` exceptions;
the collaborator turns them into :class:`~services.errors.CollaboratorError`.

    # One attempt, raise on failure (messaging)
    client = HttpClient()

    # Retry gateway errors and refused connections (calendar)
    client = HttpClient(retry_config=RetryConfig.from_settings())
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable

import httpx

from config import settings

logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """Retry policy with exponential backoff.

    Args:
        max_attempts: Attempts including the first one.
        retry_status_codes: Response codes worth another attempt.
        backoff_factor: Delay before retry ``n`` is ``backoff_factor * 2**n``.
        max_backoff: Upper bound on a single delay, in seconds.
        retry_exceptions: Transport errors worth another attempt.
    """

    max_attempts: int = 2
    retry_status_codes: set[int] = field(default_factory=lambda: {429, 500, 502, 503, 504})
    backoff_factor: float = 0.5
    max_backoff: float = 10.0
    retry_exceptions: tuple[type[Exception], ...] = (
        httpx.ConnectError,
        httpx.ConnectTimeout,
        httpx.PoolTimeout,
    )

    @classmethod
    def from_settings(cls) -> "RetryConfig":
        """Build the policy from ``settings.http``."""
        return cls(
            max_attempts=settings.http.retry_attempts,
            backoff_factor=settings.http.retry_backoff_seconds,
        )


class HttpClient:
    """Synchronous HTTP client.

    Args:
        timeout: Request timeout in seconds (default: settings.http.timeout)
        connect_timeout: Connection timeout in seconds (default: settings.http.connect_timeout)
        retry_config: Retry policy (None = single attempt)
        sleep: Sleep function used between retries
    """

    def __init__(
        self,
        timeout: float | None = None,
        connect_timeout: float | None = None,
        retry_config: RetryConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.timeout = timeout if timeout is not None else settings.http.timeout
        self.connect_timeout = (
            connect_timeout if connect_timeout is not None else settings.http.connect_timeout
        )
        self.retry_config = retry_config
        self._sleep = sleep

    def get(self, url: str, **kwargs) -> httpx.Response:
        """Perform a GET request."""
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs) -> httpx.Response:
        """Perform a POST request."""
        return self.request("POST", url, **kwargs)

    def patch(self, url: str, **kwargs) -> httpx.Response:
        """Perform a PATCH request."""
        return self.request("PATCH", url, **kwargs)

    def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Execute a request, retrying per ``retry_config``.

        Raises:
            httpx.HTTPStatusError: On a non-2xx response once attempts run out.
            httpx.RequestError: On a transport failure once attempts run out.
        """
        max_attempts = self.retry_config.max_attempts if self.retry_config else 1
        attempt = 0
        while True:
            try:
                return self._send(method, url, **kwargs)
            except httpx.HTTPStatusError as exc:
                if not self._should_retry(exc, attempt, max_attempts):
                    raise
                reason = f"status {exc.response.status_code}"
            except httpx.RequestError as exc:
                if not self._should_retry(exc, attempt, max_attempts):
                    raise
                reason = type(exc).__name__
            self._backoff(method, url, attempt, reason)
            attempt += 1

    def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        with httpx.Client(
            timeout=httpx.Timeout(self.timeout, connect=self.connect_timeout)
        ) as client:
            response = client.request(method, url, **kwargs)
            response.raise_for_status()
            return response

    def _should_retry(self, error: Exception, attempt: int, max_attempts: int) -> bool:
        if self.retry_config is None or attempt + 1 >= max_attempts:
            return False
        if isinstance(error, httpx.HTTPStatusError):
            return error.response.status_code in self.retry_config.retry_status_codes
        return isinstance(error, self.retry_config.retry_exceptions)

    def _backoff(self, method: str, url: str, attempt: int, reason: str) -> None:
        delay = min(
            self.retry_config.backoff_factor * (2**attempt),
            self.retry_config.max_backoff,
        )
        logger.warning(
            "HTTP %s %s failed with %s, retrying in %.1fs (attempt %d/%d)",
            method,
            url,
            reason,
            delay,
            attempt + 1,
            self.retry_config.max_attempts,
        )
        self._sleep(delay)
