"""Retrying HTTP client shared by the broker and topology calls.

Each attempt runs under its own deadline, passed to httpx and enforced again
with ``asyncio.wait_for``. 2xx responses are returned, any other status below
500 fails immediately, and 5xx responses, timeouts and transport errors are
retried with exponential backoff until the attempt budget runs out.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


class UpstreamError(Exception):
    """Base class for failed upstream calls."""

    def __init__(self, message: str, url: str) -> None:
        super().__init__(message)
        self.url = url


class UpstreamClientError(UpstreamError):
    """The upstream answered 4xx or an unfollowed 3xx; retrying will not help."""

    def __init__(self, url: str, status_code: int) -> None:
        super().__init__(f"API returned {status_code}", url)
        self.status_code = status_code


class RetriesExhaustedError(UpstreamError):
    """Every attempt failed with a retryable error."""

    def __init__(
        self,
        url: str,
        attempts: int,
        last_status: Optional[int],
        last_error: Optional[BaseException] = None,
    ) -> None:
        if last_status is not None:
            message = f"API returned {last_status} after {attempts} attempts"
        else:
            reason = describe_error(last_error) if last_error is not None else "unknown error"
            message = f"request failed after {attempts} attempts: {reason}"
        super().__init__(message, url)
        self.attempts = attempts
        self.last_status = last_status
        self.last_error = last_error


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    timeout_s: float = 10.0
    backoff_base_s: float = 1.0
    backoff_cap_s: float = 10.0

    def backoff(self, attempt: int) -> float:
        """Delay after the zero-based ``attempt`` failed: base * 2^attempt, capped."""
        return min(self.backoff_base_s * (2 ** attempt), self.backoff_cap_s)


def describe_error(exc: BaseException) -> str:
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return "request timed out"
    if isinstance(exc, httpx.RequestError):
        return f"{exc.__class__.__name__}: {exc}"
    return str(exc) or exc.__class__.__name__


class RetryingClient:
    """Wraps an ``httpx.AsyncClient`` with the retry/backoff/timeout contract."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._client = client
        self._sleep = sleep

    async def request(
        self,
        method: str,
        url: str,
        policy: RetryPolicy,
        *,
        headers: Optional[Dict[str, str]] = None,
        json: Any = None,
    ) -> httpx.Response:
        last_status: Optional[int] = None
        last_error: Optional[BaseException] = None

        for attempt in range(policy.max_attempts):
            try:
                # wait_for cancels the in-flight request when the deadline passes
                response = await asyncio.wait_for(
                    self._client.request(
                        method, url, headers=headers, json=json, timeout=policy.timeout_s
                    ),
                    timeout=policy.timeout_s,
                )
            except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
                logger.warning(
                    "[upstream] request timeout (%.1fs) on attempt %d for %s",
                    policy.timeout_s,
                    attempt + 1,
                    url,
                )
                last_status, last_error = None, exc
            except httpx.RequestError as exc:
                logger.warning(
                    "[upstream] %s on attempt %d for %s", describe_error(exc), attempt + 1, url
                )
                last_status, last_error = None, exc
            else:
                status = response.status_code
                if 200 <= status < 300:
                    return response
                if status < 500:
                    raise UpstreamClientError(url, status)
                last_status, last_error = status, None

            if attempt < policy.max_attempts - 1:
                delay = policy.backoff(attempt)
                logger.warning(
                    "[upstream] retry %d/%d after %.1fs", attempt + 1, policy.max_attempts, delay
                )
                await self._sleep(delay)

        raise RetriesExhaustedError(url, policy.max_attempts, last_status, last_error)

    async def get(self, url: str, policy: RetryPolicy, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, policy, **kwargs)

    async def post(self, url: str, policy: RetryPolicy, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, policy, **kwargs)
