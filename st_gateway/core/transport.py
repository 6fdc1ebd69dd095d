from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx

from .errors import truncate_excerpt
from .settings import GatewaySettings
from .types import ProviderResult

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]
ClientFactory = Callable[[float], httpx.AsyncClient]


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_retries: int = 2
    base_delay_ms: int = 400

    @classmethod
    def from_settings(cls, settings: GatewaySettings) -> "RetryPolicy":
        return cls(
            max_retries=max(0, settings.retry_count),
            base_delay_ms=max(0, settings.retry_delay_ms),
        )

    def delay_seconds(self, attempt: int) -> float:
        return (self.base_delay_ms * (2**attempt)) / 1000.0


@dataclass(slots=True)
class RetryState:
    ceiling: int
    attempts: int = 0

    @property
    def can_retry(self) -> bool:
        return self.attempts <= self.ceiling


def is_transient_status(status: int) -> bool:
    return status == 429 or 500 <= status <= 599


def default_client_factory(timeout: float) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=timeout)


async def post_json_with_retries(
    client: httpx.AsyncClient,
    url: str,
    payload: dict[str, Any],
    *,
    headers: dict[str, str] | None = None,
    policy: RetryPolicy,
    sleep: Sleep = asyncio.sleep,
) -> ProviderResult:
    """POST ``payload`` and retry 429/5xx responses and transport failures.

    Other non-2xx statuses are returned immediately. The returned result
    carries the last status seen (0 when no response was ever received)
    and a truncated excerpt of the body or transport error.
    """

    state = RetryState(ceiling=policy.max_retries)
    last_status = 0
    last_body = ""
    last_error = ""

    while True:
        attempt = state.attempts
        state.attempts += 1
        try:
            response = await client.post(url, json=payload, headers=headers)
        except httpx.TransportError as exc:
            last_error = str(exc) or exc.__class__.__name__
            if state.can_retry:
                delay = policy.delay_seconds(attempt)
                logger.warning(
                    "Upstream transport error on attempt %d (%s); retrying in %.3fs",
                    state.attempts,
                    last_error,
                    delay,
                )
                await sleep(delay)
                continue
            break

        last_status = response.status_code
        last_body = response.text

        if response.is_success:
            return ProviderResult(
                ok=True,
                status=last_status,
                text=last_body,
                attempts=state.attempts,
            )

        if is_transient_status(last_status) and state.can_retry:
            delay = policy.delay_seconds(attempt)
            logger.warning(
                "Upstream returned %d on attempt %d; retrying in %.3fs",
                last_status,
                state.attempts,
                delay,
            )
            await sleep(delay)
            continue

        break

    excerpt = truncate_excerpt(last_body or last_error or "request failed")
    logger.warning(
        "Upstream call failed after %d attempt(s) with status %d", state.attempts, last_status
    )
    return ProviderResult(
        ok=False,
        status=last_status,
        error_text=excerpt,
        attempts=state.attempts,
    )
