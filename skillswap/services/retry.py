"""Resilient Fetch — bounded, fixed-delay retry for idempotent reads.

Only wrap reads.  Retrying an insert/update/delete after a timeout can apply
it twice, so write paths call the gateway directly and roll back their
optimistic entry on failure instead.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

from skillswap.config import settings
from skillswap.services.errors import GatewayError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, GatewayError) and exc.is_transient


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to attempt an operation and how long to wait between.

    ``max_attempts`` counts the first call, so ``max_attempts=3`` means at
    most two retries.  The delay is fixed.
    """

    max_attempts: int = 3
    delay: float = 1.0
    retry_on: Callable[[BaseException], bool] = field(default=_is_transient)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.delay < 0:
            raise ValueError("delay must be non-negative")

    @classmethod
    def from_settings(cls) -> RetryPolicy:
        return cls(max_attempts=settings.fetch_max_attempts, delay=settings.fetch_retry_delay)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    max_attempts: int | None = None,
    delay: float | None = None,
    label: str = "fetch",
) -> T:
    """Run *operation*, retrying failures *policy* accepts.

    ``max_attempts`` / ``delay`` override the policy's values for one call.
    Re-raises the last error once the attempt budget is spent; errors the
    policy rejects propagate on the first occurrence.
    """
    policy = policy or RetryPolicy.from_settings()
    if max_attempts is not None or delay is not None:
        policy = RetryPolicy(
            max_attempts=policy.max_attempts if max_attempts is None else max_attempts,
            delay=policy.delay if delay is None else delay,
            retry_on=policy.retry_on,
        )
    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as exc:
            if not policy.retry_on(exc):
                raise
            if attempt >= policy.max_attempts:
                logger.error(f"❌ {label} failed after {attempt} attempt(s): {exc}")
                raise
            logger.warning(
                f"⚠️ {label} failed (attempt {attempt}/{policy.max_attempts}) "
                f"retrying in {policy.delay}s: {exc}"
            )
            await asyncio.sleep(policy.delay)
            attempt += 1
