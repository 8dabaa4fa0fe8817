"""Bounded retries with exponential backoff for outbound calls."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from swaprelay.adapters.base import AdapterTimeout
from swaprelay.config import Settings
from swaprelay.errors import TransientInfrastructureError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Attempts, backoff bounds and per-attempt timeout."""

    attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    timeout: Optional[float] = 20.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            attempts=settings.retry_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            timeout=settings.adapter_timeout_seconds,
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff after the given (1-based) failed attempt: base, 2*base, 4*base ... capped."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    description: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run an operation, retrying transient failures.

    Each attempt is bounded by the policy timeout; a timeout counts as a
    transient failure. Any other exception propagates immediately.

    Raises:
        The last TransientInfrastructureError once attempts are exhausted
    """
    attempts = max(1, policy.attempts)
    attempt = 0
    while True:
        attempt += 1
        try:
            if policy.timeout:
                return await asyncio.wait_for(operation(), timeout=policy.timeout)
            return await operation()
        except asyncio.TimeoutError:
            error: TransientInfrastructureError = AdapterTimeout(
                f"{description} timed out after {policy.timeout}s"
            )
        except TransientInfrastructureError as e:
            error = e

        if attempt >= attempts:
            logger.error(f"{description} failed after {attempts} attempt(s): {error}")
            raise error

        delay = policy.delay_for(attempt)
        logger.warning(
            f"{description} failed (attempt {attempt}/{attempts}): {error}; retrying in {delay:.1f}s"
        )
        await sleep(delay)

