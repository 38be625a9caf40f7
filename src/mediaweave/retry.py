"""Retry with exponential backoff for provider calls."""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from pydantic import BaseModel, ConfigDict, Field

from mediaweave.providers.base import (
    NetworkFailure,
    ProviderError,
    RateLimitFailure,
    ServerFailure,
    classify_exception,
)
from mediaweave.ratelimit import RateLimiter

logger = logging.getLogger(__name__)

T = TypeVar("T")

JITTER_FRACTION = 0.25


class RetryConfig(BaseModel):
    """Backoff parameters for the retry executor.

    Delays are in seconds.
    """

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1)
    initial_delay: float = Field(default=1.0, ge=0.0)
    max_delay: float = Field(default=30.0, ge=0.0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    use_jitter: bool = True

    @classmethod
    def for_profile(cls, name: str) -> "RetryConfig":
        """Build a config from a named profile.

        Args:
            name: "default", "aggressive" or "conservative"

        Raises:
            ValueError: If the profile name is unknown
        """
        profile = name.lower().strip()
        if profile == "default":
            return cls()
        if profile == "aggressive":
            return cls(max_attempts=5, initial_delay=0.5, max_delay=60.0)
        if profile == "conservative":
            return cls(max_attempts=2, initial_delay=2.0, max_delay=10.0, backoff_multiplier=1.5)
        raise ValueError(f"Unknown retry profile '{name}'")

    def base_delay(self, retry_index: int) -> float:
        """Backoff before the given retry, without jitter.

        retry_index 0 is the wait before the second attempt.
        """
        delay = self.initial_delay * (self.backoff_multiplier**retry_index)
        return min(delay, self.max_delay)


def is_retryable(error: BaseException) -> bool:
    """Default retry classification.

    Connectivity failures, timeouts, 5xx and 429 are retried. Validation
    failures and anything unclassified are not.
    """
    classified = error if isinstance(error, ProviderError) else classify_exception("", error)
    return isinstance(classified, (NetworkFailure, ServerFailure, RateLimitFailure))


class RetryExecutor:
    """Runs an async operation with retries, timeouts and rate-limit waits.

    Every attempt first waits out any cooldown recorded for the provider,
    then runs under a per-attempt timeout. A 429 records a cooldown and
    retries without the backoff sleep, since the next attempt waits for the
    cooldown anyway.
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        rate_limiter: RateLimiter | None = None,
        *,
        default_timeout: float | None = 10.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config or RetryConfig()
        self.rate_limiter = rate_limiter or RateLimiter()
        self.default_timeout = default_timeout
        self._sleep = sleep
        self._rng = rng or random.Random()

    def compute_delay(self, retry_index: int) -> float:
        """Backoff before the given retry, including jitter."""
        delay = self.config.base_delay(retry_index)
        if self.config.use_jitter and delay > 0:
            delay += self._rng.uniform(0, delay * JITTER_FRACTION)
        return delay

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        provider: str,
        operation_name: str,
        should_retry: Callable[[BaseException], bool] | None = None,
        timeout: float | None = None,
    ) -> T:
        """Run operation until it succeeds or attempts are exhausted.

        Args:
            operation: Zero-argument coroutine factory, called once per attempt
            provider: Provider id, used for rate limiting and error reporting
            operation_name: Label for logs and the final error
            should_retry: Override for the retry classification
            timeout: Per-attempt timeout in seconds (defaults to default_timeout)

        Returns:
            The operation's result

        Raises:
            ProviderError: The last failure, classified and annotated with
                the operation name and attempt count
        """
        retry_check = should_retry or is_retryable
        attempt_timeout = timeout if timeout is not None else self.default_timeout
        max_attempts = self.config.max_attempts
        retry_index = 0

        for attempt in range(1, max_attempts + 1):
            await self.rate_limiter.await_if_limited(provider)
            logger.debug(f"{provider}.{operation_name} attempt {attempt}/{max_attempts}")
            try:
                if attempt_timeout is None:
                    return await operation()
                return await asyncio.wait_for(operation(), timeout=attempt_timeout)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = e
                logger.warning(
                    f"{provider}.{operation_name} attempt {attempt}/{max_attempts} failed: {e!r}"
                )

            if not retry_check(error):
                logger.info(f"{provider}.{operation_name} failed with non-retryable error")
                raise self._final_error(provider, operation_name, attempt, error)

            if isinstance(error, RateLimitFailure):
                self.rate_limiter.record_rate_limit(provider, error.retry_after)

            if attempt == max_attempts:
                break

            if isinstance(error, RateLimitFailure):
                continue

            delay = self.compute_delay(retry_index)
            retry_index += 1
            logger.info(f"Retrying {provider}.{operation_name} in {delay:.2f}s")
            await self._sleep(delay)

        logger.error(f"{provider}.{operation_name} failed after {max_attempts} attempts")
        raise self._final_error(provider, operation_name, max_attempts, error)

    @staticmethod
    def _final_error(
        provider: str, operation_name: str, attempts: int, error: BaseException
    ) -> ProviderError:
        final = classify_exception(provider, error)
        final.operation = operation_name
        final.attempts = attempts
        if final is not error:
            final.__cause__ = error
        return final


__all__ = ["RetryConfig", "RetryExecutor", "is_retryable"]
