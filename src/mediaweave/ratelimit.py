"""Per-provider cooldown tracking for throttled catalog APIs."""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from enum import Enum

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN_SECONDS = 60.0


class ProviderState(str, Enum):
    """Throttling state of a single provider."""

    FREE = "free"
    LIMITED = "limited"


class RateLimiter:
    """Tracks providers that have asked us to slow down.

    A provider moves FREE -> LIMITED when record_rate_limit() is called and
    back to FREE once its reset time has passed. Callers that hit a limited
    provider queue in await_if_limited() until the cooldown ends.

    Attributes:
        default_cooldown: Cooldown in seconds when the provider sends no hint.
    """

    def __init__(
        self,
        default_cooldown: float = DEFAULT_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.default_cooldown = default_cooldown
        self._clock = clock
        self._sleep = sleep
        self._reset_at: dict[str, float] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, provider: str) -> asyncio.Lock:
        lock = self._locks.get(provider)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[provider] = lock
        return lock

    def record_rate_limit(self, provider: str, retry_after: float | None = None) -> None:
        """Mark a provider as limited.

        Args:
            provider: Provider id
            retry_after: Seconds to wait as hinted by the provider, if any
        """
        wait = retry_after if retry_after is not None else self.default_cooldown
        reset_at = self._clock() + max(0.0, wait)
        # Never shorten a cooldown another caller already recorded
        current = self._reset_at.get(provider)
        if current is not None and current > reset_at:
            reset_at = current
        self._reset_at[provider] = reset_at
        logger.warning(f"Provider {provider} rate limited, resets in {reset_at - self._clock():.1f}s")

    def time_until_reset(self, provider: str) -> float | None:
        """Seconds left in a provider's cooldown, None if it is free."""
        reset_at = self._reset_at.get(provider)
        if reset_at is None:
            return None
        remaining = reset_at - self._clock()
        if remaining <= 0:
            del self._reset_at[provider]
            logger.debug(f"Rate limit expired for {provider}")
            return None
        return remaining

    def state(self, provider: str) -> ProviderState:
        """Current throttling state of a provider."""
        if self.time_until_reset(provider) is None:
            return ProviderState.FREE
        return ProviderState.LIMITED

    def is_limited(self, provider: str) -> bool:
        return self.state(provider) is ProviderState.LIMITED

    async def await_if_limited(self, provider: str) -> None:
        """Wait out a provider's cooldown, if any.

        Waiters for the same provider are served one at a time, and the
        cooldown is re-checked after every wait so an extension recorded
        while sleeping is honoured.
        """
        if self.time_until_reset(provider) is None:
            return

        async with self._lock_for(provider):
            while (remaining := self.time_until_reset(provider)) is not None:
                logger.info(f"Waiting {remaining:.1f}s for rate limit reset on {provider}")
                await self._sleep(remaining)

    def clear_all(self) -> None:
        """Forget every recorded cooldown."""
        self._reset_at.clear()


__all__ = ["DEFAULT_COOLDOWN_SECONDS", "ProviderState", "RateLimiter"]
