"""Bounded retry policy injected into components that poll for eventually consistent state"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from config import Config

logger = logging.getLogger(__name__)
T = TypeVar('T')


@dataclass(frozen=True)
class RetryPolicy:
    """
    max_attempts total tries; the wait before try n+1 is delay * backoff ** (n - 1).
    `sleep` is injectable so tests can run the exhaustion path without waiting.
    """
    max_attempts: int = 3
    delay: float = 1.0
    backoff: float = 1.0
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False, compare=False)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.delay < 0 or self.backoff < 1:
            raise ValueError("delay must be >= 0 and backoff >= 1")

    @classmethod
    def for_virtual_account_lookup(cls) -> "RetryPolicy":
        return cls(
            max_attempts=Config.VIRTUAL_ACCOUNT_LOOKUP_MAX_ATTEMPTS,
            delay=Config.VIRTUAL_ACCOUNT_LOOKUP_DELAY_SECONDS,
            backoff=Config.VIRTUAL_ACCOUNT_LOOKUP_BACKOFF,
        )

    @classmethod
    def for_verify_polling(cls) -> "RetryPolicy":
        return cls(max_attempts=Config.VERIFY_MAX_ATTEMPTS, delay=Config.VERIFY_RETRY_DELAY_SECONDS)

    def delay_before(self, attempt: int) -> float:
        """Delay to wait before the given (1-based) attempt"""
        if attempt <= 1:
            return 0.0
        return self.delay * (self.backoff ** (attempt - 2))

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        retry_on: Tuple[Type[BaseException], ...],
        description: str = "operation",
    ) -> T:
        """Await `operation` until it succeeds or attempts run out; the last error propagates"""
        last_error: Optional[BaseException] = None
        for attempt in range(1, self.max_attempts + 1):
            if attempt > 1:
                wait = self.delay_before(attempt)
                logger.warning(
                    f"🔁 RETRY: {description} attempt {attempt}/{self.max_attempts} in {wait:.2f}s ({last_error})"
                )
                await self.sleep(wait)
            try:
                return await operation()
            except retry_on as e:
                last_error = e
        raise last_error
