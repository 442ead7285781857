"""Per-adapter access token cache with an injectable clock"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, Tuple

logger = logging.getLogger(__name__)


class TokenCache:
    """
    Holds one bearer token until shortly before it expires.

    The clock returns seconds (time.monotonic by default); tests pass a fake one
    to move time forward without sleeping.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, refresh_margin: float = 60.0, name: str = "gateway"):
        self.clock = clock
        self.refresh_margin = refresh_margin
        self.name = name
        self._token: Optional[str] = None
        self._expires_at: float = 0.0
        self._refresh_at: float = 0.0
        self._lock = asyncio.Lock()

    def get(self) -> Optional[str]:
        """Cached token, or None when absent or inside the refresh margin"""
        if self._token and self.clock() < self._refresh_at:
            return self._token
        return None

    def store(self, token: str, expires_in: float) -> None:
        now = self.clock()
        # Short-lived tokens would otherwise never be considered fresh
        margin = min(self.refresh_margin, expires_in / 2)
        self._token = token
        self._expires_at = now + expires_in
        self._refresh_at = self._expires_at - margin
        logger.debug(f"🔑 TOKEN_CACHED: {self.name} expires in {expires_in:.0f}s")

    def invalidate(self) -> None:
        self._token = None
        self._expires_at = 0.0
        self._refresh_at = 0.0

    @property
    def expires_at(self) -> float:
        return self._expires_at

    async def get_or_refresh(self, fetch: Callable[[], Awaitable[Tuple[str, float]]]) -> str:
        """Return the cached token or call `fetch` (once, even with concurrent callers) for a new one"""
        token = self.get()
        if token:
            return token

        async with self._lock:
            token = self.get()
            if token:
                return token

            logger.info(f"🔑 TOKEN_REFRESH: requesting new {self.name} access token")
            token, expires_in = await fetch()
            self.store(token, expires_in)
            return token
