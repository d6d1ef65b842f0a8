"""Per-org request gate."""

import asyncio
import logging
import time
from typing import Optional

logger = logging.getLogger(__name__)


class RateLimitGate:
    """
    Defers calls to an org so that request rate and concurrency stay in bounds.

    Calls are never rejected; they wait for a slot.

    Usage:
        async with gate:
            await client.query(...)
    """

    def __init__(self, max_requests_per_second: float = 10.0, max_concurrent: int = 5):
        """
        Initialize the gate.

        Args:
            max_requests_per_second: Max requests started per second (0 disables spacing)
            max_concurrent: Max requests in flight at once
        """
        self.max_requests_per_second = max_requests_per_second
        self.max_concurrent = max_concurrent
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._lock: Optional[asyncio.Lock] = None
        self._last_request_time = 0.0
        self.total_requests = 0
        self.total_wait_seconds = 0.0

    def _ensure_primitives(self) -> None:
        # Created lazily so the gate can be built outside a running loop
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(max(self.max_concurrent, 1))
            self._lock = asyncio.Lock()

    async def _rate_limit_wait(self) -> None:
        """Wait to respect the minimum interval between requests."""
        async with self._lock:
            if self.max_requests_per_second > 0:
                elapsed = time.monotonic() - self._last_request_time
                wait_time = (1.0 / self.max_requests_per_second) - elapsed
                if wait_time > 0:
                    self.total_wait_seconds += wait_time
                    await asyncio.sleep(wait_time)
            self._last_request_time = time.monotonic()
            self.total_requests += 1

    async def __aenter__(self) -> "RateLimitGate":
        self._ensure_primitives()
        await self._semaphore.acquire()
        try:
            await self._rate_limit_wait()
        except BaseException:
            self._semaphore.release()
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self._semaphore.release()
