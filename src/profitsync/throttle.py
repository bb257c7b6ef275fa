from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


DEFAULT_INTERVALS: dict[str, float] = {
    "shopify": 0.5,
    "facebook": 0.3,
    "google_sheets": 0.1,
}
MAX_BACKOFF_SEC = 60.0


class RateGovernor:
    """
    Fixed minimum delay per upstream, awaited between consecutive requests.
    """

    def __init__(
        self,
        intervals: dict[str, float] | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        default_interval: float = 0.25,
    ):
        self.intervals = dict(DEFAULT_INTERVALS)
        if intervals:
            self.intervals.update(intervals)
        self.default_interval = default_interval
        self._sleep = sleep

    def interval(self, source_kind: str) -> float:
        return float(self.intervals.get(source_kind, self.default_interval))

    async def wait(self, source_kind: str) -> None:
        delay = self.interval(source_kind)
        if delay > 0:
            await self._sleep(delay)

    def backoff_delay(self, source_kind: str, attempt: int, retry_after: float | None = None) -> float:
        base = self.interval(source_kind) * (2 ** max(0, attempt))
        if retry_after is not None:
            base = max(base, float(retry_after))
        return min(base, MAX_BACKOFF_SEC)

    async def backoff(self, source_kind: str, attempt: int, retry_after: float | None = None) -> None:
        delay = self.backoff_delay(source_kind, attempt, retry_after)
        logger.info("[throttle] %s backing off %.2fs (attempt %d)", source_kind, delay, attempt + 1)
        await self._sleep(delay)
