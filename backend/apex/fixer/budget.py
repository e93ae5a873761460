"""Wall-clock budget and empty-batch circuit breaker for a fix run."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

logger = logging.getLogger(__name__)

MIN_TOTAL_BUDGET_SECONDS = 30


class FixBudget:
    """Total wall-clock budget shared by every worker of one fix run.

    Per-batch timeout = max(min_batch_timeout, min(batch_timeout, remaining)).
    The floor means a batch started near the end of the budget may overrun
    it by up to min_batch_timeout seconds.
    """

    def __init__(
        self,
        total_seconds: int,
        batch_timeout_seconds: int,
        min_batch_timeout_seconds: int = 15,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.total_seconds = max(MIN_TOTAL_BUDGET_SECONDS, total_seconds)
        self.batch_timeout_seconds = batch_timeout_seconds
        self.min_batch_timeout_seconds = min_batch_timeout_seconds
        self._clock = clock
        self._started_at = clock()

    def elapsed(self) -> int:
        return int(self._clock() - self._started_at)

    def remaining(self) -> int:
        return self.total_seconds - self.elapsed()

    def exhausted(self) -> bool:
        return self.remaining() <= 0

    def batch_timeout(self) -> int:
        return max(self.min_batch_timeout_seconds, min(self.batch_timeout_seconds, self.remaining()))

    def warning(self) -> str:
        return f"AI fixer stopped after {self.total_seconds}s budget (time limit)."


class EmptyBatchBreaker:
    """Opens after `limit` consecutive batches with zero extracted fixes.

    A run of empty batches means the agent is misconfigured (credentials,
    flags), not that the violations are hard. Any productive batch resets it.
    """

    def __init__(self, limit: int = 3) -> None:
        self.limit = max(1, limit)
        self.consecutive_empty = 0

    @property
    def is_open(self) -> bool:
        return self.consecutive_empty >= self.limit

    def record(self, fix_count: int) -> None:
        if fix_count > 0:
            self.consecutive_empty = 0
            return
        self.consecutive_empty += 1
        if self.is_open:
            logger.warning("Fix circuit breaker OPEN after %d consecutive empty batches", self.consecutive_empty)

    def diagnostic(self) -> str:
        return (
            f"stopped after {self.consecutive_empty} consecutive empty batches "
            "(agent likely misconfigured: check credentials and model)"
        )
