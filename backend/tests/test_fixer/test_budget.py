"""Tests for the fix run's wall-clock budget and empty-batch circuit breaker."""

from apex.fixer.budget import EmptyBatchBreaker, FixBudget


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestFixBudget:
    def test_batch_timeout_capped_by_remaining(self):
        clock = FakeClock()
        budget = FixBudget(240, 90, 15, clock=clock)
        assert budget.batch_timeout() == 90
        clock.now += 200
        assert budget.remaining() == 40
        assert budget.batch_timeout() == 40

    def test_batch_timeout_floor(self):
        clock = FakeClock()
        budget = FixBudget(240, 90, 15, clock=clock)
        clock.now += 235
        assert budget.batch_timeout() == 15

    def test_exhausted(self):
        clock = FakeClock()
        budget = FixBudget(60, 30, clock=clock)
        assert not budget.exhausted()
        clock.now += 60
        assert budget.exhausted()
        assert budget.warning() == "AI fixer stopped after 60s budget (time limit)."

    def test_minimum_total(self):
        assert FixBudget(5, 30).total_seconds == 30


class TestEmptyBatchBreaker:
    def test_opens_after_consecutive_empties(self):
        breaker = EmptyBatchBreaker(3)
        breaker.record(0)
        breaker.record(0)
        assert not breaker.is_open
        breaker.record(0)
        assert breaker.is_open
        assert "3 consecutive empty batches" in breaker.diagnostic()

    def test_productive_batch_resets(self):
        breaker = EmptyBatchBreaker(2)
        breaker.record(0)
        breaker.record(2)
        breaker.record(0)
        assert not breaker.is_open
