"""Per-run + daily dollar tracking.

Agents report ``cost_usd`` on every AgentResult. Each run has a dollar cap,
and all runs share a rolling daily cap. No retries on budget exceeded.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


class BudgetExceeded(Exception):
    """Raised when a budget cap is hit."""


@dataclass
class BudgetTracker:
    """Tracks per-run and daily spend in dollars. A cap of 0 disables it."""

    per_run_cap: float = 10.00
    daily_cap: float = 50.00

    _run_spend: dict[str, float] = field(default_factory=dict)
    _daily_spend: float = field(default=0.0)
    _day_start: float = field(default_factory=time.monotonic)

    def _maybe_reset_day(self) -> None:
        if time.monotonic() - self._day_start >= 86400:
            self._daily_spend = 0.0
            self._day_start = time.monotonic()

    def start_run(self, run_id: str, spent: float = 0.0) -> None:
        """Begin tracking a run (``spent`` seeds a resumed run)."""
        self._run_spend[run_id] = spent

    def finish_run(self, run_id: str) -> None:
        self._run_spend.pop(run_id, None)

    def record_spend(self, run_id: str, amount: float) -> bool:
        """Record spend for a run. Returns False if a cap is now exceeded."""
        self._maybe_reset_day()
        self._run_spend[run_id] = self._run_spend.get(run_id, 0.0) + amount
        self._daily_spend += amount
        return not self.is_exceeded(run_id)

    def is_exceeded(self, run_id: str) -> bool:
        self._maybe_reset_day()
        spent = self._run_spend.get(run_id, 0.0)
        if self.per_run_cap > 0 and spent > self.per_run_cap:
            logger.warning(
                "Per-run budget exceeded for %s: $%.4f > $%.2f",
                run_id, spent, self.per_run_cap,
            )
            return True
        if self.daily_cap > 0 and self._daily_spend > self.daily_cap:
            logger.warning(
                "Daily budget exceeded: $%.4f > $%.2f",
                self._daily_spend, self.daily_cap,
            )
            return True
        return False

    def check(self, run_id: str) -> None:
        """Raise BudgetExceeded if the run or the day is over its cap."""
        if self.is_exceeded(run_id):
            raise BudgetExceeded(
                f"Budget exceeded: run ${self.run_spend(run_id):.4f} "
                f"(cap ${self.per_run_cap:.2f}), "
                f"day ${self._daily_spend:.4f} (cap ${self.daily_cap:.2f})"
            )

    def run_spend(self, run_id: str) -> float:
        return self._run_spend.get(run_id, 0.0)

    def budget_remaining(self, run_id: str) -> float:
        """Remaining budget for one run."""
        return max(0.0, self.per_run_cap - self.run_spend(run_id))

    @property
    def daily_spend(self) -> float:
        self._maybe_reset_day()
        return self._daily_spend
