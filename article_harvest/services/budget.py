"""Deadline values and tier budget planning.

A ``TimeBudget`` is an absolute deadline on a monotonic clock. Every layer
receives one and derives its own sub-timeouts from ``remaining()`` instead of
starting independent timers, so no child wait can outlive its parent.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable

from article_harvest.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class TimeBudget:
    """Absolute deadline plus remaining-time queries."""

    def __init__(
        self,
        timeout: float,
        clock: Callable[[], float] = time.monotonic,
        cleanup_reserve: float = 1.0,
        _deadline: float | None = None,
    ):
        self.clock = clock
        self.timeout = timeout
        self.cleanup_reserve = cleanup_reserve
        self.started = clock()
        self.deadline = _deadline if _deadline is not None else self.started + timeout

    def remaining(self) -> float:
        return max(0.0, self.deadline - self.clock())

    @property
    def expired(self) -> bool:
        return self.clock() >= self.deadline

    def elapsed(self) -> float:
        return self.clock() - self.started

    def cap(self, timeout: float) -> float:
        """Clamp a wait so it ends no later than this budget's deadline."""
        return max(0.0, min(timeout, self.remaining()))

    def child(self, timeout: float) -> "TimeBudget":
        """Derive a sub-budget that ends before this one's cleanup reserve."""
        now = self.clock()
        deadline = min(now + timeout, self.deadline - self.cleanup_reserve)
        deadline = max(deadline, now)
        return TimeBudget(
            deadline - now,
            clock=self.clock,
            cleanup_reserve=self.cleanup_reserve,
            _deadline=deadline,
        )

    def __repr__(self) -> str:
        return f"TimeBudget(remaining={self.remaining():.2f}s, timeout={self.timeout:.2f}s)"


@dataclass
class TierPlan:
    time_limited: bool
    tier1_timeout: float
    tier2_planned: float  # 0 when the browser tier is ruled out up front

    @property
    def skip_tier2(self) -> bool:
        return self.tier2_planned <= 0


def plan_tiers(budget: TimeBudget, cfg: Settings | None = None) -> TierPlan:
    """Split the remaining budget between the static and browser tiers."""
    cfg = cfg or default_settings
    remaining = budget.remaining()

    if remaining >= cfg.TIME_LIMITED_THRESHOLD:
        return TierPlan(
            time_limited=False,
            tier1_timeout=cfg.HTTP_TIMEOUT,
            tier2_planned=min(cfg.BROWSER_TIMEOUT, remaining - cfg.BROWSER_BUFFER),
        )

    available = max(0.0, remaining - cfg.OVERHEAD_RESERVE)
    tier1 = min(cfg.HTTP_TIMEOUT, available * cfg.TIER1_BUDGET_SHARE)
    tier2 = available - tier1 - cfg.INTER_TIER_RESERVE
    if tier2 < cfg.TIER2_MIN_VIABLE:
        logger.info(
            f"Time-limited mode: browser tier skipped ({tier2:.1f}s planned, "
            f"{cfg.TIER2_MIN_VIABLE:.1f}s required)"
        )
        tier2 = 0.0
    return TierPlan(time_limited=True, tier1_timeout=tier1, tier2_planned=tier2)


def browser_tier_timeout(
    budget: TimeBudget, plan: TierPlan, cfg: Settings | None = None
) -> float:
    """Browser budget recomputed from the time actually left after tier 1."""
    cfg = cfg or default_settings
    remaining = budget.remaining()
    if plan.time_limited:
        return remaining - cfg.OVERHEAD_RESERVE - cfg.INTER_TIER_RESERVE
    return min(cfg.BROWSER_TIMEOUT, remaining - cfg.BROWSER_BUFFER)
