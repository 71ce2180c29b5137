"""
Late fee policy.

``calculate_fine`` is pure: the same due date, time and policy always give
the same amount, so it can be exercised without a database or a clock.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta

DAY = timedelta(days=1)


@dataclass(frozen=True)
class FinePolicy:
    per_day: int = 2000
    grace_hours: int = 2
    max_fine: int = 50000

    @property
    def grace(self) -> timedelta:
        return timedelta(hours=self.grace_hours)


def calculate_fine(due_date: datetime, now: datetime, policy: FinePolicy = FinePolicy()) -> int:
    """Fine owed at ``now`` for a loan due at ``due_date``.

    Nothing is charged inside the grace window. After it, every started day
    costs ``per_day``, capped at ``max_fine``.
    """
    late = now - due_date - policy.grace
    if late <= timedelta(0):
        return 0
    late_days = math.ceil(late / DAY)
    return min(late_days * policy.per_day, policy.max_fine)
