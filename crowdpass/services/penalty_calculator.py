# crowdpass/services/penalty_calculator.py
"""
Overstay penalty pricing. Pure and deterministic: no I/O, no clock.
The hourly rate is injected so it can vary by event or season.
"""

import math
from datetime import datetime, timedelta

ONE_HOUR = timedelta(hours=1)


class PenaltyCalculator:
    def __init__(self, rate_per_hour: int, max_hours: int = 24):
        if rate_per_hour <= 0:
            raise ValueError("rate_per_hour must be positive")
        if max_hours < 1:
            raise ValueError("max_hours must be at least 1")
        self.rate_per_hour = rate_per_hour
        self.max_hours = max_hours

    def amount(self, hours_late: int) -> int:
        """Penalty for a whole number of late hours (>= 1)."""
        if hours_late < 1:
            raise ValueError(f"hours_late must be >= 1, got {hours_late}")
        return hours_late * self.rate_per_hour

    __call__ = amount

    @staticmethod
    def hours_late(exit_time: datetime, deadline: datetime) -> int:
        """Overstay rounded up to whole hours; one second late is one hour. 0 when on time."""
        overstay = exit_time - deadline
        if overstay <= timedelta(0):
            return 0
        return math.ceil(overstay / ONE_HOUR)

    def maximum(self) -> int:
        """Flat charge for a group that never scanned out."""
        return self.amount(self.max_hours)
