# tests/test_penalty_calculator.py
"""Unit tests for overstay penalty pricing."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest
from datetime import datetime, timedelta, timezone
from crowdpass.services.penalty_calculator import PenaltyCalculator

DEADLINE = datetime(2026, 3, 1, 18, 0, tzinfo=timezone.utc)


class TestPenaltyCalculator:
    def test_amount_is_linear_in_hours(self):
        calc = PenaltyCalculator(rate_per_hour=500)
        assert calc.amount(1) == 500
        assert calc.amount(3) == 1500
        assert calc(2) == 1000

    def test_zero_or_negative_hours_rejected(self):
        calc = PenaltyCalculator(rate_per_hour=500)
        with pytest.raises(ValueError):
            calc.amount(0)
        with pytest.raises(ValueError):
            calc.amount(-2)

    def test_hours_late_rounds_up(self):
        assert PenaltyCalculator.hours_late(DEADLINE + timedelta(seconds=1), DEADLINE) == 1
        assert PenaltyCalculator.hours_late(DEADLINE + timedelta(minutes=150), DEADLINE) == 3
        assert PenaltyCalculator.hours_late(DEADLINE + timedelta(hours=2), DEADLINE) == 2

    def test_on_time_is_zero(self):
        assert PenaltyCalculator.hours_late(DEADLINE, DEADLINE) == 0
        assert PenaltyCalculator.hours_late(DEADLINE - timedelta(hours=1), DEADLINE) == 0

    def test_maximum_is_max_hours_at_rate(self):
        assert PenaltyCalculator(rate_per_hour=500, max_hours=24).maximum() == 12000

    def test_rate_is_injectable(self):
        assert PenaltyCalculator(rate_per_hour=750).amount(2) == 1500

    def test_invalid_configuration(self):
        with pytest.raises(ValueError):
            PenaltyCalculator(rate_per_hour=0)
        with pytest.raises(ValueError):
            PenaltyCalculator(rate_per_hour=500, max_hours=0)
