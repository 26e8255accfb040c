"""Unit tests for billing-anchor and proration arithmetic."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from billing.domain.proration import (
    clamp_anchor,
    days_between,
    days_until,
    next_renewal,
    prorated_charge,
    prorated_resource_charge,
    round_money,
)


class TestRoundMoney:
    def test_rounds_half_up(self):
        assert round_money(Decimal("0.005")) == Decimal("0.01")
        assert round_money(Decimal("2.675")) == Decimal("2.68")

    def test_keeps_two_places(self):
        assert str(round_money(Decimal("49"))) == "49.00"


class TestAnchors:
    def test_clamps_to_last_day_of_short_month(self):
        assert clamp_anchor(31, 2025, 4) == datetime(2025, 4, 30, tzinfo=UTC)

    def test_february_leap_and_common_years(self):
        assert clamp_anchor(30, 2024, 2).day == 29
        assert clamp_anchor(30, 2025, 2).day == 28

    def test_rejects_out_of_range_anchor(self):
        with pytest.raises(ValueError):
            clamp_anchor(0, 2025, 1)
        with pytest.raises(ValueError):
            clamp_anchor(32, 2025, 1)

    def test_next_renewal_end_of_month(self):
        assert next_renewal(31, datetime(2025, 3, 31, 15, 0, tzinfo=UTC)) == datetime(2025, 4, 30, tzinfo=UTC)

    def test_next_renewal_rolls_over_year(self):
        assert next_renewal(15, datetime(2025, 12, 15, tzinfo=UTC)) == datetime(2026, 1, 15, tzinfo=UTC)

    def test_next_renewal_is_midnight_utc(self):
        renewal = next_renewal(10, datetime(2026, 3, 10, 12, 30, tzinfo=UTC))
        assert renewal == datetime(2026, 4, 10, tzinfo=UTC)


class TestProratedCharge:
    def test_two_thirds_of_a_month(self):
        assert prorated_charge(Decimal("15.00"), 20) == Decimal("10.00")

    def test_rounds_to_cents(self):
        # 25 / 30 * 7 = 5.8333...
        assert prorated_charge(Decimal("25.00"), 7) == Decimal("5.83")

    def test_zero_days_is_free(self):
        assert prorated_charge(Decimal("20.00"), 0) == Decimal("0.00")

    def test_full_month(self):
        assert prorated_charge(Decimal("20.00"), 30) == Decimal("20.00")

    def test_negative_days_rejected(self):
        with pytest.raises(ValueError):
            prorated_charge(Decimal("20.00"), -1)

    def test_resource_rounds_per_unit_first(self):
        # 5.83 per unit * 2, not round(11.666...)
        assert prorated_resource_charge(Decimal("25.00"), 2, 7) == Decimal("11.66")

    def test_resource_whole_units(self):
        assert prorated_resource_charge(Decimal("30.00"), 3, 10) == Decimal("30.00")


class TestDayCounting:
    def test_half_day_rounds_up(self):
        start = datetime(2026, 1, 1, tzinfo=UTC)
        assert days_between(start, start + timedelta(days=1, hours=12)) == 2

    def test_under_half_day_rounds_down(self):
        start = datetime(2026, 1, 1, tzinfo=UTC)
        assert days_between(start, start + timedelta(days=1, hours=11)) == 1

    def test_distance_is_absolute(self):
        start = datetime(2026, 1, 10, tzinfo=UTC)
        assert days_between(start, start - timedelta(days=3)) == 3

    def test_days_until_past_end_is_zero(self):
        now = datetime(2026, 1, 10, tzinfo=UTC)
        assert days_until(now, now - timedelta(days=1)) == 0
        assert days_until(now, now) == 0

    def test_days_until_future(self):
        now = datetime(2026, 1, 10, tzinfo=UTC)
        assert days_until(now, now + timedelta(days=20)) == 20
