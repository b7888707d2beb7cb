"""
Unit tests for the fare engine: quotes, night window, waiting fee, commission.
"""
from datetime import datetime, timezone

import pytest

from fleet_dispatch.core.exceptions import InvalidPlanError, ValidationException
from fleet_dispatch.domain.models import PricingPlan
from fleet_dispatch.domain.services.fare_engine import (
    NightWindow,
    PlanCatalog,
    breakdown,
    commission_for,
    quote,
    round_currency,
    validate_plan,
    waiting_fee,
)

from tests.conftest import STANDARD_PLAN


@pytest.mark.unit
def test_quote_sums_base_distance_and_time():
    # 150 + 10 * 30 + 20 * 5
    assert quote(10, 20, STANDARD_PLAN) == 550


@pytest.mark.unit
def test_breakdown_itemizes_components():
    fare = breakdown(3.3, 6.6, STANDARD_PLAN)

    assert fare.base_fare == 150
    assert fare.distance_fare == 99
    assert fare.time_fare == 33
    assert fare.night_surcharge == 0
    assert fare.total == 282


@pytest.mark.unit
def test_night_surcharge_is_flat_add_on():
    day = breakdown(5, 10, STANDARD_PLAN)
    night = breakdown(5, 10, STANDARD_PLAN, night=True)

    assert night.night_surcharge == 50
    assert night.total - day.total == 50


@pytest.mark.unit
def test_surcharges_are_added_to_total():
    fare = breakdown(0, 0, STANDARD_PLAN, surcharges=(20, 30))
    assert fare.total == 200


@pytest.mark.unit
def test_total_rounds_half_up():
    plan = PricingPlan(id="p", name="Half", base_fare=0, per_km=1, per_minute=0)
    assert quote(66.5, 0, plan) == 67
    assert quote(67.5, 0, plan) == 68
    assert round_currency(0.49) == 0


@pytest.mark.unit
def test_negative_distance_rejected():
    with pytest.raises(ValidationException):
        breakdown(-1, 5, STANDARD_PLAN)


@pytest.mark.unit
def test_validate_plan_rejects_negative_rates():
    plan = PricingPlan(id="broken", name="Broken", base_fare=100, per_km=-5, per_minute=3)

    with pytest.raises(InvalidPlanError) as exc_info:
        validate_plan(plan)

    assert exc_info.value.details["plan_id"] == "broken"
    assert "per_km is negative" in exc_info.value.details["problems"]


@pytest.mark.unit
def test_validate_plan_rejects_missing_plan():
    with pytest.raises(InvalidPlanError):
        quote(1, 1, None)


@pytest.mark.unit
def test_validate_plan_rejects_missing_required_field():
    plan = PricingPlan(id="partial", name="Partial", base_fare=None, per_km=10, per_minute=1)
    with pytest.raises(InvalidPlanError):
        validate_plan(plan)


@pytest.mark.unit
@pytest.mark.parametrize(
    "price, rate, expected",
    [
        (450, 0.15, 68),
        (300, 0.15, 45),
        (0, 0.15, 0),
        (101, 0.1, 10),
        (105, 0.1, 11),
    ],
)
def test_commission_rounds_half_up(price, rate, expected):
    assert commission_for(price, rate) == expected


@pytest.mark.unit
@pytest.mark.parametrize(
    "elapsed, expected",
    [
        (0, 0),
        (299, 0),
        (300, 0),
        (359, 0),
        (360, 10),
        (419, 10),
        (420, 20),
        (900, 100),
    ],
)
def test_waiting_fee_counts_whole_minutes_after_grace(elapsed, expected):
    assert waiting_fee(elapsed, grace_seconds=300, per_minute_fee=10) == expected


@pytest.mark.unit
def test_waiting_fee_never_negative():
    assert waiting_fee(-50, grace_seconds=300, per_minute_fee=10) == 0


class TestNightWindow:
    """Night window in local time (UTC+8 by default)"""

    @pytest.mark.unit
    def test_wrapping_window_contains_late_evening(self):
        window = NightWindow(start_hour=23, end_hour=6)
        # 15:30 UTC is 23:30 local
        assert window.contains(datetime(2026, 1, 5, 15, 30, tzinfo=timezone.utc))

    @pytest.mark.unit
    def test_wrapping_window_contains_early_morning(self):
        window = NightWindow(start_hour=23, end_hour=6)
        assert window.contains(datetime(2026, 1, 5, 21, 59, tzinfo=timezone.utc))

    @pytest.mark.unit
    def test_end_hour_is_exclusive(self):
        window = NightWindow(start_hour=23, end_hour=6)
        assert not window.contains(datetime(2026, 1, 5, 22, 0, tzinfo=timezone.utc))

    @pytest.mark.unit
    def test_daytime_is_outside(self):
        window = NightWindow()
        assert not window.contains(datetime(2026, 1, 5, 4, 0, tzinfo=timezone.utc))

    @pytest.mark.unit
    def test_non_wrapping_window(self):
        window = NightWindow(start_hour=1, end_hour=5, utc_offset_hours=0)
        assert window.contains(datetime(2026, 1, 5, 3, 0, tzinfo=timezone.utc))
        assert not window.contains(datetime(2026, 1, 5, 5, 0, tzinfo=timezone.utc))

    @pytest.mark.unit
    def test_equal_hours_disable_window(self):
        window = NightWindow(start_hour=0, end_hour=0)
        assert not window.contains(datetime(2026, 1, 5, 16, 0, tzinfo=timezone.utc))


class TestPlanCatalog:
    @pytest.mark.unit
    def test_default_plan_returned_without_id(self):
        catalog = PlanCatalog([STANDARD_PLAN])
        assert catalog.get() is STANDARD_PLAN

    @pytest.mark.unit
    def test_unknown_plan_raises(self):
        catalog = PlanCatalog([STANDARD_PLAN])
        with pytest.raises(InvalidPlanError):
            catalog.get("premium")

    @pytest.mark.unit
    def test_default_must_exist(self):
        with pytest.raises(InvalidPlanError):
            PlanCatalog([STANDARD_PLAN], default_plan_id="premium")

    @pytest.mark.unit
    def test_add_validates_plan(self):
        catalog = PlanCatalog([STANDARD_PLAN])
        catalog.add(PricingPlan(id="premium", name="Premium", base_fare=250, per_km=40, per_minute=6))

        assert catalog.get("premium").base_fare == 250
        assert len(catalog.all()) == 2
        with pytest.raises(InvalidPlanError):
            catalog.add(PricingPlan(id="bad", name="Bad", base_fare=-1, per_km=1, per_minute=1))
