"""
Fare Engine - pure pricing functions

price = round(base + km * per_km + min * per_minute + surcharges)
Rounding is half-up on whole currency units (66.5 -> 67), unlike the
banker's rounding of the built-in ``round``.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional

from fleet_dispatch.core.exceptions import InvalidPlanError, ValidationException
from fleet_dispatch.domain.models import FareBreakdown, PricingPlan

_REQUIRED_PLAN_FIELDS = ("base_fare", "per_km", "per_minute")
_OPTIONAL_PLAN_FIELDS = ("night_surcharge", "waiting_fee_per_minute")


def round_currency(value: float | Decimal) -> int:
    """Round half-up to a whole currency unit"""
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def validate_plan(plan: Optional[PricingPlan]) -> PricingPlan:
    """Raise InvalidPlanError when required fields are missing or any rate is negative"""
    if plan is None:
        raise InvalidPlanError(None, ["no pricing plan supplied"])

    problems = []
    for name in _REQUIRED_PLAN_FIELDS:
        value = getattr(plan, name, None)
        if value is None:
            problems.append(f"{name} is missing")
        elif value < 0:
            problems.append(f"{name} is negative")
    for name in _OPTIONAL_PLAN_FIELDS:
        value = getattr(plan, name, None)
        if value is not None and value < 0:
            problems.append(f"{name} is negative")

    if problems:
        raise InvalidPlanError(getattr(plan, "id", None), problems)
    return plan


@dataclass(frozen=True)
class NightWindow:
    """Local-time hours during which the plan's night surcharge applies"""
    start_hour: int = 23
    end_hour: int = 6
    utc_offset_hours: int = 8

    def contains(self, moment: datetime) -> bool:
        if self.start_hour == self.end_hour:
            return False
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        local_hour = moment.astimezone(timezone(timedelta(hours=self.utc_offset_hours))).hour
        if self.start_hour < self.end_hour:
            return self.start_hour <= local_hour < self.end_hour
        return local_hour >= self.start_hour or local_hour < self.end_hour


def breakdown(
    distance_km: float,
    duration_min: float,
    plan: PricingPlan,
    night: bool = False,
    surcharges: Iterable[int] = (),
) -> FareBreakdown:
    """Itemized quote; ``total`` is the rounded sum, components are rounded for display"""
    plan = validate_plan(plan)
    if distance_km < 0 or duration_min < 0:
        raise ValidationException(
            "Distance and duration must be non-negative",
            details={"distance_km": distance_km, "duration_min": duration_min},
        )

    distance_fare = Decimal(str(distance_km)) * plan.per_km
    time_fare = Decimal(str(duration_min)) * plan.per_minute
    night_surcharge = (plan.night_surcharge or 0) if night else 0
    extra = sum(surcharges)

    total = Decimal(plan.base_fare) + distance_fare + time_fare + night_surcharge + extra
    return FareBreakdown(
        base_fare=plan.base_fare,
        distance_fare=round_currency(distance_fare),
        time_fare=round_currency(time_fare),
        night_surcharge=night_surcharge,
        total=round_currency(total),
    )


def quote(
    distance_km: float,
    duration_min: float,
    plan: PricingPlan,
    night: bool = False,
    surcharges: Iterable[int] = (),
) -> int:
    return breakdown(distance_km, duration_min, plan, night=night, surcharges=surcharges).total


def waiting_fee(elapsed_wait_seconds: float, grace_seconds: int, per_minute_fee: int) -> int:
    """
    Fee accrued while the driver waits at pickup.

    Recomputed from the elapsed time on every call rather than accumulated,
    so it cannot drift: whole minutes beyond the grace period times the rate.
    """
    billable_minutes = max(0, math.floor((elapsed_wait_seconds - grace_seconds) / 60))
    return billable_minutes * per_minute_fee


def commission_for(price: int, rate: float) -> int:
    return round_currency(Decimal(price) * Decimal(str(rate)))


class PlanCatalog:
    """In-process source of pricing plans, selectable per order"""

    def __init__(self, plans: Iterable[PricingPlan], default_plan_id: str = "default"):
        self._plans = {plan.id: validate_plan(plan) for plan in plans}
        if default_plan_id not in self._plans:
            raise InvalidPlanError(default_plan_id, ["default plan is not in the catalog"])
        self.default_plan_id = default_plan_id

    def get(self, plan_id: Optional[str] = None) -> PricingPlan:
        plan_id = plan_id or self.default_plan_id
        plan = self._plans.get(plan_id)
        if plan is None:
            raise InvalidPlanError(plan_id, ["unknown pricing plan"])
        return plan

    def add(self, plan: PricingPlan) -> None:
        self._plans[plan.id] = validate_plan(plan)

    def all(self) -> list[PricingPlan]:
        return list(self._plans.values())
