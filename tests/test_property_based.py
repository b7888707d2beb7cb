"""
Property-based tests with hypothesis.

Invariants checked:
1. Wallet ledger: the cached balance equals the entry sum and never goes negative
2. Pricing: waiting fee and commission stay within their bounds
3. Chat reply parsing: random text around a reference
4. Dispatch: at most one live offer per order and per driver, under random steps
"""
import itertools

import pytest
from hypothesis import given, settings as h_settings, HealthCheck
from hypothesis.strategies import (
    composite,
    floats,
    integers,
    lists,
    sampled_from,
    text,
    tuples,
)

from fleet_dispatch.core.clock import ManualClock
from fleet_dispatch.core.exceptions import AppException, InsufficientFundsError
from fleet_dispatch.db.repository import InMemoryRepository
from fleet_dispatch.domain.models import OrderStatus, PriorityTier, Vehicle
from fleet_dispatch.domain.services.dispatch_engine import DispatchEngine
from fleet_dispatch.domain.services.dispatch_policy import DispatchPolicy
from fleet_dispatch.domain.services.estimator import StraightLineEstimator
from fleet_dispatch.domain.services import fare_engine
from fleet_dispatch.domain.services.fare_engine import PlanCatalog
from fleet_dispatch.domain.services.reply_parser import extract_order_reference
from fleet_dispatch.domain.services.wallet_ledger import WalletLedger

from tests.conftest import PICKUP, STANDARD_PLAN, RecordingNotifier, near_pickup

_prop_counter = itertools.count(1)

ASYNC_SETTINGS = h_settings(
    max_examples=30,
    suppress_health_check=[HealthCheck.function_scoped_fixture],
    deadline=None,
)


# ============================================================================
# Strategies
# ============================================================================

# (kind, amount): positive amounts credit, the rest attempt a deduction
LEDGER_OPERATIONS = lists(
    tuples(sampled_from(["credit", "deduct"]), integers(min_value=0, max_value=2000)),
    min_size=1,
    max_size=25,
)

REFERENCE_HEX = text(alphabet="0123456789ABCDEFabcdef", min_size=8, max_size=8)

# filler that can never complete a reference
CHATTER = text(alphabet="接單好的謝謝 ，。!?到了", max_size=12)

DISPATCH_STEPS = lists(
    sampled_from(["dispatch", "tick", "wait_out", "accept_offered", "accept_other", "cancel"]),
    min_size=3,
    max_size=20,
)


@composite
def reply_with_reference(draw):
    reference = f"ORD-{draw(REFERENCE_HEX)}"
    before = draw(CHATTER)
    after = draw(CHATTER)
    repeat = draw(sampled_from([False, True]))
    body = f"{before}{reference}{after}"
    if repeat:
        body = f"{body} {reference.lower()}"
    return reference.upper(), body


# ============================================================================
# Wallet ledger
# ============================================================================


class TestLedgerProperties:
    @pytest.mark.asyncio
    @given(operations=LEDGER_OPERATIONS)
    @ASYNC_SETTINGS
    async def test_balance_equals_entry_sum(self, operations):
        """Whatever is attempted, the balance is the sum of the entries and stays non-negative"""
        repository = InMemoryRepository()
        ledger = WalletLedger(repository, ManualClock())
        driver_id = f"prop-{next(_prop_counter)}"
        await repository.add_vehicle(
            Vehicle.new("Property Driver", "0900000000", "PRP-0001", 22.64, 120.30, vehicle_id=driver_id)
        )

        expected = 0
        for kind, amount in operations:
            if kind == "credit":
                await ledger.credit(driver_id, amount)
                expected += amount
            else:
                try:
                    await ledger.deduct(driver_id, amount)
                    expected -= amount
                except InsufficientFundsError:
                    assert amount > expected

            reconciliation = await ledger.reconcile(driver_id)
            assert reconciliation.consistent
            assert reconciliation.cached_balance == expected >= 0


# ============================================================================
# Pricing
# ============================================================================


class TestPricingProperties:
    @given(
        first=floats(min_value=0, max_value=7200, allow_nan=False),
        second=floats(min_value=0, max_value=7200, allow_nan=False),
    )
    def test_waiting_fee_is_monotonic(self, first, second):
        low, high = sorted((first, second))
        fee_low = fare_engine.waiting_fee(low, 300, 10)
        fee_high = fare_engine.waiting_fee(high, 300, 10)

        assert 0 <= fee_low <= fee_high
        assert fee_high % 10 == 0

    @given(elapsed=floats(min_value=0, max_value=359.99, allow_nan=False))
    def test_no_fee_within_grace_and_first_minute(self, elapsed):
        assert fare_engine.waiting_fee(elapsed, 300, 10) == 0

    @given(
        price=integers(min_value=0, max_value=100_000),
        rate=sampled_from([0.0, 0.1, 0.15, 0.2, 1.0]),
    )
    def test_commission_bounds(self, price, rate):
        commission = fare_engine.commission_for(price, rate)

        assert 0 <= commission <= price
        assert abs(commission - price * rate) <= 0.5 + 1e-9

    @given(
        distance=floats(min_value=0, max_value=200, allow_nan=False),
        extra=floats(min_value=0, max_value=50, allow_nan=False),
        minutes=floats(min_value=0, max_value=240, allow_nan=False),
    )
    def test_quote_grows_with_distance(self, distance, extra, minutes):
        shorter = fare_engine.quote(distance, minutes, STANDARD_PLAN)
        longer = fare_engine.quote(distance + extra, minutes, STANDARD_PLAN)

        assert STANDARD_PLAN.base_fare <= shorter <= longer


# ============================================================================
# Chat reply parsing
# ============================================================================


class TestReplyParsingProperties:
    @given(case=reply_with_reference())
    def test_single_reference_is_found(self, case):
        reference, body = case
        assert extract_order_reference(body) == reference

    @given(first=REFERENCE_HEX, second=REFERENCE_HEX, filler=CHATTER)
    def test_two_orders_are_ambiguous(self, first, second, filler):
        if first.upper() == second.upper():
            return
        assert extract_order_reference(f"ORD-{first}{filler} ORD-{second}") is None

    @given(body=CHATTER)
    def test_chatter_has_no_reference(self, body):
        assert extract_order_reference(body) is None


# ============================================================================
# Dispatch
# ============================================================================


class TestDispatchProperties:
    @pytest.mark.asyncio
    @given(steps=DISPATCH_STEPS, order_picks=lists(integers(min_value=0, max_value=1), min_size=20, max_size=20))
    @ASYNC_SETTINGS
    async def test_single_offer_in_flight(self, steps, order_picks):
        """
        However dispatches, timeouts, acceptances and cancellations
        interleave, every dispatching order has exactly one live offer, no
        driver holds two, and an excluded driver is never re-offered.
        """
        clock = ManualClock()
        engine = DispatchEngine(
            repository=InMemoryRepository(),
            notifier=RecordingNotifier(),
            estimator=StraightLineEstimator(),
            plans=PlanCatalog([STANDARD_PLAN]),
            policy=DispatchPolicy(),
            clock=clock,
        )
        try:
            drivers = []
            for index, tier in enumerate([PriorityTier.INTERNAL, PriorityTier.PARTNER, PriorityTier.INTERNAL]):
                lat, lng = near_pickup(1.0 + index)
                vehicle = Vehicle.new(f"Driver {index}", "0900000000", f"PRP-{index}", lat, lng, priority=tier)
                drivers.append(await engine.register_vehicle(vehicle, opening_balance=1000))
            orders = [await engine.create_order(pickup=PICKUP, price=300) for _ in range(2)]

            for step, pick in zip(steps, order_picks):
                order = await engine.get_order(orders[pick].id)
                try:
                    if step == "dispatch":
                        await engine.dispatch(order.id)
                    elif step == "tick":
                        clock.advance(5)
                    elif step == "wait_out":
                        clock.advance(15)
                    elif step == "accept_offered" and order.offered_vehicle_id:
                        await engine.submit_acceptance(order.id, order.offered_vehicle_id)
                    elif step == "accept_other":
                        await engine.submit_acceptance(order.id, drivers[pick].id)
                    elif step == "cancel":
                        await engine.cancel(order.id)
                except AppException:
                    pass
                await engine.settle()

                now = clock.now()
                holders = []
                for current in await engine.list_orders():
                    if current.status == OrderStatus.DISPATCHING:
                        assert current.offered_vehicle_id is not None
                        assert current.offer_expires_at > now
                        assert current.offered_vehicle_id not in current.excluded_vehicle_ids
                        holders.append(current.offered_vehicle_id)
                    else:
                        assert current.offered_vehicle_id is None
                assert len(holders) == len(set(holders))
        finally:
            await engine.shutdown()
