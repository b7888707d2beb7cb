"""
Scenario: the offered driver cannot cover the commission

A $450 order and three drivers: a PARTNER, an INTERNAL driver holding $50
and another INTERNAL driver. The first INTERNAL driver is offered the
order, replies, is turned away for the $68 commission, and the offer
moves straight on without counting a miss.
"""
import pytest

from fleet_dispatch.domain.models import OrderStatus, PriorityTier, VehicleStatus

from tests.scenarios.conftest import assert_order_status, assert_wallet_balance, send_reply


@pytest.mark.scenario
class TestInsufficientFunds:
    async def test_offer_moves_to_next_internal_driver(
        self, test_client, engine, notifier, vehicle_factory, order_factory
    ):
        partner = await vehicle_factory("夥伴司機", priority=PriorityTier.PARTNER, distance_km=0.5)
        poor = await vehicle_factory("林司機", priority=PriorityTier.INTERNAL, distance_km=1.0, balance=50)
        funded = await vehicle_factory("張司機", priority=PriorityTier.INTERNAL, distance_km=3.0)
        order = await order_factory(price=450)

        await engine.dispatch(order.id)
        assert notifier.offered_drivers() == [poor.id]

        outcome = await send_reply(test_client, poor.id, f"接 {order.reference}")

        assert outcome["status"] == "INSUFFICIENT_FUNDS"
        assert (outcome["balance"], outcome["required"]) == (50, 68)
        assert "林司機 儲值金不足 ($50，需 $68)" in notifier.group_messages[-1]

        current = await assert_order_status(engine, order.id, OrderStatus.DISPATCHING)
        assert current.offered_vehicle_id == funded.id
        assert poor.id in current.excluded_vehicle_ids
        assert notifier.offered_drivers() == [poor.id, funded.id]

        turned_away = await engine.get_vehicle(poor.id)
        assert turned_away.missed_count == 0
        assert turned_away.status == VehicleStatus.IDLE
        await assert_wallet_balance(engine, poor.id, 50)

        outcome = await send_reply(test_client, funded.id, order.reference)
        assert outcome["accepted"] is True
        assert (await engine.get_vehicle(partner.id)).status == VehicleStatus.IDLE

    async def test_topped_up_driver_can_take_the_next_order(
        self, test_client, engine, vehicle_factory, order_factory
    ):
        poor = await vehicle_factory("林司機", balance=50)
        first = await order_factory(price=450)
        await engine.dispatch(first.id)
        await send_reply(test_client, poor.id, first.reference)
        await assert_order_status(engine, first.id, OrderStatus.PENDING)

        response = await test_client.post(f"/api/wallets/{poor.id}/top-up", json={"amount": 500})
        assert response.status_code == 200

        second = await order_factory(price=450)
        await engine.dispatch(second.id)
        outcome = await send_reply(test_client, poor.id, second.reference)

        assert outcome["status"] == "ACCEPTED"
        assert outcome["balance"] == 550
