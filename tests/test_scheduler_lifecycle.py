"""
Tests for order scheduler lifecycle: creation races, retirement and
notifications delivered off the order task.
"""
import asyncio

import pytest

from fleet_dispatch.core.clock import SystemClock
from fleet_dispatch.core.exceptions import AlreadyTerminalError, AppException
from fleet_dispatch.db.repository import InMemoryRepository
from fleet_dispatch.domain.models import AcceptStatus, OrderStatus, Vehicle
from fleet_dispatch.domain.services.dispatch_engine import DispatchEngine
from fleet_dispatch.domain.services.dispatch_policy import DispatchPolicy
from fleet_dispatch.state_machine.scheduler import DispatchCommand

from tests.conftest import PICKUP, RecordingNotifier, near_pickup


class SlowLoadRepository(InMemoryRepository):
    """The next ``slow_loads`` order loads give way to the event loop many times first"""

    def __init__(self) -> None:
        super().__init__()
        self.slow_loads = 0

    async def get_order(self, order_id):
        if self.slow_loads:
            self.slow_loads -= 1
            for _ in range(50):
                await asyncio.sleep(0)
        return await super().get_order(order_id)


class GatedNotifier(RecordingNotifier):
    """Holds every send until ``release`` is set"""

    def __init__(self) -> None:
        super().__init__()
        self.release = asyncio.Event()

    async def notify_driver(self, driver_id, summary, offer_expires_at) -> None:
        await self.release.wait()
        await super().notify_driver(driver_id, summary, offer_expires_at)

    async def notify_group(self, message: str) -> None:
        await self.release.wait()
        await super().notify_group(message)


class SlowNotifier(RecordingNotifier):
    def __init__(self, delay_seconds: float) -> None:
        super().__init__()
        self.delay_seconds = delay_seconds

    async def notify_driver(self, driver_id, summary, offer_expires_at) -> None:
        await asyncio.sleep(self.delay_seconds)
        await super().notify_driver(driver_id, summary, offer_expires_at)


@pytest.fixture
def repository() -> SlowLoadRepository:
    return SlowLoadRepository()


# ============================================================================
# Creation
# ============================================================================


class TestSchedulerCreation:
    @pytest.mark.unit
    async def test_slow_load_does_not_revive_cancelled_order(
        self, engine, repository, vehicle_factory, order_factory
    ):
        await vehicle_factory()
        order = await order_factory()
        repository.slow_loads = 1

        dispatching = asyncio.create_task(engine.dispatch(order.id))
        await asyncio.sleep(0)
        cancelled = await engine.cancel(order.id, reason="客人取消")
        await dispatching
        await engine.settle()

        assert cancelled.status == OrderStatus.CANCELLED
        stored = await engine.get_order(order.id)
        assert stored.status == OrderStatus.CANCELLED
        assert stored.offered_vehicle_id is None
        assert order.id not in engine._schedulers

    @pytest.mark.unit
    async def test_cancel_while_dispatch_is_loading(
        self, engine, repository, vehicle_factory, order_factory
    ):
        await vehicle_factory()
        order = await order_factory()
        repository.slow_loads = 1

        cancelling = asyncio.create_task(engine.cancel(order.id))
        await asyncio.sleep(0)
        with pytest.raises(AlreadyTerminalError):
            await engine.dispatch(order.id)
        await cancelling
        await engine.settle()

        assert (await engine.get_order(order.id)).status == OrderStatus.CANCELLED
        assert engine._schedulers == {}

    @pytest.mark.unit
    async def test_concurrent_callers_share_one_scheduler(self, engine, repository, order_factory):
        order = await order_factory()
        repository.slow_loads = 1

        first, second = await asyncio.gather(
            engine._scheduler_for(order.id), engine._scheduler_for(order.id)
        )

        assert first is second

    @pytest.mark.unit
    async def test_retired_scheduler_refuses_commands(self, engine, vehicle_factory, order_factory):
        await vehicle_factory()
        order = await order_factory()
        scheduler = await engine._scheduler_for(order.id)
        await engine.cancel(order.id)

        with pytest.raises(AlreadyTerminalError):
            await scheduler.submit(DispatchCommand())

    @pytest.mark.unit
    async def test_acceptance_on_retired_order_is_stale(self, engine, vehicle_factory, order_factory):
        driver = await vehicle_factory()
        order = await order_factory()
        await engine.dispatch(order.id)
        await engine.cancel(order.id)

        outcome = await engine.submit_acceptance(order.id, driver.id)

        assert outcome.status == AcceptStatus.STALE
        assert outcome.message == "order is CANCELLED"

    @pytest.mark.unit
    async def test_stopped_scheduler_refuses_commands(self, engine, order_factory):
        order = await order_factory()
        scheduler = await engine._scheduler_for(order.id)
        await engine.shutdown()

        with pytest.raises(AppException) as exc_info:
            await scheduler.submit(DispatchCommand())

        assert exc_info.value.status_code == 503


# ============================================================================
# Retirement
# ============================================================================


class TestSchedulerRetirement:
    @pytest.mark.unit
    async def test_finished_schedulers_are_released(self, engine, vehicle_factory, order_factory):
        await vehicle_factory()
        for index in range(20):
            order = await order_factory()
            if index % 2:
                await engine.dispatch(order.id)
            await engine.cancel(order.id)

        await engine.settle()

        assert engine._retired == set()
        assert engine._schedulers == {}

    @pytest.mark.unit
    async def test_scheduler_released_once_its_task_exits(self, engine, order_factory):
        order = await order_factory()
        scheduler = await engine._scheduler_for(order.id)
        await engine.cancel(order.id)

        await scheduler.wait_stopped()

        assert scheduler.stopped
        assert scheduler not in engine._retired


# ============================================================================
# Notifications
# ============================================================================


class TestNotificationsOffTheOrderTask:
    @pytest.fixture
    def notifier(self) -> GatedNotifier:
        return GatedNotifier()

    @pytest.mark.unit
    async def test_undelivered_offer_does_not_hold_the_order(
        self, engine, notifier, vehicle_factory, order_factory
    ):
        driver = await vehicle_factory("王小明")
        order = await order_factory()
        try:
            dispatched = await engine.dispatch(order.id)
            outcome = await engine.submit_acceptance(order.id, driver.id)

            assert dispatched.offered_vehicle_id == driver.id
            assert outcome.status == AcceptStatus.ACCEPTED
            assert notifier.driver_offers == []
            assert engine.outbox.pending == 2
        finally:
            notifier.release.set()

        await engine.settle()

        assert notifier.offered_drivers() == [driver.id]
        assert len(notifier.group_messages) == 1
        assert engine.outbox.pending == 0

    @pytest.mark.unit
    async def test_slow_transport_does_not_spend_the_offer_window(self, estimator, plan_catalog):
        notifier = SlowNotifier(delay_seconds=1.2)
        engine = DispatchEngine(
            repository=InMemoryRepository(),
            notifier=notifier,
            estimator=estimator,
            plans=plan_catalog,
            policy=DispatchPolicy(offer_window_seconds=1),
            clock=SystemClock(),
        )
        try:
            lat, lng = near_pickup(1.0)
            driver = await engine.register_vehicle(
                Vehicle.new("王小明", "0912345678", "SLW-0001", lat, lng), opening_balance=1000
            )
            order = await engine.create_order(pickup=PICKUP, price=300)

            await engine.dispatch(order.id)
            outcome = await engine.submit_acceptance(order.id, driver.id)

            assert outcome.status == AcceptStatus.ACCEPTED
        finally:
            await engine.shutdown()

        assert notifier.offered_drivers() == [driver.id]
