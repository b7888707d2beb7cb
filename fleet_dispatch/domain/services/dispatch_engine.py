"""
Dispatch Engine - the operations surface of the dispatch core.

Owns the shared collaborators (ledger, penalty tracker, candidate selector,
offer reservations) and one DispatchScheduler per live order. Everything
that changes an order is routed into that order's scheduler; vehicle and
wallet administration goes straight to the ledger and repository under the
same per-vehicle locks the schedulers use.
"""
from __future__ import annotations

import asyncio
import copy
import dataclasses
from typing import Optional, Union

from fleet_dispatch.core.clock import Clock, SystemClock
from fleet_dispatch.core.exceptions import (
    AlreadyTerminalError,
    EstimatorUnavailableError,
    ValidationException,
)
from fleet_dispatch.core.locks import KeyedLocks
from fleet_dispatch.core.logging import get_logger
from fleet_dispatch.db.repository import Repository
from fleet_dispatch.domain.events import DispatchEvent, EventBus, EventType
from fleet_dispatch.domain.models import (
    AcceptOutcome,
    AcceptStatus,
    LedgerEntryType,
    Location,
    Order,
    OrderStatus,
    Vehicle,
    VehicleStatus,
    WalletLogEntry,
)
from fleet_dispatch.domain.services import fare_engine
from fleet_dispatch.domain.services.candidate_selector import CandidateSelector
from fleet_dispatch.domain.services.dispatch_policy import DispatchPolicy
from fleet_dispatch.domain.services.estimator import DistanceEstimator
from fleet_dispatch.domain.services.fare_engine import PlanCatalog
from fleet_dispatch.domain.services.notifier import NotificationOutbox, Notifier
from fleet_dispatch.domain.services.penalty_tracker import PenaltyTracker
from fleet_dispatch.domain.services.reply_parser import extract_order_reference
from fleet_dispatch.domain.services.wallet_ledger import LedgerReconciliation, WalletLedger
from fleet_dispatch.state_machine.scheduler import (
    AcceptCommand,
    ArrivedCommand,
    BeginPickupCommand,
    CancelCommand,
    CompleteCommand,
    DispatchCommand,
    DispatchScheduler,
    OfferReservations,
    SchedulerContext,
    StartTripCommand,
)

logger = get_logger(__name__)


class DispatchEngine:
    def __init__(
        self,
        repository: Repository,
        notifier: Notifier,
        estimator: DistanceEstimator,
        plans: PlanCatalog,
        policy: Optional[DispatchPolicy] = None,
        clock: Optional[Clock] = None,
        events: Optional[EventBus] = None,
    ):
        self.policy = policy or DispatchPolicy()
        self.policy.validate()
        self.clock = clock or SystemClock()
        self.events = events or EventBus()
        self.repository = repository
        self.notifier = notifier
        self.outbox = NotificationOutbox(notifier)
        self.estimator = estimator
        self.plans = plans

        self.vehicle_locks = KeyedLocks()
        self.ledger = WalletLedger(repository, self.clock)
        self.penalties = PenaltyTracker(
            repository,
            self.clock,
            self.vehicle_locks,
            max_misses=self.policy.max_misses,
            suspension=self.policy.suspension,
        )
        self.selector = CandidateSelector(max_radius_km=self.policy.max_pickup_radius_km)
        self.reservations = OfferReservations()

        self._context = SchedulerContext(
            repository=repository,
            ledger=self.ledger,
            selector=self.selector,
            penalties=self.penalties,
            outbox=self.outbox,
            estimator=estimator,
            plans=plans,
            policy=self.policy,
            clock=self.clock,
            events=self.events,
            vehicle_locks=self.vehicle_locks,
            reservations=self.reservations,
        )
        self._schedulers: dict[str, DispatchScheduler] = {}
        # finished schedulers whose task is still draining its inbox
        self._retired: set[DispatchScheduler] = set()
        self._creation_lock = asyncio.Lock()

    # ── schedulers ──

    async def _scheduler_for(self, order_id: str) -> DispatchScheduler:
        """
        The live scheduler for ``order_id``, created on first use.

        Orders are loaded under one lock. A scheduler that retires while
        another caller is loading has already saved the terminal status, so
        the load that follows sees it and no stale copy is revived.

        Raises:
            OrderNotFoundError: unknown order.
            AlreadyTerminalError: the order is COMPLETED or CANCELLED.
        """
        scheduler = self._schedulers.get(order_id)
        if scheduler is not None:
            return scheduler

        async with self._creation_lock:
            scheduler = self._schedulers.get(order_id)
            if scheduler is not None:
                return scheduler

            order = await self.repository.get_order(order_id)
            if order.status.is_terminal:
                raise AlreadyTerminalError(order.id, order.status.value)

            scheduler = DispatchScheduler(order, self._context, on_finished=self._retire)
            self._schedulers[order_id] = scheduler
            scheduler.start()
            return scheduler

    def _retire(self, order_id: str) -> None:
        scheduler = self._schedulers.pop(order_id, None)
        if scheduler is not None:
            self._retired.add(scheduler)
            scheduler.when_stopped(self._retired.discard)

    async def resume(self) -> int:
        """Restart schedulers for orders left mid-dispatch; returns how many"""
        orders = await self.repository.list_orders(OrderStatus.DISPATCHING)
        for order in orders:
            await self._scheduler_for(order.id)
        if orders:
            logger.info("Dispatching orders resumed", extra_data={"orders": len(orders)})
        return len(orders)

    async def settle(self) -> None:
        """
        Wait until every scheduler has drained its inbox, retired schedulers
        have exited and queued notifications have been delivered.
        """
        while True:
            busy = [s for s in [*self._schedulers.values(), *self._retired] if s.has_pending]
            if busy:
                for scheduler in busy:
                    await scheduler.join()
                continue
            exiting = [s for s in self._retired if not s.stopped]
            if exiting:
                await asyncio.gather(*(scheduler.wait_stopped() for scheduler in exiting))
                continue
            if self.outbox.pending:
                await self.outbox.drain()
                continue
            break
        self._retired.difference_update([s for s in self._retired if s.stopped])

    async def shutdown(self) -> None:
        """Stop every scheduler; outstanding offers resume on the next start"""
        schedulers = [*self._schedulers.values(), *self._retired]
        self._schedulers.clear()
        self._retired.clear()
        await asyncio.gather(*(scheduler.stop() for scheduler in schedulers))
        await self.outbox.drain()
        logger.info("Dispatch engine stopped", extra_data={"schedulers": len(schedulers)})

    # ── vehicles ──

    async def register_vehicle(self, vehicle: Vehicle, opening_balance: int = 0) -> Vehicle:
        """Add a vehicle; an opening balance is booked as a TOPUP entry"""
        if opening_balance < 0:
            raise ValidationException("Opening balance must be non-negative", field="opening_balance")
        vehicle = dataclasses.replace(vehicle, wallet_balance=0, last_update=self.clock.now())
        await self.repository.add_vehicle(vehicle)
        logger.info(
            "Vehicle registered",
            extra_data={
                "driver_id": vehicle.id,
                "plate_number": vehicle.plate_number,
                "priority": vehicle.priority.value,
            },
        )
        if opening_balance:
            await self.ledger.credit(
                vehicle.id, opening_balance, LedgerEntryType.TOPUP, description="opening balance"
            )
        return await self.repository.get_vehicle(vehicle.id)

    async def get_vehicle(self, driver_id: str) -> Vehicle:
        return await self.repository.get_vehicle(driver_id)

    async def list_vehicles(self, status: Optional[VehicleStatus] = None) -> list[Vehicle]:
        return await self.repository.list_vehicles(status)

    async def list_delinquent(self) -> list[Vehicle]:
        return await self.repository.list_delinquent_vehicles()

    async def set_availability(
        self,
        driver_id: str,
        status: Optional[VehicleStatus] = None,
        location: Optional[Location] = None,
    ) -> Vehicle:
        """
        Drivers go on and off shift and report positions here.

        BUSY is owned by dispatch: it can be neither requested nor left
        through this call.
        """
        if status == VehicleStatus.BUSY:
            raise ValidationException("BUSY is set by dispatch only", field="status")

        async with self.vehicle_locks(driver_id):
            vehicle = await self.repository.get_vehicle(driver_id)
            if status is not None and status != vehicle.status:
                if vehicle.status == VehicleStatus.BUSY:
                    raise ValidationException(
                        "Vehicle is on an active order",
                        field="status",
                        details={"driver_id": driver_id},
                    )
                vehicle.status = status
            if location is not None:
                vehicle.location = location
            vehicle.last_update = self.clock.now()
            await self.repository.update_vehicle_state(vehicle)

        logger.info(
            "Vehicle availability updated",
            extra_data={"driver_id": driver_id, "status": vehicle.status.value},
        )
        return vehicle

    # ── wallets ──

    async def top_up(
        self,
        driver_id: str,
        amount: int,
        entry_type: LedgerEntryType = LedgerEntryType.TOPUP,
        description: Optional[str] = None,
    ) -> WalletLogEntry:
        # a top-up never clears delinquency; that is an operator decision
        return await self.ledger.credit(driver_id, amount, entry_type, description=description)

    async def balance_of(self, driver_id: str) -> int:
        return await self.ledger.balance_of(driver_id)

    async def wallet_history(self, driver_id: str, limit: int = 20) -> list[WalletLogEntry]:
        await self.repository.get_vehicle(driver_id)
        return await self.ledger.history(driver_id, limit=limit)

    async def reconcile(self, driver_id: str) -> LedgerReconciliation:
        return await self.ledger.reconcile(driver_id)

    # ── orders ──

    async def _resolve(self, place: Union[Location, str], field_name: str) -> Location:
        if isinstance(place, Location):
            return place
        try:
            return await self.estimator.resolve(place)
        except EstimatorUnavailableError as e:
            raise ValidationException(
                f"Could not resolve {field_name} address",
                field=field_name,
                details={"address": place, "reason": e.message},
            )

    async def create_order(
        self,
        pickup: Union[Location, str],
        destination: Optional[Union[Location, str]] = None,
        plan_id: Optional[str] = None,
        price: Optional[int] = None,
        client_name: Optional[str] = None,
        client_phone: Optional[str] = None,
        note: Optional[str] = None,
    ) -> Order:
        """
        Create a PENDING order with an initial quote.

        An explicit ``price`` wins. Otherwise the fare is quoted from the
        estimated pickup-to-destination route; when no destination is known
        or the estimator is down the quote is the plan's base fare and the
        final price is settled at trip start.
        """
        if price is not None and price < 0:
            raise ValidationException("Price must be non-negative", field="price")

        plan = self.plans.get(plan_id)
        pickup = await self._resolve(pickup, "pickup")
        if destination is not None:
            destination = await self._resolve(destination, "destination")

        now = self.clock.now()
        order = Order.new(
            pickup=pickup,
            plan_id=plan.id,
            created_at=now,
            destination=destination,
            client_name=client_name,
            client_phone=client_phone,
            note=note,
        )

        if price is not None:
            order.price = price
        else:
            distance_km, duration_min = 0.0, 0.0
            if destination is not None:
                try:
                    estimate = await self.estimator.estimate(pickup, destination)
                    distance_km, duration_min = estimate.distance_km, estimate.duration_min
                    order.distance_km, order.duration_min = distance_km, duration_min
                except EstimatorUnavailableError as e:
                    logger.warning(
                        "Estimator unavailable, quoting base fare",
                        extra_data={"order_id": order.id, "error": e.message},
                    )
            order.apply_fare(fare_engine.breakdown(
                distance_km,
                duration_min,
                plan,
                night=self.policy.night_window.contains(now),
            ))

        await self.repository.save_order(order)
        logger.info(
            "Order created",
            extra_data={
                "order_id": order.id,
                "reference": order.reference,
                "price": order.price,
                "plan_id": order.plan_id,
            },
        )
        await self.events.publish(DispatchEvent(
            type=EventType.ORDER_CREATED,
            order_id=order.id,
            occurred_at=now,
            status=order.status.value,
            data={"reference": order.reference, "price": order.price},
        ))
        return copy.deepcopy(order)

    async def get_order(self, order_id: str) -> Order:
        return await self.repository.get_order(order_id)

    async def list_orders(self, status: Optional[OrderStatus] = None) -> list[Order]:
        return await self.repository.list_orders(status)

    async def dispatch(self, order_id: str, plan_id: Optional[str] = None) -> Order:
        """
        Start a dispatch round for a PENDING order.

        Raises:
            PoolExhaustedError: nobody could be offered the order; it is
                left PENDING and flagged for manual dispatch.
        """
        scheduler = await self._scheduler_for(order_id)
        return await scheduler.submit(DispatchCommand(plan_id=plan_id))

    async def submit_acceptance(self, order_id: str, driver_id: str) -> AcceptOutcome:
        """
        A driver accepts an offer.

        Queued behind anything already in the order's inbox: once the expiry
        has been handled the offer belongs to the next driver. The submission
        time is also checked, so an acceptance stamped at or after the
        deadline is stale even if it is handled before the expiry.
        """
        received_at = self.clock.now()
        await self.repository.get_vehicle(driver_id)
        try:
            scheduler = await self._scheduler_for(order_id)
            return await scheduler.submit(AcceptCommand(driver_id=driver_id, received_at=received_at))
        except AlreadyTerminalError as e:
            order = await self.repository.get_order(order_id)
            if order.vehicle_id == driver_id:
                return AcceptOutcome(
                    AcceptStatus.IGNORED, order_id, driver_id, message="order already assigned"
                )
            logger.info(
                "Acceptance for finished order",
                extra_data={"order_id": order_id, "driver_id": driver_id, "status": e.details.get("status")},
            )
            return AcceptOutcome(
                AcceptStatus.STALE, order_id, driver_id, message=f"order is {order.status.value}"
            )

    async def submit_reply(self, driver_id: str, text: str) -> AcceptOutcome:
        """A free-text chat reply; accepted only when it names exactly one order"""
        reference = extract_order_reference(text)
        if reference is None:
            logger.debug("Reply without a single order reference", extra_data={"driver_id": driver_id})
            return AcceptOutcome(AcceptStatus.IGNORED, driver_id=driver_id, message="no order reference")

        order = await self.repository.find_order_by_reference(reference)
        if order is None:
            logger.info(
                "Reply names an unknown order",
                extra_data={"driver_id": driver_id, "reference": reference},
            )
            return AcceptOutcome(
                AcceptStatus.IGNORED, driver_id=driver_id, message=f"unknown order {reference}"
            )
        return await self.submit_acceptance(order.id, driver_id)

    async def begin_pickup(self, order_id: str) -> Order:
        scheduler = await self._scheduler_for(order_id)
        return await scheduler.submit(BeginPickupCommand())

    async def arrived(self, order_id: str) -> Order:
        scheduler = await self._scheduler_for(order_id)
        return await scheduler.submit(ArrivedCommand())

    async def start_trip(
        self,
        order_id: str,
        destination: Optional[Union[Location, str]] = None,
        override_price: Optional[int] = None,
    ) -> Order:
        """
        Passenger on board: freeze the waiting fee and settle the price.

        Raises:
            EstimatorUnavailableError: the route cannot be estimated and no
                ``override_price`` was given; the order stays where it was.
        """
        scheduler = await self._scheduler_for(order_id)
        return await scheduler.submit(
            StartTripCommand(destination=destination, override_price=override_price)
        )

    async def complete(self, order_id: str) -> Order:
        scheduler = await self._scheduler_for(order_id)
        return await scheduler.submit(CompleteCommand())

    async def cancel(self, order_id: str, reason: Optional[str] = None) -> Order:
        scheduler = await self._scheduler_for(order_id)
        return await scheduler.submit(CancelCommand(reason=reason))

    async def waiting_fee(self, order_id: str) -> int:
        """Live waiting fee while waiting; the frozen fee once the trip started"""
        order = await self.repository.get_order(order_id)
        if order.trip_started_at is not None or order.status.is_terminal:
            return order.waiting_fee
        if not order.is_waiting:
            return 0
        plan = self.plans.get(order.plan_id)
        elapsed = (self.clock.now() - order.waiting_started_at).total_seconds()
        return fare_engine.waiting_fee(
            elapsed, self.policy.waiting_grace_seconds, plan.waiting_fee_per_minute
        )
