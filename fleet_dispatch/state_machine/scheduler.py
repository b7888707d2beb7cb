"""
Dispatch Scheduler - one single-writer actor per order.

Every mutation of an order goes through its scheduler's inbox: operator
commands, driver acceptances and offer-window expiries are all messages,
handled one at a time by the order's own asyncio task. An acceptance and a
timeout for the same offer therefore never interleave; whichever message is
processed first decides, and the acceptance is additionally timed by when it
was submitted, not when it was processed.

Offers are strictly sequential. An order holds at most one outstanding offer,
and the engine-wide ``OfferReservations`` keeps a driver from holding offers
for two orders at once.
"""
from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Union

from fleet_dispatch.core.clock import Clock, TimerHandle
from fleet_dispatch.core.exceptions import (
    AlreadyTerminalError,
    AppException,
    ErrorCode,
    EstimatorUnavailableError,
    InsufficientFundsError,
    InvalidStateTransitionError,
    PoolExhaustedError,
    StaleAcceptanceError,
    ValidationException,
)
from fleet_dispatch.core.locks import KeyedLocks
from fleet_dispatch.core.logging import bind_order, correlation_id_var, get_logger
from fleet_dispatch.db.repository import Repository
from fleet_dispatch.domain.events import DispatchEvent, EventBus, EventType
from fleet_dispatch.domain.models import (
    AcceptOutcome,
    AcceptStatus,
    LedgerEntryType,
    Location,
    Order,
    OrderStatus,
    PricingPlan,
    PriorityTier,
    VEHICLE_BOUND_STATUSES,
    VehicleStatus,
)
from fleet_dispatch.domain.services import fare_engine
from fleet_dispatch.domain.services.candidate_selector import CandidateSelector
from fleet_dispatch.domain.services.dispatch_policy import DispatchPolicy
from fleet_dispatch.domain.services.estimator import DistanceEstimator
from fleet_dispatch.domain.services.fare_engine import PlanCatalog
from fleet_dispatch.domain.services.notifier import (
    NotificationOutbox,
    OrderSummary,
    format_assigned,
    format_cancelled,
    format_delinquent,
    format_insufficient_funds,
    format_pool_exhausted,
)
from fleet_dispatch.domain.services.penalty_tracker import PenaltyTracker
from fleet_dispatch.domain.services.wallet_ledger import WalletLedger
from fleet_dispatch.state_machine.states import ensure_transition

logger = get_logger(__name__)


# ── inbox messages ──

@dataclass(frozen=True)
class DispatchCommand:
    plan_id: Optional[str] = None


@dataclass(frozen=True)
class AcceptCommand:
    driver_id: str
    received_at: datetime


@dataclass(frozen=True)
class OfferExpired:
    sequence: int


@dataclass(frozen=True)
class BeginPickupCommand:
    pass


@dataclass(frozen=True)
class ArrivedCommand:
    pass


@dataclass(frozen=True)
class StartTripCommand:
    destination: Optional[Union[Location, str]] = None
    override_price: Optional[int] = None


@dataclass(frozen=True)
class CompleteCommand:
    pass


@dataclass(frozen=True)
class CancelCommand:
    reason: Optional[str] = None


_STOP = object()


class OfferReservations:
    """Engine-wide driver -> order map of outstanding offers"""

    def __init__(self) -> None:
        self._holders: dict[str, str] = {}

    def reserve(self, driver_id: str, order_id: str) -> None:
        self._holders[driver_id] = order_id

    def release(self, driver_id: str, order_id: str) -> None:
        if self._holders.get(driver_id) == order_id:
            del self._holders[driver_id]

    def holder(self, driver_id: str) -> Optional[str]:
        return self._holders.get(driver_id)

    def held_elsewhere(self, order_id: str) -> set[str]:
        return {driver for driver, holder in self._holders.items() if holder != order_id}


@dataclass
class SchedulerContext:
    """Collaborators shared by every order's scheduler"""
    repository: Repository
    ledger: WalletLedger
    selector: CandidateSelector
    penalties: PenaltyTracker
    outbox: NotificationOutbox
    estimator: DistanceEstimator
    plans: PlanCatalog
    policy: DispatchPolicy
    clock: Clock
    events: EventBus
    vehicle_locks: KeyedLocks
    reservations: OfferReservations = field(default_factory=OfferReservations)


class DispatchScheduler:
    def __init__(
        self,
        order: Order,
        context: SchedulerContext,
        on_finished: Callable[[str], None],
    ):
        self.order = order
        self.ctx = context
        self._on_finished = on_finished
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._pending = 0
        self._task: Optional[asyncio.Task] = None
        self._offer_timer: Optional[TimerHandle] = None
        self._offer_sequence = 0
        self._finished = False
        self._handlers = {
            DispatchCommand: self._on_dispatch,
            AcceptCommand: self._on_accept,
            OfferExpired: self._on_offer_expired,
            BeginPickupCommand: self._on_begin_pickup,
            ArrivedCommand: self._on_arrived,
            StartTripCommand: self._on_start_trip,
            CompleteCommand: self._on_complete,
            CancelCommand: self._on_cancel,
        }

    @property
    def order_id(self) -> str:
        return self.order.id

    @property
    def has_pending(self) -> bool:
        return self._pending > 0

    # ── lifecycle ──

    def start(self) -> None:
        self._resume_outstanding_offer()
        self._task = asyncio.create_task(self._run(), name=f"dispatch-{self.order.id}")

    @property
    def stopped(self) -> bool:
        return self._task is not None and self._task.done()

    async def submit(self, command: Any) -> Any:
        """
        Queue a command and wait for the scheduler's answer.

        Raises:
            AlreadyTerminalError: the order finished and this scheduler has retired.
            AppException: the scheduler was stopped by an engine shutdown.
        """
        if self._finished:
            if self.order.status.is_terminal:
                raise AlreadyTerminalError(self.order.id, self.order.status.value)
            raise AppException(
                "Dispatch engine is stopping",
                error_code=ErrorCode.INTERNAL_ERROR,
                status_code=503,
                details={"order_id": self.order.id},
            )
        future = asyncio.get_running_loop().create_future()
        self._put(command, future)
        return await future

    def post(self, message: Any) -> None:
        """Queue a message nobody waits for; dropped once the scheduler has finished"""
        if self._finished:
            logger.debug("Message after scheduler finished", extra_data={"message": type(message).__name__})
            return
        self._put(message, None)

    async def join(self) -> None:
        await self._inbox.join()

    def when_stopped(self, callback: Callable[[DispatchScheduler], None]) -> None:
        """Run ``callback`` with this scheduler once its task has exited"""
        if self._task is None or self._task.done():
            callback(self)
        else:
            self._task.add_done_callback(lambda _task: callback(self))

    async def wait_stopped(self) -> None:
        if self._task is not None:
            await asyncio.wait([self._task])

    async def stop(self) -> None:
        self._cancel_offer_timer()
        if self._task is None or self._task.done():
            return
        if not self._finished:
            self._finished = True
            self._put(_STOP, None)
        await self._task

    def _put(self, message: Any, future: Optional[asyncio.Future]) -> None:
        self._pending += 1
        # the caller's correlation id follows the message into the order task
        self._inbox.put_nowait((message, future, correlation_id_var.get()))

    async def _run(self) -> None:
        with bind_order(self.order.id):
            while True:
                message, future, correlation_id = await self._inbox.get()
                correlation_id_var.set(correlation_id)
                try:
                    if message is _STOP:
                        return
                    result = await self._handlers[type(message)](message)
                except Exception as e:
                    if future is None:
                        logger.error(
                            "Dispatch message failed",
                            extra_data={"message": type(message).__name__, "error": str(e)},
                            exc_info=True,
                        )
                    elif not future.done():
                        future.set_exception(e)
                else:
                    if future is not None and not future.done():
                        future.set_result(result)
                finally:
                    self._pending -= 1
                    self._inbox.task_done()
                self._retire_if_terminal()

    def _retire_if_terminal(self) -> None:
        if self._finished or not self.order.status.is_terminal:
            return
        self._finished = True
        self._cancel_offer_timer()
        # commands queued before this point still get answered
        self._put(_STOP, None)
        self._on_finished(self.order.id)

    # ── helpers ──

    def _working_copy(self) -> Order:
        return copy.deepcopy(self.order)

    async def _commit(self, order: Order) -> None:
        await self.ctx.repository.save_order(order)
        self.order = order

    def _snapshot(self) -> Order:
        return copy.deepcopy(self.order)

    async def _publish(
        self,
        event_type: EventType,
        vehicle_id: Optional[str] = None,
        data: Optional[dict] = None,
    ) -> None:
        await self.ctx.events.publish(DispatchEvent(
            type=event_type,
            order_id=self.order.id,
            occurred_at=self.ctx.clock.now(),
            vehicle_id=vehicle_id,
            status=self.order.status.value,
            data=data or {},
        ))

    def _notify_group(self, message: str) -> None:
        self.ctx.outbox.broadcast(message)

    async def _set_vehicle_status(self, driver_id: str, status: VehicleStatus, **changes: Any) -> None:
        async with self.ctx.vehicle_locks(driver_id):
            vehicle = await self.ctx.repository.get_vehicle(driver_id)
            vehicle.status = status
            for name, value in changes.items():
                setattr(vehicle, name, value)
            vehicle.last_update = self.ctx.clock.now()
            await self.ctx.repository.update_vehicle_state(vehicle)

    def _arm_offer_timer(self, delay_seconds: float) -> None:
        self._cancel_offer_timer()
        self._offer_sequence += 1
        sequence = self._offer_sequence
        self._offer_timer = self.ctx.clock.call_later(
            delay_seconds, lambda: self.post(OfferExpired(sequence))
        )

    def _cancel_offer_timer(self) -> None:
        if self._offer_timer is not None:
            self._offer_timer.cancel()
            self._offer_timer = None

    def _resume_outstanding_offer(self) -> None:
        """Re-arm the offer window of an order loaded mid-dispatch"""
        order = self.order
        if order.status != OrderStatus.DISPATCHING or order.offered_vehicle_id is None:
            return
        self.ctx.reservations.reserve(order.offered_vehicle_id, order.id)
        remaining = 0.0
        if order.offer_expires_at is not None:
            remaining = max(0.0, (order.offer_expires_at - self.ctx.clock.now()).total_seconds())
        self._arm_offer_timer(remaining)
        logger.info(
            "Outstanding offer resumed",
            extra_data={"driver_id": order.offered_vehicle_id, "remaining_seconds": remaining},
        )

    def _reprice(self, order: Order, plan: PricingPlan) -> None:
        fare = fare_engine.breakdown(
            order.distance_km or 0.0,
            order.duration_min or 0.0,
            plan,
            night=self.ctx.policy.night_window.contains(self.ctx.clock.now()),
        )
        order.apply_fare(fare)

    def _waiting_fee(self, order: Order, plan: PricingPlan, now: datetime) -> int:
        if order.waiting_started_at is None:
            return 0
        return fare_engine.waiting_fee(
            (now - order.waiting_started_at).total_seconds(),
            self.ctx.policy.waiting_grace_seconds,
            plan.waiting_fee_per_minute or 0,
        )

    # ── dispatch round ──

    async def _on_dispatch(self, command: DispatchCommand) -> Order:
        order = self._working_copy()
        ensure_transition(order, OrderStatus.DISPATCHING)

        if command.plan_id:
            plan = self.ctx.plans.get(command.plan_id)
            order.plan_id = plan.id
            self._reprice(order, plan)

        # a manual re-dispatch starts a fresh round
        order.excluded_vehicle_ids = []
        order.current_driver_index = 0
        order.needs_manual_dispatch = False
        order.priority_tier = PriorityTier.INTERNAL
        order.status = OrderStatus.DISPATCHING

        logger.info(
            "Dispatch started",
            extra_data={"reference": order.reference, "price": order.price, "plan_id": order.plan_id},
        )
        if not await self._offer_next(order):
            raise PoolExhaustedError(order.id, offered=0)
        return self._snapshot()

    async def _offer_next(self, order: Order) -> bool:
        """Offer ``order`` to the best remaining candidate; False when the pool is exhausted"""
        ctx = self.ctx
        pool = await ctx.repository.list_vehicles()
        now = ctx.clock.now()
        excluded = set(order.excluded_vehicle_ids) | ctx.reservations.held_elsewhere(order.id)
        candidate = ctx.selector.next_candidate(order.pickup, pool, now, excluded)

        if candidate is None:
            order.status = OrderStatus.PENDING
            order.needs_manual_dispatch = True
            order.clear_offer()
            await self._commit(order)
            logger.warning(
                "Candidate pool exhausted, order needs manual dispatch",
                extra_data={"offered": len(order.excluded_vehicle_ids)},
            )
            await self._publish(
                EventType.POOL_EXHAUSTED, data={"offered": len(order.excluded_vehicle_ids)}
            )
            self._notify_group(format_pool_exhausted(order.reference))
            return False

        vehicle = candidate.vehicle
        window = ctx.policy.offer_window_seconds
        order.offered_vehicle_id = vehicle.id
        order.offer_expires_at = now + timedelta(seconds=window)
        order.dispatch_countdown = window
        order.current_driver_index = len(order.excluded_vehicle_ids)
        order.priority_tier = vehicle.priority

        # reserved before the first await so no other order can pick this driver
        ctx.reservations.reserve(vehicle.id, order.id)
        try:
            await self._commit(order)
        except Exception:
            ctx.reservations.release(vehicle.id, order.id)
            raise
        self._arm_offer_timer(window)

        logger.info(
            "Offer sent",
            extra_data={
                "driver_id": vehicle.id,
                "priority": vehicle.priority.value,
                "distance_km": round(candidate.distance_km, 2),
                "candidate_index": order.current_driver_index,
                "offer_expires_at": order.offer_expires_at.isoformat(),
            },
        )
        await self._publish(
            EventType.OFFER_SENT,
            vehicle_id=vehicle.id,
            data={
                "offer_expires_at": order.offer_expires_at.isoformat(),
                "priority": vehicle.priority.value,
                "candidate_index": order.current_driver_index,
            },
        )
        ctx.outbox.offer(vehicle.id, OrderSummary.from_order(order), order.offer_expires_at)
        return True

    async def _on_offer_expired(self, message: OfferExpired) -> None:
        order = self._working_copy()
        if (
            message.sequence != self._offer_sequence
            or order.status != OrderStatus.DISPATCHING
            or order.offered_vehicle_id is None
        ):
            logger.debug("Ignoring superseded offer timer", extra_data={"sequence": message.sequence})
            return None

        self._offer_timer = None
        driver_id = order.offered_vehicle_id
        self.ctx.reservations.release(driver_id, order.id)
        order.excluded_vehicle_ids.append(driver_id)
        order.clear_offer()

        logger.info("Offer expired without reply", extra_data={"driver_id": driver_id})
        await self._publish(EventType.OFFER_EXPIRED, vehicle_id=driver_id)

        missed = await self.ctx.penalties.record_miss(driver_id)
        if missed >= self.ctx.penalties.max_misses:
            vehicle = await self.ctx.repository.get_vehicle(driver_id)
            await self._publish(
                EventType.DRIVER_SUSPENDED,
                vehicle_id=driver_id,
                data={
                    "missed_count": missed,
                    "suspended_until": vehicle.suspended_until.isoformat() if vehicle.suspended_until else None,
                },
            )

        await self._offer_next(order)
        return None

    # ── acceptance ──

    def _check_offer_current(self, order: Order, driver_id: str, received_at: datetime) -> None:
        if order.status != OrderStatus.DISPATCHING or order.offered_vehicle_id is None:
            raise StaleAcceptanceError(order.id, driver_id, "no outstanding offer")
        if order.offered_vehicle_id != driver_id:
            raise StaleAcceptanceError(order.id, driver_id, "offer belongs to another driver")
        if order.offer_expires_at is not None and received_at >= order.offer_expires_at:
            raise StaleAcceptanceError(order.id, driver_id, "offer window expired")

    async def _on_accept(self, command: AcceptCommand) -> AcceptOutcome:
        ctx = self.ctx
        order = self._working_copy()
        driver_id = command.driver_id

        if order.vehicle_id is not None and order.status in VEHICLE_BOUND_STATUSES:
            logger.info(
                "Duplicate acceptance ignored",
                extra_data={"driver_id": driver_id, "assigned_to": order.vehicle_id},
            )
            return AcceptOutcome(
                AcceptStatus.IGNORED, order.id, driver_id, message="order already assigned"
            )

        try:
            self._check_offer_current(order, driver_id, command.received_at)
        except StaleAcceptanceError as e:
            logger.info(
                "Stale acceptance rejected",
                extra_data={"driver_id": driver_id, "reason": e.reason},
            )
            return AcceptOutcome(AcceptStatus.STALE, order.id, driver_id, message=e.reason)

        required = fare_engine.commission_for(order.price, ctx.policy.commission_rate)
        balance: Optional[int] = None
        rejection: Optional[AcceptOutcome] = None

        async with ctx.vehicle_locks(driver_id):
            vehicle = await ctx.repository.get_vehicle(driver_id)
            now = ctx.clock.now()
            if vehicle.status != VehicleStatus.IDLE or vehicle.is_suspended(now):
                rejection = AcceptOutcome(
                    AcceptStatus.DRIVER_UNAVAILABLE,
                    order.id,
                    driver_id,
                    message=f"driver is {vehicle.status.value.lower()}",
                )
            else:
                balance = await ctx.ledger.balance_of(driver_id)
                if balance < required:
                    rejection = AcceptOutcome(
                        AcceptStatus.INSUFFICIENT_FUNDS,
                        order.id,
                        driver_id,
                        message="Insufficient funds: top up to keep accepting rides",
                        balance=balance,
                        required=required,
                    )
                else:
                    vehicle.status = VehicleStatus.BUSY
                    vehicle.last_update = now
                    await ctx.repository.update_vehicle_state(vehicle)

        if rejection is not None:
            return await self._reject_acceptance(order, vehicle.driver_name, rejection)

        self._cancel_offer_timer()
        ctx.reservations.release(driver_id, order.id)
        ensure_transition(order, OrderStatus.ASSIGNED)
        order.status = OrderStatus.ASSIGNED
        order.vehicle_id = driver_id
        order.assigned_at = now
        order.needs_manual_dispatch = False
        order.clear_offer()
        try:
            await self._commit(order)
        except Exception:
            await self._set_vehicle_status(driver_id, VehicleStatus.IDLE)
            raise

        await ctx.penalties.reset(driver_id)
        logger.info(
            "Order assigned",
            extra_data={"driver_id": driver_id, "balance": balance, "projected_commission": required},
        )
        await self._publish(EventType.ORDER_ASSIGNED, vehicle_id=driver_id, data={"price": order.price})
        self._notify_group(format_assigned(vehicle.driver_name, order.reference))
        return AcceptOutcome(
            AcceptStatus.ACCEPTED,
            order.id,
            driver_id,
            message="assigned",
            balance=balance,
            required=required,
        )

    async def _reject_acceptance(
        self,
        order: Order,
        driver_name: str,
        outcome: AcceptOutcome,
    ) -> AcceptOutcome:
        """The driver answered but cannot take the ride: move on without a miss"""
        driver_id = outcome.driver_id
        self._cancel_offer_timer()
        self.ctx.reservations.release(driver_id, order.id)
        order.excluded_vehicle_ids.append(driver_id)
        order.clear_offer()

        logger.warning(
            "Acceptance rejected",
            extra_data={
                "driver_id": driver_id,
                "reason": outcome.status.value,
                "balance": outcome.balance,
                "required": outcome.required,
            },
        )
        await self._publish(
            EventType.ACCEPTANCE_REJECTED,
            vehicle_id=driver_id,
            data={"reason": outcome.status.value, "balance": outcome.balance, "required": outcome.required},
        )
        if outcome.status == AcceptStatus.INSUFFICIENT_FUNDS:
            self._notify_group(
                format_insufficient_funds(driver_name, outcome.balance or 0, outcome.required or 0)
            )

        await self._offer_next(order)
        return outcome

    # ── trip ──

    async def _on_begin_pickup(self, command: BeginPickupCommand) -> Order:
        order = self._working_copy()
        ensure_transition(order, OrderStatus.PICKING_UP)
        if order.status != OrderStatus.ASSIGNED:
            raise InvalidStateTransitionError(order.id, order.status.value, OrderStatus.PICKING_UP.value)
        order.status = OrderStatus.PICKING_UP
        await self._commit(order)
        logger.info("Pickup started", extra_data={"driver_id": order.vehicle_id})
        await self._publish(EventType.PICKUP_STARTED, vehicle_id=order.vehicle_id)
        return self._snapshot()

    async def _on_arrived(self, command: ArrivedCommand) -> Order:
        order = self._working_copy()
        ensure_transition(order, OrderStatus.PICKING_UP)
        if order.waiting_started_at is not None:
            raise InvalidStateTransitionError(order.id, "WAITING", "WAITING")
        order.status = OrderStatus.PICKING_UP
        order.waiting_started_at = self.ctx.clock.now()
        await self._commit(order)
        logger.info("Driver arrived, waiting for passenger", extra_data={"driver_id": order.vehicle_id})
        await self._publish(EventType.DRIVER_ARRIVED, vehicle_id=order.vehicle_id)
        return self._snapshot()

    async def _resolve_destination(
        self,
        order: Order,
        destination: Optional[Union[Location, str]],
    ) -> Location:
        if isinstance(destination, Location):
            return destination
        if isinstance(destination, str) and destination.strip():
            return await self.ctx.estimator.resolve(destination)
        if order.destination is not None:
            return order.destination
        raise ValidationException("A destination is required to start the trip", field="destination")

    async def _on_start_trip(self, command: StartTripCommand) -> Order:
        ctx = self.ctx
        order = self._working_copy()
        ensure_transition(order, OrderStatus.IN_TRANSIT)
        if command.override_price is not None and command.override_price < 0:
            raise ValidationException("Price must be non-negative", field="override_price")

        now = ctx.clock.now()
        plan = ctx.plans.get(order.plan_id)
        waiting_fee = self._waiting_fee(order, plan, now)

        if command.override_price is None:
            destination = await self._resolve_destination(order, command.destination)
            estimate = await ctx.estimator.estimate(order.pickup, destination)
            fare = fare_engine.breakdown(
                estimate.distance_km,
                estimate.duration_min,
                plan,
                night=ctx.policy.night_window.contains(now),
                surcharges=(waiting_fee,),
            )
            order.apply_fare(fare)
            order.distance_km = estimate.distance_km
            order.duration_min = estimate.duration_min
            order.destination = destination
        else:
            try:
                order.destination = await self._resolve_destination(order, command.destination)
            except (EstimatorUnavailableError, ValidationException) as e:
                logger.warning(
                    "Destination unresolved, trip priced by override only",
                    extra_data={"error": e.message},
                )
            order.price = command.override_price + waiting_fee
            logger.warning(
                "Trip priced by manual override",
                extra_data={"override_price": command.override_price, "waiting_fee": waiting_fee},
            )

        order.waiting_fee = waiting_fee
        order.status = OrderStatus.IN_TRANSIT
        order.trip_started_at = now
        await self._commit(order)

        logger.info(
            "Trip started",
            extra_data={"price": order.price, "waiting_fee": waiting_fee, "distance_km": order.distance_km},
        )
        await self._publish(
            EventType.TRIP_STARTED,
            vehicle_id=order.vehicle_id,
            data={"price": order.price, "waiting_fee": waiting_fee, "distance_km": order.distance_km},
        )
        return self._snapshot()

    async def _on_complete(self, command: CompleteCommand) -> Order:
        ctx = self.ctx
        order = self._working_copy()
        ensure_transition(order, OrderStatus.COMPLETED)
        driver_id = order.vehicle_id
        commission = fare_engine.commission_for(order.price, ctx.policy.commission_rate)

        settled = True
        if commission > 0:
            try:
                await ctx.ledger.deduct(
                    driver_id,
                    commission,
                    LedgerEntryType.COMMISSION,
                    order_id=order.id,
                    description=f"commission for {order.reference}",
                )
            except InsufficientFundsError as e:
                # the ride happened; settlement is reconciled later
                settled = False
                logger.error(
                    "Commission settlement failed, driver flagged delinquent",
                    extra_data={
                        "driver_id": driver_id,
                        "commission": commission,
                        "balance": e.balance,
                    },
                )

        now = ctx.clock.now()
        order.commission = commission
        order.commission_settled = settled
        order.status = OrderStatus.COMPLETED
        order.completed_at = now

        vehicle_changes: dict[str, Any] = {}
        if order.destination is not None:
            vehicle_changes["location"] = Location(order.destination.lat, order.destination.lng)
        if not settled:
            vehicle_changes["delinquent"] = True
        await self._set_vehicle_status(driver_id, VehicleStatus.IDLE, **vehicle_changes)
        await self._commit(order)

        if not settled:
            vehicle = await ctx.repository.get_vehicle(driver_id)
            await self._publish(
                EventType.DRIVER_DELINQUENT,
                vehicle_id=driver_id,
                data={"commission": commission, "balance": vehicle.wallet_balance},
            )
            self._notify_group(format_delinquent(vehicle.driver_name, order.reference, commission))

        logger.info(
            "Order completed",
            extra_data={"driver_id": driver_id, "price": order.price, "commission": commission, "settled": settled},
        )
        await self._publish(
            EventType.ORDER_COMPLETED,
            vehicle_id=driver_id,
            data={"price": order.price, "commission": commission, "commission_settled": settled},
        )
        return self._snapshot()

    async def _on_cancel(self, command: CancelCommand) -> Order:
        order = self._working_copy()
        ensure_transition(order, OrderStatus.CANCELLED)

        self._cancel_offer_timer()
        if order.offered_vehicle_id is not None:
            self.ctx.reservations.release(order.offered_vehicle_id, order.id)
        previous_status = order.status
        released_driver = order.vehicle_id
        offered_driver = order.offered_vehicle_id

        order.clear_offer()
        order.status = OrderStatus.CANCELLED
        order.cancelled_at = self.ctx.clock.now()
        order.cancel_reason = command.reason
        order.vehicle_id = None
        order.needs_manual_dispatch = False

        if released_driver is not None:
            await self._set_vehicle_status(released_driver, VehicleStatus.IDLE)
        await self._commit(order)

        logger.info(
            "Order cancelled",
            extra_data={
                "previous_status": previous_status.value,
                "released_driver": released_driver,
                "reason": command.reason,
            },
        )
        await self._publish(
            EventType.ORDER_CANCELLED,
            vehicle_id=released_driver or offered_driver,
            data={"previous_status": previous_status.value, "reason": command.reason},
        )
        if released_driver or offered_driver:
            self._notify_group(format_cancelled(order.reference, command.reason))
        return self._snapshot()
