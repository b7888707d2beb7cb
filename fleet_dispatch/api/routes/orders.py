"""
Order API Routes
"""
import dataclasses
from datetime import datetime
from typing import List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, model_validator

from fleet_dispatch.api.dependencies.engine import get_engine
from fleet_dispatch.domain.models import (
    AcceptOutcome,
    AcceptStatus,
    Location,
    Order,
    OrderStatus,
    PriorityTier,
)
from fleet_dispatch.domain.services.dispatch_engine import DispatchEngine

router = APIRouter()


class LocationSchema(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    address: str | None = None

    def to_location(self) -> Location:
        return Location(lat=self.lat, lng=self.lng, address=self.address)


class OrderCreate(BaseModel):
    """Pickup and destination are given as coordinates or as a free-text address"""
    pickup: LocationSchema | None = None
    pickup_address: str | None = None
    destination: LocationSchema | None = None
    destination_address: str | None = None
    plan_id: str | None = None
    price: int | None = Field(default=None, ge=0)
    client_name: str | None = Field(default=None, max_length=100)
    client_phone: str | None = Field(default=None, max_length=30)
    note: str | None = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def require_pickup(self) -> "OrderCreate":
        if self.pickup is None and not (self.pickup_address or "").strip():
            raise ValueError("pickup or pickup_address is required")
        return self


class OrderResponse(BaseModel):
    id: str
    reference: str
    display_id: str
    status: OrderStatus
    pickup: LocationSchema
    destination: LocationSchema | None
    plan_id: str
    price: int
    base_fare: int
    distance_fare: int
    time_fare: int
    night_surcharge: int
    waiting_fee: int
    distance_km: float | None
    duration_min: float | None
    commission: int | None
    commission_settled: bool | None
    vehicle_id: str | None
    offered_vehicle_id: str | None
    offer_expires_at: datetime | None
    dispatch_countdown: int
    current_driver_index: int
    priority_tier: PriorityTier
    excluded_vehicle_ids: List[str]
    needs_manual_dispatch: bool
    client_name: str | None
    client_phone: str | None
    note: str | None
    cancel_reason: str | None
    created_at: datetime
    assigned_at: datetime | None
    waiting_started_at: datetime | None
    trip_started_at: datetime | None
    completed_at: datetime | None
    cancelled_at: datetime | None

    @classmethod
    def from_order(cls, order: Order, now: datetime) -> "OrderResponse":
        data = dataclasses.asdict(order)
        # live countdown rather than the stored full window
        data["dispatch_countdown"] = order.seconds_remaining(now)
        return cls(**data)


class AcceptRequest(BaseModel):
    driver_id: str


class AcceptOutcomeResponse(BaseModel):
    status: AcceptStatus
    accepted: bool
    order_id: str | None
    driver_id: str | None
    message: str
    balance: int | None
    required: int | None

    @classmethod
    def from_outcome(cls, outcome: AcceptOutcome) -> "AcceptOutcomeResponse":
        return cls(
            status=outcome.status,
            accepted=outcome.accepted,
            order_id=outcome.order_id,
            driver_id=outcome.driver_id,
            message=outcome.message,
            balance=outcome.balance,
            required=outcome.required,
        )


class DispatchRequest(BaseModel):
    plan_id: str | None = None


class StartTripRequest(BaseModel):
    destination: LocationSchema | None = None
    destination_address: str | None = None
    override_price: int | None = Field(default=None, ge=0)


class CancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


@router.post(
    "/",
    response_model=OrderResponse,
    summary="Create an order",
    description="Creates a PENDING order and quotes it from the estimated route.",
)
async def create_order(
    body: OrderCreate,
    engine: DispatchEngine = Depends(get_engine),
):
    pickup = body.pickup.to_location() if body.pickup else body.pickup_address
    destination = None
    if body.destination is not None:
        destination = body.destination.to_location()
    elif body.destination_address:
        destination = body.destination_address

    order = await engine.create_order(
        pickup=pickup,
        destination=destination,
        plan_id=body.plan_id,
        price=body.price,
        client_name=body.client_name,
        client_phone=body.client_phone,
        note=body.note,
    )
    return OrderResponse.from_order(order, engine.clock.now())


@router.get("/", response_model=List[OrderResponse], summary="List orders, newest first")
async def list_orders(
    status: OrderStatus | None = None,
    engine: DispatchEngine = Depends(get_engine),
):
    orders = await engine.list_orders(status)
    now = engine.clock.now()
    return [OrderResponse.from_order(order, now) for order in orders]


@router.get("/{order_id}", response_model=OrderResponse, summary="Get an order")
async def get_order(
    order_id: str,
    engine: DispatchEngine = Depends(get_engine),
):
    order = await engine.get_order(order_id)
    return OrderResponse.from_order(order, engine.clock.now())


@router.post(
    "/{order_id}/dispatch",
    response_model=OrderResponse,
    summary="Start or restart dispatch",
    description=(
        "Offers the order to the best eligible driver. Responds 409 with ERR_4001 "
        "when nobody can be offered the order; it then needs manual dispatch."
    ),
)
async def dispatch_order(
    order_id: str,
    body: DispatchRequest | None = None,
    engine: DispatchEngine = Depends(get_engine),
):
    order = await engine.dispatch(order_id, plan_id=body.plan_id if body else None)
    return OrderResponse.from_order(order, engine.clock.now())


@router.post(
    "/{order_id}/accept",
    response_model=AcceptOutcomeResponse,
    summary="Driver accepts the outstanding offer",
    description="Rejections (insufficient funds, stale offer, duplicates) are outcomes, not errors.",
)
async def accept_order(
    order_id: str,
    body: AcceptRequest,
    engine: DispatchEngine = Depends(get_engine),
):
    outcome = await engine.submit_acceptance(order_id, body.driver_id)
    return AcceptOutcomeResponse.from_outcome(outcome)


@router.post("/{order_id}/begin-pickup", response_model=OrderResponse)
async def begin_pickup(
    order_id: str,
    engine: DispatchEngine = Depends(get_engine),
):
    order = await engine.begin_pickup(order_id)
    return OrderResponse.from_order(order, engine.clock.now())


@router.post("/{order_id}/arrived", response_model=OrderResponse)
async def arrived(
    order_id: str,
    engine: DispatchEngine = Depends(get_engine),
):
    order = await engine.arrived(order_id)
    return OrderResponse.from_order(order, engine.clock.now())


@router.post(
    "/{order_id}/start-trip",
    response_model=OrderResponse,
    summary="Passenger on board",
    description=(
        "Freezes the waiting fee and prices the trip. Responds 503 with ERR_5001 when the "
        "route cannot be estimated and no override_price is given."
    ),
)
async def start_trip(
    order_id: str,
    body: StartTripRequest | None = None,
    engine: DispatchEngine = Depends(get_engine),
):
    body = body or StartTripRequest()
    destination = body.destination.to_location() if body.destination else body.destination_address
    order = await engine.start_trip(
        order_id,
        destination=destination,
        override_price=body.override_price,
    )
    return OrderResponse.from_order(order, engine.clock.now())


@router.post("/{order_id}/complete", response_model=OrderResponse)
async def complete_order(
    order_id: str,
    engine: DispatchEngine = Depends(get_engine),
):
    order = await engine.complete(order_id)
    return OrderResponse.from_order(order, engine.clock.now())


@router.post("/{order_id}/cancel", response_model=OrderResponse)
async def cancel_order(
    order_id: str,
    body: CancelRequest | None = None,
    engine: DispatchEngine = Depends(get_engine),
):
    order = await engine.cancel(order_id, reason=body.reason if body else None)
    return OrderResponse.from_order(order, engine.clock.now())


@router.get("/{order_id}/waiting-fee", summary="Waiting fee accrued so far")
async def get_waiting_fee(
    order_id: str,
    engine: DispatchEngine = Depends(get_engine),
):
    fee = await engine.waiting_fee(order_id)
    return {"order_id": order_id, "waiting_fee": fee}
