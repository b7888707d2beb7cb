"""
Vehicle API Routes
"""
from datetime import datetime
from typing import List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from fleet_dispatch.api.dependencies.engine import get_engine
from fleet_dispatch.api.routes.orders import LocationSchema
from fleet_dispatch.domain.models import PriorityTier, Vehicle, VehicleStatus
from fleet_dispatch.domain.services.dispatch_engine import DispatchEngine

router = APIRouter()


class VehicleCreate(BaseModel):
    driver_name: str = Field(min_length=1, max_length=100)
    driver_phone: str = Field(min_length=1, max_length=30)
    plate_number: str = Field(min_length=1, max_length=20)
    location: LocationSchema
    priority: PriorityTier = PriorityTier.INTERNAL
    opening_balance: int = Field(default=0, ge=0)


class AvailabilityUpdate(BaseModel):
    status: VehicleStatus | None = None
    location: LocationSchema | None = None


class VehicleResponse(BaseModel):
    id: str
    driver_name: str
    driver_phone: str
    plate_number: str
    location: LocationSchema
    priority: PriorityTier
    status: VehicleStatus
    wallet_balance: int
    missed_count: int
    suspended_until: datetime | None
    delinquent: bool
    last_update: datetime | None

    @classmethod
    def from_vehicle(cls, vehicle: Vehicle) -> "VehicleResponse":
        return cls(
            id=vehicle.id,
            driver_name=vehicle.driver_name,
            driver_phone=vehicle.driver_phone,
            plate_number=vehicle.plate_number,
            location=LocationSchema(
                lat=vehicle.location.lat,
                lng=vehicle.location.lng,
                address=vehicle.location.address,
            ),
            priority=vehicle.priority,
            status=vehicle.status,
            wallet_balance=vehicle.wallet_balance,
            missed_count=vehicle.missed_count,
            suspended_until=vehicle.suspended_until,
            delinquent=vehicle.delinquent,
            last_update=vehicle.last_update,
        )


@router.post(
    "/",
    response_model=VehicleResponse,
    summary="Register a vehicle",
    description="The opening balance is booked as a TOPUP ledger entry.",
)
async def register_vehicle(
    body: VehicleCreate,
    engine: DispatchEngine = Depends(get_engine),
):
    vehicle = Vehicle.new(
        driver_name=body.driver_name,
        driver_phone=body.driver_phone,
        plate_number=body.plate_number,
        lat=body.location.lat,
        lng=body.location.lng,
        priority=body.priority,
    )
    vehicle = await engine.register_vehicle(vehicle, opening_balance=body.opening_balance)
    return VehicleResponse.from_vehicle(vehicle)


@router.get("/", response_model=List[VehicleResponse], summary="List vehicles")
async def list_vehicles(
    status: VehicleStatus | None = None,
    engine: DispatchEngine = Depends(get_engine),
):
    vehicles = await engine.list_vehicles(status)
    return [VehicleResponse.from_vehicle(vehicle) for vehicle in vehicles]


@router.get("/{driver_id}", response_model=VehicleResponse, summary="Get a vehicle")
async def get_vehicle(
    driver_id: str,
    engine: DispatchEngine = Depends(get_engine),
):
    vehicle = await engine.get_vehicle(driver_id)
    return VehicleResponse.from_vehicle(vehicle)


@router.post(
    "/{driver_id}/availability",
    response_model=VehicleResponse,
    summary="Go on or off shift, report position",
    description="Only IDLE and OFFLINE may be requested; BUSY belongs to dispatch.",
)
async def set_availability(
    driver_id: str,
    body: AvailabilityUpdate,
    engine: DispatchEngine = Depends(get_engine),
):
    vehicle = await engine.set_availability(
        driver_id,
        status=body.status,
        location=body.location.to_location() if body.location else None,
    )
    return VehicleResponse.from_vehicle(vehicle)
