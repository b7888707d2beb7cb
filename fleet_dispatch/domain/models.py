"""
Domain models for dispatch: orders, vehicles, ledger rows and pricing plans.

Plain dataclasses, no storage concerns. The repositories translate these to
and from rows and reject unknown enum values on the way in.
"""
from __future__ import annotations

import enum
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    DISPATCHING = "DISPATCHING"
    ASSIGNED = "ASSIGNED"
    PICKING_UP = "PICKING_UP"
    IN_TRANSIT = "IN_TRANSIT"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.COMPLETED, OrderStatus.CANCELLED)


# vehicle_id is set exactly while the order is in one of these
VEHICLE_BOUND_STATUSES = frozenset({
    OrderStatus.ASSIGNED,
    OrderStatus.PICKING_UP,
    OrderStatus.IN_TRANSIT,
    OrderStatus.COMPLETED,
})


class VehicleStatus(str, enum.Enum):
    IDLE = "IDLE"
    BUSY = "BUSY"
    OFFLINE = "OFFLINE"


class PriorityTier(str, enum.Enum):
    """Candidate ordering tier; lower rank is offered first"""

    INTERNAL = "INTERNAL"
    PARTNER = "PARTNER"
    LINE_BROADCAST = "LINE_BROADCAST"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]


_TIER_RANK = {
    PriorityTier.INTERNAL: 0,
    PriorityTier.PARTNER: 1,
    PriorityTier.LINE_BROADCAST: 2,
}


class LedgerEntryType(str, enum.Enum):
    TOPUP = "TOPUP"
    COMMISSION = "COMMISSION"
    KICKBACK = "KICKBACK"
    REFUND = "REFUND"


class AcceptStatus(str, enum.Enum):
    ACCEPTED = "ACCEPTED"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    DRIVER_UNAVAILABLE = "DRIVER_UNAVAILABLE"
    STALE = "STALE"
    IGNORED = "IGNORED"


@dataclass(frozen=True)
class Location:
    lat: float
    lng: float
    address: Optional[str] = None


@dataclass(frozen=True)
class PricingPlan:
    id: str
    name: str
    base_fare: int
    per_km: int
    per_minute: int
    night_surcharge: int = 0
    waiting_fee_per_minute: int = 0


@dataclass(frozen=True)
class FareBreakdown:
    base_fare: int
    distance_fare: int
    time_fare: int
    night_surcharge: int
    total: int


@dataclass(frozen=True)
class TripEstimate:
    distance_km: float
    duration_min: float


def _new_order_identity(created_at: datetime) -> tuple[str, str, str]:
    """(unique id, reply reference, cosmetic display id)"""
    unique = uuid.uuid4()
    reference = f"ORD-{unique.hex[:8].upper()}"
    display_id = f"{created_at:%Y%m%d}.{unique.int % 1000:03d}"
    return str(unique), reference, display_id


@dataclass
class Order:
    """
    A ride request.

    ``commission`` is only set at COMPLETED. ``offered_vehicle_id`` is the
    driver holding the single outstanding offer while DISPATCHING; the
    assigned driver lives in ``vehicle_id``.
    """
    id: str
    reference: str
    display_id: str
    pickup: Location
    plan_id: str
    created_at: datetime
    destination: Optional[Location] = None
    status: OrderStatus = OrderStatus.PENDING
    price: int = 0

    # fare components, refreshed whenever the price is re-quoted
    base_fare: int = 0
    distance_fare: int = 0
    time_fare: int = 0
    night_surcharge: int = 0
    waiting_fee: int = 0
    distance_km: Optional[float] = None
    duration_min: Optional[float] = None

    commission: Optional[int] = None
    commission_settled: Optional[bool] = None
    vehicle_id: Optional[str] = None

    # dispatch round state
    offered_vehicle_id: Optional[str] = None
    offer_expires_at: Optional[datetime] = None
    dispatch_countdown: int = 0
    current_driver_index: int = 0
    priority_tier: PriorityTier = PriorityTier.INTERNAL
    excluded_vehicle_ids: list[str] = field(default_factory=list)
    needs_manual_dispatch: bool = False

    client_name: Optional[str] = None
    client_phone: Optional[str] = None
    note: Optional[str] = None
    cancel_reason: Optional[str] = None

    assigned_at: Optional[datetime] = None
    waiting_started_at: Optional[datetime] = None
    trip_started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        pickup: Location,
        plan_id: str,
        created_at: datetime,
        destination: Optional[Location] = None,
        client_name: Optional[str] = None,
        client_phone: Optional[str] = None,
        note: Optional[str] = None,
    ) -> Order:
        order_id, reference, display_id = _new_order_identity(created_at)
        return cls(
            id=order_id,
            reference=reference,
            display_id=display_id,
            pickup=pickup,
            plan_id=plan_id,
            created_at=created_at,
            destination=destination,
            client_name=client_name,
            client_phone=client_phone,
            note=note,
        )

    @property
    def is_waiting(self) -> bool:
        return self.status == OrderStatus.PICKING_UP and self.waiting_started_at is not None

    def seconds_remaining(self, now: datetime) -> int:
        """Live countdown of the current offer window"""
        if self.status != OrderStatus.DISPATCHING or self.offer_expires_at is None:
            return 0
        return max(0, math.ceil((self.offer_expires_at - now).total_seconds()))

    def apply_fare(self, fare: FareBreakdown) -> None:
        self.base_fare = fare.base_fare
        self.distance_fare = fare.distance_fare
        self.time_fare = fare.time_fare
        self.night_surcharge = fare.night_surcharge
        self.price = fare.total

    def clear_offer(self) -> None:
        self.offered_vehicle_id = None
        self.offer_expires_at = None
        self.dispatch_countdown = 0


@dataclass
class Vehicle:
    """
    A dispatchable driver unit.

    ``wallet_balance`` is a cached projection of the ledger; only the wallet
    ledger writes it.
    """
    id: str
    driver_name: str
    driver_phone: str
    plate_number: str
    location: Location
    priority: PriorityTier = PriorityTier.INTERNAL
    status: VehicleStatus = VehicleStatus.IDLE
    wallet_balance: int = 0
    missed_count: int = 0
    suspended_until: Optional[datetime] = None
    delinquent: bool = False
    last_update: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        driver_name: str,
        driver_phone: str,
        plate_number: str,
        lat: float,
        lng: float,
        priority: str | PriorityTier = PriorityTier.INTERNAL,
        vehicle_id: Optional[str] = None,
    ) -> Vehicle:
        if isinstance(priority, str):
            priority = PriorityTier(priority)
        return cls(
            id=vehicle_id or str(uuid.uuid4()),
            driver_name=driver_name,
            driver_phone=driver_phone,
            plate_number=plate_number,
            location=Location(lat, lng),
            priority=priority,
        )

    def is_suspended(self, now: datetime) -> bool:
        return self.suspended_until is not None and self.suspended_until > now


@dataclass(frozen=True)
class WalletLogEntry:
    """Append-only ledger row. Positive amounts credit, negative deduct."""
    vehicle_id: str
    amount: int
    entry_type: LedgerEntryType
    balance_after: int
    created_at: datetime
    order_id: Optional[str] = None
    description: Optional[str] = None
    id: Optional[int] = None


@dataclass(frozen=True)
class AcceptOutcome:
    """Result of ``submit_acceptance``; rejected outcomes are not errors"""
    status: AcceptStatus
    order_id: Optional[str] = None
    driver_id: Optional[str] = None
    message: str = ""
    balance: Optional[int] = None
    required: Optional[int] = None

    @property
    def accepted(self) -> bool:
        return self.status == AcceptStatus.ACCEPTED
