"""
Persistence boundary for orders, vehicles and the wallet ledger.

Two implementations share one contract:
- InMemoryRepository - process-local store used by tests and the simulation
- SqlAlchemyRepository - async SQLAlchemy over the ``orders``, ``vehicles``
  and ``wallet_logs`` tables

Enumerated fields are plain strings in storage and are validated on load;
an unknown value raises PersistenceError instead of leaking into the core.
The cached wallet balance is only ever written by ``append_wallet_entry``,
in the same atomic unit as the ledger row.
"""
from __future__ import annotations

import copy
import enum
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional, TypeVar

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fleet_dispatch.core.exceptions import (
    InsufficientFundsError,
    OrderNotFoundError,
    PersistenceError,
    VehicleNotFoundError,
)
from fleet_dispatch.core.logging import get_logger
from fleet_dispatch.db.models import OrderRecord, VehicleRecord, WalletLogRecord
from fleet_dispatch.domain.models import (
    LedgerEntryType,
    Location,
    Order,
    OrderStatus,
    PriorityTier,
    Vehicle,
    VehicleStatus,
    WalletLogEntry,
)

logger = get_logger(__name__)

E = TypeVar("E", bound=enum.Enum)


class Repository(ABC):
    # ── orders ──

    @abstractmethod
    async def get_order(self, order_id: str) -> Order:
        """Raises OrderNotFoundError"""

    @abstractmethod
    async def find_order_by_reference(self, reference: str) -> Optional[Order]: ...

    @abstractmethod
    async def save_order(self, order: Order) -> None: ...

    @abstractmethod
    async def list_orders(self, status: Optional[OrderStatus] = None) -> list[Order]:
        """Newest first"""

    # ── vehicles ──

    @abstractmethod
    async def add_vehicle(self, vehicle: Vehicle) -> None:
        """Insert a vehicle; its wallet balance must be zero"""

    @abstractmethod
    async def get_vehicle(self, vehicle_id: str) -> Vehicle:
        """Raises VehicleNotFoundError"""

    @abstractmethod
    async def list_vehicles(self, status: Optional[VehicleStatus] = None) -> list[Vehicle]: ...

    @abstractmethod
    async def list_delinquent_vehicles(self) -> list[Vehicle]: ...

    @abstractmethod
    async def update_vehicle_state(self, vehicle: Vehicle) -> None:
        """Persist dispatch state (status, location, misses, suspension, delinquency), never the balance"""

    # ── wallet ledger ──

    @abstractmethod
    async def append_wallet_entry(
        self,
        vehicle_id: str,
        amount: int,
        entry_type: LedgerEntryType,
        created_at: datetime,
        order_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> WalletLogEntry:
        """
        Append one ledger row and move the cached balance by ``amount`` atomically.

        Raises:
            InsufficientFundsError: the balance would go negative.
            PersistenceError: an entry of this type already exists for the order.
        """

    @abstractmethod
    async def list_wallet_entries(
        self, vehicle_id: str, limit: Optional[int] = None
    ) -> list[WalletLogEntry]:
        """Newest first"""

    @abstractmethod
    async def ledger_sum(self, vehicle_id: str) -> int: ...

    async def close(self) -> None:
        return None


def _parse_enum(enum_cls: type[E], value: object, field: str) -> E:
    try:
        return enum_cls(value)
    except ValueError as e:
        raise PersistenceError(
            f"Unknown {field} value in storage: {value!r}",
            details={"field": field, "value": str(value)},
        ) from e


def _aware(moment: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; everything is stored as UTC"""
    if moment is not None and moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


class InMemoryRepository(Repository):
    """Copies on the way in and out so callers never share mutable state with the store"""

    def __init__(self) -> None:
        self._orders: dict[str, Order] = {}
        self._vehicles: dict[str, Vehicle] = {}
        self._entries: dict[str, list[WalletLogEntry]] = {}
        self._next_entry_id = 1

    async def get_order(self, order_id: str) -> Order:
        order = self._orders.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return copy.deepcopy(order)

    async def find_order_by_reference(self, reference: str) -> Optional[Order]:
        for order in self._orders.values():
            if order.reference == reference:
                return copy.deepcopy(order)
        return None

    async def save_order(self, order: Order) -> None:
        _parse_enum(OrderStatus, order.status, "order.status")
        _parse_enum(PriorityTier, order.priority_tier, "order.priority_tier")
        self._orders[order.id] = copy.deepcopy(order)

    async def list_orders(self, status: Optional[OrderStatus] = None) -> list[Order]:
        orders = [
            copy.deepcopy(order)
            for order in self._orders.values()
            if status is None or order.status == status
        ]
        return sorted(orders, key=lambda o: o.created_at, reverse=True)

    async def add_vehicle(self, vehicle: Vehicle) -> None:
        if vehicle.id in self._vehicles:
            raise PersistenceError("Vehicle already exists", details={"vehicle_id": vehicle.id})
        if vehicle.wallet_balance != 0:
            raise PersistenceError(
                "Vehicles start with an empty wallet; record opening balances as ledger entries",
                details={"vehicle_id": vehicle.id},
            )
        self._vehicles[vehicle.id] = copy.deepcopy(vehicle)
        self._entries[vehicle.id] = []

    async def get_vehicle(self, vehicle_id: str) -> Vehicle:
        vehicle = self._vehicles.get(vehicle_id)
        if vehicle is None:
            raise VehicleNotFoundError(vehicle_id)
        return copy.deepcopy(vehicle)

    async def list_vehicles(self, status: Optional[VehicleStatus] = None) -> list[Vehicle]:
        return [
            copy.deepcopy(vehicle)
            for vehicle in self._vehicles.values()
            if status is None or vehicle.status == status
        ]

    async def list_delinquent_vehicles(self) -> list[Vehicle]:
        return [copy.deepcopy(v) for v in self._vehicles.values() if v.delinquent]

    async def update_vehicle_state(self, vehicle: Vehicle) -> None:
        stored = self._vehicles.get(vehicle.id)
        if stored is None:
            raise VehicleNotFoundError(vehicle.id)
        stored.status = _parse_enum(VehicleStatus, vehicle.status, "vehicle.status")
        stored.priority = _parse_enum(PriorityTier, vehicle.priority, "vehicle.priority")
        stored.location = vehicle.location
        stored.missed_count = vehicle.missed_count
        stored.suspended_until = vehicle.suspended_until
        stored.delinquent = vehicle.delinquent
        stored.last_update = vehicle.last_update

    async def append_wallet_entry(
        self,
        vehicle_id: str,
        amount: int,
        entry_type: LedgerEntryType,
        created_at: datetime,
        order_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> WalletLogEntry:
        vehicle = self._vehicles.get(vehicle_id)
        if vehicle is None:
            raise VehicleNotFoundError(vehicle_id)

        new_balance = vehicle.wallet_balance + amount
        if new_balance < 0:
            raise InsufficientFundsError(vehicle_id, vehicle.wallet_balance, -amount)

        if order_id is not None:
            for existing in self._entries[vehicle_id]:
                if existing.order_id == order_id and existing.entry_type == entry_type:
                    raise PersistenceError(
                        "Duplicate ledger entry for order",
                        details={
                            "vehicle_id": vehicle_id,
                            "order_id": order_id,
                            "entry_type": entry_type.value,
                        },
                    )

        entry = WalletLogEntry(
            id=self._next_entry_id,
            vehicle_id=vehicle_id,
            amount=amount,
            entry_type=entry_type,
            balance_after=new_balance,
            created_at=created_at,
            order_id=order_id,
            description=description,
        )
        self._next_entry_id += 1
        self._entries[vehicle_id].append(entry)
        vehicle.wallet_balance = new_balance
        return entry

    async def list_wallet_entries(
        self, vehicle_id: str, limit: Optional[int] = None
    ) -> list[WalletLogEntry]:
        if vehicle_id not in self._vehicles:
            raise VehicleNotFoundError(vehicle_id)
        entries = list(reversed(self._entries[vehicle_id]))
        return entries[:limit] if limit is not None else entries

    async def ledger_sum(self, vehicle_id: str) -> int:
        if vehicle_id not in self._vehicles:
            raise VehicleNotFoundError(vehicle_id)
        return sum(entry.amount for entry in self._entries[vehicle_id])


# ── SQL mapping ──

def _order_columns(order: Order) -> dict:
    destination = order.destination
    return {
        "reference": order.reference,
        "display_id": order.display_id,
        "pickup_lat": order.pickup.lat,
        "pickup_lng": order.pickup.lng,
        "pickup_address": order.pickup.address,
        "destination_lat": destination.lat if destination else None,
        "destination_lng": destination.lng if destination else None,
        "destination_address": destination.address if destination else None,
        "status": _parse_enum(OrderStatus, order.status, "order.status").value,
        "plan_id": order.plan_id,
        "price": order.price,
        "base_fare": order.base_fare,
        "distance_fare": order.distance_fare,
        "time_fare": order.time_fare,
        "night_surcharge": order.night_surcharge,
        "waiting_fee": order.waiting_fee,
        "distance_km": order.distance_km,
        "duration_min": order.duration_min,
        "commission": order.commission,
        "commission_settled": order.commission_settled,
        "vehicle_id": order.vehicle_id,
        "offered_vehicle_id": order.offered_vehicle_id,
        "offer_expires_at": order.offer_expires_at,
        "dispatch_countdown": order.dispatch_countdown,
        "current_driver_index": order.current_driver_index,
        "priority_tier": _parse_enum(PriorityTier, order.priority_tier, "order.priority_tier").value,
        "excluded_vehicle_ids": list(order.excluded_vehicle_ids),
        "needs_manual_dispatch": order.needs_manual_dispatch,
        "client_name": order.client_name,
        "client_phone": order.client_phone,
        "note": order.note,
        "cancel_reason": order.cancel_reason,
        "created_at": order.created_at,
        "assigned_at": order.assigned_at,
        "waiting_started_at": order.waiting_started_at,
        "trip_started_at": order.trip_started_at,
        "completed_at": order.completed_at,
        "cancelled_at": order.cancelled_at,
    }


def _order_from_record(record: OrderRecord) -> Order:
    destination = None
    if record.destination_lat is not None and record.destination_lng is not None:
        destination = Location(record.destination_lat, record.destination_lng, record.destination_address)
    return Order(
        id=record.id,
        reference=record.reference,
        display_id=record.display_id,
        pickup=Location(record.pickup_lat, record.pickup_lng, record.pickup_address),
        plan_id=record.plan_id,
        created_at=_aware(record.created_at),
        destination=destination,
        status=_parse_enum(OrderStatus, record.status, "order.status"),
        price=record.price,
        base_fare=record.base_fare,
        distance_fare=record.distance_fare,
        time_fare=record.time_fare,
        night_surcharge=record.night_surcharge,
        waiting_fee=record.waiting_fee,
        distance_km=record.distance_km,
        duration_min=record.duration_min,
        commission=record.commission,
        commission_settled=record.commission_settled,
        vehicle_id=record.vehicle_id,
        offered_vehicle_id=record.offered_vehicle_id,
        offer_expires_at=_aware(record.offer_expires_at),
        dispatch_countdown=record.dispatch_countdown,
        current_driver_index=record.current_driver_index,
        priority_tier=_parse_enum(PriorityTier, record.priority_tier, "order.priority_tier"),
        excluded_vehicle_ids=list(record.excluded_vehicle_ids or []),
        needs_manual_dispatch=record.needs_manual_dispatch,
        client_name=record.client_name,
        client_phone=record.client_phone,
        note=record.note,
        cancel_reason=record.cancel_reason,
        assigned_at=_aware(record.assigned_at),
        waiting_started_at=_aware(record.waiting_started_at),
        trip_started_at=_aware(record.trip_started_at),
        completed_at=_aware(record.completed_at),
        cancelled_at=_aware(record.cancelled_at),
    )


def _vehicle_state_columns(vehicle: Vehicle) -> dict:
    return {
        "lat": vehicle.location.lat,
        "lng": vehicle.location.lng,
        "priority": _parse_enum(PriorityTier, vehicle.priority, "vehicle.priority").value,
        "status": _parse_enum(VehicleStatus, vehicle.status, "vehicle.status").value,
        "missed_count": vehicle.missed_count,
        "suspended_until": vehicle.suspended_until,
        "delinquent": vehicle.delinquent,
        "last_update": vehicle.last_update,
    }


def _vehicle_from_record(record: VehicleRecord) -> Vehicle:
    return Vehicle(
        id=record.id,
        driver_name=record.driver_name,
        driver_phone=record.driver_phone,
        plate_number=record.plate_number,
        location=Location(record.lat, record.lng),
        priority=_parse_enum(PriorityTier, record.priority, "vehicle.priority"),
        status=_parse_enum(VehicleStatus, record.status, "vehicle.status"),
        wallet_balance=record.wallet_balance,
        missed_count=record.missed_count,
        suspended_until=_aware(record.suspended_until),
        delinquent=record.delinquent,
        last_update=_aware(record.last_update),
    )


def _entry_from_record(record: WalletLogRecord) -> WalletLogEntry:
    return WalletLogEntry(
        id=record.id,
        vehicle_id=record.vehicle_id,
        amount=record.amount,
        entry_type=_parse_enum(LedgerEntryType, record.entry_type, "wallet_log.entry_type"),
        balance_after=record.balance_after,
        created_at=_aware(record.created_at),
        order_id=record.order_id,
        description=record.description,
    )


class SqlAlchemyRepository(Repository):
    """One short-lived session per call"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_order(self, order_id: str) -> Order:
        async with self._session_factory() as session:
            record = await session.get(OrderRecord, order_id)
            if record is None:
                raise OrderNotFoundError(order_id)
            return _order_from_record(record)

    async def find_order_by_reference(self, reference: str) -> Optional[Order]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(OrderRecord).where(OrderRecord.reference == reference)
            )
            record = result.scalar_one_or_none()
            return _order_from_record(record) if record else None

    async def save_order(self, order: Order) -> None:
        columns = _order_columns(order)
        async with self._session_factory() as session:
            async with session.begin():
                record = await session.get(OrderRecord, order.id)
                if record is None:
                    session.add(OrderRecord(id=order.id, **columns))
                else:
                    for name, value in columns.items():
                        setattr(record, name, value)

    async def list_orders(self, status: Optional[OrderStatus] = None) -> list[Order]:
        query = select(OrderRecord).order_by(OrderRecord.created_at.desc())
        if status is not None:
            query = query.where(OrderRecord.status == OrderStatus(status).value)
        async with self._session_factory() as session:
            result = await session.execute(query)
            return [_order_from_record(record) for record in result.scalars().all()]

    async def add_vehicle(self, vehicle: Vehicle) -> None:
        if vehicle.wallet_balance != 0:
            raise PersistenceError(
                "Vehicles start with an empty wallet; record opening balances as ledger entries",
                details={"vehicle_id": vehicle.id},
            )
        record = VehicleRecord(
            id=vehicle.id,
            driver_name=vehicle.driver_name,
            driver_phone=vehicle.driver_phone,
            plate_number=vehicle.plate_number,
            wallet_balance=0,
            **_vehicle_state_columns(vehicle),
        )
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(record)
        except IntegrityError as e:
            raise PersistenceError("Vehicle already exists", details={"vehicle_id": vehicle.id}) from e

    async def get_vehicle(self, vehicle_id: str) -> Vehicle:
        async with self._session_factory() as session:
            record = await session.get(VehicleRecord, vehicle_id)
            if record is None:
                raise VehicleNotFoundError(vehicle_id)
            return _vehicle_from_record(record)

    async def list_vehicles(self, status: Optional[VehicleStatus] = None) -> list[Vehicle]:
        query = select(VehicleRecord).order_by(VehicleRecord.id)
        if status is not None:
            query = query.where(VehicleRecord.status == VehicleStatus(status).value)
        async with self._session_factory() as session:
            result = await session.execute(query)
            return [_vehicle_from_record(record) for record in result.scalars().all()]

    async def list_delinquent_vehicles(self) -> list[Vehicle]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(VehicleRecord).where(VehicleRecord.delinquent.is_(True)).order_by(VehicleRecord.id)
            )
            return [_vehicle_from_record(record) for record in result.scalars().all()]

    async def update_vehicle_state(self, vehicle: Vehicle) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(VehicleRecord)
                    .where(VehicleRecord.id == vehicle.id)
                    .values(**_vehicle_state_columns(vehicle))
                )
                if result.rowcount == 0:
                    raise VehicleNotFoundError(vehicle.id)

    async def append_wallet_entry(
        self,
        vehicle_id: str,
        amount: int,
        entry_type: LedgerEntryType,
        created_at: datetime,
        order_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> WalletLogEntry:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        select(VehicleRecord)
                        .where(VehicleRecord.id == vehicle_id)
                        .with_for_update()
                    )
                    vehicle = result.scalar_one_or_none()
                    if vehicle is None:
                        raise VehicleNotFoundError(vehicle_id)

                    # re-checked under the row lock
                    new_balance = vehicle.wallet_balance + amount
                    if new_balance < 0:
                        raise InsufficientFundsError(vehicle_id, vehicle.wallet_balance, -amount)

                    vehicle.wallet_balance = new_balance
                    record = WalletLogRecord(
                        vehicle_id=vehicle_id,
                        order_id=order_id,
                        entry_type=LedgerEntryType(entry_type).value,
                        amount=amount,
                        balance_after=new_balance,
                        description=description,
                        created_at=created_at,
                    )
                    session.add(record)
                    await session.flush()
                return _entry_from_record(record)
        except IntegrityError as e:
            logger.error(
                "Rejected duplicate ledger entry",
                extra_data={"vehicle_id": vehicle_id, "order_id": order_id, "entry_type": str(entry_type)},
            )
            raise PersistenceError(
                "Duplicate ledger entry for order",
                details={"vehicle_id": vehicle_id, "order_id": order_id},
            ) from e

    async def list_wallet_entries(
        self, vehicle_id: str, limit: Optional[int] = None
    ) -> list[WalletLogEntry]:
        query = (
            select(WalletLogRecord)
            .where(WalletLogRecord.vehicle_id == vehicle_id)
            .order_by(WalletLogRecord.id.desc())
        )
        if limit is not None:
            query = query.limit(limit)
        async with self._session_factory() as session:
            if await session.get(VehicleRecord, vehicle_id) is None:
                raise VehicleNotFoundError(vehicle_id)
            result = await session.execute(query)
            return [_entry_from_record(record) for record in result.scalars().all()]

    async def ledger_sum(self, vehicle_id: str) -> int:
        async with self._session_factory() as session:
            if await session.get(VehicleRecord, vehicle_id) is None:
                raise VehicleNotFoundError(vehicle_id)
            result = await session.execute(
                select(func.coalesce(func.sum(WalletLogRecord.amount), 0))
                .where(WalletLogRecord.vehicle_id == vehicle_id)
            )
            return int(result.scalar_one())
