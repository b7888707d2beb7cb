"""
Pytest Configuration and Fixtures

Provides fixtures for:
- A dispatch engine on a simulated clock with an in-memory store
- SQLite-backed repository (async)
- HTTP test client with the engine dependency overridden
- Test data factories (vehicles, orders)
"""
import itertools
from datetime import datetime
from typing import Optional

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from fleet_dispatch.api.dependencies.engine import get_engine
from fleet_dispatch.core.clock import ManualClock
from fleet_dispatch.core.exceptions import NotificationError
from fleet_dispatch.db import models  # noqa: F401
from fleet_dispatch.db.database import Base, build_session_factory
from fleet_dispatch.db.repository import InMemoryRepository, SqlAlchemyRepository
from fleet_dispatch.domain.models import (
    Location,
    Order,
    PricingPlan,
    PriorityTier,
    Vehicle,
    VehicleStatus,
)
from fleet_dispatch.domain.services.dispatch_engine import DispatchEngine
from fleet_dispatch.domain.services.dispatch_policy import DispatchPolicy
from fleet_dispatch.domain.services.estimator import StraightLineEstimator
from fleet_dispatch.domain.services.fare_engine import PlanCatalog
from fleet_dispatch.domain.services.notifier import Notifier, OrderSummary
from fleet_dispatch.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Kaohsiung Main Station; vehicles are placed relative to it
PICKUP = Location(22.6394, 120.3025, "高雄車站")
DESTINATION = Location(22.6133, 120.3000, "新興區")

STANDARD_PLAN = PricingPlan(
    id="default",
    name="Standard",
    base_fare=150,
    per_km=30,
    per_minute=5,
    night_surcharge=50,
    waiting_fee_per_minute=10,
)


def near_pickup(km_north: float) -> tuple[float, float]:
    """Coordinates roughly ``km_north`` kilometres north of the pickup"""
    return PICKUP.lat + km_north / 111.0, PICKUP.lng


class RecordingNotifier(Notifier):
    """Keeps every notification in memory; ``fail`` makes every call raise"""

    def __init__(self) -> None:
        self.driver_offers: list[tuple[str, OrderSummary, datetime]] = []
        self.group_messages: list[str] = []
        self.fail = False

    @property
    def provider_name(self) -> str:
        return "recording"

    async def notify_driver(self, driver_id: str, summary: OrderSummary, offer_expires_at: datetime) -> None:
        if self.fail:
            raise NotificationError("gateway down")
        self.driver_offers.append((driver_id, summary, offer_expires_at))

    async def notify_group(self, message: str) -> None:
        if self.fail:
            raise NotificationError("gateway down")
        self.group_messages.append(message)

    def offered_drivers(self) -> list[str]:
        return [driver_id for driver_id, _, _ in self.driver_offers]


# ============================================================================
# Dispatch engine
# ============================================================================

@pytest.fixture
def manual_clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def estimator() -> StraightLineEstimator:
    return StraightLineEstimator()


@pytest.fixture
def plan_catalog() -> PlanCatalog:
    return PlanCatalog([STANDARD_PLAN])


@pytest.fixture
def policy() -> DispatchPolicy:
    return DispatchPolicy()


@pytest.fixture
async def engine(repository, notifier, estimator, plan_catalog, policy, manual_clock):
    dispatch_engine = DispatchEngine(
        repository=repository,
        notifier=notifier,
        estimator=estimator,
        plans=plan_catalog,
        policy=policy,
        clock=manual_clock,
    )
    yield dispatch_engine
    await dispatch_engine.shutdown()


@pytest.fixture
def recorded_events(engine) -> list:
    events: list = []
    engine.events.subscribe(events.append)
    return events


# ============================================================================
# SQL store
# ============================================================================

@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    db_engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield db_engine

    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await db_engine.dispose()


@pytest.fixture
async def sql_repository(async_engine) -> SqlAlchemyRepository:
    return SqlAlchemyRepository(build_session_factory(async_engine))


# ============================================================================
# HTTP client
# ============================================================================

@pytest.fixture(scope="function")
async def test_client(engine):
    """Create test client with the dispatch engine override"""

    async def override_get_engine():
        return engine

    app.dependency_overrides[get_engine] = override_get_engine

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Test Data Factories
# ============================================================================

_plate_numbers = itertools.count(1000)


@pytest.fixture
def vehicle_factory(engine, repository):
    """Register a vehicle ``distance_km`` north of the pickup"""

    async def _create_vehicle(
        driver_name: str = "Test Driver",
        priority: PriorityTier = PriorityTier.INTERNAL,
        distance_km: float = 1.0,
        balance: int = 1000,
        status: VehicleStatus = VehicleStatus.IDLE,
        missed_count: int = 0,
        vehicle_id: Optional[str] = None,
    ) -> Vehicle:
        lat, lng = near_pickup(distance_km)
        vehicle = Vehicle.new(
            driver_name=driver_name,
            driver_phone="0912345678",
            plate_number=f"TST-{next(_plate_numbers)}",
            lat=lat,
            lng=lng,
            priority=priority,
            vehicle_id=vehicle_id,
        )
        vehicle = await engine.register_vehicle(vehicle, opening_balance=balance)
        if status != VehicleStatus.IDLE or missed_count:
            # BUSY cannot be requested through set_availability
            vehicle.status = status
            vehicle.missed_count = missed_count
            await repository.update_vehicle_state(vehicle)
        return vehicle

    return _create_vehicle


@pytest.fixture
def order_factory(engine):
    async def _create_order(
        price: Optional[int] = None,
        pickup: Location = PICKUP,
        destination: Optional[Location] = DESTINATION,
        **kwargs,
    ) -> Order:
        return await engine.create_order(pickup=pickup, destination=destination, price=price, **kwargs)

    return _create_order
