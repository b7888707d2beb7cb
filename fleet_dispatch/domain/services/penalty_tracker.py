"""
Penalty Tracker - missed offers and suspensions

Reaching the miss threshold suspends the driver for the configured duration
and restarts the counter. Any successful acceptance forgives earlier misses.
"""
from datetime import datetime, timedelta
from typing import Optional

from fleet_dispatch.core.clock import Clock
from fleet_dispatch.core.locks import KeyedLocks
from fleet_dispatch.core.logging import get_logger
from fleet_dispatch.db.repository import Repository

logger = get_logger(__name__)


class PenaltyTracker:
    def __init__(
        self,
        repository: Repository,
        clock: Clock,
        vehicle_locks: KeyedLocks,
        max_misses: int = 3,
        suspension: timedelta = timedelta(hours=2),
    ):
        self.repository = repository
        self.clock = clock
        self._vehicle_locks = vehicle_locks
        self.max_misses = max_misses
        self.suspension = suspension

    async def record_miss(self, driver_id: str) -> int:
        """
        Count one missed offer and return the misses counted so far,
        including this one. At the threshold the driver is suspended and
        the stored counter restarts at 0.
        """
        async with self._vehicle_locks(driver_id):
            vehicle = await self.repository.get_vehicle(driver_id)
            now = self.clock.now()
            missed = vehicle.missed_count + 1

            if missed >= self.max_misses:
                vehicle.suspended_until = now + self.suspension
                vehicle.missed_count = 0
                logger.warning(
                    "Driver suspended after missed offers",
                    extra_data={
                        "driver_id": driver_id,
                        "missed_count": missed,
                        "suspended_until": vehicle.suspended_until.isoformat(),
                    },
                )
            else:
                vehicle.missed_count = missed
                logger.info(
                    "Missed offer recorded",
                    extra_data={"driver_id": driver_id, "missed_count": missed},
                )

            vehicle.last_update = now
            await self.repository.update_vehicle_state(vehicle)
        return missed

    async def is_suspended(self, driver_id: str, now: Optional[datetime] = None) -> bool:
        vehicle = await self.repository.get_vehicle(driver_id)
        return vehicle.is_suspended(now or self.clock.now())

    async def reset(self, driver_id: str) -> None:
        async with self._vehicle_locks(driver_id):
            vehicle = await self.repository.get_vehicle(driver_id)
            if vehicle.missed_count == 0:
                return
            logger.info(
                "Missed offers forgiven",
                extra_data={"driver_id": driver_id, "previous_missed_count": vehicle.missed_count},
            )
            vehicle.missed_count = 0
            vehicle.last_update = self.clock.now()
            await self.repository.update_vehicle_state(vehicle)
