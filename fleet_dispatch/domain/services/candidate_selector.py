"""
Candidate Selector - who gets the next offer

Eligible: IDLE, not suspended, not excluded for this order, and within the
pickup radius. Ordered by priority tier, then distance to pickup, then
missed-offer count; vehicle id breaks any remaining tie so the order is
deterministic.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from fleet_dispatch.domain.models import Location, Vehicle, VehicleStatus
from fleet_dispatch.domain.services.geography import haversine_km


@dataclass(frozen=True)
class RankedCandidate:
    vehicle: Vehicle
    distance_km: float


class CandidateSelector:
    def __init__(self, max_radius_km: float = 0.0):
        self.max_radius_km = max_radius_km

    def is_eligible(self, vehicle: Vehicle, now: datetime, excluded: Iterable[str] = ()) -> bool:
        return (
            vehicle.status == VehicleStatus.IDLE
            and not vehicle.is_suspended(now)
            and vehicle.id not in set(excluded)
        )

    def rank(
        self,
        pickup: Location,
        pool: Iterable[Vehicle],
        now: datetime,
        excluded: Iterable[str] = (),
    ) -> list[RankedCandidate]:
        excluded = set(excluded)
        ranked = []
        for vehicle in pool:
            if not self.is_eligible(vehicle, now, excluded):
                continue
            distance = haversine_km(pickup, vehicle.location)
            if self.max_radius_km and distance > self.max_radius_km:
                continue
            ranked.append(RankedCandidate(vehicle=vehicle, distance_km=distance))

        ranked.sort(key=lambda c: (
            c.vehicle.priority.rank,
            c.distance_km,
            c.vehicle.missed_count,
            c.vehicle.id,
        ))
        return ranked

    def next_candidate(
        self,
        pickup: Location,
        pool: Iterable[Vehicle],
        now: datetime,
        excluded: Iterable[str] = (),
    ) -> Optional[RankedCandidate]:
        """Best eligible candidate, or None when the pool is exhausted"""
        ranked = self.rank(pickup, pool, now, excluded)
        return ranked[0] if ranked else None
