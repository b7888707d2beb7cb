"""
Dispatch policy - the tunables the scheduler reads, frozen at start-up
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta

from fleet_dispatch.core.config import Settings
from fleet_dispatch.domain.services.fare_engine import NightWindow


@dataclass(frozen=True)
class DispatchPolicy:
    offer_window_seconds: int = 15
    commission_rate: float = 0.15
    max_misses: int = 3
    suspension: timedelta = timedelta(hours=2)
    waiting_grace_seconds: int = 300
    max_pickup_radius_km: float = 10.0  # 0 disables the radius filter
    night_window: NightWindow = field(default_factory=NightWindow)

    def validate(self) -> None:
        if self.offer_window_seconds <= 0:
            raise ValueError("offer_window_seconds must be > 0")
        if not 0 <= self.commission_rate <= 1:
            raise ValueError("commission_rate must be between 0 and 1")
        if self.max_misses < 1:
            raise ValueError("max_misses must be >= 1")
        if self.suspension < timedelta(0):
            raise ValueError("suspension must be >= 0")
        if self.waiting_grace_seconds < 0:
            raise ValueError("waiting_grace_seconds must be >= 0")
        if self.max_pickup_radius_km < 0:
            raise ValueError("max_pickup_radius_km must be >= 0")

    @classmethod
    def from_settings(cls, settings: Settings) -> DispatchPolicy:
        policy = cls(
            offer_window_seconds=settings.OFFER_WINDOW_SECONDS,
            commission_rate=settings.COMMISSION_RATE,
            max_misses=settings.MAX_MISSES_BEFORE_SUSPENSION,
            suspension=timedelta(hours=settings.SUSPENSION_HOURS),
            waiting_grace_seconds=settings.WAITING_GRACE_SECONDS,
            max_pickup_radius_km=settings.MAX_PICKUP_RADIUS_KM,
            night_window=NightWindow(
                start_hour=settings.NIGHT_START_HOUR,
                end_hour=settings.NIGHT_END_HOUR,
                utc_offset_hours=settings.LOCAL_UTC_OFFSET_HOURS,
            ),
        )
        policy.validate()
        return policy
