"""
Distance / ETA estimators.

Every implementation returns a ``TripEstimate`` or raises
``EstimatorUnavailableError``; callers never see transport exceptions.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

import httpx

from fleet_dispatch.core.exceptions import EstimatorUnavailableError
from fleet_dispatch.core.logging import get_logger
from fleet_dispatch.domain.models import Location, TripEstimate
from fleet_dispatch.domain.services.geography import haversine_km, locate

logger = get_logger(__name__)

# Road distance used when pickup and drop-off resolve to the same point
SAME_PLACE_DISTANCE_KM = 2.5


class DistanceEstimator(ABC):
    """Interface the dispatch core depends on for trip distance and duration"""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Short name used in logs"""

    @abstractmethod
    async def estimate(self, origin: Location, destination: Location) -> TripEstimate:
        """
        Estimate road distance and driving time.

        Raises:
            EstimatorUnavailableError: the estimate could not be produced.
        """

    async def resolve(self, address: str) -> Location:
        """Geocode a free-text address using the district table"""
        location = locate(address)
        if location is None:
            raise EstimatorUnavailableError(
                "address could not be resolved",
                details={"address": address},
            )
        return location

    async def close(self) -> None:
        return None


class StraightLineEstimator(DistanceEstimator):
    """Haversine distance times a winding factor, duration from an average speed"""

    def __init__(self, winding_factor: float = 1.35, average_speed_kmh: float = 30.0):
        if winding_factor <= 0 or average_speed_kmh <= 0:
            raise ValueError("winding_factor and average_speed_kmh must be positive")
        self._winding_factor = winding_factor
        self._average_speed_kmh = average_speed_kmh

    @property
    def provider_name(self) -> str:
        return "straight_line"

    async def estimate(self, origin: Location, destination: Location) -> TripEstimate:
        straight = haversine_km(origin, destination)
        if straight == 0:
            distance_km = SAME_PLACE_DISTANCE_KM
        else:
            distance_km = round(straight * self._winding_factor, 1)
        duration_min = round(distance_km / self._average_speed_kmh * 60, 1)
        return TripEstimate(distance_km=distance_km, duration_min=duration_min)


class OSRMEstimator(DistanceEstimator):
    """
    Road routing through an OSRM server.

    GET {base}/route/v1/driving/{lng},{lat};{lng},{lat}?overview=false
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._client = client
        self._owns_client = client is None

    @property
    def provider_name(self) -> str:
        return "osrm"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def estimate(self, origin: Location, destination: Location) -> TripEstimate:
        coords = f"{origin.lng},{origin.lat};{destination.lng},{destination.lat}"
        url = f"{self._base_url}/route/v1/driving/{coords}"
        try:
            response = await self._get_client().get(url, params={"overview": "false"})
        except httpx.TimeoutException as e:
            raise EstimatorUnavailableError(
                "OSRM request timed out",
                details={"timeout": self._timeout},
            ) from e
        except httpx.RequestError as e:
            raise EstimatorUnavailableError(
                "OSRM request failed",
                details={"error": str(e)},
            ) from e

        if response.status_code != 200:
            raise EstimatorUnavailableError(
                f"OSRM returned status {response.status_code}",
                details={"status_code": response.status_code},
            )

        try:
            data = response.json()
        except ValueError as e:
            raise EstimatorUnavailableError("OSRM returned invalid JSON") from e

        routes = data.get("routes") or []
        if data.get("code") != "Ok" or not routes:
            raise EstimatorUnavailableError(
                "OSRM found no route",
                details={"code": data.get("code")},
            )

        route = routes[0]
        estimate = TripEstimate(
            distance_km=round(float(route["distance"]) / 1000, 1),
            duration_min=round(float(route["duration"]) / 60, 1),
        )
        logger.debug(
            "OSRM route estimated",
            extra_data={"distance_km": estimate.distance_km, "duration_min": estimate.duration_min},
        )
        return estimate

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
