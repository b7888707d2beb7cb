"""
Unit tests for distance estimators and address resolution.
"""
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from httpx import Response

from fleet_dispatch.core.exceptions import EstimatorUnavailableError
from fleet_dispatch.domain.models import Location
from fleet_dispatch.domain.services.estimator import (
    SAME_PLACE_DISTANCE_KM,
    OSRMEstimator,
    StraightLineEstimator,
)
from fleet_dispatch.domain.services.geography import haversine_km, locate

from tests.conftest import DESTINATION, PICKUP


def _osrm_response(status_code=200, payload=None):
    response = MagicMock(spec=Response)
    response.status_code = status_code
    response.json.return_value = payload if payload is not None else {}
    return response


@pytest.fixture
def mock_osrm_client():
    """Mock the httpx client the OSRM estimator builds"""
    with patch("httpx.AsyncClient") as mock_client:
        mock_instance = AsyncMock()
        mock_instance.get = AsyncMock(return_value=_osrm_response(payload={
            "code": "Ok",
            "routes": [{"distance": 4250.0, "duration": 612.0}],
        }))
        mock_client.return_value = mock_instance
        yield mock_instance


class TestGeography:
    @pytest.mark.unit
    def test_haversine_zero_for_same_point(self):
        assert haversine_km(PICKUP, PICKUP) == 0

    @pytest.mark.unit
    def test_haversine_known_distance(self):
        # one degree of latitude is ~111 km
        assert haversine_km(Location(22.0, 120.0), Location(23.0, 120.0)) == pytest.approx(111.2, abs=0.1)

    @pytest.mark.unit
    def test_locate_district_keyword(self):
        location = locate("高雄市苓雅區四維三路2號")
        assert (location.lat, location.lng) == (22.622, 120.320)
        assert location.address == "高雄市苓雅區四維三路2號"

    @pytest.mark.unit
    def test_locate_last_named_district_wins(self):
        location = locate("從左營出發到小港機場")
        assert (location.lat, location.lng) == (22.565, 120.355)

    @pytest.mark.unit
    def test_locate_unknown_address(self):
        assert locate("台北車站") is None
        assert locate("") is None


class TestStraightLineEstimator:
    @pytest.mark.unit
    async def test_applies_winding_factor_and_speed(self):
        estimator = StraightLineEstimator(winding_factor=1.5, average_speed_kmh=30)
        origin, destination = Location(22.0, 120.0), Location(22.09, 120.0)

        estimate = await estimator.estimate(origin, destination)

        expected_km = round(haversine_km(origin, destination) * 1.5, 1)
        assert estimate.distance_km == expected_km
        assert estimate.duration_min == round(expected_km / 30 * 60, 1)

    @pytest.mark.unit
    async def test_same_place_uses_fixed_distance(self):
        estimate = await StraightLineEstimator().estimate(PICKUP, PICKUP)
        assert estimate.distance_km == SAME_PLACE_DISTANCE_KM
        assert estimate.duration_min == 5.0

    @pytest.mark.unit
    async def test_resolve_unknown_address_raises(self):
        with pytest.raises(EstimatorUnavailableError):
            await StraightLineEstimator().resolve("somewhere else")

    @pytest.mark.unit
    def test_rejects_non_positive_factors(self):
        with pytest.raises(ValueError):
            StraightLineEstimator(winding_factor=0)


class TestOSRMEstimator:
    @pytest.mark.unit
    async def test_parses_route(self, mock_osrm_client):
        estimator = OSRMEstimator("http://osrm.local")

        estimate = await estimator.estimate(PICKUP, DESTINATION)

        assert estimate.distance_km == 4.2
        assert estimate.duration_min == 10.2
        url = mock_osrm_client.get.call_args.args[0]
        assert url == (
            f"http://osrm.local/route/v1/driving/"
            f"{PICKUP.lng},{PICKUP.lat};{DESTINATION.lng},{DESTINATION.lat}"
        )
        assert mock_osrm_client.get.call_args.kwargs["params"] == {"overview": "false"}

    @pytest.mark.unit
    async def test_timeout(self, mock_osrm_client):
        mock_osrm_client.get = AsyncMock(side_effect=httpx.TimeoutException("slow"))
        with pytest.raises(EstimatorUnavailableError) as exc_info:
            await OSRMEstimator("http://osrm.local").estimate(PICKUP, DESTINATION)
        assert exc_info.value.details["service"] == "estimator"

    @pytest.mark.unit
    async def test_network_error(self, mock_osrm_client):
        mock_osrm_client.get = AsyncMock(side_effect=httpx.ConnectError("refused"))
        with pytest.raises(EstimatorUnavailableError):
            await OSRMEstimator("http://osrm.local").estimate(PICKUP, DESTINATION)

    @pytest.mark.unit
    async def test_http_error_status(self, mock_osrm_client):
        mock_osrm_client.get = AsyncMock(return_value=_osrm_response(status_code=500))
        with pytest.raises(EstimatorUnavailableError) as exc_info:
            await OSRMEstimator("http://osrm.local").estimate(PICKUP, DESTINATION)
        assert exc_info.value.details["status_code"] == 500

    @pytest.mark.unit
    async def test_no_route(self, mock_osrm_client):
        mock_osrm_client.get = AsyncMock(return_value=_osrm_response(payload={"code": "NoRoute", "routes": []}))
        with pytest.raises(EstimatorUnavailableError):
            await OSRMEstimator("http://osrm.local").estimate(PICKUP, DESTINATION)

    @pytest.mark.unit
    async def test_invalid_json(self, mock_osrm_client):
        response = _osrm_response()
        response.json.side_effect = ValueError("not json")
        mock_osrm_client.get = AsyncMock(return_value=response)
        with pytest.raises(EstimatorUnavailableError):
            await OSRMEstimator("http://osrm.local").estimate(PICKUP, DESTINATION)

    @pytest.mark.unit
    async def test_close_releases_own_client(self, mock_osrm_client):
        estimator = OSRMEstimator("http://osrm.local")
        await estimator.estimate(PICKUP, DESTINATION)

        await estimator.close()

        mock_osrm_client.aclose.assert_awaited_once()
