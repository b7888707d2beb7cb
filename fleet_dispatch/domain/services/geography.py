"""
Geography helpers - haversine distance and Kaohsiung district lookup
"""
import math
from typing import Optional

from fleet_dispatch.domain.models import Location

EARTH_RADIUS_KM = 6371.0

# District centre coordinates, matched by keyword against free-text addresses
KAOHSIUNG_DISTRICTS: dict[str, tuple[float, float]] = {
    "鳳山": (22.626, 120.359),
    "苓雅": (22.622, 120.320),
    "左營": (22.678, 120.300),
    "三民": (22.645, 120.312),
    "前鎮": (22.595, 120.320),
    "楠梓": (22.728, 120.312),
    "鼓山": (22.639, 120.276),
    "小港": (22.565, 120.355),
    "新興": (22.631, 120.300),
    "前金": (22.627, 120.295),
    "鹽埕": (22.623, 120.283),
    "鳥松": (22.659, 120.364),
    "大寮": (22.605, 120.395),
    "仁武": (22.699, 120.348),
    "橋頭": (22.757, 120.305),
    "岡山": (22.795, 120.295),
}


def haversine_km(origin: Location, destination: Location) -> float:
    d_lat = math.radians(destination.lat - origin.lat)
    d_lng = math.radians(destination.lng - origin.lng)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(origin.lat))
        * math.cos(math.radians(destination.lat))
        * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def locate(address: Optional[str]) -> Optional[Location]:
    """
    Resolve an address to its district centre.

    When several districts are named, the one mentioned last wins. Returns
    None when no district keyword is present.
    """
    if not address:
        return None
    match = None
    position = -1
    for district, (lat, lng) in KAOHSIUNG_DISTRICTS.items():
        index = address.rfind(district)
        if index > position:
            position = index
            match = Location(lat=lat, lng=lng, address=address)
    return match
