from __future__ import annotations

import math

from dispatch_engine.models import Coordinates, TrafficBand

EARTH_RADIUS_KM = 6371.0

SPEED_BY_BAND_KMH = {
    TrafficBand.RUSH_HOUR: 30,
    TrafficBand.NORMAL: 50,
    TrafficBand.NIGHT: 60,
}


def haversine_km(origin: Coordinates, target: Coordinates) -> float:
    lat1, lon1 = math.radians(origin.latitude), math.radians(origin.longitude)
    lat2, lon2 = math.radians(target.latitude), math.radians(target.longitude)
    dlat = lat2 - lat1
    dlon = lon2 - lon1

    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return round(EARTH_RADIUS_KM * c, 2)


def urban_buffer_minutes(distance_km: float) -> int:
    if distance_km < 5:
        return 5
    if distance_km < 10:
        return 10
    return 15


def estimate_eta(
    responder_location: Coordinates,
    incident_location: Coordinates,
    traffic_band: TrafficBand | str = TrafficBand.NORMAL,
) -> int:
    """Estimated travel time in whole minutes, including a fixed urban buffer.

    Uses static average speeds per traffic band; an unknown band is treated as normal.
    """
    distance = haversine_km(responder_location, incident_location)
    try:
        band = TrafficBand(traffic_band)
    except ValueError:
        band = TrafficBand.NORMAL
    speed = SPEED_BY_BAND_KMH[band]

    travel_minutes = math.ceil(distance / speed * 60)
    return travel_minutes + urban_buffer_minutes(distance)


def traffic_band_for(hour: int) -> TrafficBand:
    if 7 <= hour < 9 or 17 <= hour < 19:
        return TrafficBand.RUSH_HOUR
    if hour >= 22 or hour < 6:
        return TrafficBand.NIGHT
    return TrafficBand.NORMAL


def format_eta(minutes: int) -> str:
    if minutes < 60:
        return f"~{minutes} minutes"
    hours, mins = divmod(minutes, 60)
    return f"~{hours}h {mins}m"
