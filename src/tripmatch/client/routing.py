"""
Route calculation for trip waypoints.

Straight-line routing runs locally and is the default: no coordinates
leave the process. An OSRM server is used only when one is configured
(ideally self-hosted), and any failure there falls back to the straight
line rather than failing the trip.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence, Tuple

import httpx
import numpy as np

from tripmatch.shared.geo import GeoIndex
from tripmatch.shared.protocol import MAX_WAYPOINTS, GeoCell
from tripmatch.shared.utils import haversine_km

logger = logging.getLogger(__name__)

STRAIGHT_LINE_SECONDS_PER_KM = 72.0  # 50 km/h

LatLng = Tuple[float, float]


class RoutingProfile(str, Enum):
    STRAIGHT = "straight"
    CAR = "car"
    FOOT = "foot"
    BIKE = "bike"


@dataclass(frozen=True)
class Route:
    """A routed path: (lat, lng) points, meters and seconds."""
    points: Tuple[LatLng, ...]
    distance_m: float
    duration_s: float
    profile: RoutingProfile = RoutingProfile.STRAIGHT


def _check_points(points: Sequence[LatLng]) -> None:
    if len(points) < 2:
        raise ValueError("Need at least 2 waypoints to create a route")


def straight_route(points: Sequence[LatLng]) -> Route:
    """Direct line through the points; duration assumes 50 km/h."""
    _check_points(points)
    km = sum(
        haversine_km(lat1, lng1, lat2, lng2)
        for (lat1, lng1), (lat2, lng2) in zip(points, points[1:])
    )
    return Route(
        points=tuple((float(lat), float(lng)) for lat, lng in points),
        distance_m=km * 1000.0,
        duration_s=km * STRAIGHT_LINE_SECONDS_PER_KM,
    )


class RoutingService(ABC):
    """Abstract road router."""

    @abstractmethod
    def route(self, points: Sequence[LatLng], profile: RoutingProfile) -> Route:
        pass


class OSRMRoutingService(RoutingService):
    """
    Client for an OSRM /route/v1 endpoint.

    Coordinates go out as "lng,lat;lng,lat"; the GeoJSON geometry comes
    back in the same order and is flipped to (lat, lng).
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        self._owns_client = client is None
        self._client = client or httpx.Client(base_url=base_url, timeout=timeout)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def route(self, points: Sequence[LatLng], profile: RoutingProfile) -> Route:
        _check_points(points)
        if profile is RoutingProfile.STRAIGHT:
            raise ValueError("OSRM does not serve the straight profile")

        coordinates = ";".join(f"{lng},{lat}" for lat, lng in points)
        response = self._client.get(
            f"/route/v1/{profile.value}/{coordinates}",
            params={"overview": "full", "geometries": "geojson"},
        )
        response.raise_for_status()

        data = response.json()
        if data.get("code") != "Ok" or not data.get("routes"):
            raise ValueError(f"No route found: {data.get('code')}")

        best = data["routes"][0]
        return Route(
            points=tuple((lat, lng) for lng, lat in best["geometry"]["coordinates"]),
            distance_m=float(best["distance"]),
            duration_s=float(best["duration"]),
            profile=profile,
        )


def get_route(
    points: Sequence[LatLng],
    profile: RoutingProfile = RoutingProfile.STRAIGHT,
    service: Optional[RoutingService] = None,
) -> Route:
    """
    Route through waypoints, falling back to a straight line.

    Args:
        points: (lat, lng) waypoints, at least two
        profile: Travel profile; STRAIGHT never calls out
        service: Router for the other profiles (None: straight line)

    Returns:
        Route
    """
    _check_points(points)
    if profile is RoutingProfile.STRAIGHT or service is None:
        return straight_route(points)

    try:
        return service.route(points, profile)
    except (httpx.HTTPError, ValueError, KeyError) as e:
        logger.warning("[ROUTING] %s routing unavailable, using straight line: %s", profile.value, e)
        return straight_route(points)


def available_profiles(service: Optional[RoutingService]) -> List[RoutingProfile]:
    if service is None:
        return [RoutingProfile.STRAIGHT]
    return list(RoutingProfile)


def route_waypoints(route: Route, geo: GeoIndex, max_waypoints: int = MAX_WAYPOINTS) -> List[GeoCell]:
    """
    Quantize a route into at most `max_waypoints` distinct cells.

    Dense geometries are thinned evenly so the cells span the whole route,
    always keeping the first and last cell.
    """
    cells: List[GeoCell] = []
    seen = set()
    for lat, lng in route.points:
        cell = geo.waypoint_cell(lat, lng)
        if cell.index not in seen:
            seen.add(cell.index)
            cells.append(cell)

    if len(cells) <= max_waypoints:
        return cells
    keep = np.unique(np.linspace(0, len(cells) - 1, max_waypoints).round().astype(int))
    return [cells[i] for i in keep]


def routing_service_from_settings(settings) -> Optional[RoutingService]:
    """OSRM router when routing is enabled and OSRM_URL is set, else None."""
    if settings.ROUTING_ENABLED and settings.OSRM_URL:
        return OSRMRoutingService(settings.OSRM_URL, timeout=settings.ROUTING_TIMEOUT)
    return None
