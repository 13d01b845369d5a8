"""Tests for route calculation."""
import httpx
import pytest

from tripmatch.client.routing import (
    STRAIGHT_LINE_SECONDS_PER_KM,
    OSRMRoutingService,
    RoutingProfile,
    available_profiles,
    get_route,
    route_waypoints,
    routing_service_from_settings,
    straight_route,
)
from tripmatch.config import Settings
from tripmatch.shared.utils import haversine_km

from conftest import LISBON, PARIS

VERSAILLES = (48.8049, 2.1204)


def osrm_client(handler):
    return httpx.Client(base_url="http://osrm", transport=httpx.MockTransport(handler))


def osrm_ok(request):
    return httpx.Response(200, json={
        "code": "Ok",
        "routes": [{
            "distance": 21500.0,
            "duration": 1680.0,
            "geometry": {"coordinates": [[2.3522, 48.8566], [2.25, 48.83], [2.1204, 48.8049]]},
        }],
    })


class TestStraightLine:
    """Test the local fallback router."""

    def test_distance_and_duration(self):
        route = straight_route([PARIS, LISBON])
        km = haversine_km(*PARIS, *LISBON)
        assert route.distance_m == pytest.approx(km * 1000)
        assert route.duration_s == pytest.approx(km * STRAIGHT_LINE_SECONDS_PER_KM)
        assert route.profile is RoutingProfile.STRAIGHT
        assert route.points == (PARIS, LISBON)

    def test_needs_two_points(self):
        with pytest.raises(ValueError):
            straight_route([PARIS])

    def test_default_never_calls_out(self):
        def fail(request):
            raise AssertionError("no request expected")

        service = OSRMRoutingService("http://osrm", client=osrm_client(fail))
        route = get_route([PARIS, VERSAILLES], service=service)
        assert route.profile is RoutingProfile.STRAIGHT


class TestOSRM:
    """Test the OSRM client and its fallback."""

    def test_route_parsed(self):
        seen = []

        def handler(request):
            seen.append(request.url)
            return osrm_ok(request)

        service = OSRMRoutingService("http://osrm", client=osrm_client(handler))
        route = get_route([PARIS, VERSAILLES], RoutingProfile.CAR, service)

        assert seen[0].path == "/route/v1/car/2.3522,48.8566;2.1204,48.8049"
        assert seen[0].params["geometries"] == "geojson"
        assert route.profile is RoutingProfile.CAR
        assert route.distance_m == 21500.0
        assert route.duration_s == 1680.0
        assert route.points[0] == (48.8566, 2.3522)

    def test_server_error_falls_back(self):
        service = OSRMRoutingService(
            "http://osrm", client=osrm_client(lambda request: httpx.Response(502))
        )
        route = get_route([PARIS, VERSAILLES], RoutingProfile.FOOT, service)
        assert route.profile is RoutingProfile.STRAIGHT

    def test_no_route_falls_back(self):
        service = OSRMRoutingService(
            "http://osrm",
            client=osrm_client(lambda request: httpx.Response(200, json={"code": "NoRoute", "routes": []})),
        )
        route = get_route([PARIS, LISBON], RoutingProfile.BIKE, service)
        assert route.profile is RoutingProfile.STRAIGHT

    def test_unreachable_falls_back(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        service = OSRMRoutingService("http://osrm", client=osrm_client(refuse))
        assert get_route([PARIS, VERSAILLES], RoutingProfile.CAR, service).profile is RoutingProfile.STRAIGHT

    def test_profiles(self):
        assert available_profiles(None) == [RoutingProfile.STRAIGHT]
        service = OSRMRoutingService("http://osrm", client=osrm_client(osrm_ok))
        assert set(available_profiles(service)) == set(RoutingProfile)


class TestRouteWaypoints:
    """Test quantizing a route into waypoint cells."""

    def test_distinct_cells_in_order(self, geo):
        route = straight_route([PARIS, PARIS, VERSAILLES])
        cells = route_waypoints(route, geo)
        assert cells == [geo.waypoint_cell(*PARIS), geo.waypoint_cell(*VERSAILLES)]

    def test_thinned_to_limit(self, geo):
        points = [(48.0 + i * 0.1, 2.0) for i in range(40)]
        route = straight_route(points)
        cells = route_waypoints(route, geo, max_waypoints=5)
        assert len(cells) == 5
        assert cells[0] == geo.waypoint_cell(*points[0])
        assert cells[-1] == geo.waypoint_cell(*points[-1])


class TestRoutingFromSettings:

    def test_disabled_by_default(self):
        assert routing_service_from_settings(Settings(ROUTING_ENABLED=False, OSRM_URL="http://osrm")) is None

    def test_enabled_without_url(self):
        assert routing_service_from_settings(Settings(ROUTING_ENABLED=True, OSRM_URL=None)) is None

    def test_enabled_with_url(self):
        service = routing_service_from_settings(
            Settings(ROUTING_ENABLED=True, OSRM_URL="http://osrm:5000", ROUTING_TIMEOUT=2.0)
        )
        assert isinstance(service, OSRMRoutingService)
        assert str(service._client.base_url).rstrip("/") == "http://osrm:5000"
        assert service._client.timeout.read == 2.0
        service.close()
