"""Shared fixtures."""
import pytest

from tripmatch.shared.geo import GeoIndex
from tripmatch.shared.protocol import Interest, TripPayload
from tripmatch.shared.utils import days

PARIS = (48.8566, 2.3522)
LISBON = (38.7223, -9.1393)

# 2026-01-01T00:00:00Z
T0 = 1_767_225_600


@pytest.fixture
def geo():
    return GeoIndex()


@pytest.fixture
def paris_cells(geo):
    """Seven distinct waypoint cells: a Paris cell and its first ring."""
    center = geo.waypoint_cell(*PARIS)
    return geo.neighbors(center, 1)


@pytest.fixture
def trip_pair(paris_cells):
    """
    Two trips that overlap on one of three cells, three of five days
    and two of five interests.
    """
    c0, c1, c2 = paris_cells[:3]
    trip_a = TripPayload(
        waypoints=(c0, c1),
        start_date=T0,
        end_date=T0 + days(5),
        interests={Interest.HIKING, Interest.FOOD, Interest.CULTURE},
    )
    trip_b = TripPayload(
        waypoints=(c2, c1),
        start_date=T0 + days(2),
        end_date=T0 + days(7),
        interests={Interest.FOOD, Interest.CULTURE, Interest.BEACH, Interest.ART},
    )
    return trip_a, trip_b
