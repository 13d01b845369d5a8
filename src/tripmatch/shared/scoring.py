"""
Match-score arithmetic of the trip matching circuit.

Integer-only, so the reference implementation here and the deployed
circuit agree bit for bit.
"""
from typing import AbstractSet

from tripmatch.shared.geo import GeoIndex
from tripmatch.shared.protocol import MatchScores, TripPayload

ROUTE_WEIGHT = 40
DATE_WEIGHT = 35
INTEREST_WEIGHT = 25

_geo = GeoIndex()


def route_score(trip_a: TripPayload, trip_b: TripPayload) -> int:
    """Jaccard similarity of the two waypoint cell sets, 0-100."""
    return _geo.route_similarity(trip_a.waypoints, trip_b.waypoints)


def date_score(start_a: int, end_a: int, start_b: int, end_b: int) -> int:
    """
    Overlap of two date ranges relative to their average duration, 0-100.

    Two trips of equal length that coincide exactly score 100; disjoint
    ranges score 0.
    """
    overlap_start = max(start_a, start_b)
    overlap_end = min(end_a, end_b)
    overlap = overlap_end - overlap_start if overlap_end >= overlap_start else 0

    avg_duration = ((end_a - start_a) + (end_b - start_b)) // 2
    if avg_duration == 0:
        avg_duration = 1

    return min(100, overlap * 100 // avg_duration)


def interest_score(interests_a: AbstractSet[int], interests_b: AbstractSet[int]) -> int:
    """
    Jaccard similarity of two interest sets, 0-100.

    Two travellers who declared no interests at all are fully compatible.
    """
    total = len(interests_a | interests_b)
    if total == 0:
        return 100
    return len(interests_a & interests_b) * 100 // total


def total_score(route: int, date: int, interest: int) -> int:
    """Weighted average: 40% route, 35% dates, 25% interests."""
    return (
        route * ROUTE_WEIGHT
        + date * DATE_WEIGHT
        + interest * INTEREST_WEIGHT
    ) // 100


def compute_match(trip_a: TripPayload, trip_b: TripPayload) -> MatchScores:
    """Score a pair of trips exactly as the circuit does."""
    route = route_score(trip_a, trip_b)
    date = date_score(trip_a.start_date, trip_a.end_date, trip_b.start_date, trip_b.end_date)
    interest = interest_score(trip_a.interests, trip_b.interests)
    return MatchScores(
        route_score=route,
        date_score=date,
        interest_score=interest,
        total_score=total_score(route, date, interest),
    )
