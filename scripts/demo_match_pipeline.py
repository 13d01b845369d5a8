#!/usr/bin/env python3
"""
Full match funnel over a synthetic population.

Demonstrates the two-stage funnel:
1. Coarse Stage: pre-filter on public destination cell and dates
2. Fine Stage: confidential scoring of each candidate in the local cluster

Then walks the best match through consent and the sealed reveal.
"""
import sys
import asyncio
import argparse
import logging
from pathlib import Path

import numpy as np

# Add src to path for development
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from tripmatch.client.orchestrator import MatchOrchestrator
from tripmatch.client.routing import (
    RoutingProfile,
    get_route,
    route_waypoints,
    routing_service_from_settings,
)
from tripmatch.client.search import MatchClient
from tripmatch.config import Settings
from tripmatch.server.compute import LocalComputeService
from tripmatch.server.index import InMemoryPrefilterIndex, index_from_settings
from tripmatch.server.ledger import Ledger
from tripmatch.server.lifecycle import MatchLifecycle
from tripmatch.shared.crypto import KeyPair, open_sealed, seal_for
from tripmatch.shared.geo import GeoIndex
from tripmatch.shared.protocol import Interest, TripPayload
from tripmatch.shared.utils import Timer, days, now_ts

# Paris and a few day trips out of it
HOTSPOTS = [
    (48.8566, 2.3522),
    (48.8049, 2.1204),
    (48.4047, 2.7016),
    (49.4432, 1.0999),
    (48.6360, -1.5115),
]


def random_trip(rng: np.random.Generator, geo: GeoIndex, start: int, router=None) -> TripPayload:
    stops = rng.choice(len(HOTSPOTS), size=rng.integers(2, 4), replace=False)
    # jitter each stop by a couple of km so routes differ at waypoint resolution
    points = [
        (HOTSPOTS[i][0] + rng.normal(0, 0.02), HOTSPOTS[i][1] + rng.normal(0, 0.02))
        for i in stops
    ] + [HOTSPOTS[0]]
    profile = RoutingProfile.CAR if router is not None else RoutingProfile.STRAIGHT
    route = get_route(points, profile, router)
    begin = start + days(int(rng.integers(0, 10)))
    interests = rng.choice(len(Interest), size=rng.integers(1, 6), replace=False)
    return TripPayload(
        waypoints=route_waypoints(route, geo),
        start_date=begin,
        end_date=begin + days(int(rng.integers(2, 9))),
        interests={Interest(int(i)) for i in interests},
    )


async def run_match_demo(num_travellers: int = 200, seed: int = 42):
    """
    Run the full funnel pipeline demonstration.
    """
    print("=" * 70)
    print("tripmatch - Full Match Funnel")
    print("=" * 70)
    print(f"\nConfiguration:")
    print(f"  Travellers:        {num_travellers:,}")
    print(f"  Seed:              {seed}")

    # =========================================================================
    # SETUP PHASE
    # =========================================================================
    print("\n" + "=" * 70)
    print("SETUP PHASE")
    print("=" * 70)

    rng = np.random.default_rng(seed)
    geo = GeoIndex()
    start = now_ts() + days(30)

    settings = Settings(PREFILTER_LIMIT=num_travellers)
    index = index_from_settings(settings)
    router = routing_service_from_settings(settings)
    local = index if isinstance(index, InMemoryPrefilterIndex) else None
    lifecycle = MatchLifecycle(Ledger(index=local))
    service = LocalComputeService()

    async with MatchOrchestrator(service) as orchestrator:
        client = MatchClient(index, orchestrator, lifecycle, geo=geo, settings=settings)

        print("\n[1] Publishing trips (listing + payload sealed to the cluster)...")
        with Timer() as t:
            for i in range(num_travellers):
                client.publish_trip(f"traveller_{i:04d}", random_trip(rng, geo, start, router))
        print(f"    Published {len(lifecycle.ledger.trips):,} trips in {t.elapsed_ms:.0f}ms")

        print("\n[2] Planning our own trip...")
        ours = random_trip(rng, geo, start, router)
        listing = client.publish_trip("me", ours)
        print(f"    {ours.waypoint_count} waypoints, destination {listing.destination_cell}")

        # =====================================================================
        # SEARCH PHASE
        # =====================================================================
        print("\n" + "=" * 70)
        print("SEARCH PHASE")
        print("=" * 70)

        print("\n[Search] Executing funnel search...")
        report = await client.find_matches(listing, ours)

    await service.aclose()

    # =========================================================================
    # RESULTS
    # =========================================================================
    print("\n" + "=" * 70)
    print("RESULTS")
    print("=" * 70)

    ranked = sorted(report.records, key=lambda r: r.scores.total_score, reverse=True)
    print(f"\n  Candidates: {len(report.candidates)} | Matches: {len(ranked)} | Failures: {len(report.failures)}")
    print("-" * 50)
    for record in ranked[:10]:
        s = record.scores
        print(
            f"  {record.party_b}: total {s.total_score:3d} "
            f"(route {s.route_score:3d}, dates {s.date_score:3d}, interests {s.interest_score:3d})"
        )

    # =========================================================================
    # CONSENT + REVEAL
    # =========================================================================
    if ranked:
        print("\n" + "=" * 70)
        print("CONSENT + REVEAL")
        print("=" * 70)

        best = ranked[0]
        my_key = KeyPair.generate()
        their_key = KeyPair.generate()
        their_trip = lifecycle.ledger.trips[best.trip_b]

        lifecycle.deposit_reveal(best.match_id, best.party_b, seal_for(my_key.public_key, [their_trip.start_date]))
        lifecycle.deposit_reveal(best.match_id, "me", seal_for(their_key.public_key, [ours.start_date]))
        lifecycle.accept(best.match_id, "me")
        record = lifecycle.accept(best.match_id, best.party_b)
        print(f"\n  Match {best.match_id}: {record.status.value}")

        revealed = open_sealed(my_key, lifecycle.reveal(best.match_id, "me"))
        print(f"  Revealed counterparty start date: {revealed[0]}")

    # =========================================================================
    # TIMING
    # =========================================================================
    print("\n" + "=" * 70)
    print("TIMING BREAKDOWN")
    print("=" * 70)
    print(f"\n  Stage 1 - Pre-filter:      {report.timing['prefilter_ms']:8.2f}ms")
    print(f"  Stage 2 - Submit:          {report.timing['submit_ms']:8.2f}ms")
    print(f"  Stage 2 - Compute:         {report.timing['compute_ms']:8.2f}ms")
    print(f"  Stage 3 - Record:          {report.timing['record_ms']:8.2f}ms")
    print(f"  {'='*40}")
    print(f"  TOTAL:                     {report.timing['total_ms']:8.2f}ms")

    # =========================================================================
    # PRIVACY GUARANTEES
    # =========================================================================
    print("\n" + "=" * 70)
    print("PRIVACY GUARANTEES")
    print("=" * 70)
    print("  [x] Pre-filter saw only destination cells and dates")
    print("  [x] Routes and interests left clients encrypted to the cluster")
    print("  [x] Only the four scores left the computation")
    print("  [x] Trip detail was released only after mutual consent")

    return report


def main():
    parser = argparse.ArgumentParser(
        description="Demo the full tripmatch funnel"
    )
    parser.add_argument(
        "--travellers", "-n",
        type=int,
        default=200,
        help="Number of published trips",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=42,
        help="Random seed for the synthetic population",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show funnel log output",
    )

    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)

    asyncio.run(run_match_demo(num_travellers=args.travellers, seed=args.seed))


if __name__ == "__main__":
    main()
