"""Integration tests for the full match funnel."""
import asyncio

import pytest

from tripmatch.client.orchestrator import MatchOrchestrator
from tripmatch.client.search import MatchClient
from tripmatch.config import Settings
from tripmatch.server.compute import LocalComputeService
from tripmatch.server.index import InMemoryPrefilterIndex
from tripmatch.server.ledger import Ledger
from tripmatch.server.lifecycle import MatchLifecycle
from tripmatch.shared.codec import PayloadCodec
from tripmatch.shared.crypto import KeyPair, open_sealed, seal_for
from tripmatch.shared.errors import MatchAttemptFailed, Stage
from tripmatch.shared.protocol import MatchScores, MatchStatus

from conftest import T0

EXPECTED = MatchScores(route_score=33, date_score=60, interest_score=40, total_score=44)


def settings(**overrides):
    values = {"PREFILTER_RETRIES": 2, "PREFILTER_BACKOFF": 0.0, "AWAIT_TIMEOUT": 5.0}
    values.update(overrides)
    return Settings(**values)


async def run_funnel(trip_pair, service=None, config=None, index_available=True):
    """Alice publishes her trip, then Bob searches with his."""
    service = service or LocalComputeService()
    index = InMemoryPrefilterIndex()
    lifecycle = MatchLifecycle(Ledger(index=index))
    trip_a, trip_b = trip_pair

    async with MatchOrchestrator(service) as orchestrator:
        client = MatchClient(index, orchestrator, lifecycle, settings=config or settings())
        client.publish_trip("alice", trip_a, trip_id="trip-a", created_at=T0)
        listing_b = client.publish_trip("bob", trip_b, trip_id="trip-b", created_at=T0 + 1)

        index.available = index_available
        report = await client.find_matches(listing_b, trip_b)
    await service.aclose()
    return report, lifecycle


class TestFunnel:
    """Test publish, pre-filter, compute and record end to end."""

    def test_pending_match_recorded(self, trip_pair):
        report, lifecycle = asyncio.run(run_funnel(trip_pair))

        assert [c.trip_id for c in report.candidates] == ["trip-a"]
        assert report.failures == []
        assert len(report.records) == 1

        record = report.records[0]
        assert record.scores == EXPECTED
        assert record.status is MatchStatus.PENDING
        assert {record.party_a, record.party_b} == {"alice", "bob"}
        assert lifecycle.get(record.match_id) == record

    def test_timing_reported(self, trip_pair):
        report, _ = asyncio.run(run_funnel(trip_pair))
        assert {"prefilter_ms", "submit_ms", "compute_ms", "record_ms", "total_ms"} <= report.timing.keys()

    def test_own_trips_not_candidates(self, trip_pair):
        """Bob's own listing never comes back from his search."""
        report, _ = asyncio.run(run_funnel(trip_pair))
        assert "trip-b" not in {c.trip_id for c in report.candidates}

    def test_ledger_chain_intact(self, trip_pair):
        _, lifecycle = asyncio.run(run_funnel(trip_pair))
        assert lifecycle.ledger.verify_chain()

    def test_repeat_search_skips_matched_parties(self, trip_pair):
        async def scenario():
            service = LocalComputeService()
            index = InMemoryPrefilterIndex()
            lifecycle = MatchLifecycle(Ledger(index=index))
            trip_a, trip_b = trip_pair
            async with MatchOrchestrator(service) as orchestrator:
                client = MatchClient(index, orchestrator, lifecycle, settings=settings())
                listing_a = client.publish_trip("alice", trip_a, trip_id="trip-a", created_at=T0)
                listing_b = client.publish_trip("bob", trip_b, trip_id="trip-b", created_at=T0 + 1)
                first = await client.find_matches(listing_b, trip_b)
                again = await client.find_matches(listing_b, trip_b)
                reverse = await client.find_matches(listing_a, trip_a)
            await service.aclose()
            return first, again, reverse, lifecycle

        first, again, reverse, lifecycle = asyncio.run(scenario())
        assert len(first.records) == 1
        assert again.candidates == [] and again.records == []
        assert reverse.candidates == [] and reverse.records == []
        assert len(lifecycle.ledger.matches) == 1

    def test_below_threshold_not_recorded(self, trip_pair):
        report, lifecycle = asyncio.run(run_funnel(trip_pair, config=settings(MIN_TOTAL_SCORE=50)))
        assert report.records == []
        assert report.failures == []
        assert lifecycle.ledger.matches == {}

    def test_consent_and_reveal(self, trip_pair):
        report, lifecycle = asyncio.run(run_funnel(trip_pair))
        match_id = report.records[0].match_id
        keys = {"alice": KeyPair.generate(), "bob": KeyPair.generate()}
        codec = PayloadCodec()

        # each side leaves its exact route sealed to the other
        lifecycle.deposit_reveal(match_id, "alice", seal_for(keys["bob"].public_key, codec.encode_trip(trip_pair[0])))
        lifecycle.deposit_reveal(match_id, "bob", seal_for(keys["alice"].public_key, codec.encode_trip(trip_pair[1])))
        lifecycle.accept(match_id, "bob")
        assert lifecycle.accept(match_id, "alice").status is MatchStatus.MUTUAL

        alice_trip = codec.decode_trip(open_sealed(keys["bob"], lifecycle.reveal(match_id, "bob")))
        bob_trip = codec.decode_trip(open_sealed(keys["alice"], lifecycle.reveal(match_id, "alice")))
        assert alice_trip == trip_pair[0]
        assert bob_trip == trip_pair[1]


class TestFunnelFailures:
    """Failures carry the stage they happened in."""

    def test_prefilter_outage(self, trip_pair):
        with pytest.raises(MatchAttemptFailed) as exc:
            asyncio.run(run_funnel(trip_pair, index_available=False))
        assert exc.value.stage is Stage.PREFILTER
        assert exc.value.trip_id == "trip-b"

    def test_aborted_computation(self, trip_pair):
        service = LocalComputeService()
        service.abort_all()
        report, _ = asyncio.run(run_funnel(trip_pair, service=service))
        assert report.records == []
        assert [f.stage for f in report.failures] == [Stage.COMPUTATION]
        assert report.failures[0].trip_id == "trip-a"

    def test_unanswered_computation(self, trip_pair):
        service = LocalComputeService(delay=1.0)
        report, _ = asyncio.run(run_funnel(trip_pair, service=service, config=settings(AWAIT_TIMEOUT=0.05)))
        assert report.records == []
        assert report.failures[0].stage is Stage.COMPUTATION
        assert isinstance(report.failures[0].cause, TimeoutError)
