"""
Client-side match funnel.

Coordinates the full flow for one trip:
1. Publish the trip (public listing + payload encrypted to the cluster)
2. Pre-filter candidates on public metadata
3. Submit one confidential computation per candidate
4. Record a Pending match for every scored pair

Each failure is reported with the stage it happened in, since the fix
differs per stage.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from tripmatch.client.orchestrator import ComputationHandle, MatchOrchestrator
from tripmatch.config import Settings
from tripmatch.server.index import PrefilterIndex
from tripmatch.server.ledger import Ledger
from tripmatch.server.lifecycle import MatchLifecycle
from tripmatch.shared.codec import PayloadCodec
from tripmatch.shared.crypto import EncryptionSession, KeyPair
from tripmatch.shared.errors import (
    MatchAttemptFailed,
    PrefilterUnavailable,
    Stage,
    TripMatchError,
)
from tripmatch.shared.geo import GeoIndex
from tripmatch.shared.protocol import (
    Candidate,
    CipherEnvelope,
    ComputationRequest,
    MatchRecord,
    TripPayload,
)
from tripmatch.shared.utils import Timer, new_id, now_ts

logger = logging.getLogger(__name__)


@dataclass
class MatchReport:
    """Outcome of one funnel run."""
    trip_id: str
    candidates: List[Candidate] = field(default_factory=list)
    records: List[MatchRecord] = field(default_factory=list)
    failures: List[MatchAttemptFailed] = field(default_factory=list)
    timing: Dict[str, float] = field(default_factory=dict)


class MatchClient:
    """
    Client-side match coordinator.

    Only public metadata goes to the pre-filter; trip payloads leave the
    client encrypted to the compute cluster.
    """

    def __init__(
        self,
        index: PrefilterIndex,
        orchestrator: MatchOrchestrator,
        lifecycle: MatchLifecycle,
        geo: Optional[GeoIndex] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize match client.

        Args:
            index: Pre-filter to query for candidates
            orchestrator: Started orchestrator bound to the compute service
            lifecycle: Lifecycle that records scored matches
            geo: Geo index (default resolutions when omitted)
            settings: Runtime settings (defaults when omitted)
        """
        self.index = index
        self.orchestrator = orchestrator
        self.lifecycle = lifecycle
        self.geo = geo or GeoIndex()
        self.settings = settings or Settings()

    @property
    def ledger(self) -> Ledger:
        return self.lifecycle.ledger

    @property
    def codec(self) -> PayloadCodec:
        return self.orchestrator.codec

    def make_listing(
        self,
        owner: str,
        trip: TripPayload,
        trip_id: Optional[str] = None,
        created_at: Optional[int] = None,
    ) -> Candidate:
        """Public projection of a trip: its destination is the final waypoint's coarse cell."""
        if not trip.waypoints:
            raise ValueError("A trip needs at least one waypoint to be listed")
        return Candidate(
            trip_id=trip_id or new_id("trip"),
            owner=owner,
            destination_cell=self.geo.parent(trip.waypoints[-1], self.geo.destination_resolution),
            start_date=trip.start_date,
            end_date=trip.end_date,
            is_active=True,
            created_at=now_ts() if created_at is None else created_at,
        )

    def seal_trip(self, trip: TripPayload) -> CipherEnvelope:
        """Encrypt a trip to the cluster under a fresh single-use session."""
        session = EncryptionSession.open(KeyPair.generate(), self.orchestrator.service.public_key)
        envelope = session.encrypt(self.codec.encode_trip(trip))
        session.consume()
        return envelope

    def publish_trip(
        self,
        owner: str,
        trip: TripPayload,
        trip_id: Optional[str] = None,
        created_at: Optional[int] = None,
    ) -> Candidate:
        """
        List a trip so other travellers' funnels can find it.

        Returns:
            The public listing
        """
        listing = self.make_listing(owner, trip, trip_id, created_at)
        self.ledger.list_trip(listing, self.seal_trip(trip))
        logger.info("[FUNNEL] Published trip %s", listing.trip_id)
        return listing

    async def prefilter(self, listing: Candidate, ring_radius: int = 0) -> List[Candidate]:
        """
        Query the pre-filter, retrying while it is unavailable.

        The listing owner and everyone it is already matched with are excluded.

        Raises:
            MatchAttemptFailed: stage PREFILTER, once retries are exhausted
        """
        exclude = [listing.owner, *self.lifecycle.matched_parties(listing.trip_id)]
        attempts = max(1, self.settings.PREFILTER_RETRIES)
        delay = self.settings.PREFILTER_BACKOFF

        for attempt in range(1, attempts + 1):
            try:
                if ring_radius > 0:
                    return await asyncio.to_thread(
                        self.index.query_ring,
                        self.geo,
                        listing.destination_cell,
                        ring_radius,
                        listing.date_range,
                        exclude,
                        self.settings.PREFILTER_LIMIT,
                    )
                return await asyncio.to_thread(
                    self.index.query,
                    listing.destination_cell,
                    listing.date_range,
                    exclude,
                    self.settings.PREFILTER_LIMIT,
                )
            except PrefilterUnavailable as e:
                if attempt == attempts:
                    raise MatchAttemptFailed(Stage.PREFILTER, e, listing.trip_id) from e
                logger.warning(
                    "[FUNNEL] Pre-filter unavailable (attempt %d/%d), retrying in %.2fs",
                    attempt, attempts, delay,
                )
                await asyncio.sleep(delay)
                delay *= 2
        return []

    async def find_matches(
        self,
        listing: Candidate,
        trip: TripPayload,
        ring_radius: int = 0,
    ) -> MatchReport:
        """
        Run the full funnel for one of our trips.

        Stage 1 (Coarse): pre-filter on destination cell and dates
        Stage 2 (Fine): confidential scoring against each candidate

        Args:
            listing: Our trip's public listing
            trip: Our trip's private payload
            ring_radius: Also search destination cells this many rings out

        Returns:
            MatchReport with the new records and per-candidate failures

        Raises:
            MatchAttemptFailed: if the pre-filter stage fails outright
        """
        report = MatchReport(trip_id=listing.trip_id)

        # Stage 1: pre-filter (coarse)
        with Timer() as t:
            report.candidates = await self.prefilter(listing, ring_radius)
        report.timing["prefilter_ms"] = t.elapsed_ms
        logger.info(
            "[FUNNEL] %d candidates for trip %s in %.2fms",
            len(report.candidates), listing.trip_id, t.elapsed_ms,
        )

        # Stage 2: submit every computation, then await them together
        with Timer() as t:
            submitted = await self._submit_all(listing, trip, report)
        report.timing["submit_ms"] = t.elapsed_ms

        with Timer() as t:
            results = await asyncio.gather(
                *(
                    self.orchestrator.await_result(handle, self.settings.AWAIT_TIMEOUT)
                    for _, handle in submitted
                ),
                return_exceptions=True,
            )
        report.timing["compute_ms"] = t.elapsed_ms

        # Stage 3: record scored pairs
        with Timer() as t:
            for (candidate, handle), result in zip(submitted, results):
                self._settle(listing, candidate, handle, result, report)
        report.timing["record_ms"] = t.elapsed_ms

        report.timing["total_ms"] = sum(report.timing.values())
        return report

    async def _submit_all(
        self,
        listing: Candidate,
        trip: TripPayload,
        report: MatchReport,
    ) -> List[Tuple[Candidate, ComputationHandle]]:
        submitted = []
        for candidate in report.candidates:
            theirs = self.ledger.envelopes.get(candidate.trip_id)
            if theirs is None:
                logger.warning("[FUNNEL] No encrypted payload for candidate %s", candidate.trip_id)
                continue
            try:
                request = ComputationRequest(
                    computation_id=new_id("comp"),
                    envelope_a=self.seal_trip(trip),
                    envelope_b=theirs,
                )
                handle = await self.orchestrator.submit_request(request)
            except TripMatchError as e:
                report.failures.append(MatchAttemptFailed(Stage.COMPUTATION, e, candidate.trip_id))
                continue
            submitted.append((candidate, handle))
        return submitted

    def _settle(
        self,
        listing: Candidate,
        candidate: Candidate,
        handle: ComputationHandle,
        result,
        report: MatchReport,
    ) -> None:
        if isinstance(result, BaseException):
            report.failures.append(MatchAttemptFailed(Stage.COMPUTATION, result, candidate.trip_id))
            return
        if result is None:
            cause = TimeoutError(f"No result for {handle.computation_id} yet")
            report.failures.append(MatchAttemptFailed(Stage.COMPUTATION, cause, candidate.trip_id))
            return
        if result.total_score < self.settings.MIN_TOTAL_SCORE:
            logger.debug(
                "[FUNNEL] %s x %s scored %d, below threshold",
                listing.trip_id, candidate.trip_id, result.total_score,
            )
            return

        try:
            record = self.lifecycle.record(handle.computation_id, listing, candidate, result)
        except TripMatchError as e:
            report.failures.append(MatchAttemptFailed(Stage.CONSENT, e, candidate.trip_id))
            return
        report.records.append(record)
