"""
Consent state machine for computed matches.

    Pending --accept(a)+accept(b)--> Mutual
    Pending --reject(either)-------> Rejected
    Pending --expire(now)----------> Expired

Rejected and Expired are final. Every transition on a record runs under
that record's lock, so two parties accepting at the same moment always end
in Mutual exactly once.

After Mutual, each party may release a sealed copy of their trip detail to
the other; nothing is released before both have consented.
"""
import logging
import threading
from typing import Dict, FrozenSet, List, Optional, Set, Tuple

from tripmatch.server.ledger import Ledger
from tripmatch.shared.errors import (
    InvalidTransition,
    NotMutual,
    RecordArchived,
    RevealNotReady,
    TripNotActive,
    Unauthorized,
)
from tripmatch.shared.protocol import Candidate, MatchRecord, MatchScores, MatchStatus, SealedPayload
from tripmatch.shared.utils import new_id, now_ts

logger = logging.getLogger(__name__)


class MatchLifecycle:
    """
    Owns every MatchRecord transition.

    Records are persisted through the ledger after each change; readers get
    copies and never see a half-applied transition.
    """

    def __init__(self, ledger: Optional[Ledger] = None):
        self.ledger = ledger if ledger is not None else Ledger()

        self._registry_lock = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._by_computation: Dict[str, str] = {}
        self._by_pair: Dict[FrozenSet[str], str] = {}
        self._counterparties: Dict[str, Set[str]] = {}
        self._reveals: Dict[Tuple[str, str], SealedPayload] = {}

    def _lock_for(self, match_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(match_id)
            if lock is None:
                lock = self._locks[match_id] = threading.Lock()
            return lock

    @staticmethod
    def _side(record: MatchRecord, party_id: str) -> str:
        if party_id == record.party_a:
            return "a"
        if party_id == record.party_b:
            return "b"
        raise Unauthorized(f"{party_id} is not a party to match {record.match_id}")

    def _check_writable(self, match_id: str) -> None:
        if self.ledger.is_archived(match_id):
            raise RecordArchived(match_id)

    def record(
        self,
        computation_id: str,
        trip_a: Candidate,
        trip_b: Candidate,
        scores: MatchScores,
        now: Optional[int] = None,
    ) -> MatchRecord:
        """
        Create the Pending record for a finished computation.

        A trip pair is matched at most once: recording the same computation,
        or the same two trips in either order, returns the existing record.

        Args:
            computation_id: Id of the computation that produced `scores`
            trip_a: Public listing of party A's trip
            trip_b: Public listing of party B's trip
            scores: Scores from the computation callback
            now: Creation time (defaults to the current time)

        Returns:
            The MatchRecord, expiring when the earlier trip ends

        Raises:
            TripNotActive: if either trip was deactivated
        """
        if trip_a.owner == trip_b.owner:
            raise ValueError(f"Both trips belong to {trip_a.owner}")
        for trip in (trip_a, trip_b):
            # the ledger listing is authoritative when the trip is published
            if not self.ledger.trips.get(trip.trip_id, trip).is_active:
                raise TripNotActive(f"Trip {trip.trip_id} is not active for matching")

        pair = frozenset((trip_a.trip_id, trip_b.trip_id))
        with self._registry_lock:
            existing = self._by_computation.get(computation_id) or self._by_pair.get(pair)
            if existing is not None:
                return self.ledger.get_match(existing)

            record = MatchRecord(
                match_id=new_id("match"),
                trip_a=trip_a.trip_id,
                trip_b=trip_b.trip_id,
                party_a=trip_a.owner,
                party_b=trip_b.owner,
                scores=scores,
                computation_id=computation_id,
                created_at=now_ts() if now is None else now,
                expires_at=min(trip_a.end_date, trip_b.end_date),
            )
            self.ledger.put_match(record, tx_id=f"record:{computation_id}")
            self._by_computation[computation_id] = record.match_id
            self._by_pair[pair] = record.match_id
            self._counterparties.setdefault(trip_a.trip_id, set()).add(trip_b.owner)
            self._counterparties.setdefault(trip_b.trip_id, set()).add(trip_a.owner)

        match_id = record.match_id
        logger.info(
            "[LIFECYCLE] Recorded match %s (%s x %s, total=%d)",
            match_id, record.trip_a, record.trip_b, scores.total_score,
        )
        return self.ledger.get_match(match_id)

    def get(self, match_id: str) -> MatchRecord:
        return self.ledger.get_match(match_id)

    def matched_parties(self, trip_id: str) -> List[str]:
        """Owners already matched with `trip_id`, in any status."""
        with self._registry_lock:
            return sorted(self._counterparties.get(trip_id, ()))

    def accept(self, match_id: str, party_id: str) -> MatchRecord:
        """
        Record one party's consent.

        Becomes Mutual in the same critical section that sets the second
        flag. A no-op on records that are already Mutual, Rejected or Expired.

        Raises:
            MatchNotFound, Unauthorized, RecordArchived
        """
        with self._lock_for(match_id):
            self._check_writable(match_id)
            record = self.ledger.get_match(match_id)
            side = self._side(record, party_id)

            if record.status is not MatchStatus.PENDING:
                logger.debug("[LIFECYCLE] Accept on %s match %s ignored", record.status.value, match_id)
                return record

            if side == "a":
                record.accepted_a = True
            else:
                record.accepted_b = True
            if record.accepted_a and record.accepted_b:
                record.status = MatchStatus.MUTUAL

            self.ledger.put_match(record)

        if record.status is MatchStatus.MUTUAL:
            logger.info("[LIFECYCLE] Match %s is mutual", match_id)
        return record

    def reject(self, match_id: str, party_id: str) -> MatchRecord:
        """
        Decline a pending match. Unilateral and final.

        Raises:
            InvalidTransition: if the match is already Mutual
            MatchNotFound, Unauthorized, RecordArchived
        """
        with self._lock_for(match_id):
            self._check_writable(match_id)
            record = self.ledger.get_match(match_id)
            self._side(record, party_id)

            if record.status is MatchStatus.MUTUAL:
                raise InvalidTransition(f"Match {match_id} is already mutual")
            if record.status.is_terminal:
                return record

            record.status = MatchStatus.REJECTED
            self.ledger.put_match(record)

        logger.info("[LIFECYCLE] Match %s rejected", match_id)
        return record

    def expire(self, now: Optional[int] = None) -> List[str]:
        """
        Expire pending records whose trips have ended.

        Returns:
            Ids of the records that changed
        """
        now = now_ts() if now is None else now
        expired = []
        for match_id in list(self.ledger.matches):
            with self._lock_for(match_id):
                if self.ledger.is_archived(match_id):
                    continue
                record = self.ledger.get_match(match_id)
                if record.status is MatchStatus.PENDING and now > record.expires_at:
                    record.status = MatchStatus.EXPIRED
                    self.ledger.put_match(record)
                    expired.append(match_id)

        if expired:
            logger.info("[LIFECYCLE] Expired %d matches", len(expired))
        return expired

    def archive(self, match_id: str) -> None:
        """Move a record to cold storage; it becomes read-only."""
        with self._lock_for(match_id):
            self.ledger.archive(match_id)

    def deposit_reveal(self, match_id: str, party_id: str, sealed: SealedPayload) -> None:
        """
        Leave trip detail sealed to the counterparty.

        Allowed while the match is Pending or Mutual; it is only released
        by reveal() once the match is Mutual.

        Raises:
            InvalidTransition: if the match was rejected or expired
            MatchNotFound, Unauthorized, RecordArchived
        """
        with self._lock_for(match_id):
            self._check_writable(match_id)
            record = self.ledger.get_match(match_id)
            side = self._side(record, party_id)
            if record.status.is_terminal:
                raise InvalidTransition(f"Match {match_id} is {record.status.value}")
            self._reveals[(match_id, side)] = sealed

        logger.debug("[LIFECYCLE] Reveal deposited for match %s", match_id)

    def reveal(self, match_id: str, party_id: str) -> SealedPayload:
        """
        Release the counterparty's sealed trip detail to `party_id`.

        Raises:
            NotMutual: before both parties have accepted
            RevealNotReady: if the counterparty has not deposited yet
            MatchNotFound, Unauthorized
        """
        with self._lock_for(match_id):
            record = self.ledger.get_match(match_id)
            side = self._side(record, party_id)
            if record.status is not MatchStatus.MUTUAL:
                raise NotMutual(f"Match {match_id} is {record.status.value}")

            other = "b" if side == "a" else "a"
            sealed = self._reveals.get((match_id, other))
            if sealed is None:
                raise RevealNotReady(f"Counterparty has not shared details for match {match_id}")
            return sealed
