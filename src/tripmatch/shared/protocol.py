"""
Protocol definitions shared by the client and server halves.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, Optional, Tuple
from enum import Enum, IntEnum

from tripmatch.shared.errors import ProtocolMismatch


# Circuit capacities. Changing any of these is a layout version bump.
MAX_WAYPOINTS = 20
MAX_INTERESTS = 32

# H3 resolutions
WAYPOINT_RESOLUTION = 7      # ~5.16 km² per cell
DESTINATION_RESOLUTION = 6   # ~36.13 km² per cell

# UserProfile.encrypted_data capacity on the ledger
MAX_PROFILE_CIPHERTEXT = 512

DateRange = Tuple[int, int]


class Interest(IntEnum):
    """Interest categories. The value is the bit position in the circuit."""
    HIKING = 0
    PHOTOGRAPHY = 1
    FOOD = 2
    CULTURE = 3
    BEACH = 4
    NIGHTLIFE = 5
    ADVENTURE = 6
    RELAXATION = 7
    SHOPPING = 8
    WILDLIFE = 9
    HISTORY = 10
    ART = 11
    MUSIC = 12
    SPORTS = 13
    SKIING = 14
    DIVING = 15
    SURFING = 16
    CLIMBING = 17
    CYCLING = 18
    RUNNING = 19
    YOGA = 20
    MEDITATION = 21
    COOKING = 22
    WINE = 23
    COFFEE = 24
    LOCAL = 25
    LUXURY = 26
    BUDGET = 27
    ECO = 28
    FAMILY = 29
    SOLO = 30
    COUPLE = 31


def to_interest_set(values: Iterable[int]) -> FrozenSet[Interest]:
    """Normalize ints/Interest members into a frozenset of Interest."""
    try:
        return frozenset(Interest(int(v)) for v in values)
    except ValueError as e:
        raise ValueError(f"Interest out of range 0..{MAX_INTERESTS - 1}: {e}") from None


@dataclass(frozen=True, order=True)
class GeoCell:
    """
    A hierarchical cell identifier.

    `index` is the 64-bit H3 index, which is also the circuit's field value.
    """
    index: int
    resolution: int

    @property
    def hex(self) -> str:
        return format(self.index, "x")

    def __str__(self) -> str:
        return self.hex


@dataclass(frozen=True)
class TripPayload:
    """
    Private trip data fed to the matching circuit.

    The waypoint count is len(waypoints); the codec pads the rest of the
    MAX_WAYPOINTS slots with a sentinel.
    """
    waypoints: Tuple[GeoCell, ...]
    start_date: int  # Unix seconds
    end_date: int    # Unix seconds
    interests: FrozenSet[Interest] = field(default_factory=frozenset)

    def __post_init__(self):
        object.__setattr__(self, "waypoints", tuple(self.waypoints))
        object.__setattr__(self, "interests", to_interest_set(self.interests))
        if len(self.waypoints) > MAX_WAYPOINTS:
            raise ValueError(
                f"Trip has {len(self.waypoints)} waypoints, max {MAX_WAYPOINTS}"
            )
        if self.start_date > self.end_date:
            raise ValueError("Trip start_date is after end_date")

    @property
    def waypoint_count(self) -> int:
        return len(self.waypoints)

    @property
    def date_range(self) -> DateRange:
        return (self.start_date, self.end_date)


@dataclass(frozen=True)
class ProfileInterests:
    """Private profile data: interests plus optional free text."""
    interests: FrozenSet[Interest] = field(default_factory=frozenset)
    display_name: Optional[str] = None
    bio: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "interests", to_interest_set(self.interests))
        # empty text and absent text share one encoding
        if self.display_name == "":
            object.__setattr__(self, "display_name", None)
        if self.bio == "":
            object.__setattr__(self, "bio", None)


@dataclass(frozen=True)
class Candidate:
    """
    Public-only projection of a trip used by the pre-filter.

    Never carries the private TripPayload.
    """
    trip_id: str
    owner: str
    destination_cell: GeoCell
    start_date: int
    end_date: int
    is_active: bool = True
    created_at: int = 0

    @property
    def date_range(self) -> DateRange:
        return (self.start_date, self.end_date)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trip_id": self.trip_id,
            "owner": self.owner,
            "destination_cell": self.destination_cell.hex,
            "start_date": self.start_date,
            "end_date": self.end_date,
            "is_active": self.is_active,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class MatchScores:
    """
    Scores revealed by the circuit. All four are integers in 0..100.

    Interest is canonically 0..100 here; `interest_fraction` is for display.
    """
    route_score: int
    date_score: int
    interest_score: int
    total_score: int

    def __post_init__(self):
        for name in ("route_score", "date_score", "interest_score", "total_score"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 100:
                raise ProtocolMismatch(f"{name} must be an integer in 0..100, got {value!r}")

    @property
    def interest_fraction(self) -> float:
        return self.interest_score / 100.0

    def to_dict(self) -> Dict[str, int]:
        return {
            "route_score": self.route_score,
            "date_score": self.date_score,
            "interest_score": self.interest_score,
            "total_score": self.total_score,
        }


class MatchStatus(str, Enum):
    """Consent state of a match record."""
    PENDING = "pending"
    MUTUAL = "mutual"
    REJECTED = "rejected"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (MatchStatus.REJECTED, MatchStatus.EXPIRED)


def parse_match_status(tag: Any) -> MatchStatus:
    """
    Map a ledger status tag onto MatchStatus.

    The ledger client hands back either a bare string ("Pending", "mutual")
    or a single-key object ({"pending": {}}). Anything else is a protocol
    error; there is no default.
    """
    if isinstance(tag, MatchStatus):
        return tag
    if isinstance(tag, dict):
        if len(tag) != 1:
            raise ProtocolMismatch(f"Ambiguous match status object: {tag!r}")
        (tag,) = tag.keys()
    if not isinstance(tag, str):
        raise ProtocolMismatch(f"Unrecognized match status tag: {tag!r}")

    key = tag.strip().lower()
    if key == "pending":
        return MatchStatus.PENDING
    elif key == "mutual":
        return MatchStatus.MUTUAL
    elif key == "rejected":
        return MatchStatus.REJECTED
    elif key == "expired":
        return MatchStatus.EXPIRED
    raise ProtocolMismatch(f"Unrecognized match status tag: {tag!r}")


@dataclass
class MatchRecord:
    """
    Consent record for one computed match.

    Mutated only by MatchLifecycle under the record's lock.
    """
    match_id: str
    trip_a: str
    trip_b: str
    party_a: str
    party_b: str
    scores: MatchScores
    computation_id: str
    created_at: int
    expires_at: int
    status: MatchStatus = MatchStatus.PENDING
    accepted_a: bool = False
    accepted_b: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "match_id": self.match_id,
            "trip_a": self.trip_a,
            "trip_b": self.trip_b,
            "party_a": self.party_a,
            "party_b": self.party_b,
            "scores": self.scores.to_dict(),
            "computation_id": self.computation_id,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "status": self.status.value,
            "accepted_a": self.accepted_a,
            "accepted_b": self.accepted_b,
        }


@dataclass(frozen=True)
class CipherEnvelope:
    """One party's encrypted payload plus what the cluster needs to open it."""
    ciphertext: bytes
    public_key: bytes
    nonce: bytes


@dataclass(frozen=True)
class ComputationRequest:
    """Request from client to compute service."""
    computation_id: str
    envelope_a: CipherEnvelope
    envelope_b: CipherEnvelope


@dataclass(frozen=True)
class ComputationEvent:
    """Callback emitted by the compute service when a computation settles."""
    computation_id: str
    route_score: int = 0
    date_score: int = 0
    interest_score: int = 0
    total_score: int = 0
    aborted: bool = False
    reason: str = ""

    def to_scores(self) -> MatchScores:
        return MatchScores(
            route_score=self.route_score,
            date_score=self.date_score,
            interest_score=self.interest_score,
            total_score=self.total_score,
        )


@dataclass(frozen=True)
class SealedPayload:
    """Trip detail sealed to one recipient for the post-consent reveal."""
    ephemeral_public_key: bytes
    nonce: bytes
    ciphertext: bytes
