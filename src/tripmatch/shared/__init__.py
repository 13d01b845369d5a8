"""Shared utilities and protocol definitions."""
from tripmatch.shared.protocol import (
    DESTINATION_RESOLUTION,
    MAX_INTERESTS,
    MAX_PROFILE_CIPHERTEXT,
    MAX_WAYPOINTS,
    WAYPOINT_RESOLUTION,
    Candidate,
    CipherEnvelope,
    ComputationEvent,
    ComputationRequest,
    GeoCell,
    Interest,
    MatchRecord,
    MatchScores,
    MatchStatus,
    ProfileInterests,
    SealedPayload,
    TripPayload,
    parse_match_status,
)
from tripmatch.shared.errors import (
    TripMatchError,
    InvalidGeometry,
    ProtocolMismatch,
    PayloadTooLarge,
    KeyAgreementFailed,
    DecryptionFailed,
    PrefilterUnavailable,
    ComputationFailed,
    RecordArchived,
    MatchAttemptFailed,
    Stage,
)
from tripmatch.shared.geo import GeoIndex
from tripmatch.shared.codec import PayloadCodec
from tripmatch.shared.crypto import EncryptionSession, KeyPair, open_sealed, seal_for
from tripmatch.shared.scoring import compute_match
from tripmatch.shared.utils import Timer, haversine_km

__all__ = [
    "DESTINATION_RESOLUTION",
    "MAX_INTERESTS",
    "MAX_PROFILE_CIPHERTEXT",
    "MAX_WAYPOINTS",
    "WAYPOINT_RESOLUTION",
    "Candidate",
    "CipherEnvelope",
    "ComputationEvent",
    "ComputationRequest",
    "GeoCell",
    "Interest",
    "MatchRecord",
    "MatchScores",
    "MatchStatus",
    "ProfileInterests",
    "SealedPayload",
    "TripPayload",
    "parse_match_status",
    "TripMatchError",
    "InvalidGeometry",
    "ProtocolMismatch",
    "PayloadTooLarge",
    "KeyAgreementFailed",
    "DecryptionFailed",
    "PrefilterUnavailable",
    "ComputationFailed",
    "RecordArchived",
    "MatchAttemptFailed",
    "Stage",
    "GeoIndex",
    "PayloadCodec",
    "EncryptionSession",
    "KeyPair",
    "open_sealed",
    "seal_for",
    "compute_match",
    "Timer",
    "haversine_km",
]
