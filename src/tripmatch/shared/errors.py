"""
Error taxonomy.

Every failure raised by tripmatch derives from TripMatchError. The classes
are grouped by who can act on them:

- InvalidGeometry: caller error, never retried
- ProtocolMismatch: codec/circuit layout drift, fatal
- CryptoError family: fail closed, never partial plaintext
- PrefilterUnavailable: transient, the only class retried automatically
- ComputationFailed: the compute service aborted the computation
- LifecycleError family: consent state machine violations
- RecordArchived: mutation attempted on a read-only record
"""
from enum import Enum
from typing import Optional


class TripMatchError(Exception):
    """Base class for all tripmatch failures."""
    pass


class InvalidGeometry(TripMatchError, ValueError):
    """Raised for out-of-range coordinates, bad cells or unsupported resolutions."""
    pass


class ProtocolMismatch(TripMatchError):
    """Raised when field layout does not match the circuit contract."""
    pass


class PayloadTooLarge(ProtocolMismatch):
    """Raised when an encoded payload would exceed its ciphertext ceiling."""
    pass


class CryptoError(TripMatchError):
    """Base class for cryptographic failures."""
    pass


class KeyAgreementFailed(CryptoError):
    """Raised when a shared secret cannot be derived from the given keys."""
    pass


class DecryptionFailed(CryptoError):
    """Raised when authenticated decryption does not verify."""
    pass


class NonceReuse(CryptoError):
    """Raised when a session is asked to encrypt under a nonce it already used."""
    pass


class SessionConsumed(CryptoError):
    """Raised when a session is used after it was handed to a submission."""
    pass


class PrefilterUnavailable(TripMatchError):
    """Raised when the pre-filter backend cannot be reached. Safe to retry."""
    pass


class ComputationFailed(TripMatchError):
    """Raised when the compute service reports a computation as aborted."""

    def __init__(self, computation_id: str, reason: str = ""):
        self.computation_id = computation_id
        self.reason = reason
        message = f"Computation {computation_id} aborted"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class DuplicateSubmission(TripMatchError):
    """Raised when a computation that is already outstanding is submitted again."""
    pass


class LifecycleError(TripMatchError):
    """Base class for match lifecycle violations."""
    pass


class MatchNotFound(LifecycleError, KeyError):
    pass


class Unauthorized(LifecycleError):
    """Raised when the caller is not a party to the match."""
    pass


class InvalidTransition(LifecycleError):
    pass


class NotMutual(LifecycleError):
    """Raised when reveal is attempted before both parties accepted."""
    pass


class RevealNotReady(LifecycleError):
    """Raised when the counterparty has not deposited its sealed trip yet."""
    pass


class TripNotActive(LifecycleError):
    """Raised when a deactivated trip is offered for matching."""
    pass


class RecordArchived(TripMatchError):
    """Raised when a mutation targets a record moved to cold storage."""

    def __init__(self, record_id: str):
        self.record_id = record_id
        super().__init__(f"Record {record_id} is archived and read-only")


class Stage(str, Enum):
    """Funnel stage at which a match attempt failed."""
    PREFILTER = "prefilter"
    COMPUTATION = "computation"
    CONSENT = "consent"


class MatchAttemptFailed(TripMatchError):
    """
    Wraps a failure with the funnel stage it happened in.

    The remediation differs per stage (retry the pre-filter, re-await or
    re-encrypt the computation, fix the consent call), so callers switch on
    `stage` rather than on the message.
    """

    def __init__(self, stage: Stage, cause: Exception, trip_id: Optional[str] = None):
        self.stage = stage
        self.cause = cause
        self.trip_id = trip_id
        super().__init__(f"Match attempt failed at {stage.value} stage: {cause}")
