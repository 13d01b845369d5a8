"""
Account store for trips, profiles and match records.

Every write is a Transaction. A transaction id is applied at most once:
resubmitting it returns the original receipt without touching state, so a
client that retries after a lost acknowledgement cannot double-apply.

Each committed transaction is signed with
    sha256(previous_signature || transaction_digest)
which chains the log; verify_chain() recomputes it end to end.

Cold storage takes records out of the writable set. Reads still succeed;
any mutation of an archived record raises RecordArchived.
"""
import copy
import dataclasses
import hashlib
import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from tripmatch.shared.errors import MatchNotFound, RecordArchived
from tripmatch.server.index import InMemoryPrefilterIndex
from tripmatch.shared.protocol import Candidate, CipherEnvelope, MatchRecord, SealedPayload
from tripmatch.shared.utils import new_id, now_ts

logger = logging.getLogger(__name__)

GENESIS_SIGNATURE = "0" * 64


class TxKind(str, Enum):
    LIST_TRIP = "list_trip"
    DEACTIVATE_TRIP = "deactivate_trip"
    PUT_PROFILE = "put_profile"
    PUT_MATCH = "put_match"


def _canonical(value: Any) -> Any:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if dataclasses.is_dataclass(value):
        return _canonical(dataclasses.asdict(value))
    if isinstance(value, dict):
        return {k: _canonical(v) for k, v in value.items()}
    if isinstance(value, bytes):
        return value.hex()
    return value


@dataclass(frozen=True)
class Transaction:
    """A single ledger write."""
    kind: TxKind
    record_id: str
    value: Any = None
    tx_id: str = field(default_factory=lambda: new_id("tx"))

    def digest(self) -> str:
        body = json.dumps(
            {
                "tx_id": self.tx_id,
                "kind": self.kind.value,
                "record_id": self.record_id,
                "value": _canonical(self.value),
            },
            sort_keys=True,
        )
        return hashlib.sha256(body.encode("utf-8")).hexdigest()


def _tx(kind: TxKind, record_id: str, value: Any, tx_id: Optional[str]) -> Transaction:
    if tx_id is None:
        return Transaction(kind, record_id, value)
    return Transaction(kind, record_id, value, tx_id)


@dataclass(frozen=True)
class CommitReceipt:
    tx_id: str
    sequence: int
    signature: str
    committed_at: int


class ColdStorage(ABC):
    """Read-only archive for settled records."""

    @abstractmethod
    def put(self, record_id: str, record: Any) -> None:
        pass

    @abstractmethod
    def get(self, record_id: str) -> Optional[Any]:
        pass

    @abstractmethod
    def __contains__(self, record_id: str) -> bool:
        pass


class InMemoryColdStorage(ColdStorage):
    def __init__(self):
        self._records: Dict[str, Any] = {}

    def put(self, record_id: str, record: Any) -> None:
        self._records[record_id] = copy.deepcopy(record)

    def get(self, record_id: str) -> Optional[Any]:
        record = self._records.get(record_id)
        # Callers get a copy; the archived original never changes
        return copy.deepcopy(record) if record is not None else None

    def __contains__(self, record_id: str) -> bool:
        return record_id in self._records

    def __len__(self) -> int:
        return len(self._records)


class Ledger:
    """
    In-process ledger.

    Thread-safe: commits are serialized by one lock, which also orders the
    signature chain.
    """

    def __init__(
        self,
        cold_storage: Optional[ColdStorage] = None,
        index: Optional[InMemoryPrefilterIndex] = None,
    ):
        """
        Initialize ledger.

        Args:
            cold_storage: Archive for settled records
            index: Pre-filter index kept in sync with trip listings
        """
        self.cold_storage = cold_storage if cold_storage is not None else InMemoryColdStorage()
        self.index = index

        self.trips: Dict[str, Candidate] = {}
        self.envelopes: Dict[str, CipherEnvelope] = {}
        self.profiles: Dict[str, SealedPayload] = {}
        self.matches: Dict[str, MatchRecord] = {}

        self._lock = threading.RLock()
        self._receipts: Dict[str, CommitReceipt] = {}
        self._log: List[Transaction] = []
        self._signatures: List[str] = []

    @property
    def head(self) -> str:
        """Signature of the latest commit."""
        return self._signatures[-1] if self._signatures else GENESIS_SIGNATURE

    def __len__(self) -> int:
        return len(self._log)

    def submit(self, tx: Transaction) -> CommitReceipt:
        """
        Apply a transaction at most once.

        Args:
            tx: Transaction to commit

        Returns:
            CommitReceipt; the original one if tx.tx_id was seen before

        Raises:
            RecordArchived: if the transaction targets an archived record
        """
        with self._lock:
            receipt = self._receipts.get(tx.tx_id)
            if receipt is not None:
                logger.info("[LEDGER] Duplicate transaction %s ignored", tx.tx_id)
                return receipt

            if tx.record_id in self.cold_storage:
                raise RecordArchived(tx.record_id)

            self._apply(tx)

            signature = hashlib.sha256((self.head + tx.digest()).encode("utf-8")).hexdigest()
            receipt = CommitReceipt(
                tx_id=tx.tx_id,
                sequence=len(self._log),
                signature=signature,
                committed_at=now_ts(),
            )
            self._log.append(tx)
            self._signatures.append(signature)
            self._receipts[tx.tx_id] = receipt

        logger.debug("[LEDGER] Committed %s %s as #%d", tx.kind.value, tx.record_id, receipt.sequence)
        return receipt

    def _apply(self, tx: Transaction) -> None:
        if tx.kind is TxKind.LIST_TRIP:
            candidate = tx.value["candidate"]
            if self.index is not None:
                self.index.add([candidate])
            self.trips[tx.record_id] = candidate
            if tx.value["envelope"] is not None:
                self.envelopes[tx.record_id] = tx.value["envelope"]
        elif tx.kind is TxKind.DEACTIVATE_TRIP:
            trip = self.trips.get(tx.record_id)
            if trip is None:
                raise KeyError(f"Unknown trip: {tx.record_id}")
            self.trips[tx.record_id] = dataclasses.replace(trip, is_active=False)
            if self.index is not None:
                self.index.deactivate(tx.record_id)
        elif tx.kind is TxKind.PUT_PROFILE:
            self.profiles[tx.record_id] = tx.value
        elif tx.kind is TxKind.PUT_MATCH:
            self.matches[tx.record_id] = copy.deepcopy(tx.value)
        else:
            raise ValueError(f"Unknown transaction kind: {tx.kind}")

    def verify_chain(self) -> bool:
        """Recompute every commit signature from genesis."""
        with self._lock:
            previous = GENESIS_SIGNATURE
            for tx, signature in zip(self._log, self._signatures):
                expected = hashlib.sha256((previous + tx.digest()).encode("utf-8")).hexdigest()
                if expected != signature:
                    logger.error("[LEDGER] Chain broken at transaction %s", tx.tx_id)
                    return False
                previous = signature
        return True

    # Convenience writers

    def list_trip(
        self,
        candidate: Candidate,
        envelope: Optional[CipherEnvelope] = None,
        tx_id: Optional[str] = None,
    ) -> CommitReceipt:
        """
        Publish a trip: its public listing plus the owner's encrypted payload.

        The envelope is sealed to the compute cluster and is reused as that
        trip's side of every computation it takes part in.
        """
        value = {"candidate": candidate, "envelope": envelope}
        return self.submit(_tx(TxKind.LIST_TRIP, candidate.trip_id, value, tx_id))

    def deactivate_trip(self, trip_id: str) -> CommitReceipt:
        return self.submit(Transaction(TxKind.DEACTIVATE_TRIP, trip_id))

    def put_profile(self, owner: str, sealed: SealedPayload) -> CommitReceipt:
        return self.submit(Transaction(TxKind.PUT_PROFILE, owner, sealed))

    def put_match(self, record: MatchRecord, tx_id: Optional[str] = None) -> CommitReceipt:
        # Snapshot: the logged value must not change after commit
        return self.submit(_tx(TxKind.PUT_MATCH, record.match_id, copy.deepcopy(record), tx_id))

    # Reads

    def get_match(self, match_id: str) -> MatchRecord:
        """
        Current state of a match record (a copy).

        Raises:
            MatchNotFound: if no live or archived record has this id
        """
        with self._lock:
            record = self.matches.get(match_id)
            if record is not None:
                return copy.deepcopy(record)
        archived = self.cold_storage.get(match_id)
        if archived is None:
            raise MatchNotFound(f"No match record {match_id}")
        return archived

    def is_archived(self, record_id: str) -> bool:
        return record_id in self.cold_storage

    def archive(self, record_id: str) -> None:
        """
        Move a match record to cold storage.

        Raises:
            MatchNotFound: if the record is not live
        """
        with self._lock:
            record = self.matches.pop(record_id, None)
            if record is None:
                if record_id in self.cold_storage:
                    return
                raise MatchNotFound(f"No match record {record_id}")
            self.cold_storage.put(record_id, record)
        logger.info("[LEDGER] Archived match %s", record_id)
