"""
Compute service boundary and an in-process reference cluster.

The real MPC cluster is opaque: it accepts a computation request and, some
time later, emits a callback event with the revealed scores. The
LocalComputeService here runs the same circuit arithmetic in process so the
whole pipeline can be exercised without a cluster.

The cluster never sees plaintext outside the circuit:
- Each party's trip arrives encrypted under a session with the cluster key
- Only the four scores leave the computation
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Set

from tripmatch.shared.crypto import EncryptionSession, KeyPair
from tripmatch.shared.codec import PayloadCodec
from tripmatch.shared.errors import CryptoError, DuplicateSubmission, ProtocolMismatch
from tripmatch.shared.protocol import (
    CipherEnvelope,
    ComputationEvent,
    ComputationRequest,
    TripPayload,
)
from tripmatch.shared.scoring import compute_match
from tripmatch.shared.utils import Timer

logger = logging.getLogger(__name__)


class EventSubscription:
    """
    Receiving end of the compute service's callback channel.

    Registered synchronously so no event published after subscribe()
    returns can be missed.
    """

    def __init__(self, on_close: Callable[["EventSubscription"], None]):
        self._queue: "asyncio.Queue[ComputationEvent]" = asyncio.Queue()
        self._on_close = on_close
        self.closed = False

    def put(self, event: ComputationEvent) -> None:
        if not self.closed:
            self._queue.put_nowait(event)

    async def get(self) -> ComputationEvent:
        return await self._queue.get()

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._on_close(self)


class ComputeService(ABC):
    """Abstract MPC compute service."""

    @property
    @abstractmethod
    def public_key(self) -> bytes:
        """The network's published X25519 key."""
        pass

    @abstractmethod
    async def submit(self, request: ComputationRequest) -> str:
        """
        Queue a computation.

        Returns:
            Submission signature
        """
        pass

    @abstractmethod
    def subscribe(self) -> EventSubscription:
        """Open a channel of ComputationEvents."""
        pass

    async def aclose(self) -> None:
        """Release service resources."""
        pass


class LocalComputeService(ComputeService):
    """
    In-process stand-in for the MPC cluster.

    Decrypts both envelopes with the cluster key, runs the scoring circuit,
    and publishes the result to every subscriber. Malformed or tampered
    inputs abort the computation instead of scoring zero.
    """

    def __init__(
        self,
        cluster_key: Optional[KeyPair] = None,
        codec: Optional[PayloadCodec] = None,
        delay: float = 0.0,
    ):
        """
        Initialize the local cluster.

        Args:
            cluster_key: Cluster key pair (generated when omitted)
            codec: Payload codec matching the circuit layout
            delay: Seconds to wait before publishing each result
        """
        self._key = cluster_key or KeyPair.generate()
        self.codec = codec or PayloadCodec()
        self.delay = delay

        self.requests: Dict[str, ComputationRequest] = {}
        self._subscribers: List[EventSubscription] = []
        self._tasks: Set[asyncio.Task] = set()
        self._abort_reason: Optional[str] = None
        self._gate: Optional[asyncio.Event] = None

    @property
    def public_key(self) -> bytes:
        return self._key.public_key

    def subscribe(self) -> EventSubscription:
        subscription = EventSubscription(self._subscribers.remove)
        self._subscribers.append(subscription)
        return subscription

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def abort_all(self, reason: Optional[str] = "cluster aborted") -> None:
        """Make every following computation abort (None to stop aborting)."""
        self._abort_reason = reason

    def hold(self) -> None:
        """Hold results back until release()."""
        self._gate = asyncio.Event()

    def release(self) -> None:
        if self._gate is not None:
            self._gate.set()
            self._gate = None

    async def submit(self, request: ComputationRequest) -> str:
        if request.computation_id in self.requests:
            raise DuplicateSubmission(f"Computation {request.computation_id} already submitted")
        self.requests[request.computation_id] = request

        task = asyncio.create_task(self._run(request, self._gate))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        logger.info("[MPC] Computation %s queued", request.computation_id)
        return f"sig_{request.computation_id}"

    async def aclose(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def _open(self, envelope: CipherEnvelope) -> TripPayload:
        session = EncryptionSession.open(self._key, envelope.public_key)
        fields = session.decrypt(envelope.ciphertext, envelope.nonce)
        return self.codec.decode_trip(fields)

    def evaluate(self, request: ComputationRequest) -> ComputationEvent:
        """Run the circuit on one request and build its callback event."""
        if self._abort_reason is not None:
            return ComputationEvent(request.computation_id, aborted=True, reason=self._abort_reason)

        try:
            with Timer() as t:
                trip_a = self._open(request.envelope_a)
                trip_b = self._open(request.envelope_b)
                scores = compute_match(trip_a, trip_b)
        except (CryptoError, ProtocolMismatch) as e:
            logger.warning("[MPC] Computation %s aborted: %s", request.computation_id, e)
            return ComputationEvent(request.computation_id, aborted=True, reason=str(e))

        logger.info(
            "[MPC] Computation %s finalized in %.2fms (total=%d)",
            request.computation_id, t.elapsed_ms, scores.total_score,
        )
        return ComputationEvent(
            computation_id=request.computation_id,
            route_score=scores.route_score,
            date_score=scores.date_score,
            interest_score=scores.interest_score,
            total_score=scores.total_score,
        )

    async def _run(self, request: ComputationRequest, gate: Optional[asyncio.Event]) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if gate is not None:
            await gate.wait()
        self._publish(self.evaluate(request))

    def _publish(self, event: ComputationEvent) -> None:
        for subscription in list(self._subscribers):
            subscription.put(event)
