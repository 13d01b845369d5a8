"""
Client-side orchestration of confidential match computations.

Coordinates one computation:
1. Encode both trips into circuit field elements
2. Encrypt each under its party's session with the cluster key
3. Submit the two envelopes to the compute service
4. Resolve a future when the service's callback event arrives

Results travel over a channel: the service publishes events into a
subscription and a single listener task routes each one to the handle
waiting for it. Closing the orchestrator cancels the listener and closes
the subscription.
"""
import asyncio
import logging
import time
from enum import Enum
from typing import Dict, Optional

from tripmatch.shared.crypto import EncryptionSession
from tripmatch.server.compute import ComputeService, EventSubscription
from tripmatch.shared.codec import PayloadCodec
from tripmatch.shared.errors import (
    ComputationFailed,
    DuplicateSubmission,
    ProtocolMismatch,
    SessionConsumed,
)
from tripmatch.shared.protocol import (
    ComputationEvent,
    ComputationRequest,
    MatchScores,
    TripPayload,
)
from tripmatch.shared.utils import new_id

logger = logging.getLogger(__name__)


class HandleState(str, Enum):
    SUBMITTED = "submitted"
    FINALIZED = "finalized"
    FAILED = "failed"


class ComputationHandle:
    """
    Future-style handle for one submitted computation.

    A timed-out await leaves the handle SUBMITTED; it can be awaited again.
    """

    def __init__(self, computation_id: str, future: "asyncio.Future[MatchScores]"):
        self.computation_id = computation_id
        self.signature: Optional[str] = None
        self.submitted_at = time.time()
        self.state = HandleState.SUBMITTED
        self.scores: Optional[MatchScores] = None
        self.error: Optional[Exception] = None
        self._future = future

    @property
    def done(self) -> bool:
        return self.state is not HandleState.SUBMITTED

    def __repr__(self) -> str:
        return f"ComputationHandle({self.computation_id!r}, state={self.state.value})"


def _mark_retrieved(future: asyncio.Future) -> None:
    # A failed handle that nobody awaits must not log "exception never retrieved"
    if not future.cancelled():
        future.exception()


class MatchOrchestrator:
    """
    Submits encrypted trip pairs and awaits their scored callbacks.

    Bound to the event loop it is started on. Construct one per service
    connection; there is no shared module-level client.
    """

    def __init__(self, service: ComputeService, codec: Optional[PayloadCodec] = None):
        """
        Initialize orchestrator.

        Args:
            service: Compute service to submit to and listen on
            codec: Payload codec matching the circuit layout
        """
        self.service = service
        self.codec = codec or PayloadCodec()

        self._pending: Dict[str, ComputationHandle] = {}
        self._subscription: Optional[EventSubscription] = None
        self._listener: Optional[asyncio.Task] = None
        self._closed = False

    async def __aenter__(self) -> "MatchOrchestrator":
        await self.start()
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    @property
    def running(self) -> bool:
        return self._listener is not None and not self._listener.done()

    @property
    def outstanding(self) -> int:
        """Number of submitted computations without a callback yet."""
        return len(self._pending)

    async def start(self) -> None:
        """Subscribe to the service's events and start the listener task."""
        if self._closed:
            raise RuntimeError("Orchestrator is closed")
        if self.running:
            return
        self._subscription = self.service.subscribe()
        self._listener = asyncio.create_task(self._listen())
        logger.debug("[MPC] Listener started")

    async def close(self) -> None:
        """Cancel the listener and close the subscription."""
        self._closed = True
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        if self._pending:
            logger.warning("[MPC] Closed with %d outstanding computations", len(self._pending))

    async def submit(
        self,
        session_a: EncryptionSession,
        session_b: EncryptionSession,
        trip_a: TripPayload,
        trip_b: TripPayload,
    ) -> ComputationHandle:
        """
        Encrypt and submit a trip pair.

        Both sessions are consumed, so the same (key, nonce) pair can never
        be used for another payload.

        Args:
            session_a: Party A's session with the cluster key
            session_b: Party B's session with the cluster key
            trip_a: Party A's trip
            trip_b: Party B's trip

        Returns:
            ComputationHandle to await
        """
        for session in (session_a, session_b):
            if session.consumed:
                raise SessionConsumed("Session was already used for a submission")

        envelope_a = session_a.encrypt(self.codec.encode_trip(trip_a))
        envelope_b = session_b.encrypt(self.codec.encode_trip(trip_b))
        session_a.consume()
        session_b.consume()

        request = ComputationRequest(
            computation_id=new_id("comp"),
            envelope_a=envelope_a,
            envelope_b=envelope_b,
        )
        return await self.submit_request(request)

    async def submit_request(self, request: ComputationRequest) -> ComputationHandle:
        """
        Submit an already encrypted request.

        Raises:
            DuplicateSubmission: if this computation id is still outstanding
        """
        if not self.running:
            raise RuntimeError("Orchestrator not started")
        if request.computation_id in self._pending:
            raise DuplicateSubmission(f"Computation {request.computation_id} is already outstanding")

        future = asyncio.get_running_loop().create_future()
        future.add_done_callback(_mark_retrieved)
        handle = ComputationHandle(request.computation_id, future)

        # Register before submitting so an early callback finds its handle
        self._pending[request.computation_id] = handle
        try:
            handle.signature = await self.service.submit(request)
        except BaseException:
            self._pending.pop(request.computation_id, None)
            future.cancel()
            raise

        logger.info("[MPC] Submitted computation %s", request.computation_id)
        return handle

    async def await_result(
        self,
        handle: ComputationHandle,
        timeout: Optional[float] = 60.0,
    ) -> Optional[MatchScores]:
        """
        Wait for a computation's scores.

        Args:
            handle: Handle returned by submit()
            timeout: Seconds to wait, None to wait indefinitely

        Returns:
            MatchScores, or None if the deadline passed first. The handle
            stays outstanding and may be awaited again.

        Raises:
            ComputationFailed: if the service aborted the computation
        """
        if handle.state is HandleState.FINALIZED:
            return handle.scores
        if handle.state is HandleState.FAILED:
            raise handle.error
        if self._closed:
            raise RuntimeError("Orchestrator is closed")

        try:
            # shield: cancelling or timing out this wait must not cancel the handle
            return await asyncio.wait_for(asyncio.shield(handle._future), timeout)
        except asyncio.TimeoutError:
            logger.info(
                "[MPC] No result for %s within %.1fs; still outstanding",
                handle.computation_id, timeout,
            )
            return None

    async def _listen(self) -> None:
        while True:
            event = await self._subscription.get()
            self._dispatch(event)

    def _dispatch(self, event: ComputationEvent) -> None:
        handle = self._pending.pop(event.computation_id, None)
        if handle is None:
            logger.debug("[MPC] Ignoring event for unknown computation %s", event.computation_id)
            return

        if event.aborted:
            handle.error = ComputationFailed(event.computation_id, event.reason)
        else:
            try:
                handle.scores = event.to_scores()
            except ProtocolMismatch as e:
                handle.error = e

        if handle.error is not None:
            handle.state = HandleState.FAILED
            logger.warning("[MPC] Computation %s failed: %s", event.computation_id, handle.error)
            if not handle._future.done():
                handle._future.set_exception(handle.error)
        else:
            handle.state = HandleState.FINALIZED
            logger.info(
                "[MPC] Computation %s finalized: total=%d",
                event.computation_id, handle.scores.total_score,
            )
            if not handle._future.done():
                handle._future.set_result(handle.scores)
