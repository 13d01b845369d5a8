"""Tests for the computation orchestrator against the local cluster."""
import asyncio

import pytest

from tripmatch.client.orchestrator import HandleState, MatchOrchestrator
from tripmatch.server.compute import LocalComputeService
from tripmatch.shared.crypto import EncryptionSession, KeyPair
from tripmatch.shared.errors import ComputationFailed, DuplicateSubmission, SessionConsumed
from tripmatch.shared.protocol import ComputationRequest, MatchScores

EXPECTED = MatchScores(route_score=33, date_score=60, interest_score=40, total_score=44)


def sessions(service):
    return (
        EncryptionSession.open(KeyPair.generate(), service.public_key),
        EncryptionSession.open(KeyPair.generate(), service.public_key),
    )


def run(coro):
    return asyncio.run(coro)


class TestSubmitAndAwait:
    """Test the happy path."""

    def test_scores_arrive(self, trip_pair):
        async def scenario():
            service = LocalComputeService()
            async with MatchOrchestrator(service) as orchestrator:
                handle = await orchestrator.submit(*sessions(service), *trip_pair)
                scores = await orchestrator.await_result(handle, timeout=5)
                return handle, scores, orchestrator.outstanding

        handle, scores, outstanding = run(scenario())
        assert scores == EXPECTED
        assert handle.state is HandleState.FINALIZED
        assert handle.signature == f"sig_{handle.computation_id}"
        assert outstanding == 0

    def test_finalized_handle_returns_cached_scores(self, trip_pair):
        async def scenario():
            service = LocalComputeService()
            async with MatchOrchestrator(service) as orchestrator:
                handle = await orchestrator.submit(*sessions(service), *trip_pair)
                first = await orchestrator.await_result(handle, timeout=5)
                second = await orchestrator.await_result(handle, timeout=0)
                return first, second

        first, second = run(scenario())
        assert first == second == EXPECTED

    def test_concurrent_computations_routed(self, trip_pair):
        async def scenario():
            service = LocalComputeService(delay=0.01)
            async with MatchOrchestrator(service) as orchestrator:
                a, b = trip_pair
                same = await orchestrator.submit(*sessions(service), a, a)
                cross = await orchestrator.submit(*sessions(service), a, b)
                return await asyncio.gather(
                    orchestrator.await_result(cross, timeout=5),
                    orchestrator.await_result(same, timeout=5),
                )

        cross, same = run(scenario())
        assert cross == EXPECTED
        assert same.total_score == 100


class TestTimeouts:
    """A timed-out wait leaves the computation outstanding."""

    def test_timeout_then_await_again(self, trip_pair):
        async def scenario():
            service = LocalComputeService()
            async with MatchOrchestrator(service) as orchestrator:
                service.hold()
                handle = await orchestrator.submit(*sessions(service), *trip_pair)
                early = await orchestrator.await_result(handle, timeout=0.05)
                state = handle.state
                outstanding = orchestrator.outstanding
                service.release()
                late = await orchestrator.await_result(handle, timeout=5)
                return early, state, outstanding, late

        early, state, outstanding, late = run(scenario())
        assert early is None
        assert state is HandleState.SUBMITTED
        assert outstanding == 1
        assert late == EXPECTED

    def test_cancelled_wait_leaves_handle_usable(self, trip_pair):
        async def scenario():
            service = LocalComputeService()
            async with MatchOrchestrator(service) as orchestrator:
                service.hold()
                handle = await orchestrator.submit(*sessions(service), *trip_pair)
                waiter = asyncio.create_task(orchestrator.await_result(handle, timeout=5))
                await asyncio.sleep(0.01)
                waiter.cancel()
                with pytest.raises(asyncio.CancelledError):
                    await waiter
                state = handle.state
                service.release()
                late = await orchestrator.await_result(handle, timeout=5)
                return state, late

        state, late = run(scenario())
        assert state is HandleState.SUBMITTED
        assert late == EXPECTED


class TestFailures:
    """Test aborted computations and misuse."""

    def test_abort_raises(self, trip_pair):
        async def scenario():
            service = LocalComputeService()
            service.abort_all("insufficient nodes")
            async with MatchOrchestrator(service) as orchestrator:
                handle = await orchestrator.submit(*sessions(service), *trip_pair)
                with pytest.raises(ComputationFailed) as exc:
                    await orchestrator.await_result(handle, timeout=5)
                return handle, exc.value

        handle, error = run(scenario())
        assert handle.state is HandleState.FAILED
        assert error.computation_id == handle.computation_id
        assert error.reason == "insufficient nodes"

    def test_wrong_cluster_key_aborts(self, trip_pair):
        """Envelopes sealed to another key fail closed instead of scoring zero."""
        async def scenario():
            service = LocalComputeService()
            stranger = LocalComputeService()
            async with MatchOrchestrator(service) as orchestrator:
                handle = await orchestrator.submit(*sessions(stranger), *trip_pair)
                with pytest.raises(ComputationFailed):
                    await orchestrator.await_result(handle, timeout=5)

        run(scenario())

    def test_consumed_session_refused(self, trip_pair):
        async def scenario():
            service = LocalComputeService()
            async with MatchOrchestrator(service) as orchestrator:
                session_a, session_b = sessions(service)
                await orchestrator.submit(session_a, session_b, *trip_pair)
                with pytest.raises(SessionConsumed):
                    await orchestrator.submit(session_a, session_b, *trip_pair)

        run(scenario())

    def test_duplicate_request_refused(self, trip_pair):
        async def scenario():
            service = LocalComputeService()
            service.hold()
            codec = service.codec
            async with MatchOrchestrator(service) as orchestrator:
                session_a, session_b = sessions(service)
                request = ComputationRequest(
                    computation_id="comp-1",
                    envelope_a=session_a.encrypt(codec.encode_trip(trip_pair[0])),
                    envelope_b=session_b.encrypt(codec.encode_trip(trip_pair[1])),
                )
                await orchestrator.submit_request(request)
                with pytest.raises(DuplicateSubmission):
                    await orchestrator.submit_request(request)

        run(scenario())

    def test_settled_request_not_tracked(self, trip_pair):
        """Only outstanding computations are remembered by the orchestrator."""
        async def scenario():
            service = LocalComputeService()
            codec = service.codec
            async with MatchOrchestrator(service) as orchestrator:
                session_a, session_b = sessions(service)
                request = ComputationRequest(
                    computation_id="comp-1",
                    envelope_a=session_a.encrypt(codec.encode_trip(trip_pair[0])),
                    envelope_b=session_b.encrypt(codec.encode_trip(trip_pair[1])),
                )
                handle = await orchestrator.submit_request(request)
                await orchestrator.await_result(handle, timeout=5)
                tracked = orchestrator.outstanding
                # the cluster still refuses a replayed id
                with pytest.raises(DuplicateSubmission):
                    await orchestrator.submit_request(request)
                return tracked, orchestrator.outstanding

        assert run(scenario()) == (0, 0)

    def test_submit_before_start(self, trip_pair):
        async def scenario():
            service = LocalComputeService()
            orchestrator = MatchOrchestrator(service)
            with pytest.raises(RuntimeError):
                await orchestrator.submit(*sessions(service), *trip_pair)

        run(scenario())


class TestShutdown:
    """Closing releases the listener and the subscription."""

    def test_close_cancels_listener(self):
        async def scenario():
            service = LocalComputeService()
            orchestrator = MatchOrchestrator(service)
            await orchestrator.start()
            subscribed = service.subscriber_count
            running = orchestrator.running
            await orchestrator.close()
            return subscribed, running, orchestrator.running, service.subscriber_count

        subscribed, running, after, remaining = run(scenario())
        assert subscribed == 1 and running
        assert not after
        assert remaining == 0

    def test_closed_orchestrator_cannot_restart(self):
        async def scenario():
            orchestrator = MatchOrchestrator(LocalComputeService())
            await orchestrator.close()
            with pytest.raises(RuntimeError):
                await orchestrator.start()

        run(scenario())
