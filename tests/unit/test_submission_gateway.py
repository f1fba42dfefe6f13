"""
Unit tests for the submission gateway.

Tests relay fan-out, alternate-relay retries, circuit breaking, outcome
tracking and block retargeting.
"""
import asyncio
import logging
from unittest.mock import AsyncMock, Mock

import pytest

from sandwich_engine.errors import (
    CircuitOpenError,
    NetworkError,
    NonceConflictError,
    StaleStateError,
    SubmissionRejectedError,
)
from sandwich_engine.mev_detection.opportunity_models import OpportunityStatus
from sandwich_engine.mev_protection.circuit_breaker import CircuitBreaker, CircuitState
from sandwich_engine.mev_protection.submission_gateway import SubmissionGateway
from sandwich_engine.models import SubmissionOutcome, SubmissionResult, SubmissionState

from factories import advance, make_bundle, make_opportunity


def make_relay(url, *responses):
    """Relay mock answering successive sends with ``responses`` (outcome tuples or exceptions)."""
    steps = list(responses)

    async def send_bundle(bundle):
        step = steps.pop(0)
        if isinstance(step, Exception):
            raise step
        kind, *error = step
        return SubmissionResult(
            bundle_hash=bundle.bundle_hash,
            relay=url,
            outcome=kind,
            target_block=bundle.target_block,
            error=error[0] if error else None,
        )

    relay = Mock()
    relay.relay_url = url
    relay.get_stats = Mock(return_value={})
    relay.send_bundle = AsyncMock(side_effect=send_bundle)
    return relay


ACCEPTED = (SubmissionOutcome.ACCEPTED,)
REJECTED = (SubmissionOutcome.REJECTED, "bundle simulation failed")
NONCE = (SubmissionOutcome.REJECTED, "nonce too low")


def make_node(landed_block=None):
    node = Mock()
    node.wait_for_block = AsyncMock(return_value=landed_block or 0)
    receipt = {"blockNumber": landed_block} if landed_block is not None else None
    node.get_transaction_receipt = AsyncMock(return_value=receipt)
    return node


def building_opportunity():
    return advance(make_opportunity(), OpportunityStatus.VETTED, OpportunityStatus.QUEUED,
                   OpportunityStatus.BUILDING)


class TestSubmit:
    """Test relay fan-out."""

    @pytest.mark.asyncio
    async def test_all_relays_accept(self):
        relays = [make_relay("a", ACCEPTED), make_relay("b", ACCEPTED)]
        gateway = SubmissionGateway(relays, make_node())
        bundle = make_bundle()

        results = await gateway.submit(bundle)

        assert len(results) == 2
        assert bundle.state == SubmissionState.SUBMITTED
        assert gateway.stats["bundles_submitted"] == 1
        for relay in relays:
            relay.send_bundle.assert_awaited_once_with(bundle)

    @pytest.mark.asyncio
    async def test_retry_on_alternate_relay(self):
        relay_a = make_relay("a", REJECTED, ACCEPTED)
        relay_b = make_relay("b", REJECTED, REJECTED)
        gateway = SubmissionGateway([relay_a, relay_b], make_node(), max_relay_retries=2)
        bundle = make_bundle()

        await gateway.submit(bundle)

        assert bundle.state == SubmissionState.SUBMITTED
        assert relay_a.send_bundle.await_count == 2
        assert relay_b.send_bundle.await_count == 2

    @pytest.mark.asyncio
    async def test_rejected_everywhere(self):
        relays = [make_relay("a", REJECTED), make_relay("b", REJECTED)]
        gateway = SubmissionGateway(relays, make_node(), max_relay_retries=0)
        bundle = make_bundle()

        with pytest.raises(SubmissionRejectedError):
            await gateway.submit(bundle)

        assert bundle.state == SubmissionState.ABANDONED
        assert gateway.stats["bundles_abandoned"] == 1

    @pytest.mark.asyncio
    async def test_nonce_conflict(self):
        gateway = SubmissionGateway([make_relay("a", NONCE)], make_node(), max_relay_retries=0)

        with pytest.raises(NonceConflictError):
            await gateway.submit(make_bundle())

        assert gateway.stats["nonce_conflicts"] == 1

    @pytest.mark.asyncio
    async def test_partial_network_failure(self):
        relays = [make_relay("a", NetworkError("timeout")), make_relay("b", ACCEPTED)]
        gateway = SubmissionGateway(relays, make_node())

        results = await gateway.submit(make_bundle())

        assert [r.relay for r in results] == ["b"]
        assert gateway.stats["relay_network_errors"] == 1
        assert gateway.circuit_breaker.get_stats()["consecutive_failures"] == 0

    @pytest.mark.asyncio
    async def test_unreachable_relays_trip_breaker(self):
        relays = [make_relay("a", NetworkError("down")), make_relay("b", NetworkError("down"))]
        gateway = SubmissionGateway(relays, make_node(), circuit_breaker=CircuitBreaker(failure_threshold=1))

        with pytest.raises(NetworkError):
            await gateway.submit(make_bundle())
        with pytest.raises(CircuitOpenError):
            await gateway.submit(make_bundle(seed=2))

        assert gateway.circuit_breaker.is_open

    @pytest.mark.asyncio
    async def test_rejection_alert(self, caplog):
        relay = make_relay("a", REJECTED, REJECTED)
        gateway = SubmissionGateway([relay], make_node(), max_relay_retries=0, reject_alert_threshold=2)

        with caplog.at_level(logging.WARNING, logger="sandwich_engine.alerts"):
            for seed in (1, 2):
                with pytest.raises(SubmissionRejectedError):
                    await gateway.submit(make_bundle(seed=seed))

        assert any("2 consecutive" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_unexpected_relay_error_keeps_other_results(self):
        relays = [make_relay("a", ACCEPTED), make_relay("b", ValueError("Expecting value"))]
        gateway = SubmissionGateway(relays, make_node())
        bundle = make_bundle()

        results = await gateway.submit(bundle)

        assert [r.relay for r in results] == ["a"]
        assert bundle.state == SubmissionState.SUBMITTED
        assert gateway.stats["relay_errors"] == 1
        assert gateway.circuit_breaker.get_stats()["consecutive_failures"] == 0

    @pytest.mark.asyncio
    async def test_unexpected_errors_everywhere_count_as_failure(self):
        relays = [make_relay("a", ValueError("bad")), make_relay("b", KeyError("result"))]
        gateway = SubmissionGateway(relays, make_node())

        with pytest.raises(NetworkError):
            await gateway.submit(make_bundle())

        assert gateway.stats["relay_errors"] == 2
        assert gateway.circuit_breaker.get_stats()["consecutive_failures"] == 1

    @pytest.mark.asyncio
    async def test_failed_half_open_attempt_allows_next_attempt(self):
        clock = Mock(return_value=1_000.0)
        breaker = CircuitBreaker(failure_threshold=1, cooldown_seconds=10.0, clock=clock)
        relay = make_relay("a", NetworkError("down"), ValueError("Expecting value"), ACCEPTED)
        gateway = SubmissionGateway([relay], make_node(), circuit_breaker=breaker)

        with pytest.raises(NetworkError):
            await gateway.submit(make_bundle(seed=1))
        clock.return_value = 1_010.0
        with pytest.raises(NetworkError):
            await gateway.submit(make_bundle(seed=2))
        assert breaker.state == CircuitState.OPEN

        clock.return_value = 1_020.0
        await gateway.submit(make_bundle(seed=3))

        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_cancelled_half_open_attempt_releases_breaker(self):
        clock = Mock(return_value=1_000.0)
        breaker = CircuitBreaker(failure_threshold=1, cooldown_seconds=10.0, clock=clock)
        breaker.record_failure()
        clock.return_value = 1_010.0
        sent = []

        async def send_bundle(bundle):
            sent.append(bundle)
            if len(sent) == 1:
                await asyncio.Event().wait()
            return SubmissionResult(bundle_hash=bundle.bundle_hash, relay="a",
                                    outcome=SubmissionOutcome.ACCEPTED, target_block=bundle.target_block)

        relay = make_relay("a")
        relay.send_bundle = AsyncMock(side_effect=send_bundle)
        gateway = SubmissionGateway([relay], make_node(), circuit_breaker=breaker)

        task = asyncio.create_task(gateway.submit(make_bundle(seed=1)))
        while not sent:
            await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert breaker.state == CircuitState.HALF_OPEN
        await gateway.submit(make_bundle(seed=2))
        assert breaker.state == CircuitState.CLOSED

    def test_requires_relays(self):
        with pytest.raises(ValueError):
            SubmissionGateway([], make_node())


class TestOutcome:
    """Test inclusion tracking."""

    @pytest.mark.asyncio
    async def test_included_and_never_resubmitted(self):
        relay = make_relay("a", ACCEPTED)
        gateway = SubmissionGateway([relay], make_node(landed_block=101))
        bundle = make_bundle(target_block=101)

        await gateway.submit(bundle)
        assert await gateway.await_outcome(bundle) == SubmissionOutcome.INCLUDED

        assert gateway.is_included(bundle.bundle_hash)
        assert gateway.results_for(bundle.bundle_hash)[0].outcome == SubmissionOutcome.INCLUDED
        assert await gateway.submit(bundle) == []
        assert gateway.stats["duplicate_submissions_skipped"] == 1
        relay.send_bundle.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_not_included(self):
        gateway = SubmissionGateway([make_relay("a", ACCEPTED)], make_node())
        bundle = make_bundle(target_block=101)

        await gateway.submit(bundle)

        assert await gateway.await_outcome(bundle) == SubmissionOutcome.NOT_INCLUDED
        assert bundle.state == SubmissionState.NOT_INCLUDED
        assert not gateway.is_included(bundle.bundle_hash)

    @pytest.mark.asyncio
    async def test_landed_in_other_block_is_not_inclusion(self):
        gateway = SubmissionGateway([make_relay("a", ACCEPTED)], make_node(landed_block=103))
        bundle = make_bundle(target_block=101)

        await gateway.submit(bundle)

        assert await gateway.await_outcome(bundle) == SubmissionOutcome.NOT_INCLUDED


class TestRun:
    """Test driving an opportunity to a terminal status."""

    @pytest.mark.asyncio
    async def test_included(self):
        gateway = SubmissionGateway([make_relay("a", ACCEPTED)], make_node(landed_block=101))
        opportunity = building_opportunity()
        bundle = make_bundle(target_block=101)
        rebuild = AsyncMock()

        status = await gateway.run(opportunity, bundle, rebuild)

        assert status == OpportunityStatus.INCLUDED
        assert opportunity.metadata["bundle_hash"] == bundle.bundle_hash
        rebuild.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_retargeted_once_then_expired(self):
        gateway = SubmissionGateway([make_relay("a", ACCEPTED, ACCEPTED)], make_node(), max_block_retries=1)
        opportunity = building_opportunity()
        retarget = make_bundle(target_block=102, seed=2)
        rebuild = AsyncMock(return_value=retarget)

        status = await gateway.run(opportunity, make_bundle(target_block=101), rebuild)

        assert status == OpportunityStatus.EXPIRED
        assert opportunity.retries == 1
        rebuild.assert_awaited_once_with(opportunity, 102)
        assert gateway.stats["bundles_retargeted"] == 1
        assert gateway.stats["bundles_not_included"] == 2

    @pytest.mark.asyncio
    async def test_rebuild_declines(self):
        gateway = SubmissionGateway([make_relay("a", ACCEPTED)], make_node())
        opportunity = building_opportunity()

        status = await gateway.run(opportunity, make_bundle(), AsyncMock(return_value=None))

        assert status == OpportunityStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_rebuild_failure_expires(self):
        gateway = SubmissionGateway([make_relay("a", ACCEPTED)], make_node())
        opportunity = building_opportunity()

        status = await gateway.run(opportunity, make_bundle(),
                                   AsyncMock(side_effect=StaleStateError("victim mined")))

        assert status == OpportunityStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_rejected(self):
        gateway = SubmissionGateway([make_relay("a", REJECTED)], make_node(), max_relay_retries=0)
        opportunity = building_opportunity()

        status = await gateway.run(opportunity, make_bundle(), AsyncMock())

        assert status == OpportunityStatus.REJECTED
        assert "simulation failed" in opportunity.metadata["submission_error"]

    @pytest.mark.asyncio
    async def test_network_failure_retried_with_backoff(self, monkeypatch):
        sleeps = []

        async def fake_sleep(delay):
            sleeps.append(delay)

        monkeypatch.setattr("sandwich_engine.mev_protection.submission_gateway.asyncio.sleep", fake_sleep)
        relay = make_relay("a", NetworkError("down"), NetworkError("down"), ACCEPTED)
        gateway = SubmissionGateway([relay], make_node(landed_block=101), max_network_retries=2,
                                    network_backoff=0.5)
        opportunity = building_opportunity()

        status = await gateway.run(opportunity, make_bundle(target_block=101), AsyncMock())

        assert status == OpportunityStatus.INCLUDED
        assert sleeps == [0.5, 1.0]
        assert gateway.stats["network_retries"] == 2

    @pytest.mark.asyncio
    async def test_network_retries_exhausted(self):
        relay = make_relay("a", NetworkError("down"), NetworkError("down"))
        gateway = SubmissionGateway([relay], make_node(), max_network_retries=1, network_backoff=0.0)
        opportunity = building_opportunity()

        status = await gateway.run(opportunity, make_bundle(), AsyncMock())

        assert status == OpportunityStatus.REJECTED
        assert relay.send_bundle.await_count == 2

    @pytest.mark.asyncio
    async def test_open_circuit_stops_retries(self):
        relay = make_relay("a", NetworkError("down"))
        gateway = SubmissionGateway([relay], make_node(), circuit_breaker=CircuitBreaker(failure_threshold=1),
                                    max_network_retries=3, network_backoff=0.0)
        opportunity = building_opportunity()

        status = await gateway.run(opportunity, make_bundle(), AsyncMock())

        assert status == OpportunityStatus.REJECTED
        assert "open" in opportunity.metadata["submission_error"]
        relay.send_bundle.assert_awaited_once()
        assert gateway.stats["network_retries"] == 1
