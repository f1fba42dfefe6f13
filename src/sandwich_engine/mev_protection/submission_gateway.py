"""
Submission Gateway.

Fans a bundle out to every configured relay, watches the target block for
the outcome and retargets a missed bundle to the next block a bounded number
of times. A bundle hash that has landed is never submitted again.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from ..errors import (
    CircuitOpenError,
    EngineError,
    NetworkError,
    NonceConflictError,
    SubmissionRejectedError,
)
from ..mev_detection.opportunity_models import Opportunity, OpportunityStatus
from ..models import Bundle, BundleRole, SubmissionOutcome, SubmissionResult, SubmissionState
from .circuit_breaker import CircuitBreaker
from .flashbots_client import RelayClient

logger = logging.getLogger(__name__)
alerts = logging.getLogger("sandwich_engine.alerts")

Rebuild = Callable[[Opportunity, int], Awaitable[Optional[Bundle]]]


class SubmissionGateway:
    """Relay fan-out, outcome tracking and block retargeting."""

    def __init__(
        self,
        relays: Sequence[RelayClient],
        node: Any,
        circuit_breaker: Optional[CircuitBreaker] = None,
        max_relay_retries: int = 2,
        max_block_retries: int = 1,
        reject_alert_threshold: int = 5,
        outcome_timeout: float = 60.0,
        max_network_retries: int = 2,
        network_backoff: float = 0.1,
    ):
        """
        Initialize the gateway.

        Args:
            relays: Relay clients, all of which receive every bundle
            node: NodeClient used to wait for blocks and read receipts
            circuit_breaker: Breaker tripped by relay network failures
            max_relay_retries: Extra attempts on alternate relays after rejections
            max_block_retries: How many times a missed bundle is retargeted
            reject_alert_threshold: Consecutive rejections per relay before alerting
            outcome_timeout: Upper bound on waiting for the target block
            max_network_retries: Resubmissions after no relay could be reached
            network_backoff: Sleep before the first resubmission, doubled each time
        """
        if not relays:
            raise ValueError("At least one relay is required")

        self.relays = list(relays)
        self.node = node
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self.max_relay_retries = max_relay_retries
        self.max_block_retries = max_block_retries
        self.reject_alert_threshold = reject_alert_threshold
        self.outcome_timeout = outcome_timeout
        self.max_network_retries = max_network_retries
        self.network_backoff = network_backoff

        self._included: Dict[str, int] = {}
        self._results: Dict[str, List[SubmissionResult]] = {}
        self._consecutive_rejects: Dict[str, int] = {relay.relay_url: 0 for relay in self.relays}

        self.stats = {
            "bundles_submitted": 0,
            "bundles_included": 0,
            "bundles_not_included": 0,
            "bundles_abandoned": 0,
            "bundles_retargeted": 0,
            "duplicate_submissions_skipped": 0,
            "relay_rejections": 0,
            "relay_network_errors": 0,
            "relay_errors": 0,
            "network_retries": 0,
            "nonce_conflicts": 0,
        }

    def is_included(self, bundle_hash: str) -> bool:
        return bundle_hash in self._included

    def results_for(self, bundle_hash: str) -> List[SubmissionResult]:
        return list(self._results.get(bundle_hash, []))

    async def submit(self, bundle: Bundle) -> List[SubmissionResult]:
        """
        Send ``bundle`` to every relay in parallel.

        Rejections trigger up to ``max_relay_retries`` further attempts on
        alternate relays; if nothing accepts, the bundle is abandoned.

        Returns:
            Per-relay results (empty if the bundle already landed)

        Raises:
            CircuitOpenError: Submissions are paused.
            NetworkError: No relay could be reached.
            NonceConflictError: A relay reported a nonce clash.
            SubmissionRejectedError: Every attempt was rejected.
        """
        bundle_hash = bundle.bundle_hash
        if bundle_hash in self._included:
            self.stats["duplicate_submissions_skipped"] += 1
            logger.debug(f"Bundle {bundle_hash} already included, not resubmitting")
            return []

        self.circuit_breaker.before_call()
        try:
            outcomes = await asyncio.gather(
                *(relay.send_bundle(bundle) for relay in self.relays), return_exceptions=True
            )
        except BaseException:
            self.circuit_breaker.release_probe()
            raise

        results: List[SubmissionResult] = []
        relay_failures = 0
        rejected_at: List[int] = []
        for index, (relay, outcome) in enumerate(zip(self.relays, outcomes)):
            if isinstance(outcome, NetworkError):
                relay_failures += 1
                self.stats["relay_network_errors"] += 1
                logger.warning(f"Relay {relay.relay_url} failed: {outcome}")
                continue
            if isinstance(outcome, BaseException):
                relay_failures += 1
                self.stats["relay_errors"] += 1
                logger.error(f"Relay {relay.relay_url} raised {type(outcome).__name__}: {outcome}",
                             exc_info=outcome)
                continue
            results.append(outcome)
            self._track_relay_result(outcome)
            if outcome.outcome == SubmissionOutcome.REJECTED:
                rejected_at.append(index)

        if relay_failures == len(self.relays):
            self.circuit_breaker.record_failure()
            bundle.state = SubmissionState.ABANDONED
            self.stats["bundles_abandoned"] += 1
            raise NetworkError(f"No relay reachable for bundle {bundle_hash}")
        self.circuit_breaker.record_success()

        accepted = [r for r in results if r.outcome == SubmissionOutcome.ACCEPTED]
        if not accepted and rejected_at:
            accepted = await self._retry_on_alternates(bundle, rejected_at[0], results)

        self._results.setdefault(bundle_hash, []).extend(results)

        if not accepted:
            bundle.state = SubmissionState.ABANDONED
            self.stats["bundles_abandoned"] += 1
            errors = "; ".join(r.error or "" for r in results if r.outcome == SubmissionOutcome.REJECTED)
            if "nonce" in errors.lower():
                self.stats["nonce_conflicts"] += 1
                raise NonceConflictError(f"Bundle {bundle_hash}: {errors}")
            raise SubmissionRejectedError(results[-1].relay if results else "all", errors)

        bundle.state = SubmissionState.SUBMITTED
        self.stats["bundles_submitted"] += 1
        logger.info(f"Bundle {bundle_hash} accepted by {len(accepted)}/{len(self.relays)} relays "
                    f"for block {bundle.target_block}")
        return results

    async def submit_with_backoff(self, bundle: Bundle) -> List[SubmissionResult]:
        """
        ``submit`` that retries network failures with exponential backoff.

        CircuitOpenError is raised at once; other NetworkErrors are retried up
        to ``max_network_retries`` times before being re-raised.
        """
        delay = self.network_backoff
        for attempt in range(self.max_network_retries + 1):
            try:
                return await self.submit(bundle)
            except CircuitOpenError:
                raise
            except NetworkError as e:
                if attempt >= self.max_network_retries:
                    raise
                self.stats["network_retries"] += 1
                logger.warning(f"Submission of {bundle.bundle_hash} failed ({e}), retrying in {delay:.2f}s")
                await asyncio.sleep(delay)
                delay *= 2

    async def _retry_on_alternates(self, bundle: Bundle, first_rejected: int,
                                   results: List[SubmissionResult]) -> List[SubmissionResult]:
        for attempt in range(1, self.max_relay_retries + 1):
            relay = self.relays[(first_rejected + attempt) % len(self.relays)]
            try:
                result = await relay.send_bundle(bundle)
            except NetworkError as e:
                self.stats["relay_network_errors"] += 1
                logger.warning(f"Relay {relay.relay_url} failed on retry: {e}")
                continue
            except Exception as e:
                self.stats["relay_errors"] += 1
                logger.error(f"Relay {relay.relay_url} raised on retry: {e}", exc_info=True)
                continue
            results.append(result)
            self._track_relay_result(result)
            if result.outcome == SubmissionOutcome.ACCEPTED:
                return [result]
        return []

    def _track_relay_result(self, result: SubmissionResult) -> None:
        if result.outcome != SubmissionOutcome.REJECTED:
            self._consecutive_rejects[result.relay] = 0
            return

        self.stats["relay_rejections"] += 1
        count = self._consecutive_rejects.get(result.relay, 0) + 1
        self._consecutive_rejects[result.relay] = count
        if count == self.reject_alert_threshold:
            alerts.warning(f"Relay {result.relay} rejected {count} consecutive bundles: {result.error}")

    async def await_outcome(self, bundle: Bundle) -> SubmissionOutcome:
        """Wait for the target block and check whether the front leg landed in it."""
        await self.node.wait_for_block(bundle.target_block, timeout=self.outcome_timeout)

        frontrun = bundle.transaction(BundleRole.FRONTRUN)
        receipt = await self.node.get_transaction_receipt(frontrun.tx_hash, timeout=5.0) if frontrun else None
        landed = receipt is not None and int(receipt.get("blockNumber", -1)) == bundle.target_block

        if landed:
            bundle.state = SubmissionState.INCLUDED
            self._included[bundle.bundle_hash] = bundle.target_block
            self.stats["bundles_included"] += 1
            self._record_outcome(bundle, SubmissionOutcome.INCLUDED)
            return SubmissionOutcome.INCLUDED

        bundle.state = SubmissionState.NOT_INCLUDED
        self.stats["bundles_not_included"] += 1
        self._record_outcome(bundle, SubmissionOutcome.NOT_INCLUDED)
        return SubmissionOutcome.NOT_INCLUDED

    def _record_outcome(self, bundle: Bundle, outcome: SubmissionOutcome) -> None:
        for result in self._results.get(bundle.bundle_hash, []):
            if result.outcome == SubmissionOutcome.ACCEPTED:
                result.outcome = outcome

    async def run(self, opportunity: Opportunity, bundle: Bundle, rebuild: Rebuild) -> OpportunityStatus:
        """
        Drive an opportunity from submission to a terminal status.

        Submit, wait for the outcome and, on a miss, rebuild against fresh
        reserves for the next block up to ``max_block_retries`` times.

        Args:
            opportunity: Opportunity in BUILDING status
            bundle: Bundle built for it
            rebuild: Callback returning a bundle for (opportunity, new_target_block),
                or None when the opportunity is no longer worth sending

        Returns:
            The terminal status reached
        """
        while True:
            try:
                await self.submit_with_backoff(bundle)
            except (SubmissionRejectedError, NonceConflictError, NetworkError) as e:
                logger.info(f"Opportunity {opportunity.opportunity_id} not submitted: {e}")
                opportunity.metadata["submission_error"] = str(e)
                opportunity.transition_to(OpportunityStatus.REJECTED)
                return opportunity.status

            opportunity.transition_to(OpportunityStatus.SUBMITTED)
            opportunity.metadata["bundle_hash"] = bundle.bundle_hash

            try:
                outcome = await self.await_outcome(bundle)
            except NetworkError as e:
                logger.warning(f"Outcome unknown for {bundle.bundle_hash}: {e}")
                outcome = SubmissionOutcome.NOT_INCLUDED

            if outcome == SubmissionOutcome.INCLUDED:
                opportunity.transition_to(OpportunityStatus.INCLUDED)
                logger.info(f"Opportunity {opportunity.opportunity_id} included in block {bundle.target_block} "
                            f"(net profit {opportunity.net_profit})")
                return opportunity.status

            opportunity.transition_to(OpportunityStatus.NOT_INCLUDED)
            if opportunity.retries >= self.max_block_retries:
                opportunity.transition_to(OpportunityStatus.EXPIRED)
                return opportunity.status

            opportunity.retries += 1
            opportunity.transition_to(OpportunityStatus.BUILDING)
            try:
                next_bundle = await rebuild(opportunity, bundle.target_block + 1)
            except EngineError as e:
                logger.debug(f"Rebuild for {opportunity.opportunity_id} failed: {e}")
                next_bundle = None

            if next_bundle is None:
                opportunity.transition_to(OpportunityStatus.EXPIRED)
                return opportunity.status

            self.stats["bundles_retargeted"] += 1
            bundle = next_bundle

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "circuit_breaker": self.circuit_breaker.get_stats(),
            "relays": {relay.relay_url: relay.get_stats() for relay in self.relays},
        }
