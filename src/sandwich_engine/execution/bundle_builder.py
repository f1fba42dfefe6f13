"""
Bundle Builder.

Turns a scheduled opportunity into a signed ``[frontrun, victim, backrun]``
bundle for a target block. Both legs call the executor contract; the back
leg asserts the minimum profit on-chain, so any reordering that erodes the
profit reverts the whole bundle.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from eth_abi import encode
from eth_account import Account
from eth_utils import to_checksum_address

from ..errors import GasCeilingExceededError, StaleStateError
from ..mev_detection.opportunity_models import Opportunity
from ..models import Bundle, BundleRole, BundleTransaction, to_hex_str
from ..protocols.contracts import EXECUTOR_SIGNATURES, selector
from .nonce_manager import NonceManager

logger = logging.getLogger(__name__)

FRONTRUN_SELECTOR = selector(EXECUTOR_SIGNATURES["frontrun"])
BACKRUN_SELECTOR = selector(EXECUTOR_SIGNATURES["backrun"])
LEG_ARGS = ["address", "address", "address", "uint256", "uint256"]

# Base fee can rise at most 12.5% per block
BASE_FEE_MAX_CHANGE_NUMERATOR = 1125
BASE_FEE_MAX_CHANGE_DENOMINATOR = 1000


@dataclass(frozen=True)
class FeePlan:
    """EIP-1559 fee fields for both legs."""
    base_fee: int
    max_fee_per_gas: int
    frontrun_priority_fee: int
    backrun_priority_fee: int
    frontrun_gas_limit: int
    backrun_gas_limit: int

    @property
    def max_gas_cost(self) -> int:
        """Upper bound in wei on what both legs pay at the target block's base fee."""
        return (self.frontrun_gas_limit * (self.base_fee + self.frontrun_priority_fee)
                + self.backrun_gas_limit * (self.base_fee + self.backrun_priority_fee))


def plan_fees(
    victim_priority_fee: int,
    base_fee: int,
    frontrun_gas_limit: int = 150_000,
    backrun_gas_limit: int = 150_000,
    priority_fee_bump_bps: int = 1_000,
    backrun_priority_fee_wei: int = 1,
    max_gas_price_wei: int = 300 * 10**9,
) -> FeePlan:
    """
    Fee fields for a bundle outbidding a victim paying ``victim_priority_fee``.

    The front leg tips ``priority_fee_bump_bps`` above the victim plus one
    wei; the back leg pays the configured floor.

    Raises:
        GasCeilingExceededError: If the front leg cannot outbid within the ceiling.
    """
    next_base_fee = base_fee * BASE_FEE_MAX_CHANGE_NUMERATOR // BASE_FEE_MAX_CHANGE_DENOMINATOR
    frontrun_tip = victim_priority_fee * (10_000 + priority_fee_bump_bps) // 10_000 + 1

    required = next_base_fee + frontrun_tip
    if required > max_gas_price_wei:
        raise GasCeilingExceededError(
            f"Front leg needs {required} wei/gas, ceiling is {max_gas_price_wei}"
        )

    return FeePlan(
        base_fee=next_base_fee,
        max_fee_per_gas=min(2 * next_base_fee + frontrun_tip, max_gas_price_wei),
        frontrun_priority_fee=frontrun_tip,
        backrun_priority_fee=backrun_priority_fee_wei,
        frontrun_gas_limit=frontrun_gas_limit,
        backrun_gas_limit=backrun_gas_limit,
    )


def encode_frontrun(pair: str, token_in: str, token_out: str, amount: int, min_profit: int = 0) -> bytes:
    """Calldata for executor.frontrun(pool, tokenIn, tokenOut, amount, minProfit)."""
    return FRONTRUN_SELECTOR + encode(LEG_ARGS, [pair, token_in, token_out, amount, min_profit])


def encode_backrun(pair: str, token_out: str, token_in: str, amount: int, min_profit: int) -> bytes:
    """Calldata for executor.backrun(pool, tokenOut, tokenIn, frontrunOutput, minProfit)."""
    return BACKRUN_SELECTOR + encode(LEG_ARGS, [pair, token_out, token_in, amount, min_profit])


class BundleBuilder:
    """Builds and signs sandwich bundles."""

    def __init__(
        self,
        node: Any,
        private_key: str,
        executor_address: str,
        chain_id: int = 1,
        frontrun_gas_limit: int = 150_000,
        backrun_gas_limit: int = 150_000,
        priority_fee_bump_bps: int = 1_000,
        backrun_priority_fee_wei: int = 1,
        max_gas_price_wei: int = 300 * 10**9,
        nonce_manager: Optional[NonceManager] = None,
    ):
        """
        Initialize the bundle builder.

        Args:
            node: NodeClient for raw victim transactions and base fees
            private_key: Signing key of the bot account
            executor_address: Executor contract both legs call
            chain_id: Chain ID written into signed transactions
            frontrun_gas_limit: Gas limit of the front leg
            backrun_gas_limit: Gas limit of the back leg
            priority_fee_bump_bps: How far the front leg outbids the victim's tip
            backrun_priority_fee_wei: Tip of the back leg
            max_gas_price_wei: Ceiling on max fee per gas
            nonce_manager: Shared nonce allocator (created when omitted)
        """
        self.node = node
        self.account = Account.from_key(private_key)
        self.executor_address = to_checksum_address(executor_address)
        self.chain_id = chain_id
        self.frontrun_gas_limit = frontrun_gas_limit
        self.backrun_gas_limit = backrun_gas_limit
        self.priority_fee_bump_bps = priority_fee_bump_bps
        self.backrun_priority_fee_wei = backrun_priority_fee_wei
        self.max_gas_price_wei = max_gas_price_wei
        self.nonce_manager = nonce_manager or NonceManager(node, self.account.address)

        self.stats = {
            "bundles_built": 0,
            "gas_ceiling_exceeded": 0,
            "victim_missing": 0,
        }

    @property
    def address(self) -> str:
        return self.account.address

    def plan_fees(self, victim_priority_fee: int, base_fee: int) -> FeePlan:
        """Fee plan with this builder's gas settings (see ``plan_fees``)."""
        try:
            return plan_fees(
                victim_priority_fee,
                base_fee,
                frontrun_gas_limit=self.frontrun_gas_limit,
                backrun_gas_limit=self.backrun_gas_limit,
                priority_fee_bump_bps=self.priority_fee_bump_bps,
                backrun_priority_fee_wei=self.backrun_priority_fee_wei,
                max_gas_price_wei=self.max_gas_price_wei,
            )
        except GasCeilingExceededError:
            self.stats["gas_ceiling_exceeded"] += 1
            raise

    def estimate_gas_cost(self, victim_priority_fee: int, base_fee: int) -> int:
        """Gas cost in wei of both legs, used by the sizer's profit floor."""
        return self.plan_fees(victim_priority_fee, base_fee).max_gas_cost

    async def build(
        self,
        opportunity: Opportunity,
        target_block: int,
        base_fee: Optional[int] = None,
        nonces: Optional[List[int]] = None,
    ) -> Bundle:
        """
        Build a signed bundle for ``target_block``.

        Args:
            opportunity: Scheduled opportunity
            target_block: Block the bundle is valid for
            base_fee: Current base fee (fetched from the latest block when None)
            nonces: Nonces to reuse when retargeting a bundle that did not land

        Raises:
            GasCeilingExceededError: Outbidding the victim exceeds the ceiling.
            StaleStateError: The victim transaction is no longer available.
        """
        if base_fee is None:
            block = await self.node.get_block("latest")
            base_fee = int(block.get("baseFeePerGas", 0) or 0)

        fees = self.plan_fees(opportunity.victim.priority_fee, base_fee)

        victim_raw = await self.node.get_raw_transaction(opportunity.victim.tx_hash)
        if victim_raw is None:
            self.stats["victim_missing"] += 1
            raise StaleStateError(f"Victim {opportunity.victim.tx_hash} is no longer pending")

        if nonces is None:
            nonces = await self.nonce_manager.reserve(2)
        frontrun_nonce, backrun_nonce = nonces

        frontrun = self._sign(
            BundleRole.FRONTRUN,
            encode_frontrun(opportunity.pair_address, opportunity.token_in, opportunity.token_out,
                            opportunity.frontrun_amount, 0),
            nonce=frontrun_nonce,
            gas_limit=fees.frontrun_gas_limit,
            max_fee=fees.max_fee_per_gas,
            priority_fee=fees.frontrun_priority_fee,
        )
        backrun = self._sign(
            BundleRole.BACKRUN,
            encode_backrun(opportunity.pair_address, opportunity.token_out, opportunity.token_in,
                           opportunity.expected_frontrun_output, opportunity.min_profit),
            nonce=backrun_nonce,
            gas_limit=fees.backrun_gas_limit,
            max_fee=fees.max_fee_per_gas,
            priority_fee=fees.backrun_priority_fee,
        )
        victim = BundleTransaction(
            role=BundleRole.VICTIM,
            tx_hash=opportunity.victim.tx_hash,
            raw=victim_raw,
            priority_fee=opportunity.victim.priority_fee,
        )

        bundle = Bundle(
            transactions=[frontrun, victim, backrun],
            target_block=target_block,
            opportunity_id=opportunity.opportunity_id,
        )
        self.stats["bundles_built"] += 1
        logger.debug(f"Built bundle {bundle.bundle_hash} for block {target_block} "
                     f"(opportunity {opportunity.opportunity_id})")
        return bundle

    def _sign(self, role: BundleRole, data: bytes, nonce: int, gas_limit: int,
              max_fee: int, priority_fee: int) -> BundleTransaction:
        tx: Dict[str, Any] = {
            "type": 2,
            "chainId": self.chain_id,
            "nonce": nonce,
            "to": self.executor_address,
            "value": 0,
            "data": data,
            "gas": gas_limit,
            "maxFeePerGas": max_fee,
            "maxPriorityFeePerGas": priority_fee,
        }
        signed = self.account.sign_transaction(tx)
        return BundleTransaction(
            role=role,
            tx_hash=to_hex_str(signed.hash),
            raw=bytes(signed.raw_transaction),
            nonce=nonce,
            priority_fee=priority_fee,
        )

    def get_stats(self) -> Dict[str, Any]:
        return {**self.stats, "next_nonce": self.nonce_manager.next_nonce}
