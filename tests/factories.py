"""Shared builders for unit tests."""
from sandwich_engine.mev_detection.opportunity_models import Opportunity, OpportunityStatus, VictimReference
from sandwich_engine.models import Bundle, BundleRole, BundleTransaction, PoolKey

WETH = "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2"
DAI = "0x6b175474e89094c44da98b954eedeac495271d0f"
USDC = "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48"
PAIR = "0x" + "cd" * 20


def make_opportunity(token_out=DAI, net_profit=1_000, snapshot_block=100, expiry_block=None,
                     victim_hash=None, deadline_at=None) -> Opportunity:
    return Opportunity(
        victim=VictimReference(
            tx_hash=victim_hash or "0x" + f"{net_profit:064x}",
            sender="0x" + "22" * 20,
            amount_in=10**18,
            min_amount_out=1,
        ),
        pool_key=PoolKey.for_pair("uniswap_v2", WETH, token_out),
        pair_address=PAIR,
        token_in=WETH,
        token_out=token_out,
        frontrun_amount=10**17,
        expected_frontrun_output=10**20,
        expected_backrun_output=10**17 + net_profit + 50,
        gross_profit=net_profit + 50,
        gas_cost=50,
        net_profit=net_profit,
        snapshot_block=snapshot_block,
        expiry_block=expiry_block if expiry_block is not None else snapshot_block + 1,
        deadline_at=deadline_at,
    )


def advance(opportunity: Opportunity, *statuses: OpportunityStatus) -> Opportunity:
    """Walk an opportunity through ``statuses`` in order."""
    for status in statuses:
        opportunity.transition_to(status)
    return opportunity


def make_bundle(target_block: int = 101, seed: int = 1, opportunity_id: str = "opp") -> Bundle:
    """Three-transaction bundle with distinct hashes derived from ``seed``."""
    transactions = [
        BundleTransaction(role=role, tx_hash="0x" + f"{seed * 10 + i:064x}", raw=bytes([i + 1]) * 8, nonce=i)
        for i, role in enumerate((BundleRole.FRONTRUN, BundleRole.VICTIM, BundleRole.BACKRUN))
    ]
    return Bundle(transactions=transactions, target_block=target_block, opportunity_id=opportunity_id)
