"""Contract ABIs, function selectors and well-known addresses."""
from typing import Dict, FrozenSet

from eth_utils import function_signature_to_4byte_selector


def selector(signature: str) -> bytes:
    """4-byte function selector for a canonical signature."""
    return function_signature_to_4byte_selector(signature)


# Uniswap V2 router swap functions (also used by SushiSwap and other forks)
V2_SWAP_SIGNATURES: Dict[str, str] = {
    "swapExactTokensForTokens": "swapExactTokensForTokens(uint256,uint256,address[],address,uint256)",
    "swapTokensForExactTokens": "swapTokensForExactTokens(uint256,uint256,address[],address,uint256)",
    "swapExactETHForTokens": "swapExactETHForTokens(uint256,address[],address,uint256)",
    "swapTokensForExactETH": "swapTokensForExactETH(uint256,uint256,address[],address,uint256)",
    "swapExactTokensForETH": "swapExactTokensForETH(uint256,uint256,address[],address,uint256)",
    "swapETHForExactTokens": "swapETHForExactTokens(uint256,address[],address,uint256)",
    "swapExactTokensForTokensSupportingFeeOnTransferTokens":
        "swapExactTokensForTokensSupportingFeeOnTransferTokens(uint256,uint256,address[],address,uint256)",
    "swapExactETHForTokensSupportingFeeOnTransferTokens":
        "swapExactETHForTokensSupportingFeeOnTransferTokens(uint256,address[],address,uint256)",
    "swapExactTokensForETHSupportingFeeOnTransferTokens":
        "swapExactTokensForETHSupportingFeeOnTransferTokens(uint256,uint256,address[],address,uint256)",
}

# Uniswap V3 SwapRouter single-pool swaps (struct params)
V3_SWAP_SIGNATURES: Dict[str, str] = {
    "exactInputSingle":
        "exactInputSingle((address,address,uint24,address,uint256,uint256,uint256,uint160))",
    "exactOutputSingle":
        "exactOutputSingle((address,address,uint24,address,uint256,uint256,uint256,uint160))",
}

# Executor contract entry points
EXECUTOR_SIGNATURES: Dict[str, str] = {
    "frontrun": "frontrun(address,address,address,uint256,uint256)",
    "backrun": "backrun(address,address,address,uint256,uint256)",
    "probeRoundTrip": "probeRoundTrip(address,address,address,uint256)",
}

# Administrative hooks that let a token owner trap or tax holders
HAZARD_SIGNATURES: Dict[str, str] = {
    "pause": "pause()",
    "blacklist": "blacklist(address)",
    "addToBlacklist": "addToBlacklist(address)",
    "setBlacklist": "setBlacklist(address,bool)",
    "blockBots": "blockBots(address[])",
    "setBots": "setBots(address[])",
    "setFee": "setFee(uint256)",
    "setTaxFeePercent": "setTaxFeePercent(uint256)",
    "setMaxTxAmount": "setMaxTxAmount(uint256)",
    "setTradingEnabled": "setTradingEnabled(bool)",
    "mint": "mint(address,uint256)",
}

HAZARD_SELECTORS: Dict[bytes, str] = {
    selector(signature): name for name, signature in HAZARD_SIGNATURES.items()
}

PUSH4_OPCODE = 0x63

# Minimal ABIs for the reads the engine performs
UNISWAP_V2_PAIR_ABI = [
    {
        "name": "getReserves",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [
            {"name": "reserve0", "type": "uint112"},
            {"name": "reserve1", "type": "uint112"},
            {"name": "blockTimestampLast", "type": "uint32"},
        ],
    },
    {
        "name": "token0",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "address"}],
    },
]

UNISWAP_V2_FACTORY_ABI = [
    {
        "name": "getPair",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "tokenA", "type": "address"},
            {"name": "tokenB", "type": "address"},
        ],
        "outputs": [{"name": "pair", "type": "address"}],
    },
]

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# Router addresses by venue on Ethereum mainnet
KNOWN_ROUTERS: Dict[str, str] = {
    "0x7a250d5630b4cf539739df2c5dacb4c659f2488d": "uniswap_v2",
    "0xd9e1ce17f2641f24ae83637ab66a2cca9c378b9f": "sushiswap",
    "0xe592427a0aece92de3edee1f18e0157c05861564": "uniswap_v3",
}

# Venues priced with constant-product math
CONSTANT_PRODUCT_VENUES: FrozenSet[str] = frozenset({"uniswap_v2", "sushiswap"})

# Pair factories for the constant-product venues
KNOWN_FACTORIES: Dict[str, str] = {
    "uniswap_v2": "0x5c69bee701ef814a2b6a3edd4b1652cb9cc5aa6f",
    "sushiswap": "0xc0aee478e3658e2610c5f7a4a2e1777ce9e4f2ac",
}

# probeRoundTrip returns (expectedBuy, receivedBuy, expectedSell, receivedSell)
PROBE_RETURN_TYPES = ["uint256", "uint256", "uint256", "uint256"]
