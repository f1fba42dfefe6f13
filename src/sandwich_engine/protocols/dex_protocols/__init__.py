"""DEX math implementations."""
from .uniswap_v2_math import UniswapV2Math, get_amount_in, get_amount_out

__all__ = [
    "UniswapV2Math",
    "get_amount_in",
    "get_amount_out",
]
