"""
Swap Decoder for pending router calls.

Matches call data against the small set of router swap selectors the engine
understands and decodes the arguments into a ``DecodedSwap``. Nearly every
pending transaction is not one of these calls, so the selector prefix is
checked against a frozenset before any ABI decoding happens.
"""
import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional, Tuple

from eth_abi import decode
from eth_abi.exceptions import DecodingError

from ..errors import DecodeError
from ..models import DecodedSwap, PendingTransaction
from ..protocols.contracts import (
    KNOWN_ROUTERS,
    V2_SWAP_SIGNATURES,
    V3_SWAP_SIGNATURES,
    selector,
)

logger = logging.getLogger(__name__)

V2_PATH_ARGS = ["uint256", "uint256", "address[]", "address", "uint256"]
V2_ETH_IN_ARGS = ["uint256", "address[]", "address", "uint256"]
V3_SINGLE_ARGS = ["(address,address,uint24,address,uint256,uint256,uint256,uint160)"]


@dataclass(frozen=True)
class SwapLayout:
    """How to read one swap function's arguments."""
    name: str
    abi_types: Tuple[str, ...]
    exact_output: bool
    eth_in: bool = False
    v3_single: bool = False


def _build_layouts() -> Dict[bytes, SwapLayout]:
    layouts = {}
    for name, signature in V2_SWAP_SIGNATURES.items():
        eth_in = name.startswith("swapExactETH") or name.startswith("swapETH")
        exact_output = "ForExact" in name
        abi_types = V2_ETH_IN_ARGS if eth_in else V2_PATH_ARGS
        layouts[selector(signature)] = SwapLayout(name, tuple(abi_types), exact_output, eth_in=eth_in)
    for name, signature in V3_SWAP_SIGNATURES.items():
        layouts[selector(signature)] = SwapLayout(
            name, tuple(V3_SINGLE_ARGS), exact_output=(name == "exactOutputSingle"), v3_single=True
        )
    return layouts


SWAP_LAYOUTS: Dict[bytes, SwapLayout] = _build_layouts()
SWAP_SELECTORS: FrozenSet[bytes] = frozenset(SWAP_LAYOUTS)


class SwapDecoder:
    """
    Decodes router call data into canonical swap intents.

    Failure is the expected outcome for most input: ``decode`` returns None
    rather than raising.
    """

    def __init__(self, routers: Optional[Dict[str, str]] = None):
        """
        Initialize the decoder.

        Args:
            routers: Router address -> venue name (defaults to the known mainnet routers)
        """
        self.routers = {address.lower(): venue for address, venue in (routers or KNOWN_ROUTERS).items()}
        self.stats = {
            "decoded": 0,
            "unrecognized": 0,
            "malformed": 0,
        }

    def is_candidate(self, call_data: bytes) -> bool:
        """Cheap selector-prefix check."""
        return len(call_data) >= 4 and call_data[:4] in SWAP_SELECTORS

    def decode_transaction(self, tx: PendingTransaction) -> Optional[DecodedSwap]:
        """Decode a pending transaction sent to a tracked router."""
        venue = self.routers.get(tx.to or "", "uniswap_v2")
        return self.decode(tx.input, value=tx.value, venue=venue)

    def decode(self, call_data: bytes, value: int = 0, venue: str = "uniswap_v2") -> Optional[DecodedSwap]:
        """Return the decoded swap, or None if the payload is not a recognized swap."""
        if not self.is_candidate(call_data):
            self.stats["unrecognized"] += 1
            return None

        try:
            swap = self.decode_or_raise(call_data, value=value, venue=venue)
        except DecodeError as e:
            self.stats["malformed"] += 1
            logger.debug(f"Malformed swap payload: {e}")
            return None

        self.stats["decoded"] += 1
        return swap

    def decode_or_raise(self, call_data: bytes, value: int = 0, venue: str = "uniswap_v2") -> DecodedSwap:
        """
        Decode call data, raising DecodeError when it is not a well-formed swap.

        Args:
            call_data: Raw transaction input
            value: Native value attached to the call (ETH-in swaps)
            venue: Venue name of the router the call targets

        Returns:
            DecodedSwap
        """
        layout = SWAP_LAYOUTS.get(bytes(call_data[:4]))
        if layout is None:
            raise DecodeError("Unknown selector")

        try:
            args = decode(list(layout.abi_types), bytes(call_data[4:]))
        except (DecodingError, ValueError, OverflowError) as e:
            raise DecodeError(f"{layout.name}: {e}") from e

        if layout.v3_single:
            return self._from_v3_single(layout, args[0])
        return self._from_v2(layout, args, value, venue)

    def _from_v2(self, layout: SwapLayout, args: tuple, value: int, venue: str) -> DecodedSwap:
        if layout.eth_in:
            # (amountOutMin | amountOut, path, to, deadline), input amount is tx.value
            out_amount, path, _to, deadline = args
            amount_in = value
            min_amount_out = out_amount
        else:
            first, second, path, _to, deadline = args
            if layout.exact_output:
                # (amountOut, amountInMax, ...)
                min_amount_out, amount_in = first, second
            else:
                # (amountIn, amountOutMin, ...)
                amount_in, min_amount_out = first, second

        path = tuple(address.lower() for address in path)
        if len(path) < 2:
            raise DecodeError(f"{layout.name}: path too short")

        return DecodedSwap(
            token_in=path[0],
            token_out=path[-1],
            amount_in=int(amount_in),
            min_amount_out=int(min_amount_out),
            path=path,
            deadline=int(deadline),
            venue=venue,
            function_name=layout.name,
            exact_output=layout.exact_output,
        )

    def _from_v3_single(self, layout: SwapLayout, params: tuple) -> DecodedSwap:
        token_in, token_out, _fee, _recipient, deadline, amount_a, amount_b, _limit = params
        if layout.exact_output:
            # (amountOut, amountInMaximum)
            min_amount_out, amount_in = amount_a, amount_b
        else:
            # (amountIn, amountOutMinimum)
            amount_in, min_amount_out = amount_a, amount_b

        token_in = token_in.lower()
        token_out = token_out.lower()
        return DecodedSwap(
            token_in=token_in,
            token_out=token_out,
            amount_in=int(amount_in),
            min_amount_out=int(min_amount_out),
            path=(token_in, token_out),
            deadline=int(deadline),
            venue="uniswap_v3",
            function_name=layout.name,
            exact_output=layout.exact_output,
        )

    def get_stats(self):
        return dict(self.stats)
