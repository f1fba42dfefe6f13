"""Node provider: the engine's only door to the collaborator EVM node."""
import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Tuple, TypeVar

import aiohttp
from web3 import AsyncWeb3, Web3, WebSocketProvider
from web3.exceptions import ContractLogicError, TransactionNotFound, Web3Exception
from web3.providers import AsyncHTTPProvider

from ..errors import NetworkError, SimulationRevertError
from ..models import to_hex_str
from ..protocols.contracts import UNISWAP_V2_FACTORY_ABI, UNISWAP_V2_PAIR_ABI, ZERO_ADDRESS

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSPORT_ERRORS = (
    asyncio.TimeoutError,
    aiohttp.ClientError,
    ConnectionError,
    OSError,
)


class NodeClient:
    """
    Async wrapper around AsyncWeb3 exposing the calls the engine needs.

    Transport failures surface as NetworkError once every endpoint failed in
    each of ``max_retries + 1`` rounds, with exponential backoff between
    rounds. Reverted dry-runs surface as SimulationRevertError, so callers
    never handle web3 exceptions directly.
    """

    def __init__(
        self,
        rpc_url: str,
        ws_url: Optional[str] = None,
        backup_rpc_url: Optional[str] = None,
        default_timeout: float = 0.025,
        max_retries: int = 1,
        retry_backoff: float = 0.005,
    ):
        """
        Initialize the node client.

        Args:
            rpc_url: Primary HTTP endpoint
            ws_url: WebSocket endpoint for subscriptions
            backup_rpc_url: Secondary HTTP endpoint used after transport failures
            default_timeout: Deadline in seconds applied to each call
            max_retries: Extra rounds over all endpoints after a transport failure
            retry_backoff: Sleep before the first extra round, doubled per round
        """
        self.rpc_url = rpc_url
        self.ws_url = ws_url
        self.backup_rpc_url = backup_rpc_url
        self.default_timeout = default_timeout
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff

        self.w3: Optional[AsyncWeb3] = None
        self.backup_w3: Optional[AsyncWeb3] = None

        self.stats = {
            "calls": 0,
            "failovers": 0,
            "retries": 0,
            "network_errors": 0,
        }

    async def initialize(self) -> None:
        """Create the HTTP connections."""
        self.w3 = AsyncWeb3(AsyncHTTPProvider(self.rpc_url, request_kwargs={"timeout": 30}))
        if self.backup_rpc_url:
            self.backup_w3 = AsyncWeb3(AsyncHTTPProvider(self.backup_rpc_url, request_kwargs={"timeout": 30}))
        logger.info(f"Node client initialized for {self.rpc_url}")

    async def close(self) -> None:
        for w3 in (self.w3, self.backup_w3):
            if w3 is not None and hasattr(w3.provider, "disconnect"):
                await w3.provider.disconnect()

    async def _request(
        self,
        operation: Callable[[AsyncWeb3], Awaitable[T]],
        timeout: Optional[float] = None,
    ) -> T:
        if self.w3 is None:
            raise RuntimeError("Node client not initialized")

        deadline = timeout if timeout is not None else self.default_timeout
        endpoints = [self.w3] + ([self.backup_w3] if self.backup_w3 is not None else [])
        last_error: Optional[BaseException] = None
        delay = self.retry_backoff

        for attempt in range(self.max_retries + 1):
            if attempt > 0:
                self.stats["retries"] += 1
                await asyncio.sleep(delay)
                delay *= 2

            for index, w3 in enumerate(endpoints):
                self.stats["calls"] += 1
                if index > 0:
                    self.stats["failovers"] += 1
                try:
                    return await asyncio.wait_for(operation(w3), timeout=deadline)
                except ContractLogicError as e:
                    raise SimulationRevertError(str(e), revert_reason=getattr(e, "message", None)) from e
                except TransactionNotFound:
                    raise
                except TRANSPORT_ERRORS as e:
                    last_error = e
                except Web3Exception as e:
                    last_error = e

        self.stats["network_errors"] += 1
        raise NetworkError(f"Node request failed: {last_error!r}") from last_error

    async def subscribe_pending(self) -> AsyncIterator[str]:
        """
        Yield pending transaction hashes from a newPendingTransactions subscription.

        The iterator ends (or raises) when the websocket drops; reconnection is
        the caller's job.
        """
        if not self.ws_url:
            raise NetworkError("No websocket endpoint configured")

        try:
            async with AsyncWeb3(WebSocketProvider(self.ws_url)) as ws_w3:
                await ws_w3.eth.subscribe("newPendingTransactions")
                async for message in ws_w3.socket.process_subscriptions():
                    result = message.get("result") if isinstance(message, dict) else None
                    if result is not None:
                        yield to_hex_str(result)
        except TRANSPORT_ERRORS as e:
            raise NetworkError(f"Pending subscription lost: {e!r}") from e
        except Web3Exception as e:
            raise NetworkError(f"Pending subscription lost: {e!r}") from e

    async def get_transaction(self, tx_hash: str, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Fetch a transaction by hash; None when the node does not know it."""
        try:
            return await self._request(lambda w3: w3.eth.get_transaction(tx_hash), timeout)
        except TransactionNotFound:
            return None

    async def get_raw_transaction(self, tx_hash: str, timeout: Optional[float] = None) -> Optional[bytes]:
        """Signed RLP of a transaction via eth_getRawTransactionByHash."""
        async def operation(w3: AsyncWeb3):
            return await w3.provider.make_request("eth_getRawTransactionByHash", [tx_hash])

        response = await self._request(operation, timeout)
        result = response.get("result") if isinstance(response, dict) else None
        if not result:
            return None
        return bytes.fromhex(result[2:] if result.startswith("0x") else result)

    async def get_block(self, block_identifier: Any = "latest", timeout: Optional[float] = None) -> Dict[str, Any]:
        return await self._request(lambda w3: w3.eth.get_block(block_identifier), timeout)

    async def get_block_number(self, timeout: Optional[float] = None) -> int:
        async def operation(w3: AsyncWeb3):
            return await w3.eth.block_number

        return await self._request(operation, timeout)

    async def get_gas_price(self, timeout: Optional[float] = None) -> int:
        async def operation(w3: AsyncWeb3):
            return await w3.eth.gas_price

        return await self._request(operation, timeout)

    async def call(self, transaction: Dict[str, Any], block_identifier: Any = "latest",
                   timeout: Optional[float] = None) -> bytes:
        """Dry-run a call without committing state."""
        return bytes(await self._request(
            lambda w3: w3.eth.call(transaction, block_identifier=block_identifier), timeout
        ))

    async def get_code(self, address: str, timeout: Optional[float] = None) -> bytes:
        checksum = Web3.to_checksum_address(address)
        return bytes(await self._request(lambda w3: w3.eth.get_code(checksum), timeout))

    async def get_transaction_count(self, address: str, block_identifier: Any = "pending",
                                    timeout: Optional[float] = None) -> int:
        checksum = Web3.to_checksum_address(address)
        return await self._request(
            lambda w3: w3.eth.get_transaction_count(checksum, block_identifier), timeout
        )

    async def get_transaction_receipt(self, tx_hash: str,
                                      timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        try:
            return await self._request(lambda w3: w3.eth.get_transaction_receipt(tx_hash), timeout)
        except TransactionNotFound:
            return None

    async def send_raw_transaction(self, raw: bytes, timeout: Optional[float] = None) -> str:
        return to_hex_str(await self._request(lambda w3: w3.eth.send_raw_transaction(raw), timeout))

    async def get_pair(self, factory: str, token_a: str, token_b: str,
                       timeout: Optional[float] = None) -> Optional[str]:
        """Pair address from a V2 factory, None when the pair does not exist."""
        def operation(w3: AsyncWeb3):
            contract = w3.eth.contract(address=Web3.to_checksum_address(factory), abi=UNISWAP_V2_FACTORY_ABI)
            return contract.functions.getPair(
                Web3.to_checksum_address(token_a), Web3.to_checksum_address(token_b)
            ).call()

        pair = await self._request(operation, timeout)
        if not pair or pair.lower() == ZERO_ADDRESS:
            return None
        return pair.lower()

    async def get_token0(self, pair: str, timeout: Optional[float] = None) -> str:
        def operation(w3: AsyncWeb3):
            contract = w3.eth.contract(address=Web3.to_checksum_address(pair), abi=UNISWAP_V2_PAIR_ABI)
            return contract.functions.token0().call()

        return (await self._request(operation, timeout)).lower()

    async def get_reserves(self, pair: str, block_identifier: Any = "latest",
                           timeout: Optional[float] = None) -> Tuple[int, int, int]:
        """Return (reserve0, reserve1, blockTimestampLast)."""
        def operation(w3: AsyncWeb3):
            contract = w3.eth.contract(address=Web3.to_checksum_address(pair), abi=UNISWAP_V2_PAIR_ABI)
            return contract.functions.getReserves().call(block_identifier=block_identifier)

        reserve0, reserve1, timestamp = await self._request(operation, timeout)
        return int(reserve0), int(reserve1), int(timestamp)

    async def wait_for_block(self, block_number: int, poll_interval: float = 0.5,
                             timeout: float = 60.0) -> int:
        """Poll until the chain head reaches ``block_number``."""
        loop = asyncio.get_running_loop()
        started = loop.time()
        while True:
            current = await self.get_block_number(timeout=max(self.default_timeout, 1.0))
            if current >= block_number:
                return current
            if loop.time() - started > timeout:
                raise NetworkError(f"Timed out waiting for block {block_number} (head {current})")
            await asyncio.sleep(poll_interval)

    def get_stats(self) -> Dict[str, Any]:
        return dict(self.stats)


# Convenience functions

async def create_node_client(
    rpc_url: str,
    ws_url: Optional[str] = None,
    backup_rpc_url: Optional[str] = None,
    default_timeout: float = 0.025,
    max_retries: int = 1,
    retry_backoff: float = 0.005,
) -> NodeClient:
    """Create and initialize a node client."""
    client = NodeClient(rpc_url, ws_url=ws_url, backup_rpc_url=backup_rpc_url, default_timeout=default_timeout,
                        max_retries=max_retries, retry_backoff=retry_backoff)
    await client.initialize()
    return client
