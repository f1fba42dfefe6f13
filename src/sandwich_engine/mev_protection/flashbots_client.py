"""
Private relay client.

Speaks the Flashbots-compatible ``eth_sendBundle`` JSON-RPC dialect. Every
request is authenticated with an ``X-Flashbots-Signature`` header: the
relay signing key's address and its EIP-191 signature over the keccak hash
of the request body.
"""
import asyncio
import json
import logging
from typing import Any, Dict, Optional

import aiohttp
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import keccak

from ..errors import NetworkError
from ..models import Bundle, SubmissionOutcome, SubmissionResult

logger = logging.getLogger(__name__)

DEFAULT_RELAY_URL = "https://relay.flashbots.net"


class RelayClient:
    """Submits bundles to a single relay endpoint."""

    def __init__(
        self,
        signing_key: str,
        relay_url: str = DEFAULT_RELAY_URL,
        timeout: float = 1.5,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """
        Initialize the relay client.

        Args:
            signing_key: Key identifying the searcher to the relay (should not hold funds)
            relay_url: Relay JSON-RPC endpoint
            timeout: Request deadline in seconds
            session: Shared aiohttp session (created on initialize when omitted)
        """
        self.account = Account.from_key(signing_key)
        self.relay_url = relay_url
        self.timeout = timeout
        self.session = session
        self._owns_session = session is None
        self._request_id = 0

        self.stats = {
            "bundles_sent": 0,
            "bundles_accepted": 0,
            "bundles_rejected": 0,
            "network_errors": 0,
        }

    async def initialize(self) -> None:
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={"User-Agent": "sandwich-engine/0.1"},
            )
        logger.info(f"Relay client initialized for {self.relay_url}")

    async def close(self) -> None:
        if self.session is not None and self._owns_session:
            await self.session.close()
            self.session = None

    def sign_body(self, body: str) -> str:
        """X-Flashbots-Signature value for a serialized request body."""
        message = encode_defunct(text="0x" + keccak(text=body).hex())
        signed = self.account.sign_message(message)
        return f"{self.account.address}:0x{bytes(signed.signature).hex()}"

    def build_request(self, method: str, params: list) -> Dict[str, Any]:
        self._request_id += 1
        return {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}

    async def send_bundle(self, bundle: Bundle) -> SubmissionResult:
        """
        Send ``bundle`` with eth_sendBundle.

        Returns:
            SubmissionResult with outcome ACCEPTED or REJECTED

        Raises:
            NetworkError: Transport failure, timeout or relay server error.
        """
        request = self.build_request("eth_sendBundle", [{
            "txs": bundle.raw_transactions,
            "blockNumber": hex(bundle.target_block),
        }])
        self.stats["bundles_sent"] += 1

        response = await self._post(request)
        error = response.get("error")
        if error:
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            self.stats["bundles_rejected"] += 1
            logger.debug(f"Relay {self.relay_url} rejected {bundle.bundle_hash}: {message}")
            return SubmissionResult(
                bundle_hash=bundle.bundle_hash,
                relay=self.relay_url,
                outcome=SubmissionOutcome.REJECTED,
                target_block=bundle.target_block,
                error=message,
            )

        result = response.get("result") or {}
        self.stats["bundles_accepted"] += 1
        return SubmissionResult(
            bundle_hash=bundle.bundle_hash,
            relay=self.relay_url,
            outcome=SubmissionOutcome.ACCEPTED,
            target_block=bundle.target_block,
            relay_bundle_hash=result.get("bundleHash") if isinstance(result, dict) else None,
        )

    async def _post(self, request: Dict[str, Any]) -> Dict[str, Any]:
        if self.session is None:
            raise RuntimeError("Relay client not initialized")

        body = json.dumps(request)
        headers = {
            "Content-Type": "application/json",
            "X-Flashbots-Signature": self.sign_body(body),
        }
        try:
            async with self.session.post(self.relay_url, data=body, headers=headers,
                                         timeout=aiohttp.ClientTimeout(total=self.timeout)) as response:
                if response.status >= 500:
                    text = await response.text()
                    raise NetworkError(f"Relay {self.relay_url} HTTP {response.status}: {text[:200]}")
                if response.status != 200:
                    text = await response.text()
                    return {"error": {"message": f"HTTP {response.status}: {text[:200]}"}}
                try:
                    payload = await response.json(content_type=None)
                except ValueError as e:
                    logger.warning(f"Relay {self.relay_url} returned an unreadable body: {e}")
                    return {"error": {"message": f"malformed response: {e}"}}
                if not isinstance(payload, dict):
                    return {"error": {"message": f"unexpected response: {str(payload)[:200]}"}}
                return payload
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.stats["network_errors"] += 1
            raise NetworkError(f"Relay {self.relay_url} unreachable: {e!r}") from e
        except NetworkError:
            self.stats["network_errors"] += 1
            raise

    def get_stats(self) -> Dict[str, Any]:
        stats = self.stats.copy()
        if stats["bundles_sent"] > 0:
            stats["acceptance_rate"] = stats["bundles_accepted"] / stats["bundles_sent"] * 100
        else:
            stats["acceptance_rate"] = 0.0
        return stats


# Convenience functions

async def create_relay_client(signing_key: str, relay_url: str = DEFAULT_RELAY_URL,
                              timeout: float = 1.5) -> RelayClient:
    """Create and initialize a relay client."""
    client = RelayClient(signing_key, relay_url=relay_url, timeout=timeout)
    await client.initialize()
    return client
