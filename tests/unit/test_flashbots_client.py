"""
Unit tests for the private relay client.

Tests request signing, bundle submission results and transport failures.
"""
import json
from unittest.mock import AsyncMock, MagicMock, Mock

import aiohttp
import pytest
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import keccak

from sandwich_engine.errors import NetworkError
from sandwich_engine.mev_protection.flashbots_client import RelayClient
from sandwich_engine.models import SubmissionOutcome

from factories import make_bundle

SIGNING_KEY = "0x" + "22" * 32
RELAY_URL = "https://relay.example"


def mock_session(status=200, payload=None, text="", json_error=None):
    response = Mock()
    response.status = status
    if json_error is not None:
        response.json = AsyncMock(side_effect=json_error)
    else:
        response.json = AsyncMock(return_value=payload if payload is not None else {})
    response.text = AsyncMock(return_value=text)

    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=response)
    context.__aexit__ = AsyncMock(return_value=False)

    session = Mock()
    session.post = Mock(return_value=context)
    return session


class TestRequestSigning:
    """Test the X-Flashbots-Signature header."""

    def test_signature_recovers_signer(self):
        client = RelayClient(SIGNING_KEY, relay_url=RELAY_URL)
        body = '{"jsonrpc":"2.0","id":1,"method":"eth_sendBundle","params":[]}'

        address, signature = client.sign_body(body).split(":")

        message = encode_defunct(text="0x" + keccak(text=body).hex())
        assert address == Account.from_key(SIGNING_KEY).address
        assert Account.recover_message(message, signature=signature) == address

    def test_request_ids_increase(self):
        client = RelayClient(SIGNING_KEY, relay_url=RELAY_URL)

        first = client.build_request("eth_sendBundle", [])
        second = client.build_request("eth_sendBundle", [])

        assert second["id"] == first["id"] + 1
        assert first["jsonrpc"] == "2.0"


class TestSendBundle:
    """Test eth_sendBundle handling."""

    @pytest.mark.asyncio
    async def test_accepted(self):
        session = mock_session(payload={"jsonrpc": "2.0", "id": 1, "result": {"bundleHash": "0xabc"}})
        client = RelayClient(SIGNING_KEY, relay_url=RELAY_URL, session=session)
        bundle = make_bundle(target_block=101)

        result = await client.send_bundle(bundle)

        assert result.outcome == SubmissionOutcome.ACCEPTED
        assert result.relay == RELAY_URL
        assert result.relay_bundle_hash == "0xabc"
        assert result.bundle_hash == bundle.bundle_hash

        headers = session.post.call_args[1]["headers"]
        assert "X-Flashbots-Signature" in headers
        assert client.get_stats()["acceptance_rate"] == 100.0

    @pytest.mark.asyncio
    async def test_request_payload(self):
        client = RelayClient(SIGNING_KEY, relay_url=RELAY_URL)
        client._post = AsyncMock(return_value={"result": {}})
        bundle = make_bundle(target_block=255)

        await client.send_bundle(bundle)

        request = client._post.call_args[0][0]
        assert request["method"] == "eth_sendBundle"
        assert request["params"][0]["blockNumber"] == "0xff"
        assert request["params"][0]["txs"] == bundle.raw_transactions

    @pytest.mark.asyncio
    async def test_rejected(self):
        client = RelayClient(SIGNING_KEY, relay_url=RELAY_URL)
        client._post = AsyncMock(return_value={"error": {"code": -32000, "message": "nonce too low"}})

        result = await client.send_bundle(make_bundle())

        assert result.outcome == SubmissionOutcome.REJECTED
        assert result.error == "nonce too low"
        assert client.stats["bundles_rejected"] == 1

    @pytest.mark.asyncio
    async def test_client_error_status_is_rejection(self):
        client = RelayClient(SIGNING_KEY, relay_url=RELAY_URL, session=mock_session(status=400, text="bad"))

        result = await client.send_bundle(make_bundle())

        assert result.outcome == SubmissionOutcome.REJECTED
        assert "HTTP 400" in result.error

    @pytest.mark.asyncio
    async def test_unreadable_body_is_rejection(self):
        session = mock_session(json_error=json.JSONDecodeError("Expecting value", "<html>", 0))
        client = RelayClient(SIGNING_KEY, relay_url=RELAY_URL, session=session)

        result = await client.send_bundle(make_bundle())

        assert result.outcome == SubmissionOutcome.REJECTED
        assert "malformed response" in result.error
        assert client.stats["network_errors"] == 0

    @pytest.mark.asyncio
    async def test_non_object_body_is_rejection(self):
        client = RelayClient(SIGNING_KEY, relay_url=RELAY_URL, session=mock_session(payload=["ok"]))

        result = await client.send_bundle(make_bundle())

        assert result.outcome == SubmissionOutcome.REJECTED
        assert "unexpected response" in result.error

    @pytest.mark.asyncio
    async def test_server_error_is_network_error(self):
        client = RelayClient(SIGNING_KEY, relay_url=RELAY_URL, session=mock_session(status=503, text="down"))

        with pytest.raises(NetworkError):
            await client.send_bundle(make_bundle())

        assert client.stats["network_errors"] == 1

    @pytest.mark.asyncio
    async def test_connection_error(self):
        session = Mock()
        session.post = Mock(side_effect=aiohttp.ClientConnectionError("refused"))
        client = RelayClient(SIGNING_KEY, relay_url=RELAY_URL, session=session)

        with pytest.raises(NetworkError):
            await client.send_bundle(make_bundle())

        assert client.stats["network_errors"] == 1

    @pytest.mark.asyncio
    async def test_not_initialized(self):
        client = RelayClient(SIGNING_KEY, relay_url=RELAY_URL)

        with pytest.raises(RuntimeError):
            await client.send_bundle(make_bundle())

    @pytest.mark.asyncio
    async def test_shared_session_not_closed(self):
        session = mock_session()
        session.close = AsyncMock()
        client = RelayClient(SIGNING_KEY, relay_url=RELAY_URL, session=session)

        await client.close()

        session.close.assert_not_awaited()
