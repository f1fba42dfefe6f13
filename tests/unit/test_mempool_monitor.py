"""
Unit tests for the mempool monitor.

Tests backpressure, router filtering, hash resolution and the resubscribing
pending stream.
"""
import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from sandwich_engine.errors import NetworkError
from sandwich_engine.mev_detection.mempool_monitor import MempoolConfig, MempoolMonitor
from sandwich_engine.models import PendingTransaction

ROUTER = "0x7a250d5630B4cF539739dF2C5dAcb4c659F2488D"
OTHER = "0x" + "99" * 20


def make_tx(n, to=ROUTER):
    return PendingTransaction(hash="0x" + f"{n:064x}", sender="0x" + "11" * 20, to=to, input=b"")


def node_tx(n, to=ROUTER):
    return {"hash": "0x" + f"{n:064x}", "from": "0x" + "11" * 20, "to": to, "input": "0x38ed1739",
            "value": 0, "gas": 200_000, "nonce": 3, "maxFeePerGas": 50, "maxPriorityFeePerGas": 2}


def make_monitor(node=None, **overrides):
    config = MempoolConfig(tracked_routers=frozenset({ROUTER}), backoff_base_seconds=0.0, **overrides)
    return MempoolMonitor(node or Mock(), config)


def pending_stream(*batches):
    """subscribe_pending replacement: each call plays the next batch (hash list or exception)."""
    remaining = list(batches)

    async def subscribe_pending():
        batch = remaining.pop(0) if remaining else []
        if isinstance(batch, Exception):
            raise batch
        for tx_hash in batch:
            yield tx_hash
        if not remaining:
            await asyncio.Event().wait()

    return subscribe_pending


async def take(stream, count):
    items = []
    async for item in stream:
        items.append(item)
        if len(items) == count:
            break
    await stream.aclose()
    return items


class TestMempoolConfig:
    """Test monitor configuration."""

    def test_routers_lowercased(self):
        config = MempoolConfig(tracked_routers=frozenset({ROUTER}))
        assert config.tracked_routers == frozenset({ROUTER.lower()})

    def test_unknown_policy(self):
        with pytest.raises(ValueError):
            MempoolConfig(backpressure_policy="block")


class TestBackpressure:
    """Test the bounded hand-off queue."""

    @pytest.mark.asyncio
    async def test_drop_oldest(self):
        monitor = make_monitor(queue_size=2, backpressure_policy="drop_oldest")

        for n in range(3):
            assert monitor.enqueue(make_tx(n))

        assert monitor.queue.qsize() == 2
        assert monitor.queue.get_nowait().hash == make_tx(1).hash
        assert monitor.stats["dropped_oldest"] == 1

    @pytest.mark.asyncio
    async def test_reject_new(self):
        monitor = make_monitor(queue_size=2, backpressure_policy="reject_new")

        assert monitor.enqueue(make_tx(0))
        assert monitor.enqueue(make_tx(1))
        assert not monitor.enqueue(make_tx(2))

        assert monitor.queue.get_nowait().hash == make_tx(0).hash
        assert monitor.stats["rejected_new"] == 1


class TestIngest:
    """Test resolution and router filtering."""

    def test_is_tracked(self):
        monitor = make_monitor()

        assert monitor.is_tracked(make_tx(1, to=ROUTER.lower()))
        assert not monitor.is_tracked(make_tx(1, to=OTHER))
        assert not monitor.is_tracked(make_tx(1, to=None))

    @pytest.mark.asyncio
    async def test_tracked_transaction_enqueued(self):
        node = Mock()
        node.get_transaction = AsyncMock(return_value=node_tx(1))
        monitor = make_monitor(node)

        assert await monitor.ingest("0x01")

        tx = monitor.queue.get_nowait()
        assert tx.to == ROUTER.lower()
        assert tx.input == bytes.fromhex("38ed1739")
        assert tx.max_priority_fee_per_gas == 2

    @pytest.mark.asyncio
    async def test_untracked_transaction_skipped(self):
        node = Mock()
        node.get_transaction = AsyncMock(return_value=node_tx(1, to=OTHER))
        monitor = make_monitor(node)

        assert not await monitor.ingest("0x01")
        assert monitor.queue.empty()
        assert monitor.stats["not_tracked"] == 1

    @pytest.mark.asyncio
    async def test_resolve_failures(self):
        node = Mock()
        node.get_transaction = AsyncMock(side_effect=[NetworkError("timeout"), None])
        monitor = make_monitor(node)

        assert await monitor.resolve("0x01") is None
        assert await monitor.resolve("0x02") is None
        assert monitor.stats["resolve_failures"] == 2


class TestPendingStream:
    """Test the pending hash stream."""

    @pytest.mark.asyncio
    async def test_duplicates_suppressed(self):
        node = Mock()
        node.subscribe_pending = pending_stream(["0xa", "0xa", "0xb"])
        monitor = make_monitor(node)

        assert await take(monitor.pending_hashes(), 2) == ["0xa", "0xb"]
        assert monitor.stats["duplicates"] == 1

    @pytest.mark.asyncio
    async def test_single_use(self):
        node = Mock()
        node.subscribe_pending = pending_stream(["0xa"])
        monitor = make_monitor(node)

        first = monitor.pending_hashes()
        assert await first.__anext__() == "0xa"

        with pytest.raises(RuntimeError):
            await monitor.pending_hashes().__anext__()
        await first.aclose()

    @pytest.mark.asyncio
    async def test_resubscribes_and_reconciles(self):
        node = Mock()
        node.subscribe_pending = pending_stream(["0xa"], ConnectionError("reset"), ["0xb"])
        node.get_block_number = AsyncMock(return_value=250)
        reconcile = AsyncMock()
        monitor = make_monitor(node)
        monitor.reconcile = reconcile

        assert await take(monitor.pending_hashes(), 2) == ["0xa", "0xb"]

        assert monitor.stats["reconnects"] == 2
        reconcile.assert_awaited_with(250)

    @pytest.mark.asyncio
    async def test_reconcile_failure_keeps_streaming(self):
        node = Mock()
        node.subscribe_pending = pending_stream(NetworkError("closed"), ["0xc"])
        node.get_block_number = AsyncMock(side_effect=NetworkError("timeout"))
        monitor = make_monitor(node)
        monitor.reconcile = AsyncMock()

        assert await take(monitor.pending_hashes(), 1) == ["0xc"]
        monitor.reconcile.assert_not_awaited()

    def test_backoff_delay(self):
        monitor = MempoolMonitor(Mock(), MempoolConfig(backoff_base_seconds=0.5, backoff_max_seconds=30.0))

        assert monitor.backoff_delay(0) == 0.5
        assert monitor.backoff_delay(1) == 1.0
        assert monitor.backoff_delay(3) == 4.0
        assert monitor.backoff_delay(10) == 30.0


class TestRun:
    """Test the background ingest loop."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        node = Mock()
        node.subscribe_pending = pending_stream(["0xa", "0xb"])
        node.get_transaction = AsyncMock(side_effect=lambda tx_hash, timeout=None: node_tx(int(tx_hash, 16)))
        monitor = make_monitor(node)

        await monitor.start()
        for _ in range(50):
            if monitor.queue.qsize() == 2:
                break
            await asyncio.sleep(0.01)
        await monitor.stop()

        assert monitor.queue.qsize() == 2
        assert monitor.stats["forwarded"] == 2
        assert not monitor.is_running
