"""Tests for the keyed change-feed subscription registry."""
import asyncio

import pytest

from receipt_pipeline.gateway.subscriptions import ReceiptSubscriptions, extract_record
from receipt_pipeline.parse.models import ReceiptStatus


def _record(receipt_id, status="completed", **fields):
    return {"id": receipt_id, "status": status, "merchant": "Market X", "total": 42.5, **fields}


@pytest.mark.asyncio
async def test_subscribe_opens_filtered_channel(realtime):
    registry = ReceiptSubscriptions(realtime, table="receipts")
    received = []

    await registry.subscribe("r-1", received.append)

    channel = realtime.channels[0]
    assert channel.name == "receipt-r-1"
    assert channel.filter == "id=eq.r-1"
    assert channel.subscribed
    assert registry.active_ids == ["r-1"]

    channel.emit(_record("r-1"))
    assert len(received) == 1
    assert received[0].status is ReceiptStatus.COMPLETED
    assert received[0].merchant == "Market X"


@pytest.mark.asyncio
async def test_resubscribe_replaces_previous(realtime):
    """Last write wins: one subscription per id, the first is closed."""
    registry = ReceiptSubscriptions(realtime)
    first, second = [], []

    await registry.subscribe("r-1", first.append)
    await registry.subscribe("r-1", second.append)

    assert len(registry) == 1
    old_channel, new_channel = realtime.channels
    assert old_channel.unsubscribe_calls == 1
    assert new_channel.unsubscribe_calls == 0

    old_channel.emit(_record("r-1"))
    new_channel.emit(_record("r-1"))
    assert first == []
    assert len(second) == 1


@pytest.mark.asyncio
async def test_unsubscribe_twice_is_noop(realtime):
    registry = ReceiptSubscriptions(realtime)
    unsubscribe = await registry.subscribe("r-1", lambda receipt: None)

    await unsubscribe()
    await unsubscribe()

    assert len(registry) == 0
    assert realtime.channels[0].unsubscribe_calls == 1


@pytest.mark.asyncio
async def test_stale_handle_does_not_remove_newer_subscription(realtime):
    registry = ReceiptSubscriptions(realtime)
    received = []
    stale_unsubscribe = await registry.subscribe("r-1", lambda receipt: None)
    await registry.subscribe("r-1", received.append)

    await stale_unsubscribe()

    assert registry.active_ids == ["r-1"]
    realtime.channels[1].emit(_record("r-1"))
    assert len(received) == 1


@pytest.mark.asyncio
async def test_event_after_unsubscribe_is_dropped(realtime):
    """Events still in flight after close never reach the callback."""
    registry = ReceiptSubscriptions(realtime)
    received = []
    unsubscribe = await registry.subscribe("r-1", received.append)

    await unsubscribe()
    realtime.channels[0].emit(_record("r-1"))

    assert received == []


@pytest.mark.asyncio
async def test_event_for_other_id_is_dropped(realtime):
    registry = ReceiptSubscriptions(realtime)
    received = []
    await registry.subscribe("r-1", received.append)

    realtime.channels[0].emit(_record("r-2"))

    assert received == []


@pytest.mark.asyncio
async def test_unsubscribe_all(realtime):
    registry = ReceiptSubscriptions(realtime)
    await registry.unsubscribe_all()

    for receipt_id in ("r-1", "r-2", "r-3"):
        await registry.subscribe(receipt_id, lambda receipt: None)
    await registry.unsubscribe_all()

    assert len(registry) == 0
    assert [channel.unsubscribe_calls for channel in realtime.channels] == [1, 1, 1]

    await registry.unsubscribe_all()
    assert [channel.unsubscribe_calls for channel in realtime.channels] == [1, 1, 1]


@pytest.mark.asyncio
async def test_unsubscribe_by_id(realtime):
    registry = ReceiptSubscriptions(realtime)
    await registry.subscribe("r-1", lambda receipt: None)
    await registry.subscribe("r-2", lambda receipt: None)

    await registry.unsubscribe("r-1")
    await registry.unsubscribe("unknown")

    assert registry.active_ids == ["r-2"]


@pytest.mark.asyncio
async def test_async_callback_is_scheduled(realtime):
    registry = ReceiptSubscriptions(realtime)
    delivered = asyncio.Event()
    received = []

    async def on_update(receipt):
        received.append(receipt)
        delivered.set()

    await registry.subscribe("r-1", on_update)
    realtime.channels[0].emit(_record("r-1", status="error", error_message="boom"))
    await asyncio.wait_for(delivered.wait(), timeout=1)

    assert received[0].status is ReceiptStatus.ERROR
    assert received[0].error_message == "boom"


@pytest.mark.asyncio
async def test_failed_channel_subscribe_is_not_registered(realtime):
    registry = ReceiptSubscriptions(realtime)
    original_channel = realtime.channel

    def failing_channel(name):
        channel = original_channel(name)

        async def subscribe(callback=None):
            raise ConnectionError("socket closed")

        channel.subscribe = subscribe
        return channel

    realtime.channel = failing_channel

    with pytest.raises(ConnectionError):
        await registry.subscribe("r-1", lambda receipt: None)
    assert len(registry) == 0


def test_extract_record_shapes():
    assert extract_record({"data": {"record": {"id": "a"}}}) == {"id": "a"}
    assert extract_record({"new": {"id": "b"}}) == {"id": "b"}
    assert extract_record({"data": {"type": "DELETE"}}) is None
    assert extract_record("nonsense") is None


@pytest.mark.asyncio
async def test_raising_callback_is_logged_and_contained(realtime, caplog):
    registry = ReceiptSubscriptions(realtime)

    def on_update(receipt):
        raise RuntimeError("render failed")

    await registry.subscribe("r-1", on_update)
    realtime.channels[0].emit(_record("r-1"))

    assert "render failed" in caplog.text
    assert registry.active_ids == ["r-1"]


@pytest.mark.asyncio
async def test_raising_async_callback_is_collected(realtime, caplog):
    registry = ReceiptSubscriptions(realtime)

    async def on_update(receipt):
        raise RuntimeError("async render failed")

    await registry.subscribe("r-1", on_update)
    realtime.channels[0].emit(_record("r-1"))
    await registry.drain()

    assert "async render failed" in caplog.text
    assert not registry._pending
