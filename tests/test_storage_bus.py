"""
Tests for the cross-instance StorageBus and the same-instance EventBus.

Run with:
    pytest tests/test_storage_bus.py -v
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from pos_client.events import PRODUCT_ASSIGNMENT_CHANGED, EventBus
from pos_client.storage_bus import StorageBus


@pytest.fixture
def redis_mock():
    redis = MagicMock()
    redis.publish = AsyncMock(return_value=1)
    return redis


@pytest.mark.asyncio
class TestStorageBus:
    async def test_publish_tags_origin(self, redis_mock):
        bus = StorageBus("tab-1", redis_client=redis_mock, channel="pos:storage")

        await bus.publish("pos-terminals-data", "v1")

        channel, message = redis_mock.publish.await_args.args
        assert channel == "pos:storage"
        assert json.loads(message) == {"origin": "tab-1", "key": "pos-terminals-data", "value": "v1"}

    async def test_publish_failure_is_logged_not_raised(self, redis_mock):
        redis_mock.publish = AsyncMock(side_effect=ConnectionError("redis down"))
        bus = StorageBus("tab-1", redis_client=redis_mock)

        await bus.publish("pos-terminals-data", None)

    async def test_dispatch_skips_own_writes(self, redis_mock):
        bus = StorageBus("tab-1", redis_client=redis_mock)
        received = []
        bus.subscribe(lambda key, value: received.append((key, value)))

        own = json.dumps({"origin": "tab-1", "key": "k", "value": "v"})
        other = json.dumps({"origin": "tab-2", "key": "k", "value": "v"}).encode("utf-8")

        assert await bus.dispatch(own) == 0
        assert await bus.dispatch(other) == 1
        assert received == [("k", "v")]

    async def test_dispatch_ignores_garbage(self, redis_mock):
        bus = StorageBus("tab-1", redis_client=redis_mock)
        bus.subscribe(lambda key, value: None)

        assert await bus.dispatch("not json") == 0
        assert await bus.dispatch(json.dumps(["no", "key"])) == 0
        assert await bus.dispatch(None) == 0

    async def test_async_callbacks_awaited(self, redis_mock):
        bus = StorageBus("tab-1", redis_client=redis_mock)
        callback = AsyncMock()
        bus.subscribe(callback)

        await bus.dispatch(json.dumps({"origin": "tab-2", "key": "k", "value": None}))

        callback.assert_awaited_once_with("k", None)

    async def test_failing_callback_does_not_block_others(self, redis_mock):
        bus = StorageBus("tab-1", redis_client=redis_mock)
        received = []

        def broken(key, value):
            raise RuntimeError("boom")

        bus.subscribe(broken)
        bus.subscribe(lambda key, value: received.append(key))

        delivered = await bus.dispatch(json.dumps({"origin": "tab-2", "key": "k", "value": "v"}))

        assert delivered == 1
        assert received == ["k"]

    async def test_unsubscribe(self, redis_mock):
        bus = StorageBus("tab-1", redis_client=redis_mock)
        unsubscribe = bus.subscribe(lambda key, value: None)
        assert bus.listener_count == 1
        unsubscribe()
        unsubscribe()
        assert bus.listener_count == 0

    async def test_run_loop_delivers_messages(self, redis_mock):
        messages = [
            {"type": "message", "data": json.dumps({"origin": "tab-2", "key": "k", "value": "v"})},
        ]

        async def get_message(**kwargs):
            if messages:
                return messages.pop(0)
            await asyncio.sleep(0.01)
            return None

        pubsub = MagicMock()
        pubsub.subscribe = AsyncMock()
        pubsub.unsubscribe = AsyncMock()
        pubsub.close = AsyncMock()
        pubsub.get_message = get_message
        redis_mock.pubsub = MagicMock(return_value=pubsub)

        bus = StorageBus("tab-1", redis_client=redis_mock, channel="pos:storage")
        received = []
        bus.subscribe(lambda key, value: received.append(key))

        await bus.start()
        await asyncio.sleep(0.05)
        await bus.stop()

        pubsub.subscribe.assert_awaited_once_with("pos:storage")
        pubsub.close.assert_awaited_once()
        assert received == ["k"]


class TestEventBus:
    def test_emit_adds_timestamp(self):
        bus = EventBus()
        received = []
        bus.on("focus", received.append)

        bus.dispatch_focus()

        assert "timestamp" in received[0]

    def test_failing_handler_isolated(self):
        bus = EventBus()
        received = []

        def broken(detail):
            raise RuntimeError("boom")

        bus.on("terminal_updated", broken)
        bus.on("terminal_updated", received.append)
        bus.notify_terminal_update("pos-1")

        assert received[0]["terminalId"] == "pos-1"

    def test_assignment_action_validated(self):
        bus = EventBus()
        with pytest.raises(ValueError):
            bus.notify_product_assignment_change("pos-1", ["p-1"], "moved")

    def test_assignment_detail(self):
        bus = EventBus()
        received = []
        bus.on(PRODUCT_ASSIGNMENT_CHANGED, received.append)

        bus.notify_product_assignment_change("pos-1", ("p-1", "p-2"), "assigned")

        assert received[0]["productIds"] == ["p-1", "p-2"]
        assert received[0]["action"] == "assigned"

    def test_listener_count_after_unsubscribe(self):
        bus = EventBus()
        off = bus.on("focus", lambda detail: None)
        bus.on("product_updated", lambda detail: None)
        assert bus.listener_count() == 2
        assert bus.listener_count("focus") == 1
        off()
        assert bus.listener_count("focus") == 0
        assert bus.listener_count() == 1
