"""
Cross-tab storage-change notifications.

Each client instance (a browser tab in a web deployment) publishes
storage writes on a shared Redis pub/sub channel; every other instance
receives them as ``(key, value)`` notifications. Like a browser ``storage``
event, a write is never delivered back to the instance that made it.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from typing import Any, Callable, Dict, List, Optional

StorageCallback = Callable[[str, Optional[str]], Any]


class StorageBus:
    """Pub/Sub storage channel shared by all instances of one deployment."""

    def __init__(self, client_id: str, redis_client=None, channel: str = "pos:storage") -> None:
        self.client_id = client_id
        self.channel = channel
        self.logger = logging.getLogger("pos_client.storage_bus")
        self._redis = redis_client
        self._pubsub = None
        self._callbacks: List[StorageCallback] = []
        self._running = False
        self.task: Optional[asyncio.Task] = None

    def _get_redis(self):
        if self._redis is None:
            from .redis_client import get_redis

            self._redis = get_redis()
        return self._redis

    def subscribe(self, callback: StorageCallback) -> Callable[[], None]:
        """Register a listener; returns the function that removes it."""
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    @property
    def listener_count(self) -> int:
        return len(self._callbacks)

    async def publish(self, key: str, value: Optional[str]) -> None:
        message = json.dumps({"origin": self.client_id, "key": key, "value": value})
        try:
            await self._get_redis().publish(self.channel, message)
            self.logger.debug("storage_publish key=%s channel=%s", key, self.channel)
        except Exception as e:
            self.logger.error("storage_publish_failed key=%s error=%s", key, repr(e))

    async def start(self) -> None:
        if self._running:
            self.logger.warning("StorageBus already started")
            return
        self._running = True
        self.task = asyncio.create_task(self._run())
        self.logger.info("storage_bus_started channel=%s", self.channel)

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self.task and not self.task.done():
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
        self.task = None
        try:
            if self._pubsub is not None:
                await self._pubsub.unsubscribe()
                await self._pubsub.close()
        except Exception as e:
            self.logger.debug("storage_bus_close_error error=%s", repr(e))
        self._pubsub = None
        self.logger.info("storage_bus_stopped channel=%s", self.channel)

    async def _run(self) -> None:
        pubsub = self._get_redis().pubsub()
        await pubsub.subscribe(self.channel)
        self._pubsub = pubsub
        self.logger.info("storage_bus_subscribed channel=%s", self.channel)

        while self._running:
            try:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if not message:
                    await asyncio.sleep(0.05)
                    continue
                if message.get("type") != "message":
                    continue
                await self.dispatch(message.get("data"))
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error("storage_bus_loop_error error=%s", repr(e))
                await asyncio.sleep(0.2)

    @staticmethod
    def _parse(data: Any) -> Optional[Dict[str, Any]]:
        if isinstance(data, (bytes, bytearray)):
            data = data.decode("utf-8", errors="ignore")
        if not isinstance(data, str):
            return None
        try:
            evt = json.loads(data)
        except json.JSONDecodeError:
            return None
        if not isinstance(evt, dict) or "key" not in evt:
            return None
        return evt

    async def dispatch(self, data: Any) -> int:
        """Deliver one raw channel message; returns the number of listeners called."""
        evt = self._parse(data)
        if evt is None:
            self.logger.debug("storage_bus_ignored_payload")
            return 0
        if evt.get("origin") == self.client_id:
            return 0

        key = str(evt["key"])
        value = evt.get("value")
        delivered = 0
        for callback in list(self._callbacks):
            try:
                result = callback(key, value)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception as e:
                self.logger.error("storage_callback_error key=%s error=%s", key, repr(e))
        return delivered
