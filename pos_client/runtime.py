"""
Runtime wiring.

Builds the collaborators of one client instance from ``Settings`` and owns
their lifecycle, so the UI shell only deals with a single object:

    client = PosClient.from_settings(get_settings())
    await client.start()
    sync = await client.open_terminal("pos-1")
    ...
    await client.close()
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

from .account_service import AccountService, SessionPersistence
from .config import Settings
from .connection_status import ConnectionMonitor
from .events import EventBus
from .offline_queue import OfflineQueue
from .pos_api import PosApi, terminal_is_inactive
from .realtime import CoordinatorOptions, RealtimeManager
from .request_client import RequestClient
from .resource_sync import ResourceSync
from .session_store import SessionStore
from .storage_bus import StorageBus

logger = logging.getLogger("pos_client.runtime")


class PosClient:
    def __init__(
        self,
        settings: Settings,
        account_service: AccountService,
        storage_bus: Optional[StorageBus] = None,
        event_bus: Optional[EventBus] = None,
        offline_queue: Optional[OfflineQueue] = None,
    ):
        self.settings = settings
        self.event_bus = event_bus or EventBus()
        self.storage_bus = storage_bus
        self.offline_queue = offline_queue
        self.account_service = account_service
        self.session_store = SessionStore(account_service)
        self.request_client = RequestClient.from_settings(settings, self.session_store)
        self.api = PosApi(
            self.request_client,
            session_store=self.session_store,
            event_bus=self.event_bus,
            storage_bus=storage_bus,
            storage_key=settings.storage_key,
            offline_queue=offline_queue,
        )
        self.realtime = RealtimeManager(self.event_bus, storage_bus, settings.storage_key)
        self.connection = ConnectionMonitor(self.api, check_interval=settings.polling_interval)
        self.resources: Dict[str, ResourceSync] = {}

    @classmethod
    def from_settings(cls, settings: Settings, redis_client=None) -> "PosClient":
        if redis_client is None:
            from .redis_client import get_redis

            redis_client = get_redis()
        storage_bus = StorageBus(
            settings.client_id,
            redis_client=redis_client,
            channel=f"{settings.channel_prefix}storage",
        )
        account_service = AccountService(
            settings.account_service_url,
            api_key=settings.account_service_key,
            timeout=settings.request_timeout,
            persistence=SessionPersistence(redis_client, settings.client_id),
            storage_bus=storage_bus,
        )
        offline_queue = OfflineQueue(redis_client, settings.client_id, key_prefix=settings.offline_queue_key)
        return cls(settings, account_service, storage_bus=storage_bus, offline_queue=offline_queue)

    async def start(self) -> None:
        if self.storage_bus is not None:
            await self.storage_bus.start()
        self.account_service.watch_storage()
        await self.session_store.initialize()

    async def open_terminal(self, terminal_id: str, options: Optional[CoordinatorOptions] = None) -> ResourceSync:
        """Create (or replace) the synced view of one terminal and its catalog."""
        await self.close_terminal(terminal_id)

        async def fetch():
            return await self.api.fetch_terminal_with_products(terminal_id)

        sync = ResourceSync(
            terminal_id,
            fetch,
            retry_delay=self.settings.retry_base_delay * 2,
            is_inactive=terminal_is_inactive,
        )
        self.resources[terminal_id] = sync
        await self.realtime.attach(terminal_id, sync, options or CoordinatorOptions.from_settings(self.settings))
        sync.refetch()
        return sync

    async def close_terminal(self, terminal_id: str) -> None:
        await self.realtime.detach(terminal_id)
        sync = self.resources.pop(terminal_id, None)
        if sync is not None:
            await sync.close()

    async def close(self) -> None:
        for terminal_id in list(self.resources.keys()):
            await self.close_terminal(terminal_id)
        await self.realtime.detach_all()
        await self.connection.stop()
        self.account_service.unwatch_storage()
        self.session_store.close()
        if self.storage_bus is not None:
            await self.storage_bus.stop()
        logger.info("pos_client_closed")
