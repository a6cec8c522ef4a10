import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional

from .outcomes import OutcomeKind, RequestOutcome

logger = logging.getLogger("pos_client.connection")

_ERROR_TYPES = {
    OutcomeKind.NETWORK_ERROR: "network",
    OutcomeKind.AUTH_ERROR: "auth",
    OutcomeKind.SERVER_ERROR: "server",
}

_SUGGESTIONS = {
    "network": [
        "Check that the API server is running",
        "Verify POS_API_URL points to the API server",
    ],
    "auth": ["Sign in again"],
    "server": ["Check the API server logs"],
}


@dataclass
class ConnectionStatus:
    is_connected: bool = False
    last_checked: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    suggestions: List[str] = field(default_factory=list)


class ConnectionMonitor:
    """Periodic ``GET /health`` with change listeners."""

    def __init__(self, api, check_interval: float = 30.0, replay_offline_queue: bool = True):
        self.api = api
        self.check_interval = check_interval
        self.replay_offline_queue = replay_offline_queue
        self.status = ConnectionStatus()
        self._listeners: List[Callable[[ConnectionStatus], None]] = []
        self.task: Optional[asyncio.Task] = None

    def add_listener(self, listener: Callable[[ConnectionStatus], None]) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[ConnectionStatus], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def force_check(self) -> ConnectionStatus:
        outcome: RequestOutcome = await self.api.health()
        now = datetime.now(timezone.utc)
        if outcome.ok:
            new_status = ConnectionStatus(is_connected=True, last_checked=now)
        else:
            error_type = _ERROR_TYPES.get(outcome.kind, "server")
            new_status = ConnectionStatus(
                is_connected=False,
                last_checked=now,
                error_type=error_type,
                error_message=outcome.message,
                suggestions=list(_SUGGESTIONS.get(error_type, [])),
            )

        changed = new_status.is_connected != self.status.is_connected
        self.status = new_status
        if changed:
            logger.info("connection_status connected=%s error=%s", new_status.is_connected, new_status.error_message)
        for listener in list(self._listeners):
            try:
                listener(new_status)
            except Exception as e:
                logger.error("connection_listener_error error=%s", repr(e))
        if changed and new_status.is_connected and self.replay_offline_queue:
            await self._replay()
        return new_status

    async def _replay(self) -> None:
        try:
            results = await self.api.process_offline_queue()
        except Exception as e:
            logger.error("offline_replay_failed error=%s", repr(e))
            return
        if results:
            logger.info("offline_replay_done sent=%s", len(results))

    async def start(self) -> None:
        if self.task is not None and not self.task.done():
            return
        self.task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self.task and not self.task.done():
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
        self.task = None

    async def _run(self) -> None:
        while True:
            try:
                await self.force_check()
                await asyncio.sleep(self.check_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("connection_monitor_error error=%s", repr(e))
                await asyncio.sleep(5)
