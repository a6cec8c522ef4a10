"""
Realtime coordination: decides *when* a resource is refetched.

Four independent sources feed a coordinator:
    - TIMER: periodic polling (default 30s)
    - FOCUS: the window regained focus
    - CROSS_TAB_STORAGE: another instance wrote the terminals storage key
    - SAME_TAB_EVENT: a local mutation emitted a terminal/product event

Every source emits the same ``InvalidationSignal``; the coordinator folds
all signals raised during one event-loop tick into a single ``refetch()``
call on its target. The target's own in-flight guard drops the rest.

``RealtimeManager`` keeps at most one coordinator per resource key, so
repeated attach/detach cycles never accumulate listeners or timers.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Protocol

from .events import (
    FOCUS,
    POS_TERMINAL_UPDATED,
    PRODUCT_ASSIGNMENT_CHANGED,
    PRODUCT_UPDATED,
    TERMINAL_UPDATED,
    EventBus,
)
from .pos_api import TERMINALS_STORAGE_KEY

logger = logging.getLogger("pos_client.realtime")


class SignalSourceKind(str, Enum):
    TIMER = "timer"
    FOCUS = "focus"
    CROSS_TAB_STORAGE = "cross_tab_storage"
    SAME_TAB_EVENT = "same_tab_event"


@dataclass(frozen=True)
class InvalidationSignal:
    source: SignalSourceKind
    key: str


Emit = Callable[[InvalidationSignal], None]


class Refetchable(Protocol):
    def refetch(self) -> bool: ...


@dataclass(frozen=True)
class CoordinatorOptions:
    enable_polling: bool = True
    polling_interval: float = 30.0
    enable_focus_refresh: bool = True

    @classmethod
    def from_settings(cls, settings) -> "CoordinatorOptions":
        return cls(
            enable_polling=settings.enable_polling,
            polling_interval=settings.polling_interval,
            enable_focus_refresh=settings.enable_focus_refresh,
        )


# -----------------------------
# Signal sources
# -----------------------------
class SignalSource(ABC):
    """A source of invalidation signals for one resource key."""

    kind: SignalSourceKind

    def __init__(self, key: str):
        self.key = key
        self.is_running = False

    def _signal(self) -> InvalidationSignal:
        return InvalidationSignal(self.kind, self.key)

    @abstractmethod
    async def start(self, emit: Emit) -> None:
        pass

    @abstractmethod
    async def stop(self) -> None:
        pass


class PollingSource(SignalSource):
    kind = SignalSourceKind.TIMER

    def __init__(self, key: str, interval: float = 30.0):
        super().__init__(key)
        self.interval = interval
        self.task: Optional[asyncio.Task] = None

    async def start(self, emit: Emit) -> None:
        if self.is_running:
            return
        self.is_running = True
        self.task = asyncio.create_task(self._run(emit))

    async def stop(self) -> None:
        if not self.is_running:
            return
        self.is_running = False
        if self.task and not self.task.done():
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
        self.task = None

    async def _run(self, emit: Emit) -> None:
        while self.is_running:
            try:
                await asyncio.sleep(self.interval)
                if self.is_running:
                    emit(self._signal())
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("polling_emit_error key=%s error=%s", self.key, repr(e))


class _BusSource(SignalSource):
    """Base for sources that hold event subscriptions."""

    def __init__(self, key: str):
        super().__init__(key)
        self._unsubscribers: List[Callable[[], None]] = []

    async def stop(self) -> None:
        if not self.is_running:
            return
        self.is_running = False
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()


class FocusSource(_BusSource):
    kind = SignalSourceKind.FOCUS

    def __init__(self, key: str, event_bus: EventBus):
        super().__init__(key)
        self.event_bus = event_bus

    async def start(self, emit: Emit) -> None:
        if self.is_running:
            return
        self.is_running = True
        self._unsubscribers.append(self.event_bus.on(FOCUS, lambda _detail: emit(self._signal())))


class CustomEventSource(_BusSource):
    kind = SignalSourceKind.SAME_TAB_EVENT

    def __init__(self, key: str, event_bus: EventBus):
        super().__init__(key)
        self.event_bus = event_bus

    def _matches(self, event_type: str, detail: dict) -> bool:
        terminal_id = detail.get("terminalId")
        if event_type == PRODUCT_UPDATED:
            # Product updates without a terminal apply to every terminal
            return not terminal_id or terminal_id == self.key
        if event_type == POS_TERMINAL_UPDATED:
            return True
        return terminal_id == self.key

    async def start(self, emit: Emit) -> None:
        if self.is_running:
            return
        self.is_running = True
        for event_type in (TERMINAL_UPDATED, PRODUCT_UPDATED, PRODUCT_ASSIGNMENT_CHANGED, POS_TERMINAL_UPDATED):
            self._unsubscribers.append(self.event_bus.on(event_type, self._handler(event_type, emit)))

    def _handler(self, event_type: str, emit: Emit):
        def handle(detail: dict) -> None:
            if self._matches(event_type, detail):
                emit(self._signal())

        return handle


class StorageSource(_BusSource):
    kind = SignalSourceKind.CROSS_TAB_STORAGE

    def __init__(self, key: str, storage_bus, storage_key: str = TERMINALS_STORAGE_KEY):
        super().__init__(key)
        self.storage_bus = storage_bus
        self.storage_key = storage_key

    async def start(self, emit: Emit) -> None:
        if self.is_running:
            return
        self.is_running = True

        def on_storage(changed_key: str, _value) -> None:
            if changed_key == self.storage_key:
                emit(self._signal())

        self._unsubscribers.append(self.storage_bus.subscribe(on_storage))


# -----------------------------
# Coordinator
# -----------------------------
class RealtimeCoordinator:
    def __init__(
        self,
        key: str,
        target: Refetchable,
        options: Optional[CoordinatorOptions] = None,
        event_bus: Optional[EventBus] = None,
        storage_bus=None,
        storage_key: str = TERMINALS_STORAGE_KEY,
    ):
        self.key = key
        self.target = target
        self.options = options or CoordinatorOptions()
        self.is_running = False
        self._pending = False
        self._flush_handle: Optional[asyncio.Handle] = None
        self.sources: List[SignalSource] = self._build_sources(event_bus, storage_bus, storage_key)

    def _build_sources(self, event_bus, storage_bus, storage_key) -> List[SignalSource]:
        sources: List[SignalSource] = []
        if self.options.enable_polling:
            sources.append(PollingSource(self.key, self.options.polling_interval))
        if event_bus is not None:
            if self.options.enable_focus_refresh:
                sources.append(FocusSource(self.key, event_bus))
            sources.append(CustomEventSource(self.key, event_bus))
        if storage_bus is not None:
            sources.append(StorageSource(self.key, storage_bus, storage_key))
        return sources

    async def start(self) -> None:
        if self.is_running:
            logger.warning("coordinator_already_running key=%s", self.key)
            return
        self.is_running = True
        for source in self.sources:
            await source.start(self._on_signal)
        logger.info(
            "coordinator_started key=%s sources=%s",
            self.key, ",".join(s.kind.value for s in self.sources) or "manual",
        )

    async def stop(self) -> None:
        if not self.is_running:
            return
        self.is_running = False
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None
        self._pending = False
        for source in self.sources:
            try:
                await source.stop()
            except Exception as e:
                logger.error("source_stop_error key=%s source=%s error=%s", self.key, source.kind.value, repr(e))
        logger.info("coordinator_stopped key=%s", self.key)

    def _on_signal(self, signal: InvalidationSignal) -> None:
        if not self.is_running:
            return
        logger.debug("invalidation_signal key=%s source=%s", signal.key, signal.source.value)
        if self._pending:
            return
        self._flush_handle = asyncio.get_running_loop().call_soon(self._flush)
        self._pending = True

    def _flush(self) -> None:
        self._pending = False
        self._flush_handle = None
        if not self.is_running:
            return
        self.target.refetch()

    def trigger(self) -> None:
        """Manual refetch request, coalesced like any other signal."""
        self._on_signal(InvalidationSignal(SignalSourceKind.SAME_TAB_EVENT, self.key))


class RealtimeManager:
    """Central registry: one running coordinator per resource key."""

    def __init__(self, event_bus: Optional[EventBus] = None, storage_bus=None, storage_key: str = TERMINALS_STORAGE_KEY):
        self.event_bus = event_bus
        self.storage_bus = storage_bus
        self.storage_key = storage_key
        self.coordinators: Dict[str, RealtimeCoordinator] = {}

    async def attach(self, key: str, target: Refetchable, options: Optional[CoordinatorOptions] = None) -> RealtimeCoordinator:
        if key in self.coordinators:
            await self.detach(key)
        coordinator = RealtimeCoordinator(
            key,
            target,
            options=options,
            event_bus=self.event_bus,
            storage_bus=self.storage_bus,
            storage_key=self.storage_key,
        )
        self.coordinators[key] = coordinator
        await coordinator.start()
        return coordinator

    async def detach(self, key: str) -> None:
        coordinator = self.coordinators.pop(key, None)
        if coordinator is not None:
            await coordinator.stop()

    async def detach_all(self) -> None:
        for key in list(self.coordinators.keys()):
            await self.detach(key)
