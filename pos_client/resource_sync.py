"""
Per-resource fetch/retry state machine.

One ``ResourceSync`` instance owns the ``ResourceState`` of one resource key
(e.g. a terminal id). State changes are produced by the pure transition
functions ``start_loading`` and ``apply_outcome`` and published to
subscribers; nothing else writes the state.

Guarantees:
    - at most one fetch in flight: ``refetch()`` is ignored while the phase is
      LOADING or RETRYING;
    - every fetch is tagged with a sequence number and only the latest one
      may change the state, so a late stale completion is discarded;
    - after ``close()`` no result is applied any more.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, List, Optional, TypeVar

from .outcomes import OutcomeKind, RequestOutcome, retry_message, user_message

logger = logging.getLogger("pos_client.resource_sync")

T = TypeVar("T")

Fetcher = Callable[[], Awaitable[RequestOutcome]]
InactivePredicate = Callable[[Any], bool]


class Phase(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    RETRYING = "retrying"
    READY = "ready"
    NOT_FOUND = "not_found"
    INACTIVE = "inactive"
    FAILED = "failed"


IN_FLIGHT_PHASES = (Phase.LOADING, Phase.RETRYING)


@dataclass(frozen=True)
class ResourceState(Generic[T]):
    data: Optional[T] = None
    phase: Phase = Phase.IDLE
    retry_count: int = 0
    last_error: Optional[RequestOutcome] = None

    @property
    def in_flight(self) -> bool:
        return self.phase in IN_FLIGHT_PHASES

    @property
    def error_message(self) -> Optional[str]:
        if self.last_error is None:
            return None
        return user_message(self.last_error)

    def status_text(self, max_retries: int = 3) -> str:
        if self.phase is Phase.RETRYING and self.last_error is not None:
            return retry_message(self.last_error, self.retry_count, max_retries)
        if self.phase is Phase.LOADING:
            return "Loading terminal data..."
        return self.error_message or ""


def start_loading(state: ResourceState) -> ResourceState:
    return replace(state, phase=Phase.LOADING)


def apply_outcome(
    state: ResourceState,
    outcome: RequestOutcome,
    max_retries: int,
    is_inactive: Optional[InactivePredicate] = None,
) -> ResourceState:
    kind = outcome.kind

    if kind is OutcomeKind.SUCCESS:
        if is_inactive is not None and is_inactive(outcome.payload):
            return ResourceState(
                data=outcome.payload,
                phase=Phase.INACTIVE,
                retry_count=0,
                last_error=RequestOutcome.inactive(outcome.payload),
            )
        return ResourceState(data=outcome.payload, phase=Phase.READY, retry_count=0, last_error=None)

    if kind is OutcomeKind.NOT_FOUND:
        return ResourceState(data=None, phase=Phase.NOT_FOUND, retry_count=0, last_error=outcome)

    if kind is OutcomeKind.INACTIVE:
        return ResourceState(data=outcome.payload, phase=Phase.INACTIVE, retry_count=0, last_error=outcome)

    if outcome.is_transient and state.retry_count < max_retries:
        return replace(state, phase=Phase.RETRYING, retry_count=state.retry_count + 1, last_error=outcome)

    return replace(state, phase=Phase.FAILED, last_error=outcome)


class ResourceSync(Generic[T]):
    def __init__(
        self,
        key: str,
        fetcher: Fetcher,
        max_retries: int = 3,
        retry_delay: float = 2.0,
        is_inactive: Optional[InactivePredicate] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.key = key
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._fetcher = fetcher
        self._is_inactive = is_inactive
        self._sleep = sleep
        self._state: ResourceState[T] = ResourceState()
        self._observers: List[Callable[[ResourceState[T]], None]] = []
        self._seq = 0
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def state(self) -> ResourceState[T]:
        return self._state

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self, observer: Callable[[ResourceState[T]], None]) -> Callable[[], None]:
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def _set_state(self, state: ResourceState[T]) -> None:
        if state == self._state:
            return
        previous = self._state.phase
        self._state = state
        if previous is not state.phase:
            logger.info(
                "resource_phase %s -> %s retry=%s",
                previous.value, state.phase.value, state.retry_count,
                extra={"resource_key": self.key},
            )
        for observer in list(self._observers):
            try:
                observer(state)
            except Exception as e:
                logger.error("resource_observer_error key=%s error=%s", self.key, repr(e))

    # -----------
    # Triggers
    # -----------
    def refetch(self) -> bool:
        """Start a fetch unless one is already in flight. Returns True if started."""
        if self._closed:
            return False
        if self._state.in_flight:
            logger.debug("refetch_dropped key=%s phase=%s", self.key, self._state.phase.value)
            return False
        self._start()
        return True

    def retry(self) -> bool:
        """Manual retry: resets the retry budget and supersedes any pending fetch."""
        if self._closed:
            return False
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._state = replace(self._state, retry_count=0)
        self._start()
        return True

    def _start(self) -> None:
        self._seq += 1
        seq = self._seq
        self._set_state(start_loading(self._state))
        self._task = asyncio.create_task(self._run(seq))

    async def _run(self, seq: int) -> None:
        while True:
            try:
                outcome = await self._fetcher()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("resource_fetch_error key=%s error=%s", self.key, repr(e))
                outcome = RequestOutcome.network_error(f"Network error: {e}")

            if not self._apply(seq, outcome):
                return
            if self._state.phase is not Phase.RETRYING:
                return

            await self._sleep(self.retry_delay * self._state.retry_count)
            if seq != self._seq or self._closed:
                return

    def _apply(self, seq: int, outcome: RequestOutcome) -> bool:
        """Apply an outcome if it belongs to the latest fetch."""
        if self._closed or seq != self._seq:
            logger.debug("stale_result_discarded key=%s seq=%s latest=%s", self.key, seq, self._seq)
            return False
        self._set_state(apply_outcome(self._state, outcome, self.max_retries, self._is_inactive))
        return True

    async def wait(self) -> ResourceState[T]:
        """Wait for the current fetch (retries included) to settle."""
        while self._task is not None and not self._task.done():
            task = self._task
            try:
                await asyncio.shield(task)
            except asyncio.CancelledError:
                # A superseded fetch; anything else is our own cancellation.
                if not task.cancelled():
                    raise
        return self._state

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._observers.clear()
        logger.info("resource_sync_closed key=%s", self.key)
