"""
Offline queue for terminal mutations.

A mutation that fails with a network error while the API is unreachable is
stored in a Redis list and replayed, in order, once the API answers again
(see ``ConnectionMonitor``). Reads are never queued.
"""

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .outcomes import OutcomeKind, RequestOutcome
from .request_client import RequestSpec

logger = logging.getLogger("pos_client.offline_queue")

DEFAULT_QUEUE_KEY = "api_offline_queue"

# Le serveur reste injoignable ou la session est à renouveler : on garde la requête
_KEEP_KINDS = (OutcomeKind.NETWORK_ERROR, OutcomeKind.AUTH_ERROR)

Executor = Callable[[RequestSpec], Awaitable[RequestOutcome]]


@dataclass(frozen=True)
class QueuedRequest:
    method: str
    path: str
    params: Optional[Dict[str, Any]] = None
    json: Any = None
    queued_at: float = 0.0

    @classmethod
    def from_spec(cls, spec: RequestSpec) -> "QueuedRequest":
        return cls(spec.method, spec.path, spec.params, spec.json, time.time())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueuedRequest":
        return cls(
            method=data["method"],
            path=data["path"],
            params=data.get("params"),
            json=data.get("json"),
            queued_at=float(data.get("queued_at") or 0.0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "method": self.method,
            "path": self.path,
            "params": self.params,
            "json": self.json,
            "queued_at": self.queued_at,
        }

    def to_spec(self) -> RequestSpec:
        return RequestSpec(self.method, self.path, params=self.params, json=self.json)


@dataclass(frozen=True)
class ReplayResult:
    request: QueuedRequest
    outcome: RequestOutcome

    @property
    def success(self) -> bool:
        return self.outcome.ok


class OfflineQueue:
    """Redis list of mutations waiting for the API to come back."""

    def __init__(self, redis_client, client_id: str, key_prefix: str = DEFAULT_QUEUE_KEY):
        """
        Args:
            redis_client: async Redis client (``get_redis()`` when None)
            client_id: instance id, one queue per instance
            key_prefix: Redis key prefix, the key is ``{key_prefix}:{client_id}``
        """
        self._redis = redis_client
        self.client_id = client_id
        self.key_prefix = key_prefix

    def _get_redis(self):
        if self._redis is None:
            from .redis_client import get_redis

            self._redis = get_redis()
        return self._redis

    @property
    def key(self) -> str:
        return f"{self.key_prefix}:{self.client_id}"

    async def add(self, spec: RequestSpec) -> QueuedRequest:
        request = QueuedRequest.from_spec(spec)
        await self._get_redis().rpush(self.key, json.dumps(request.to_dict()))
        logger.info("offline_request_queued method=%s path=%s", spec.method, spec.path)
        return request

    async def _raw_items(self) -> List[str]:
        raw = await self._get_redis().lrange(self.key, 0, -1)
        return [r.decode("utf-8") if isinstance(r, bytes) else r for r in raw or []]

    async def items(self) -> List[QueuedRequest]:
        requests = []
        for raw in await self._raw_items():
            try:
                requests.append(QueuedRequest.from_dict(json.loads(raw)))
            except (ValueError, KeyError) as e:
                logger.error("offline_queue_entry_invalid error=%s", repr(e))
        return requests

    async def size(self) -> int:
        return int(await self._get_redis().llen(self.key) or 0)

    async def clear(self) -> None:
        await self._get_redis().delete(self.key)
        logger.info("offline_queue_cleared key=%s", self.key)

    async def process(self, execute: Executor) -> List[ReplayResult]:
        """
        Replay queued requests in order.

        A request is removed once it succeeds or is rejected by the API
        (validation, not found, other errors). Replay stops at the first
        network or auth error and leaves that request and the following ones
        queued.

        Args:
            execute: coroutine function sending one ``RequestSpec``

        Returns:
            One ``ReplayResult`` per request sent
        """
        results: List[ReplayResult] = []
        redis = self._get_redis()

        for raw in await self._raw_items():
            try:
                request = QueuedRequest.from_dict(json.loads(raw))
            except (ValueError, KeyError) as e:
                logger.error("offline_queue_entry_dropped error=%s", repr(e))
                await redis.lrem(self.key, 1, raw)
                continue

            outcome = await execute(request.to_spec())
            results.append(ReplayResult(request, outcome))
            if outcome.kind in _KEEP_KINDS:
                logger.warning(
                    "offline_replay_paused method=%s path=%s kind=%s",
                    request.method, request.path, outcome.kind.value,
                )
                break

            await redis.lrem(self.key, 1, raw)
            if not outcome.ok:
                logger.warning(
                    "offline_request_rejected method=%s path=%s kind=%s message=%s",
                    request.method, request.path, outcome.kind.value, outcome.message,
                )

        if results:
            logger.info(
                "offline_queue_processed sent=%s succeeded=%s",
                len(results), sum(1 for r in results if r.success),
            )
        return results
