"""
Endpoint layer of the POS API.

All calls go through ``_call``, which applies the single AuthError policy
of the client: an AUTH_ERROR triggers one ``SessionStore.refresh_session()``
and, if it succeeds, the request is re-issued exactly once. A 401 that
survives the refresh signs the user out. A failed refresh already signs out
inside the session store.

Successful terminal mutations are announced on the same-instance EventBus
and on the cross-instance StorageBus so that every open terminal view
refreshes. A mutation that fails with a network error is stored in the
offline queue (when one is configured) and replayed by
``process_offline_queue()``.
"""

import json
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .events import POS_TERMINAL_UPDATED, EventBus
from .offline_queue import ReplayResult
from .outcomes import OutcomeKind, RequestOutcome
from .request_client import RequestClient, RequestSpec

logger = logging.getLogger("pos_client.api")

TERMINALS_STORAGE_KEY = "pos-terminals-data"
QUEUED_OFFLINE = "QUEUED_OFFLINE"


def terminal_is_inactive(payload: Any) -> bool:
    """True when a terminal (or terminal+products bundle) is explicitly deactivated."""
    if not isinstance(payload, dict):
        return False
    terminal = payload.get("terminal", payload)
    return isinstance(terminal, dict) and terminal.get("is_active") is False


class PosApi:
    def __init__(
        self,
        client: RequestClient,
        session_store=None,
        event_bus: Optional[EventBus] = None,
        storage_bus=None,
        storage_key: str = TERMINALS_STORAGE_KEY,
        offline_queue=None,
    ):
        self.client = client
        self.session_store = session_store
        self.event_bus = event_bus
        self.storage_bus = storage_bus
        self.storage_key = storage_key
        self.offline_queue = offline_queue

    async def _call(self, spec: RequestSpec) -> RequestOutcome:
        outcome = await self.client.execute(spec)
        if outcome.kind is not OutcomeKind.AUTH_ERROR or not spec.authenticated:
            return outcome
        if self.session_store is None or self.session_store.session is None:
            return outcome

        logger.info("auth_error_refreshing method=%s path=%s status=%s", spec.method, spec.path, outcome.status)
        try:
            await self.session_store.refresh_session()
        except Exception as e:
            logger.warning("auth_refresh_failed path=%s error=%s", spec.path, repr(e))
            return outcome

        retried = await self.client.execute(spec)
        if retried.kind is OutcomeKind.AUTH_ERROR and retried.status == 401:
            logger.warning("auth_error_after_refresh path=%s, signing out", spec.path)
            await self.session_store.sign_out()
        return retried

    # =============================================
    # HEALTH
    # =============================================

    async def health(self) -> RequestOutcome:
        return await self._call(RequestSpec("GET", "/health", authenticated=False))

    # =============================================
    # POS TERMINALS
    # =============================================

    async def list_terminals(self, active_only: bool = False) -> RequestOutcome:
        params = {"active": "true"} if active_only else None
        return await self._call(RequestSpec("GET", "/pos-terminals", params=params))

    async def get_terminal(self, terminal_id: str) -> RequestOutcome:
        return await self._call(RequestSpec("GET", f"/pos-terminals/{terminal_id}"))

    async def create_terminal(self, terminal: Dict[str, Any]) -> RequestOutcome:
        name = (terminal.get("terminal_name") or "").strip()
        if not name:
            return RequestOutcome.validation_error(
                details={"terminal_name": "Terminal name is required"},
                message="Invalid terminal data: Terminal name is required",
            )
        outcome = await self._mutate(RequestSpec("POST", "/pos-terminals", json=terminal))
        if outcome.ok:
            created_id = (outcome.payload or {}).get("id") if isinstance(outcome.payload, dict) else None
            await self._announce_terminal_change(created_id)
        return outcome

    async def update_terminal(self, terminal_id: str, terminal: Dict[str, Any]) -> RequestOutcome:
        outcome = await self._mutate(RequestSpec("PUT", f"/pos-terminals/{terminal_id}", json=terminal))
        if outcome.ok:
            await self._announce_terminal_change(terminal_id)
        return outcome

    async def delete_terminal(self, terminal_id: str) -> RequestOutcome:
        outcome = await self._mutate(RequestSpec("DELETE", f"/pos-terminals/{terminal_id}"))
        if outcome.ok:
            await self._announce_terminal_change(terminal_id)
        return outcome

    # =============================================
    # OFFLINE QUEUE
    # =============================================

    async def _mutate(self, spec: RequestSpec) -> RequestOutcome:
        """Send a mutation; queue it for replay when the API is unreachable."""
        outcome = await self._call(spec)
        if outcome.kind is not OutcomeKind.NETWORK_ERROR or self.offline_queue is None:
            return outcome
        try:
            await self.offline_queue.add(spec)
        except Exception as e:
            logger.error("offline_queue_add_failed path=%s error=%s", spec.path, repr(e))
            return outcome
        return replace(outcome, code=QUEUED_OFFLINE, message="Currently offline. Request has been queued.")

    async def process_offline_queue(self) -> List[ReplayResult]:
        """Replay queued mutations; announces a terminal change when any succeeded."""
        if self.offline_queue is None:
            return []
        results = await self.offline_queue.process(self._call)
        if any(r.success for r in results):
            await self._announce_terminal_change(None)
        return results

    # =============================================
    # PRODUCTS & ORDERS
    # =============================================

    async def list_products(self, pos_id: Optional[str] = None) -> RequestOutcome:
        return await self._call(RequestSpec("GET", "/products", params={"posId": pos_id}))

    async def get_order(self, order_id: str) -> RequestOutcome:
        return await self._call(RequestSpec("GET", f"/orders/{order_id}"))

    async def fetch_terminal_with_products(self, terminal_id: str) -> RequestOutcome:
        """Terminal record plus its product catalog, as one outcome."""
        terminal_outcome = await self.get_terminal(terminal_id)
        if not terminal_outcome.ok:
            return terminal_outcome

        terminal = terminal_outcome.payload
        if terminal is None:
            return RequestOutcome.not_found(f"POS terminal {terminal_id} not found", code="TERMINAL_NOT_FOUND")
        if terminal_is_inactive(terminal):
            return RequestOutcome.success({"terminal": terminal, "products": []}).with_attempts(
                terminal_outcome.attempts_used
            )

        products_outcome = await self.list_products(terminal_id)
        attempts = terminal_outcome.attempts_used + products_outcome.attempts_used
        if not products_outcome.ok:
            return products_outcome.with_attempts(attempts)
        return RequestOutcome.success(
            {"terminal": terminal, "products": products_outcome.payload or []}
        ).with_attempts(attempts)

    # =============================================
    # CHANGE NOTIFICATIONS
    # =============================================

    async def _announce_terminal_change(self, terminal_id: Optional[str]) -> None:
        if self.event_bus is not None:
            if terminal_id:
                self.event_bus.notify_terminal_update(terminal_id)
            self.event_bus.emit(POS_TERMINAL_UPDATED, {"terminalId": terminal_id})

        if self.storage_bus is not None:
            value = json.dumps({
                "terminalId": terminal_id,
                "updatedAt": datetime.now(timezone.utc).isoformat(),
            })
            await self.storage_bus.publish(self.storage_key, value)
