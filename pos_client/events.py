"""
Same-instance event bus.

Replaces the window-level custom events of a browser tab: mutation code
emits ``terminal_updated`` / ``product_updated`` /
``product_assignment_changed`` after a successful write, and the UI shell
dispatches ``focus`` when the window regains focus.
"""

import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger("pos_client.events")

PRODUCT_UPDATED = "product_updated"
TERMINAL_UPDATED = "terminal_updated"
PRODUCT_ASSIGNMENT_CHANGED = "product_assignment_changed"
POS_TERMINAL_UPDATED = "posTerminalUpdated"
FOCUS = "focus"

EventCallback = Callable[[Dict[str, Any]], None]


class EventBus:
    def __init__(self) -> None:
        self._handlers: Dict[str, List[EventCallback]] = defaultdict(list)

    def on(self, event_type: str, callback: EventCallback) -> Callable[[], None]:
        self._handlers[event_type].append(callback)

        def unsubscribe() -> None:
            handlers = self._handlers.get(event_type)
            if handlers and callback in handlers:
                handlers.remove(callback)
                if not handlers:
                    self._handlers.pop(event_type, None)

        return unsubscribe

    def listener_count(self, event_type: Optional[str] = None) -> int:
        if event_type is not None:
            return len(self._handlers.get(event_type, ()))
        return sum(len(h) for h in self._handlers.values())

    def emit(self, event_type: str, detail: Optional[Dict[str, Any]] = None) -> None:
        detail = dict(detail or {})
        detail.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        for callback in list(self._handlers.get(event_type, ())):
            try:
                callback(detail)
            except Exception as e:
                logger.error("event_handler_error type=%s error=%s", event_type, repr(e))
        logger.debug("event_emitted type=%s", event_type)

    def dispatch_focus(self) -> None:
        self.emit(FOCUS)

    def notify_terminal_update(self, terminal_id: str) -> None:
        self.emit(TERMINAL_UPDATED, {"terminalId": terminal_id})

    def notify_product_update(self, product_id: str, terminal_id: Optional[str] = None) -> None:
        self.emit(PRODUCT_UPDATED, {"productId": product_id, "terminalId": terminal_id, "action": "updated"})

    def notify_product_assignment_change(self, terminal_id: str, product_ids: List[str], action: str) -> None:
        if action not in ("assigned", "removed"):
            raise ValueError(f"Unknown assignment action: {action}")
        self.emit(
            PRODUCT_ASSIGNMENT_CHANGED,
            {"terminalId": terminal_id, "productIds": list(product_ids), "action": action},
        )
