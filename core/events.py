from __future__ import annotations
import logging
import threading
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

# topics
DATA_CHANGED = "data.changed"    # payload: collection name
AUTH_CHANGED = "auth.changed"    # payload: user id, or None after logout
SYNC_STATUS = "sync.status"      # payload: human readable phase
DATA_RELOADED = "data.reloaded"  # payload: None

Handler = Callable[[Any], None]


class EventBus:
    """Tiny publish/subscribe channel between the store, auth and the scheduler.

    Handlers run synchronously on the publishing thread. A failing handler is
    logged and does not stop delivery to the others.
    """
    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = {}
        self._lock = threading.Lock()

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        with self._lock:
            self._handlers.setdefault(topic, []).append(handler)

        def unsubscribe():
            with self._lock:
                handlers = self._handlers.get(topic, [])
                if handler in handlers:
                    handlers.remove(handler)
        return unsubscribe

    def publish(self, topic: str, payload: Any = None) -> int:
        with self._lock:
            handlers = list(self._handlers.get(topic, []))
        for handler in handlers:
            try:
                handler(payload)
            except Exception:
                logger.exception("handler for %s failed", topic)
        return len(handlers)
