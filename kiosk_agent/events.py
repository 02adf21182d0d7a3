# Event Emitter - lifecycle notifications for UI / IPC consumers

import logging
import threading
from typing import Any, Callable, Dict, List


logger = logging.getLogger(__name__)

CONNECTION_ONLINE = 'connection:online'
CONNECTION_OFFLINE = 'connection:offline'
SYNC_STARTED = 'sync:started'
SYNC_PROGRESS = 'sync:progress'
SYNC_COMPLETED = 'sync:completed'
SYNC_FAILED = 'sync:failed'

EVENT_TYPES = (
    CONNECTION_ONLINE,
    CONNECTION_OFFLINE,
    SYNC_STARTED,
    SYNC_PROGRESS,
    SYNC_COMPLETED,
    SYNC_FAILED,
)


class EventEmitter:
    """Minimal publish/subscribe over a fixed set of event names"""

    def __init__(self):
        self._handlers: Dict[str, List[Callable[[Dict[str, Any]], None]]] = {}
        self._lock = threading.Lock()

    def on(self, event: str, handler: Callable[[Dict[str, Any]], None]):
        if event not in EVENT_TYPES:
            raise ValueError(f"Unknown event: {event}")
        with self._lock:
            self._handlers.setdefault(event, []).append(handler)

    def off(self, event: str, handler: Callable[[Dict[str, Any]], None]):
        with self._lock:
            handlers = self._handlers.get(event, [])
            if handler in handlers:
                handlers.remove(handler)

    def emit(self, event: str, payload: Dict[str, Any]):
        """Call every subscriber. A failing subscriber never stops the others."""
        with self._lock:
            handlers = list(self._handlers.get(event, []))
        for handler in handlers:
            try:
                handler(payload)
            except Exception:
                logger.exception(f"Event handler for {event} failed")
