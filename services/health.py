#Description: Health sink receiving breaker transitions, feed status and periodic snapshots.
from threading import Lock
from typing import Callable

from utils.logging import logger

_LEVELS = {
    "dependency_unhealthy": "ERROR",
    "dependency_recovered": "INFO",
    "dependency_half_open": "INFO",
    "breaker_status": "DEBUG",
    "feed_connected": "INFO",
    "feed_reconnecting": "WARNING",
    "feed_unreachable": "ERROR",
}


class HealthMonitor:
    """Fire-and-forget event sink.

    Observers are called synchronously in registration order; an observer that
    raises is logged and skipped. Non-snapshot events are persisted when a store
    is attached.
    """

    def __init__(self, store=None):
        self._store = store
        self._observers: list[Callable[[str, dict], None]] = []
        self._lock = Lock()

    def subscribe(self, callback: Callable[[str, dict], None]):
        with self._lock:
            self._observers.append(callback)

    def unsubscribe(self, callback: Callable[[str, dict], None]):
        with self._lock:
            if callback in self._observers:
                self._observers.remove(callback)

    def emit(self, event: str, payload: dict | None = None):
        payload = payload or {}
        level = _LEVELS.get(event, "INFO")
        logger.log(level, f"health {event}: {payload}")
        if self._store is not None and event != "breaker_status":
            try:
                self._store.record_health_event(level, event, payload.get("dependency"), _jsonable(payload))
            except Exception as e:
                logger.warning(f"Could not persist health event {event}: {e}")
        with self._lock:
            observers = list(self._observers)
        for cb in observers:
            try:
                cb(event, payload)
            except Exception as e:
                logger.exception(f"Health observer failed on {event}: {e}")


def _jsonable(payload: dict) -> dict:
    out = {}
    for k, v in payload.items():
        if isinstance(v, (str, int, float, bool)) or v is None:
            out[k] = v
        elif isinstance(v, dict):
            out[k] = _jsonable(v)
        else:
            out[k] = str(v)
    return out
