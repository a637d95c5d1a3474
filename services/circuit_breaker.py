#Description: Per-dependency circuit breakers and the registry that republishes their transitions as health events.
import time
from collections import defaultdict
from datetime import datetime, timezone
from enum import Enum
from threading import Lock
from typing import Callable

from utils.errors import CircuitOpen, QueueFull
from utils.logging import logger


class BreakerState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """Short-circuits calls to a dependency after consecutive failures.

    CLOSED -> OPEN once `failure_threshold` consecutive failures are seen.
    OPEN -> HALF_OPEN when a call arrives after `reset_timeout` seconds.
    HALF_OPEN -> CLOSED on any success, or back to OPEN after
    `half_open_retries` failures. Calls keep flowing while HALF_OPEN.

    `max_queue_size` bounds the number of calls in flight through the breaker;
    beyond it calls are rejected with QueueFull.

    Listeners registered with `on()` receive `(name, payload)` for the events
    `opened`, `closed`, `half-open`, `reset` and `status`.
    """

    def __init__(self, name: str, failure_threshold: int = 5, reset_timeout: float = 30.0,
                 half_open_retries: int = 3, max_queue_size: int = 100,
                 clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.half_open_retries = half_open_retries
        self.max_queue_size = max_queue_size
        self._clock = clock

        self.state = BreakerState.CLOSED
        self.failures = 0
        self.last_failure_time: float | None = None
        self.retry_count = 0
        self.in_flight = 0
        self.metrics = {
            "total_calls": 0,
            "successful_calls": 0,
            "failed_calls": 0,
            "rejected_calls": 0,
            "last_error": None,
            "last_error_at": None,
            "last_success_at": None,
        }
        self._listeners: dict[str, list[Callable]] = defaultdict(list)
        self._lock = Lock()

    def on(self, event: str, callback: Callable):
        self._listeners[event].append(callback)

    def execute(self, fn: Callable, *args, **kwargs):
        events = []
        rejection = None
        with self._lock:
            self.metrics["total_calls"] += 1
            if self.state == BreakerState.OPEN:
                if self._should_attempt_reset():
                    self.state = BreakerState.HALF_OPEN
                    self.retry_count = 0
                    events.append(("half-open", None))
                else:
                    rejection = CircuitOpen(self.name)
            if rejection is None and self.in_flight >= self.max_queue_size:
                rejection = QueueFull(self.name)
            if rejection is not None:
                self.metrics["rejected_calls"] += 1
            else:
                self.in_flight += 1
        self._emit(events)
        if rejection is not None:
            raise rejection

        try:
            result = fn(*args, **kwargs)
        except Exception as e:
            self._emit(self._on_failure(e))
            raise
        self._emit(self._on_success())
        return result

    def _on_success(self):
        events = []
        with self._lock:
            self.in_flight -= 1
            self.failures = 0
            self.retry_count = 0
            self.metrics["successful_calls"] += 1
            self.metrics["last_success_at"] = _now_iso()
            if self.state == BreakerState.HALF_OPEN:
                self.state = BreakerState.CLOSED
                events.append(("closed", None))
        return events

    def _on_failure(self, error: Exception):
        events = []
        with self._lock:
            self.in_flight -= 1
            self.failures += 1
            self.last_failure_time = self._clock()
            self.metrics["failed_calls"] += 1
            self.metrics["last_error"] = f"{type(error).__name__}: {error}"
            self.metrics["last_error_at"] = _now_iso()
            if self.state == BreakerState.HALF_OPEN:
                self.retry_count += 1
                if self.retry_count >= self.half_open_retries:
                    self.state = BreakerState.OPEN
                    events.append(("opened", error))
            elif self.state == BreakerState.CLOSED and self.failures >= self.failure_threshold:
                self.state = BreakerState.OPEN
                events.append(("opened", error))
        return events

    def _should_attempt_reset(self) -> bool:
        if self.last_failure_time is None:
            return True
        return self._clock() - self.last_failure_time >= self.reset_timeout

    def _emit(self, events):
        for event, payload in events:
            for cb in list(self._listeners.get(event, ())):
                try:
                    cb(self.name, payload)
                except Exception as e:
                    logger.exception(f"Breaker listener failed for {self.name}/{event}: {e}")

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "name": self.name,
                "state": self.state.value,
                "failures": self.failures,
                "retry_count": self.retry_count,
                "queue_size": self.in_flight,
                "metrics": dict(self.metrics),
            }

    def emit_status(self):
        self._emit([("status", self.snapshot())])

    def reset(self):
        with self._lock:
            self.state = BreakerState.CLOSED
            self.failures = 0
            self.last_failure_time = None
            self.retry_count = 0
        self._emit([("reset", None)])


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class BreakerRegistry:
    """Lazily creates one breaker per dependency name; the first use fixes its options."""

    def __init__(self, health=None, defaults: dict | None = None, overrides: dict[str, dict] | None = None,
                 clock: Callable[[], float] = time.monotonic):
        self._health = health
        self._defaults = dict(defaults or {})
        self._overrides = dict(overrides or {})
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = Lock()

    @classmethod
    def from_settings(cls, settings, health=None, clock: Callable[[], float] = time.monotonic):
        defaults = {
            "failure_threshold": settings.BREAKER_FAILURE_THRESHOLD,
            "reset_timeout": settings.BREAKER_RESET_TIMEOUT_SECONDS,
            "half_open_retries": settings.BREAKER_HALF_OPEN_RETRIES,
            "max_queue_size": settings.BREAKER_MAX_QUEUE_SIZE,
        }
        return cls(health=health, defaults=defaults, overrides=settings.BREAKER_OVERRIDES, clock=clock)

    def get(self, name: str, **options) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                opts = {**self._defaults, **self._overrides.get(name, {}), **options}
                breaker = CircuitBreaker(name, clock=self._clock, **opts)
                self._wire(breaker)
                self._breakers[name] = breaker
                logger.debug(f"Created circuit breaker for {name}: {opts}")
            return breaker

    def run(self, name: str, fn: Callable, *args, **kwargs):
        return self.get(name).execute(fn, *args, **kwargs)

    def status(self) -> dict:
        with self._lock:
            breakers = dict(self._breakers)
        return {name: b.snapshot() for name, b in breakers.items()}

    def reset(self, name: str) -> bool:
        with self._lock:
            breaker = self._breakers.get(name)
        if breaker is None:
            return False
        breaker.reset()
        return True

    def publish_status(self):
        with self._lock:
            breakers = list(self._breakers.values())
        for b in breakers:
            b.emit_status()

    def _wire(self, breaker: CircuitBreaker):
        breaker.on("opened", self._on_opened)
        breaker.on("closed", self._on_closed)
        breaker.on("half-open", self._on_half_open)
        breaker.on("reset", self._on_reset)
        breaker.on("status", self._on_status)

    def _on_opened(self, name: str, error):
        logger.warning(f"Circuit breaker OPEN for {name}: {error}")
        self._publish("dependency_unhealthy", {"dependency": name, "type": "CIRCUIT_BREAKER_OPEN", "error": str(error)})

    def _on_closed(self, name: str, _):
        logger.info(f"Circuit breaker CLOSED for {name}")
        self._publish("dependency_recovered", {"dependency": name, "type": "CIRCUIT_BREAKER_CLOSED"})

    def _on_half_open(self, name: str, _):
        self._publish("dependency_half_open", {"dependency": name, "type": "CIRCUIT_BREAKER_HALF_OPEN"})

    def _on_reset(self, name: str, _):
        logger.info(f"Circuit breaker for {name} reset manually")
        self._publish("dependency_recovered", {"dependency": name, "type": "CIRCUIT_BREAKER_RESET"})

    def _on_status(self, name: str, snapshot: dict):
        self._publish("breaker_status", {"dependency": name, "status": snapshot})

    def _publish(self, event: str, payload: dict):
        if self._health is not None:
            self._health.emit(event, payload)
