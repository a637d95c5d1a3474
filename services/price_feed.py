#Description: Live price feed supervisor: one websocket per (network, token), reconnect with backoff, heartbeat, batched sends.
import json
import random
import time
from collections import deque
from dataclasses import dataclass, field
from threading import Event, Lock, Thread
from typing import Any, Callable

from websockets.sync.client import connect as ws_connect

from models.schemas import PriceTick, feed_key
from utils.errors import FeedUnreachable
from utils.logging import logger

FEED_DEPENDENCY = "price_feed"
# upper bound on a single recv wait so stop requests are noticed promptly
_MAX_WAIT = 1.0
# floor for the batch-window cap on recv waits
_MIN_WAIT = 0.005


class HeartbeatTimeout(Exception):
    pass


@dataclass
class Consumer:
    on_price: Callable[[PriceTick], None]
    on_error: Callable[[Exception], None] | None = None


@dataclass
class FeedSubscription:
    network: str
    token_address: str
    consumers: list[Consumer] = field(default_factory=list)
    connection: Any = None
    reconnect_attempts: int = 0
    connected: Event = field(default_factory=Event)
    stop_event: Event = field(default_factory=Event)
    pending: deque = field(default_factory=deque)
    batch: list = field(default_factory=list)
    batch_flush_at: float | None = None
    pong_deadline: float | None = None
    last_tick: PriceTick | None = None
    last_tick_at: float | None = None
    thread: Thread | None = None
    lock: Lock = field(default_factory=Lock)

    @property
    def key(self) -> str:
        return feed_key(self.network, self.token_address)


def _default_connector(url: str):
    return ws_connect(url, open_timeout=10)


class PriceFeedSupervisor:
    """Multiplexes every interested consumer of a token onto one live connection.

    Each key runs its own reader thread. Ticks are dispatched synchronously, in
    arrival order, to consumers in registration order. When the reconnect budget
    is spent the key is torn down and consumers get FeedUnreachable through
    their `on_error`; they have to subscribe again themselves.
    """

    def __init__(self, url_template: str, breakers=None, health=None, connector: Callable | None = None,
                 max_reconnect_attempts: int = 5, backoff_base: float = 1.0, backoff_cap: float = 30.0,
                 backoff_jitter: float = 0.5, heartbeat_interval: float = 60.0, heartbeat_timeout: float = 30.0,
                 batch_window: float = 0.05, clock: Callable[[], float] = time.monotonic):
        self.url_template = url_template
        self.max_reconnect_attempts = max_reconnect_attempts
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.backoff_jitter = backoff_jitter
        self.heartbeat_interval = heartbeat_interval
        self.heartbeat_timeout = heartbeat_timeout
        self.batch_window = batch_window
        self._breakers = breakers
        self._health = health
        self._connector = connector or _default_connector
        self._clock = clock
        self._subs: dict[str, FeedSubscription] = {}
        self._lock = Lock()

    @classmethod
    def from_settings(cls, settings, breakers=None, health=None, connector: Callable | None = None):
        return cls(
            settings.FEED_URL_TEMPLATE, breakers=breakers, health=health, connector=connector,
            max_reconnect_attempts=settings.FEED_MAX_RECONNECT_ATTEMPTS,
            backoff_base=settings.FEED_BACKOFF_BASE_SECONDS,
            backoff_cap=settings.FEED_BACKOFF_CAP_SECONDS,
            backoff_jitter=settings.FEED_BACKOFF_JITTER_SECONDS,
            heartbeat_interval=settings.FEED_HEARTBEAT_INTERVAL_SECONDS,
            heartbeat_timeout=settings.FEED_HEARTBEAT_TIMEOUT_SECONDS,
            batch_window=settings.FEED_BATCH_WINDOW_SECONDS,
        )

    # -----------------------
    # Consumer registration
    # -----------------------
    def subscribe(self, network: str, token_address: str, on_price: Callable[[PriceTick], None],
                  on_error: Callable[[Exception], None] | None = None) -> FeedSubscription:
        key = feed_key(network, token_address)
        with self._lock:
            sub = self._subs.get(key)
            created = sub is None
            if created:
                sub = FeedSubscription(network, token_address)
                self._subs[key] = sub
            with sub.lock:
                if not any(c.on_price == on_price for c in sub.consumers):
                    sub.consumers.append(Consumer(on_price, on_error))
        if created:
            logger.info(f"Subscribing to price updates for {key}")
            sub.thread = Thread(target=self._run, args=(sub,), name=f"feed-{key}", daemon=True)
            sub.thread.start()
        return sub

    def unsubscribe(self, network: str, token_address: str, on_price: Callable[[PriceTick], None]) -> bool:
        key = feed_key(network, token_address)
        with self._lock:
            sub = self._subs.get(key)
            if sub is None:
                return False
            with sub.lock:
                before = len(sub.consumers)
                sub.consumers = [c for c in sub.consumers if c.on_price != on_price]
                removed = len(sub.consumers) < before
                idle = not sub.consumers
            if idle:
                del self._subs[key]
        if idle:
            logger.info(f"Last consumer left {key}; closing feed")
            self._close(sub)
        return removed

    def consumer_count(self, network: str, token_address: str) -> int:
        sub = self._subs.get(feed_key(network, token_address))
        if sub is None:
            return 0
        with sub.lock:
            return len(sub.consumers)

    def is_subscribed(self, network: str, token_address: str) -> bool:
        return feed_key(network, token_address) in self._subs

    def last_price(self, network: str, token_address: str, max_age: float | None = None) -> float | None:
        sub = self._subs.get(feed_key(network, token_address))
        if sub is None or sub.last_tick is None:
            return None
        if max_age is not None and self._clock() - sub.last_tick_at > max_age:
            return None
        return sub.last_tick.price

    def status(self) -> dict:
        with self._lock:
            subs = list(self._subs.values())
        return {s.key: {"connected": s.connected.is_set(), "consumers": len(s.consumers),
                        "reconnect_attempts": s.reconnect_attempts} for s in subs}

    def stop(self):
        with self._lock:
            subs = list(self._subs.values())
            self._subs.clear()
        for sub in subs:
            self._close(sub)
        for sub in subs:
            if sub.thread is not None:
                sub.thread.join(timeout=2 * _MAX_WAIT)

    # -----------------------
    # Outbound
    # -----------------------
    def send(self, network: str, token_address: str, message: dict, batch: bool = False) -> bool:
        """Send now, or queue into the key's batch window. Buffered while disconnected."""
        sub = self._subs.get(feed_key(network, token_address))
        if sub is None:
            return False
        with sub.lock:
            ws = sub.connection
            if ws is None or not sub.connected.is_set():
                sub.pending.append(message)
                return True
            if batch:
                sub.batch.append(message)
                if sub.batch_flush_at is None:
                    sub.batch_flush_at = self._clock() + self.batch_window
                return True
        ws.send(json.dumps(message))
        return True

    def _flush_pending(self, sub: FeedSubscription, ws):
        with sub.lock:
            queued = list(sub.pending)
            sub.pending.clear()
        for message in queued:
            ws.send(json.dumps(message))

    def _flush_batch(self, sub: FeedSubscription, ws, now: float):
        with sub.lock:
            if not sub.batch or sub.batch_flush_at is None or now < sub.batch_flush_at:
                return
            messages, sub.batch, sub.batch_flush_at = sub.batch, [], None
        ws.send(json.dumps({"type": "batch", "data": messages}))

    # -----------------------
    # Connection lifecycle (runs on the key's thread)
    # -----------------------
    def backoff_delay(self, attempt: int) -> float:
        delay = self.backoff_base * (2 ** (attempt - 1))
        if self.backoff_jitter:
            delay += random.uniform(0, self.backoff_jitter)
        return min(delay, self.backoff_cap)

    def _run(self, sub: FeedSubscription):
        url = self.url_template.format(network=sub.network, token=sub.token_address)
        while not sub.stop_event.is_set():
            try:
                ws = self._open(url)
            except Exception as e:
                logger.warning(f"Feed connect failed for {sub.key}: {e}")
                if not self._wait_before_reconnect(sub):
                    return
                continue

            try:
                self._on_connected(sub, ws)
                self._pump(sub, ws)
            except Exception as e:
                if not sub.stop_event.is_set():
                    logger.info(f"Feed for {sub.key} lost: {e}")
            finally:
                sub.connected.clear()
                with sub.lock:
                    sub.connection = None
                    sub.pong_deadline = None
                _quiet_close(ws)

            if sub.stop_event.is_set() or not self._wait_before_reconnect(sub):
                return

    def _open(self, url: str):
        if self._breakers is not None:
            return self._breakers.run(FEED_DEPENDENCY, self._connector, url)
        return self._connector(url)

    def _on_connected(self, sub: FeedSubscription, ws):
        with sub.lock:
            sub.connection = ws
            sub.reconnect_attempts = 0
        sub.connected.set()
        logger.info(f"Feed connected for {sub.key}")
        self._publish("feed_connected", {"dependency": FEED_DEPENDENCY, "key": sub.key})
        self._flush_pending(sub, ws)

    def _wait_before_reconnect(self, sub: FeedSubscription) -> bool:
        sub.reconnect_attempts += 1
        attempt = sub.reconnect_attempts
        if attempt > self.max_reconnect_attempts:
            self._give_up(sub)
            return False
        delay = self.backoff_delay(attempt)
        logger.info(f"Reconnecting {sub.key} in {delay:.2f}s (attempt {attempt})")
        self._publish("feed_reconnecting", {"dependency": FEED_DEPENDENCY, "key": sub.key,
                                            "attempt": attempt, "delay": delay})
        return not sub.stop_event.wait(delay)

    def _give_up(self, sub: FeedSubscription):
        with self._lock:
            if self._subs.get(sub.key) is sub:
                del self._subs[sub.key]
        sub.stop_event.set()
        error = FeedUnreachable(sub.network, sub.token_address, self.max_reconnect_attempts)
        logger.error(f"Max reconnection attempts reached for {sub.key}")
        self._publish("feed_unreachable", {"dependency": FEED_DEPENDENCY, "key": sub.key, "error": str(error)})
        with sub.lock:
            consumers = list(sub.consumers)
        for c in consumers:
            if c.on_error is None:
                continue
            try:
                c.on_error(error)
            except Exception as e:
                logger.exception(f"Feed consumer error handler failed for {sub.key}: {e}")

    def _close(self, sub: FeedSubscription):
        sub.stop_event.set()
        ws = sub.connection
        if ws is not None:
            _quiet_close(ws)

    def _pump(self, sub: FeedSubscription, ws):
        next_ping = self._clock() + self.heartbeat_interval
        while not sub.stop_event.is_set():
            now = self._clock()
            if sub.pong_deadline is not None and now >= sub.pong_deadline:
                logger.error(f"No pong received for {sub.key}. Terminating connection.")
                raise HeartbeatTimeout(sub.key)
            if now >= next_ping:
                ws.send(json.dumps({"type": "ping"}))
                if sub.pong_deadline is None:
                    sub.pong_deadline = now + self.heartbeat_timeout
                next_ping = now + self.heartbeat_interval
            self._flush_batch(sub, ws, now)

            # a batch opened by send() during this recv must still flush within its window
            wait = min(next_ping - now, _MAX_WAIT, max(self.batch_window, _MIN_WAIT))
            if sub.pong_deadline is not None:
                wait = min(wait, sub.pong_deadline - now)
            if sub.batch_flush_at is not None:
                wait = min(wait, sub.batch_flush_at - now)
            try:
                raw = ws.recv(timeout=max(wait, 0.0))
            except TimeoutError:
                continue
            self._handle_message(sub, raw)

    def _handle_message(self, sub: FeedSubscription, raw):
        try:
            msg = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"Error parsing price update for {sub.key}: {raw!r}")
            return
        if isinstance(msg, dict) and msg.get("type") == "pong":
            sub.pong_deadline = None
            return
        tick = parse_tick(sub.network, sub.token_address, msg)
        if tick is None:
            return
        sub.last_tick = tick
        sub.last_tick_at = self._clock()
        self._dispatch(sub, tick)

    def _dispatch(self, sub: FeedSubscription, tick: PriceTick):
        with sub.lock:
            consumers = list(sub.consumers)
        for c in consumers:
            try:
                c.on_price(tick)
            except Exception as e:
                logger.exception(f"Price consumer failed for {sub.key}: {e}")

    def _publish(self, event: str, payload: dict):
        if self._health is not None:
            self._health.emit(event, payload)


def parse_tick(network: str, token_address: str, msg) -> PriceTick | None:
    """Accepts a bare number, {"price": ...} or {"data": {"price": ...}}."""
    if isinstance(msg, dict) and isinstance(msg.get("data"), dict):
        msg = msg["data"]
    volume = None
    if isinstance(msg, bool):
        return None
    if isinstance(msg, (int, float, str)):
        price = msg
    elif isinstance(msg, dict) and "price" in msg:
        price = msg["price"]
        volume = msg.get("volume24h", msg.get("volume_24h"))
    else:
        return None
    try:
        price = float(price)
        volume = float(volume) if volume is not None else None
    except (TypeError, ValueError):
        return None
    if price <= 0:
        return None
    return PriceTick(network=network, token_address=token_address, price=price, volume_24h=volume)


def _quiet_close(ws):
    try:
        ws.close()
    except Exception as e:
        logger.debug(f"Ignoring error while closing feed socket: {e}")
