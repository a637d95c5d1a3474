#Description: Shared fixtures: temp SQLite store, fake clock, in-memory feed and scripted websocket connections.
import json
import queue
import time
from datetime import timedelta
from threading import Event, Lock

import pytest
from apscheduler.schedulers.background import BackgroundScheduler

from models.db import create_session_factory, init_db
from models.orm import utcnow
from models.schemas import PriceTick, feed_key
from services.store import RecordStore


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.02):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def in_seconds(seconds: float):
    return utcnow() + timedelta(seconds=seconds)


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeFeed:
    """In-process stand-in for the supervisor; ticks are pushed by the test."""

    def __init__(self):
        self.consumers: dict[str, list] = {}
        self.prices: dict[str, float] = {}
        self.unsubscribed: list[str] = []

    def subscribe(self, network, token_address, on_price, on_error=None):
        subs = self.consumers.setdefault(feed_key(network, token_address), [])
        if all(cb != on_price for cb, _ in subs):
            subs.append((on_price, on_error))

    def unsubscribe(self, network, token_address, on_price):
        key = feed_key(network, token_address)
        subs = [s for s in self.consumers.get(key, []) if s[0] != on_price]
        if subs:
            self.consumers[key] = subs
        else:
            self.consumers.pop(key, None)
            self.unsubscribed.append(key)
        return True

    def is_subscribed(self, network, token_address):
        return feed_key(network, token_address) in self.consumers

    def last_price(self, network, token_address, max_age=None):
        return self.prices.get(feed_key(network, token_address))

    def push(self, network, token_address, price, volume_24h=None):
        tick = PriceTick(network=network, token_address=token_address, price=price, volume_24h=volume_24h)
        self.prices[tick.key] = price
        for cb, _ in list(self.consumers.get(tick.key, [])):
            cb(tick)

    def fail(self, error):
        for key, subs in list(self.consumers.items()):
            self.consumers.pop(key, None)
            for _, on_error in subs:
                if on_error is not None:
                    on_error(error)


class FakeSocket:
    """Scripted websocket: recv() pulls from an inbox and raises TimeoutError when it stays empty."""

    def __init__(self, auto_pong: bool = False):
        self.inbox: queue.Queue = queue.Queue()
        self.sent: list = []
        self.closed = False
        self.auto_pong = auto_pong
        self._lock = Lock()

    def send(self, data):
        with self._lock:
            self.sent.append(json.loads(data))
        if self.auto_pong and json.loads(data).get("type") == "ping":
            self.inbox.put(json.dumps({"type": "pong"}))

    def recv(self, timeout=None):
        if self.closed:
            raise ConnectionError("socket closed")
        try:
            item = self.inbox.get(timeout=timeout)
        except queue.Empty:
            raise TimeoutError("no message") from None
        if isinstance(item, Exception):
            raise item
        return item

    def push(self, message):
        self.inbox.put(json.dumps(message) if not isinstance(message, str) else message)

    def drop(self):
        self.inbox.put(ConnectionError("connection reset"))

    def close(self):
        self.closed = True

    def messages(self):
        with self._lock:
            return list(self.sent)


class FakeConnector:
    """Hands out sockets in order; an Exception in the script is raised instead."""

    def __init__(self, script=None, default=None, gate: Event | None = None):
        self.script = list(script or [])
        self.default = default
        self.gate = gate
        self.urls: list[str] = []
        self.sockets: list[FakeSocket] = []
        self._lock = Lock()

    def __call__(self, url):
        if self.gate is not None:
            self.gate.wait(5)
        with self._lock:
            self.urls.append(url)
            item = self.script.pop(0) if self.script else self.default
        if item is None:
            item = FakeSocket()
        if isinstance(item, Exception):
            raise item
        with self._lock:
            self.sockets.append(item)
        return item

    @property
    def calls(self) -> int:
        with self._lock:
            return len(self.urls)


@pytest.fixture
def store(tmp_path):
    engine, factory = create_session_factory(f"sqlite:///{tmp_path / 'engine.db'}")
    init_db(engine)
    yield RecordStore(factory)
    engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_feed():
    return FakeFeed()


@pytest.fixture
def aps():
    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.start()
    yield scheduler
    scheduler.shutdown(wait=False)
