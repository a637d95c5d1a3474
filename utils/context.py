#Description: App context wiring the store, breakers, price feed, scheduler and alert engine together.

from dataclasses import dataclass
from typing import Any, Callable

from apscheduler.schedulers.background import BackgroundScheduler

from adapters.broker import BrokerClient, HttpBrokerClient, PaperBroker
from adapters.quotes import DexScreenerQuotes, QuoteClient
from adapters.wallet import HttpWalletClient, PaperWallet, WalletClient
from models.db import create_session_factory, init_db
from services.alerts import AlertEngine
from services.circuit_breaker import BreakerRegistry
from services.health import HealthMonitor
from services.price_feed import PriceFeedSupervisor
from services.scheduler import OrderScheduler
from services.store import RecordStore
from utils.config import Settings, settings as default_settings
from utils.logging import logger


@dataclass
class AppContext:
    settings: Settings
    engine: Any
    store: RecordStore
    health: HealthMonitor
    breakers: BreakerRegistry
    feed: PriceFeedSupervisor
    broker: BrokerClient
    quotes: QuoteClient
    wallet: WalletClient
    scheduler: BackgroundScheduler
    orders: OrderScheduler
    alerts: AlertEngine

    @property
    def mode(self) -> str:
        return self.settings.MODE

    def start(self):
        init_db(self.engine)
        self.scheduler.start()
        self.scheduler.add_job(self.breakers.publish_status, "interval",
                               seconds=self.settings.BREAKER_STATUS_INTERVAL_SECONDS,
                               id="breaker_status", replace_existing=True)
        n_orders = self.orders.start()
        n_alerts = self.alerts.start()
        logger.info(f"Engine started in {self.mode} mode: {n_orders} orders, {n_alerts} alerts tracked")

    def stop(self):
        logger.info("Stopping engine")
        self.alerts.stop()
        self.orders.stop()
        self.feed.stop()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self.engine.dispose()

    def status(self) -> dict:
        return {
            "mode": self.mode,
            "breakers": self.breakers.status(),
            "feeds": self.feed.status(),
            "orders": self.orders.metrics(),
            "alerts": self.alerts.metrics(),
        }


def build_app_context(settings: Settings | None = None, broker: BrokerClient | None = None,
                      quotes: QuoteClient | None = None, wallet: WalletClient | None = None,
                      connector: Callable | None = None) -> AppContext:
    s = settings or default_settings
    engine, session_factory = create_session_factory(s.DATABASE_URL)
    store = RecordStore(session_factory)
    health = HealthMonitor(store)
    breakers = BreakerRegistry.from_settings(s, health=health)
    feed = PriceFeedSupervisor.from_settings(s, breakers=breakers, health=health, connector=connector)

    live = s.MODE == "live"
    if broker is None:
        broker = HttpBrokerClient(s.BROKER_API_URL, s.BROKER_API_KEY, s.HTTP_TIMEOUT_SECONDS) if live else PaperBroker()
    if wallet is None:
        wallet = HttpWalletClient(s.WALLET_API_URL, s.BROKER_API_KEY, s.HTTP_TIMEOUT_SECONDS) if live else PaperWallet()
    if quotes is None:
        quotes = DexScreenerQuotes(s.QUOTE_API_URL, timeout=s.HTTP_TIMEOUT_SECONDS)

    scheduler = BackgroundScheduler(timezone="UTC")
    orders = OrderScheduler.from_settings(s, store, feed, breakers, broker, quotes, scheduler)
    alerts = AlertEngine.from_settings(s, store, feed, breakers, broker, wallet, scheduler)
    return AppContext(s, engine, store, health, breakers, feed, broker, quotes, wallet, scheduler, orders, alerts)
