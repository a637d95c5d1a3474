#Description: Price alert trigger engine: evaluates active alerts on each tick and optionally drives an auto-trade.
from datetime import timedelta
from threading import Lock
from typing import Callable

from models.orm import utcnow
from models.schemas import AlertOut, PriceTick, SwapAction, TradeRequest, feed_key, parse_alert
from utils.errors import FeedUnreachable, TerminalExecutionFailure
from utils.logging import logger

BROKER_DEPENDENCY = "broker"
WALLET_DEPENDENCY = "wallet"


class AlertEngine:
    def __init__(self, store, feed, breakers, broker, wallet, scheduler=None, slippage_pct: float = 1.0,
                 resubscribe_delay: float = 300.0):
        self._store = store
        self._feed = feed
        self._breakers = breakers
        self._broker = broker
        self._wallet = wallet
        self._scheduler = scheduler
        self.slippage_pct = slippage_pct
        self.resubscribe_delay = resubscribe_delay
        self._watched: dict[str, int] = {}
        self._keys: dict[str, tuple[str, str]] = {}
        self._in_flight: set[int] = set()
        self._observers: list[Callable[[str, dict], None]] = []
        self._lock = Lock()
        # serializes watch counts with feed subscribe/unsubscribe
        self._feed_lock = Lock()
        self._stopped = False

    @classmethod
    def from_settings(cls, settings, store, feed, breakers, broker, wallet, scheduler=None):
        return cls(store, feed, breakers, broker, wallet, scheduler,
                   slippage_pct=settings.TRADE_SLIPPAGE_PCT, resubscribe_delay=settings.FEED_RESUBSCRIBE_SECONDS)

    def on(self, callback: Callable[[str, dict], None]):
        self._observers.append(callback)

    def start(self) -> int:
        self._stopped = False
        alerts = self._store.load_active_alerts()
        with self._feed_lock:
            self._watched.clear()
        for alert in alerts:
            self._watch(alert.network, alert.token_address)
        logger.info(f"Watching {len(alerts)} active alerts on {len(self._keys)} tokens")
        return len(alerts)

    def stop(self):
        self._stopped = True
        with self._feed_lock:
            for network, token in self._keys.values():
                self._feed.unsubscribe(network, token, self.handle_tick)
            self._keys.clear()
            self._watched.clear()

    # -----------------------
    # User actions
    # -----------------------
    def create_alert(self, data) -> AlertOut:
        parsed = parse_alert(data)
        self._watch(parsed.network, parsed.token_address)
        try:
            alert = self._store.save_alert(
                user_id=parsed.user_id, network=parsed.network, token_address=parsed.token_address,
                target_price=parsed.target_price, condition=parsed.condition,
                swap_action=parsed.swap_action.model_dump(), wallet_type=parsed.wallet_type,
                pre_approved=parsed.pre_approved,
            )
        except Exception:
            self._release(parsed.network, parsed.token_address)
            raise
        logger.info(f"Created alert {alert.id}: {alert.key} {alert.condition} {alert.target_price}")
        self._notify("alert_created", {"user_id": alert.user_id, "alert_id": alert.id,
                                       "token_address": alert.token_address})
        return alert

    def cancel_alert(self, alert_id: int) -> bool:
        alert = self._store.get_alert(alert_id)
        if not self._store.update_alert_status(alert_id, "cancelled", {"error": "cancelled by user"}):
            return False
        logger.info(f"Cancelled alert {alert_id}")
        self._release(alert.network, alert.token_address)
        return True

    def list_alerts(self, user_id: str, active_only: bool = False) -> list[AlertOut]:
        return self._store.list_alerts(user_id, active_only)

    def metrics(self) -> dict:
        out = self._store.alert_metrics()
        with self._feed_lock:
            out["watched_tokens"] = len(self._keys)
        return out

    # -----------------------
    # Tick evaluation
    # -----------------------
    def handle_tick(self, tick: PriceTick):
        for alert in self._store.load_active_alerts(tick.network, tick.token_address):
            if self.should_trigger(alert, tick.price):
                self._trigger(alert, tick.price)

    @staticmethod
    def should_trigger(alert: AlertOut, price: float) -> bool:
        if alert.condition == "above":
            return price >= alert.target_price
        return price <= alert.target_price

    def _trigger(self, alert: AlertOut, price: float):
        with self._lock:
            if alert.id in self._in_flight:
                return
            self._in_flight.add(alert.id)
        closed = False
        try:
            closed = self._execute_alert(alert, price)
        except Exception as e:
            logger.exception(f"Alert {alert.id} trigger failed unexpectedly: {e}")
        finally:
            with self._lock:
                self._in_flight.discard(alert.id)
        if closed:
            self._release(alert.network, alert.token_address)

    def _execute_alert(self, alert: AlertOut, price: float) -> bool:
        """Run the alert's action. Returns True if this call moved the alert out of active."""
        swap = alert.swap()
        if not swap.enabled:
            if not self._store.update_alert_status(alert.id, "triggered", {"price": price}):
                return False
            logger.info(f"Alert {alert.id} triggered at {price}")
            self._notify("alert_triggered", {"user_id": alert.user_id, "alert_id": alert.id, "price": price})
            return True

        if alert.wallet_type == "external" and not alert.pre_approved:
            if not self._request_approval(alert, swap):
                return False
            self._store.mark_alert_preapproved(alert.id)

        try:
            amount = self._resolve_amount(alert, swap)
            request = TradeRequest(network=alert.network, action=swap.type, token_address=alert.token_address,
                                   amount=amount, wallet_address=swap.wallet_address,
                                   options={"slippage": self.slippage_pct, "alert_id": alert.id})
            result = self._breakers.run(BROKER_DEPENDENCY, self._broker.execute_trade, request)
        except Exception as e:
            logger.warning(f"Alert {alert.id} auto-{swap.type} failed: {e}")
            if not self._store.update_alert_status(alert.id, "failed", {"error": str(e), "price": price}):
                return False
            self._notify("alert_failed", {"user_id": alert.user_id, "alert_id": alert.id, "error": str(e)})
            return True

        payload = {"hash": result.tx_id, "price": result.price if result.price is not None else price,
                   "gas_cost": result.gas_cost, "amount": amount}
        if not self._store.update_alert_status(alert.id, "executed", payload):
            return False
        logger.info(f"Alert {alert.id} executed {swap.type} of {amount}: {payload}")
        self._notify("alert_triggered", {"user_id": alert.user_id, "alert_id": alert.id, "price": price,
                                         "result": payload})
        return True

    def _request_approval(self, alert: AlertOut, swap: SwapAction) -> bool:
        try:
            status = self._breakers.run(WALLET_DEPENDENCY, self._wallet.check_and_request_approval,
                                        alert.token_address, swap.wallet_address, swap.amount)
        except Exception as e:
            logger.warning(f"Approval request for alert {alert.id} failed, will retry on next tick: {e}")
            return False
        if not status.approved:
            logger.info(f"Token approval required for alert {alert.id}; will retry on next tick")
            return False
        return True

    def _resolve_amount(self, alert: AlertOut, swap: SwapAction) -> float:
        if not swap.is_percentage:
            return float(swap.amount)
        pct = float(swap.amount[:-1])
        balance = self._breakers.run(WALLET_DEPENDENCY, self._wallet.get_token_balance,
                                     alert.network, alert.token_address, swap.wallet_address)
        amount = float(balance) * pct / 100
        if amount <= 0:
            raise TerminalExecutionFailure(f"No balance to trade for {swap.amount} of {alert.token_address}")
        return amount

    # -----------------------
    # Feed management
    # -----------------------
    def _watch(self, network: str, token_address: str):
        key = feed_key(network, token_address)
        with self._feed_lock:
            self._watched[key] = self._watched.get(key, 0) + 1
            if key not in self._keys and not self._stopped:
                self._keys[key] = (network, token_address)
                self._feed.subscribe(network, token_address, self.handle_tick, self._on_feed_error)

    def _release(self, network: str, token_address: str):
        key = feed_key(network, token_address)
        with self._feed_lock:
            left = self._watched.get(key, 0) - 1
            if left > 0:
                self._watched[key] = left
                return
            self._watched.pop(key, None)
            if self._keys.pop(key, None) is not None:
                self._feed.unsubscribe(network, token_address, self.handle_tick)

    def _on_feed_error(self, error: Exception):
        if not isinstance(error, FeedUnreachable):
            logger.warning(f"Feed error for alerts: {error}")
            return
        with self._feed_lock:
            self._keys.pop(feed_key(error.network, error.token_address), None)
        if self._stopped or self._scheduler is None:
            return
        logger.warning(f"Alert feed {error.network}:{error.token_address} unreachable; "
                       f"resubscribing in {self.resubscribe_delay}s")
        self._scheduler.add_job(self._resubscribe, "date",
                                run_date=utcnow() + timedelta(seconds=self.resubscribe_delay),
                                args=[error.network, error.token_address], misfire_grace_time=None)

    def _resubscribe(self, network: str, token_address: str):
        key = feed_key(network, token_address)
        with self._feed_lock:
            if self._stopped or not self._watched.get(key) or key in self._keys:
                return
            self._keys[key] = (network, token_address)
            self._feed.subscribe(network, token_address, self.handle_tick, self._on_feed_error)

    def _notify(self, event: str, payload: dict):
        for cb in list(self._observers):
            try:
                cb(event, payload)
            except Exception as e:
                logger.exception(f"Alert observer failed on {event}: {e}")
