#Description: Timed/price-conditional order scheduler: coalesced timers, serialized execution lane, advanced order kinds.
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from threading import Event, Lock, RLock
from typing import Callable

from apscheduler.jobstores.base import JobLookupError
from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt, wait_incrementing

from models.orm import utcnow
from models.schemas import (OrderOut, PriceTick, TradeRequest, PRICE_DRIVEN_KINDS, DependencyPredicate,
                            feed_key, parse_order, parse_predicate)
from utils.errors import (DependencyUnavailable, FeedUnreachable, RecordNotFound, TerminalExecutionFailure,
                          TransientExecutionFailure)
from utils.logging import logger

BROKER_DEPENDENCY = "broker"
QUOTE_DEPENDENCY = "price_quote"


@dataclass
class ScheduleGroup:
    group_id: str
    run_at: datetime
    order_ids: list[int] = field(default_factory=list)
    dispatched_at: datetime | None = None


class OrderScheduler:
    """Persists, arms and executes timed and price-conditional orders.

    Time-driven orders whose `execute_at` fall within `coalesce_window` seconds
    share one timer. Everything that submits a trade goes through a single
    worker lane, so a wallet never has two submissions racing and chained
    orders run strictly in sequence. Timers and feed subscriptions live in
    memory only; `start()` rebuilds them from the pending records.
    """

    def __init__(self, store, feed, breakers, broker, quotes, scheduler, coalesce_window: float = 1.0,
                 retry_count: int = 3, retry_backoff: float = 1.0, slippage_pct: float = 1.0,
                 price_max_age: float = 15.0, resubscribe_delay: float = 300.0):
        self._store = store
        self._feed = feed
        self._breakers = breakers
        self._broker = broker
        self._quotes = quotes
        self._scheduler = scheduler
        self.coalesce_window = coalesce_window
        self.retry_count = max(1, retry_count)
        self.retry_backoff = retry_backoff
        self.slippage_pct = slippage_pct
        self.price_max_age = price_max_age
        self.resubscribe_delay = resubscribe_delay

        self._groups: dict[str, ScheduleGroup] = {}
        self._order_group: dict[int, str] = {}
        self._watch: dict[str, set[int]] = {}
        self._watch_keys: dict[str, tuple[str, str]] = {}
        self._feed_keys: set[str] = set()
        self._held: set[int] = set()
        self._queued: set[int] = set()
        self._running: set[int] = set()
        self._observers: list[Callable[[str, dict], None]] = []
        self._lock = RLock()
        # taken before _lock; serializes feed subscribe/unsubscribe
        self._feed_lock = Lock()
        self._stopped = Event()
        self._lane = ThreadPoolExecutor(max_workers=1, thread_name_prefix="order-lane")

        self._on_create = {
            "scaled": self._expand_scaled,
            "chained": self._create_chain,
        }
        self._triggers = {
            "limit": self._limit_hit,
            "stop": self._stop_hit,
            "trailing": self._trailing_hit,
            "conditional": self._conditional_hit,
        }

    @classmethod
    def from_settings(cls, settings, store, feed, breakers, broker, quotes, scheduler):
        return cls(store, feed, breakers, broker, quotes, scheduler,
                   coalesce_window=settings.ORDER_COALESCE_WINDOW_SECONDS,
                   retry_count=settings.ORDER_RETRY_COUNT,
                   retry_backoff=settings.ORDER_RETRY_BACKOFF_SECONDS,
                   slippage_pct=settings.TRADE_SLIPPAGE_PCT,
                   price_max_age=settings.FEED_PRICE_MAX_AGE_SECONDS,
                   resubscribe_delay=settings.FEED_RESUBSCRIBE_SECONDS)

    def on(self, callback: Callable[[str, dict], None]):
        self._observers.append(callback)

    # -----------------------
    # Lifecycle
    # -----------------------
    def start(self) -> int:
        pending = self._store.load_pending_orders()
        if not pending:
            logger.info("No pending orders to reschedule")
            return 0
        logger.info(f"Found {len(pending)} pending orders to reschedule")
        for order in pending:
            self._arm(order)
        n = len(self.scheduled_order_ids())
        logger.info(f"Rescheduled {n} orders")
        return n

    def stop(self):
        self._stopped.set()
        with self._lock:
            groups = list(self._groups.values())
            self._groups.clear()
            self._order_group.clear()
        for g in groups:
            self._remove_job(g.group_id)
        with self._feed_lock:
            for key in self._feed_keys:
                network, token = self._watch_keys[key]
                self._feed.unsubscribe(network, token, self._on_tick)
            self._feed_keys.clear()
        # in-flight submissions run to completion; queued ones are dropped and stay pending
        self._lane.shutdown(wait=True, cancel_futures=True)

    def scheduled_order_ids(self) -> set[int]:
        with self._lock:
            ids = set(self._order_group) | self._held
            for watched in self._watch.values():
                ids |= watched
            return ids

    def groups(self) -> list[ScheduleGroup]:
        with self._lock:
            return list(self._groups.values())

    # -----------------------
    # Creation / user actions
    # -----------------------
    def create_order(self, data) -> OrderOut:
        parsed = parse_order(data)
        order = self._store.save_order(
            user_id=parsed.user_id, wallet_address=parsed.wallet_address, token_address=parsed.token_address,
            network=parsed.network, action=parsed.action, amount=parsed.amount, kind=parsed.kind,
            execute_at=parsed.execute_at or utcnow(), conditions=parsed.conditions(),
        )
        logger.info(f"Created {order.kind} order {order.id}: {order.action} {order.amount} {order.key} at {order.execute_at}")
        self._on_create.get(order.kind, self._arm)(order)
        self._notify("order_created", {"user_id": order.user_id, "order_id": order.id, "kind": order.kind,
                                       "execute_at": order.execute_at.isoformat()})
        return self._store.get_order(order.id)

    def cancel_order(self, order_id: int) -> bool:
        """Cancel a pending order. Orders already in the execution lane are not interrupted."""
        with self._lock:
            if order_id in self._running:
                logger.info(f"Order {order_id} is executing; cancellation not honored")
                return False
            ok = self._store.update_order_status(order_id, "cancelled", {"error": "cancelled by user"})
        if not ok:
            return False
        order = self._store.get_order(order_id)
        logger.info(f"Cancelled order {order_id}")
        self._after_terminal(order_id)
        if order.kind == "chained":
            for child in self._store.load_chain(order_id):
                if self._store.update_order_status(child.id, "cancelled", {"error": f"chain head {order_id} cancelled"}):
                    self._after_terminal(child.id)
        self._notify("order_cancelled", {"user_id": order.user_id, "order_id": order_id})
        return True

    def delete_order(self, order_id: int) -> bool:
        order = self._store.get_order(order_id)
        if not order.is_terminal and not self.cancel_order(order_id):
            return False
        self._forget(order_id)
        return self._store.delete_order(order_id)

    def list_orders(self, user_id: str, status: str | None = None) -> list[OrderOut]:
        return self._store.list_orders(user_id, status)

    def metrics(self) -> dict:
        out = self._store.order_metrics()
        with self._lock:
            out.update({"scheduled_groups": len(self._groups), "watched_tokens": len(self._watch)})
        return out

    # -----------------------
    # Arming
    # -----------------------
    def _arm(self, order: OrderOut):
        if "chain_head_id" in order.conditions:
            self._arm_chain_member(order)
        elif order.kind == "scaled":
            self._expand_scaled(order)
        elif order.kind in PRICE_DRIVEN_KINDS:
            self._watch_order(order)
        else:
            self._schedule(order)

    def _schedule(self, order: OrderOut):
        run_at = order.execute_at
        with self._lock:
            group = self._find_group(run_at)
            if group is None:
                group = ScheduleGroup(uuid.uuid4().hex[:12], run_at)
                self._groups[group.group_id] = group
                self._scheduler.add_job(self._fire_group, "date", run_date=max(run_at, utcnow()),
                                        args=[group.group_id], id=f"orders-{group.group_id}",
                                        misfire_grace_time=None)
            if order.id not in group.order_ids:
                group.order_ids.append(order.id)
            self._order_group[order.id] = group.group_id

    def _find_group(self, run_at: datetime) -> ScheduleGroup | None:
        for g in self._groups.values():
            if abs((g.run_at - run_at).total_seconds()) <= self.coalesce_window:
                return g
        return None

    def _fire_group(self, group_id: str):
        with self._lock:
            group = self._groups.pop(group_id, None)
            if group is None:
                return
            group.dispatched_at = utcnow()
            # ids are assigned at creation, so this is creation order
            group.order_ids.sort()
            for oid in group.order_ids:
                self._order_group.pop(oid, None)
        logger.info(f"Dispatching {len(group.order_ids)} orders from group {group_id}")
        self._store.mark_dispatched(group.order_ids, group.dispatched_at)
        for oid in group.order_ids:
            self._submit(oid)

    def _watch_order(self, order: OrderOut):
        key = order.key
        with self._lock:
            self._watch.setdefault(key, set()).add(order.id)
            self._watch_keys[key] = (order.network, order.token_address)
        self._sync_feed(key)
        if order.kind == "conditional" and self._dependency_ready(order):
            self._submit(order.id)

    def _forget(self, order_id: int):
        with self._lock:
            gid = self._order_group.pop(order_id, None)
            if gid is not None and gid in self._groups:
                group = self._groups[gid]
                if order_id in group.order_ids:
                    group.order_ids.remove(order_id)
                if not group.order_ids:
                    del self._groups[gid]
                    self._remove_job(gid)
            self._held.discard(order_id)
            idle = []
            for key, ids in self._watch.items():
                ids.discard(order_id)
                if not ids:
                    idle.append(key)
            for key in idle:
                del self._watch[key]
        for key in idle:
            self._sync_feed(key)

    def _sync_feed(self, key: str):
        """Subscribe or unsubscribe `key` so the feed matches the orders watching it."""
        with self._feed_lock:
            with self._lock:
                wanted = bool(self._watch.get(key)) and not self._stopped.is_set()
                network, token = self._watch_keys[key]
            if wanted and key not in self._feed_keys:
                self._feed_keys.add(key)
                self._feed.subscribe(network, token, self._on_tick, self._on_feed_error)
            elif not wanted and key in self._feed_keys:
                self._feed_keys.discard(key)
                self._feed.unsubscribe(network, token, self._on_tick)

    def _remove_job(self, group_id: str):
        try:
            self._scheduler.remove_job(f"orders-{group_id}")
        except JobLookupError:
            pass

    # -----------------------
    # Scaled and chained kinds
    # -----------------------
    def _expand_scaled(self, parent: OrderOut):
        cond = parent.conditions
        levels = int(cond["levels"])
        existing = {c.conditions.get("level"): c.id for c in self._store.load_children(parent.id)}
        per_level = parent.amount / levels
        child_ids = []
        for i in range(levels):
            if i in existing:
                child_ids.append(existing[i])
                continue
            price = cond["base_price"] + i * cond["price_step"]
            child = self._store.save_order(
                user_id=parent.user_id, wallet_address=parent.wallet_address, token_address=parent.token_address,
                network=parent.network, action=parent.action, amount=per_level, kind="limit",
                execute_at=parent.execute_at + timedelta(minutes=cond.get("interval_minutes", 0) * i),
                conditions={"limit_price": price, "level": i}, parent_id=parent.id,
            )
            child_ids.append(child.id)
            self._watch_order(child)
        self._store.update_order_status(parent.id, "executed", {"child_order_ids": child_ids})
        logger.info(f"Scaled order {parent.id} split into {levels} limit orders: {child_ids}")

    def _create_chain(self, head: OrderOut):
        for pos, step in enumerate(head.conditions["steps"], start=1):
            child = self._store.save_order(
                user_id=head.user_id, wallet_address=head.wallet_address,
                token_address=step.get("token_address") or head.token_address,
                network=head.network, action=step["action"], amount=step["amount"], kind="standard",
                execute_at=head.execute_at, conditions={"chain_head_id": head.id},
                parent_id=head.id, chain_position=pos,
            )
            with self._lock:
                self._held.add(child.id)
        self._schedule(head)

    def _arm_chain_member(self, order: OrderOut):
        head_id = order.conditions["chain_head_id"]
        try:
            head = self._store.get_order(head_id)
        except RecordNotFound:
            head = None
        if head is not None and head.status in ("pending", "executed"):
            with self._lock:
                self._held.add(order.id)
            if head.status == "executed":
                # interrupted mid-chain: pick up where it stopped
                self._submit(head.id)
            return
        self._store.update_order_status(order.id, "cancelled", {"error": f"chain head {head_id} did not execute"})

    def _run_chain(self, head: OrderOut, trigger_price: float | None):
        members = self._store.load_chain(head.id)
        member_ids = {m.id for m in members}
        with self._lock:
            self._running.update(member_ids)
        try:
            if head.status == "pending":
                ok = self.execute_order(head, trigger_price)
            else:
                ok = head.status == "executed"
            failed_id = None if ok else head.id
            for child in members:
                if child.is_terminal:
                    continue
                if failed_id is not None:
                    if self._store.update_order_status(child.id, "cancelled",
                                                       {"error": f"chain aborted: order {failed_id} failed"}):
                        logger.info(f"Chain {head.id}: skipped order {child.id} after failure of {failed_id}")
                        self._after_terminal(child.id)
                    else:
                        self._forget(child.id)
                    continue
                self._forget(child.id)
                if not self.execute_order(child):
                    failed_id = child.id
        finally:
            with self._lock:
                self._running.difference_update(member_ids)

    # -----------------------
    # Price-driven kinds
    # -----------------------
    def _on_tick(self, tick: PriceTick):
        with self._lock:
            if not self._watch.get(tick.key):
                return
        now = utcnow()
        for order in self._store.load_pending_orders(tick.network, tick.token_address, kinds=PRICE_DRIVEN_KINDS):
            if order.execute_at > now:
                continue
            try:
                if self._triggers[order.kind](order, tick):
                    logger.info(f"{order.kind} order {order.id} triggered at {tick.price}")
                    self._submit(order.id, tick.price)
            except Exception as e:
                logger.exception(f"Error checking order {order.id} on tick: {e}")

    def _limit_hit(self, order: OrderOut, tick: PriceTick) -> bool:
        limit = order.conditions["limit_price"]
        return tick.price <= limit if order.action == "buy" else tick.price >= limit

    def _stop_hit(self, order: OrderOut, tick: PriceTick) -> bool:
        stop = order.conditions["stop_price"]
        return tick.price <= stop if order.action == "sell" else tick.price >= stop

    def _trailing_hit(self, order: OrderOut, tick: PriceTick) -> bool:
        high = max(order.high_price or 0.0, tick.price)
        candidate = high * (1 - order.conditions["trail_percent"] / 100)
        stop = order.stop_price
        if stop is None or candidate > stop:
            self._store.update_trailing_stop(order.id, high, candidate)
            stop = candidate
        return tick.price <= stop

    def _conditional_hit(self, order: OrderOut, tick: PriceTick) -> bool:
        predicate = parse_predicate(order.conditions["predicate"])
        return predicate.is_met(tick, self._order_status)

    def _dependency_ready(self, order: OrderOut) -> bool:
        predicate = parse_predicate(order.conditions["predicate"])
        if not isinstance(predicate, DependencyPredicate) or order.execute_at > utcnow():
            return False
        return predicate.is_met(None, self._order_status)

    def _order_status(self, order_id: int) -> str | None:
        try:
            return self._store.get_order(order_id).status
        except RecordNotFound:
            return None

    def _on_feed_error(self, error: Exception):
        if not isinstance(error, FeedUnreachable):
            logger.warning(f"Feed error for orders: {error}")
            return
        key = feed_key(error.network, error.token_address)
        with self._feed_lock:
            self._feed_keys.discard(key)
        if self._stopped.is_set():
            return
        logger.warning(f"Price feed for {key} unreachable; resubscribing in {self.resubscribe_delay}s")
        self._scheduler.add_job(self._resubscribe, "date",
                                run_date=utcnow() + timedelta(seconds=self.resubscribe_delay),
                                args=[error.network, error.token_address], misfire_grace_time=None)

    def _resubscribe(self, network: str, token_address: str):
        self._sync_feed(feed_key(network, token_address))

    # -----------------------
    # Execution lane
    # -----------------------
    def _submit(self, order_id: int, trigger_price: float | None = None) -> bool:
        with self._lock:
            if self._stopped.is_set() or order_id in self._queued:
                return False
            self._queued.add(order_id)
        self._lane.submit(self._run, order_id, trigger_price)
        return True

    def _run(self, order_id: int, trigger_price: float | None):
        with self._lock:
            self._running.add(order_id)
        try:
            order = self._store.get_order(order_id)
            if order.kind == "chained":
                self._run_chain(order, trigger_price)
            elif not order.is_terminal:
                self.execute_order(order, trigger_price)
        except RecordNotFound:
            logger.info(f"Order {order_id} was deleted before execution")
        except Exception as e:
            logger.exception(f"Order lane error for {order_id}: {e}")
        finally:
            with self._lock:
                self._queued.discard(order_id)
                self._running.discard(order_id)

    def execute_order(self, order: OrderOut, trigger_price: float | None = None) -> bool:
        """Submit one order with bounded linear-backoff retries; persists the outcome."""
        retrying = Retrying(
            stop=stop_after_attempt(self.retry_count),
            wait=wait_incrementing(start=self.retry_backoff, increment=self.retry_backoff),
            retry=retry_if_exception_type((TransientExecutionFailure, DependencyUnavailable)),
            after=lambda state: self._log_retry(order, state),
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    # the triggering tick only prices the first attempt
                    first = attempt.retry_state.attempt_number == 1
                    price, result = self._attempt(order, trigger_price if first else None)
        except (TransientExecutionFailure, DependencyUnavailable) as last_error:
            failure = TerminalExecutionFailure(f"Order {order.id} failed after {self.retry_count} attempts: {last_error}")
            if self._store.update_order_status(order.id, "failed", {"error": str(last_error), "attempts": self.retry_count}):
                logger.error(str(failure))
                self._notify("order_failed", {"user_id": order.user_id, "order_id": order.id, "error": str(last_error)})
            self._after_terminal(order.id)
            return False

        payload = {"hash": result.tx_id, "price": result.price if result.price is not None else price,
                   "gas_cost": result.gas_cost}
        if self._store.update_order_status(order.id, "executed", payload):
            logger.info(f"Order {order.id} executed: {payload}")
            self._notify("order_executed", {"user_id": order.user_id, "order_id": order.id, "result": payload})
        else:
            logger.warning(f"Order {order.id} left pending before its result was recorded")
        self._after_terminal(order.id)
        return True

    def _log_retry(self, order: OrderOut, state: RetryCallState):
        if state.outcome is None or not state.outcome.failed:
            return
        logger.warning(f"Execution attempt {state.attempt_number}/{self.retry_count} for order {order.id} failed: "
                       f"{state.outcome.exception()}")

    def _attempt(self, order: OrderOut, trigger_price: float | None):
        try:
            price = trigger_price if trigger_price is not None else self._current_price(order)
        except DependencyUnavailable:
            raise
        except Exception as e:
            raise TransientExecutionFailure(f"price lookup failed: {e}") from e
        request = TradeRequest(network=order.network, action=order.action, token_address=order.token_address,
                               amount=order.amount, wallet_address=order.wallet_address,
                               options={"slippage": self.slippage_pct, "order_id": order.id})
        try:
            result = self._breakers.run(BROKER_DEPENDENCY, self._broker.execute_trade, request)
        except DependencyUnavailable:
            raise
        except Exception as e:
            raise TransientExecutionFailure(str(e)) from e
        return price, result

    def _current_price(self, order: OrderOut) -> float:
        cached = self._feed.last_price(order.network, order.token_address, self.price_max_age)
        if cached is not None:
            return cached
        return self._breakers.run(QUOTE_DEPENDENCY, self._quotes.get_current_price, order.network, order.token_address)

    def _after_terminal(self, order_id: int):
        self._forget(order_id)
        for other in self._store.load_pending_orders(kinds=("conditional",)):
            predicate = parse_predicate(other.conditions["predicate"])
            if isinstance(predicate, DependencyPredicate) and predicate.order_id == order_id \
                    and self._dependency_ready(other):
                logger.info(f"Conditional order {other.id} released by order {order_id}")
                self._submit(other.id)

    def _notify(self, event: str, payload: dict):
        for cb in list(self._observers):
            try:
                cb(event, payload)
            except Exception as e:
                logger.exception(f"Order observer failed on {event}: {e}")
