#Description: Order scheduler: coalesced timers, restart re-hydration, retries and the advanced order kinds.
from threading import Lock

import pytest

from adapters.broker import PaperBroker
from conftest import in_seconds, wait_for
from models.orm import utcnow
from models.schemas import TradeResult
from services.circuit_breaker import BreakerRegistry
from services.scheduler import OrderScheduler
from utils.errors import InvalidSpec

TOKEN = "0xfeed"
BASE = {"user_id": "u1", "wallet_address": "0xwallet", "token_address": TOKEN, "network": "ethereum"}


class StaticQuotes:
    def __init__(self, price=1.0):
        self.price = price

    def get_current_price(self, network, token_address):
        return self.price


class FlakyBroker(PaperBroker):
    """Fails every request whose amount is in `fail_amounts`, the first `fail_times` requests, or all of them."""

    def __init__(self, fail_amounts=None, fail_all=False, fail_times=0):
        super().__init__()
        self.fail_amounts = set(fail_amounts or ())
        self.fail_all = fail_all
        self.fail_times = fail_times
        self.attempts = 0
        self._count_lock = Lock()

    def execute_trade(self, request):
        with self._count_lock:
            self.attempts += 1
            early = self.attempts <= self.fail_times
        if self.fail_all or early or request.amount in self.fail_amounts:
            raise ConnectionError("rpc timeout")
        return super().execute_trade(request)


@pytest.fixture
def make_scheduler(store, fake_feed, aps):
    made = []

    def _make(broker=None, **opts):
        opts.setdefault("retry_backoff", 0.0)
        opts.setdefault("coalesce_window", 1.0)
        sched = OrderScheduler(store, fake_feed, BreakerRegistry(), broker or PaperBroker(), StaticQuotes(),
                               aps, **opts)
        made.append(sched)
        return sched

    yield _make
    for s in made:
        s.stop()


def order(**kw):
    return {**BASE, "action": "buy", "amount": 1.0, **kw}


def status_of(store, order_id):
    return store.get_order(order_id).status


def test_orders_within_window_share_one_dispatch(make_scheduler, store):
    sched = make_scheduler()
    ids = [sched.create_order(order(execute_at=in_seconds(s))).id for s in (0.4, 0.7, 1.1)]
    later = sched.create_order(order(execute_at=in_seconds(60))).id
    assert len(sched.groups()) == 2

    assert wait_for(lambda: all(status_of(store, i) == "executed" for i in ids))
    dispatched = {store.get_order(i).dispatched_at for i in ids}
    assert len(dispatched) == 1 and None not in dispatched
    assert status_of(store, later) == "pending"


def test_due_order_executes_immediately(make_scheduler, store):
    sched = make_scheduler()
    o = sched.create_order(order())
    assert wait_for(lambda: status_of(store, o.id) == "executed")
    result = store.get_order(o.id).execution_result
    assert result["hash"].startswith("SIM-")
    assert result["price"] == 1.0


def test_restart_rearms_exactly_the_pending_orders(make_scheduler, store):
    first = make_scheduler()
    created = [first.create_order(order(execute_at=in_seconds(3600 + i))) for i in range(3)]
    done = store.save_order(**BASE, action="sell", amount=2.0, kind="standard", execute_at=in_seconds(3600))
    store.update_order_status(done.id, "executed", {"hash": "0x1"})
    first.stop()

    second = make_scheduler()
    assert second.start() == 3
    assert second.scheduled_order_ids() == {o.id for o in created}
    for o in created:
        assert store.get_order(o.id).execute_at == o.execute_at


def test_trailing_stop_ratchets_and_fires(make_scheduler, store, fake_feed):
    sched = make_scheduler()
    o = sched.create_order(order(action="sell", kind="trailing", trail_percent=10))
    assert fake_feed.is_subscribed("ethereum", TOKEN)

    fake_feed.push("ethereum", TOKEN, 1.0)
    assert store.get_order(o.id).stop_price == pytest.approx(0.9)
    fake_feed.push("ethereum", TOKEN, 1.2)
    assert store.get_order(o.id).stop_price == pytest.approx(1.08)
    fake_feed.push("ethereum", TOKEN, 1.1)
    assert store.get_order(o.id).stop_price == pytest.approx(1.08)
    assert status_of(store, o.id) == "pending"

    fake_feed.push("ethereum", TOKEN, 0.9)
    assert wait_for(lambda: status_of(store, o.id) == "executed")
    assert store.get_order(o.id).execution_result["price"] == pytest.approx(0.9)
    assert wait_for(lambda: not fake_feed.is_subscribed("ethereum", TOKEN))


def test_limit_and_stop_directions(make_scheduler, store, fake_feed):
    sched = make_scheduler()
    buy_limit = sched.create_order(order(kind="limit", limit_price=0.5))
    sell_stop = sched.create_order(order(action="sell", kind="stop", stop_price=0.8))

    fake_feed.push("ethereum", TOKEN, 0.9)
    assert status_of(store, buy_limit.id) == "pending"
    assert status_of(store, sell_stop.id) == "pending"

    fake_feed.push("ethereum", TOKEN, 0.7)
    assert wait_for(lambda: status_of(store, sell_stop.id) == "executed")
    assert status_of(store, buy_limit.id) == "pending"

    fake_feed.push("ethereum", TOKEN, 0.5)
    assert wait_for(lambda: status_of(store, buy_limit.id) == "executed")


def test_scaled_order_splits_into_limit_children(make_scheduler, store, fake_feed):
    sched = make_scheduler()
    parent = sched.create_order(order(kind="scaled", amount=3.0, levels=3, base_price=1.0, price_step=-0.1))

    assert parent.status == "executed"
    child_ids = parent.execution_result["child_order_ids"]
    children = [store.get_order(i) for i in child_ids]
    assert [c.kind for c in children] == ["limit"] * 3
    assert [c.conditions["limit_price"] for c in children] == pytest.approx([1.0, 0.9, 0.8])
    assert all(c.amount == pytest.approx(1.0) and c.parent_id == parent.id for c in children)

    fake_feed.push("ethereum", TOKEN, 0.95)
    assert wait_for(lambda: status_of(store, child_ids[0]) == "executed")
    assert [status_of(store, i) for i in child_ids[1:]] == ["pending", "pending"]


def test_chain_runs_in_order_and_aborts_after_failure(make_scheduler, store):
    broker = FlakyBroker(fail_amounts={2.0})
    sched = make_scheduler(broker, retry_count=2)
    head = sched.create_order(order(kind="chained", steps=[{"action": "sell", "amount": 2.0},
                                                          {"action": "buy", "amount": 3.0}]))
    members = store.load_chain(head.id)
    assert [m.chain_position for m in members] == [1, 2]

    assert wait_for(lambda: status_of(store, members[1].id) != "pending")
    assert status_of(store, head.id) == "executed"
    assert status_of(store, members[0].id) == "failed"
    last = store.get_order(members[1].id)
    assert last.status == "cancelled"
    assert last.execution_result["error"] == f"chain aborted: order {members[0].id} failed"
    assert [r.amount for r in broker.requests] == [1.0]


def test_finished_chain_frees_its_members(make_scheduler, store):
    sched = make_scheduler()
    head = sched.create_order(order(kind="chained", steps=[{"action": "sell", "amount": 2.0},
                                                          {"action": "buy", "amount": 3.0}]))
    members = store.load_chain(head.id)

    assert wait_for(lambda: status_of(store, members[-1].id) == "executed")
    assert wait_for(lambda: not sched._running)


def test_chain_resumes_after_restart(make_scheduler, store):
    head = store.save_order(**BASE, action="buy", amount=1.0, kind="chained", execute_at=utcnow(),
                            conditions={"steps": [{"action": "sell", "amount": 1.0}]})
    child = store.save_order(**BASE, action="sell", amount=1.0, kind="standard", execute_at=utcnow(),
                             conditions={"chain_head_id": head.id}, parent_id=head.id, chain_position=1)
    store.update_order_status(head.id, "executed", {"hash": "0xhead"})

    make_scheduler().start()
    assert wait_for(lambda: status_of(store, child.id) == "executed")


def test_conditional_waits_for_dependency(make_scheduler, store):
    sched = make_scheduler()
    first = sched.create_order(order(execute_at=in_seconds(0.5)))
    follower = sched.create_order(order(action="sell", kind="conditional",
                                        predicate={"type": "dependency", "order_id": first.id}))
    assert status_of(store, follower.id) == "pending"
    assert wait_for(lambda: status_of(store, follower.id) == "executed")
    assert status_of(store, first.id) == "executed"


def test_conditional_price_predicate(make_scheduler, store, fake_feed):
    sched = make_scheduler()
    o = sched.create_order(order(kind="conditional", predicate={"type": "price", "op": "above", "value": 2.0}))
    fake_feed.push("ethereum", TOKEN, 1.5)
    assert status_of(store, o.id) == "pending"
    fake_feed.push("ethereum", TOKEN, 2.5)
    assert wait_for(lambda: status_of(store, o.id) == "executed")


def test_retries_then_marks_failed(make_scheduler, store):
    broker = FlakyBroker(fail_all=True)
    sched = make_scheduler(broker, retry_count=3)
    events = []
    sched.on(lambda event, payload: events.append(event))
    o = sched.create_order(order())

    assert wait_for(lambda: status_of(store, o.id) == "failed")
    result = store.get_order(o.id).execution_result
    assert result["attempts"] == 3
    assert "rpc timeout" in result["error"]
    assert broker.attempts == 3
    assert wait_for(lambda: "order_failed" in events)
    assert "order_created" in events


def test_retry_stops_once_an_attempt_succeeds(make_scheduler, store):
    broker = FlakyBroker(fail_times=1)
    sched = make_scheduler(broker, retry_count=3)
    o = sched.create_order(order())

    assert wait_for(lambda: status_of(store, o.id) == "executed")
    assert broker.attempts == 2
    assert store.get_order(o.id).execution_result["hash"].startswith("0x")


def test_cancel_removes_timer(make_scheduler, store, aps):
    sched = make_scheduler()
    o = sched.create_order(order(execute_at=in_seconds(3600)))
    assert len(aps.get_jobs()) == 1

    assert sched.cancel_order(o.id) is True
    assert status_of(store, o.id) == "cancelled"
    assert o.id not in sched.scheduled_order_ids()
    assert aps.get_jobs() == []
    assert sched.cancel_order(o.id) is False


def test_cancelling_an_order_releases_its_dependents(make_scheduler, store):
    sched = make_scheduler()
    first = sched.create_order(order(execute_at=in_seconds(3600)))
    follower = sched.create_order(order(action="sell", kind="conditional",
                                        predicate={"type": "dependency", "order_id": first.id,
                                                   "status": "cancelled"}))
    assert status_of(store, follower.id) == "pending"

    assert sched.cancel_order(first.id) is True
    assert wait_for(lambda: status_of(store, follower.id) == "executed")


def test_delete_and_list(make_scheduler, store):
    sched = make_scheduler()
    keep = sched.create_order(order(execute_at=in_seconds(3600)))
    gone = sched.create_order(order(execute_at=in_seconds(7200)))
    assert sched.delete_order(gone.id) is True
    assert [o.id for o in sched.list_orders("u1")] == [keep.id]
    assert sched.metrics()["pending_orders"] == 1


def test_invalid_order_is_rejected(make_scheduler):
    sched = make_scheduler()
    with pytest.raises(InvalidSpec):
        sched.create_order(order(amount=-1))
    with pytest.raises(InvalidSpec):
        sched.create_order(order(kind="trailing", trail_percent=150))


def test_broker_result_fields_are_recorded(make_scheduler, store):
    class SolanaBroker(PaperBroker):
        def execute_trade(self, request):
            return TradeResult(signature="5sig", price=2.5, gas_cost=0.001)

    sched = make_scheduler(SolanaBroker())
    o = sched.create_order(order())
    assert wait_for(lambda: status_of(store, o.id) == "executed")
    result = store.get_order(o.id).execution_result
    assert (result["hash"], result["price"], result["gas_cost"]) == ("5sig", 2.5, 0.001)
