#Description: Record store: conditional status transitions, trailing stop ratchet and queries.
import pytest

from conftest import in_seconds
from utils.errors import RecordNotFound

BASE = {"user_id": "u1", "wallet_address": "0xw", "token_address": "0xt", "network": "ethereum",
        "action": "buy", "amount": 1.0}


def test_status_leaves_pending_once(store):
    o = store.save_order(**BASE, kind="standard", execute_at=in_seconds(10))
    assert store.update_order_status(o.id, "executed", {"hash": "0x1"}) is True
    assert store.update_order_status(o.id, "failed", {"error": "late"}) is False

    saved = store.get_order(o.id)
    assert saved.status == "executed"
    assert saved.execution_result["hash"] == "0x1"
    assert "executed_at" in saved.execution_result


def test_pending_is_not_a_terminal_status(store):
    o = store.save_order(**BASE, kind="standard", execute_at=in_seconds(10))
    with pytest.raises(ValueError):
        store.update_order_status(o.id, "pending")


def test_trailing_stop_only_moves_up(store):
    o = store.save_order(**BASE, kind="trailing", execute_at=in_seconds(0), conditions={"trail_percent": 10})
    assert store.update_trailing_stop(o.id, 1.2, 1.08) is True
    assert store.update_trailing_stop(o.id, 1.0, 0.9) is False
    saved = store.get_order(o.id)
    assert (saved.high_price, saved.stop_price) == (1.2, 1.08)


def test_pending_queries_filter_and_order(store):
    late = store.save_order(**BASE, kind="limit", execute_at=in_seconds(20), conditions={"limit_price": 1})
    early = store.save_order(**BASE, kind="standard", execute_at=in_seconds(10))
    other = store.save_order(**{**BASE, "token_address": "0xother"}, kind="limit", execute_at=in_seconds(5))

    assert [o.id for o in store.load_pending_orders()] == [other.id, early.id, late.id]
    assert [o.id for o in store.load_pending_orders("ethereum", "0xt", kinds=["limit"])] == [late.id]


def test_chain_members_come_back_by_position(store):
    head = store.save_order(**BASE, kind="chained", execute_at=in_seconds(0))
    second = store.save_order(**BASE, kind="standard", execute_at=in_seconds(0), parent_id=head.id, chain_position=2)
    first = store.save_order(**BASE, kind="standard", execute_at=in_seconds(0), parent_id=head.id, chain_position=1)
    assert [o.id for o in store.load_chain(head.id)] == [first.id, second.id]
    assert [o.id for o in store.load_children(head.id)] == [second.id, first.id]


def test_missing_records_raise(store):
    with pytest.raises(RecordNotFound):
        store.get_order(999)
    with pytest.raises(RecordNotFound):
        store.get_alert(999)


def test_alert_deactivates_once(store):
    a = store.save_alert(user_id="u1", network="base", token_address="0xt", target_price=1.0, condition="above")
    assert [x.id for x in store.load_active_alerts("base", "0xt")] == [a.id]
    assert store.update_alert_status(a.id, "triggered", {"price": 1.1}) is True
    assert store.update_alert_status(a.id, "executed") is False
    assert store.load_active_alerts() == []
    assert store.alert_metrics()["triggered_alerts"] == 1


def test_order_metrics_count_by_status(store):
    a = store.save_order(**BASE, kind="standard", execute_at=in_seconds(0))
    store.save_order(**BASE, kind="standard", execute_at=in_seconds(0))
    store.update_order_status(a.id, "cancelled")
    m = store.order_metrics()
    assert (m["total_orders"], m["pending_orders"], m["cancelled_orders"], m["executed_orders"]) == (2, 1, 1, 0)
