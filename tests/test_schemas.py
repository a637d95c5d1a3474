#Description: Order/alert parsing and predicate evaluation.
from datetime import datetime, timedelta, timezone

import pytest

from models.schemas import (DependencyPredicate, PriceTick, ScaledOrder, StandardOrder, SwapAction, parse_order,
                            parse_predicate)
from utils.errors import InvalidSpec

BASE = {"user_id": "u1", "wallet_address": "0xw", "token_address": "0xt", "network": "base",
        "action": "sell", "amount": 2}


def test_kind_defaults_to_standard():
    parsed = parse_order(BASE)
    assert isinstance(parsed, StandardOrder)
    assert parsed.conditions() == {}


def test_aware_execute_at_becomes_naive_utc():
    when = datetime(2026, 1, 1, 12, 0, tzinfo=timezone(timedelta(hours=2)))
    parsed = parse_order({**BASE, "execute_at": when})
    assert parsed.execute_at == datetime(2026, 1, 1, 10, 0)


def test_unknown_fields_and_networks_are_rejected():
    with pytest.raises(InvalidSpec):
        parse_order({**BASE, "network": "bitcoin"})
    with pytest.raises(InvalidSpec):
        parse_order({**BASE, "limit_price": 1.0})


def test_scaled_ladder():
    parsed = parse_order({**BASE, "kind": "scaled", "levels": 4, "base_price": 2.0, "price_step": 0.5})
    assert isinstance(parsed, ScaledOrder)
    assert parsed.level_prices() == [2.0, 2.5, 3.0, 3.5]
    with pytest.raises(InvalidSpec):
        parse_order({**BASE, "kind": "scaled", "levels": 3, "base_price": 1.0, "price_step": -0.5})


def test_chained_needs_steps():
    with pytest.raises(InvalidSpec):
        parse_order({**BASE, "kind": "chained", "steps": []})
    parsed = parse_order({**BASE, "kind": "chained", "steps": [{"action": "buy", "amount": 1}]})
    assert parsed.conditions()["steps"][0]["action"] == "buy"


def test_predicates():
    tick = PriceTick(network="base", token_address="0xt", price=1.0, volume_24h=500)
    assert parse_predicate({"type": "price", "op": "below", "value": 1.0}).is_met(tick, None)
    assert not parse_predicate({"type": "volume", "value": 1000}).is_met(tick, None)

    dep = parse_predicate({"type": "dependency", "order_id": 7})
    assert isinstance(dep, DependencyPredicate)
    assert dep.is_met(None, {7: "executed"}.get)
    assert not dep.is_met(None, {7: "failed"}.get)


@pytest.mark.parametrize("amount, pct", [("50%", True), ("1.5", False), (3, False)])
def test_swap_amounts(amount, pct):
    swap = SwapAction(enabled=True, amount=amount, wallet_address="0xw")
    assert swap.is_percentage is pct


@pytest.mark.parametrize("amount", ["0%", "101%", "abc", "-1"])
def test_bad_swap_amounts(amount):
    with pytest.raises(ValueError):
        SwapAction(enabled=True, amount=amount, wallet_address="0xw")
