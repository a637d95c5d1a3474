#Description: Durable record store for timed orders, price alerts and health events (SQLAlchemy).
from collections import Counter
from datetime import datetime
from typing import Iterable

from sqlalchemy import func

from models.orm import TimedOrder, PriceAlert, HealthEvent, utcnow
from models.schemas import OrderOut, AlertOut, ORDER_STATUSES
from utils.errors import RecordNotFound


class RecordStore:
    """Single source of truth for order/alert state.

    Status transitions are conditional updates: an order leaves `pending` (and an
    alert leaves `is_active`) at most once, whichever caller gets there first.
    """

    def __init__(self, session_factory):
        self._session_factory = session_factory

    def session(self):
        return self._session_factory()

    # -----------------------
    # Orders
    # -----------------------
    def save_order(self, **fields) -> OrderOut:
        with self.session() as db:
            order = TimedOrder(status="pending", **fields)
            db.add(order)
            db.commit()
            return OrderOut.model_validate(order)

    def get_order(self, order_id: int) -> OrderOut:
        with self.session() as db:
            order = db.get(TimedOrder, order_id)
            if order is None:
                raise RecordNotFound(f"Order {order_id} not found")
            return OrderOut.model_validate(order)

    def load_pending_orders(self, network: str | None = None, token_address: str | None = None,
                            kinds: Iterable[str] | None = None) -> list[OrderOut]:
        with self.session() as db:
            q = db.query(TimedOrder).filter(TimedOrder.status == "pending")
            if network is not None:
                q = q.filter(TimedOrder.network == network)
            if token_address is not None:
                q = q.filter(TimedOrder.token_address == token_address)
            if kinds is not None:
                q = q.filter(TimedOrder.kind.in_(list(kinds)))
            rows = q.order_by(TimedOrder.execute_at.asc(), TimedOrder.id.asc()).all()
            return [OrderOut.model_validate(o) for o in rows]

    def load_children(self, parent_id: int) -> list[OrderOut]:
        with self.session() as db:
            rows = db.query(TimedOrder).filter(TimedOrder.parent_id == parent_id).order_by(TimedOrder.id.asc()).all()
            return [OrderOut.model_validate(o) for o in rows]

    def load_chain(self, head_id: int) -> list[OrderOut]:
        with self.session() as db:
            rows = (db.query(TimedOrder).filter(TimedOrder.parent_id == head_id)
                    .filter(TimedOrder.chain_position.isnot(None))
                    .order_by(TimedOrder.chain_position.asc()).all())
            return [OrderOut.model_validate(o) for o in rows]

    def update_order_status(self, order_id: int, status: str, execution_result: dict | None = None) -> bool:
        """Move a pending order to a terminal status. Returns False if it already left pending."""
        if status not in ORDER_STATUSES or status == "pending":
            raise ValueError(f"Invalid terminal status {status!r}")
        result = dict(execution_result or {})
        result.setdefault("executed_at", utcnow().isoformat())
        with self.session() as db:
            n = (db.query(TimedOrder)
                 .filter(TimedOrder.id == order_id, TimedOrder.status == "pending")
                 .update({"status": status, "execution_result": result, "updated_at": utcnow()},
                         synchronize_session=False))
            db.commit()
            return n == 1

    def update_trailing_stop(self, order_id: int, high_price: float, stop_price: float) -> bool:
        # the tracked stop only ratchets upward
        with self.session() as db:
            n = (db.query(TimedOrder)
                 .filter(TimedOrder.id == order_id, TimedOrder.status == "pending")
                 .filter((TimedOrder.stop_price.is_(None)) | (TimedOrder.stop_price < stop_price))
                 .update({"stop_price": stop_price, "high_price": high_price, "updated_at": utcnow()},
                         synchronize_session=False))
            db.commit()
            return n == 1

    def mark_dispatched(self, order_ids: list[int], dispatched_at: datetime):
        if not order_ids:
            return
        with self.session() as db:
            (db.query(TimedOrder).filter(TimedOrder.id.in_(order_ids))
             .update({"dispatched_at": dispatched_at}, synchronize_session=False))
            db.commit()

    def list_orders(self, user_id: str, status: str | None = None, limit: int = 100) -> list[OrderOut]:
        with self.session() as db:
            q = db.query(TimedOrder).filter(TimedOrder.user_id == user_id)
            if status:
                q = q.filter(TimedOrder.status == status)
            rows = q.order_by(TimedOrder.execute_at.asc()).limit(limit).all()
            return [OrderOut.model_validate(o) for o in rows]

    def delete_order(self, order_id: int) -> bool:
        with self.session() as db:
            n = db.query(TimedOrder).filter(TimedOrder.id == order_id).delete(synchronize_session=False)
            db.commit()
            return n == 1

    def order_metrics(self) -> dict:
        with self.session() as db:
            rows = db.query(TimedOrder.status, func.count(TimedOrder.id)).group_by(TimedOrder.status).all()
        counts = Counter({status: n for status, n in rows})
        return {
            "total_orders": sum(counts.values()),
            "pending_orders": counts["pending"],
            "executed_orders": counts["executed"],
            "failed_orders": counts["failed"],
            "cancelled_orders": counts["cancelled"],
        }

    # -----------------------
    # Alerts
    # -----------------------
    def save_alert(self, **fields) -> AlertOut:
        with self.session() as db:
            alert = PriceAlert(is_active=True, status="active", **fields)
            db.add(alert)
            db.commit()
            return AlertOut.model_validate(alert)

    def get_alert(self, alert_id: int) -> AlertOut:
        with self.session() as db:
            alert = db.get(PriceAlert, alert_id)
            if alert is None:
                raise RecordNotFound(f"Alert {alert_id} not found")
            return AlertOut.model_validate(alert)

    def load_active_alerts(self, network: str | None = None, token_address: str | None = None) -> list[AlertOut]:
        with self.session() as db:
            q = db.query(PriceAlert).filter(PriceAlert.is_active.is_(True))
            if network is not None:
                q = q.filter(PriceAlert.network == network)
            if token_address is not None:
                q = q.filter(PriceAlert.token_address == token_address)
            return [AlertOut.model_validate(a) for a in q.order_by(PriceAlert.id.asc()).all()]

    def update_alert_status(self, alert_id: int, status: str, execution_result: dict | None = None) -> bool:
        """Deactivate an alert with a final status. Returns False if it was already inactive."""
        result = dict(execution_result or {})
        result.setdefault("executed_at", utcnow().isoformat())
        with self.session() as db:
            n = (db.query(PriceAlert)
                 .filter(PriceAlert.id == alert_id, PriceAlert.is_active.is_(True))
                 .update({"is_active": False, "status": status, "execution_result": result},
                         synchronize_session=False))
            db.commit()
            return n == 1

    def mark_alert_preapproved(self, alert_id: int):
        with self.session() as db:
            db.query(PriceAlert).filter(PriceAlert.id == alert_id).update({"pre_approved": True}, synchronize_session=False)
            db.commit()

    def list_alerts(self, user_id: str, active_only: bool = False) -> list[AlertOut]:
        with self.session() as db:
            q = db.query(PriceAlert).filter(PriceAlert.user_id == user_id)
            if active_only:
                q = q.filter(PriceAlert.is_active.is_(True))
            return [AlertOut.model_validate(a) for a in q.order_by(PriceAlert.created_at.desc()).all()]

    def alert_metrics(self) -> dict:
        with self.session() as db:
            rows = db.query(PriceAlert.status, func.count(PriceAlert.id)).group_by(PriceAlert.status).all()
        counts = Counter({status: n for status, n in rows})
        return {
            "total_alerts": sum(counts.values()),
            "active_alerts": counts["active"],
            "triggered_alerts": counts["triggered"],
            "executed_alerts": counts["executed"],
            "failed_alerts": counts["failed"],
        }

    # -----------------------
    # Health
    # -----------------------
    def record_health_event(self, level: str, event: str, dependency: str | None = None, context: dict | None = None):
        with self.session() as db:
            db.add(HealthEvent(level=level, event=event, dependency=dependency, context=context or {}))
            db.commit()

    def recent_health_events(self, limit: int = 20) -> list[dict]:
        with self.session() as db:
            rows = db.query(HealthEvent).order_by(HealthEvent.id.desc()).limit(limit).all()
            return [{"ts": r.ts, "level": r.level, "event": r.event, "dependency": r.dependency,
                     "context": r.context} for r in rows]
