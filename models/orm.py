#Description: ORM entity definitions for timed orders, price alerts and health events.

from sqlalchemy.orm import declarative_base, Mapped, mapped_column
from sqlalchemy import Integer, String, Float, DateTime, JSON, Boolean, Index
from datetime import datetime, timezone

Base = declarative_base()

def utcnow() -> datetime:
    # naive UTC throughout; SQLite does not keep tzinfo
    return datetime.now(timezone.utc).replace(tzinfo=None)

class TimedOrder(Base):
    __tablename__ = "timed_orders"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    wallet_address: Mapped[str] = mapped_column(String)
    token_address: Mapped[str] = mapped_column(String)
    network: Mapped[str] = mapped_column(String)  # ethereum|base|solana
    action: Mapped[str] = mapped_column(String)  # buy|sell
    amount: Mapped[float] = mapped_column(Float)
    kind: Mapped[str] = mapped_column(String, default="standard")
    status: Mapped[str] = mapped_column(String, default="pending", index=True)  # pending/executed/failed/cancelled
    execute_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    conditions: Mapped[dict] = mapped_column(JSON, default=dict)
    stop_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    high_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    parent_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    chain_position: Mapped[int | None] = mapped_column(Integer, nullable=True)
    dispatched_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    execution_result: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    __table_args__ = (Index("ix_timed_orders_status_execute_at", "status", "execute_at"),)

class PriceAlert(Base):
    __tablename__ = "price_alerts"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    network: Mapped[str] = mapped_column(String)
    token_address: Mapped[str] = mapped_column(String)
    target_price: Mapped[float] = mapped_column(Float)
    condition: Mapped[str] = mapped_column(String)  # above|below
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    status: Mapped[str] = mapped_column(String, default="active")  # active/triggered/executed/failed/cancelled
    swap_action: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    wallet_type: Mapped[str] = mapped_column(String, default="internal")  # internal|external
    pre_approved: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    execution_result: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    __table_args__ = (Index("ix_price_alerts_active_key", "is_active", "network", "token_address"),)

class HealthEvent(Base):
    __tablename__ = "health_events"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ts: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    level: Mapped[str] = mapped_column(String)
    event: Mapped[str] = mapped_column(String, index=True)
    dependency: Mapped[str | None] = mapped_column(String, nullable=True)
    context: Mapped[dict] = mapped_column(JSON, default=dict)
