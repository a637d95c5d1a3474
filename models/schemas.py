#Description: Pydantic schemas for order/alert creation, collaborator payloads and record snapshots.

from datetime import datetime, timezone
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator, model_validator

from models.orm import utcnow
from utils.errors import InvalidSpec

Network = Literal["ethereum", "base", "solana"]
Action = Literal["buy", "sell"]
ORDER_STATUSES = ("pending", "executed", "failed", "cancelled")
PRICE_DRIVEN_KINDS = ("limit", "stop", "trailing", "conditional")


def feed_key(network: str, token_address: str) -> str:
    return f"{network}:{token_address}"


# -----------------------
# Order creation (tagged by kind)
# -----------------------
class _OrderSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(min_length=1)
    wallet_address: str = Field(min_length=1)
    token_address: str = Field(min_length=1)
    network: Network
    action: Action
    amount: float = Field(gt=0)
    execute_at: Optional[datetime] = None

    @field_validator("execute_at")
    @classmethod
    def _naive_utc(cls, v: Optional[datetime]):
        if v is not None and v.tzinfo is not None:
            v = v.astimezone(timezone.utc).replace(tzinfo=None)
        return v

    def conditions(self) -> dict:
        """Kind-specific payload persisted in the order's `conditions` column."""
        return {}


class StandardOrder(_OrderSpec):
    kind: Literal["standard"] = "standard"


class LimitOrder(_OrderSpec):
    kind: Literal["limit"] = "limit"
    limit_price: float = Field(gt=0)

    def conditions(self) -> dict:
        return {"limit_price": self.limit_price}


class StopOrder(_OrderSpec):
    kind: Literal["stop"] = "stop"
    stop_price: float = Field(gt=0)

    def conditions(self) -> dict:
        return {"stop_price": self.stop_price}


class TrailingOrder(_OrderSpec):
    kind: Literal["trailing"] = "trailing"
    trail_percent: float = Field(gt=0, lt=100)  # 10 == 10%

    def conditions(self) -> dict:
        return {"trail_percent": self.trail_percent}


class ScaledOrder(_OrderSpec):
    kind: Literal["scaled"] = "scaled"
    levels: int = Field(ge=1, le=100)
    base_price: float = Field(gt=0)
    price_step: float
    interval_minutes: float = Field(default=0.0, ge=0)

    @model_validator(mode="after")
    def _levels_positive(self):
        if min(self.level_prices()) <= 0:
            raise ValueError("scaled ladder reaches a non-positive price")
        return self

    def level_prices(self) -> list[float]:
        return [self.base_price + i * self.price_step for i in range(self.levels)]

    def conditions(self) -> dict:
        return {"levels": self.levels, "base_price": self.base_price,
                "price_step": self.price_step, "interval_minutes": self.interval_minutes}


class ChainStep(BaseModel):
    model_config = ConfigDict(extra="forbid")
    action: Action
    amount: float = Field(gt=0)
    token_address: Optional[str] = None


class ChainedOrder(_OrderSpec):
    kind: Literal["chained"] = "chained"
    steps: list[ChainStep] = Field(min_length=1)

    def conditions(self) -> dict:
        return {"steps": [s.model_dump() for s in self.steps]}


class PricePredicate(BaseModel):
    type: Literal["price"] = "price"
    op: Literal["above", "below"] = "above"
    value: float = Field(gt=0)

    def is_met(self, tick, order_status) -> bool:
        if tick is None:
            return False
        return tick.price >= self.value if self.op == "above" else tick.price <= self.value


class VolumePredicate(BaseModel):
    type: Literal["volume"] = "volume"
    value: float = Field(ge=0)

    def is_met(self, tick, order_status) -> bool:
        return tick is not None and tick.volume_24h is not None and tick.volume_24h >= self.value


class DependencyPredicate(BaseModel):
    type: Literal["dependency"] = "dependency"
    order_id: int
    status: Literal["executed", "failed", "cancelled"] = "executed"

    def is_met(self, tick, order_status) -> bool:
        # order_status: callable(order_id) -> status or None
        return order_status(self.order_id) == self.status


Predicate = Annotated[Union[PricePredicate, VolumePredicate, DependencyPredicate], Field(discriminator="type")]


class ConditionalOrder(_OrderSpec):
    kind: Literal["conditional"] = "conditional"
    predicate: Predicate

    def conditions(self) -> dict:
        return {"predicate": self.predicate.model_dump()}


OrderCreate = Annotated[
    Union[StandardOrder, LimitOrder, StopOrder, TrailingOrder, ScaledOrder, ChainedOrder, ConditionalOrder],
    Field(discriminator="kind"),
]

_order_adapter = TypeAdapter(OrderCreate)
_predicate_adapter = TypeAdapter(Predicate)


def parse_order(data) -> _OrderSpec:
    if isinstance(data, _OrderSpec):
        return data
    if isinstance(data, dict) and "kind" not in data:
        data = {**data, "kind": "standard"}
    try:
        return _order_adapter.validate_python(data)
    except ValidationError as e:
        raise InvalidSpec(f"Invalid order: {e}") from e


def parse_predicate(data: dict):
    return _predicate_adapter.validate_python(data)


# -----------------------
# Alerts
# -----------------------
class SwapAction(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = False
    type: Action = "buy"
    amount: Optional[str] = None  # "1.5" or "50%"
    wallet_address: Optional[str] = None

    @field_validator("amount", mode="before")
    @classmethod
    def _amount_str(cls, v):
        if v is None:
            return v
        if isinstance(v, (int, float)):
            return str(v)
        return str(v).strip()

    @model_validator(mode="after")
    def _check(self):
        if not self.enabled:
            return self
        if not self.amount or not self.wallet_address:
            raise ValueError("enabled swap action needs amount and wallet_address")
        raw = self.amount[:-1] if self.is_percentage else self.amount
        try:
            value = float(raw)
        except ValueError:
            raise ValueError(f"amount {self.amount!r} is not a number or percentage") from None
        if value <= 0 or (self.is_percentage and value > 100):
            raise ValueError(f"amount {self.amount!r} out of range")
        return self

    @property
    def is_percentage(self) -> bool:
        return bool(self.amount) and self.amount.endswith("%")


class AlertCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(min_length=1)
    network: Network
    token_address: str = Field(min_length=1)
    target_price: float = Field(gt=0)
    condition: Literal["above", "below"]
    swap_action: SwapAction = Field(default_factory=SwapAction)
    wallet_type: Literal["internal", "external"] = "internal"
    pre_approved: bool = False


def parse_alert(data) -> AlertCreate:
    if isinstance(data, AlertCreate):
        return data
    try:
        return AlertCreate.model_validate(data)
    except ValidationError as e:
        raise InvalidSpec(f"Invalid alert: {e}") from e


# -----------------------
# Collaborator payloads
# -----------------------
class PriceTick(BaseModel):
    network: str
    token_address: str
    price: float
    volume_24h: Optional[float] = None
    ts: datetime = Field(default_factory=utcnow)

    @property
    def key(self) -> str:
        return feed_key(self.network, self.token_address)


class TradeRequest(BaseModel):
    network: str
    action: Action
    token_address: str
    amount: float
    wallet_address: str
    options: dict = Field(default_factory=dict)


class TradeResult(BaseModel):
    model_config = ConfigDict(extra="allow")

    hash: Optional[str] = None
    signature: Optional[str] = None
    price: Optional[float] = None
    gas_cost: Optional[float] = None

    @property
    def tx_id(self) -> Optional[str]:
        return self.hash or self.signature


class ApprovalStatus(BaseModel):
    approved: bool
    reason: Optional[str] = None


# -----------------------
# Record snapshots
# -----------------------
class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: str
    wallet_address: str
    token_address: str
    network: str
    action: str
    amount: float
    kind: str = "standard"
    status: str = "pending"
    execute_at: datetime
    created_at: Optional[datetime] = None
    conditions: dict = Field(default_factory=dict)
    stop_price: Optional[float] = None
    high_price: Optional[float] = None
    parent_id: Optional[int] = None
    chain_position: Optional[int] = None
    dispatched_at: Optional[datetime] = None
    execution_result: Optional[dict] = None

    @property
    def key(self) -> str:
        return feed_key(self.network, self.token_address)

    @property
    def is_terminal(self) -> bool:
        return self.status != "pending"


class AlertOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: str
    network: str
    token_address: str
    target_price: float
    condition: str
    is_active: bool = True
    status: str = "active"
    swap_action: Optional[dict] = None
    wallet_type: str = "internal"
    pre_approved: bool = False
    created_at: Optional[datetime] = None
    execution_result: Optional[dict] = None

    @property
    def key(self) -> str:
        return feed_key(self.network, self.token_address)

    def swap(self) -> SwapAction:
        return SwapAction.model_validate(self.swap_action or {})
