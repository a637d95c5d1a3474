#Description: Trade-execution clients: HTTP broker for live mode, simulated fills for paper mode.
import uuid
from threading import Lock

from adapters.http_common import HttpAdapter
from models.schemas import TradeRequest, TradeResult
from utils.logging import logger


class BrokerClient:
    def execute_trade(self, request: TradeRequest) -> TradeResult:
        raise NotImplementedError


class HttpBrokerClient(BrokerClient, HttpAdapter):
    def execute_trade(self, request: TradeRequest) -> TradeResult:
        try:
            res = self.post("/trades", request.model_dump())
        except Exception as e:
            logger.warning(f"Broker rejected {request.action} {request.token_address} on {request.network}: {e}")
            raise
        return TradeResult.model_validate(res)


class PaperBroker(BrokerClient):
    """Simulated settlement; keeps every request for inspection."""

    def __init__(self, fill_price: float | None = None):
        self.fill_price = fill_price
        self.requests: list[TradeRequest] = []
        self._lock = Lock()

    def execute_trade(self, request: TradeRequest) -> TradeResult:
        with self._lock:
            self.requests.append(request)
        tx = f"SIM-{uuid.uuid4().hex[:16]}"
        logger.info(f"SIM {request.action.upper()} {request.amount} {request.token_address} on {request.network} tx={tx}")
        if request.network == "solana":
            return TradeResult(signature=tx, price=self.fill_price, gas_cost=0.0)
        return TradeResult(hash=tx, price=self.fill_price, gas_cost=0.0)
