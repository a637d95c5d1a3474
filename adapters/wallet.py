#Description: Wallet collaborators: balances and token approval for externally-connected wallets.
from collections import defaultdict
from threading import Lock

from adapters.http_common import HttpAdapter
from models.schemas import ApprovalStatus


class WalletClient:
    def check_and_request_approval(self, token_address: str, wallet_address: str, amount) -> ApprovalStatus:
        raise NotImplementedError

    def get_token_balance(self, network: str, token_address: str, wallet_address: str) -> float:
        raise NotImplementedError


class HttpWalletClient(WalletClient, HttpAdapter):
    def check_and_request_approval(self, token_address: str, wallet_address: str, amount) -> ApprovalStatus:
        res = self.post("/approvals", {"token_address": token_address, "wallet_address": wallet_address,
                                       "amount": str(amount)})
        return ApprovalStatus.model_validate(res)

    def get_token_balance(self, network: str, token_address: str, wallet_address: str) -> float:
        res = self.get(f"/balances/{network}/{wallet_address}", params={"token": token_address})
        return float(res["balance"])


class PaperWallet(WalletClient):
    def __init__(self, auto_approve: bool = True):
        self.auto_approve = auto_approve
        self._balances: dict[tuple, float] = defaultdict(float)
        self.approval_requests: list[tuple] = []
        self._lock = Lock()

    def set_balance(self, network: str, token_address: str, wallet_address: str, balance: float):
        with self._lock:
            self._balances[(network, token_address, wallet_address)] = balance

    def check_and_request_approval(self, token_address: str, wallet_address: str, amount) -> ApprovalStatus:
        with self._lock:
            self.approval_requests.append((token_address, wallet_address, amount))
        if self.auto_approve:
            return ApprovalStatus(approved=True)
        return ApprovalStatus(approved=False, reason="approval declined")

    def get_token_balance(self, network: str, token_address: str, wallet_address: str) -> float:
        with self._lock:
            return self._balances[(network, token_address, wallet_address)]
