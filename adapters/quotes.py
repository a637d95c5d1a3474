#Description: On-demand point price reads (DexScreener public API).

from adapters.http_common import HttpAdapter

# DexScreener chain ids for the supported networks
CHAIN_IDS = {"ethereum": "ethereum", "base": "base", "solana": "solana"}


class QuoteClient:
    def get_current_price(self, network: str, token_address: str) -> float:
        raise NotImplementedError


class DexScreenerQuotes(QuoteClient, HttpAdapter):
    BASE_URL = "https://api.dexscreener.com/latest/dex/tokens"

    def get_current_price(self, network: str, token_address: str) -> float:
        data = self.get(f"/{token_address}")
        chain = CHAIN_IDS.get(network, network)
        pairs = [p for p in (data.get("pairs") or []) if p.get("chainId") == chain and p.get("priceUsd")]
        if not pairs:
            raise ValueError(f"No {network} price for {token_address}")
        # deepest pool wins
        best = max(pairs, key=lambda p: float((p.get("liquidity") or {}).get("usd") or 0.0))
        return float(best["priceUsd"])
