import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

import httpx

from chaintrace.core.entities.chain import Chain
from chaintrace.core.entities.ingestion import TokenMetadata
from chaintrace.core.interfaces.token_source import ITokenSource

logger = logging.getLogger(__name__)

JUPITER_TOKEN_LIST_URL = "https://token.jup.ag/all"
SOLANA_TOKEN_LIST_URL = (
    "https://raw.githubusercontent.com/solana-labs/token-list/main/src/tokens/solana.tokenlist.json"
)
COINGECKO_API_URL = "https://api.coingecko.com/api/v3"

COINGECKO_PLATFORMS = {
    Chain.ETHEREUM: "ethereum",
    Chain.BASE: "base",
    Chain.SOLANA: "solana",
}


class TokenListSource(ITokenSource):
    """
    A published token list, downloaded whole and indexed by address.
    The index is refreshed after `refresh_seconds`.
    """
    chains = {Chain.SOLANA}

    def __init__(
        self,
        name: str,
        url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
        refresh_seconds: int = 3600
    ):
        self.name = name
        self.url = url
        self.refresh_seconds = refresh_seconds
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._index: Optional[Dict[str, Dict[str, Any]]] = None
        self._loaded_at = 0.0
        self._lock = asyncio.Lock()

    @staticmethod
    def _entries(payload: Any) -> List[Dict[str, Any]]:
        if isinstance(payload, list):
            return payload
        if isinstance(payload, dict):
            return payload.get("tokens") or []
        return []

    async def _load(self) -> Dict[str, Dict[str, Any]]:
        async with self._lock:
            if self._index is not None and time.monotonic() - self._loaded_at < self.refresh_seconds:
                return self._index
            response = await self._client.get(self.url)
            response.raise_for_status()
            self._index = {
                entry["address"]: entry
                for entry in self._entries(response.json())
                if isinstance(entry, dict) and entry.get("address")
            }
            self._loaded_at = time.monotonic()
            logger.info(f"Loaded {len(self._index)} tokens from {self.name}")
            return self._index

    async def lookup(self, asset_id: str, chain: Chain) -> Optional[TokenMetadata]:
        entry = (await self._load()).get(asset_id)
        if not entry or entry.get("decimals") is None:
            return None
        return TokenMetadata(
            symbol=entry.get("symbol") or "",
            name=entry.get("name") or "",
            decimals=int(entry["decimals"]),
            source=self.name
        )

    async def close(self) -> None:
        await self._client.aclose()


class CoinGeckoSource(ITokenSource):
    name = "coingecko"
    chains = set(COINGECKO_PLATFORMS)

    def __init__(self, base_url: str = COINGECKO_API_URL, client: Optional[httpx.AsyncClient] = None,
                 timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def lookup(self, asset_id: str, chain: Chain) -> Optional[TokenMetadata]:
        platform = COINGECKO_PLATFORMS[chain]
        response = await self._client.get(f"{self.base_url}/coins/{platform}/contract/{asset_id}")
        # unlisted tokens are a normal 404
        if response.status_code == 404:
            return None
        response.raise_for_status()
        data = response.json()

        decimals = ((data.get("detail_platforms") or {}).get(platform) or {}).get("decimal_place")
        if decimals is None or not data.get("symbol"):
            return None
        return TokenMetadata(
            symbol=data["symbol"].upper(),
            name=data.get("name") or data["symbol"],
            decimals=int(decimals),
            source=self.name
        )

    async def close(self) -> None:
        await self._client.aclose()


def default_token_sources(timeout: float = 10.0) -> List[ITokenSource]:
    """Order matters: the first source that knows a token wins."""
    return [
        TokenListSource("jupiter", JUPITER_TOKEN_LIST_URL, timeout=timeout),
        TokenListSource("solana-token-list", SOLANA_TOKEN_LIST_URL, timeout=timeout),
        CoinGeckoSource(timeout=timeout),
    ]
