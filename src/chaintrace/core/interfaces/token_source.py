from abc import ABC, abstractmethod
from typing import Any, Optional, Set

from chaintrace.core.entities.chain import Chain
from chaintrace.core.entities.ingestion import TokenMetadata


class ITokenSource(ABC):
    """One upstream of token metadata (token list, market data API...)."""
    name: str
    chains: Set[Chain]

    def supports(self, chain: Chain) -> bool:
        return chain in self.chains

    @abstractmethod
    async def lookup(self, asset_id: str, chain: Chain) -> Optional[TokenMetadata]:
        """None when the source does not know the asset."""
        pass

    async def close(self) -> None:
        pass


class IKeyValueCache(ABC):
    """JSON values with a per-key TTL."""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        pass

    @abstractmethod
    def set(self, key: str, value: Any, ttl_seconds: int = 60) -> None:
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        pass
