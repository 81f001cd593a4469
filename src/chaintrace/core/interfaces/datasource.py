from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from chaintrace.core.entities.chain import Chain
from chaintrace.core.entities.ingestion import NativeBalance, TokenBalance, TransactionPage


class IChainProvider(ABC):
    """
    Black-box access to one chain. Implementations raise UpstreamUnavailable
    when the upstream call fails or times out.
    """
    chain: Chain

    @abstractmethod
    async def get_native_balance(self, address: str) -> NativeBalance:
        pass

    @abstractmethod
    async def list_transaction_page(
        self,
        address: str,
        page_size: int,
        before: Optional[str] = None
    ) -> TransactionPage:
        """
        Newest-first page of transactions older than `before`.
        `before` is opaque: either the id of the last item seen or the
        `next_before` marker returned with the previous page.
        """
        pass

    @abstractmethod
    async def get_transaction_detail(self, transaction_id: str) -> Dict[str, Any]:
        """Full raw record, in the shape the chain's adapter decodes."""
        pass

    async def get_token_balances(self, address: str) -> List[TokenBalance]:
        return []

    async def close(self) -> None:
        pass
