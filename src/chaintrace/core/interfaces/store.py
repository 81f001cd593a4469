from abc import ABC, abstractmethod
from typing import List, Optional

from chaintrace.core.entities.chain import Chain
from chaintrace.core.entities.portfolio import PortfolioSnapshot
from chaintrace.core.entities.transfer import TokenSummary, TransferEvent


class ITransactionStore(ABC):
    """
    Idempotent persistence for transfer events, token summaries and
    portfolio snapshots. Every write is an upsert on the natural key, so
    concurrent writers converge (last writer wins).
    """

    @abstractmethod
    async def upsert_event(self, event: TransferEvent) -> None:
        pass

    async def upsert_events(self, events: List[TransferEvent]) -> None:
        for event in events:
            await self.upsert_event(event)

    @abstractmethod
    async def has_events(self, wallet: str, chain: Chain) -> bool:
        pass

    @abstractmethod
    async def query_events(
        self,
        wallet: str,
        chain: Chain,
        token_id: Optional[str] = None,
        limit: Optional[int] = None,
        search_text: Optional[str] = None
    ) -> List[TransferEvent]:
        """Newest first by observed_at; events without a timestamp sort last."""
        pass

    @abstractmethod
    async def upsert_summary(
        self,
        wallet: str,
        chain: Chain,
        asset_id: str,
        symbol: Optional[str],
        name: Optional[str]
    ) -> TokenSummary:
        """Fold every stored event for the key and overwrite the summary row."""
        pass

    @abstractmethod
    async def get_summaries(self, wallet: str, chain: Chain) -> List[TokenSummary]:
        pass

    @abstractmethod
    async def clear(self, wallet: str, chain: Optional[Chain] = None) -> int:
        """
        Deletes events and summaries for the wallet, optionally scoped to one
        chain. Clearing every chain also drops the portfolio snapshot.
        Returns the number of events removed.
        """
        pass

    @abstractmethod
    async def save_snapshot(self, wallet: str, snapshot: PortfolioSnapshot) -> None:
        pass

    @abstractmethod
    async def load_snapshot(self, wallet: str) -> Optional[dict]:
        """Raw stored blob; schema checks are the caller's concern."""
        pass

    @abstractmethod
    async def delete_snapshot(self, wallet: str) -> None:
        pass
