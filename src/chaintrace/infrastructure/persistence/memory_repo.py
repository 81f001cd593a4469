from typing import Dict, List, Optional, Tuple

from chaintrace.core.amounts import to_decimal
from chaintrace.core.entities.chain import Chain
from chaintrace.core.entities.portfolio import PortfolioSnapshot
from chaintrace.core.entities.transfer import TokenSummary, TransferEvent
from chaintrace.core.interfaces.store import ITransactionStore
from chaintrace.core.use_cases.summary import fold_summary


def newest_first(events: List[TransferEvent]) -> List[TransferEvent]:
    return sorted(events, key=lambda e: (e.observed_at is None, -(e.observed_at or 0), e.transaction_id))


class InMemoryRepo(ITransactionStore):
    """Process-local store. Used when DATABASE_URL is unset."""

    def __init__(self):
        self._events: Dict[Tuple[str, str, str, str], TransferEvent] = {}
        self._summaries: Dict[Tuple[str, str, str], TokenSummary] = {}
        self._snapshots: Dict[str, dict] = {}

    async def upsert_event(self, event: TransferEvent) -> None:
        self._events[event.key] = event

    async def has_events(self, wallet: str, chain: Chain) -> bool:
        return any(k[0] == wallet and k[1] == chain.value for k in self._events)

    async def query_events(
        self,
        wallet: str,
        chain: Chain,
        token_id: Optional[str] = None,
        limit: Optional[int] = None,
        search_text: Optional[str] = None
    ) -> List[TransferEvent]:
        events = [e for e in self._events.values() if e.wallet == wallet and e.chain == chain]
        if token_id is not None:
            events = [e for e in events if e.asset_id == token_id]
        if search_text:
            needle = search_text.lower()
            events = [
                e for e in events
                if needle in (e.asset_symbol or "").lower() or needle in (e.asset_name or "").lower()
            ]
        events = newest_first(events)
        return events[:limit] if limit is not None else events

    async def upsert_summary(
        self,
        wallet: str,
        chain: Chain,
        asset_id: str,
        symbol: Optional[str],
        name: Optional[str]
    ) -> TokenSummary:
        events = await self.query_events(wallet, chain, token_id=asset_id)
        summary = fold_summary(wallet, chain, asset_id, events, symbol, name)
        self._summaries[(wallet, chain.value, asset_id)] = summary
        return summary

    async def get_summaries(self, wallet: str, chain: Chain) -> List[TokenSummary]:
        summaries = [s for k, s in self._summaries.items() if k[0] == wallet and k[1] == chain.value]
        return sorted(summaries, key=lambda s: to_decimal(s.current_balance), reverse=True)

    async def clear(self, wallet: str, chain: Optional[Chain] = None) -> int:
        def matches(key) -> bool:
            return key[0] == wallet and (chain is None or key[1] == chain.value)

        removed = [k for k in self._events if matches(k)]
        for key in removed:
            del self._events[key]
        for key in [k for k in self._summaries if matches(k)]:
            del self._summaries[key]
        if chain is None:
            self._snapshots.pop(wallet, None)
        return len(removed)

    async def save_snapshot(self, wallet: str, snapshot: PortfolioSnapshot) -> None:
        self._snapshots[wallet] = snapshot.model_dump(mode="json")

    async def load_snapshot(self, wallet: str) -> Optional[dict]:
        return self._snapshots.get(wallet)

    async def delete_snapshot(self, wallet: str) -> None:
        self._snapshots.pop(wallet, None)
