import asyncio
import logging
import time
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from pydantic import ValidationError as PydanticValidationError

from chaintrace.core.amounts import EXACT, ZERO, format_amount, to_decimal
from chaintrace.core.entities.chain import Chain, NATIVE_ASSET_ID
from chaintrace.core.entities.portfolio import (
    SNAPSHOT_SCHEMA_VERSION,
    ChainPortfolio,
    Holding,
    PortfolioSnapshot,
    PortfolioSummary,
    SnapshotResponse,
    TokenOwnershipResponse,
    TransactionRefSummary,
    TransactionSummaryResponse,
)
from chaintrace.core.entities.transfer import Direction, TransferEvent
from chaintrace.core.exceptions import ValidationError
from chaintrace.core.use_cases.ingestion import IngestionService

logger = logging.getLogger(__name__)


def _ref(event: TransferEvent) -> TransactionRefSummary:
    return TransactionRefSummary(
        transaction_id=event.transaction_id,
        chain=event.chain.value,
        amount=event.amount,
        symbol=event.asset_symbol,
        direction=event.direction.value,
        observed_at=event.observed_at
    )


def _by_balance(holding: Holding) -> Decimal:
    return to_decimal(holding.balance)


class PortfolioService:
    """
    Cross-chain snapshot of one wallet, cached as a single blob and
    replaced wholesale on refresh.
    """

    def __init__(self, ingestion: IngestionService, chains: Optional[Sequence[Chain]] = None):
        self.ingestion = ingestion
        self.registry = ingestion.registry
        self.store = ingestion.store
        self.chains = list(chains) if chains is not None else list(self.registry.chains)

    def _snapshot_key(self, wallet: str) -> str:
        wallet = wallet.strip()
        if wallet.startswith("0x"):
            return wallet.lower()
        return wallet

    async def get_snapshot(self, wallet: str, force_refresh: bool = False) -> SnapshotResponse:
        if not wallet or not wallet.strip():
            raise ValidationError("wallet is required")
        key = self._snapshot_key(wallet)

        if not force_refresh:
            blob = await self.store.load_snapshot(key)
            if blob and blob.get("schema_version") == SNAPSHOT_SCHEMA_VERSION:
                try:
                    return SnapshotResponse(cached=True, data=PortfolioSnapshot(**blob))
                except PydanticValidationError as e:
                    logger.warning(f"Discarding unreadable snapshot for {key}: {e}")
            elif blob:
                logger.info(f"Snapshot for {key} has schema {blob.get('schema_version')}, rebuilding")

        chains = [c for c in self.chains if self.registry.adapter(c).accepts_address(wallet)]
        if not chains:
            raise ValidationError(f"Address {wallet} is not valid on any supported chain")

        results = await asyncio.gather(
            *(self._chain_portfolio(wallet, chain) for chain in chains),
            return_exceptions=True
        )

        snapshot = PortfolioSnapshot(wallet=key, last_updated=int(time.time() * 1000))
        events: List[TransferEvent] = []
        for chain, result in zip(chains, results):
            if isinstance(result, Exception):
                logger.error(f"Portfolio for {key} on {chain.value} failed: {result}")
                continue
            if isinstance(result, BaseException):
                raise result
            portfolio, chain_events = result
            snapshot.chains[chain.value] = portfolio
            events.extend(chain_events)

        snapshot.total_transaction_count = sum(p.total_transactions for p in snapshot.chains.values())
        snapshot.summary = self._summarize(snapshot.chains, events)

        await self.store.save_snapshot(key, snapshot)
        return SnapshotResponse(cached=False, data=snapshot)

    async def _chain_portfolio(self, wallet: str, chain: Chain):
        provider = self.registry.provider(chain)
        address = self.registry.adapter(chain).normalize_address(wallet)
        native = chain.native

        balance = await provider.get_native_balance(address)
        # stored events are reused; a refresh only rebuilds balances and the summary
        result = await self.ingestion.ingest(address, chain)
        events = result.events

        portfolio = ChainPortfolio(
            native_balance=balance.balance,
            native_symbol=balance.symbol or native.symbol,
            native_name=native.name,
            native_decimals=native.decimals,
            tokens=await self._holdings(address, chain),
            total_transactions=len({e.transaction_id for e in events}),
            received_transactions=sum(1 for e in events if e.direction == Direction.RECEIVE),
            sent_transactions=sum(1 for e in events if e.direction == Direction.SEND),
            ingestion_error=result.error
        )

        timed = [e for e in events if e.observed_at is not None]
        if timed:
            portfolio.first_transaction = _ref(min(timed, key=lambda e: e.observed_at))
            portfolio.last_transaction = _ref(max(timed, key=lambda e: e.observed_at))
        if events:
            portfolio.highest_value_transaction = _ref(max(events, key=lambda e: abs(to_decimal(e.amount))))
        return portfolio, events

    async def _holdings(self, address: str, chain: Chain) -> List[Holding]:
        try:
            balances = await self.registry.provider(chain).get_token_balances(address)
        except Exception as e:
            logger.warning(f"Token balances for {address} on {chain.value} unavailable: {e}")
            balances = []

        holdings = []
        if balances:
            for balance in balances:
                if to_decimal(balance.balance) <= 0:
                    continue
                symbol, name, decimals = balance.symbol, balance.name, balance.decimals
                if not symbol:
                    meta = await self.ingestion.resolver.resolve_or_placeholder(balance.asset_id, chain)
                    symbol, name = meta.symbol, meta.name
                    decimals = decimals if decimals is not None else meta.decimals
                holdings.append(Holding(chain=chain.value, asset_id=balance.asset_id, symbol=symbol,
                                        name=name, balance=balance.balance, decimals=decimals))
        else:
            # no balance endpoint for this chain: fall back to the folded transfer history
            for summary in await self.store.get_summaries(address, chain):
                if summary.asset_id == NATIVE_ASSET_ID or to_decimal(summary.current_balance) <= 0:
                    continue
                holdings.append(Holding(chain=chain.value, asset_id=summary.asset_id,
                                        symbol=summary.asset_symbol, name=summary.asset_name,
                                        balance=summary.current_balance))

        holdings.sort(key=_by_balance, reverse=True)
        return holdings

    def _summarize(self, chains: Dict[str, ChainPortfolio], events: List[TransferEvent]) -> PortfolioSummary:
        received: Dict[str, Decimal] = {}
        sent: Dict[str, Decimal] = {}
        for event in events:
            amount = to_decimal(event.amount)
            symbol = event.asset_symbol or event.asset_id
            if amount > 0:
                received[symbol] = EXACT.add(received.get(symbol, ZERO), amount)
            elif amount < 0:
                sent[symbol] = EXACT.subtract(sent.get(symbol, ZERO), amount)

        holdings: List[Holding] = []
        for chain_name, portfolio in chains.items():
            if to_decimal(portfolio.native_balance) > 0:
                holdings.append(Holding(
                    chain=chain_name,
                    asset_id=NATIVE_ASSET_ID,
                    symbol=portfolio.native_symbol,
                    name=portfolio.native_name,
                    balance=portfolio.native_balance,
                    decimals=portfolio.native_decimals
                ))
            holdings.extend(portfolio.tokens)
        holdings.sort(key=_by_balance, reverse=True)

        highest = [p.highest_value_transaction for p in chains.values() if p.highest_value_transaction]
        recent = [p.last_transaction for p in chains.values() if p.last_transaction]
        return PortfolioSummary(
            received_count=sum(p.received_transactions for p in chains.values()),
            sent_count=sum(p.sent_transactions for p in chains.values()),
            total_received={k: format_amount(v) for k, v in received.items()},
            total_sent={k: format_amount(v) for k, v in sent.items()},
            highest_value=max(highest, key=lambda r: abs(to_decimal(r.amount))) if highest else None,
            most_recent=max(recent, key=lambda r: r.observed_at) if recent else None,
            token_holdings=holdings
        )

    async def get_transaction_summary(self, wallet: str) -> TransactionSummaryResponse:
        snapshot = (await self.get_snapshot(wallet)).data
        summary = snapshot.summary
        total = summary.received_count + summary.sent_count
        return TransactionSummaryResponse(
            wallet=snapshot.wallet,
            total_transactions=total,
            received_count=summary.received_count,
            sent_count=summary.sent_count,
            received_percentage=round(summary.received_count * 100 / total, 2) if total else 0.0,
            sent_percentage=round(summary.sent_count * 100 / total, 2) if total else 0.0,
            total_received=summary.total_received,
            total_sent=summary.total_sent,
            highest_value_transaction=summary.highest_value,
            most_recent_transaction=summary.most_recent,
            token_holdings=summary.token_holdings
        )

    async def check_token_ownership(self, wallet: str, symbol: str) -> TokenOwnershipResponse:
        if not symbol or not symbol.strip():
            raise ValidationError("symbol is required")
        snapshot = (await self.get_snapshot(wallet)).data
        wanted = symbol.strip().lower()
        matches = [h for h in snapshot.summary.token_holdings if (h.symbol or "").lower() == wanted]
        return TokenOwnershipResponse(wallet=snapshot.wallet, symbol=symbol.strip(), owned=bool(matches),
                                      holdings=matches)
