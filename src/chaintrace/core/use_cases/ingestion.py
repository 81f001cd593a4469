import asyncio
import logging
from typing import Callable, Dict, List, Optional, Tuple, Union

from chaintrace.core.entities.chain import Chain, NATIVE_ASSET_ID
from chaintrace.core.entities.ingestion import (
    IngestionResult,
    NativeBalance,
    PaginationCursor,
    TokenMetadata,
    TransactionRef,
)
from chaintrace.core.entities.transfer import TokenSummary, TransferEvent
from chaintrace.core.exceptions import UpstreamUnavailable, ValidationError
from chaintrace.core.interfaces.store import ITransactionStore
from chaintrace.core.use_cases.chain_adapters import ChainAdapter
from chaintrace.core.use_cases.pagination import DEFAULT_MAX_PAGES, DEFAULT_PAGE_DELAY_SECONDS, paginate
from chaintrace.core.use_cases.token_resolver import TokenResolver

logger = logging.getLogger(__name__)

DEFAULT_GROUP_SIZE = 2
DEFAULT_GROUP_DELAY_SECONDS = 1.0

InflightKey = Tuple[str, Chain, Optional[int]]


class IngestionService:
    """
    Fetches, decodes and stores one wallet's transfer history on one chain.

    Transactions are processed in small concurrent groups with a fixed
    pause in between. Everything written is an upsert, so a run that is
    cancelled or fails halfway leaves consistent partial state and the
    next run simply starts over from the newest transaction.

    Concurrent callers for the same wallet, chain and limit share one run.
    A shared run stops early only once every caller has set its
    `cancel_event`; a caller that passed none keeps it going to the end.
    """

    def __init__(
        self,
        registry,
        store: ITransactionStore,
        resolver: TokenResolver,
        max_pages: int = DEFAULT_MAX_PAGES,
        page_delay: float = DEFAULT_PAGE_DELAY_SECONDS,
        group_size: int = DEFAULT_GROUP_SIZE,
        group_delay: float = DEFAULT_GROUP_DELAY_SECONDS
    ):
        if group_size <= 0:
            raise ValueError("group_size must be positive")
        self.registry = registry
        self.store = store
        self.resolver = resolver
        self.max_pages = max_pages
        self.page_delay = page_delay
        self.group_size = group_size
        self.group_delay = group_delay
        self._inflight: Dict[InflightKey, asyncio.Task] = {}
        self._waiters: Dict[InflightKey, List[Optional[asyncio.Event]]] = {}

    def _prepare(self, wallet: str, chain: Union[Chain, str]) -> Tuple[str, Chain, ChainAdapter]:
        if not wallet or not wallet.strip():
            raise ValidationError("wallet is required")
        if not isinstance(chain, Chain):
            chain = Chain.parse(chain)
        adapter = self.registry.adapter(chain)
        return adapter.normalize_address(wallet), chain, adapter

    async def ingest(
        self,
        wallet: str,
        chain: Union[Chain, str],
        limit: Optional[int] = None,
        force_refresh: bool = False,
        cancel_event: Optional[asyncio.Event] = None
    ) -> IngestionResult:
        wallet, chain, adapter = self._prepare(wallet, chain)
        if limit is not None and limit <= 0:
            raise ValidationError("limit must be positive")

        if not force_refresh and limit is None and await self.store.has_events(wallet, chain):
            events = await self.store.query_events(wallet, chain)
            logger.info(f"Cache hit for {wallet} on {chain.value}: {len(events)} events")
            return IngestionResult(
                success=True, wallet=wallet, chain=chain, events=events, count=len(events), cached=True
            )

        key = (wallet, chain, limit)
        task = self._inflight.get(key)
        if task is None:
            waiters = self._waiters[key] = [cancel_event]

            def everyone_left() -> bool:
                return all(e is not None and e.is_set() for e in waiters)

            task = asyncio.create_task(self._run(wallet, chain, adapter, limit, everyone_left))
            self._inflight[key] = task

            def _release(finished: asyncio.Task):
                if self._inflight.get(key) is finished:
                    del self._inflight[key]
                    del self._waiters[key]

            task.add_done_callback(_release)
        else:
            logger.info(f"Joining in-flight ingestion for {wallet} on {chain.value}")
            self._waiters[key].append(cancel_event)

        # one caller going away must not cancel the run the others wait on
        return await asyncio.shield(task)

    async def _run(
        self,
        wallet: str,
        chain: Chain,
        adapter: ChainAdapter,
        limit: Optional[int],
        cancelled_by_callers: Callable[[], bool]
    ) -> IngestionResult:
        provider = self.registry.provider(chain)
        cursor = PaginationCursor()
        metadata: Dict[str, TokenMetadata] = {}
        touched: Dict[str, Tuple[Optional[str], Optional[str]]] = {}
        total = stored = skipped = 0
        cancelled = False
        first_group = True

        logger.info(f"Ingesting {wallet} on {chain.value} (limit={limit})")
        try:
            async for page in paginate(
                provider,
                wallet,
                self.registry.page_size(chain),
                overall_limit=limit,
                max_pages=self.max_pages,
                page_delay=self.page_delay,
                cursor=cursor
            ):
                total += len(page)
                for start in range(0, len(page), self.group_size):
                    if cancelled_by_callers():
                        cancelled = True
                        break
                    if not first_group and self.group_delay > 0:
                        await asyncio.sleep(self.group_delay)
                    first_group = False

                    group = page[start:start + self.group_size]
                    results = await asyncio.gather(
                        *(self._process(ref, wallet, chain, adapter, provider, metadata) for ref in group),
                        return_exceptions=True
                    )
                    for ref, result in zip(group, results):
                        if isinstance(result, Exception):
                            skipped += 1
                            logger.warning(f"Skipping {ref.transaction_id} on {chain.value}: {result}")
                            continue
                        if isinstance(result, BaseException):
                            raise result
                        stored += len(result)
                        for event in result:
                            touched[event.asset_id] = (event.asset_symbol, event.asset_name)
                if cancelled:
                    logger.info(f"Ingestion for {wallet} on {chain.value} cancelled after {total} records")
                    break
        except UpstreamUnavailable as e:
            logger.error(f"Ingestion for {wallet} on {chain.value} failed: {e}")
            return IngestionResult(success=False, wallet=wallet, chain=chain, error=str(e))

        for asset_id, (symbol, name) in touched.items():
            await self.store.upsert_summary(wallet, chain, asset_id, symbol, name)

        errors = []
        if skipped:
            errors.append(f"{skipped} of {total} transactions skipped")
        if cursor.error:
            errors.append(cursor.error)
        if cancelled:
            errors.append("Ingestion cancelled")

        events = await self.store.query_events(wallet, chain, limit=limit)
        logger.info(
            f"Ingested {wallet} on {chain.value}: {total} records, {stored} events stored, {skipped} skipped"
        )
        return IngestionResult(
            success=not (total > 0 and skipped == total),
            wallet=wallet,
            chain=chain,
            events=events,
            count=len(events),
            cached=False,
            stored=stored,
            total_records=total,
            skipped=skipped,
            error="; ".join(errors) or None
        )

    async def _process(
        self,
        ref: TransactionRef,
        wallet: str,
        chain: Chain,
        adapter: ChainAdapter,
        provider,
        metadata: Dict[str, TokenMetadata]
    ) -> List[TransferEvent]:
        raw = await provider.get_transaction_detail(ref.transaction_id)
        if not raw:
            raise UpstreamUnavailable(f"No detail returned for {ref.transaction_id}")

        for asset_id in adapter.token_ids(raw):
            if asset_id not in metadata:
                metadata[asset_id] = await self.resolver.resolve_or_placeholder(asset_id, chain)
        decimals = {asset_id: meta.decimals for asset_id, meta in metadata.items()}

        events = []
        for event in adapter.decode(raw, wallet, decimals):
            update = {}
            if event.observed_at is None and ref.observed_at is not None:
                update["observed_at"] = ref.observed_at
            if event.sequence_ref is None and ref.sequence_ref is not None:
                update["sequence_ref"] = ref.sequence_ref
            if not event.is_native:
                meta = metadata.get(event.asset_id)
                if meta is None:
                    meta = await self.resolver.resolve_or_placeholder(event.asset_id, chain)
                    metadata[event.asset_id] = meta
                update["asset_symbol"] = meta.symbol
                update["asset_name"] = meta.name
                if event.asset_decimals is None:
                    update["asset_decimals"] = meta.decimals
            if update:
                event = event.model_copy(update=update)
            events.append(event)
        if events:
            await self.store.upsert_events(events)
        return events

    async def get_native_balance(self, wallet: str, chain: Union[Chain, str]) -> NativeBalance:
        wallet, chain, _ = self._prepare(wallet, chain)
        return await self.registry.provider(chain).get_native_balance(wallet)

    async def get_token_events(self, wallet: str, chain: Union[Chain, str], asset_id: str) -> List[TransferEvent]:
        wallet, chain, adapter = self._prepare(wallet, chain)
        if not asset_id or not asset_id.strip():
            raise ValidationError("asset_id is required")
        if asset_id != NATIVE_ASSET_ID:
            asset_id = adapter.normalize_address(asset_id)
        return await self.store.query_events(wallet, chain, token_id=asset_id)

    async def search(self, wallet: str, chain: Union[Chain, str], text: str) -> List[TransferEvent]:
        wallet, chain, _ = self._prepare(wallet, chain)
        if not text or not text.strip():
            raise ValidationError("search text is required")
        return await self.store.query_events(wallet, chain, search_text=text.strip())

    async def get_summaries(self, wallet: str, chain: Union[Chain, str]) -> List[TokenSummary]:
        wallet, chain, _ = self._prepare(wallet, chain)
        return await self.store.get_summaries(wallet, chain)

    async def clear(self, wallet: str, chain: Union[Chain, str, None] = None) -> int:
        if chain is None:
            if not wallet or not wallet.strip():
                raise ValidationError("wallet is required")
            removed = 0
            # addresses normalize differently per family; clear every spelling
            for spelling in {wallet.strip(), wallet.strip().lower()}:
                removed += await self.store.clear(spelling)
            return removed
        wallet, chain, _ = self._prepare(wallet, chain)
        return await self.store.clear(wallet, chain)
