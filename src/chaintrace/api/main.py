import asyncio
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from chaintrace.api.dependencies import (
    ServiceContainer,
    get_answer_service,
    get_container,
    get_ingestion,
    get_portfolio,
)
from chaintrace.api.schemas import (
    AskRequest,
    AskResponse,
    CacheClearResponse,
    EventListResponse,
    NetworkInfo,
    TokenSummaryListResponse,
    WalletBalanceResponse,
)
from chaintrace.config import Settings
from chaintrace.core.entities.chain import Chain
from chaintrace.core.entities.ingestion import IngestionResult
from chaintrace.core.entities.portfolio import SnapshotResponse, TokenOwnershipResponse, TransactionSummaryResponse
from chaintrace.core.exceptions import UpstreamUnavailable, ValidationError
from chaintrace.core.interfaces.answer import IAnswerService
from chaintrace.core.use_cases.ingestion import IngestionService
from chaintrace.core.use_cases.portfolio import PortfolioService

# Setup Logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("ChainTrace")

settings = Settings.from_env()

DISCONNECT_POLL_SECONDS = 0.5


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.container = ServiceContainer.build(settings)
    logger.info("Service container ready.")
    yield
    await app.state.container.close()


app = FastAPI(
    title="ChainTrace API",
    version="1.0.0",
    description="Multi-chain wallet activity: normalized transfers, token summaries and portfolio snapshots",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(UpstreamUnavailable)
async def upstream_unavailable_handler(request: Request, exc: UpstreamUnavailable):
    logger.error(f"Upstream failure on {request.url.path}: {exc}")
    return JSONResponse(status_code=502, content={"detail": str(exc)})


async def _watch_disconnect(request: Request, cancel: asyncio.Event):
    while not cancel.is_set():
        if await request.is_disconnected():
            logger.info(f"Client disconnected from {request.url.path}; cancelling ingestion")
            cancel.set()
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


EVENT_EXCLUDE = {"events": {"__all__": {"raw"}}}

# --- Endpoints ---

@app.get("/health")
async def health(container: ServiceContainer = Depends(get_container)):
    return {
        "status": "healthy",
        "store": type(container.store).__name__ if container.store else None,
        "chains": [c.value for c in container.registry.chains],
    }


@app.get("/v1/networks", response_model=List[NetworkInfo])
async def list_networks(container: ServiceContainer = Depends(get_container)):
    return [
        NetworkInfo(
            chain=chain.value,
            family=chain.family.value,
            network_id=f"{chain.value}-mainnet",
            native_symbol=chain.native.symbol,
            native_name=chain.native.name,
            native_decimals=chain.native.decimals
        )
        for chain in container.registry.chains
    ]


@app.get("/v1/wallets/{chain}/{wallet}/balance", response_model=WalletBalanceResponse)
async def get_balance(chain: str, wallet: str, ingestion: IngestionService = Depends(get_ingestion)):
    parsed = Chain.parse(chain)
    balance = await ingestion.get_native_balance(wallet, parsed)
    return WalletBalanceResponse(wallet=wallet, chain=parsed.value, balance=balance.balance, symbol=balance.symbol)


@app.get(
    "/v1/transactions/{chain}/{wallet}/detailed",
    response_model=IngestionResult,
    response_model_exclude=EVENT_EXCLUDE
)
async def get_detailed_transactions(
    request: Request,
    chain: str,
    wallet: str,
    limit: Optional[int] = Query(None, ge=1, description="Fetch at most this many source transactions"),
    refresh: bool = Query(False, description="Bypass the stored transactions and re-fetch"),
    ingestion: IngestionService = Depends(get_ingestion)
):
    """
    Fetch-and-cache: returns stored transfers when present, otherwise walks
    the chain, stores what it decodes and returns the stored result.
    """
    cancel = asyncio.Event()
    watcher = asyncio.create_task(_watch_disconnect(request, cancel))
    try:
        return await ingestion.ingest(wallet, Chain.parse(chain), limit=limit, force_refresh=refresh,
                                      cancel_event=cancel)
    finally:
        watcher.cancel()


@app.get("/v1/transactions/{chain}/{wallet}/token/{asset_id}", response_model=EventListResponse,
         response_model_exclude=EVENT_EXCLUDE)
async def get_token_transactions(
    chain: str,
    wallet: str,
    asset_id: str,
    ingestion: IngestionService = Depends(get_ingestion)
):
    parsed = Chain.parse(chain)
    events = await ingestion.get_token_events(wallet, parsed, asset_id)
    return EventListResponse(wallet=wallet, chain=parsed.value, count=len(events), events=events)


@app.get("/v1/transactions/{chain}/{wallet}/search", response_model=EventListResponse,
         response_model_exclude=EVENT_EXCLUDE)
async def search_transactions(
    chain: str,
    wallet: str,
    q: str = Query(..., description="Matches token symbol or name, case-insensitive"),
    ingestion: IngestionService = Depends(get_ingestion)
):
    parsed = Chain.parse(chain)
    events = await ingestion.search(wallet, parsed, q)
    return EventListResponse(wallet=wallet, chain=parsed.value, count=len(events), events=events)


@app.get("/v1/transactions/{chain}/{wallet}/tokens", response_model=TokenSummaryListResponse)
async def get_token_summaries(chain: str, wallet: str, ingestion: IngestionService = Depends(get_ingestion)):
    parsed = Chain.parse(chain)
    summaries = await ingestion.get_summaries(wallet, parsed)
    return TokenSummaryListResponse(wallet=wallet, chain=parsed.value, count=len(summaries), tokens=summaries)


@app.delete("/v1/transactions/{chain}/{wallet}/cache", response_model=CacheClearResponse)
async def clear_chain_cache(chain: str, wallet: str, ingestion: IngestionService = Depends(get_ingestion)):
    parsed = Chain.parse(chain)
    removed = await ingestion.clear(wallet, parsed)
    return CacheClearResponse(wallet=wallet, chain=parsed.value, removed=removed)


@app.delete("/v1/wallets/{wallet}/cache", response_model=CacheClearResponse)
async def clear_wallet_cache(wallet: str, ingestion: IngestionService = Depends(get_ingestion)):
    removed = await ingestion.clear(wallet)
    return CacheClearResponse(wallet=wallet, removed=removed)


@app.get("/v1/portfolio/{wallet}", response_model=SnapshotResponse)
async def get_portfolio_snapshot(
    wallet: str,
    refresh: bool = Query(False),
    portfolio: PortfolioService = Depends(get_portfolio)
):
    return await portfolio.get_snapshot(wallet, force_refresh=refresh)


@app.get("/v1/portfolio/{wallet}/summary", response_model=TransactionSummaryResponse)
async def get_portfolio_summary(wallet: str, portfolio: PortfolioService = Depends(get_portfolio)):
    return await portfolio.get_transaction_summary(wallet)


@app.get("/v1/portfolio/{wallet}/holdings/{symbol}", response_model=TokenOwnershipResponse)
async def check_holding(wallet: str, symbol: str, portfolio: PortfolioService = Depends(get_portfolio)):
    return await portfolio.check_token_ownership(wallet, symbol)


@app.post("/v1/ai/ask", response_model=AskResponse)
async def ask(
    body: AskRequest,
    container: ServiceContainer = Depends(get_container),
    answer_service: IAnswerService = Depends(get_answer_service)
):
    if not body.question.strip():
        raise ValidationError("question is required")
    context = {}
    if body.wallet and container.portfolio is not None:
        snapshot = await container.portfolio.get_snapshot(body.wallet)
        context["portfolio"] = snapshot.data.model_dump(mode="json")
    answer = await answer_service.answer(body.question, context)
    return AskResponse(question=body.question, answer=answer)
