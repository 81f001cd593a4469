import logging
from typing import Optional

import psycopg2
from fastapi import Depends, HTTPException, Request

from chaintrace.config import Settings
from chaintrace.core.interfaces.answer import IAnswerService
from chaintrace.core.interfaces.store import ITransactionStore
from chaintrace.core.use_cases.ingestion import IngestionService
from chaintrace.core.use_cases.portfolio import PortfolioService
from chaintrace.core.use_cases.token_resolver import TokenResolver
from chaintrace.infrastructure.cache.redis_service import build_cache
from chaintrace.infrastructure.gateways.registry import ChainRegistry
from chaintrace.infrastructure.gateways.token_sources import default_token_sources
from chaintrace.infrastructure.persistence.memory_repo import InMemoryRepo
from chaintrace.infrastructure.persistence.postgres_repo import PostgresRepo

logger = logging.getLogger(__name__)


def build_store(settings: Settings) -> Optional[ITransactionStore]:
    if not settings.database_url:
        logger.info("DATABASE_URL not set. Using in-memory store.")
        return InMemoryRepo()
    try:
        return PostgresRepo(settings.database_url)
    except psycopg2.Error as e:
        logger.error(f"Failed to connect to DB: {e}")
        return None


class ServiceContainer:
    """Long-lived services, built once per process in the app lifespan."""

    def __init__(
        self,
        registry: ChainRegistry,
        store: Optional[ITransactionStore],
        resolver: TokenResolver,
        settings: Optional[Settings] = None,
        answer_service: Optional[IAnswerService] = None
    ):
        self.settings = settings or Settings()
        self.registry = registry
        self.store = store
        self.resolver = resolver
        self.answer_service = answer_service
        self.ingestion: Optional[IngestionService] = None
        self.portfolio: Optional[PortfolioService] = None
        if store is not None:
            self.ingestion = IngestionService(
                registry,
                store,
                resolver,
                max_pages=self.settings.max_pages,
                page_delay=self.settings.page_delay_seconds,
                group_size=self.settings.group_size,
                group_delay=self.settings.group_delay_seconds
            )
            self.portfolio = PortfolioService(self.ingestion)

    @classmethod
    def build(cls, settings: Settings) -> "ServiceContainer":
        resolver = TokenResolver(
            default_token_sources(settings.http_timeout_seconds),
            build_cache(settings.redis_url),
            settings.token_cache_ttl_seconds
        )
        return cls(ChainRegistry.from_settings(settings), build_store(settings), resolver, settings)

    async def close(self):
        await self.registry.close()
        await self.resolver.close()


# --- FastAPI dependencies ---

def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_ingestion(container: ServiceContainer = Depends(get_container)) -> IngestionService:
    if container.ingestion is None:
        raise HTTPException(status_code=503, detail="Database not configured or unavailable")
    return container.ingestion


def get_portfolio(container: ServiceContainer = Depends(get_container)) -> PortfolioService:
    if container.portfolio is None:
        raise HTTPException(status_code=503, detail="Database not configured or unavailable")
    return container.portfolio


def get_answer_service(container: ServiceContainer = Depends(get_container)) -> IAnswerService:
    if container.answer_service is None:
        raise HTTPException(status_code=503, detail="Answer service not configured")
    return container.answer_service
