"""
Token metadata resolution.

Lookup order: native asset, well-known tokens, cache, then each configured
source in turn. Hits from a source are cached for `ttl_seconds`. Misses are
not cached, so a token listed later is picked up on the next run.
"""
import logging
from typing import Dict, List, Optional, Sequence

from chaintrace.core.entities.chain import Chain, ChainFamily, NATIVE_ASSET_ID
from chaintrace.core.entities.ingestion import TokenMetadata
from chaintrace.core.exceptions import ResolverMiss
from chaintrace.core.interfaces.token_source import IKeyValueCache, ITokenSource

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_CACHE_TTL_SECONDS = 3600
EVM_ADDRESS_LENGTH = 42

KNOWN_TOKENS: Dict[Chain, Dict[str, TokenMetadata]] = {
    Chain.SOLANA: {
        "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v": TokenMetadata(symbol="USDC", name="USD Coin", decimals=6),
        "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB": TokenMetadata(symbol="USDT", name="Tether USD", decimals=6),
        "mSoLzYCxHdYgdzU16g5QSh3i5K3z3KZK7ytfqcJm7So": TokenMetadata(symbol="mSOL", name="Marinade Staked SOL", decimals=9),
        "So11111111111111111111111111111111111111112": TokenMetadata(symbol="WSOL", name="Wrapped SOL", decimals=9),
    },
    Chain.ETHEREUM: {
        "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48": TokenMetadata(symbol="USDC", name="USD Coin", decimals=6),
        "0xdac17f958d2ee523a2206206994597c13d831ec7": TokenMetadata(symbol="USDT", name="Tether USD", decimals=6),
        "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2": TokenMetadata(symbol="WETH", name="Wrapped Ether", decimals=18),
    },
    Chain.BASE: {
        "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913": TokenMetadata(symbol="USDC", name="USD Coin", decimals=6),
        "0x4200000000000000000000000000000000000006": TokenMetadata(symbol="WETH", name="Wrapped Ether", decimals=18),
    },
}


def _lookup_key(asset_id: str, chain: Chain) -> str:
    return asset_id.lower() if chain.family == ChainFamily.EVM else asset_id


def placeholder_metadata(asset_id: Optional[str]) -> TokenMetadata:
    """Deterministic metadata for tokens no source knows."""
    if not asset_id:
        return TokenMetadata(symbol="UNKNOWN", name="Unknown Token", decimals=0, source="placeholder")
    short = asset_id[:8]
    if asset_id.endswith("pump"):
        return TokenMetadata(symbol=f"PUMP-{short}", name=f"Pump.fun Token ({short})", decimals=6,
                             source="placeholder")
    return TokenMetadata(
        symbol=f"TOKEN-{short}",
        name=f"Token ({short})",
        decimals=18 if len(asset_id) == EVM_ADDRESS_LENGTH else 6,
        source="placeholder"
    )


class TokenResolver:
    def __init__(
        self,
        sources: Sequence[ITokenSource] = (),
        cache: Optional[IKeyValueCache] = None,
        ttl_seconds: int = DEFAULT_TOKEN_CACHE_TTL_SECONDS
    ):
        self.sources: List[ITokenSource] = list(sources)
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    async def resolve(self, asset_id: str, chain: Chain) -> TokenMetadata:
        """Raises ResolverMiss when no source knows the asset."""
        if asset_id == NATIVE_ASSET_ID:
            native = chain.native
            return TokenMetadata(symbol=native.symbol, name=native.name, decimals=native.decimals, source="native")

        key = _lookup_key(asset_id, chain)
        known = KNOWN_TOKENS.get(chain, {}).get(key)
        if known:
            return known.model_copy(update={"source": "known"})

        cache_key = f"token:{chain.value}:{key}"
        if self.cache is not None:
            cached = self.cache.get(cache_key)
            if cached:
                try:
                    return TokenMetadata(**cached)
                except (TypeError, ValueError) as e:
                    logger.warning(f"Discarding bad cached metadata for {cache_key}: {e}")
                    self.cache.delete(cache_key)

        for source in self.sources:
            if not source.supports(chain):
                continue
            try:
                metadata = await source.lookup(asset_id, chain)
            except Exception as e:
                logger.warning(f"Token source {source.name} failed for {asset_id} on {chain.value}: {e}")
                continue
            if metadata:
                if self.cache is not None:
                    self.cache.set(cache_key, metadata.model_dump(), ttl_seconds=self.ttl_seconds)
                return metadata

        raise ResolverMiss(f"No metadata for {asset_id} on {chain.value}")

    async def resolve_or_placeholder(self, asset_id: str, chain: Chain) -> TokenMetadata:
        try:
            return await self.resolve(asset_id, chain)
        except ResolverMiss:
            logger.info(f"Using placeholder metadata for {asset_id} on {chain.value}")
            return placeholder_metadata(asset_id)

    async def close(self):
        for source in self.sources:
            await source.close()
