import logging
from decimal import Decimal
from typing import Dict, List, Optional

from chaintrace.config import Settings
from chaintrace.core.amounts import DEFAULT_DUST_THRESHOLD
from chaintrace.core.entities.chain import Chain, ChainFamily
from chaintrace.core.exceptions import UnsupportedChain
from chaintrace.core.interfaces.datasource import IChainProvider
from chaintrace.core.use_cases.chain_adapters import ChainAdapter, build_adapter
from chaintrace.infrastructure.gateways.evm_gateway import EvmRpcGateway
from chaintrace.infrastructure.gateways.json_rpc import JsonRpcClient
from chaintrace.infrastructure.gateways.solana_gateway import SolanaRpcGateway

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 100


class ChainRegistry:
    """
    Provider, adapter and page size per chain. Built once at startup;
    nothing is created lazily per request.
    """

    def __init__(
        self,
        providers: Dict[Chain, IChainProvider],
        page_sizes: Optional[Dict[Chain, int]] = None,
        dust_threshold: Decimal = DEFAULT_DUST_THRESHOLD
    ):
        self._providers = dict(providers)
        self._page_sizes = dict(page_sizes or {})
        self._adapters: Dict[Chain, ChainAdapter] = {
            chain: build_adapter(chain, dust_threshold) for chain in self._providers
        }

    @property
    def chains(self) -> List[Chain]:
        return list(self._providers)

    def provider(self, chain: Chain) -> IChainProvider:
        try:
            return self._providers[chain]
        except KeyError:
            raise UnsupportedChain(chain.value) from None

    def adapter(self, chain: Chain) -> ChainAdapter:
        try:
            return self._adapters[chain]
        except KeyError:
            raise UnsupportedChain(chain.value) from None

    def page_size(self, chain: Chain) -> int:
        return self._page_sizes.get(chain, DEFAULT_PAGE_SIZE)

    async def close(self):
        for provider in self._providers.values():
            await provider.close()

    @classmethod
    def from_settings(cls, settings: Settings) -> "ChainRegistry":
        timeout = settings.http_timeout_seconds
        providers: Dict[Chain, IChainProvider] = {
            Chain.ETHEREUM: EvmRpcGateway(
                Chain.ETHEREUM,
                JsonRpcClient(settings.ethereum_rpc_url, timeout),
                settings.etherscan_api_url,
                settings.explorer_api_key,
                timeout
            ),
            Chain.BASE: EvmRpcGateway(
                Chain.BASE,
                JsonRpcClient(settings.base_rpc_url, timeout),
                settings.basescan_api_url,
                settings.explorer_api_key,
                timeout
            ),
            Chain.SOLANA: SolanaRpcGateway(JsonRpcClient(settings.solana_rpc_url, timeout)),
        }
        page_sizes = {
            chain: settings.solana_page_size if chain.family == ChainFamily.SOLANA else settings.page_size
            for chain in providers
        }
        logger.info(f"Chain registry ready: {', '.join(c.value for c in providers)}")
        return cls(providers, page_sizes, settings.dust_threshold)
