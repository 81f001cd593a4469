"""
Pytest configuration and shared fixtures.

Providers are scripted in memory: no test touches the network.
"""
from typing import Any, Dict, List, Optional, Sequence, Set

import pytest
from httpx import ASGITransport, AsyncClient

from chaintrace.api.dependencies import ServiceContainer, get_container
from chaintrace.api.main import app
from chaintrace.config import Settings
from chaintrace.core.entities.chain import Chain
from chaintrace.core.entities.ingestion import NativeBalance, TokenBalance, TransactionPage, TransactionRef
from chaintrace.core.exceptions import UpstreamUnavailable
from chaintrace.core.interfaces.datasource import IChainProvider
from chaintrace.core.use_cases.chain_adapters import ERC20_TRANSFER_TOPIC
from chaintrace.core.use_cases.ingestion import IngestionService
from chaintrace.core.use_cases.portfolio import PortfolioService
from chaintrace.core.use_cases.token_resolver import TokenResolver
from chaintrace.infrastructure.gateways.registry import ChainRegistry
from chaintrace.infrastructure.persistence.memory_repo import InMemoryRepo

EVM_WALLET = "0x31ca8395cf837de08b24da3f660e77761dfb974b"
OTHER_EVM = "0x1111111111111111111111111111111111111111"
USDC_ETH = "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48"
SOL_WALLET = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"
OTHER_SOL = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"
USDC_SOL = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"

WEI = 10 ** 18


# --- Raw record builders ---

def topic_address(address: str) -> str:
    return "0x" + address.lower().replace("0x", "").rjust(64, "0")


def erc20_log(contract: str, sender: str, recipient: str, raw_value: int) -> Dict[str, Any]:
    return {
        "address": contract,
        "topics": [ERC20_TRANSFER_TOPIC, topic_address(sender), topic_address(recipient)],
        "data": hex(raw_value),
    }


def evm_record(
    tx_hash: str,
    sender: str,
    recipient: Optional[str],
    value: int = 0,
    logs: Sequence[Dict[str, Any]] = (),
    block: int = 19000000,
    timestamp: Optional[int] = 1705000000,
    status: int = 1,
    gas_used: int = 21000,
    gas_price: int = 10 * 10 ** 9
) -> Dict[str, Any]:
    return {
        "tx": {
            "hash": tx_hash,
            "from": sender,
            "to": recipient,
            "value": hex(value),
            "blockNumber": hex(block),
            "gasPrice": hex(gas_price),
        },
        "receipt": {
            "transactionHash": tx_hash,
            "status": hex(status),
            "gasUsed": hex(gas_used),
            "effectiveGasPrice": hex(gas_price),
            "logs": list(logs),
        },
        "timestamp": timestamp,
    }


def token_balance(account_index: int, mint: str, owner: str, amount: int, decimals: int) -> Dict[str, Any]:
    return {
        "accountIndex": account_index,
        "mint": mint,
        "owner": owner,
        "uiTokenAmount": {
            "amount": str(amount),
            "decimals": decimals,
            "uiAmountString": str(amount / 10 ** decimals),
        },
    }


def solana_record(
    signature: str,
    account_keys: Optional[List[str]],
    pre_balances: List[int],
    post_balances: List[int],
    pre_token: Sequence[Dict[str, Any]] = (),
    post_token: Sequence[Dict[str, Any]] = (),
    instructions: Sequence[Dict[str, Any]] = (),
    inner_instructions: Sequence[Dict[str, Any]] = (),
    fee: int = 5000,
    err: Any = None,
    slot: int = 250000000,
    block_time: Optional[int] = 1705000000
) -> Dict[str, Any]:
    message: Dict[str, Any] = {"instructions": list(instructions)}
    if account_keys is not None:
        message["accountKeys"] = [{"pubkey": k, "signer": i == 0, "writable": True} for i, k in enumerate(account_keys)]
    return {
        "slot": slot,
        "blockTime": block_time,
        "transaction": {"signatures": [signature], "message": message},
        "meta": {
            "err": err,
            "fee": fee,
            "preBalances": pre_balances,
            "postBalances": post_balances,
            "preTokenBalances": list(pre_token),
            "postTokenBalances": list(post_token),
            "innerInstructions": [{"index": 0, "instructions": list(inner_instructions)}],
        },
    }


def spl_transfer(source: str, destination: str, authority: str, amount: int, decimals: int,
                 mint: Optional[str] = None) -> Dict[str, Any]:
    info: Dict[str, Any] = {
        "source": source,
        "destination": destination,
        "authority": authority,
        "tokenAmount": {"amount": str(amount), "decimals": decimals},
    }
    if mint:
        info["mint"] = mint
    return {"program": "spl-token", "parsed": {"type": "transferChecked", "info": info}}


# --- Scripted provider ---

class ScriptedProvider(IChainProvider):
    """
    Serves a fixed, newest-first transaction list. Records every call so
    tests can assert what was (not) fetched.
    """

    def __init__(
        self,
        chain: Chain,
        records: Sequence[Dict[str, Any]] = (),
        ids: Optional[Sequence[str]] = None,
        failing_pages: Set[int] = frozenset(),
        failing_details: Set[str] = frozenset(),
        balance: str = "0",
        token_balances: Sequence[TokenBalance] = ()
    ):
        self.chain = chain
        self.records = list(records)
        self.ids = list(ids) if ids is not None else [self._record_id(r) for r in self.records]
        self.details = dict(zip(self.ids, self.records))
        self.failing_pages = set(failing_pages)
        self.failing_details = set(failing_details)
        self.balance = balance
        self.token_balances = list(token_balances)
        self.page_calls: List[Optional[str]] = []
        self.page_sizes: List[int] = []
        self.detail_calls: List[str] = []

    @staticmethod
    def _record_id(record: Dict[str, Any]) -> str:
        if "tx" in record:
            return record["tx"]["hash"]
        return record["transaction"]["signatures"][0]

    @property
    def calls(self) -> int:
        return len(self.page_calls) + len(self.detail_calls)

    async def get_native_balance(self, address: str) -> NativeBalance:
        return NativeBalance(balance=self.balance, symbol=self.chain.native.symbol)

    async def get_token_balances(self, address: str) -> List[TokenBalance]:
        return list(self.token_balances)

    async def list_transaction_page(self, address: str, page_size: int, before: Optional[str] = None):
        index = len(self.page_calls)
        self.page_calls.append(before)
        self.page_sizes.append(page_size)
        if index in self.failing_pages:
            raise UpstreamUnavailable(f"page {index} unavailable")
        start = 0 if before is None else self.ids.index(before) + 1
        items = [TransactionRef(transaction_id=i) for i in self.ids[start:start + page_size]]
        return TransactionPage(items=items)

    async def get_transaction_detail(self, transaction_id: str) -> Dict[str, Any]:
        self.detail_calls.append(transaction_id)
        if transaction_id in self.failing_details:
            raise UpstreamUnavailable(f"{transaction_id} unavailable")
        return self.details[transaction_id]


def make_ingestion(providers: Dict[Chain, IChainProvider], store=None, page_size: int = 10,
                   resolver: Optional[TokenResolver] = None, **kwargs) -> IngestionService:
    registry = ChainRegistry(providers, {chain: page_size for chain in providers})
    options = {"page_delay": 0, "group_delay": 0}
    options.update(kwargs)
    return IngestionService(registry, store if store is not None else InMemoryRepo(),
                            resolver or TokenResolver(), **options)


# --- Fixtures ---

@pytest.fixture
def store():
    return InMemoryRepo()


@pytest.fixture
def eth_provider():
    return ScriptedProvider(Chain.ETHEREUM, [
        evm_record("0x" + "c" * 64, EVM_WALLET, USDC_ETH, logs=[erc20_log(USDC_ETH, EVM_WALLET, OTHER_EVM, 5000000)],
                   block=19000003, timestamp=1705000300),
        evm_record("0x" + "b" * 64, OTHER_EVM, EVM_WALLET, value=WEI, block=19000002, timestamp=1705000200),
        evm_record("0x" + "a" * 64, OTHER_EVM, EVM_WALLET, value=100, block=19000001, timestamp=1705000100),
    ], balance="1.5")


@pytest.fixture
def container(eth_provider, store):
    registry = ChainRegistry({Chain.ETHEREUM: eth_provider}, {Chain.ETHEREUM: 10})
    settings = Settings(page_delay_seconds=0, group_delay_seconds=0)
    return ServiceContainer(registry, store, TokenResolver(), settings)


@pytest.fixture
async def client(container):
    """Async HTTP client for testing FastAPI endpoints."""
    app.dependency_overrides[get_container] = lambda: container
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def portfolio_service(container) -> PortfolioService:
    return container.portfolio
