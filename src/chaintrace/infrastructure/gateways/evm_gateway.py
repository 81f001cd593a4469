import asyncio
import logging
from typing import Any, Dict, List, Optional, Set, Tuple

import httpx

from chaintrace.core.amounts import format_amount, parse_int, scale
from chaintrace.core.entities.chain import Chain, ChainFamily
from chaintrace.core.entities.ingestion import NativeBalance, TokenBalance, TransactionPage, TransactionRef
from chaintrace.core.exceptions import UpstreamUnavailable
from chaintrace.core.interfaces.datasource import IChainProvider
from chaintrace.core.use_cases.token_resolver import KNOWN_TOKENS
from chaintrace.infrastructure.gateways.json_rpc import JsonRpcClient

logger = logging.getLogger(__name__)

BALANCE_OF_SELECTOR = "0x70a08231"
NO_RESULTS_MESSAGES = ("No transactions found", "No records found")
LATEST_BLOCK = 99999999


def parse_marker(marker: Optional[str]) -> Tuple[int, Set[str]]:
    if not marker:
        return LATEST_BLOCK, set()
    block, _, hashes = marker.partition(":")
    try:
        return int(block), {h for h in hashes.split(",") if h}
    except ValueError:
        raise ValueError(f"Not an EVM listing marker: {marker!r}") from None


def format_marker(block: int, hashes: Set[str]) -> str:
    return f"{block}:{','.join(sorted(hashes))}"


class EvmRpcGateway(IChainProvider):
    """
    EVM chains. Balances and transaction detail come from the node's
    JSON-RPC; the address history comes from an Etherscan-compatible
    explorer API (plain RPC has no per-address listing).

    The `before` marker is "<block>:<hash>,<hash>...": the oldest block
    already listed and the hashes already listed at that block. Each page
    re-reads both explorer feeds from that block down, so nothing cut off
    by the page size is lost and nothing is listed twice.
    """

    def __init__(
        self,
        chain: Chain,
        rpc: JsonRpcClient,
        explorer_url: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        if chain.family != ChainFamily.EVM:
            raise ValueError(f"{chain.value} is not an EVM chain")
        self.chain = chain
        self.rpc = rpc
        self.explorer_url = explorer_url
        self.api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def get_native_balance(self, address: str) -> NativeBalance:
        result = await self.rpc.request("eth_getBalance", [address, "latest"])
        native = self.chain.native
        return NativeBalance(balance=format_amount(scale(parse_int(result), native.decimals)), symbol=native.symbol)

    async def _explorer(self, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        if self.api_key:
            params["apikey"] = self.api_key
        try:
            response = await self._client.get(self.explorer_url, params=params)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Explorer {params.get('action')} failed for {self.chain.value}: {e}")
            raise UpstreamUnavailable(f"Explorer {params.get('action')} failed: {e}") from e

        result = data.get("result")
        if str(data.get("status")) == "1" and isinstance(result, list):
            return result
        if data.get("message") in NO_RESULTS_MESSAGES or result == []:
            return []
        raise UpstreamUnavailable(f"Explorer {params.get('action')} error: {data.get('message')} {result}")

    async def list_transaction_page(
        self,
        address: str,
        page_size: int,
        before: Optional[str] = None
    ) -> TransactionPage:
        end_block, listed = parse_marker(before)
        base = {
            "module": "account",
            "address": address,
            "startblock": 0,
            "endblock": end_block,
            "page": 1,
            # over-fetch by what gets skipped so a full page of new hashes is always in reach
            "offset": page_size + len(listed),
            "sort": "desc",
        }
        native, tokens = await asyncio.gather(
            self._explorer({**base, "action": "txlist"}),
            self._explorer({**base, "action": "tokentx"}),
        )

        seen: Dict[str, TransactionRef] = {}
        for entry in native + tokens:
            tx_hash = (entry.get("hash") or "").lower()
            if not tx_hash or tx_hash in seen or tx_hash in listed:
                continue
            timestamp = entry.get("timeStamp")
            seen[tx_hash] = TransactionRef(
                transaction_id=tx_hash,
                sequence_ref=parse_int(entry.get("blockNumber")) if entry.get("blockNumber") else None,
                observed_at=parse_int(timestamp) * 1000 if timestamp else None,
                failed=entry.get("isError") == "1",
                raw=entry
            )

        items = sorted(seen.values(), key=lambda r: (-(r.sequence_ref or 0), r.transaction_id))[:page_size]
        if not items:
            return TransactionPage()

        last_block = items[-1].sequence_ref or 0
        boundary = {r.transaction_id for r in items if (r.sequence_ref or 0) == last_block}
        if last_block == end_block:
            boundary |= listed
        return TransactionPage(items=items, next_before=format_marker(last_block, boundary))

    async def get_transaction_detail(self, transaction_id: str) -> Dict[str, Any]:
        tx, receipt = await asyncio.gather(
            self.rpc.request("eth_getTransactionByHash", [transaction_id]),
            self.rpc.request("eth_getTransactionReceipt", [transaction_id]),
        )
        if not tx:
            return {}

        timestamp = None
        if tx.get("blockNumber"):
            block = await self.rpc.request("eth_getBlockByNumber", [tx["blockNumber"], False])
            if block and block.get("timestamp"):
                timestamp = parse_int(block["timestamp"])
        return {"tx": tx, "receipt": receipt or {}, "timestamp": timestamp}

    async def get_token_balances(self, address: str) -> List[TokenBalance]:
        """balanceOf for the well-known tokens of this chain."""
        owner = address.lower().replace("0x", "").rjust(64, "0")
        balances = []
        for contract, meta in KNOWN_TOKENS.get(self.chain, {}).items():
            result = await self.rpc.request(
                "eth_call",
                [{"to": contract, "data": BALANCE_OF_SELECTOR + owner}, "latest"]
            )
            raw = parse_int(result)
            if raw:
                balances.append(TokenBalance(
                    asset_id=contract,
                    balance=format_amount(scale(raw, meta.decimals)),
                    symbol=meta.symbol,
                    name=meta.name,
                    decimals=meta.decimals
                ))
        return balances

    async def close(self) -> None:
        await self._client.aclose()
        await self.rpc.close()
