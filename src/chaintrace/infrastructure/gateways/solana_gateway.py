import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from chaintrace.core.amounts import EXACT, ZERO, format_amount, scale
from chaintrace.core.entities.chain import Chain
from chaintrace.core.entities.ingestion import NativeBalance, TokenBalance, TransactionPage, TransactionRef
from chaintrace.core.interfaces.datasource import IChainProvider
from chaintrace.infrastructure.gateways.json_rpc import JsonRpcClient

logger = logging.getLogger(__name__)

TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
MAX_SIGNATURES_PER_CALL = 1000


class SolanaRpcGateway(IChainProvider):
    """Solana JSON-RPC. Signatures are listed newest first by the node."""
    chain = Chain.SOLANA

    def __init__(self, rpc: JsonRpcClient):
        self.rpc = rpc

    async def get_native_balance(self, address: str) -> NativeBalance:
        result = await self.rpc.request("getBalance", [address])
        lamports = result.get("value", 0) if isinstance(result, dict) else (result or 0)
        native = self.chain.native
        return NativeBalance(balance=format_amount(scale(lamports, native.decimals)), symbol=native.symbol)

    async def list_transaction_page(
        self,
        address: str,
        page_size: int,
        before: Optional[str] = None
    ) -> TransactionPage:
        options: Dict[str, Any] = {"limit": min(page_size, MAX_SIGNATURES_PER_CALL)}
        if before:
            options["before"] = before
        result = await self.rpc.request("getSignaturesForAddress", [address, options]) or []

        items = []
        for entry in result:
            block_time = entry.get("blockTime")
            items.append(TransactionRef(
                transaction_id=entry["signature"],
                sequence_ref=entry.get("slot"),
                observed_at=block_time * 1000 if block_time is not None else None,
                failed=entry.get("err") is not None,
                raw=entry
            ))
        return TransactionPage(items=items)

    async def get_transaction_detail(self, transaction_id: str) -> Dict[str, Any]:
        result = await self.rpc.request(
            "getTransaction",
            [transaction_id, {"encoding": "jsonParsed", "maxSupportedTransactionVersion": 0}]
        )
        return result or {}

    async def get_token_balances(self, address: str) -> List[TokenBalance]:
        result = await self.rpc.request(
            "getTokenAccountsByOwner",
            [address, {"programId": TOKEN_PROGRAM_ID}, {"encoding": "jsonParsed"}]
        )
        accounts = (result or {}).get("value") or []

        totals: Dict[str, Decimal] = {}
        decimals: Dict[str, int] = {}
        for account in accounts:
            try:
                info = account["account"]["data"]["parsed"]["info"]
                amount = info["tokenAmount"]
                mint = info["mint"]
                decimals[mint] = int(amount["decimals"])
                totals[mint] = EXACT.add(totals.get(mint, ZERO), scale(amount["amount"], decimals[mint]))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unparsable token account for {address}: {e}")

        return [
            TokenBalance(asset_id=mint, balance=format_amount(total), decimals=decimals[mint])
            for mint, total in totals.items()
            if total > 0
        ]

    async def close(self) -> None:
        await self.rpc.close()
