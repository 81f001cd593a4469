from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, Field

from chaintrace.core.entities.chain import Chain, NATIVE_ASSET_ID


class Direction(str, Enum):
    RECEIVE = "receive"
    SEND = "send"
    UNKNOWN = "unknown"


class TxStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class TransferEvent(BaseModel):
    """
    One balance-changing effect of a transaction for one wallet and one asset.
    Amounts are signed decimal strings: receive positive, send negative.
    """
    wallet: str
    chain: Chain
    transaction_id: str
    sequence_ref: Optional[int] = None  # block number or slot
    observed_at: Optional[int] = None  # epoch ms
    direction: Direction = Direction.UNKNOWN
    asset_id: str = NATIVE_ASSET_ID
    asset_symbol: Optional[str] = None
    asset_name: Optional[str] = None
    asset_decimals: Optional[int] = None
    counterparty_from: Optional[str] = None
    counterparty_to: Optional[str] = None
    amount: str = "0"
    fee: str = "0"
    status: TxStatus = TxStatus.SUCCESS
    raw: Dict[str, Any] = Field(default_factory=dict)

    @property
    def key(self) -> Tuple[str, str, str, str]:
        return (self.wallet, self.chain.value, self.transaction_id, self.asset_id)

    @property
    def is_native(self) -> bool:
        return self.asset_id == NATIVE_ASSET_ID

    class Config:
        json_schema_extra = {
            "example": {
                "wallet": "0x31ca8395cf837de08b24da3f660e77761dfb974b",
                "chain": "ethereum",
                "transaction_id": "0x825cd9f2862678b8ed369b42e3b3139cdf5b615dc2c3bb31436cb0e442fffca7",
                "sequence_ref": 19000000,
                "observed_at": 1705000000000,
                "direction": "send",
                "asset_id": "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48",
                "asset_symbol": "USDC",
                "asset_name": "USD Coin",
                "asset_decimals": 6,
                "amount": "-5.0",
                "fee": "0.00042",
                "status": "success",
            }
        }


class TokenSummary(BaseModel):
    """
    Aggregate over every stored TransferEvent for (wallet, chain, asset_id).
    Always rebuilt from the events, never patched.
    """
    wallet: str
    chain: Chain
    asset_id: str
    asset_symbol: Optional[str] = None
    asset_name: Optional[str] = None
    total_received: str = "0"
    total_sent: str = "0"
    current_balance: str = "0"
    transaction_count: int = 0
    first_transaction_at: Optional[int] = None
    last_transaction_at: Optional[int] = None
