from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from chaintrace.core.entities.chain import Chain
from chaintrace.core.entities.transfer import TransferEvent


class TransactionRef(BaseModel):
    """One entry of a chain's transaction listing (signature or tx hash)."""
    transaction_id: str
    sequence_ref: Optional[int] = None
    observed_at: Optional[int] = None  # epoch ms
    failed: bool = False
    raw: Dict[str, Any] = Field(default_factory=dict)


class TransactionPage(BaseModel):
    items: List[TransactionRef] = Field(default_factory=list)
    next_before: Optional[str] = None


class NativeBalance(BaseModel):
    balance: str
    symbol: str


class TokenBalance(BaseModel):
    asset_id: str
    balance: str
    symbol: Optional[str] = None
    name: Optional[str] = None
    decimals: Optional[int] = None


class TokenMetadata(BaseModel):
    symbol: str
    name: str
    decimals: int
    source: Optional[str] = None


@dataclass
class PaginationCursor:
    """In-memory progress of one pagination run. Never persisted."""
    before: Optional[str] = None
    pages: int = 0
    count: int = 0
    exhausted: bool = False
    error: Optional[str] = None


class IngestionResult(BaseModel):
    success: bool
    wallet: str
    chain: Chain
    events: List[TransferEvent] = Field(default_factory=list)
    count: int = 0
    cached: bool = False
    stored: int = 0
    total_records: int = 0
    skipped: int = 0
    error: Optional[str] = None
