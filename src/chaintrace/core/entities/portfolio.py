"""
Portfolio snapshot entities.

A snapshot is cached as one JSON blob per wallet and replaced wholesale.
Bump SNAPSHOT_SCHEMA_VERSION whenever these shapes change so that blobs
written by an older build are treated as cache misses.
"""
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

SNAPSHOT_SCHEMA_VERSION = 1


class TransactionRefSummary(BaseModel):
    transaction_id: str
    chain: str
    amount: str
    symbol: Optional[str] = None
    direction: Optional[str] = None
    observed_at: Optional[int] = None


class Holding(BaseModel):
    chain: str
    asset_id: str
    symbol: Optional[str] = None
    name: Optional[str] = None
    balance: str
    decimals: Optional[int] = None


class ChainPortfolio(BaseModel):
    native_balance: str = "0"
    native_symbol: str
    native_name: str
    native_decimals: int
    tokens: List[Holding] = Field(default_factory=list)
    total_transactions: int = 0
    received_transactions: int = 0
    sent_transactions: int = 0
    first_transaction: Optional[TransactionRefSummary] = None
    last_transaction: Optional[TransactionRefSummary] = None
    highest_value_transaction: Optional[TransactionRefSummary] = None
    ingestion_error: Optional[str] = None


class PortfolioSummary(BaseModel):
    received_count: int = 0
    sent_count: int = 0
    total_received: Dict[str, str] = Field(default_factory=dict)  # symbol -> amount
    total_sent: Dict[str, str] = Field(default_factory=dict)
    highest_value: Optional[TransactionRefSummary] = None
    most_recent: Optional[TransactionRefSummary] = None
    token_holdings: List[Holding] = Field(default_factory=list)


class PortfolioSnapshot(BaseModel):
    schema_version: int = SNAPSHOT_SCHEMA_VERSION
    wallet: str
    last_updated: int  # epoch ms
    chains: Dict[str, ChainPortfolio] = Field(default_factory=dict)
    total_transaction_count: int = 0
    summary: PortfolioSummary = Field(default_factory=PortfolioSummary)


class SnapshotResponse(BaseModel):
    success: bool = True
    cached: bool = False
    data: PortfolioSnapshot


class TransactionSummaryResponse(BaseModel):
    wallet: str
    total_transactions: int
    received_count: int
    sent_count: int
    received_percentage: float  # display only
    sent_percentage: float
    total_received: Dict[str, str]
    total_sent: Dict[str, str]
    highest_value_transaction: Optional[TransactionRefSummary] = None
    most_recent_transaction: Optional[TransactionRefSummary] = None
    token_holdings: List[Holding] = Field(default_factory=list)


class TokenOwnershipResponse(BaseModel):
    wallet: str
    symbol: str
    owned: bool
    holdings: List[Holding] = Field(default_factory=list)
