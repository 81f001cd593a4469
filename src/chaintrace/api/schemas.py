from typing import List, Optional

from pydantic import BaseModel, Field

from chaintrace.core.entities.transfer import TokenSummary, TransferEvent


class NetworkInfo(BaseModel):
    chain: str
    family: str
    network_id: str
    native_symbol: str
    native_name: str
    native_decimals: int


class WalletBalanceResponse(BaseModel):
    wallet: str
    chain: str
    balance: str
    symbol: str


class EventListResponse(BaseModel):
    wallet: str
    chain: str
    count: int
    events: List[TransferEvent] = Field(default_factory=list)


class TokenSummaryListResponse(BaseModel):
    wallet: str
    chain: str
    count: int
    tokens: List[TokenSummary] = Field(default_factory=list)


class CacheClearResponse(BaseModel):
    success: bool = True
    wallet: str
    chain: Optional[str] = None
    removed: int


class AskRequest(BaseModel):
    question: str
    wallet: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "question": "What was my largest transfer last month?",
                "wallet": "0x31ca8395cf837de08b24da3f660e77761dfb974b",
            }
        }


class AskResponse(BaseModel):
    question: str
    answer: str
