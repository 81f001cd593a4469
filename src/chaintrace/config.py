import os
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel


class Settings(BaseModel):
    database_url: Optional[str] = None
    redis_url: Optional[str] = None

    ethereum_rpc_url: str = "https://ethereum-rpc.publicnode.com"
    base_rpc_url: str = "https://mainnet.base.org"
    solana_rpc_url: str = "https://api.mainnet-beta.solana.com"
    etherscan_api_url: str = "https://api.etherscan.io/api"
    basescan_api_url: str = "https://api.basescan.org/api"
    explorer_api_key: Optional[str] = None

    http_timeout_seconds: float = 10.0
    page_size: int = 100
    solana_page_size: int = 1000
    max_pages: int = 100
    page_delay_seconds: float = 0.1
    group_size: int = 2
    group_delay_seconds: float = 1.0
    token_cache_ttl_seconds: int = 3600
    dust_threshold: Decimal = Decimal("0.000001")
    cors_origins: List[str] = ["*"]

    @classmethod
    def from_env(cls) -> "Settings":
        values = {}
        for field in cls.model_fields:
            raw = os.getenv(field.upper())
            if raw is None or raw == "":
                continue
            if field == "cors_origins":
                values[field] = [o.strip() for o in raw.split(",") if o.strip()]
            else:
                values[field] = raw
        return cls(**values)
