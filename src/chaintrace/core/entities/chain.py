from enum import Enum
from typing import Dict, NamedTuple

from chaintrace.core.exceptions import UnsupportedChain, ValidationError


class ChainFamily(str, Enum):
    EVM = "evm"
    SOLANA = "solana"


class NativeAsset(NamedTuple):
    symbol: str
    name: str
    decimals: int


class Chain(str, Enum):
    ETHEREUM = "ethereum"
    BASE = "base"
    SOLANA = "solana"

    @property
    def family(self) -> ChainFamily:
        return _FAMILIES[self]

    @property
    def native(self) -> NativeAsset:
        return _NATIVE[self]

    @classmethod
    def parse(cls, value: str) -> "Chain":
        """
        Accepts the canonical names plus the '<chain>-mainnet' network ids
        used by older clients.
        """
        if not value or not value.strip():
            raise ValidationError("chain is required")
        key = value.strip().lower()
        if key.endswith("-mainnet"):
            key = key[: -len("-mainnet")]
        try:
            return cls(key)
        except ValueError:
            raise UnsupportedChain(value) from None


_FAMILIES: Dict[Chain, ChainFamily] = {
    Chain.ETHEREUM: ChainFamily.EVM,
    Chain.BASE: ChainFamily.EVM,
    Chain.SOLANA: ChainFamily.SOLANA,
}

_NATIVE: Dict[Chain, NativeAsset] = {
    Chain.ETHEREUM: NativeAsset("ETH", "Ethereum", 18),
    Chain.BASE: NativeAsset("ETH", "Ethereum", 18),
    Chain.SOLANA: NativeAsset("SOL", "Solana", 9),
}

NATIVE_ASSET_ID = "native"
