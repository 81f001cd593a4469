"""
Domain exceptions for chain-trace.

Only ValidationError (and its UnsupportedChain subclass) is meant to reach
API callers. The others are raised inside the pipeline and recovered
locally: a skipped transaction, a placeholder token, a partial result.
"""


class ChainTraceError(Exception):
    """Base class for every error raised by the pipeline."""


class UpstreamUnavailable(ChainTraceError):
    """A chain provider call failed or timed out."""


class DecodeAmbiguous(ChainTraceError):
    """An adapter could not decode a raw record with confidence."""


class ResolverMiss(ChainTraceError):
    """No token metadata source knew the asset."""


class ValidationError(ChainTraceError):
    """Caller supplied a missing or invalid argument."""


class UnsupportedChain(ValidationError):
    def __init__(self, chain: str):
        super().__init__(f"Unsupported chain: {chain}")
        self.chain = chain
