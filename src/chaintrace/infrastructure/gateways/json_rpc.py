import itertools
import logging
from typing import Any, Dict, List, Optional

import httpx

from chaintrace.core.exceptions import UpstreamUnavailable

logger = logging.getLogger(__name__)


class JsonRpcClient:
    """
    Minimal JSON-RPC 2.0 client over one shared httpx.AsyncClient.
    Transport errors, HTTP errors and RPC error objects all surface as
    UpstreamUnavailable. No automatic retries.
    """

    def __init__(self, url: str, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        if not url or not url.strip():
            raise ValueError("RPC url must be non-empty")
        self.url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._ids = itertools.count(1)

    async def request(self, method: str, params: Optional[List[Any]] = None) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params or [],
        }
        try:
            response = await self._client.post(self.url, json=payload)
            response.raise_for_status()
            data: Dict[str, Any] = response.json()
        except httpx.HTTPError as e:
            logger.error(f"RPC {method} failed: {e}")
            raise UpstreamUnavailable(f"RPC {method} failed: {e}") from e
        except ValueError as e:
            raise UpstreamUnavailable(f"RPC {method} returned invalid JSON") from e

        if data.get("error"):
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            logger.error(f"RPC {method} returned error: {message}")
            raise UpstreamUnavailable(f"RPC {method} error: {message}")
        return data.get("result")

    async def close(self):
        await self._client.aclose()
